"""
Configuration file for the manual payment verification engine
"""

import os
import logging
import json
from dotenv import load_dotenv

# Load environment variables from .env file at the very beginning
load_dotenv()

# --- Logger Setup ---
logger = logging.getLogger(__name__)


def _int_setting(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name} in .env: '{raw}'. Using default value: {default}.")
        return default


def _float_setting(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name} in .env: '{raw}'. Using default value: {default}.")
        return default


def _bool_setting(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


_KEY_NOT_SET_PLACEHOLDER = "KEY_NOT_SET_IN_ENV"
_WALLET_NOT_SET_PLACEHOLDER = "WALLET_NOT_SET_IN_ENV"

# Reviewer bot token. The engine works without it; only Telegram review is disabled.
MANAGER_BOT_TOKEN = os.getenv("MANAGER_BOT_TOKEN")
if not MANAGER_BOT_TOKEN:
    logger.warning("MANAGER_BOT_TOKEN not set in .env. Telegram payment review bot will not be started.")

# --- Supported chains ---
SUPPORTED_CHAINS = ("ethereum", "bsc", "polygon", "tron")

# --- Platform receiving wallets (recipient side of every verified transfer) ---
RECEIVING_WALLETS = {}
for _chain in SUPPORTED_CHAINS:
    _env_name = f"{_chain.upper()}_RECEIVING_WALLET"
    _wallet = os.getenv(_env_name)
    if not _wallet:
        _wallet = _WALLET_NOT_SET_PLACEHOLDER
        logger.warning("%s not set in .env. Using placeholder: '%s'. %s payments cannot pass recipient verification.",
                       _env_name, _wallet, _chain)
    RECEIVING_WALLETS[_chain] = _wallet

# --- Block explorer endpoints ---
ETHERSCAN_API_URL = os.getenv("ETHERSCAN_API_URL", "https://api.etherscan.io/api")
BSCSCAN_API_URL = os.getenv("BSCSCAN_API_URL", "https://api.bscscan.com/api")
POLYGONSCAN_API_URL = os.getenv("POLYGONSCAN_API_URL", "https://api.polygonscan.com/api")
TRONSCAN_API_URL = os.getenv("TRONSCAN_API_URL", "https://apilist.tronscanapi.com")

EXPLORER_API_URLS = {
    "ethereum": ETHERSCAN_API_URL,
    "bsc": BSCSCAN_API_URL,
    "polygon": POLYGONSCAN_API_URL,
    "tron": TRONSCAN_API_URL,
}

EXPLORER_API_KEYS = {}
for _chain, _env_name in (("ethereum", "ETHERSCAN_API_KEY"), ("bsc", "BSCSCAN_API_KEY"),
                          ("polygon", "POLYGONSCAN_API_KEY"), ("tron", "TRONSCAN_API_KEY")):
    _key = os.getenv(_env_name)
    if not _key:
        _key = _KEY_NOT_SET_PLACEHOLDER
        logger.warning(f"{_env_name} not set in .env. Using placeholder. {_chain} explorer calls may be rate limited or refused.")
    EXPLORER_API_KEYS[_chain] = _key

# --- Stablecoin (USDT) contracts per chain: (contract address, decimals) ---
STABLECOIN_CONTRACTS = {
    "ethereum": (os.getenv("ETHEREUM_USDT_CONTRACT", "0xdAC17F958D2ee523a2206206994597C13D831ec7"), 6),
    "bsc": (os.getenv("BSC_USDT_CONTRACT", "0x55d398326f99059fF775485246999027B3197955"), 18),
    "polygon": (os.getenv("POLYGON_USDT_CONTRACT", "0xc2132D05D31c914a87C6611C10748AEb04B58e8F"), 6),
    "tron": (os.getenv("USDT_TRC20_CONTRACT_ADDRESS", "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"), 6),
}

# Native coin decimals and CoinGecko ids used when a transfer is not a stablecoin transfer
NATIVE_DECIMALS = {"ethereum": 18, "bsc": 18, "polygon": 18, "tron": 6}
NATIVE_PRICE_IDS = {
    "ethereum": "ethereum",
    "bsc": "binancecoin",
    "polygon": "polygon-ecosystem-token",
    "tron": "tron",
}

# --- Verification thresholds ---
_DEFAULT_MIN_CONFIRMATIONS = {"ethereum": 12, "bsc": 15, "polygon": 64, "tron": 19}
MIN_CONFIRMATIONS = {
    chain: _int_setting(f"MIN_CONFIRMATIONS_{chain.upper()}", default)
    for chain, default in _DEFAULT_MIN_CONFIRMATIONS.items()
}

AMOUNT_TOLERANCE_PERCENT = _float_setting("AMOUNT_TOLERANCE_PERCENT", 5.0)
AMOUNT_TOLERANCE_ABSOLUTE_USD = _float_setting("AMOUNT_TOLERANCE_ABSOLUTE_USD", 2.0)

AUTO_APPROVAL_THRESHOLD = _int_setting("AUTO_APPROVAL_THRESHOLD", 80)
SCORING_MAX_AMOUNT_USD = _float_setting("SCORING_MAX_AMOUNT_USD", 50000.0)
MAX_PAYMENT_AMOUNT_USD = _float_setting("MAX_PAYMENT_AMOUNT_USD", 1000000.0)

REVIEW_WINDOW_HOURS = _int_setting("REVIEW_WINDOW_HOURS", 72)
TX_MAX_AGE_HOURS = _int_setting("TX_MAX_AGE_HOURS", 168)
TX_CLOCK_SKEW_MINUTES = _int_setting("TX_CLOCK_SKEW_MINUTES", 15)

# --- Chain call behaviour ---
CHAIN_CALL_TIMEOUT_SECONDS = _float_setting("CHAIN_CALL_TIMEOUT_SECONDS", 10.0)
CHAIN_CALL_RETRIES = _int_setting("CHAIN_CALL_RETRIES", 2)
CHAIN_RETRY_BACKOFF_SECONDS = _float_setting("CHAIN_RETRY_BACKOFF_SECONDS", 1.0)
CHAIN_CONCURRENCY = {
    chain: _int_setting(f"CHAIN_CONCURRENCY_{chain.upper()}", 4)
    for chain in SUPPORTED_CHAINS
}

VERIFICATION_WORKERS = _int_setting("VERIFICATION_WORKERS", 4)
STORE_WRITE_RETRIES = _int_setting("STORE_WRITE_RETRIES", 3)

# --- Expiry ---
# When False, blockchain_failed payments stay actionable for reviewers past the review window.
EXPIRE_BLOCKCHAIN_FAILED = _bool_setting("EXPIRE_BLOCKCHAIN_FAILED", False)
EXPIRY_SWEEP_INTERVAL_SECONDS = _int_setting("EXPIRY_SWEEP_INTERVAL_SECONDS", 300)

# --- Price feed ---
COINGECKO_API_URL = os.getenv("COINGECKO_API_URL", "https://api.coingecko.com/api/v3/simple/price")
COINGECKO_API_KEY = os.getenv("COINGECKO_API_KEY", "")
if not COINGECKO_API_KEY:
    logger.info("COINGECKO_API_KEY not set or empty in .env. Public CoinGecko rate limits apply to native coin pricing.")
PRICE_CACHE_SECONDS = _int_setting("PRICE_CACHE_SECONDS", 60)

# --- Dashboard API ---
DASHBOARD_HOST = os.getenv("DASHBOARD_HOST", "127.0.0.1")
DASHBOARD_PORT = _int_setting("DASHBOARD_PORT", 8085)

# --- Database Settings ---
_CONFIG_FILE_DIR = os.path.dirname(os.path.abspath(__file__))
_DATABASE_SUBDIR = "database"
_DATA_SUBDIR = "data"

DB_FILENAME_FROM_ENV = os.getenv("DB_FILENAME")
if not DB_FILENAME_FROM_ENV:
    DB_FILENAME_FROM_ENV = "payment_verification.db"
    logger.warning(
        "DB_FILENAME not set in .env. Using default filename: '%s'. "
        "The database will be created/looked for in the '%s/%s/' subdirectory relative to config.py.",
        DB_FILENAME_FROM_ENV, _DATABASE_SUBDIR, _DATA_SUBDIR
    )

_DATABASE_FULL_DIR = os.path.join(_CONFIG_FILE_DIR, _DATABASE_SUBDIR, _DATA_SUBDIR)
DATABASE_PATH = os.path.join(_DATABASE_FULL_DIR, DB_FILENAME_FROM_ENV)

# For compatibility, DATABASE_NAME should be the full path to the database file.
DATABASE_NAME = DATABASE_PATH

# --- Admin Role Constants ---
ROLE_MANAGER_BOT_ADMIN = "manager_bot_admin"
ROLE_PAYMENT_REVIEWER = "payment_reviewer"
ROLE_MANAGER_BOT_ERROR_CONTACT = "manager_bot_error_contact"

# --- Consolidated Admin Configuration Processing ---
ALL_ADMINS_CONFIG_JSON = os.getenv("ALL_ADMINS_CONFIG", "[]")
ALL_ADMINS_LIST = []
try:
    ALL_ADMINS_LIST = json.loads(ALL_ADMINS_CONFIG_JSON)
    if not isinstance(ALL_ADMINS_LIST, list):
        logger.warning("ALL_ADMINS_CONFIG in .env is not a valid JSON list. Using empty list. Admin functionalities may be affected.")
        ALL_ADMINS_LIST = []
except json.JSONDecodeError:
    logger.error(f"ALL_ADMINS_CONFIG in .env ('{ALL_ADMINS_CONFIG_JSON}') is not valid JSON. Using empty list. Admin functionalities may be affected.")

MANAGER_BOT_ADMINS_DICT = {}  # Dict of {chat_id: alias}
PAYMENT_REVIEWER_IDS = []
MANAGER_BOT_ERROR_CONTACT_IDS = []

for admin_info in ALL_ADMINS_LIST:
    if not isinstance(admin_info, dict):
        logger.warning(f"Invalid admin entry in ALL_ADMINS_CONFIG: {admin_info}. Skipping.")
        continue
    chat_id = admin_info.get("chat_id")
    alias = admin_info.get("alias")
    roles = admin_info.get("roles", [])

    if not isinstance(chat_id, int) or not isinstance(alias, str) or not isinstance(roles, list):
        logger.warning(f"Invalid admin entry in ALL_ADMINS_CONFIG: {admin_info}. Skipping.")
        continue

    if ROLE_MANAGER_BOT_ADMIN in roles:
        MANAGER_BOT_ADMINS_DICT[chat_id] = alias
    if ROLE_PAYMENT_REVIEWER in roles or ROLE_MANAGER_BOT_ADMIN in roles:
        PAYMENT_REVIEWER_IDS.append(chat_id)
    if ROLE_MANAGER_BOT_ERROR_CONTACT in roles:
        MANAGER_BOT_ERROR_CONTACT_IDS.append(chat_id)

# Extract all unique admin chat_ids into ADMIN_USER_IDS for general use
ADMIN_USER_IDS = list(set(admin.get("chat_id") for admin in ALL_ADMINS_LIST
                          if isinstance(admin, dict) and isinstance(admin.get("chat_id"), int)))
if not ADMIN_USER_IDS:
    logger.warning("ADMIN_USER_IDS is empty. Nobody will be able to approve or reject payments from Telegram.")
if not PAYMENT_REVIEWER_IDS:
    logger.warning(f"No admin configured with '{ROLE_PAYMENT_REVIEWER}' role. Manual review notifications will not be delivered.")
