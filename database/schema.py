"""Database schema definitions for the payment verification engine."""

# SQL statements for creating database tables

MANUAL_PAYMENTS_TABLE = '''
CREATE TABLE IF NOT EXISTS manual_payments (
    payment_id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    amount_usd TEXT NOT NULL,           -- Decimal stored as text to keep precision
    chain TEXT NOT NULL,                -- ethereum | bsc | polygon | tron
    sender_name TEXT NOT NULL,
    sender_wallet_address TEXT,
    transaction_hash TEXT,              -- normalized to lower case
    notes TEXT DEFAULT '',
    created_at TEXT NOT NULL,           -- ISO-8601 UTC, microsecond precision
    expires_at TEXT NOT NULL            -- created_at + review window, never updated
)
'''

VERIFICATION_RESULTS_TABLE = '''
CREATE TABLE IF NOT EXISTS verification_results (
    payment_id TEXT PRIMARY KEY,
    verification_status TEXT NOT NULL,
    blockchain_verified INTEGER NOT NULL DEFAULT 0,
    verification_confidence INTEGER NOT NULL DEFAULT 0,
    verification_checks TEXT NOT NULL DEFAULT '{}',   -- JSON object of named booleans
    verification_errors TEXT NOT NULL DEFAULT '[]',   -- JSON list, ordered
    blockchain_data TEXT,                             -- raw adapter payload (JSON)
    score INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (payment_id) REFERENCES manual_payments (payment_id)
)
'''

# A hash belongs to the first payment whose verification attributes it.
TRANSACTION_CLAIMS_TABLE = '''
CREATE TABLE IF NOT EXISTS transaction_claims (
    chain TEXT NOT NULL,
    transaction_hash TEXT NOT NULL,
    payment_id TEXT NOT NULL,
    claimed_at TEXT NOT NULL,
    PRIMARY KEY (chain, transaction_hash),
    FOREIGN KEY (payment_id) REFERENCES manual_payments (payment_id)
)
'''

# Append-only audit trail of submissions, status changes and admin actions.
PAYMENT_STATUS_HISTORY_TABLE = '''
CREATE TABLE IF NOT EXISTS payment_status_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    payment_id TEXT NOT NULL,
    event_type TEXT NOT NULL,     -- payment_submitted | status_change | admin_approve | admin_reject | confidence_override | expired
    old_status TEXT,
    new_status TEXT,
    changed_by TEXT NOT NULL DEFAULT 'engine',
    note TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (payment_id) REFERENCES manual_payments (payment_id)
)
'''

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_manual_payments_created_at ON manual_payments (created_at)",
    "CREATE INDEX IF NOT EXISTS idx_manual_payments_expires_at ON manual_payments (expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_verification_results_status ON verification_results (verification_status)",
    "CREATE INDEX IF NOT EXISTS idx_status_history_payment ON payment_status_history (payment_id)",
]

ALL_TABLES = [
    MANUAL_PAYMENTS_TABLE,
    VERIFICATION_RESULTS_TABLE,
    TRANSACTION_CLAIMS_TABLE,
    PAYMENT_STATUS_HISTORY_TABLE,
] + INDEXES
