#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""Input validators for submitted payment fields."""

import re

from tronpy.keys import is_base58check_address

EVM_TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
TRON_TX_HASH_RE = re.compile(r"^[a-fA-F0-9]{64}$")
TRON_ADDRESS_RE = re.compile(r"^T[1-9A-HJ-NP-Za-km-z]{33}$")

_EVM_CHAINS = ("ethereum", "bsc", "polygon")


def _chain_name(chain) -> str:
    return getattr(chain, "value", chain) or ""


def is_valid_tx_hash(tx_hash: str | None, chain) -> bool:
    """Return True if *tx_hash* has the hex length and prefix expected on *chain*.

    EVM chains use ``0x`` followed by 64 hex digits; Tron uses 64 bare hex digits.
    """
    if not tx_hash or not isinstance(tx_hash, str):
        return False
    tx_hash = tx_hash.strip()
    chain = _chain_name(chain)
    if chain in _EVM_CHAINS:
        return bool(EVM_TX_HASH_RE.match(tx_hash))
    if chain == "tron":
        return bool(TRON_TX_HASH_RE.match(tx_hash))
    return False


def is_valid_wallet_address(address: str | None, chain) -> bool:
    """Return True if *address* is well formed for *chain*.

    Tron addresses are additionally checked against their base58check checksum.
    """
    if not address or not isinstance(address, str):
        return False
    address = address.strip()
    chain = _chain_name(chain)
    if chain in _EVM_CHAINS:
        return bool(EVM_ADDRESS_RE.match(address))
    if chain == "tron":
        if not TRON_ADDRESS_RE.match(address):
            return False
        try:
            return is_base58check_address(address)
        except ValueError:
            return False
    return False


def normalize_address(address: str | None, chain) -> str:
    """Canonical form used for comparisons: lower-case for EVM, unchanged for Tron."""
    if not address:
        return ""
    address = address.strip()
    if _chain_name(chain) in _EVM_CHAINS:
        return address.lower()
    return address


def normalize_tx_hash(tx_hash: str | None) -> str | None:
    if not tx_hash:
        return None
    tx_hash = tx_hash.strip()
    return tx_hash.lower() if tx_hash else None


def mask_wallet_address(address: str | None) -> str:
    """Shorten an address for chat messages, e.g. ``0x1234…abcd``."""
    if not address:
        return "-"
    if len(address) <= 12:
        return address
    return f"{address[:6]}…{address[-4:]}"
