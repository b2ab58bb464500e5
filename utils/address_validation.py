"""Crypto wallet address format validation per network"""

import re
import logging
from typing import Optional

from utils.exceptions import InvalidWalletAddress

logger = logging.getLogger(__name__)

# Bitcoin legacy (P2PKH/P2SH) or bech32
BITCOIN_PATTERN = re.compile(r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$|^bc1[a-z0-9]{39,59}$")
# Ethereum and EVM-compatible chains
EVM_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
# Tron (TRC20)
TRON_PATTERN = re.compile(r"^T[A-Za-z1-9]{33}$")

NETWORK_PATTERNS = {
    "bitcoin": BITCOIN_PATTERN,
    "btc": BITCOIN_PATTERN,
    "ethereum": EVM_PATTERN,
    "eth": EVM_PATTERN,
    "erc20": EVM_PATTERN,
    "bsc": EVM_PATTERN,
    "bep20": EVM_PATTERN,
    "polygon": EVM_PATTERN,
    "matic": EVM_PATTERN,
    "tron": TRON_PATTERN,
    "trc20": TRON_PATTERN,
}

# Networks without a dedicated pattern fall back to length bounds (exclusive)
GENERIC_MIN_LENGTH = 20
GENERIC_MAX_LENGTH = 100


def normalize_network(network: Optional[str]) -> str:
    return (network or "").strip().lower()


# Token-standard aliases resolve to the chain they settle on
NETWORK_ALIASES = {
    "btc": "bitcoin",
    "eth": "ethereum",
    "erc20": "ethereum",
    "bep20": "bsc",
    "trc20": "tron",
    "matic": "polygon",
}


def canonical_network(network: Optional[str]) -> str:
    name = normalize_network(network)
    return NETWORK_ALIASES.get(name, name)


def is_valid_address(address: Optional[str], network: Optional[str]) -> bool:
    """Check an address against the format expected on `network`"""
    if not address:
        return False

    address = address.strip()
    pattern = NETWORK_PATTERNS.get(normalize_network(network))
    if pattern is not None:
        return bool(pattern.match(address))

    return GENERIC_MIN_LENGTH < len(address) < GENERIC_MAX_LENGTH


def detect_network_from_address(address: Optional[str]) -> Optional[str]:
    """Best-effort network guess from the address shape; None when ambiguous"""
    if not address:
        return None
    address = address.strip()
    if TRON_PATTERN.match(address):
        return "tron"
    if EVM_PATTERN.match(address):
        return "ethereum"
    if BITCOIN_PATTERN.match(address):
        return "bitcoin"
    return None


def validate_address(address: Optional[str], network: Optional[str]) -> str:
    """Return the stripped address or raise InvalidWalletAddress"""
    if not is_valid_address(address, network):
        name = normalize_network(network) or "network"
        logger.warning(f"⚠️ INVALID_ADDRESS: rejected address for network {name}")
        detected = detect_network_from_address(address)
        if detected and detected != canonical_network(network):
            raise InvalidWalletAddress(f"Address looks like a {detected} address, not {name}")
        raise InvalidWalletAddress(f"Invalid wallet address format for {name}")
    return address.strip()
