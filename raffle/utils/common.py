"""Common helpers for addresses and unit conversion."""

from __future__ import annotations

from decimal import Decimal
from typing import Union

from web3 import Web3


def shorten_eth_address(address: str) -> str:
    """Shorten an Ethereum address for display: '0x123456...abcd'.

    Returns the first 6 and last 4 hex characters separated by '...'.
    Handles addresses with or without the '0x' prefix.
    """
    if not address:
        return ""
    addr = address.lower()
    if addr.startswith("0x"):
        addr = addr[2:]
    if len(addr) < 10:
        return f"0x{addr}"
    return f"0x{addr[:6]}...{addr[-4:]}"


def normalize_address(address: str) -> str:
    """Return the checksum form of ``address``.

    Raises
    ------
    ValueError
        If ``address`` is not a 20-byte hex address.
    """
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValueError(f"Invalid address: {address!r}")
    return Web3.to_checksum_address(address)


def to_wei(amount: Union[int, str, Decimal, float], unit: str = "ether") -> int:
    """Convert ``amount`` expressed in ``unit`` into wei.

    Integers are taken to be wei already; strings and decimals are parsed
    as ``unit`` values, so ``"0.01"`` means 0.01 ether.
    """
    if isinstance(amount, bool):
        raise TypeError("amount must be a number, not a bool")
    if isinstance(amount, int):
        return amount
    return int(Web3.to_wei(Decimal(str(amount)), unit))


def from_wei(amount: int, unit: str = "ether") -> Decimal:
    """Convert a wei integer into ``unit``."""
    return Decimal(Web3.from_wei(int(amount), unit))
