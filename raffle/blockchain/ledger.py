"""Payout ledgers used by the raffle to pay winners."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import TYPE_CHECKING, Dict, List, Optional, Set

from raffle.utils.common import normalize_address
from raffle.utils.logger import get_logger

if TYPE_CHECKING:
    from raffle.blockchain.client import BlockchainClient

logger = get_logger(__name__)


class LedgerError(Exception):
    """A value transfer could not be completed."""


@dataclass
class TransferRecord:
    """A completed transfer."""

    to: str
    amount: int
    reference: str


class Ledger:
    """Interface for moving pooled funds to a winner."""

    def transfer(self, to: str, amount: int) -> str:
        """Send ``amount`` wei to ``to`` and return a transfer reference.

        Implementations raise :class:`LedgerError` when the transfer fails.
        """
        raise NotImplementedError

    def balance_of(self, address: str) -> int:
        raise NotImplementedError


class InMemoryLedger(Ledger):
    """Ledger that credits balances in process memory.

    Recipients can be marked as rejecting so payout failures can be
    exercised without a chain.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._balances: Dict[str, int] = defaultdict(int)
        self._rejected: Set[str] = set()
        self._transfers: List[TransferRecord] = []

    def reject(self, address: str) -> None:
        with self._lock:
            self._rejected.add(normalize_address(address))

    def accept(self, address: str) -> None:
        with self._lock:
            self._rejected.discard(normalize_address(address))

    def transfer(self, to: str, amount: int) -> str:
        if amount < 0:
            raise LedgerError(f"Cannot transfer a negative amount ({amount})")
        recipient = normalize_address(to)
        with self._lock:
            if recipient in self._rejected:
                raise LedgerError(f"Recipient {recipient} rejected the transfer")
            self._balances[recipient] += amount
            reference = f"memory-{len(self._transfers) + 1}"
            self._transfers.append(TransferRecord(to=recipient, amount=amount, reference=reference))
        logger.info("Credited %s wei to %s (%s)", amount, recipient, reference)
        return reference

    def balance_of(self, address: str) -> int:
        with self._lock:
            return self._balances.get(normalize_address(address), 0)

    def get_transfers(self) -> List[TransferRecord]:
        with self._lock:
            return list(self._transfers)


class ChainLedger(Ledger):
    """Ledger that pays winners on-chain from a treasury account."""

    def __init__(self, client: "BlockchainClient", *, confirm_timeout: int = 120) -> None:
        self._client = client
        self._confirm_timeout = confirm_timeout

    def transfer(self, to: str, amount: int) -> str:
        recipient = normalize_address(to)
        try:
            tx_hash = self._client.send_value(recipient, amount)
            receipt = self._client.wait_for_transaction(tx_hash, timeout=self._confirm_timeout)
        except Exception as exc:
            raise LedgerError(f"Transfer of {amount} wei to {recipient} failed: {exc}") from exc

        if receipt.get("status") != 1:
            raise LedgerError(f"Transfer transaction {tx_hash} reverted")
        logger.info("Paid %s wei to %s in %s", amount, recipient, tx_hash)
        return tx_hash

    def balance_of(self, address: str) -> int:
        return self._client.get_balance(normalize_address(address))


def build_ledger(config: dict, client: Optional["BlockchainClient"] = None) -> Ledger:
    """Build the ledger selected by ``ledger.backend`` ("memory" or "chain")."""
    ledger_cfg = config.get("ledger", {})
    backend = str(ledger_cfg.get("backend", "memory")).lower()
    if backend == "memory":
        return InMemoryLedger()
    if backend == "chain":
        if client is None:
            raise ValueError("The chain ledger needs a blockchain client")
        return ChainLedger(client, confirm_timeout=int(ledger_cfg.get("confirm_timeout", 120)))
    raise ValueError(f"Unknown ledger backend '{backend}'")
