"""Raffle state machine and its randomness request/fulfillment protocol.

A :class:`Raffle` owns one round at a time. Entries accumulate while the
raffle is OPEN; once the interval has elapsed an automation trigger calls
:meth:`Raffle.perform_upkeep`, which moves the raffle to CALCULATING and asks
the VRF coordinator for a random word. The coordinator later pushes the word
back through :meth:`Raffle.fulfill_random_words`, which picks the winner,
pays out the pool and opens the next round.

Every public operation runs under a single re-entrant lock, so operations
are serialized and each one either completes or leaves the record untouched.
Internal state is always advanced before any outbound call (coordinator
request, payout, event emission); a synchronous re-entrant call made from
inside one of those observes the advanced state. Store publications made
while a payout is in flight are held until the transfer succeeds and are
dropped when the round is restored.
"""

from __future__ import annotations

import time
from functools import partial
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from web3 import Web3

from raffle.blockchain.ledger import Ledger, LedgerError
from raffle.lottery.errors import (
    InsufficientPayment,
    OnlyCoordinatorCanFulfill,
    RaffleNotOpen,
    TransferFailed,
    UnknownRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import MemoryStore
from raffle.lottery.models import (
    PendingDraw,
    RaffleConfig,
    RaffleSnapshot,
    RaffleState,
    RoundSnapshot,
)
from raffle.utils.common import normalize_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class RandomnessCoordinator(Protocol):
    """The slice of a VRF coordinator the raffle calls into."""

    address: str

    def request_random_words(
        self,
        key_hash: str,
        sub_id: int,
        request_confirmations: int,
        callback_gas_limit: int,
        num_words: int,
        *,
        sender: str,
    ) -> int:
        ...


class Raffle:
    """Automated raffle driven by an upkeep trigger and a VRF coordinator."""

    def __init__(
        self,
        config: RaffleConfig,
        coordinator: RandomnessCoordinator,
        ledger: Ledger,
        *,
        store: Optional[MemoryStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if config.entrance_fee <= 0:
            raise ValueError("entrance_fee must be positive")
        if config.interval < 0:
            raise ValueError("interval must not be negative")
        if config.oracle.num_words < 1:
            raise ValueError("num_words must be at least 1")

        self._config = config
        self._address = normalize_address(config.address)
        self._coordinator_address = normalize_address(config.oracle.coordinator_address)
        self._coordinator = coordinator
        self._ledger = ledger
        self._store = store
        self._clock = clock
        self._lock = RLock()

        self._state = RaffleState.OPEN
        self._players: List[str] = []
        self._pooled_balance = 0
        self._pending: Dict[int, PendingDraw] = {}
        self._recent_winner: Optional[str] = None
        self._round_id = 1
        self._last_timestamp = self._now()
        # Publications held back while a payout is in flight.
        self._deferred: Optional[List[Callable[[], None]]] = None

        logger.info(
            "Raffle %s initialized: entrance_fee=%s wei, interval=%ss, coordinator=%s",
            self._address,
            config.entrance_fee,
            config.interval,
            self._coordinator_address,
        )

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    def enter_raffle(self, player: str, payment: int) -> None:
        """Add ``player`` to the current round in exchange for ``payment`` wei.

        Raises
        ------
        InsufficientPayment
            If ``payment`` is below the entrance fee.
        RaffleNotOpen
            If a draw is in progress.
        ValueError
            If ``player`` is not a valid address.
        """
        if isinstance(payment, bool) or not isinstance(payment, int):
            raise TypeError("payment must be an integer amount of wei")
        player = normalize_address(player)

        with self._lock:
            if payment < self._config.entrance_fee:
                logger.warning("Rejected entry from %s: paid %s < fee %s", player, payment, self._config.entrance_fee)
                raise InsufficientPayment(payment, self._config.entrance_fee)
            if self._state != RaffleState.OPEN:
                logger.warning("Rejected entry from %s: raffle is %s", player, self._state.name)
                raise RaffleNotOpen(self._state)

            self._players.append(player)
            self._pooled_balance += payment
            self._publish("RaffleEnter", {"player": player, "amount": payment, "roundId": self._round_id})

    # ------------------------------------------------------------------
    # Upkeep
    # ------------------------------------------------------------------
    def check_upkeep(self, check_data: bytes = b"") -> Tuple[bool, bytes]:
        """Return whether a draw may start now, plus the perform data to pass on.

        A draw may start when the raffle is OPEN, the interval has elapsed
        since the round began, and the round has at least one player and a
        positive balance. ``check_data`` is accepted for interface
        compatibility and ignored.
        """
        with self._lock:
            return self._upkeep_needed(), b""

    def perform_upkeep(self, perform_data: bytes = b"") -> int:
        """Start a draw by requesting one random word from the coordinator.

        Returns the coordinator's request id.

        Raises
        ------
        UpkeepNotNeeded
            If :meth:`check_upkeep` would currently return ``False``.
        """
        with self._lock:
            if not self._upkeep_needed():
                logger.warning(
                    "Upkeep not needed: state=%s players=%s balance=%s",
                    self._state.name,
                    len(self._players),
                    self._pooled_balance,
                )
                raise UpkeepNotNeeded(self._pooled_balance, len(self._players), self._state)

            self._state = RaffleState.CALCULATING
            oracle = self._config.oracle
            try:
                request_id = int(
                    self._coordinator.request_random_words(
                        oracle.gas_lane,
                        oracle.subscription_id,
                        oracle.request_confirmations,
                        oracle.callback_gas_limit,
                        oracle.num_words,
                        sender=self._address,
                    )
                )
            except Exception:
                self._state = RaffleState.OPEN
                logger.exception("Randomness request failed for round %s", self._round_id)
                raise

            self._pending[request_id] = PendingDraw(
                request_id=request_id,
                round_id=self._round_id,
                requested_at=self._now(),
                player_count=len(self._players),
                pooled_balance=self._pooled_balance,
            )
            logger.info("Round %s is calculating; randomness request %s issued", self._round_id, request_id)
            self._publish("RequestedRaffleWinner", {"requestId": request_id, "roundId": self._round_id})
            return request_id

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------
    def fulfill_random_words(self, request_id: int, random_words: Sequence[int], *, caller: str) -> str:
        """Consume the coordinator's answer, pay the winner and reopen the raffle.

        Returns the winner's address.

        Raises
        ------
        OnlyCoordinatorCanFulfill
            If ``caller`` is not the configured coordinator.
        UnknownRequest
            If ``request_id`` is not the outstanding request.
        TransferFailed
            If the payout could not be made; the round is restored so the
            same request can be delivered again.
        """
        with self._lock:
            if not self._is_coordinator(caller):
                logger.warning("Rejected fulfillment of %s from non-coordinator %s", request_id, caller)
                raise OnlyCoordinatorCanFulfill(request_id, str(caller), self._coordinator_address)

            pending = self._pending.get(request_id)
            if pending is None:
                logger.warning("Rejected fulfillment for unknown request %s", request_id)
                raise UnknownRequest(request_id, self._current_request_id())
            if not random_words:
                raise ValueError("random_words must contain at least one value")

            random_word = int(random_words[0])
            winner_index = random_word % len(self._players)
            winner = self._players[winner_index]
            prize = self._pooled_balance
            saved = self._save_round()

            self._recent_winner = winner
            self._players = []
            del self._pending[request_id]
            self._last_timestamp = self._now()
            self._state = RaffleState.OPEN
            self._pooled_balance = 0
            self._round_id += 1

            outer_deferred, self._deferred = self._deferred, []
            try:
                self._ledger.transfer(winner, prize)
            except LedgerError as exc:
                self._abort_payout(saved, outer_deferred)
                logger.error("Payout of %s wei to %s failed, round %s restored: %s", prize, winner, pending.round_id, exc)
                raise TransferFailed(winner, prize) from exc
            except Exception:
                self._abort_payout(saved, outer_deferred)
                logger.exception("Payout to %s raised unexpectedly, round %s restored", winner, pending.round_id)
                raise
            held, self._deferred = self._deferred, outer_deferred
            for action in held:
                self._dispatch(action)

            logger.info(
                "Round %s winner %s (index %s of %s) paid %s wei",
                pending.round_id,
                winner,
                winner_index,
                pending.player_count,
                prize,
            )
            if self._store is not None:
                round_snapshot = RoundSnapshot(
                    round_id=pending.round_id,
                    winner=winner,
                    prize=prize,
                    participant_count=pending.player_count,
                    request_id=request_id,
                    random_word=random_word,
                    started_at=saved["last_timestamp"],
                    finished_at=self._last_timestamp,
                )
                self._dispatch(partial(self._store.add_history_snapshot, round_snapshot))
            self._publish("WinnerPicked", {"winner": winner, "prize": prize, "roundId": pending.round_id})
            return winner

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------
    @property
    def address(self) -> str:
        return self._address

    @property
    def config(self) -> RaffleConfig:
        return self._config

    def get_entrance_fee(self) -> int:
        return self._config.entrance_fee

    def get_interval(self) -> int:
        return self._config.interval

    def get_player(self, index: int) -> str:
        with self._lock:
            if index < 0 or index >= len(self._players):
                raise IndexError(f"No player at index {index}")
            return self._players[index]

    def get_players(self) -> List[str]:
        with self._lock:
            return list(self._players)

    def get_number_of_players(self) -> int:
        with self._lock:
            return len(self._players)

    def get_recent_winner(self) -> Optional[str]:
        with self._lock:
            return self._recent_winner

    def get_raffle_state(self) -> RaffleState:
        with self._lock:
            return self._state

    def get_last_timestamp(self) -> int:
        with self._lock:
            return self._last_timestamp

    def get_pooled_balance(self) -> int:
        with self._lock:
            return self._pooled_balance

    def get_pending_request_id(self) -> Optional[int]:
        with self._lock:
            return self._current_request_id()

    def get_round_id(self) -> int:
        with self._lock:
            return self._round_id

    def get_num_words(self) -> int:
        return self._config.oracle.num_words

    def get_request_confirmations(self) -> int:
        return self._config.oracle.request_confirmations

    def snapshot(self) -> RaffleSnapshot:
        with self._lock:
            return RaffleSnapshot(
                round_id=self._round_id,
                state=self._state,
                entrance_fee=self._config.entrance_fee,
                interval=self._config.interval,
                last_timestamp=self._last_timestamp,
                players=list(self._players),
                pooled_balance=self._pooled_balance,
                pending_request_id=self._current_request_id(),
                recent_winner=self._recent_winner,
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _now(self) -> int:
        return int(self._clock())

    def _upkeep_needed(self) -> bool:
        is_open = self._state == RaffleState.OPEN
        time_passed = (self._now() - self._last_timestamp) >= self._config.interval
        has_players = len(self._players) > 0
        has_balance = self._pooled_balance > 0
        return is_open and time_passed and has_players and has_balance

    def _current_request_id(self) -> Optional[int]:
        return next(iter(self._pending), None)

    def _is_coordinator(self, caller: Any) -> bool:
        if not isinstance(caller, str) or not Web3.is_address(caller):
            return False
        return Web3.to_checksum_address(caller) == self._coordinator_address

    def _save_round(self) -> Dict[str, Any]:
        return {
            "state": self._state,
            "players": list(self._players),
            "pooled_balance": self._pooled_balance,
            "pending": dict(self._pending),
            "recent_winner": self._recent_winner,
            "last_timestamp": self._last_timestamp,
            "round_id": self._round_id,
        }

    def _restore_round(self, saved: Dict[str, Any]) -> None:
        self._state = saved["state"]
        self._players = saved["players"]
        self._pooled_balance = saved["pooled_balance"]
        self._pending = saved["pending"]
        self._recent_winner = saved["recent_winner"]
        self._last_timestamp = saved["last_timestamp"]
        self._round_id = saved["round_id"]

    def _abort_payout(self, saved: Dict[str, Any], outer_deferred: Optional[List[Callable[[], None]]]) -> None:
        self._deferred = outer_deferred
        self._restore_round(saved)
        if self._store is not None and self._deferred is None:
            self._store.set_raffle_snapshot(self.snapshot())

    def _dispatch(self, action: Callable[[], None]) -> None:
        if self._deferred is not None:
            self._deferred.append(action)
        else:
            action()

    def _publish(self, name: str, args: Dict[str, Any]) -> None:
        store = self._store
        if store is None:
            return
        timestamp = self._now()

        def emit() -> None:
            store.emit_event(name, args, timestamp=timestamp)
            store.set_raffle_snapshot(self.snapshot())

        self._dispatch(emit)


__all__ = ["Raffle", "RandomnessCoordinator"]
