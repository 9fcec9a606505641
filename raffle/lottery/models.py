"""Core data models for the raffle service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional


class RaffleState(IntEnum):
    """Raffle lifecycle states. Values match the on-chain enum ordering."""

    OPEN = 0
    CALCULATING = 1


@dataclass(frozen=True)
class OracleConfig:
    """Fixed parameters used for every randomness request."""

    coordinator_address: str
    subscription_id: int
    gas_lane: str
    callback_gas_limit: int
    request_confirmations: int = 3
    num_words: int = 1


@dataclass(frozen=True)
class RaffleConfig:
    """Construction-time configuration of a :class:`~raffle.lottery.raffle.Raffle`."""

    address: str
    entrance_fee: int
    interval: int
    oracle: OracleConfig


@dataclass
class PendingDraw:
    """Context of an outstanding randomness request, keyed by request id."""

    request_id: int
    round_id: int
    requested_at: int
    player_count: int
    pooled_balance: int


@dataclass
class RaffleSnapshot:
    """Point-in-time view of the raffle record."""

    round_id: int
    state: RaffleState
    entrance_fee: int
    interval: int
    last_timestamp: int
    players: List[str]
    pooled_balance: int
    pending_request_id: Optional[int]
    recent_winner: Optional[str]


@dataclass
class RoundSnapshot:
    """Historical record of a completed round."""

    round_id: int
    winner: str
    prize: int
    participant_count: int
    request_id: int
    random_word: int
    started_at: int
    finished_at: int


@dataclass
class RaffleEvent:
    """An observable event emitted by the raffle or the coordinator."""

    name: str
    args: Dict[str, Any]
    timestamp: int
    sequence: int = 0


@dataclass
class LiveFeedItem:
    """Entry pushed to the activity feed."""

    event_type: str
    message: str
    details: Dict[str, Any]
    event_time: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def get_item_id(self) -> str:
        round_id = self.details.get("roundId", 0)
        return f"{round_id}-{self.event_time}-{self.event_type}"


@dataclass
class OperatorStatus:
    """Operational counters for the upkeep operator loop."""

    is_running: bool = False
    checks: int = 0
    draws_requested: int = 0
    rejected_upkeeps: int = 0
    consecutive_failures: int = 0
    last_check: Optional[datetime] = None
    last_request_id: Optional[int] = None
    last_error: Optional[str] = None

    def record_check(self) -> None:
        self.checks += 1
        self.last_check = datetime.now(timezone.utc)

    def record_draw(self, request_id: int) -> None:
        self.draws_requested += 1
        self.last_request_id = request_id
        self.consecutive_failures = 0
        self.last_error = None

    def record_rejection(self) -> None:
        self.rejected_upkeeps += 1

    def record_failure(self, error: Exception) -> None:
        self.consecutive_failures += 1
        self.last_error = str(error)
