"""Exceptions raised by raffle operations.

Every raffle error aborts the whole operation; the raffle record is left
exactly as it was before the call.
"""

from __future__ import annotations

from typing import Optional

from .models import RaffleState


class RaffleError(Exception):
    """Base class for all raffle failures."""


class InsufficientPayment(RaffleError):
    """Payment is below the entrance fee."""

    def __init__(self, payment: int, entrance_fee: int) -> None:
        super().__init__(f"Payment of {payment} wei is below the entrance fee of {entrance_fee} wei")
        self.payment = payment
        self.entrance_fee = entrance_fee


class RaffleNotOpen(RaffleError):
    """Entries are only accepted while the raffle is OPEN."""

    def __init__(self, state: RaffleState) -> None:
        super().__init__(f"Raffle is not open (state={state.name})")
        self.state = state


class UpkeepNotNeeded(RaffleError):
    """A draw was requested while the readiness predicate is false."""

    def __init__(self, balance: int, num_players: int, state: RaffleState) -> None:
        super().__init__(
            f"Upkeep not needed (balance={balance}, players={num_players}, state={state.name})"
        )
        self.balance = balance
        self.num_players = num_players
        self.state = state


class UnknownRequest(RaffleError):
    """A fulfillment did not match the outstanding request."""

    def __init__(self, request_id: int, pending_request_id: Optional[int] = None, message: Optional[str] = None) -> None:
        super().__init__(
            message
            or f"Unknown randomness request {request_id} (pending={pending_request_id})"
        )
        self.request_id = request_id
        self.pending_request_id = pending_request_id


class OnlyCoordinatorCanFulfill(UnknownRequest):
    """A fulfillment was delivered by someone other than the coordinator."""

    def __init__(self, request_id: int, caller: str, coordinator: str) -> None:
        super().__init__(
            request_id,
            message=f"Only coordinator {coordinator} can fulfill; got {caller}",
        )
        self.caller = caller
        self.coordinator = coordinator


class TransferFailed(RaffleError):
    """The payout to the winner could not be completed."""

    def __init__(self, winner: str, amount: int) -> None:
        super().__init__(f"Transfer of {amount} wei to {winner} failed")
        self.winner = winner
        self.amount = amount


__all__ = [
    "RaffleError",
    "InsufficientPayment",
    "RaffleNotOpen",
    "UpkeepNotNeeded",
    "UnknownRequest",
    "OnlyCoordinatorCanFulfill",
    "TransferFailed",
]
