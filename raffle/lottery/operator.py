"""
Upkeep operator.

Plays the automation network: every ``operator.check_interval`` seconds it
asks the raffle whether upkeep is needed and, when it is, performs it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from raffle.lottery.errors import UpkeepNotNeeded
from raffle.lottery.models import OperatorStatus
from raffle.lottery.raffle import Raffle
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class UpkeepOperator:
    """Periodic check/perform loop driving raffle draws."""

    def __init__(self, raffle: Raffle, config: Dict[str, Any]) -> None:
        self._raffle = raffle
        self._config = config
        self._check_interval = float(config.get("operator", {}).get("check_interval", 5))
        self._status = OperatorStatus()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        logger.info("Initializing upkeep operator (check every %ss)", self._check_interval)
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start the background loop."""
        if self._status.is_running:
            logger.warning("Upkeep operator already running")
            return
        if self._stop_event is None:
            await self.initialize()
        self._stop_event.clear()
        self._status.is_running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Upkeep operator started")

    async def stop(self) -> None:
        """Stop the loop and wait for it to exit."""
        if not self._status.is_running:
            return
        logger.info("Stopping upkeep operator")
        self._status.is_running = False
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Upkeep operator stopped")

    async def run_once(self) -> Optional[int]:
        """Run one check/perform cycle.

        Returns the request id when a draw was started, else ``None``. Raffle
        calls run in a worker thread since they wait on the raffle lock, which
        a payout in progress holds.
        """
        self._status.record_check()
        upkeep_needed, perform_data = await asyncio.to_thread(self._raffle.check_upkeep, b"")
        if not upkeep_needed:
            return None

        try:
            request_id = await asyncio.to_thread(self._raffle.perform_upkeep, perform_data)
        except UpkeepNotNeeded as exc:
            # Conditions changed between check and perform; try again next cycle.
            self._status.record_rejection()
            logger.info("Upkeep rejected: %s", exc)
            return None

        self._status.record_draw(request_id)
        logger.info("Draw requested (request %s)", request_id)
        return request_id

    async def _loop(self) -> None:
        while self._status.is_running:
            try:
                await self.run_once()
            except Exception as exc:
                self._status.record_failure(exc)
                logger.error("Upkeep cycle failed: %s", exc)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._check_interval)
            except asyncio.TimeoutError:
                pass

    def get_status(self) -> Dict[str, Any]:
        """Return operator status."""
        status = self._status
        return {
            "status": "running" if status.is_running else "stopped",
            "check_interval": self._check_interval,
            "checks": status.checks,
            "draws_requested": status.draws_requested,
            "rejected_upkeeps": status.rejected_upkeeps,
            "consecutive_failures": status.consecutive_failures,
            "last_check": status.last_check.isoformat() if status.last_check else None,
            "last_request_id": status.last_request_id,
            "last_error": status.last_error,
            "current_round_id": self._raffle.get_round_id(),
        }
