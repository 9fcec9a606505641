"""FastAPI web server for the raffle service.

Routes reach the raffle through ``asyncio.to_thread``: raffle calls wait on
its lock, which a payout in progress can hold for as long as a transfer
takes to confirm.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from raffle.blockchain.client import BlockchainClient
from raffle.lottery.errors import InsufficientPayment, RaffleError, RaffleNotOpen, UpkeepNotNeeded
from raffle.lottery.event_manager import MemoryStore, memory_store
from raffle.lottery.models import LiveFeedItem, RaffleSnapshot, RoundSnapshot
from raffle.lottery.operator import UpkeepOperator
from raffle.lottery.raffle import Raffle
from raffle.utils.common import from_wei
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

# Store events forwarded to websocket clients.
BROADCAST_EVENTS = ("raffle_update", "history_update", "live_feed", "raffle_event")


class EnterRequest(BaseModel):
    player: str
    amount_wei: int


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RaffleWebServer:
    """HTTP and WebSocket gateway for the raffle."""

    def __init__(
        self,
        config: Dict[str, Any],
        raffle: Raffle,
        operator: Optional[UpkeepOperator] = None,
        blockchain_client: Optional[BlockchainClient] = None,
        store: MemoryStore = memory_store,
    ) -> None:
        self.config = config
        self.raffle = raffle
        self.operator = operator
        self.blockchain_client = blockchain_client
        self._store = store

        self.app = FastAPI(
            title="VRF Raffle API",
            description="HTTP surface for the automated VRF raffle",
            version="1.0.0",
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._broadcast_queue: Optional[asyncio.Queue[Tuple[str, Dict[str, Any] | None]]] = None
        self._broadcast_task: Optional[asyncio.Task[None]] = None
        self._ws_lock: Optional[asyncio.Lock] = None
        self._listeners_registered = False
        self._websockets: Set[WebSocket] = set()
        self._server = None

        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

    # ------------------------------------------------------------------
    # FastAPI scaffolding
    # ------------------------------------------------------------------
    def _setup_middleware(self) -> None:
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_exception_handlers(self) -> None:
        @self.app.exception_handler(RaffleError)
        async def raffle_error_handler(request: Request, exc: RaffleError) -> JSONResponse:
            if isinstance(exc, InsufficientPayment):
                status_code = 400
            elif isinstance(exc, (RaffleNotOpen, UpkeepNotNeeded)):
                status_code = 409
            else:
                status_code = 500
            return JSONResponse(
                status_code=status_code,
                content={"error": type(exc).__name__, "detail": str(exc)},
            )

    def _setup_routes(self) -> None:
        # ------------------------------------------------------------------
        # Health & status
        # ------------------------------------------------------------------
        @self.app.get("/api/health")
        async def health_check() -> Dict[str, Any]:
            blockchain_health: Dict[str, Any] | None = None
            if self.blockchain_client:
                blockchain_health = await self.blockchain_client.health_check()

            operator_state = await self._operator_status() or {}
            snapshot = await asyncio.to_thread(self.raffle.snapshot)
            return {
                "status": "ok",
                "timestamp": _now_iso(),
                "components": {
                    "web": True,
                    "operator": operator_state.get("status", "unavailable"),
                    "blockchain": blockchain_health or {"status": "unavailable"},
                    "raffle": {"round": snapshot.round_id, "state": snapshot.state.name},
                },
            }

        # ------------------------------------------------------------------
        # Raffle state
        # ------------------------------------------------------------------
        @self.app.get("/api/raffle/status")
        async def get_raffle_status() -> Dict[str, Any]:
            response = self._serialize_snapshot(await asyncio.to_thread(self.raffle.snapshot))
            response["operator"] = await self._operator_status()
            response["blockchain"] = self.blockchain_client.get_client_status() if self.blockchain_client else None
            response["timestamp"] = _now_iso()
            return response

        @self.app.get("/api/raffle/players")
        async def get_players() -> Dict[str, Any]:
            snapshot = await asyncio.to_thread(self.raffle.snapshot)
            return {
                "round_id": snapshot.round_id,
                "players": snapshot.players,
                "total_players": len(snapshot.players),
                "pooled_balance_wei": snapshot.pooled_balance,
            }

        @self.app.get("/api/raffle/players/{index}")
        async def get_player(index: int) -> Dict[str, Any]:
            try:
                player = await asyncio.to_thread(self.raffle.get_player, index)
            except IndexError as exc:
                raise HTTPException(status_code=404, detail=str(exc))
            return {"index": index, "player": player}

        @self.app.post("/api/raffle/enter")
        async def enter_raffle(request: EnterRequest) -> Dict[str, Any]:
            def enter() -> RaffleSnapshot:
                self.raffle.enter_raffle(request.player, request.amount_wei)
                return self.raffle.snapshot()

            try:
                snapshot = await asyncio.to_thread(enter)
            except ValueError as exc:
                raise HTTPException(status_code=422, detail=str(exc))
            return {
                "status": "entered",
                "round_id": snapshot.round_id,
                "number_of_players": len(snapshot.players),
                "pooled_balance_wei": snapshot.pooled_balance,
            }

        # ------------------------------------------------------------------
        # Upkeep
        # ------------------------------------------------------------------
        @self.app.get("/api/upkeep")
        async def check_upkeep() -> Dict[str, Any]:
            upkeep_needed, perform_data = await asyncio.to_thread(self.raffle.check_upkeep, b"")
            return {"upkeep_needed": upkeep_needed, "perform_data": "0x" + perform_data.hex()}

        @self.app.post("/api/upkeep/perform")
        async def perform_upkeep() -> Dict[str, Any]:
            def perform() -> Tuple[int, RaffleSnapshot]:
                return self.raffle.perform_upkeep(b""), self.raffle.snapshot()

            request_id, snapshot = await asyncio.to_thread(perform)
            return {
                "request_id": request_id,
                "round_id": snapshot.round_id,
                "state": snapshot.state.name,
            }

        # ------------------------------------------------------------------
        # History & activity
        # ------------------------------------------------------------------
        @self.app.get("/api/history")
        async def get_round_history(limit: int = 20) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            history = self._store.get_round_history(limit=limit)
            rounds = [self._serialize_history_round(item) for item in reversed(history)]
            return {
                "rounds": rounds,
                "summary": {
                    "total_rounds": len(rounds),
                    "total_paid_wei": sum(r["prize_wei"] for r in rounds),
                },
                "recent_winner": await asyncio.to_thread(self.raffle.get_recent_winner),
                "timestamp": _now_iso(),
            }

        @self.app.get("/api/activities")
        async def get_live_feed(limit: int = 50) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            feed = self._store.get_live_feed(limit=limit)
            return {"activities": [self._serialize_activity(item) for item in reversed(feed)]}

        # ------------------------------------------------------------------
        # WebSocket endpoint
        # ------------------------------------------------------------------
        @self.app.websocket("/ws/raffle")
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await websocket.accept()
            if self._ws_lock is None:
                self._ws_lock = asyncio.Lock()
            async with self._ws_lock:
                self._websockets.add(websocket)
            logger.info("WebSocket client connected (%s total)", len(self._websockets))
            try:
                initial = await asyncio.to_thread(self._build_initial_snapshot)
                await websocket.send_json({"type": "snapshot", "payload": initial})
                while True:
                    try:
                        await websocket.receive_text()
                    except WebSocketDisconnect:
                        break
            finally:
                async with self._ws_lock:
                    self._websockets.discard(websocket)
                logger.info("WebSocket client disconnected (%s remaining)", len(self._websockets))

    async def _operator_status(self) -> Optional[Dict[str, Any]]:
        if self.operator is None:
            return None
        return await asyncio.to_thread(self.operator.get_status)

    # ------------------------------------------------------------------
    # Lifecycle management
    # ------------------------------------------------------------------
    async def start(self, host: str = "0.0.0.0", port: int = 6080) -> None:
        import uvicorn

        logger.info("Starting raffle web server on %s:%s", host, port)
        self._loop = asyncio.get_running_loop()
        if self._broadcast_queue is None:
            self._broadcast_queue = asyncio.Queue()
        if self._ws_lock is None:
            self._ws_lock = asyncio.Lock()
        self._register_store_listeners()
        if self._broadcast_task is None:
            self._broadcast_task = asyncio.create_task(self._broadcast_loop(), name="raffle-web-broadcast")

        config = uvicorn.Config(self.app, host=host, port=port, log_level="info", access_log=True)
        self._server = uvicorn.Server(config)
        try:
            await self._server.serve()
        finally:
            logger.info("Raffle web server stopped")

    async def stop(self) -> None:
        logger.info("Stopping raffle web server")
        if self._server is not None:
            self._server.should_exit = True
        if self._broadcast_task:
            self._broadcast_task.cancel()
            try:
                await self._broadcast_task
            except asyncio.CancelledError:
                pass
            self._broadcast_task = None
        if self._ws_lock is None:
            self._ws_lock = asyncio.Lock()
        async with self._ws_lock:
            for websocket in list(self._websockets):
                try:
                    await websocket.close(code=1001, reason="Server shutdown")
                except RuntimeError as exc:
                    logger.debug("Error closing websocket: %s", exc)
            self._websockets.clear()

    # ------------------------------------------------------------------
    # Store listeners & broadcasting
    # ------------------------------------------------------------------
    def _register_store_listeners(self) -> None:
        if self._listeners_registered:
            return
        for event in BROADCAST_EVENTS:
            self._store.add_listener(event, lambda payload, evt=event: self._enqueue_broadcast(evt, payload))
        self._listeners_registered = True

    def _enqueue_broadcast(self, event_type: str, payload: Dict[str, Any] | None) -> None:
        if not self._broadcast_queue or not self._loop:
            return
        try:
            self._loop.call_soon_threadsafe(self._broadcast_queue.put_nowait, (event_type, payload))
            logger.debug("Enqueued broadcast for %s", event_type)
        except RuntimeError:
            logger.debug("Failed to enqueue broadcast for %s", event_type)

    async def _broadcast_loop(self) -> None:
        assert self._broadcast_queue is not None
        while True:
            try:
                event_type, payload = await self._broadcast_queue.get()
                await self._broadcast_to_clients(event_type, payload)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception("Broadcast loop error: %s", exc)

    async def _broadcast_to_clients(self, event_type: str, payload: Dict[str, Any] | None) -> None:
        if self._ws_lock is None:
            self._ws_lock = asyncio.Lock()
        message = {"type": event_type, "payload": payload, "timestamp": _now_iso()}
        async with self._ws_lock:
            if not self._websockets:
                return
            to_remove: List[WebSocket] = []
            for websocket in self._websockets:
                try:
                    await websocket.send_json(message)
                except Exception as exc:
                    logger.debug("WebSocket send failed: %s", exc)
                    to_remove.append(websocket)
            for websocket in to_remove:
                self._websockets.discard(websocket)

    def _build_initial_snapshot(self) -> Dict[str, Any]:
        history = self._store.get_round_history(limit=10)
        feed = self._store.get_live_feed(limit=20)
        return {
            "raffle": self._serialize_snapshot(self.raffle.snapshot()),
            "history": [self._serialize_history_round(item) for item in reversed(history)],
            "live_feed": [self._serialize_activity(item) for item in reversed(feed)],
            "operator": self.operator.get_status() if self.operator else {},
        }

    # ------------------------------------------------------------------
    # Serialization helpers
    # ------------------------------------------------------------------
    def _serialize_snapshot(self, snapshot: RaffleSnapshot) -> Dict[str, Any]:
        return {
            "address": self.raffle.address,
            "round_id": snapshot.round_id,
            "state": snapshot.state.value,
            "state_label": snapshot.state.name,
            "entrance_fee_wei": snapshot.entrance_fee,
            "entrance_fee_eth": str(from_wei(snapshot.entrance_fee)),
            "interval": snapshot.interval,
            "last_timestamp": snapshot.last_timestamp,
            "players": snapshot.players,
            "number_of_players": len(snapshot.players),
            "pooled_balance_wei": snapshot.pooled_balance,
            "pending_request_id": snapshot.pending_request_id,
            "recent_winner": snapshot.recent_winner,
        }

    def _serialize_history_round(self, snapshot: RoundSnapshot) -> Dict[str, Any]:
        return {
            "round_id": snapshot.round_id,
            "winner": snapshot.winner,
            "prize_wei": snapshot.prize,
            "participant_count": snapshot.participant_count,
            "request_id": snapshot.request_id,
            "random_word": str(snapshot.random_word),
            "started_at": snapshot.started_at,
            "finished_at": snapshot.finished_at,
        }

    def _serialize_activity(self, item: LiveFeedItem) -> Dict[str, Any]:
        user_val = item.details.get("player") or item.details.get("winner")
        if not user_val:
            round_id = item.details.get("roundId")
            user_val = f"round:{round_id}" if round_id is not None else "system"

        return {
            "activity_id": item.get_item_id(),
            "user_address": str(user_val),
            "activity_type": item.event_type,
            "details": item.details,
            "message": item.message,
            "timestamp": item.created_at.isoformat(),
        }
