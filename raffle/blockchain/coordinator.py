"""Local VRF coordinator used on development networks.

:class:`VRFCoordinatorMock` keeps subscriptions and outstanding randomness
requests in memory and delivers random words to a consumer when
:meth:`VRFCoordinatorMock.fulfill_random_words` is called, the way the
Chainlink ``VRFCoordinatorV2Mock`` contract does on a local chain.
:class:`AutoFulfiller` plays the oracle network: it answers each request
after a configurable delay.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set

from eth_account import Account
from web3 import Web3

from raffle.lottery.event_manager import MemoryStore
from raffle.utils.common import normalize_address, to_wei
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

BASE_FEE = to_wei("0.25")  # LINK, 18 decimals
GAS_PRICE_LINK = 10**9  # LINK per gas
FUND_AMOUNT = to_wei("1")
MAX_NUM_WORDS = 500


class CoordinatorError(Exception):
    """Base class for coordinator failures."""


class InvalidSubscription(CoordinatorError):
    pass


class InvalidConsumer(CoordinatorError):
    pass


class NumWordsTooBig(CoordinatorError):
    pass


class InsufficientSubscriptionBalance(CoordinatorError):
    pass


class NonexistentRequest(CoordinatorError):
    def __init__(self, request_id: int) -> None:
        super().__init__("nonexistent request")
        self.request_id = request_id


class RandomWordsConsumer(Protocol):
    def fulfill_random_words(self, request_id: int, random_words: Sequence[int], *, caller: str) -> Any:
        ...


@dataclass
class Subscription:
    sub_id: int
    owner: Optional[str]
    balance: int = 0
    consumers: List[str] = field(default_factory=list)


@dataclass
class RandomWordsRequest:
    request_id: int
    sub_id: int
    key_hash: str
    request_confirmations: int
    callback_gas_limit: int
    num_words: int
    sender: str
    requested_at: int
    attempts: int = 0


class VRFCoordinatorMock:
    """In-memory VRF coordinator with subscription billing."""

    def __init__(
        self,
        base_fee: int = BASE_FEE,
        gas_price_link: int = GAS_PRICE_LINK,
        *,
        address: Optional[str] = None,
        store: Optional[MemoryStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_fee = int(base_fee)
        self.gas_price_link = int(gas_price_link)
        self.address = normalize_address(address) if address else Account.create().address
        self._store = store
        self._clock = clock
        self._lock = RLock()
        self._subscriptions: Dict[int, Subscription] = {}
        self._requests: Dict[int, RandomWordsRequest] = {}
        self._next_sub_id = 1
        self._next_request_id = 1
        logger.info(
            "VRF coordinator mock at %s (base_fee=%s, gas_price_link=%s)",
            self.address,
            self.base_fee,
            self.gas_price_link,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def create_subscription(self, owner: Optional[str] = None) -> int:
        with self._lock:
            sub_id = self._next_sub_id
            self._next_sub_id += 1
            self._subscriptions[sub_id] = Subscription(
                sub_id=sub_id,
                owner=normalize_address(owner) if owner else None,
            )
        self._emit("SubscriptionCreated", {"subId": sub_id, "owner": owner})
        return sub_id

    def fund_subscription(self, sub_id: int, amount: int) -> None:
        with self._lock:
            subscription = self._get_subscription(sub_id)
            old_balance = subscription.balance
            subscription.balance += int(amount)
        self._emit(
            "SubscriptionFunded",
            {"subId": sub_id, "oldBalance": old_balance, "newBalance": old_balance + int(amount)},
        )

    def add_consumer(self, sub_id: int, consumer: str) -> None:
        consumer = normalize_address(consumer)
        with self._lock:
            subscription = self._get_subscription(sub_id)
            if consumer in subscription.consumers:
                return
            subscription.consumers.append(consumer)
        self._emit("ConsumerAdded", {"subId": sub_id, "consumer": consumer})

    def remove_consumer(self, sub_id: int, consumer: str) -> None:
        consumer = normalize_address(consumer)
        with self._lock:
            subscription = self._get_subscription(sub_id)
            if consumer not in subscription.consumers:
                raise InvalidConsumer(f"{consumer} is not a consumer of subscription {sub_id}")
            subscription.consumers.remove(consumer)
        self._emit("ConsumerRemoved", {"subId": sub_id, "consumer": consumer})

    def consumer_is_added(self, sub_id: int, consumer: str) -> bool:
        with self._lock:
            return normalize_address(consumer) in self._get_subscription(sub_id).consumers

    def get_subscription(self, sub_id: int) -> Subscription:
        with self._lock:
            subscription = self._get_subscription(sub_id)
            return Subscription(
                sub_id=subscription.sub_id,
                owner=subscription.owner,
                balance=subscription.balance,
                consumers=list(subscription.consumers),
            )

    def _get_subscription(self, sub_id: int) -> Subscription:
        subscription = self._subscriptions.get(sub_id)
        if subscription is None:
            raise InvalidSubscription(f"Subscription {sub_id} does not exist")
        return subscription

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
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
        sender = normalize_address(sender)
        with self._lock:
            subscription = self._get_subscription(sub_id)
            if sender not in subscription.consumers:
                raise InvalidConsumer(f"{sender} is not a consumer of subscription {sub_id}")
            if num_words > MAX_NUM_WORDS:
                raise NumWordsTooBig(f"{num_words} words requested, at most {MAX_NUM_WORDS} allowed")

            request_id = self._next_request_id
            self._next_request_id += 1
            self._requests[request_id] = RandomWordsRequest(
                request_id=request_id,
                sub_id=sub_id,
                key_hash=key_hash,
                request_confirmations=request_confirmations,
                callback_gas_limit=callback_gas_limit,
                num_words=num_words,
                sender=sender,
                requested_at=int(self._clock()),
            )
        logger.info("Randomness request %s from %s (sub %s)", request_id, sender, sub_id)
        self._emit(
            "RandomWordsRequested",
            {
                "keyHash": key_hash,
                "requestId": request_id,
                "preSeed": request_id,
                "subId": sub_id,
                "minimumRequestConfirmations": request_confirmations,
                "callbackGasLimit": callback_gas_limit,
                "numWords": num_words,
                "sender": sender,
            },
        )
        return request_id

    def pending_request_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._requests)

    def fulfill_random_words(self, request_id: int, consumer: RandomWordsConsumer) -> bool:
        """Deliver pseudo-random words derived from ``request_id`` to ``consumer``."""
        return self.fulfill_random_words_with_override(request_id, consumer, [])

    def fulfill_random_words_with_override(
        self,
        request_id: int,
        consumer: RandomWordsConsumer,
        words: Sequence[int],
    ) -> bool:
        """Deliver ``words`` (or derived words when empty) to ``consumer``.

        Returns ``True`` when the consumer accepted the words. A consumer
        failure is reported as ``False``; the request then stays open so it
        can be delivered again, and the subscription is only charged for a
        successful delivery.

        Raises
        ------
        NonexistentRequest
            If ``request_id`` is not outstanding.
        InsufficientSubscriptionBalance
            If the subscription cannot pay for the delivery.
        """
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise NonexistentRequest(request_id)

            if not words:
                words = self.derive_random_words(request_id, request.num_words)
            elif len(words) != request.num_words:
                raise CoordinatorError(
                    f"InvalidRandomWords: expected {request.num_words}, got {len(words)}"
                )

            payment = self.base_fee + self.gas_price_link * request.callback_gas_limit
            subscription = self._get_subscription(request.sub_id)
            if subscription.balance < payment:
                raise InsufficientSubscriptionBalance(
                    f"Subscription {request.sub_id} balance {subscription.balance} < payment {payment}"
                )

            request.attempts += 1
            try:
                consumer.fulfill_random_words(request_id, list(words), caller=self.address)
                success = True
            except Exception as exc:
                logger.warning("Consumer callback for request %s failed: %s", request_id, exc)
                success = False

            if success:
                del self._requests[request_id]
                subscription.balance -= payment

        self._emit(
            "RandomWordsFulfilled",
            {
                "requestId": request_id,
                "outputSeed": request_id,
                "payment": payment if success else 0,
                "success": success,
            },
        )
        return success

    @staticmethod
    def derive_random_words(request_id: int, num_words: int) -> List[int]:
        """Return ``uint256(keccak256(abi.encode(request_id, i)))`` for each word."""
        return [
            int.from_bytes(Web3.solidity_keccak(["uint256", "uint256"], [request_id, i]), "big")
            for i in range(num_words)
        ]

    def _emit(self, name: str, args: Dict[str, Any]) -> None:
        if self._store is not None:
            self._store.emit_event(name, args, timestamp=int(self._clock()))


class AutoFulfiller:
    """Answers each ``RequestedRaffleWinner`` event after a delay.

    Failed deliveries are retried up to ``max_attempts`` times.
    """

    def __init__(
        self,
        coordinator: VRFCoordinatorMock,
        consumer: RandomWordsConsumer,
        store: MemoryStore,
        *,
        delay: float = 2.0,
        max_attempts: int = 3,
    ) -> None:
        self._coordinator = coordinator
        self._consumer = consumer
        self._store = store
        self._delay = delay
        self._max_attempts = max_attempts
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.warning("Auto fulfiller already running")
            return
        self._loop = asyncio.get_running_loop()
        self._store.add_listener("RequestedRaffleWinner", self._on_request)
        self._running = True
        logger.info("Auto fulfiller started (delay=%ss)", self._delay)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._store.remove_listener("RequestedRaffleWinner", self._on_request)
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Auto fulfiller stopped")

    def _on_request(self, payload: dict | None) -> None:
        if not payload or not self._running or self._loop is None:
            return
        request_id = payload.get("args", {}).get("requestId")
        if request_id is None:
            return
        self._loop.call_soon_threadsafe(self._schedule, int(request_id))

    def _schedule(self, request_id: int) -> None:
        task = asyncio.ensure_future(self._fulfill_later(request_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fulfill_later(self, request_id: int) -> None:
        for attempt in range(1, self._max_attempts + 1):
            await asyncio.sleep(self._delay)
            try:
                delivered = await asyncio.to_thread(
                    self._coordinator.fulfill_random_words, request_id, self._consumer
                )
            except CoordinatorError as exc:
                logger.error("Fulfillment of request %s failed: %s", request_id, exc)
                return
            if delivered:
                logger.info("Request %s fulfilled on attempt %s", request_id, attempt)
                return
            logger.warning("Request %s was not accepted (attempt %s/%s)", request_id, attempt, self._max_attempts)
        logger.error("Giving up on request %s after %s attempts", request_id, self._max_attempts)
