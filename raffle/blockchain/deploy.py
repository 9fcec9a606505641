"""
Local deployment bootstrap for the raffle.

Mirrors the development-network deploy flow: deploy a VRF coordinator mock,
create and fund a subscription, build the raffle against it and register
the raffle as a consumer of the subscription.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

from raffle.blockchain.coordinator import BASE_FEE, FUND_AMOUNT, GAS_PRICE_LINK, VRFCoordinatorMock
from raffle.blockchain.ledger import Ledger
from raffle.lottery.event_manager import MemoryStore
from raffle.lottery.raffle import Raffle
from raffle.utils.common import to_wei
from raffle.utils.config import build_raffle_config, get_config_value, get_network, is_development_chain
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class Deployment:
    """Everything produced by :func:`deploy_local_raffle`."""

    raffle: Raffle
    coordinator: VRFCoordinatorMock
    subscription_id: int
    network: Dict[str, Any]


def deploy_local_raffle(
    config: Dict[str, Any],
    *,
    store: MemoryStore,
    ledger: Ledger,
    clock: Callable[[], float] = time.time,
) -> Deployment:
    """Deploy the coordinator mock and a raffle wired to it.

    Raises ``ValueError`` for networks that are not development chains.
    """
    network = get_network(config)
    if not is_development_chain(config):
        raise ValueError(f"Network {network['name']} is not a development chain; live deployment is not supported")

    logger.info(f"Local network {network['name']} detected! Deploying mocks...")
    coordinator = VRFCoordinatorMock(
        to_wei(get_config_value(config, "oracle.base_fee", BASE_FEE)),
        int(get_config_value(config, "oracle.gas_price_link", GAS_PRICE_LINK)),
        store=store,
        clock=clock,
    )
    subscription_id = coordinator.create_subscription()
    coordinator.fund_subscription(subscription_id, to_wei(get_config_value(config, "oracle.fund_amount", FUND_AMOUNT)))
    logger.info("Mocks deployed; subscription %s funded", subscription_id)

    raffle_config = build_raffle_config(
        config,
        coordinator_address=coordinator.address,
        subscription_id=subscription_id,
    )
    raffle = Raffle(raffle_config, coordinator, ledger, store=store, clock=clock)
    coordinator.add_consumer(subscription_id, raffle.address)
    store.set_raffle_snapshot(raffle.snapshot())

    logger.info(
        "Raffle deployed at %s (fee=%s wei, interval=%ss, subscription=%s)",
        raffle.address,
        raffle.get_entrance_fee(),
        raffle.get_interval(),
        subscription_id,
    )
    return Deployment(raffle=raffle, coordinator=coordinator, subscription_id=subscription_id, network=network)
