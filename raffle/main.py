#!/usr/bin/env python3
"""
Automated VRF Raffle Application

Main entry point: deploys the raffle against a local VRF coordinator, then
runs the upkeep operator, the oracle auto-fulfiller and the web server until
a shutdown signal is received.
"""

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from raffle.blockchain.client import BlockchainClient
from raffle.blockchain.coordinator import AutoFulfiller
from raffle.blockchain.deploy import Deployment, deploy_local_raffle
from raffle.blockchain.ledger import build_ledger
from raffle.lottery.event_manager import MemoryStore, memory_store
from raffle.lottery.operator import UpkeepOperator
from raffle.utils.common import from_wei
from raffle.utils.config import get_config_value, load_config
from raffle.utils.logger import configure_logging, get_logger
from raffle.web_server import RaffleWebServer

logger = get_logger(__name__)


class RaffleApp:
    """Raffle service application.

    Wires the payout ledger, the locally deployed raffle and coordinator,
    the upkeep operator, the auto-fulfiller and the FastAPI web server, and
    handles graceful shutdown.
    """

    def __init__(self, config: Optional[dict] = None, store: MemoryStore = memory_store):
        self.config = config if config is not None else load_config()
        # LOG_LEVEL / LOG_FILE from the environment (or .env) win over the config file
        configure_logging(
            os.getenv("LOG_LEVEL") or get_config_value(self.config, "logging.level"),
            os.getenv("LOG_FILE") or get_config_value(self.config, "logging.file"),
        )
        self.store = store
        self.store.set_feed_capacity(int(get_config_value(self.config, "server.feed_capacity", 100)))
        self.store.set_history_capacity(int(get_config_value(self.config, "server.history_capacity", 20)))
        self.blockchain_client: Optional[BlockchainClient] = None
        self.deployment: Optional[Deployment] = None
        self.operator: Optional[UpkeepOperator] = None
        self.fulfiller: Optional[AutoFulfiller] = None
        self.web_server: Optional[RaffleWebServer] = None
        self.running = True

        logger.info("🎲 Raffle application initialized")

    def _handle_signal(self, signum, frame):
        logger.info(f"📡 Received signal {signum}, initiating graceful shutdown...")
        self.running = False

    def _display_config_summary(self):
        """Display key configuration options for diagnostics."""
        logger.info("=" * 60)
        logger.info("📋 CONFIGURATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"🆔 Chain ID: {get_config_value(self.config, 'network.chain_id', 31337)}")
        logger.info(f"💰 Ledger: {get_config_value(self.config, 'ledger.backend', 'memory')}")
        logger.info(f"⏱️  Check Interval: {get_config_value(self.config, 'operator.check_interval', 5)}s")
        logger.info(f"🔮 Auto Fulfill: {get_config_value(self.config, 'oracle.auto_fulfill', True)}")
        logger.info(f"🌍 Server: {get_config_value(self.config, 'server.host', '0.0.0.0')}:"
                    f"{get_config_value(self.config, 'server.port', 6080)}")
        logger.info("=" * 60)

    async def initialize(self):
        """Deploy the raffle and build every service."""
        logger.info("🚀 Initializing raffle application")
        self._display_config_summary()

        if str(get_config_value(self.config, "ledger.backend", "memory")).lower() == "chain":
            logger.info("🔗 Initializing blockchain client...")
            self.blockchain_client = BlockchainClient(self.config)
            await self.blockchain_client.initialize()

        ledger = build_ledger(self.config, self.blockchain_client)
        self.deployment = deploy_local_raffle(self.config, store=self.store, ledger=ledger)
        raffle = self.deployment.raffle

        self.operator = UpkeepOperator(raffle, self.config)
        await self.operator.initialize()

        if _as_bool(get_config_value(self.config, "oracle.auto_fulfill", True)):
            self.fulfiller = AutoFulfiller(
                self.deployment.coordinator,
                raffle,
                self.store,
                delay=float(get_config_value(self.config, "oracle.fulfill_delay", 2.0)),
                max_attempts=int(get_config_value(self.config, "oracle.max_attempts", 3)),
            )

        self.web_server = RaffleWebServer(
            self.config,
            raffle,
            operator=self.operator,
            blockchain_client=self.blockchain_client,
            store=self.store,
        )
        logger.info("🎉 Application initialization completed")

    async def start(self):
        """Start services and run until a shutdown signal is received."""
        try:
            await self.initialize()

            if self.fulfiller:
                await self.fulfiller.start()
            await self.operator.start()

            server_host = get_config_value(self.config, "server.host", "0.0.0.0")
            server_port = int(get_config_value(self.config, "server.port", 6080))
            server_task = asyncio.create_task(self.web_server.start(host=server_host, port=server_port))
            # Give the server a moment to bind; a failed bind finishes the task
            await asyncio.sleep(0.2)
            if server_task.done() and server_task.exception():
                raise server_task.exception()

            self._display_startup_summary(server_host, server_port)

            while self.running:
                await asyncio.sleep(1)

            logger.info("🛑 Shutdown signal received, stopping application...")
        finally:
            await self.stop()

    async def stop(self):
        """Stop all services and cleanup resources."""
        logger.info("🛑 Stopping raffle application")
        self.running = False

        if self.operator:
            await self.operator.stop()
            logger.info("✅ Upkeep operator stopped")
        if self.fulfiller:
            await self.fulfiller.stop()
            logger.info("✅ Auto fulfiller stopped")
        if self.web_server:
            await self.web_server.stop()
            logger.info("✅ Web server stopped")
        if self.blockchain_client:
            await self.blockchain_client.close()
            logger.info("✅ Blockchain client connections closed")

        self.store.clear_all_data()
        logger.info("🟢 Raffle application stopped")

    def _display_startup_summary(self, host: str, port: int):
        raffle = self.deployment.raffle
        logger.info("=" * 60)
        logger.info("🔰 RAFFLE APPLICATION STARTED")
        logger.info("=" * 60)
        logger.info(f"📄 Raffle Address: {raffle.address}")
        logger.info(f"🔮 Coordinator: {self.deployment.coordinator.address} (subscription {self.deployment.subscription_id})")
        logger.info(f"💰 Entrance Fee: {from_wei(raffle.get_entrance_fee())} ETH")
        logger.info(f"⏱️  Interval: {raffle.get_interval()}s")
        logger.info(f"🏠 API: http://{host}:{port}/api/")
        logger.info(f"📡 WebSocket: ws://{host}:{port}/ws/raffle")
        logger.info("=" * 60)


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


async def main():
    """Main entry point for the raffle application"""
    app = RaffleApp()

    signal.signal(signal.SIGINT, app._handle_signal)
    signal.signal(signal.SIGTERM, app._handle_signal)

    try:
        await app.start()
    except Exception as e:
        logger.exception(f"❌ Raffle application failed: {e}")
        sys.exit(1)


def run():
    # Load .env from the project root
    load_dotenv(Path(__file__).parent.parent / ".env")
    asyncio.run(main())


if __name__ == "__main__":
    run()
