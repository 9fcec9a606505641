"""Blockchain client used to pay raffle winners on-chain."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Dict, Optional

from eth_account import Account
from web3 import Web3

from raffle.utils.common import normalize_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

# Gas used by a plain value transfer; used when estimation is unavailable.
VALUE_TRANSFER_GAS = 21000


class BlockchainClient:
    """Thin wrapper around web3.py holding the raffle treasury account."""

    def __init__(self, config: Dict[str, Any]):
        self._config = config

        blockchain_cfg = config.get("blockchain", {})
        self.rpc_url: str = blockchain_cfg.get("rpc_url", "http://127.0.0.1:8545")
        try:
            self.rpc_timeout: float = float(blockchain_cfg.get("rpc_timeout", 10.0))
        except (TypeError, ValueError):
            self.rpc_timeout = 10.0
        self.chain_id: int = int(blockchain_cfg.get("chain_id", 31337))

        self._w3: Optional[Web3] = None

        private_key = blockchain_cfg.get("treasury_private_key")
        self.account = Account.from_key(private_key) if private_key else None
        if self.account:
            logger.info("Treasury account loaded: %s", self.account.address)

        gas_price_setting = blockchain_cfg.get("gas_price")
        self._gas_price_override: Optional[int] = None
        if gas_price_setting:
            try:
                self._gas_price_override = Web3.to_wei(Decimal(str(gas_price_setting)), "gwei")
            except (ArithmeticError, ValueError) as exc:
                logger.warning("Unable to parse gas price '%s': %s", gas_price_setting, exc)

        self._gas_multiplier = float(blockchain_cfg.get("gas_multiplier", 1.15))
        self._latest_block: Optional[int] = None

    async def initialize(self) -> None:
        """Establish the RPC connection."""
        self._w3 = Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.rpc_timeout}))
        connected = await asyncio.to_thread(self._w3.is_connected)
        if not connected:
            raise ConnectionError(f"Failed to connect to RPC at {self.rpc_url}")

        logger.info("Connected to RPC %s (chain id %s)", self.rpc_url, self.chain_id)

        try:
            actual_chain_id = await asyncio.to_thread(lambda: self._w3.eth.chain_id)
            if actual_chain_id != self.chain_id:
                logger.warning("Chain ID mismatch: expected %s, got %s", self.chain_id, actual_chain_id)
        except Exception as exc:
            logger.warning("Could not verify chain ID: %s", exc)

    async def close(self) -> None:
        """Drop the provider reference; the HTTP provider closes automatically."""
        self._w3 = None

    def _ensure_web3(self) -> Web3:
        if not self._w3:
            raise RuntimeError("Web3 provider not initialised")
        return self._w3

    def send_value(self, to: str, amount: int) -> str:
        """Sign and send a value transfer from the treasury account.

        Returns the transaction hash as a 0x-prefixed hex string.
        """
        if not self.account:
            raise ValueError("Treasury account not configured")

        w3 = self._ensure_web3()
        recipient = normalize_address(to)
        txn: Dict[str, Any] = {
            "from": self.account.address,
            "to": recipient,
            "value": int(amount),
        }
        try:
            gas_estimate = int(w3.eth.estimate_gas(txn))
        except Exception as exc:
            logger.debug("Gas estimation failed (%s); using %s", exc, VALUE_TRANSFER_GAS)
            gas_estimate = VALUE_TRANSFER_GAS

        txn.update(
            {
                "gas": int(gas_estimate * self._gas_multiplier),
                "gasPrice": self._gas_price_override or w3.eth.gas_price,
                "nonce": w3.eth.get_transaction_count(self.account.address),
                "chainId": self.chain_id,
            }
        )
        signed = self.account.sign_transaction(txn)
        tx_hash = Web3.to_hex(w3.eth.send_raw_transaction(signed.raw_transaction))
        logger.info("Sent %s wei to %s in %s", amount, recipient, tx_hash)
        return tx_hash

    def wait_for_transaction(self, tx_hash: str, timeout: int = 180) -> Dict[str, Any]:
        w3 = self._ensure_web3()
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        return {
            "status": int(receipt["status"]),
            "blockNumber": int(receipt["blockNumber"]),
            "transactionHash": Web3.to_hex(receipt["transactionHash"]),
            "gasUsed": int(receipt["gasUsed"]),
        }

    def get_balance(self, address: str) -> int:
        w3 = self._ensure_web3()
        return int(w3.eth.get_balance(normalize_address(address)))

    async def get_latest_block(self) -> int:
        w3 = self._ensure_web3()
        self._latest_block = int(await asyncio.to_thread(lambda: w3.eth.block_number))
        return self._latest_block

    async def health_check(self) -> Dict[str, Any]:
        try:
            latest_block = await self.get_latest_block()
            return {"status": "healthy", "latestBlock": latest_block}
        except Exception as exc:
            logger.exception("Blockchain health check failed")
            return {"status": "error", "detail": str(exc)}

    def get_client_status(self) -> Dict[str, Any]:
        return {
            "rpcUrl": self.rpc_url,
            "chainId": self.chain_id,
            "treasury": self.account.address if self.account else None,
            "connected": self._w3 is not None,
        }
