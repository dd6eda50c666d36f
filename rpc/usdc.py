"""Async USDC gateway over the chain RPC and the signer service."""
import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import backoff

from . import ChainRPC, NodeConnectionError
from .erc20 import decode_transfers, decode_uint256, encode_balance_of, from_minor_units, to_minor_units
from .signer import SignerClient

logger = logging.getLogger(__name__)


class UsdcGateway:
    """Reads balances and receipts, and submits transfers, for one USDC contract."""

    def __init__(
        self,
        rpc: ChainRPC,
        signer: SignerClient,
        contract: str,
        decimals: int = 6,
        max_tries: int = 3
    ):
        self.rpc = rpc
        self.signer = signer
        self.contract = contract
        self.decimals = decimals
        self.max_tries = max_tries

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'UsdcGateway':
        return cls(
            ChainRPC.from_settings(settings),
            SignerClient.from_settings(settings),
            settings['usdc_contract'],
            decimals=settings['usdc_decimals']
        )

    async def _read(self, method, *args) -> Any:
        @backoff.on_exception(
            backoff.expo,
            NodeConnectionError,
            max_tries=self.max_tries,
            logger=logger
        )
        async def call():
            return await asyncio.to_thread(method, *args)

        return await call()

    async def get_balance(self, address: str) -> Decimal:
        """Live USDC balance of ``address``."""
        data = await self._read(
            self.rpc.eth_call,
            {'to': self.contract, 'data': encode_balance_of(address)},
            'latest'
        )
        return from_minor_units(decode_uint256(data), self.decimals)

    async def get_transfers(self, tx_hash: str) -> Tuple[Optional[bool], List[Dict[str, Any]]]:
        """Look up a transaction's USDC transfers.

        Returns:
            (succeeded, transfers). succeeded is None when the transaction
            has no receipt yet. Transfer values are in token units.
        """
        receipt = await self._read(self.rpc.eth_getTransactionReceipt, tx_hash)
        if not receipt:
            return None, []
        succeeded = receipt.get('status') == '0x1'
        transfers = [
            dict(t, value=from_minor_units(t['value'], self.decimals))
            for t in decode_transfers(receipt, self.contract)
        ]
        return succeeded, transfers

    async def transfer(self, from_address: str, to_address: str, amount: Decimal) -> str:
        """Move ``amount`` USDC between wallets and return the chain tx hash."""
        minor_units = to_minor_units(amount, self.decimals)
        return await asyncio.to_thread(self.signer.transfer, from_address, to_address, minor_units)
