"""Client for the custodial signer service that moves USDC out of user wallets."""
import logging
from typing import Any, Dict, Optional

import requests

from . import NodeConnectionError, RPCError

logger = logging.getLogger(__name__)


class SignerError(RPCError):
    """Raised when the signer refuses or fails a transfer"""
    pass


class SignerClient:
    """Blocking HTTP client for ``POST {signer_url}/v1/transfers``.

    The signer holds the keys for user wallets and submits the transfer on
    chain. A transfer request is never retried here: a timeout does not prove
    the transfer was not broadcast.
    """

    def __init__(
        self,
        url: str,
        api_key: str = '',
        network: str = 'base-sepolia',
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.url = url.rstrip('/')
        self.network = network
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers['content-type'] = 'application/json'
        if api_key:
            self.session.headers['authorization'] = f"Bearer {api_key}"

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'SignerClient':
        return cls(
            settings['signer_url'],
            api_key=settings['signer_api_key'],
            network=settings['chain_network']
        )

    def transfer(self, from_address: str, to_address: str, minor_units: int) -> str:
        """Submit a USDC transfer and return its transaction hash.

        Raises:
            NodeConnectionError: Signer unreachable
            SignerError: Signer rejected the transfer
        """
        payload = {
            'from': from_address,
            'to': to_address,
            'amount': str(minor_units),
            'token': 'usdc',
            'network': self.network
        }
        try:
            response = self.session.post(
                f"{self.url}/v1/transfers", json=payload, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise NodeConnectionError(f"Signer request failed: {e}", method='transfer') from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            message = body.get('error') or body.get('message') or response.text
            raise SignerError(message, code=response.status_code, method='transfer')

        tx_hash = body.get('transactionHash') or body.get('transaction_hash')
        if not tx_hash:
            raise SignerError("Signer response missing transactionHash", method='transfer')

        logger.info(f"Signer submitted {minor_units} minor units {from_address} -> {to_address}: {tx_hash}")
        return tx_hash
