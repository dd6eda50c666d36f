"""Service container shared by the API routes.

One instance is built at startup and stored on ``app.state.services``.
"""
import logging
from typing import Any, Dict, Optional

from auth import AuthManager, TokenValidator
from commissions import CommissionEngine
from ledger.store import LedgerStore
from listings import ListingManager
from payments import PaymentVerifier
from purchases import PurchaseOrchestrator
from replication import ContentReplicator
from rpc.usdc import UsdcGateway

logger = logging.getLogger(__name__)


class Services:
    """Wires the ledger store to every component that uses it."""

    def __init__(
        self,
        store: LedgerStore,
        auth: AuthManager,
        verifier: PaymentVerifier,
        gateway: Optional[UsdcGateway] = None,
        network: str = 'base-sepolia',
        asset: str = '',
        decimals: int = 6,
        max_depth: int = 32,
        max_items: int = 5000
    ):
        self.store = store
        self.auth = auth
        self.gateway = gateway
        self.network = network
        self.listings = ListingManager(store)
        self.replicator = ContentReplicator(store, max_depth=max_depth, max_items=max_items)
        self.commissions = CommissionEngine(store, gateway, network=network)
        self.orchestrator = PurchaseOrchestrator(
            store,
            verifier,
            self.replicator,
            self.commissions,
            network=network,
            asset=asset,
            decimals=decimals
        )

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], store: LedgerStore) -> 'Services':
        """Build the production services for ``store`` from loaded settings."""
        gateway = UsdcGateway.from_settings(settings)
        verifier = PaymentVerifier.from_settings(settings, gateway)
        validator = TokenValidator(
            settings['jwt_secret'],
            algorithm=settings['jwt_algorithm'],
            audience=settings['jwt_audience']
        )
        logger.info(
            f"Settling on {settings['chain_network']} with USDC {settings['usdc_contract']} "
            f"(on-chain verification {'on' if settings['verify_onchain'] else 'off'})"
        )
        return cls(
            store,
            AuthManager(store, validator),
            verifier,
            gateway=gateway,
            network=settings['chain_network'],
            asset=settings['usdc_contract'],
            decimals=settings['usdc_decimals'],
            max_depth=settings['replication_max_depth'],
            max_items=settings['replication_max_items']
        )
