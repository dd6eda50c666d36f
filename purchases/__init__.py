"""Purchase orchestrator.

Runs one purchase of a listing or a monetized shared link through these states:

    Requested -> ProofVerified -> RecordCreated -> ContentGranted
              -> CommissionSettled -> Complete

and exits to Rejected from any state before RecordCreated. Payment is always
verified before the transaction is written, and the transaction is always
written before any content is copied. Once the transaction exists the sale
stands: a failed content copy yields a degraded receipt and a failed
commission is only logged.
"""
import logging
import secrets
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from commissions import CommissionEngine
from ledger.errors import (
    AlreadyPurchasedError, ExpiredError, ForbiddenError, IntegrityError,
    InvalidProofError, InvalidRequestError, MissingWalletError, NotFoundError,
    PaymentRejectedError, PaymentRequiredError, SelfPurchaseError, SettlementError
)
from ledger.models import (
    AffiliateTransaction, ContentSource, Item, LinkKind, ListingStatus,
    PaymentProof, Transaction, TransactionStatus, utcnow
)
from ledger.store import LedgerStore
from payments import PaymentVerifier, build_payment_requirements
from replication import ContentReplicator

logger = logging.getLogger(__name__)

BASE36 = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ'
RECORD_ATTEMPTS = 3


class PurchaseState(str, Enum):
    REQUESTED = "requested"
    PROOF_VERIFIED = "proof_verified"
    RECORD_CREATED = "record_created"
    CONTENT_GRANTED = "content_granted"
    COMMISSION_SETTLED = "commission_settled"
    COMPLETE = "complete"
    REJECTED = "rejected"


class PurchaseTarget(BaseModel):
    """What is being bought, resolved from a listing or a shared link."""
    listing_id: Optional[str] = None
    shared_link_id: Optional[str] = None
    link_token: Optional[str] = None
    seller_id: str
    item_id: str
    price: Decimal
    title: str
    description: str = ""
    source: ContentSource

    @property
    def label(self) -> str:
        if self.listing_id:
            return f"listing {self.listing_id}"
        return f"shared link {self.link_token}"


class PurchaseReceipt(BaseModel):
    transaction: Transaction
    payment: Optional[PaymentProof] = None
    copied_item: Optional[Item] = None
    copied_path: Optional[str] = None
    affiliate_commission: Optional[AffiliateTransaction] = None
    state: PurchaseState
    warnings: List[str] = Field(default_factory=list)

    @property
    def access_granted(self) -> bool:
        return self.copied_item is not None


def to_base36(value: int) -> str:
    if value == 0:
        return '0'
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36[rem])
    return ''.join(reversed(digits))


def generate_receipt_number(now_ms: Optional[int] = None) -> str:
    """Human-legible receipt number: RCP-<base36 ms timestamp>-<6 random chars>."""
    if now_ms is None:
        now_ms = int(utcnow().timestamp() * 1000)
    suffix = ''.join(secrets.choice(BASE36) for _ in range(6))
    return f"RCP-{to_base36(now_ms)}-{suffix}"


class PurchaseOrchestrator:
    """Sequences verification, recording, content grant and commission for a sale."""

    def __init__(
        self,
        store: LedgerStore,
        verifier: PaymentVerifier,
        replicator: ContentReplicator,
        commissions: CommissionEngine,
        network: str = 'base-sepolia',
        asset: str = '',
        decimals: int = 6
    ):
        self.store = store
        self.verifier = verifier
        self.replicator = replicator
        self.commissions = commissions
        self.network = network
        self.asset = asset
        self.decimals = decimals

    # Targets

    async def listing_target(self, listing_id: str) -> PurchaseTarget:
        listing = await self.store.get_listing(listing_id)
        if listing is None or listing.status != ListingStatus.ACTIVE:
            raise NotFoundError("Listing not found or inactive", listing_id=listing_id)
        return PurchaseTarget(
            listing_id=listing.id,
            seller_id=listing.seller_id,
            item_id=listing.item_id,
            price=listing.price,
            title=listing.title,
            description=listing.description,
            source=ContentSource.MARKETPLACE
        )

    async def shared_link_target(self, link_token: str) -> PurchaseTarget:
        link = await self.store.get_shared_link(link_token)
        if link is None or not link.is_active or link.kind != LinkKind.MONETIZED:
            raise NotFoundError("Monetized link not found or expired", link_id=link_token)
        if link.is_expired():
            raise ExpiredError("Link has expired", link_id=link_token)
        return PurchaseTarget(
            shared_link_id=link.id,
            link_token=link.link_token,
            seller_id=link.owner_id,
            item_id=link.item_id,
            price=link.price,
            title=link.title,
            description=link.description,
            source=ContentSource.SHARED
        )

    async def seller_wallet(self, target: PurchaseTarget) -> str:
        seller = await self.store.get_user(target.seller_id)
        if seller is None or not seller.wallet_address:
            raise MissingWalletError("Seller has not set up a wallet to receive payments")
        return seller.wallet_address

    async def payment_requirements(self, target: PurchaseTarget, resource: str) -> Dict[str, Any]:
        """x402 requirements a client must satisfy to buy ``target``."""
        return build_payment_requirements(
            amount=target.price,
            pay_to=await self.seller_wallet(target),
            resource=resource,
            description=target.title or target.label,
            network=self.network,
            asset=self.asset,
            decimals=self.decimals
        )

    # Purchases

    async def purchase_listing(
        self,
        buyer_id: str,
        listing_id: str,
        assertion: Optional[str],
        affiliate_code: Optional[str] = None,
        resource: str = ''
    ) -> PurchaseReceipt:
        logger.debug(f"Purchase of listing {listing_id} by {buyer_id}: {PurchaseState.REQUESTED.value}")
        target = await self.listing_target(listing_id)
        return await self._purchase(target, buyer_id, assertion, affiliate_code, resource)

    async def pay_shared_link(
        self,
        buyer_id: str,
        link_token: str,
        assertion: Optional[str],
        affiliate_code: Optional[str] = None,
        resource: str = ''
    ) -> PurchaseReceipt:
        logger.debug(f"Payment for shared link {link_token} by {buyer_id}: {PurchaseState.REQUESTED.value}")
        target = await self.shared_link_target(link_token)
        return await self._purchase(target, buyer_id, assertion, affiliate_code, resource)

    async def _ensure_not_purchased(self, target: PurchaseTarget, buyer_id: str) -> None:
        existing = await self.store.find_completed_purchase(
            buyer_id, listing_id=target.listing_id, shared_link_id=target.shared_link_id
        )
        if target.listing_id is not None:
            if existing is not None:
                raise AlreadyPurchasedError("You have already purchased this item")
        elif existing is not None or await self.store.has_paid(target.shared_link_id, buyer_id):
            raise AlreadyPurchasedError("You have already paid for this content")

    async def _verify(self, target: PurchaseTarget, assertion: Optional[str], resource: str) -> PaymentProof:
        wallet = await self.seller_wallet(target)
        if not assertion:
            raise PaymentRequiredError(
                "Payment required",
                requirements=await self.payment_requirements(target, resource)
            )
        try:
            proof = await self.verifier.verify(assertion, target.price, wallet, self.network)
        except InvalidProofError as e:
            raise PaymentRejectedError(f"Payment rejected: {e.message}", **e.details) from e
        if not proof.success:
            raise PaymentRejectedError(
                "Payment was not successful", transaction_hash=proof.transaction_hash
            )
        return proof

    async def _record(self, target: PurchaseTarget, buyer_id: str, proof: PaymentProof) -> Transaction:
        metadata = {
            'transaction_hash': proof.transaction_hash,
            'network': proof.network,
            'payer': proof.payer_address,
            'success': proof.success,
            'payment_response_raw': proof.raw,
        }
        for attempt in range(RECORD_ATTEMPTS):
            transaction = Transaction(
                listing_id=target.listing_id,
                shared_link_id=target.shared_link_id,
                buyer_id=buyer_id,
                seller_id=target.seller_id,
                item_id=target.item_id,
                amount=target.price,
                status=TransactionStatus.COMPLETED,
                transaction_id=str(uuid4()),
                receipt_number=generate_receipt_number(),
                metadata=metadata
            )
            try:
                return await self.store.create_transaction(transaction)
            except IntegrityError as e:
                if e.constraint == IntegrityError.PURCHASE:
                    logger.info(f"Concurrent purchase of {target.label} by {buyer_id} lost the race")
                    raise AlreadyPurchasedError("You have already purchased this item") from e
                if e.constraint == IntegrityError.PAYMENT_PROOF:
                    logger.warning(f"Payment {proof.transaction_hash} presented twice")
                    raise PaymentRejectedError(
                        "This payment has already been used for another purchase",
                        transaction_hash=proof.transaction_hash
                    ) from e
                if e.constraint != IntegrityError.RECEIPT or attempt == RECORD_ATTEMPTS - 1:
                    raise
        raise InvalidRequestError("Could not allocate a unique receipt number")

    async def _grant(self, transaction: Transaction, source: ContentSource, receipt: PurchaseReceipt) -> None:
        try:
            copy = await self.replicator.replicate(transaction.item_id, transaction.buyer_id, source=source)
            receipt.copied_item = copy
            receipt.copied_path = await self.replicator.item_path(copy)
        except SettlementError as e:
            logger.warning(
                f"Transaction {transaction.id} recorded but content grant failed: {e.message}. "
                f"Retry with POST /transactions/{transaction.id}/grant"
            )
            receipt.warnings.append(
                f"Payment recorded but the content could not be copied to your drive: {e.message}"
            )

    async def _commission(self, transaction: Transaction, affiliate_code: str, receipt: PurchaseReceipt) -> None:
        try:
            receipt.affiliate_commission = await self.commissions.record_sale(transaction, affiliate_code)
        except Exception as e:
            logger.error(
                f"Commission for transaction {transaction.id} (code {affiliate_code}) failed: {e}",
                exc_info=True
            )
            receipt.warnings.append("Affiliate commission could not be recorded")

    async def _purchase(
        self,
        target: PurchaseTarget,
        buyer_id: str,
        assertion: Optional[str],
        affiliate_code: Optional[str],
        resource: str
    ) -> PurchaseReceipt:
        if target.seller_id == buyer_id:
            raise SelfPurchaseError("You cannot purchase your own content")

        await self._ensure_not_purchased(target, buyer_id)

        proof = await self._verify(target, assertion, resource)
        logger.debug(f"{target.label} for {buyer_id}: {PurchaseState.PROOF_VERIFIED.value} ({proof.transaction_hash})")

        transaction = await self._record(target, buyer_id, proof)
        logger.info(
            f"Recorded transaction {transaction.id} ({transaction.receipt_number}): "
            f"{buyer_id} bought {target.label} for {transaction.amount}"
        )
        receipt = PurchaseReceipt(transaction=transaction, payment=proof, state=PurchaseState.RECORD_CREATED)

        await self._grant(transaction, target.source, receipt)
        if receipt.access_granted:
            receipt.state = PurchaseState.CONTENT_GRANTED
            logger.debug(f"Transaction {transaction.id}: {receipt.state.value} at {receipt.copied_path}")

        if affiliate_code:
            await self._commission(transaction, affiliate_code, receipt)
            if receipt.affiliate_commission is not None:
                logger.debug(f"Transaction {transaction.id}: {PurchaseState.COMMISSION_SETTLED.value}")

        if receipt.access_granted:
            receipt.state = PurchaseState.COMPLETE
        return receipt

    # Shared link access

    async def check_shared_link_access(self, link_token: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Report whether a user may open a shared link, counting the visit."""
        link = await self.store.get_shared_link(link_token)
        if link is None or not link.is_active:
            raise NotFoundError("Link not found or expired", link_id=link_token)
        if link.is_expired():
            raise ExpiredError("Link has expired", link_id=link_token)

        await self.store.record_link_access(link.id)

        if link.kind == LinkKind.PUBLIC:
            return {'link': link, 'can_access': True, 'requires_payment': False}

        if user_id is None:
            return {'link': link, 'can_access': False, 'requires_payment': True, 'requires_auth': True}

        if user_id == link.owner_id:
            return {'link': link, 'can_access': True, 'requires_payment': False}

        paid = await self.store.has_paid(link.id, user_id)
        return {
            'link': link,
            'can_access': paid,
            'requires_payment': not paid,
            'already_paid': paid,
            'requires_auth': False
        }

    async def claim_shared_link(self, user_id: str, link_token: str, resource: str = '') -> Dict[str, Any]:
        """Save a shared link's content to the user's drive.

        Public links are free; monetized links need a prior payment.
        """
        link = await self.store.get_shared_link(link_token)
        if link is None or not link.is_active:
            raise NotFoundError("Link not found or expired", link_id=link_token)
        if link.is_expired():
            raise ExpiredError("Link has expired", link_id=link_token)

        transaction = None
        if link.kind == LinkKind.MONETIZED and user_id != link.owner_id:
            transaction = await self.store.find_completed_purchase(user_id, shared_link_id=link.id)
            if transaction is None and not await self.store.has_paid(link.id, user_id):
                target = await self.shared_link_target(link_token)
                raise PaymentRequiredError(
                    "Payment required to access this content",
                    requirements=await self.payment_requirements(target, resource)
                )

        copy = await self.replicator.replicate(link.item_id, user_id, source=ContentSource.SHARED)
        logger.info(f"User {user_id} saved shared link {link_token} to their drive as {copy.id}")
        return {
            'copied_item': copy,
            'copied_path': await self.replicator.item_path(copy),
            'transaction': transaction
        }

    async def regrant(self, user_id: str, transaction_id: str) -> PurchaseReceipt:
        """Copy a purchased item into the buyer's drive again.

        This is the retry path for receipts whose content grant failed. It
        always makes a new copy.
        """
        transaction = await self.store.get_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found", transaction_id=transaction_id)
        if transaction.buyer_id != user_id:
            raise ForbiddenError("Only the buyer can re-grant a purchase")
        if transaction.status != TransactionStatus.COMPLETED:
            raise InvalidRequestError(f"Transaction is {transaction.status.value}, not completed")

        source = ContentSource.MARKETPLACE if transaction.listing_id else ContentSource.SHARED
        logger.warning(f"Re-granting content for transaction {transaction.id}; this may duplicate files")
        receipt = PurchaseReceipt(transaction=transaction, state=PurchaseState.RECORD_CREATED)
        copy = await self.replicator.replicate(transaction.item_id, user_id, source=source)
        receipt.copied_item = copy
        receipt.copied_path = await self.replicator.item_path(copy)
        receipt.state = PurchaseState.COMPLETE
        return receipt
