"""Commission engine.

Records affiliate commissions when a sale completes and settles them later
in owner-triggered batches. Every commission starts ``pending``; only the
settlement batch moves it to ``paid`` or ``failed``. A batch is best effort:
each commission is claimed, checked against the owner's live USDC balance,
transferred and marked on its own, and one failure never stops the rest.
"""
import logging
import secrets
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Sequence
from uuid import uuid4

import backoff

from ledger.errors import (
    DependencyUnavailableError, ForbiddenError, InsufficientFundsError, IntegrityError,
    InvalidRequestError, MissingWalletError, NotFoundError, SettlementError
)
from ledger.models import (
    Affiliate, AffiliateStatus, AffiliateTransaction, CommissionStatus,
    Transaction, utcnow
)
from ledger.store import LedgerStore
from rpc import NodeConnectionError, RPCError
from rpc.usdc import UsdcGateway

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
HUNDRED = Decimal('100')
CODE_ATTEMPTS = 5
LEDGER_KINDS = ('earned', 'paid')
# Settlement claims older than this are released by requeue_failed
CLAIM_TIMEOUT = timedelta(minutes=15)
LEDGER_RETRIES = 3


def compute_commission(sale_amount: Decimal, rate: Decimal) -> Decimal:
    """Commission owed on a sale: sale_amount * rate / 100, rounded half-up to cents.

    Raises:
        ValueError: If the rate is outside 0-100 or the amount is negative
    """
    sale_amount = Decimal(sale_amount)
    rate = Decimal(rate)
    if not Decimal('0') <= rate <= HUNDRED:
        raise ValueError(f"Commission rate must be between 0 and 100, got {rate}")
    if sale_amount < 0:
        raise ValueError(f"Sale amount must not be negative, got {sale_amount}")
    return (sale_amount * rate / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)


def generate_affiliate_code() -> str:
    return f"AFF-{secrets.token_hex(4).upper()}"


def _summary_entry(summary: Dict[str, Dict[str, Any]], status: CommissionStatus) -> Dict[str, Any]:
    entry = summary.get(status.value, {'count': 0, 'amount': Decimal('0')})
    return {'count': entry['count'], 'amount': entry['amount']}


class CommissionEngine:
    """Creates, lists and settles affiliate commissions."""

    def __init__(
        self,
        store: LedgerStore,
        gateway: Optional[UsdcGateway] = None,
        network: str = 'base-sepolia',
        claim_timeout: timedelta = CLAIM_TIMEOUT,
        ledger_retries: int = LEDGER_RETRIES,
        ledger_retry_delay: float = 0.5
    ):
        self.store = store
        self.gateway = gateway
        self.network = network
        self.claim_timeout = claim_timeout
        self.ledger_retries = ledger_retries
        self.ledger_retry_delay = ledger_retry_delay

    # Affiliates

    async def create_affiliate(
        self,
        owner_id: str,
        affiliate_user_id: Optional[str] = None,
        commission_rate: Decimal = Decimal('0'),
        listing_id: Optional[str] = None,
        link_token: Optional[str] = None,
        affiliate_email: Optional[str] = None
    ) -> Affiliate:
        """Register an affiliate for content the owner sells.

        The affiliate is named by user id or, failing that, by email.

        Raises:
            InvalidRequestError: Bad rate, self-affiliation or duplicate pair
            NotFoundError: Content or affiliate user missing
            ForbiddenError: Content belongs to someone else
        """
        if (listing_id is None) == (link_token is None):
            raise InvalidRequestError("Provide exactly one of listing_id or link_id")
        if affiliate_user_id is None:
            if not affiliate_email:
                raise InvalidRequestError("Provide affiliate_user_id or affiliate_email")
            affiliate_user = await self.store.get_user_by_email(affiliate_email)
            if affiliate_user is None:
                raise NotFoundError(f"No user with email {affiliate_email}")
            affiliate_user_id = affiliate_user.id
        if affiliate_user_id == owner_id:
            raise InvalidRequestError("Owners cannot be their own affiliate")
        rate = Decimal(commission_rate)
        if not Decimal('0') <= rate <= HUNDRED:
            raise InvalidRequestError("Commission rate must be between 0 and 100")

        shared_link_id = None
        if listing_id is not None:
            listing = await self.store.get_listing(listing_id)
            if listing is None:
                raise NotFoundError(f"Listing {listing_id} not found")
            if listing.seller_id != owner_id:
                raise ForbiddenError("Only the seller can add affiliates to a listing")
        else:
            link = await self.store.get_shared_link(link_token)
            if link is None:
                raise NotFoundError(f"Shared link {link_token} not found")
            if link.owner_id != owner_id:
                raise ForbiddenError("Only the link owner can add affiliates to a shared link")
            shared_link_id = link.id

        if await self.store.get_user(affiliate_user_id) is None:
            raise NotFoundError(f"User {affiliate_user_id} not found")

        for _ in range(CODE_ATTEMPTS):
            affiliate = Affiliate(
                listing_id=listing_id,
                shared_link_id=shared_link_id,
                owner_id=owner_id,
                affiliate_user_id=affiliate_user_id,
                commission_rate=rate,
                affiliate_code=generate_affiliate_code()
            )
            try:
                created = await self.store.create_affiliate(affiliate)
            except IntegrityError as e:
                if e.constraint == IntegrityError.AFFILIATE_CODE:
                    continue
                raise InvalidRequestError(
                    "This user is already an affiliate for this content"
                ) from e
            logger.info(
                f"Affiliate {created.affiliate_code} created for user {affiliate_user_id} "
                f"at {rate}% by {owner_id}"
            )
            return created

        raise InvalidRequestError("Could not allocate a unique affiliate code")

    async def get_by_code(self, affiliate_code: str) -> Affiliate:
        affiliate = await self.store.get_affiliate_by_code(affiliate_code)
        if affiliate is None:
            raise NotFoundError(f"Affiliate code {affiliate_code} not found")
        return affiliate

    async def update_affiliate(
        self,
        owner_id: str,
        affiliate_id: str,
        commission_rate: Optional[Decimal] = None,
        status: Optional[AffiliateStatus] = None
    ) -> Affiliate:
        """Change an affiliate's rate or status. Recorded commissions are unaffected."""
        affiliate = await self.store.get_affiliate(affiliate_id)
        if affiliate is None:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")
        if affiliate.owner_id != owner_id:
            raise ForbiddenError("Only the content owner can change an affiliate")
        if commission_rate is not None:
            commission_rate = Decimal(commission_rate)
            if not Decimal('0') <= commission_rate <= HUNDRED:
                raise InvalidRequestError("Commission rate must be between 0 and 100")
        updated = await self.store.update_affiliate(affiliate_id, commission_rate, status)
        logger.info(
            f"Affiliate {updated.affiliate_code} now {updated.status.value} at {updated.commission_rate}%"
        )
        return updated

    async def resolve(self, affiliate_code: str, transaction: Transaction) -> Optional[Affiliate]:
        """Find the active affiliate a code names for the content sold.

        Returns None for unknown, inactive or unrelated codes, and when the
        affiliate is the buyer.
        """
        affiliate = await self.store.get_affiliate_by_code(affiliate_code)
        if affiliate is None:
            logger.debug(f"Ignoring unknown affiliate code {affiliate_code}")
            return None
        if affiliate.status != AffiliateStatus.ACTIVE:
            logger.debug(f"Ignoring {affiliate.status.value} affiliate {affiliate_code}")
            return None
        if affiliate.owner_id != transaction.seller_id:
            return None
        if transaction.listing_id is not None and affiliate.listing_id != transaction.listing_id:
            return None
        if transaction.shared_link_id is not None and affiliate.shared_link_id != transaction.shared_link_id:
            return None
        if affiliate.affiliate_user_id == transaction.buyer_id:
            logger.info(f"Buyer {transaction.buyer_id} used their own affiliate code, no commission")
            return None
        return affiliate

    # Sales

    async def record_sale(self, transaction: Transaction, affiliate_code: str) -> Optional[AffiliateTransaction]:
        """Create the pending commission for a completed sale, if the code qualifies.

        The affiliate's current rate is copied onto the commission so later
        rate changes do not alter it.
        """
        affiliate = await self.resolve(affiliate_code, transaction)
        if affiliate is None:
            return None

        commission = AffiliateTransaction(
            affiliate_id=affiliate.id,
            original_transaction_id=transaction.id,
            affiliate_user_id=affiliate.affiliate_user_id,
            owner_id=affiliate.owner_id,
            buyer_id=transaction.buyer_id,
            affiliate_code=affiliate.affiliate_code,
            sale_amount=transaction.amount,
            commission_rate=affiliate.commission_rate,
            commission_amount=compute_commission(transaction.amount, affiliate.commission_rate),
            status=CommissionStatus.PENDING
        )
        try:
            created = await self.store.create_affiliate_transaction(commission)
        except IntegrityError as e:
            if e.constraint != IntegrityError.COMMISSION:
                raise
            logger.warning(
                f"Commission for transaction {transaction.id} and affiliate {affiliate.id} already exists"
            )
            return None
        logger.info(
            f"Recorded {created.commission_amount} commission ({created.commission_rate}%) "
            f"for {affiliate.affiliate_code} on transaction {transaction.id}"
        )
        return created

    # Settlement

    async def settle_pending(
        self,
        owner_id: str,
        transaction_ids: Optional[Sequence[str]] = None,
        pay_all: bool = False
    ) -> Dict[str, Any]:
        """Pay the owner's pending commissions one at a time.

        Args:
            owner_id: Content owner paying the commissions
            transaction_ids: Specific commission ids to pay
            pay_all: Pay every pending commission of the owner

        Returns:
            {'results': [...], 'summary': {'total', 'paid', 'failed'}}

        Raises:
            InvalidRequestError: Neither ids nor pay_all given
            NotFoundError: Nothing pending matched
        """
        if not pay_all and not transaction_ids:
            raise InvalidRequestError("Provide transactionIds or set payAll")
        if self.gateway is None:
            raise InvalidRequestError("Settlement is not configured on this server")

        pending, _ = await self.store.list_affiliate_transactions(
            owner_id=owner_id,
            status=CommissionStatus.PENDING,
            ids=None if pay_all else list(transaction_ids),
            limit=None,
            oldest_first=True
        )
        if not pending:
            raise NotFoundError("No pending transactions found")

        claim = str(uuid4())
        logger.info(f"Settling {len(pending)} commissions for owner {owner_id} (claim {claim})")

        results = []
        for commission in pending:
            results.append(await self._settle_one(commission, claim))

        summary = {
            'total': len(results),
            'paid': sum(1 for r in results if r['status'] == CommissionStatus.PAID.value),
            'failed': sum(1 for r in results if r['status'] == CommissionStatus.FAILED.value),
        }
        logger.info(
            f"Settlement for owner {owner_id} finished: "
            f"{summary['paid']} paid, {summary['failed']} failed of {summary['total']}"
        )
        return {'results': results, 'summary': summary}

    async def _ledger_write(self, write, *args):
        """Run a ledger write after a claim, retrying short database outages."""
        @backoff.on_exception(
            backoff.expo,
            DependencyUnavailableError,
            max_tries=self.ledger_retries,
            factor=self.ledger_retry_delay,
            logger=logger
        )
        async def attempt():
            return await write(*args)

        return await attempt()

    async def _settle_one(self, commission: AffiliateTransaction, claim: str) -> Dict[str, Any]:
        result = {
            'id': commission.id,
            'affiliate_user_id': commission.affiliate_user_id,
            'amount': commission.commission_amount,
        }

        try:
            claimed = await self.store.claim_commission(commission.id, claim)
        except Exception as e:
            logger.error(f"Could not claim commission {commission.id}: {e}", exc_info=True)
            return dict(result, status='skipped', error=str(e))
        if claimed is None:
            logger.warning(f"Commission {commission.id} is already being settled, skipping")
            return dict(result, status='skipped', error='Commission is no longer pending')

        tx_hash = None
        try:
            owner = await self.store.get_user(claimed.owner_id)
            affiliate_user = await self.store.get_user(claimed.affiliate_user_id)
            if owner is None or not owner.wallet_address:
                raise MissingWalletError("Owner has no wallet address")
            if affiliate_user is None or not affiliate_user.wallet_address:
                raise MissingWalletError("Affiliate has no wallet address")

            # Re-read every time: earlier items in this batch spend the balance down
            balance = await self.gateway.get_balance(owner.wallet_address)
            if balance < claimed.commission_amount:
                raise InsufficientFundsError(
                    f"Insufficient USDC balance: {balance} < {claimed.commission_amount}"
                )

            tx_hash = await self.gateway.transfer(
                owner.wallet_address, affiliate_user.wallet_address, claimed.commission_amount
            )
        except SettlementError as e:
            return await self._fail(claimed, result, e.kind.code, e.message)
        except NodeConnectionError as e:
            return await self._fail(claimed, result, 'dependency_unavailable', str(e))
        except RPCError as e:
            return await self._fail(claimed, result, 'transfer_failed', str(e))
        except Exception as e:
            logger.exception(f"Unexpected error settling commission {claimed.id}")
            return await self._fail(claimed, result, 'unexpected_error', str(e))

        try:
            await self._ledger_write(
                self.store.mark_commission_paid,
                claimed.id,
                utcnow(),
                {'transaction_hash': tx_hash, 'network': self.network}
            )
        except Exception as e:
            # The transfer is on chain; leave the claim in place so nobody pays it again
            logger.error(
                f"Commission {claimed.id} paid in {tx_hash} but the ledger update failed: {e}",
                exc_info=True
            )
            return dict(result, status=CommissionStatus.PAID.value, transaction_hash=tx_hash,
                        warning='Payment sent but not recorded, needs reconciliation')

        logger.info(f"Paid commission {claimed.id}: {claimed.commission_amount} USDC in {tx_hash}")
        return dict(result, status=CommissionStatus.PAID.value, transaction_hash=tx_hash)

    async def _fail(self, commission: AffiliateTransaction, result: Dict[str, Any], reason: str, message: str) -> Dict[str, Any]:
        logger.warning(f"Commission {commission.id} failed: {reason}: {message}")
        try:
            await self._ledger_write(
                self.store.mark_commission_failed,
                commission.id,
                {'failure_reason': reason, 'error': message, 'failed_at': utcnow().isoformat()}
            )
        except Exception as e:
            # Still claimed; requeue_failed releases it once the claim times out
            logger.error(f"Could not record failure of commission {commission.id}: {e}", exc_info=True)
        return dict(result, status=CommissionStatus.FAILED.value, reason=reason, error=message)

    async def requeue_failed(self, owner_id: str, transaction_ids: Optional[Sequence[str]] = None) -> int:
        """Move failed commissions back to pending for the next batch.

        Pending commissions whose settlement claim is older than
        ``claim_timeout`` are released as well.
        """
        count = await self.store.requeue_failed_commissions(
            owner_id, transaction_ids, stale_before=utcnow() - self.claim_timeout
        )
        logger.info(f"Requeued {count} commissions for owner {owner_id}")
        return count

    # Reporting

    async def payment_history(self, owner_id: str, status: Optional[CommissionStatus] = None) -> Dict[str, Any]:
        """Commissions an owner owes, with totals per status."""
        transactions, _ = await self.store.list_affiliate_transactions(
            owner_id=owner_id, status=status, limit=None
        )
        summary = await self.store.summarize_commissions(owner_id=owner_id)
        return {
            'transactions': transactions,
            'summary': {s.value: _summary_entry(summary, s) for s in CommissionStatus}
        }

    async def affiliate_ledger(
        self,
        user_id: str,
        kind: str = 'earned',
        status: Optional[CommissionStatus] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        """Commissions a user earned as affiliate, or paid out as owner."""
        if kind not in LEDGER_KINDS:
            raise InvalidRequestError(f"type must be one of {', '.join(LEDGER_KINDS)}")
        if page < 1 or limit < 1:
            raise InvalidRequestError("page and limit must be positive")

        scope = {'affiliate_user_id': user_id} if kind == 'earned' else {'owner_id': user_id}
        transactions, total = await self.store.list_affiliate_transactions(
            status=status, limit=limit, offset=(page - 1) * limit, **scope
        )
        summary = await self.store.summarize_commissions(**scope)
        return {
            'transactions': transactions,
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'pages': (total + limit - 1) // limit
            },
            'summary': {
                'pending': _summary_entry(summary, CommissionStatus.PENDING),
                'paid': _summary_entry(summary, CommissionStatus.PAID),
            }
        }
