"""In-process ledger store.

Keeps every collection in dictionaries guarded by a single asyncio lock, which
gives the same read-check-write atomicity the Postgres backend gets from its
unique indexes. Used for local development and the test suite.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .errors import IntegrityError, NotFoundError
from .models import (
    Affiliate, AffiliateStatus, AffiliateTransaction, CommissionStatus, Item, ItemKind, Listing,
    SharedLink, Transaction, TransactionStatus, User, utcnow
)
from .store import LedgerStore, TRANSACTION_ROLES

logger = logging.getLogger(__name__)

ZERO = Decimal('0')


class MemoryLedgerStore(LedgerStore):
    """Dictionary-backed LedgerStore."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._users: Dict[str, User] = {}
        self._items: Dict[str, Item] = {}
        self._listings: Dict[str, Listing] = {}
        self._links: Dict[str, SharedLink] = {}
        self._paid_users: Dict[str, Set[str]] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._affiliates: Dict[str, Affiliate] = {}
        self._commissions: Dict[str, AffiliateTransaction] = {}

    # Users

    async def create_user(self, user: User) -> User:
        async with self._lock:
            if user.id in self._users:
                raise IntegrityError('user', f"User {user.id} already exists")
            root = Item(name='root', kind=ItemKind.FOLDER, owner_id=user.id)
            self._items[root.id] = root
            stored = user.model_copy(update={'root_folder_id': root.id})
            self._users[user.id] = stored
            return stored.model_copy()

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        matches = [u for u in self._users.values() if u.email and u.email.lower() == email.lower()]
        if not matches:
            return None
        return min(matches, key=lambda u: u.created_at).model_copy()

    async def set_wallet(self, user_id: str, wallet_address: Optional[str]) -> User:
        async with self._lock:
            user = self._users.get(user_id)
            if not user:
                raise NotFoundError(f"User {user_id} not found")
            user.wallet_address = wallet_address
            return user.model_copy()

    # Items

    async def create_item(self, item: Item) -> Item:
        async with self._lock:
            if item.parent_id is not None:
                for existing in self._items.values():
                    if (existing.parent_id == item.parent_id
                            and existing.owner_id == item.owner_id
                            and existing.name == item.name):
                        raise IntegrityError(
                            IntegrityError.ITEM_NAME,
                            f"{item.name!r} already exists in folder {item.parent_id}"
                        )
            self._items[item.id] = item.model_copy()
            return item.model_copy()

    async def get_item(self, item_id: str) -> Optional[Item]:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    async def list_children(self, parent_id: str) -> List[Item]:
        children = [i for i in self._items.values() if i.parent_id == parent_id]
        children.sort(key=lambda i: (i.created_at, i.name))
        return [c.model_copy() for c in children]

    async def find_child(self, owner_id: str, parent_id: str, name: str) -> Optional[Item]:
        for item in self._items.values():
            if item.parent_id == parent_id and item.owner_id == owner_id and item.name == name:
                return item.model_copy()
        return None

    async def delete_items(self, item_ids: Sequence[str]) -> None:
        async with self._lock:
            for item_id in item_ids:
                self._items.pop(item_id, None)

    # Listings and shared links

    async def create_listing(self, listing: Listing) -> Listing:
        async with self._lock:
            if any(l.item_id == listing.item_id for l in self._listings.values()):
                raise IntegrityError(
                    IntegrityError.LISTING_ITEM,
                    f"Item {listing.item_id} is already listed"
                )
            self._listings[listing.id] = listing.model_copy()
            return listing.model_copy()

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        listing = self._listings.get(listing_id)
        return listing.model_copy() if listing else None

    async def create_shared_link(self, link: SharedLink) -> SharedLink:
        async with self._lock:
            if any(l.link_token == link.link_token for l in self._links.values()):
                raise IntegrityError(IntegrityError.LINK_TOKEN)
            self._links[link.id] = link.model_copy()
            self._paid_users[link.id] = set()
            return link.model_copy()

    async def get_shared_link(self, link_token: str) -> Optional[SharedLink]:
        for link in self._links.values():
            if link.link_token == link_token:
                return link.model_copy()
        return None

    async def has_paid(self, shared_link_id: str, user_id: str) -> bool:
        return user_id in self._paid_users.get(shared_link_id, set())

    async def record_link_access(self, shared_link_id: str) -> None:
        async with self._lock:
            link = self._links.get(shared_link_id)
            if link:
                link.access_count += 1

    # Transactions

    async def find_completed_purchase(
        self,
        buyer_id: str,
        listing_id: Optional[str] = None,
        shared_link_id: Optional[str] = None
    ) -> Optional[Transaction]:
        return self._find_completed(buyer_id, listing_id, shared_link_id)

    def _find_completed(
        self,
        buyer_id: str,
        listing_id: Optional[str],
        shared_link_id: Optional[str]
    ) -> Optional[Transaction]:
        for txn in self._transactions.values():
            if txn.buyer_id != buyer_id or txn.status != TransactionStatus.COMPLETED:
                continue
            if listing_id is not None and txn.listing_id == listing_id:
                return txn.model_copy(deep=True)
            if shared_link_id is not None and txn.shared_link_id == shared_link_id:
                return txn.model_copy(deep=True)
        return None

    async def create_transaction(self, transaction: Transaction) -> Transaction:
        async with self._lock:
            if transaction.status == TransactionStatus.COMPLETED and self._find_completed(
                transaction.buyer_id, transaction.listing_id, transaction.shared_link_id
            ):
                raise IntegrityError(IntegrityError.PURCHASE)

            tx_hash = transaction.payment_tx_hash
            for existing in self._transactions.values():
                if tx_hash and existing.payment_tx_hash == tx_hash:
                    raise IntegrityError(IntegrityError.PAYMENT_PROOF)
                if (existing.transaction_id == transaction.transaction_id
                        or existing.receipt_number == transaction.receipt_number):
                    raise IntegrityError(IntegrityError.RECEIPT)

            self._transactions[transaction.id] = transaction.model_copy(deep=True)
            if transaction.shared_link_id is not None:
                self._paid_users.setdefault(transaction.shared_link_id, set()).add(transaction.buyer_id)
            return transaction.model_copy(deep=True)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        txn = self._transactions.get(transaction_id)
        return txn.model_copy(deep=True) if txn else None

    async def list_transactions(
        self,
        user_id: str,
        role: str = 'all',
        status: Optional[TransactionStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Transaction], int]:
        if role not in TRANSACTION_ROLES:
            raise ValueError(f"Unknown transaction role: {role}")

        def matches(txn: Transaction) -> bool:
            if role == 'purchases' and txn.buyer_id != user_id:
                return False
            if role == 'sales' and txn.seller_id != user_id:
                return False
            if role == 'all' and user_id not in (txn.buyer_id, txn.seller_id):
                return False
            return status is None or txn.status == status

        rows = sorted(
            (t for t in self._transactions.values() if matches(t)),
            key=lambda t: t.purchase_date,
            reverse=True
        )
        return [t.model_copy(deep=True) for t in rows[offset:offset + limit]], len(rows)

    # Affiliates

    async def create_affiliate(self, affiliate: Affiliate) -> Affiliate:
        async with self._lock:
            for existing in self._affiliates.values():
                if existing.affiliate_code == affiliate.affiliate_code:
                    raise IntegrityError(IntegrityError.AFFILIATE_CODE)
                if (existing.listing_id == affiliate.listing_id
                        and existing.shared_link_id == affiliate.shared_link_id
                        and existing.owner_id == affiliate.owner_id
                        and existing.affiliate_user_id == affiliate.affiliate_user_id):
                    raise IntegrityError(IntegrityError.AFFILIATE)
            self._affiliates[affiliate.id] = affiliate.model_copy()
            return affiliate.model_copy()

    async def get_affiliate(self, affiliate_id: str) -> Optional[Affiliate]:
        affiliate = self._affiliates.get(affiliate_id)
        return affiliate.model_copy() if affiliate else None

    async def get_affiliate_by_code(self, affiliate_code: str) -> Optional[Affiliate]:
        for affiliate in self._affiliates.values():
            if affiliate.affiliate_code == affiliate_code:
                return affiliate.model_copy()
        return None

    async def update_affiliate(
        self,
        affiliate_id: str,
        commission_rate: Optional[Decimal] = None,
        status: Optional[AffiliateStatus] = None
    ) -> Affiliate:
        async with self._lock:
            affiliate = self._affiliates.get(affiliate_id)
            if affiliate is None:
                raise NotFoundError(f"Affiliate {affiliate_id} not found")
            if commission_rate is not None:
                affiliate.commission_rate = commission_rate
            if status is not None:
                affiliate.status = status
            return affiliate.model_copy()

    # Commissions

    async def create_affiliate_transaction(self, commission: AffiliateTransaction) -> AffiliateTransaction:
        async with self._lock:
            affiliate = self._affiliates.get(commission.affiliate_id)
            if affiliate is None:
                raise NotFoundError(f"Affiliate {commission.affiliate_id} not found")
            for existing in self._commissions.values():
                if (existing.original_transaction_id == commission.original_transaction_id
                        and existing.affiliate_id == commission.affiliate_id):
                    raise IntegrityError(IntegrityError.COMMISSION)
            self._commissions[commission.id] = commission.model_copy(deep=True)
            affiliate.total_sales += 1
            affiliate.total_earnings += commission.commission_amount
            return commission.model_copy(deep=True)

    async def get_affiliate_transaction(self, commission_id: str) -> Optional[AffiliateTransaction]:
        commission = self._commissions.get(commission_id)
        return commission.model_copy(deep=True) if commission else None

    def _select_commissions(
        self,
        owner_id: Optional[str],
        affiliate_user_id: Optional[str],
        participant_id: Optional[str],
        status: Optional[CommissionStatus] = None,
        ids: Optional[Sequence[str]] = None
    ) -> List[AffiliateTransaction]:
        wanted = set(ids) if ids is not None else None
        selected = []
        for c in self._commissions.values():
            if owner_id is not None and c.owner_id != owner_id:
                continue
            if affiliate_user_id is not None and c.affiliate_user_id != affiliate_user_id:
                continue
            if participant_id is not None and participant_id not in (c.owner_id, c.affiliate_user_id):
                continue
            if status is not None and c.status != status:
                continue
            if wanted is not None and c.id not in wanted:
                continue
            selected.append(c)
        return selected

    async def list_affiliate_transactions(
        self,
        owner_id: Optional[str] = None,
        affiliate_user_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        status: Optional[CommissionStatus] = None,
        ids: Optional[Sequence[str]] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
        oldest_first: bool = False
    ) -> Tuple[List[AffiliateTransaction], int]:
        rows = self._select_commissions(owner_id, affiliate_user_id, participant_id, status, ids)
        rows.sort(key=lambda c: c.created_at, reverse=not oldest_first)
        end = None if limit is None else offset + limit
        return [c.model_copy(deep=True) for c in rows[offset:end]], len(rows)

    async def claim_commission(self, commission_id: str, claim: str) -> Optional[AffiliateTransaction]:
        async with self._lock:
            commission = self._commissions.get(commission_id)
            if (commission is None or commission.status != CommissionStatus.PENDING
                    or commission.settlement_claim is not None):
                return None
            commission.settlement_claim = claim
            commission.claimed_at = utcnow()
            return commission.model_copy(deep=True)

    async def mark_commission_paid(
        self,
        commission_id: str,
        paid_at: datetime,
        metadata: Dict[str, Any]
    ) -> AffiliateTransaction:
        async with self._lock:
            commission = self._commissions[commission_id]
            if commission.status == CommissionStatus.PAID:
                return commission.model_copy(deep=True)
            commission.status = CommissionStatus.PAID
            commission.paid_at = paid_at
            commission.settlement_claim = None
            commission.claimed_at = None
            commission.metadata = {**commission.metadata, **metadata}
            self._affiliates[commission.affiliate_id].paid_earnings += commission.commission_amount
            return commission.model_copy(deep=True)

    async def mark_commission_failed(self, commission_id: str, metadata: Dict[str, Any]) -> AffiliateTransaction:
        async with self._lock:
            commission = self._commissions[commission_id]
            commission.status = CommissionStatus.FAILED
            commission.settlement_claim = None
            commission.claimed_at = None
            commission.metadata = {**commission.metadata, **metadata}
            return commission.model_copy(deep=True)

    async def requeue_failed_commissions(
        self,
        owner_id: str,
        ids: Optional[Sequence[str]] = None,
        stale_before: Optional[datetime] = None
    ) -> int:
        async with self._lock:
            failed = self._select_commissions(owner_id, None, None, CommissionStatus.FAILED, ids)
            for commission in failed:
                commission.status = CommissionStatus.PENDING
            stale = []
            if stale_before is not None:
                stale = [
                    c for c in self._select_commissions(owner_id, None, None, CommissionStatus.PENDING, ids)
                    if c.settlement_claim is not None and c.claimed_at is not None and c.claimed_at < stale_before
                ]
            for commission in stale:
                commission.settlement_claim = None
                commission.claimed_at = None
            return len(failed) + len(stale)

    async def summarize_commissions(
        self,
        owner_id: Optional[str] = None,
        affiliate_user_id: Optional[str] = None,
        participant_id: Optional[str] = None
    ) -> Dict[str, Dict[str, Any]]:
        summary: Dict[str, Dict[str, Any]] = {}
        for c in self._select_commissions(owner_id, affiliate_user_id, participant_id):
            bucket = summary.setdefault(c.status.value, {'count': 0, 'amount': ZERO})
            bucket['count'] += 1
            bucket['amount'] += c.commission_amount
        return summary
