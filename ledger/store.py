"""Ledger store contract.

The ledger is the single source of truth for purchases and commissions and the
only point of mutual exclusion between concurrent requests. Every backend must
enforce the uniqueness rules below and report violations as IntegrityError:

- one completed transaction per (listing, buyer) and per (shared link, buyer)
- one transaction per on-chain payment hash
- one commission per (original transaction, affiliate)
- one affiliate per (content, owner, affiliate user); unique affiliate codes
- unique (parent, name, owner) for items; one listing per item
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import (
    Affiliate, AffiliateStatus, AffiliateTransaction, CommissionStatus, Item, Listing,
    SharedLink, Transaction, TransactionStatus, User
)

TRANSACTION_ROLES = ('purchases', 'sales', 'all')


class LedgerStore(ABC):
    """Async persistence interface used by every settlement component."""

    async def close(self) -> None:
        """Release backend resources."""

    # Users

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Store a user and create their root folder."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]:
        """Case-insensitive email lookup; the oldest account wins."""

    @abstractmethod
    async def set_wallet(self, user_id: str, wallet_address: Optional[str]) -> User:
        ...

    # Items

    @abstractmethod
    async def create_item(self, item: Item) -> Item:
        ...

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[Item]:
        ...

    @abstractmethod
    async def list_children(self, parent_id: str) -> List[Item]:
        ...

    @abstractmethod
    async def find_child(self, owner_id: str, parent_id: str, name: str) -> Optional[Item]:
        ...

    @abstractmethod
    async def delete_items(self, item_ids: Sequence[str]) -> None:
        """Delete exactly the given item records (no cascade)."""

    # Listings and shared links

    @abstractmethod
    async def create_listing(self, listing: Listing) -> Listing:
        ...

    @abstractmethod
    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        ...

    @abstractmethod
    async def create_shared_link(self, link: SharedLink) -> SharedLink:
        ...

    @abstractmethod
    async def get_shared_link(self, link_token: str) -> Optional[SharedLink]:
        ...

    @abstractmethod
    async def has_paid(self, shared_link_id: str, user_id: str) -> bool:
        ...

    @abstractmethod
    async def record_link_access(self, shared_link_id: str) -> None:
        ...

    # Transactions

    @abstractmethod
    async def find_completed_purchase(
        self,
        buyer_id: str,
        listing_id: Optional[str] = None,
        shared_link_id: Optional[str] = None
    ) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def create_transaction(self, transaction: Transaction) -> Transaction:
        """Atomically insert a transaction.

        For shared-link sales the buyer joins the link's paid users in the
        same atomic step.

        Raises:
            IntegrityError: purchase, payment_proof or receipt constraint
        """

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def list_transactions(
        self,
        user_id: str,
        role: str = 'all',
        status: Optional[TransactionStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Transaction], int]:
        ...

    # Affiliates

    @abstractmethod
    async def create_affiliate(self, affiliate: Affiliate) -> Affiliate:
        ...

    @abstractmethod
    async def get_affiliate(self, affiliate_id: str) -> Optional[Affiliate]:
        ...

    @abstractmethod
    async def get_affiliate_by_code(self, affiliate_code: str) -> Optional[Affiliate]:
        ...

    @abstractmethod
    async def update_affiliate(
        self,
        affiliate_id: str,
        commission_rate: Optional[Decimal] = None,
        status: Optional[AffiliateStatus] = None
    ) -> Affiliate:
        """Change the rate or status of an affiliate. Past commissions keep their rate."""

    # Commissions

    @abstractmethod
    async def create_affiliate_transaction(self, commission: AffiliateTransaction) -> AffiliateTransaction:
        """Store a commission and accrue it to its affiliate in the same write.

        The affiliate's total_sales grows by one and total_earnings by the
        commission amount. Nothing changes when the insert is rejected.
        """

    @abstractmethod
    async def get_affiliate_transaction(self, commission_id: str) -> Optional[AffiliateTransaction]:
        ...

    @abstractmethod
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
        """List commissions.

        participant_id matches either the owner or the affiliate user.
        Results are newest first unless oldest_first is set.
        """

    @abstractmethod
    async def claim_commission(self, commission_id: str, claim: str) -> Optional[AffiliateTransaction]:
        """Claim a pending, unclaimed commission for settlement.

        The claim time is stored in claimed_at.

        Returns the claimed record, or None if it is no longer pending or
        another settlement already holds it.
        """

    @abstractmethod
    async def mark_commission_paid(
        self,
        commission_id: str,
        paid_at: datetime,
        metadata: Dict[str, Any]
    ) -> AffiliateTransaction:
        """Mark a claimed commission paid and add it to the affiliate's paid_earnings.

        A commission already marked paid is returned unchanged.
        """

    @abstractmethod
    async def mark_commission_failed(self, commission_id: str, metadata: Dict[str, Any]) -> AffiliateTransaction:
        ...

    @abstractmethod
    async def requeue_failed_commissions(
        self,
        owner_id: str,
        ids: Optional[Sequence[str]] = None,
        stale_before: Optional[datetime] = None
    ) -> int:
        """Return the owner's failed commissions to pending.

        With stale_before, pending commissions claimed before that time are
        released too. Returns the number of commissions changed.
        """

    @abstractmethod
    async def summarize_commissions(
        self,
        owner_id: Optional[str] = None,
        affiliate_user_id: Optional[str] = None,
        participant_id: Optional[str] = None
    ) -> Dict[str, Dict[str, Any]]:
        """Aggregate commissions by status into {status: {'count', 'amount'}}."""
