"""Ledger record models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class ItemKind(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class ContentSource(str, Enum):
    USER = "user"
    MARKETPLACE = "marketplace"
    SHARED = "shared"
    AI_GENERATED = "ai_generated"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class LinkKind(str, Enum):
    PUBLIC = "public"
    MONETIZED = "monetized"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"


class AffiliateStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class User(BaseModel):
    """Mirror of an identity-provider account."""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    wallet_address: Optional[str] = None
    root_folder_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Item(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    kind: ItemKind
    parent_id: Optional[str] = None
    owner_id: str
    size: int = 0
    mime_type: Optional[str] = None
    blob_ref: Optional[str] = None
    content_source: ContentSource = ContentSource.USER
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_folder(self) -> bool:
        return self.kind == ItemKind.FOLDER


class Listing(BaseModel):
    id: str = Field(default_factory=new_id)
    item_id: str
    seller_id: str
    title: str
    description: str = ""
    price: Decimal
    status: ListingStatus = ListingStatus.ACTIVE
    tags: List[str] = Field(default_factory=list)
    view_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator('price')
    @classmethod
    def price_positive(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("Listing price must be greater than 0")
        return value


class SharedLink(BaseModel):
    id: str = Field(default_factory=new_id)
    item_id: str
    owner_id: str
    link_token: str
    kind: LinkKind
    title: str = ""
    description: str = ""
    price: Optional[Decimal] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    access_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def monetized_needs_price(self) -> 'SharedLink':
        if self.kind == LinkKind.MONETIZED and (self.price is None or self.price <= 0):
            raise ValueError("Monetized links require a price greater than 0")
        return self

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at


class PaymentProof(BaseModel):
    """Structured result of payment-proof verification."""
    transaction_hash: str
    network: str
    payer_address: Optional[str] = None
    success: bool
    amount: Optional[Decimal] = None
    recipient_address: Optional[str] = None
    raw: Optional[str] = None


class Transaction(BaseModel):
    id: str = Field(default_factory=new_id)
    listing_id: Optional[str] = None
    shared_link_id: Optional[str] = None
    buyer_id: str
    seller_id: str
    item_id: str
    amount: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED
    transaction_id: str
    receipt_number: str
    purchase_date: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def payment_tx_hash(self) -> Optional[str]:
        return self.metadata.get('transaction_hash')


class Affiliate(BaseModel):
    id: str = Field(default_factory=new_id)
    listing_id: Optional[str] = None
    shared_link_id: Optional[str] = None
    owner_id: str
    affiliate_user_id: str
    commission_rate: Decimal
    affiliate_code: str
    status: AffiliateStatus = AffiliateStatus.ACTIVE
    total_earnings: Decimal = Decimal('0')
    paid_earnings: Decimal = Decimal('0')
    total_sales: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def exactly_one_content(self) -> 'Affiliate':
        if (self.listing_id is None) == (self.shared_link_id is None):
            raise ValueError("An affiliate must reference exactly one of listing or shared link")
        if not Decimal('0') <= self.commission_rate <= Decimal('100'):
            raise ValueError("Commission rate must be between 0 and 100")
        return self


class AffiliateTransaction(BaseModel):
    id: str = Field(default_factory=new_id)
    affiliate_id: str
    original_transaction_id: str
    affiliate_user_id: str
    owner_id: str
    buyer_id: str
    affiliate_code: str
    sale_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    status: CommissionStatus = CommissionStatus.PENDING
    paid_at: Optional[datetime] = None
    settlement_claim: Optional[str] = None
    claimed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
