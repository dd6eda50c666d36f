"""Ledger package.

Records, error taxonomy and the storage backends that persist purchases,
shared-link payments, affiliates and commissions.
"""

from .errors import (
    AlreadyPurchasedError, DependencyUnavailableError, DestinationOwnerNotFoundError,
    ErrorKind, ExpiredError, ForbiddenError, InsufficientFundsError, IntegrityError,
    InvalidProofError, InvalidRequestError, MissingWalletError, NotFoundError,
    PaymentRejectedError, PaymentRequiredError, ReplicationError, SelfPurchaseError,
    SettlementError, SourceNotFoundError, UnauthenticatedError
)
from .models import (
    Affiliate, AffiliateStatus, AffiliateTransaction, CommissionStatus, ContentSource,
    Item, ItemKind, LinkKind, Listing, ListingStatus, PaymentProof, SharedLink,
    Transaction, TransactionStatus, User, new_id, utcnow
)
from .store import LedgerStore, TRANSACTION_ROLES
from .memory import MemoryLedgerStore

__all__ = [
    # Errors
    'ErrorKind', 'SettlementError', 'IntegrityError', 'NotFoundError', 'ExpiredError',
    'AlreadyPurchasedError', 'SelfPurchaseError', 'InvalidProofError',
    'PaymentRejectedError', 'PaymentRequiredError', 'MissingWalletError',
    'InsufficientFundsError', 'ForbiddenError', 'UnauthenticatedError',
    'InvalidRequestError', 'SourceNotFoundError', 'DestinationOwnerNotFoundError',
    'ReplicationError', 'DependencyUnavailableError',
    # Models
    'User', 'Item', 'ItemKind', 'ContentSource', 'Listing', 'ListingStatus',
    'SharedLink', 'LinkKind', 'PaymentProof', 'Transaction', 'TransactionStatus',
    'Affiliate', 'AffiliateStatus', 'AffiliateTransaction', 'CommissionStatus',
    'new_id', 'utcnow',
    # Stores
    'LedgerStore', 'TRANSACTION_ROLES', 'MemoryLedgerStore'
]
