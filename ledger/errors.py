"""Error taxonomy shared by every settlement component.

Each error kind carries its machine-readable code and the HTTP status the
API answers with, so callers never inspect message text to classify a failure.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    """Error kinds with their wire code and HTTP status."""

    NOT_FOUND = ('not_found', 404)
    EXPIRED = ('expired', 410)
    ALREADY_PURCHASED = ('already_purchased', 400)
    SELF_PURCHASE = ('self_purchase', 400)
    INVALID_PROOF = ('invalid_proof', 402)
    PAYMENT_REJECTED = ('payment_rejected', 402)
    PAYMENT_REQUIRED = ('payment_required', 402)
    MISSING_WALLET = ('missing_wallet', 400)
    INSUFFICIENT_FUNDS = ('insufficient_funds', 400)
    FORBIDDEN = ('forbidden', 403)
    UNAUTHENTICATED = ('unauthenticated', 401)
    INVALID_REQUEST = ('invalid_request', 400)
    REPLICATION_FAILED = ('replication_failed', 500)
    DEPENDENCY_UNAVAILABLE = ('dependency_unavailable', 503)

    def __init__(self, code: str, http_status: int):
        self.code = code
        self.http_status = http_status


class SettlementError(Exception):
    """Base class for errors surfaced to purchase and settlement callers."""

    kind: ErrorKind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = {'error': self.kind.code, 'detail': self.message}
        if self.details:
            body['context'] = self.details
        return body


class NotFoundError(SettlementError):
    """Raised when a listing, link, item, user or record is missing or inactive."""
    kind = ErrorKind.NOT_FOUND


class ExpiredError(SettlementError):
    kind = ErrorKind.EXPIRED


class AlreadyPurchasedError(SettlementError):
    kind = ErrorKind.ALREADY_PURCHASED


class SelfPurchaseError(SettlementError):
    kind = ErrorKind.SELF_PURCHASE


class InvalidProofError(SettlementError):
    """Raised when a payment assertion is absent, malformed, or does not match."""
    kind = ErrorKind.INVALID_PROOF


class PaymentRejectedError(SettlementError):
    kind = ErrorKind.PAYMENT_REJECTED


class PaymentRequiredError(SettlementError):
    """Raised when a paid resource is requested without any payment assertion.

    Carries the payment requirements the client must satisfy.
    """
    kind = ErrorKind.PAYMENT_REQUIRED

    def __init__(self, message: str, requirements: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.requirements = requirements

    def to_dict(self) -> Dict[str, Any]:
        if self.requirements is None:
            return super().to_dict()
        return dict(self.requirements, error=self.message)


class MissingWalletError(SettlementError):
    kind = ErrorKind.MISSING_WALLET


class InsufficientFundsError(SettlementError):
    kind = ErrorKind.INSUFFICIENT_FUNDS


class ForbiddenError(SettlementError):
    kind = ErrorKind.FORBIDDEN


class UnauthenticatedError(SettlementError):
    kind = ErrorKind.UNAUTHENTICATED


class InvalidRequestError(SettlementError):
    kind = ErrorKind.INVALID_REQUEST


class SourceNotFoundError(NotFoundError):
    """Raised when the item to replicate no longer exists."""
    pass


class DestinationOwnerNotFoundError(NotFoundError):
    """Raised when the user receiving a copy is unknown or has no root folder."""
    pass


class ReplicationError(SettlementError):
    """Raised when a subtree copy fails part way.

    Attributes:
        rolled_back: ids of partial copies that were removed again
        orphaned: ids of partial copies that could not be removed
    """
    kind = ErrorKind.REPLICATION_FAILED

    def __init__(self, message: str, rolled_back: Optional[List[str]] = None,
                 orphaned: Optional[List[str]] = None):
        super().__init__(message)
        self.rolled_back = rolled_back or []
        self.orphaned = orphaned or []


class DependencyUnavailableError(SettlementError):
    """Raised when the database, chain RPC or signer service cannot be reached."""
    kind = ErrorKind.DEPENDENCY_UNAVAILABLE


class IntegrityError(Exception):
    """Raised by a ledger store when a uniqueness constraint rejects a write.

    Not a SettlementError: callers translate the violated constraint into
    the matching client error.
    """

    PURCHASE = 'purchase'
    PAYMENT_PROOF = 'payment_proof'
    COMMISSION = 'commission'
    AFFILIATE = 'affiliate'
    AFFILIATE_CODE = 'affiliate_code'
    ITEM_NAME = 'item_name'
    LISTING_ITEM = 'listing_item'
    LINK_TOKEN = 'link_token'
    RECEIPT = 'receipt'

    def __init__(self, constraint: str, message: Optional[str] = None):
        self.constraint = constraint
        super().__init__(message or f"Uniqueness constraint violated: {constraint}")
