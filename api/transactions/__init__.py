"""Purchase history endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Security

from auth import get_current_user
from ledger.errors import ForbiddenError, InvalidRequestError, NotFoundError
from ledger.models import TransactionStatus, User

from .. import serialize
from ..deps import get_services, receipt_body
from ..services import Services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/transactions",
    tags=["Transactions"]
)

TRANSACTION_TYPES = ('purchases', 'sales', 'all')


@router.get("")
async def list_transactions(
    type: str = Query('all'),
    status: Optional[TransactionStatus] = Query(None),
    page: int = Query(1),
    limit: int = Query(20),
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """The caller's purchases, sales or both, newest first."""
    if type not in TRANSACTION_TYPES:
        raise InvalidRequestError(f"type must be one of {', '.join(TRANSACTION_TYPES)}")
    if page < 1 or limit < 1:
        raise InvalidRequestError("page and limit must be positive")

    transactions, total = await services.store.list_transactions(
        user.id, role=type, status=status, limit=limit, offset=(page - 1) * limit
    )
    return serialize({
        "transactions": [
            dict(
                txn.model_dump(),
                transaction_type='purchase' if txn.buyer_id == user.id else 'sale'
            )
            for txn in transactions
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit
        }
    })


@router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """One transaction. Only its buyer and seller may read it."""
    transaction = await services.store.get_transaction(transaction_id)
    if transaction is None:
        raise NotFoundError("Transaction not found", transaction_id=transaction_id)
    if user.id not in (transaction.buyer_id, transaction.seller_id):
        raise ForbiddenError("Access denied")
    return serialize({"transaction": transaction})


@router.post("/{transaction_id}/grant")
async def regrant(
    transaction_id: str,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Copy a purchased item into the buyer's drive again after a failed grant."""
    receipt = await services.orchestrator.regrant(user.id, transaction_id)
    return serialize(receipt_body(receipt, "Content granted"))
