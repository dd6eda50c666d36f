"""Affiliate and commission settlement endpoints."""

import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Security, status
from pydantic import BaseModel, ConfigDict, Field

from auth import get_current_user
from ledger.models import AffiliateStatus, CommissionStatus, User

from .. import serialize
from ..deps import get_services
from ..services import Services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/affiliates",
    tags=["Affiliates"]
)


class CreateAffiliateRequest(BaseModel):
    """The affiliate is named by user id or by email."""
    affiliate_user_id: Optional[str] = None
    affiliate_email: Optional[str] = None
    commission_rate: Decimal = Field(ge=0, le=100)
    listing_id: Optional[str] = None
    link_id: Optional[str] = None


class UpdateAffiliateRequest(BaseModel):
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    status: Optional[AffiliateStatus] = None


class SettlementRequest(BaseModel):
    """Commissions to pay: specific ids or everything pending."""
    model_config = ConfigDict(populate_by_name=True)

    transaction_ids: Optional[List[str]] = Field(None, alias="transactionIds")
    pay_all: bool = Field(False, alias="payAll")


class RequeueRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_ids: Optional[List[str]] = Field(None, alias="transactionIds")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_affiliate(
    request: CreateAffiliateRequest,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Register an affiliate for one of the caller's listings or links."""
    affiliate = await services.commissions.create_affiliate(
        owner_id=user.id,
        affiliate_user_id=request.affiliate_user_id,
        commission_rate=request.commission_rate,
        listing_id=request.listing_id,
        link_token=request.link_id,
        affiliate_email=request.affiliate_email
    )
    return serialize({"affiliate": affiliate})


@router.get("/code/{code}")
async def get_affiliate_by_code(code: str, services: Services = Depends(get_services)):
    """Public lookup of an affiliate code."""
    affiliate = await services.commissions.get_by_code(code)
    return serialize({
        "affiliate_code": affiliate.affiliate_code,
        "listing_id": affiliate.listing_id,
        "shared_link_id": affiliate.shared_link_id,
        "commission_rate": affiliate.commission_rate,
        "status": affiliate.status.value
    })


@router.patch("/{affiliate_id}")
async def update_affiliate(
    affiliate_id: str,
    request: UpdateAffiliateRequest,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Change an affiliate's rate or status. Applies to future sales only."""
    affiliate = await services.commissions.update_affiliate(
        user.id, affiliate_id, request.commission_rate, request.status
    )
    return serialize({"affiliate": affiliate})


@router.post("/payments")
async def settle_commissions(
    request: SettlementRequest,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Pay pending commissions from the caller's wallet, one transfer each."""
    result = await services.commissions.settle_pending(
        user.id,
        transaction_ids=request.transaction_ids,
        pay_all=request.pay_all
    )
    summary = result['summary']
    result['message'] = f"Processed {summary['total']} payments: {summary['paid']} paid, {summary['failed']} failed"
    return serialize(result)


@router.get("/payments")
async def payment_history(
    status: Optional[CommissionStatus] = Query(None),
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Commissions the caller owes as content owner."""
    return serialize(await services.commissions.payment_history(user.id, status))


@router.post("/payments/requeue")
async def requeue_failed(
    request: RequeueRequest,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Return failed commissions to pending so the next batch retries them."""
    count = await services.commissions.requeue_failed(user.id, request.transaction_ids)
    return {"requeued": count}


@router.get("/transactions")
async def affiliate_transactions(
    type: str = Query('earned'),
    status: Optional[CommissionStatus] = Query(None),
    page: int = Query(1),
    limit: int = Query(20),
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Commissions the caller earned (type=earned) or paid out (type=paid)."""
    return serialize(await services.commissions.affiliate_ledger(
        user.id, kind=type, status=status, page=page, limit=limit
    ))
