"""Listings API endpoints."""

import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request, Security, status
from pydantic import BaseModel

from auth import get_current_user
from ledger.models import User
from payments import AFFILIATE_HEADER, PAYMENT_HEADER

from .. import serialize
from ..deps import get_services, receipt_body
from ..services import Services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/listings",
    tags=["Listings"]
)


class CreateListingRequest(BaseModel):
    """Request model for creating a listing."""
    item_id: str
    title: str
    price: Decimal
    description: Optional[str] = None
    tags: Optional[List[str]] = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_listing(
    request: CreateListingRequest,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """List an item the caller owns for sale."""
    listing = await services.listings.create_listing(
        seller_id=user.id,
        item_id=request.item_id,
        title=request.title,
        price=request.price,
        description=request.description or "",
        tags=request.tags
    )
    return serialize({"listing": listing})


@router.get("/{listing_id}/details")
async def listing_details(listing_id: str, services: Services = Depends(get_services)):
    """Price, title and seller wallet of an active listing."""
    return serialize(await services.listings.listing_details(listing_id))


@router.post("/{listing_id}/purchase", status_code=status.HTTP_201_CREATED)
async def purchase_listing(
    listing_id: str,
    request: Request,
    payment_response: Optional[str] = Header(None, alias=PAYMENT_HEADER),
    affiliate_code: Optional[str] = Header(None, alias=AFFILIATE_HEADER),
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Buy a listing.

    Without an x-payment-response header the answer is 402 with the x402
    payment requirements. With one, the payment is verified, the purchase
    recorded and the item copied into the buyer's marketplace folder.
    """
    receipt = await services.orchestrator.purchase_listing(
        buyer_id=user.id,
        listing_id=listing_id,
        assertion=payment_response,
        affiliate_code=affiliate_code,
        resource=str(request.url)
    )
    return serialize(receipt_body(receipt, "Purchase completed"))
