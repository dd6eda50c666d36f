"""Shared link API endpoints.

Links are addressed by their unguessable token.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Security, status
from pydantic import BaseModel

from auth import get_current_user, get_optional_user
from ledger.models import LinkKind, User
from payments import AFFILIATE_HEADER, PAYMENT_HEADER

from .. import serialize
from ..deps import copied_item_body, get_services, receipt_body
from ..services import Services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/shared-links",
    tags=["Shared Links"]
)


class CreateSharedLinkRequest(BaseModel):
    item_id: str
    kind: LinkKind = LinkKind.PUBLIC
    price: Optional[Decimal] = None
    title: Optional[str] = None
    description: Optional[str] = None
    expires_at: Optional[datetime] = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_shared_link(
    request: CreateSharedLinkRequest,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Create a public or monetized link to an item the caller owns."""
    link = await services.listings.create_shared_link(
        owner_id=user.id,
        item_id=request.item_id,
        kind=request.kind,
        price=request.price,
        title=request.title or "",
        description=request.description or "",
        expires_at=request.expires_at
    )
    return serialize({"link": link})


@router.get("/{link_id}/details")
async def link_details(link_id: str, services: Services = Depends(get_services)):
    """Price, title and owner wallet of a monetized link."""
    return serialize(await services.listings.link_details(link_id))


@router.get("/{link_id}")
async def open_link(
    link_id: str,
    user: Optional[User] = Security(get_optional_user),
    services: Services = Depends(get_services)
):
    """Report whether the caller may open the link. Anonymous callers are allowed."""
    access = await services.orchestrator.check_shared_link_access(
        link_id, user.id if user else None
    )
    return serialize(access)


@router.post("/{link_id}")
async def save_to_drive(
    link_id: str,
    request: Request,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Copy the link's content into the caller's shared folder."""
    result = await services.orchestrator.claim_shared_link(user.id, link_id, resource=str(request.url))
    return serialize({
        "copied_item": copied_item_body(result['copied_item'], result['copied_path']),
        "transaction": result['transaction'],
        "message": "Content saved to your drive"
    })


@router.post("/{link_id}/pay", status_code=status.HTTP_201_CREATED)
async def pay_for_link(
    link_id: str,
    request: Request,
    payment_response: Optional[str] = Header(None, alias=PAYMENT_HEADER),
    affiliate_code: Optional[str] = Header(None, alias=AFFILIATE_HEADER),
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Pay for a monetized link and copy its content into the caller's drive."""
    receipt = await services.orchestrator.pay_shared_link(
        buyer_id=user.id,
        link_token=link_id,
        assertion=payment_response,
        affiliate_code=affiliate_code,
        resource=str(request.url)
    )
    return serialize(receipt_body(receipt, "Payment completed"))
