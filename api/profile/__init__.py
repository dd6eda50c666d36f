"""Profile endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Security
from pydantic import BaseModel

from auth import get_current_user
from ledger.errors import InvalidRequestError
from ledger.models import User
from rpc.erc20 import normalize_address

from .. import serialize
from ..deps import get_services
from ..services import Services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/profile",
    tags=["Profile"]
)


class WalletUpdate(BaseModel):
    """Wallet that receives sale proceeds and pays commissions. None clears it."""
    wallet_address: Optional[str] = None


@router.get("")
async def get_profile(user: User = Security(get_current_user)):
    """Get the authenticated user's profile."""
    return serialize({"user": user})


@router.put("/wallet")
async def set_wallet(
    update: WalletUpdate,
    user: User = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Set or clear the caller's wallet address."""
    wallet = None
    if update.wallet_address:
        try:
            wallet = normalize_address(update.wallet_address)
        except ValueError as e:
            raise InvalidRequestError(f"Invalid wallet address: {update.wallet_address}") from e
    updated = await services.store.set_wallet(user.id, wallet)
    logger.info(f"User {user.id} {'set' if wallet else 'cleared'} wallet address")
    return serialize({"user": updated})
