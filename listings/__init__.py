"""Listings module for managing marketplace listings and shared links.

This module provides functionality for:
- Creating listings for items a seller owns
- Creating public and monetized shared links
- Reporting the price and payee of paid content
"""

import logging
import secrets
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from ledger.errors import ForbiddenError, IntegrityError, InvalidRequestError, NotFoundError
from ledger.models import Item, LinkKind, Listing, ListingStatus, SharedLink
from ledger.store import LedgerStore

logger = logging.getLogger(__name__)

TOKEN_BYTES = 16
TOKEN_ATTEMPTS = 5


def parse_price(value: Any) -> Decimal:
    """Parse a price into a positive Decimal.

    Raises:
        InvalidRequestError: If the price is not a positive number
    """
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidRequestError(f"Invalid price: {value!r}") from e
    if not price.is_finite() or price <= 0:
        raise InvalidRequestError("Price must be greater than 0")
    return price


class ListingManager:
    """Manager class for listings and shared links."""

    def __init__(self, store: LedgerStore):
        self.store = store

    async def _owned_item(self, owner_id: str, item_id: str) -> Item:
        item = await self.store.get_item(item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found")
        if item.owner_id != owner_id:
            raise ForbiddenError("You can only offer items you own")
        if item.parent_id is None:
            raise InvalidRequestError("The root folder cannot be offered")
        return item

    async def create_listing(
        self,
        seller_id: str,
        item_id: str,
        title: str,
        price: Any,
        description: str = "",
        tags: Optional[List[str]] = None
    ) -> Listing:
        """Create a new listing.

        Args:
            seller_id: The seller's user id
            item_id: Item being sold, owned by the seller
            title: Listing title
            price: Price in USDC, greater than 0
            description: Optional description
            tags: Optional list of tags

        Returns:
            The created listing

        Raises:
            InvalidRequestError: Bad price or the item is already listed
            NotFoundError: Item missing
            ForbiddenError: Item belongs to someone else
        """
        if not title or not title.strip():
            raise InvalidRequestError("Title is required")
        price = parse_price(price)
        await self._owned_item(seller_id, item_id)

        listing = Listing(
            item_id=item_id,
            seller_id=seller_id,
            title=title.strip(),
            description=description or "",
            price=price,
            status=ListingStatus.ACTIVE,
            tags=[t.strip() for t in (tags or []) if t and t.strip()]
        )
        try:
            created = await self.store.create_listing(listing)
        except IntegrityError as e:
            raise InvalidRequestError("This item is already listed") from e

        logger.info(f"Created listing {created.id} for item {item_id} at {price} by {seller_id}")
        return created

    async def create_shared_link(
        self,
        owner_id: str,
        item_id: str,
        kind: LinkKind,
        price: Any = None,
        title: str = "",
        description: str = "",
        expires_at: Optional[datetime] = None
    ) -> SharedLink:
        """Create a shared link with an unguessable token.

        Monetized links need a price; public links must not have one.
        """
        kind = LinkKind(kind)
        if kind == LinkKind.MONETIZED:
            price = parse_price(price)
        elif price is not None:
            raise InvalidRequestError("Public links cannot have a price")

        item = await self._owned_item(owner_id, item_id)

        for _ in range(TOKEN_ATTEMPTS):
            link = SharedLink(
                item_id=item.id,
                owner_id=owner_id,
                link_token=secrets.token_urlsafe(TOKEN_BYTES),
                kind=kind,
                title=title or item.name,
                description=description or "",
                price=price,
                expires_at=expires_at
            )
            try:
                created = await self.store.create_shared_link(link)
            except IntegrityError:
                continue
            logger.info(f"Created {kind.value} shared link for item {item_id} by {owner_id}")
            return created

        raise InvalidRequestError("Could not allocate a unique link token")

    async def listing_details(self, listing_id: str) -> Dict[str, Any]:
        """Price, title and payee wallet of an active listing."""
        listing = await self.store.get_listing(listing_id)
        if listing is None or listing.status != ListingStatus.ACTIVE:
            raise NotFoundError("Listing not found or inactive", listing_id=listing_id)
        seller = await self.store.get_user(listing.seller_id)
        return {
            'price': listing.price,
            'title': listing.title,
            'seller_wallet': seller.wallet_address if seller else None
        }

    async def link_details(self, link_token: str) -> Dict[str, Any]:
        """Price, title and payee wallet of an active monetized link."""
        link = await self.store.get_shared_link(link_token)
        if link is None or not link.is_active or link.kind != LinkKind.MONETIZED:
            raise NotFoundError("Monetized link not found or expired", link_id=link_token)
        owner = await self.store.get_user(link.owner_id)
        return {
            'price': link.price,
            'title': link.title,
            'seller_wallet': owner.wallet_address if owner else None
        }
