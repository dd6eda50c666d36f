"""Integration tests for the Postgres ledger store.

Run against a disposable database:
    SETTLEMENT_TEST_DB_URL=postgresql://root@localhost:26257/settlement_test?sslmode=disable pytest
"""

import asyncio
import os
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from database import Database
from ledger import (
    Affiliate, AffiliateTransaction, CommissionStatus, IntegrityError, Item, ItemKind,
    LinkKind, Listing, SharedLink, Transaction, User
)
from ledger.postgres import PostgresLedgerStore
from purchases import generate_receipt_number

DB_URL = os.environ.get('SETTLEMENT_TEST_DB_URL')

pytestmark = pytest.mark.skipif(not DB_URL, reason="SETTLEMENT_TEST_DB_URL not set")


def uid(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@pytest_asyncio.fixture
async def pg_store():
    database = Database(DB_URL, min_size=1, max_size=4)
    await database.init()
    store = PostgresLedgerStore(database)
    yield store
    await store.close()


@pytest_asyncio.fixture
async def seller_and_buyer(pg_store):
    seller = await pg_store.create_user(User(id=uid('seller'), wallet_address='0x' + '1' * 40))
    buyer = await pg_store.create_user(User(id=uid('buyer')))
    item = await pg_store.create_item(Item(
        name='report.pdf', kind=ItemKind.FILE, parent_id=seller.root_folder_id, owner_id=seller.id
    ))
    listing = await pg_store.create_listing(Listing(
        item_id=item.id, seller_id=seller.id, title='Report', price=Decimal('10.00')
    ))
    return seller, buyer, item, listing


def sale_of(listing, buyer, tx_hash=None, shared_link_id=None):
    return Transaction(
        listing_id=None if shared_link_id else listing.id,
        shared_link_id=shared_link_id,
        buyer_id=buyer.id,
        seller_id=listing.seller_id,
        item_id=listing.item_id,
        amount=listing.price,
        transaction_id=str(uuid.uuid4()),
        receipt_number=generate_receipt_number(),
        metadata={'transaction_hash': tx_hash or '0x' + uuid.uuid4().hex * 2}
    )


@pytest.mark.asyncio
async def test_user_has_root_folder(pg_store, seller_and_buyer):
    seller = seller_and_buyer[0]
    user = await pg_store.get_user(seller.id)
    root = await pg_store.get_item(user.root_folder_id)
    assert root.parent_id is None
    assert user.wallet_address == '0x' + '1' * 40


@pytest.mark.asyncio
async def test_concurrent_purchase_inserts(pg_store, seller_and_buyer):
    seller, buyer, item, listing = seller_and_buyer

    results = await asyncio.gather(
        pg_store.create_transaction(sale_of(listing, buyer)),
        pg_store.create_transaction(sale_of(listing, buyer)),
        return_exceptions=True
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], IntegrityError)
    assert errors[0].constraint == IntegrityError.PURCHASE


@pytest.mark.asyncio
async def test_payment_hash_reuse(pg_store, seller_and_buyer):
    seller, buyer, item, listing = seller_and_buyer
    other = await pg_store.create_user(User(id=uid('other')))
    tx_hash = '0x' + uuid.uuid4().hex * 2
    await pg_store.create_transaction(sale_of(listing, buyer, tx_hash=tx_hash))

    with pytest.raises(IntegrityError) as excinfo:
        await pg_store.create_transaction(sale_of(listing, other, tx_hash=tx_hash))
    assert excinfo.value.constraint == IntegrityError.PAYMENT_PROOF


@pytest.mark.asyncio
async def test_link_sale_marks_paid(pg_store, seller_and_buyer):
    seller, buyer, item, listing = seller_and_buyer
    link = await pg_store.create_shared_link(SharedLink(
        item_id=item.id, owner_id=seller.id, link_token=uid('tok'),
        kind=LinkKind.MONETIZED, price=Decimal('2')
    ))

    await pg_store.create_transaction(sale_of(listing, buyer, shared_link_id=link.id))

    assert await pg_store.has_paid(link.id, buyer.id)
    assert (await pg_store.get_shared_link(link.link_token)).id == link.id


@pytest.mark.asyncio
async def test_commission_claim_is_exclusive(pg_store, seller_and_buyer):
    seller, buyer, item, listing = seller_and_buyer
    sale = await pg_store.create_transaction(sale_of(listing, buyer))
    affiliate = await pg_store.create_affiliate(Affiliate(
        listing_id=listing.id, owner_id=seller.id, affiliate_user_id=buyer.id,
        commission_rate=Decimal('15'), affiliate_code=uid('AFF')
    ))
    commission = await pg_store.create_affiliate_transaction(AffiliateTransaction(
        affiliate_id=affiliate.id, original_transaction_id=sale.id,
        affiliate_user_id=buyer.id, owner_id=seller.id, buyer_id=buyer.id,
        affiliate_code=affiliate.affiliate_code, sale_amount=Decimal('10.00'),
        commission_rate=Decimal('15'), commission_amount=Decimal('1.50')
    ))

    claims = await asyncio.gather(
        pg_store.claim_commission(commission.id, 'batch-a'),
        pg_store.claim_commission(commission.id, 'batch-b')
    )

    assert sum(1 for c in claims if c is not None) == 1
    failed = await pg_store.mark_commission_failed(commission.id, {'failure_reason': 'test'})
    assert failed.status == CommissionStatus.FAILED
    assert failed.metadata['failure_reason'] == 'test'

    updated = await pg_store.update_affiliate(affiliate.id, commission_rate=Decimal('20'))
    assert updated.commission_rate == Decimal('20')
    recorded = await pg_store.get_affiliate_transaction(commission.id)
    assert recorded.commission_rate == Decimal('15')

    accrued = await pg_store.get_affiliate(affiliate.id)
    assert accrued.total_sales == 1
    assert accrued.total_earnings == Decimal('1.50')


@pytest.mark.asyncio
async def test_requeue_releases_stale_claim(pg_store, seller_and_buyer):
    seller, buyer, item, listing = seller_and_buyer
    sale = await pg_store.create_transaction(sale_of(listing, buyer))
    affiliate = await pg_store.create_affiliate(Affiliate(
        listing_id=listing.id, owner_id=seller.id, affiliate_user_id=buyer.id,
        commission_rate=Decimal('10'), affiliate_code=uid('AFF')
    ))
    commission = await pg_store.create_affiliate_transaction(AffiliateTransaction(
        affiliate_id=affiliate.id, original_transaction_id=sale.id,
        affiliate_user_id=buyer.id, owner_id=seller.id, buyer_id=buyer.id,
        affiliate_code=affiliate.affiliate_code, sale_amount=Decimal('10.00'),
        commission_rate=Decimal('10'), commission_amount=Decimal('1.00')
    ))
    claimed = await pg_store.claim_commission(commission.id, 'crashed-batch')

    assert await pg_store.requeue_failed_commissions(seller.id, stale_before=claimed.claimed_at) == 0
    later = claimed.claimed_at + timedelta(seconds=1)
    assert await pg_store.requeue_failed_commissions(seller.id, stale_before=later) == 1

    released = await pg_store.get_affiliate_transaction(commission.id)
    assert released.settlement_claim is None
    assert released.status == CommissionStatus.PENDING
