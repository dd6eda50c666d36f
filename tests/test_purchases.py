"""Tests for the purchase orchestrator."""

import asyncio
import re
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from ledger import (
    AlreadyPurchasedError, CommissionStatus, ContentSource, ExpiredError, ForbiddenError,
    ItemKind, LinkKind, MissingWalletError, NotFoundError, PaymentRejectedError, PaymentRequiredError,
    ReplicationError, SelfPurchaseError, Transaction, utcnow
)
from listings import ListingManager
from purchases import PurchaseState, generate_receipt_number, to_base36

from conftest import AFFILIATE_WALLET, BUYER_WALLET, OTHER_WALLET, SELLER_WALLET


@pytest_asyncio.fixture
async def monetized_link(store, marketplace, make_item):
    folder = await make_item(marketplace['seller'].id, 'Course', kind=ItemKind.FOLDER)
    await make_item(marketplace['seller'].id, 'Lesson 1.mp4', parent_id=folder.id)
    return await ListingManager(store).create_shared_link(
        marketplace['seller'].id, folder.id, LinkKind.MONETIZED, price=Decimal('2.50')
    )


def test_receipt_number_format():
    number = generate_receipt_number(now_ms=1700000000000)
    assert re.match(r'^RCP-[0-9A-Z]+-[0-9A-Z]{6}$', number)
    assert number.split('-')[1] == to_base36(1700000000000)
    assert to_base36(0) == '0'
    assert to_base36(35) == 'Z'
    assert to_base36(36) == '10'


@pytest.mark.asyncio
async def test_purchase_with_affiliate(store, orchestrator, engine, marketplace, pay):
    """$10 listing bought through a 15% affiliate."""
    affiliate = await engine.create_affiliate(
        marketplace['seller'].id, marketplace['affiliate'].id, Decimal('15'),
        listing_id=marketplace['listing'].id
    )

    receipt = await orchestrator.purchase_listing(
        marketplace['buyer'].id,
        marketplace['listing'].id,
        pay(BUYER_WALLET, SELLER_WALLET, '10.00'),
        affiliate_code=affiliate.affiliate_code
    )

    assert receipt.state == PurchaseState.COMPLETE
    assert receipt.warnings == []
    assert receipt.transaction.amount == Decimal('10.00')
    assert receipt.transaction.buyer_id == marketplace['buyer'].id
    assert receipt.transaction.seller_id == marketplace['seller'].id
    assert receipt.transaction.receipt_number.startswith('RCP-')
    assert receipt.transaction.metadata['payer'] == BUYER_WALLET

    assert receipt.copied_item.name == 'Report.pdf (Purchased)'
    assert receipt.copied_item.owner_id == marketplace['buyer'].id
    assert receipt.copied_item.content_source == ContentSource.MARKETPLACE
    assert receipt.copied_item.blob_ref == marketplace['item'].blob_ref
    assert receipt.copied_path == '/marketplace/Report.pdf (Purchased)'

    commission = receipt.affiliate_commission
    assert commission.status == CommissionStatus.PENDING
    assert commission.commission_amount == Decimal('1.50')
    assert commission.original_transaction_id == receipt.transaction.id

    # The seller's original is untouched
    original = await store.get_item(marketplace['item'].id)
    assert original.owner_id == marketplace['seller'].id


@pytest.mark.asyncio
async def test_purchase_without_payment_returns_requirements(store, orchestrator, marketplace):
    with pytest.raises(PaymentRequiredError) as excinfo:
        await orchestrator.purchase_listing(
            marketplace['buyer'].id, marketplace['listing'].id, None,
            resource='http://test/listings/x/purchase'
        )

    body = excinfo.value.to_dict()
    assert body['x402Version'] == 1
    accepts = body['accepts'][0]
    assert accepts['maxAmountRequired'] == '10000000'
    assert accepts['payTo'] == SELLER_WALLET
    assert accepts['network'] == 'base-sepolia'
    assert accepts['resource'] == 'http://test/listings/x/purchase'
    transactions, total = await store.list_transactions(marketplace['buyer'].id)
    assert total == 0


@pytest.mark.asyncio
async def test_base64_assertion_is_accepted(orchestrator, marketplace, pay):
    receipt = await orchestrator.purchase_listing(
        marketplace['buyer'].id, marketplace['listing'].id,
        pay(BUYER_WALLET, SELLER_WALLET, '10', encode=True)
    )
    assert receipt.access_granted


@pytest.mark.asyncio
async def test_cannot_buy_own_listing(orchestrator, marketplace, pay):
    with pytest.raises(SelfPurchaseError):
        await orchestrator.purchase_listing(
            marketplace['seller'].id, marketplace['listing'].id,
            pay(SELLER_WALLET, SELLER_WALLET, '10')
        )


@pytest.mark.asyncio
async def test_cannot_buy_twice(store, orchestrator, marketplace, pay):
    await orchestrator.purchase_listing(
        marketplace['buyer'].id, marketplace['listing'].id, pay(BUYER_WALLET, SELLER_WALLET, '10')
    )
    with pytest.raises(AlreadyPurchasedError):
        await orchestrator.purchase_listing(
            marketplace['buyer'].id, marketplace['listing'].id, pay(BUYER_WALLET, SELLER_WALLET, '10')
        )
    transactions, total = await store.list_transactions(marketplace['buyer'].id, role='purchases')
    assert total == 1


@pytest.mark.asyncio
async def test_concurrent_purchases_record_once(store, orchestrator, marketplace, pay):
    results = await asyncio.gather(
        orchestrator.purchase_listing(
            marketplace['buyer'].id, marketplace['listing'].id, pay(BUYER_WALLET, SELLER_WALLET, '10')
        ),
        orchestrator.purchase_listing(
            marketplace['buyer'].id, marketplace['listing'].id, pay(BUYER_WALLET, SELLER_WALLET, '10')
        ),
        return_exceptions=True
    )

    receipts = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(receipts) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], AlreadyPurchasedError)

    transactions, total = await store.list_transactions(marketplace['buyer'].id, role='purchases')
    assert total == 1
    mirror = await store.find_child(
        marketplace['buyer'].id, marketplace['buyer'].root_folder_id, 'marketplace'
    )
    assert len(await store.list_children(mirror.id)) == 1


@pytest.mark.asyncio
async def test_payment_proof_cannot_be_reused(orchestrator, marketplace, make_user, pay):
    assertion = pay(BUYER_WALLET, SELLER_WALLET, '10')
    await orchestrator.purchase_listing(marketplace['buyer'].id, marketplace['listing'].id, assertion)

    freeloader = await make_user('freeloader', OTHER_WALLET)
    with pytest.raises(PaymentRejectedError):
        await orchestrator.purchase_listing(freeloader.id, marketplace['listing'].id, assertion)


@pytest.mark.asyncio
async def test_underpayment_is_rejected(store, orchestrator, marketplace, pay):
    with pytest.raises(PaymentRejectedError):
        await orchestrator.purchase_listing(
            marketplace['buyer'].id, marketplace['listing'].id, pay(BUYER_WALLET, SELLER_WALLET, '9.99')
        )
    assert await store.find_completed_purchase(
        marketplace['buyer'].id, listing_id=marketplace['listing'].id
    ) is None


@pytest.mark.asyncio
async def test_payment_to_wrong_wallet_is_rejected(orchestrator, marketplace, pay):
    with pytest.raises(PaymentRejectedError):
        await orchestrator.purchase_listing(
            marketplace['buyer'].id, marketplace['listing'].id, pay(BUYER_WALLET, AFFILIATE_WALLET, '10')
        )


@pytest.mark.asyncio
async def test_failed_payment_is_rejected(store, orchestrator, marketplace, pay):
    with pytest.raises(PaymentRejectedError):
        await orchestrator.purchase_listing(
            marketplace['buyer'].id, marketplace['listing'].id,
            pay(BUYER_WALLET, SELLER_WALLET, '10', success=False)
        )
    transactions, total = await store.list_transactions(marketplace['buyer'].id)
    assert total == 0


@pytest.mark.asyncio
async def test_wrong_network_is_rejected(orchestrator, marketplace, pay):
    with pytest.raises(PaymentRejectedError):
        await orchestrator.purchase_listing(
            marketplace['buyer'].id, marketplace['listing'].id,
            pay(BUYER_WALLET, SELLER_WALLET, '10', network='base')
        )


@pytest.mark.asyncio
async def test_unknown_listing(orchestrator, marketplace, pay):
    with pytest.raises(NotFoundError):
        await orchestrator.purchase_listing(
            marketplace['buyer'].id, 'missing', pay(BUYER_WALLET, SELLER_WALLET, '10')
        )


@pytest.mark.asyncio
async def test_seller_without_wallet(store, orchestrator, marketplace, pay):
    await store.set_wallet(marketplace['seller'].id, None)
    with pytest.raises(MissingWalletError):
        await orchestrator.purchase_listing(marketplace['buyer'].id, marketplace['listing'].id, None)


@pytest.mark.asyncio
async def test_failed_grant_keeps_sale_and_regrant_recovers(store, orchestrator, replicator, marketplace, pay):
    real_replicate = replicator.replicate

    async def broken_replicate(*args, **kwargs):
        raise ReplicationError("disk full", rolled_back=['a'], orphaned=[])

    replicator.replicate = broken_replicate
    receipt = await orchestrator.purchase_listing(
        marketplace['buyer'].id, marketplace['listing'].id, pay(BUYER_WALLET, SELLER_WALLET, '10')
    )

    assert receipt.state == PurchaseState.RECORD_CREATED
    assert not receipt.access_granted
    assert len(receipt.warnings) == 1
    assert await store.get_transaction(receipt.transaction.id) is not None

    replicator.replicate = real_replicate
    regranted = await orchestrator.regrant(marketplace['buyer'].id, receipt.transaction.id)

    assert regranted.state == PurchaseState.COMPLETE
    assert regranted.copied_path == '/marketplace/Report.pdf (Purchased)'


@pytest.mark.asyncio
async def test_failed_commission_does_not_undo_sale(orchestrator, engine, marketplace, pay):
    async def broken_record_sale(*args, **kwargs):
        raise RuntimeError("ledger hiccup")

    engine.record_sale = broken_record_sale
    receipt = await orchestrator.purchase_listing(
        marketplace['buyer'].id, marketplace['listing'].id,
        pay(BUYER_WALLET, SELLER_WALLET, '10'), affiliate_code='AFF-00000000'
    )

    assert receipt.state == PurchaseState.COMPLETE
    assert receipt.affiliate_commission is None
    assert receipt.warnings == ["Affiliate commission could not be recorded"]


@pytest.mark.asyncio
async def test_regrant_only_for_buyer(orchestrator, marketplace, pay):
    receipt = await orchestrator.purchase_listing(
        marketplace['buyer'].id, marketplace['listing'].id, pay(BUYER_WALLET, SELLER_WALLET, '10')
    )
    with pytest.raises(ForbiddenError):
        await orchestrator.regrant(marketplace['seller'].id, receipt.transaction.id)
    with pytest.raises(NotFoundError):
        await orchestrator.regrant(marketplace['buyer'].id, 'missing')


@pytest.mark.asyncio
async def test_pay_shared_link(store, orchestrator, marketplace, monetized_link, pay):
    receipt = await orchestrator.pay_shared_link(
        marketplace['buyer'].id, monetized_link.link_token, pay(BUYER_WALLET, SELLER_WALLET, '2.50')
    )

    assert receipt.transaction.shared_link_id == monetized_link.id
    assert receipt.transaction.listing_id is None
    assert receipt.copied_path == '/shared/Course (Shared)'
    assert receipt.copied_item.content_source == ContentSource.SHARED
    children = await store.list_children(receipt.copied_item.id)
    assert [c.name for c in children] == ['Lesson 1.mp4 (Shared)']
    assert await store.has_paid(monetized_link.id, marketplace['buyer'].id)

    with pytest.raises(AlreadyPurchasedError):
        await orchestrator.pay_shared_link(
            marketplace['buyer'].id, monetized_link.link_token, pay(BUYER_WALLET, SELLER_WALLET, '2.50')
        )


@pytest.mark.asyncio
async def test_shared_link_access(orchestrator, marketplace, monetized_link, pay):
    anonymous = await orchestrator.check_shared_link_access(monetized_link.link_token)
    assert anonymous['can_access'] is False
    assert anonymous['requires_auth'] is True

    before = await orchestrator.check_shared_link_access(monetized_link.link_token, marketplace['buyer'].id)
    assert before['requires_payment'] is True
    assert before['already_paid'] is False

    owner = await orchestrator.check_shared_link_access(monetized_link.link_token, marketplace['seller'].id)
    assert owner['can_access'] is True

    await orchestrator.pay_shared_link(
        marketplace['buyer'].id, monetized_link.link_token, pay(BUYER_WALLET, SELLER_WALLET, '2.50')
    )
    after = await orchestrator.check_shared_link_access(monetized_link.link_token, marketplace['buyer'].id)
    assert after['can_access'] is True
    assert after['already_paid'] is True


@pytest.mark.asyncio
async def test_claim_monetized_link_requires_payment(orchestrator, marketplace, monetized_link, pay):
    with pytest.raises(PaymentRequiredError) as excinfo:
        await orchestrator.claim_shared_link(marketplace['buyer'].id, monetized_link.link_token)
    assert excinfo.value.requirements['accepts'][0]['maxAmountRequired'] == '2500000'

    await orchestrator.pay_shared_link(
        marketplace['buyer'].id, monetized_link.link_token, pay(BUYER_WALLET, SELLER_WALLET, '2.50')
    )
    result = await orchestrator.claim_shared_link(marketplace['buyer'].id, monetized_link.link_token)
    # Saved again next to the paid copy
    assert result['copied_path'] == '/shared/Course (Shared) (2)'
    assert result['transaction'] is not None


@pytest.mark.asyncio
async def test_claim_public_link_is_free(store, orchestrator, marketplace, make_item):
    item = await make_item(marketplace['seller'].id, 'Flyer.png')
    link = await ListingManager(store).create_shared_link(marketplace['seller'].id, item.id, LinkKind.PUBLIC)

    result = await orchestrator.claim_shared_link(marketplace['buyer'].id, link.link_token)

    assert result['copied_item'].name == 'Flyer.png (Shared)'
    assert result['transaction'] is None
    with pytest.raises(NotFoundError):
        await orchestrator.pay_shared_link(marketplace['buyer'].id, link.link_token, None)


@pytest.mark.asyncio
async def test_expired_link_denied_even_after_payment(store, orchestrator, marketplace, make_item):
    item = await make_item(marketplace['seller'].id, 'Old.zip')
    link = await ListingManager(store).create_shared_link(
        marketplace['seller'].id, item.id, LinkKind.MONETIZED, price=Decimal('1'),
        expires_at=utcnow() - timedelta(minutes=1)
    )
    # Paid before it expired
    await store.create_transaction(Transaction(
        shared_link_id=link.id,
        buyer_id=marketplace['buyer'].id,
        seller_id=marketplace['seller'].id,
        item_id=item.id,
        amount=Decimal('1'),
        transaction_id=generate_receipt_number(),
        receipt_number=generate_receipt_number()
    ))
    assert await store.has_paid(link.id, marketplace['buyer'].id)

    with pytest.raises(ExpiredError):
        await orchestrator.check_shared_link_access(link.link_token, marketplace['buyer'].id)
    with pytest.raises(ExpiredError):
        await orchestrator.claim_shared_link(marketplace['buyer'].id, link.link_token)
    with pytest.raises(ExpiredError):
        await orchestrator.pay_shared_link(marketplace['buyer'].id, link.link_token, None)
