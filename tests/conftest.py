"""Shared fixtures: an in-memory ledger, a fake USDC gateway and user/item factories."""

import asyncio
import base64
import itertools
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from commissions import CommissionEngine
from ledger import Item, ItemKind, MemoryLedgerStore, User
from listings import ListingManager
from payments import PaymentVerifier
from purchases import PurchaseOrchestrator
from replication import ContentReplicator
from rpc.signer import SignerError

NETWORK = 'base-sepolia'
USDC = '0x036cbd53842c5426634e7929541ec2318f3dcf7e'

SELLER_WALLET = '0x' + '1' * 40
BUYER_WALLET = '0x' + '2' * 40
AFFILIATE_WALLET = '0x' + '3' * 40
OTHER_WALLET = '0x' + '4' * 40


class FakeGateway:
    """Stands in for UsdcGateway: balances, confirmed receipts and transfers in memory.

    Every call yields to the event loop once so concurrent requests interleave.
    """

    def __init__(self):
        self.balances: Dict[str, Decimal] = {}
        self.receipts: Dict[str, Tuple[Optional[bool], List[Dict[str, Any]]]] = {}
        self.sent: List[Dict[str, Any]] = []
        self.reject_transfers_to = set()
        self._counter = itertools.count(1)

    def confirm(self, tx_hash: str, payer: str, pay_to: str, amount: Decimal, succeeded: bool = True) -> None:
        self.receipts[tx_hash] = (succeeded, [{'from': payer, 'to': pay_to, 'value': Decimal(amount)}])

    async def get_balance(self, address: str) -> Decimal:
        await asyncio.sleep(0)
        return self.balances.get(address.lower(), Decimal('0'))

    async def get_transfers(self, tx_hash: str):
        await asyncio.sleep(0)
        return self.receipts.get(tx_hash, (None, []))

    async def transfer(self, from_address: str, to_address: str, amount: Decimal) -> str:
        await asyncio.sleep(0)
        if to_address in self.reject_transfers_to:
            raise SignerError("Transfer rejected by signer")
        self.balances[from_address] = self.balances.get(from_address, Decimal('0')) - amount
        self.balances[to_address] = self.balances.get(to_address, Decimal('0')) + amount
        tx_hash = '0xee' + format(next(self._counter), '062x')
        self.sent.append({'from': from_address, 'to': to_address, 'amount': amount, 'hash': tx_hash})
        return tx_hash


@pytest_asyncio.fixture
async def store():
    """Create and return an empty in-memory ledger."""
    store = MemoryLedgerStore()
    yield store
    await store.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_user(store):
    """Factory creating a user with an optional wallet."""
    async def factory(user_id: str, wallet: Optional[str] = None) -> User:
        user = await store.create_user(User(id=user_id, name=user_id.title()))
        if wallet:
            user = await store.set_wallet(user_id, wallet)
        return user
    return factory


@pytest.fixture
def make_item(store):
    """Factory creating an item, by default in the owner's root folder."""
    async def factory(
        owner_id: str,
        name: str,
        kind: ItemKind = ItemKind.FILE,
        parent_id: Optional[str] = None,
        size: int = 0
    ) -> Item:
        if parent_id is None:
            parent_id = (await store.get_user(owner_id)).root_folder_id
        return await store.create_item(Item(
            name=name,
            kind=kind,
            parent_id=parent_id,
            owner_id=owner_id,
            size=size,
            blob_ref=f"blob://{name}" if kind == ItemKind.FILE else None
        ))
    return factory


@pytest.fixture
def pay(gateway):
    """Factory confirming an on-chain payment and returning its assertion header."""
    counter = itertools.count(1)

    def factory(payer: str, pay_to: str, amount, encode: bool = False, success: bool = True,
                network: str = NETWORK, tx_hash: Optional[str] = None) -> str:
        tx_hash = tx_hash or '0x' + format(next(counter), '064x')
        gateway.confirm(tx_hash, payer, pay_to, Decimal(str(amount)))
        body = json.dumps({
            'success': success,
            'transaction': tx_hash,
            'network': network,
            'payer': payer
        })
        if encode:
            return base64.b64encode(body.encode('utf-8')).decode('ascii')
        return body
    return factory


@pytest.fixture
def replicator(store):
    return ContentReplicator(store, max_depth=8, max_items=50)


@pytest.fixture
def engine(store, gateway):
    return CommissionEngine(store, gateway, network=NETWORK, ledger_retry_delay=0)


@pytest.fixture
def verifier(gateway):
    return PaymentVerifier(gateway=gateway, network=NETWORK)


@pytest.fixture
def orchestrator(store, verifier, replicator, engine):
    return PurchaseOrchestrator(
        store, verifier, replicator, engine, network=NETWORK, asset=USDC, decimals=6
    )


@pytest_asyncio.fixture
async def marketplace(store, make_user, make_item):
    """A seller with a listed $10 item, a buyer and an affiliate, all with wallets."""
    seller = await make_user('seller', SELLER_WALLET)
    buyer = await make_user('buyer', BUYER_WALLET)
    affiliate = await make_user('affiliate', AFFILIATE_WALLET)
    item = await make_item(seller.id, 'Report.pdf', size=2048)
    listing = await ListingManager(store).create_listing(
        seller.id, item.id, 'Quarterly report', Decimal('10.00')
    )
    return {
        'seller': seller,
        'buyer': buyer,
        'affiliate': affiliate,
        'item': item,
        'listing': listing
    }
