"""API tests through the ASGI app with an in-memory ledger."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from api import create_app
from api.services import Services
from auth import AuthManager, TokenValidator
from ledger import CommissionStatus

from conftest import AFFILIATE_WALLET, BUYER_WALLET, NETWORK, SELLER_WALLET, USDC

SECRET = 'test-signing-secret'


def auth(user_id: str, **claims) -> dict:
    payload = {'sub': user_id, 'exp': datetime.now(timezone.utc) + timedelta(minutes=5)}
    payload.update(claims)
    return {'Authorization': f"Bearer {jwt.encode(payload, SECRET, algorithm='HS256')}"}


@pytest_asyncio.fixture
async def client(store, gateway, verifier):
    services = Services(
        store,
        AuthManager(store, TokenValidator(SECRET)),
        verifier,
        gateway=gateway,
        network=NETWORK,
        asset=USDC
    )
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as client:
        yield client


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get('/')
    assert response.status_code == 200
    assert response.json()['settlement_enabled'] is True


@pytest.mark.asyncio
async def test_requires_bearer_token(client):
    response = await client.get('/profile')
    assert response.status_code == 401
    assert response.json()['error'] == 'unauthenticated'

    response = await client.get('/profile', headers={'Authorization': 'Bearer not-a-jwt'})
    assert response.status_code == 401

    expired = auth('someone', exp=datetime.now(timezone.utc) - timedelta(minutes=1))
    response = await client.get('/profile', headers=expired)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_first_request_registers_user(client, store):
    response = await client.get('/profile', headers=auth('newcomer', email='new@example.test'))

    assert response.status_code == 200
    assert response.json()['user']['email'] == 'new@example.test'
    user = await store.get_user('newcomer')
    assert user.root_folder_id is not None


@pytest.mark.asyncio
async def test_set_wallet(client):
    response = await client.put(
        '/profile/wallet', json={'wallet_address': '0x' + 'AB' * 20}, headers=auth('u1')
    )
    assert response.status_code == 200
    assert response.json()['user']['wallet_address'] == '0x' + 'ab' * 20

    response = await client.put('/profile/wallet', json={'wallet_address': 'nope'}, headers=auth('u1'))
    assert response.status_code == 400
    assert response.json()['error'] == 'invalid_request'


@pytest.mark.asyncio
async def test_create_listing(client, marketplace, make_item):
    item = await make_item(marketplace['seller'].id, 'Slides.key')

    response = await client.post(
        '/listings',
        json={'item_id': item.id, 'title': 'Slides', 'price': '12.50', 'tags': ['talks']},
        headers=auth('seller')
    )

    assert response.status_code == 201
    listing = response.json()['listing']
    assert listing['price'] == '12.50'
    assert listing['seller_id'] == 'seller'

    # Someone else's item
    response = await client.post(
        '/listings', json={'item_id': item.id, 'title': 'Mine', 'price': '1'}, headers=auth('buyer')
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_listing_details(client, marketplace):
    response = await client.get(f"/listings/{marketplace['listing'].id}/details")

    assert response.status_code == 200
    assert response.json() == {
        'price': '10.00',
        'title': 'Quarterly report',
        'seller_wallet': SELLER_WALLET
    }
    assert (await client.get('/listings/missing/details')).status_code == 404


@pytest.mark.asyncio
async def test_purchase_flow(client, marketplace, pay, gateway):
    listing_id = marketplace['listing'].id

    affiliate = (await client.post(
        '/affiliates',
        json={'affiliate_user_id': 'affiliate', 'commission_rate': '15', 'listing_id': listing_id},
        headers=auth('seller')
    )).json()['affiliate']

    # No payment yet: x402 requirements
    response = await client.post(f'/listings/{listing_id}/purchase', headers=auth('buyer'))
    assert response.status_code == 402
    body = response.json()
    assert body['x402Version'] == 1
    assert body['accepts'][0]['maxAmountRequired'] == '10000000'
    assert body['accepts'][0]['payTo'] == SELLER_WALLET
    assert body['accepts'][0]['resource'] == f'http://test/listings/{listing_id}/purchase'

    headers = dict(auth('buyer'))
    headers['x-payment-response'] = pay(BUYER_WALLET, SELLER_WALLET, '10', encode=True)
    headers['x-affiliate-code'] = affiliate['affiliate_code']
    response = await client.post(f'/listings/{listing_id}/purchase', headers=headers)

    assert response.status_code == 201
    receipt = response.json()
    assert receipt['access_granted'] is True
    assert receipt['copied_item']['path'] == '/marketplace/Report.pdf (Purchased)'
    assert receipt['transaction']['amount'] == '10.00'
    assert receipt['payment_details']['payer'] == BUYER_WALLET
    assert receipt['affiliate_commission']['commission_amount'] == '1.50'
    assert receipt['affiliate_commission']['status'] == 'pending'
    assert receipt['warnings'] == []

    # Buying again is refused
    headers['x-payment-response'] = pay(BUYER_WALLET, SELLER_WALLET, '10')
    response = await client.post(f'/listings/{listing_id}/purchase', headers=headers)
    assert response.status_code == 400
    assert response.json()['error'] == 'already_purchased'

    # The seller settles the commission
    gateway.balances[SELLER_WALLET] = Decimal('5')
    response = await client.post('/affiliates/payments', json={'payAll': True}, headers=auth('seller'))
    assert response.status_code == 200
    settlement = response.json()
    assert settlement['summary'] == {'total': 1, 'paid': 1, 'failed': 0}
    assert gateway.sent[0]['to'] == AFFILIATE_WALLET

    response = await client.get('/affiliates/transactions?type=earned', headers=auth('affiliate'))
    earned = response.json()
    assert earned['summary']['paid'] == {'count': 1, 'amount': '1.50'}
    assert earned['transactions'][0]['status'] == CommissionStatus.PAID.value


@pytest.mark.asyncio
async def test_self_purchase_and_bad_proof(client, marketplace, pay):
    listing_id = marketplace['listing'].id

    headers = dict(auth('seller'), **{'x-payment-response': pay(SELLER_WALLET, SELLER_WALLET, '10')})
    response = await client.post(f'/listings/{listing_id}/purchase', headers=headers)
    assert response.status_code == 400
    assert response.json()['error'] == 'self_purchase'

    headers = dict(auth('buyer'), **{'x-payment-response': '{"success": true}'})
    response = await client.post(f'/listings/{listing_id}/purchase', headers=headers)
    assert response.status_code == 402
    assert response.json()['error'] == 'payment_rejected'


@pytest.mark.asyncio
async def test_transactions(client, marketplace, make_user, pay):
    listing_id = marketplace['listing'].id
    headers = dict(auth('buyer'), **{'x-payment-response': pay(BUYER_WALLET, SELLER_WALLET, '10')})
    transaction = (await client.post(f'/listings/{listing_id}/purchase', headers=headers)).json()['transaction']

    purchases = (await client.get('/transactions?type=purchases', headers=auth('buyer'))).json()
    assert purchases['pagination']['total'] == 1
    assert purchases['transactions'][0]['transaction_type'] == 'purchase'

    sales = (await client.get('/transactions', headers=auth('seller'))).json()
    assert sales['transactions'][0]['transaction_type'] == 'sale'

    response = await client.get(f"/transactions/{transaction['id']}", headers=auth('seller'))
    assert response.status_code == 200
    assert response.json()['transaction']['receipt_number'] == transaction['receipt_number']

    await make_user('snoop')
    response = await client.get(f"/transactions/{transaction['id']}", headers=auth('snoop'))
    assert response.status_code == 403

    response = await client.post(f"/transactions/{transaction['id']}/grant", headers=auth('buyer'))
    assert response.status_code == 200
    assert response.json()['copied_item']['path'] == '/marketplace/Report.pdf (Purchased) (2)'

    response = await client.get('/transactions?type=refunds', headers=auth('buyer'))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_shared_link_flow(client, marketplace, make_item, pay):
    item = await make_item(marketplace['seller'].id, 'Guide.pdf')

    response = await client.post(
        '/shared-links',
        json={'item_id': item.id, 'kind': 'monetized', 'price': '2.00'},
        headers=auth('seller')
    )
    assert response.status_code == 201
    token = response.json()['link']['link_token']

    anonymous = (await client.get(f'/shared-links/{token}')).json()
    assert anonymous['can_access'] is False
    assert anonymous['requires_auth'] is True

    details = (await client.get(f'/shared-links/{token}/details')).json()
    assert details['price'] == '2.00'

    response = await client.post(f'/shared-links/{token}', headers=auth('buyer'))
    assert response.status_code == 402

    headers = dict(auth('buyer'), **{'x-payment-response': pay(BUYER_WALLET, SELLER_WALLET, '2')})
    response = await client.post(f'/shared-links/{token}/pay', headers=headers)
    assert response.status_code == 201
    assert response.json()['copied_item']['path'] == '/shared/Guide.pdf (Shared)'

    access = (await client.get(f'/shared-links/{token}', headers=auth('buyer'))).json()
    assert access['can_access'] is True
    assert access['already_paid'] is True

    response = await client.get('/shared-links/unknown-token')
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_public_link_save_to_drive(client, marketplace, make_item):
    item = await make_item(marketplace['seller'].id, 'Poster.png')
    token = (await client.post(
        '/shared-links', json={'item_id': item.id}, headers=auth('seller')
    )).json()['link']['link_token']

    response = await client.post(f'/shared-links/{token}', headers=auth('buyer'))

    assert response.status_code == 200
    assert response.json()['copied_item']['name'] == 'Poster.png (Shared)'
    assert response.json()['transaction'] is None


@pytest.mark.asyncio
async def test_affiliate_management(client, marketplace):
    listing_id = marketplace['listing'].id
    created = await client.post(
        '/affiliates',
        json={'affiliate_user_id': 'affiliate', 'commission_rate': '10', 'listing_id': listing_id},
        headers=auth('seller')
    )
    assert created.status_code == 201
    affiliate = created.json()['affiliate']

    lookup = (await client.get(f"/affiliates/code/{affiliate['affiliate_code']}")).json()
    assert lookup['commission_rate'] == '10'
    assert (await client.get('/affiliates/code/AFF-NOPE0000')).status_code == 404

    response = await client.patch(
        f"/affiliates/{affiliate['id']}", json={'commission_rate': '20'}, headers=auth('seller')
    )
    assert response.status_code == 200
    assert response.json()['affiliate']['commission_rate'] == '20'

    response = await client.patch(
        f"/affiliates/{affiliate['id']}", json={'status': 'suspended'}, headers=auth('affiliate')
    )
    assert response.status_code == 403

    response = await client.post(
        '/affiliates',
        json={'affiliate_user_id': 'affiliate', 'commission_rate': '150', 'listing_id': listing_id},
        headers=auth('seller')
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_registration_normalizes_wallet_claim(client, store):
    response = await client.get('/profile', headers=auth('typo', wallet_address='nope'))
    assert response.status_code == 200
    assert response.json()['user']['wallet_address'] is None

    response = await client.get('/profile', headers=auth('checksummed', wallet_address='0x' + 'AB' * 20))
    assert response.status_code == 200
    assert (await store.get_user('checksummed')).wallet_address == '0x' + 'ab' * 20


@pytest.mark.asyncio
async def test_create_affiliate_by_email(client, marketplace):
    listing_id = marketplace['listing'].id
    await client.get('/profile', headers=auth('promoter', email='Promoter@Example.test'))

    created = await client.post(
        '/affiliates',
        json={'affiliate_email': 'promoter@example.test', 'commission_rate': '10', 'listing_id': listing_id},
        headers=auth('seller')
    )
    assert created.status_code == 201
    assert created.json()['affiliate']['affiliate_user_id'] == 'promoter'

    response = await client.post(
        '/affiliates',
        json={'affiliate_email': 'nobody@example.test', 'commission_rate': '10', 'listing_id': listing_id},
        headers=auth('seller')
    )
    assert response.status_code == 404

    response = await client.post(
        '/affiliates', json={'commission_rate': '10', 'listing_id': listing_id}, headers=auth('seller')
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_settlement_requests(client, marketplace):
    response = await client.post('/affiliates/payments', json={}, headers=auth('seller'))
    assert response.status_code == 400

    response = await client.post('/affiliates/payments', json={'payAll': True}, headers=auth('seller'))
    assert response.status_code == 404
    assert response.json()['detail'] == 'No pending transactions found'

    history = (await client.get('/affiliates/payments', headers=auth('seller'))).json()
    assert history['transactions'] == []
    assert history['summary']['pending'] == {'count': 0, 'amount': '0'}

    response = await client.post('/affiliates/payments/requeue', json={}, headers=auth('seller'))
    assert response.json() == {'requeued': 0}
