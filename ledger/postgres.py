"""PostgreSQL/CockroachDB ledger store.

Uniqueness rules are enforced by the unique and partial unique indexes of
database/schema/v1.py. Violations come back from asyncpg as
UniqueViolationError and are translated to IntegrityError by index name.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from database import CONNECTION_ERRORS, Database, DatabaseConnectionError

from .errors import DependencyUnavailableError, IntegrityError, NotFoundError
from .models import (
    Affiliate, AffiliateStatus, AffiliateTransaction, CommissionStatus, Item, ItemKind, Listing,
    SharedLink, Transaction, TransactionStatus, User
)
from .store import LedgerStore, TRANSACTION_ROLES

logger = logging.getLogger(__name__)

# Index name -> IntegrityError constraint
UNIQUE_INDEXES = {
    'users_pkey': 'user',
    'idx_items_parent_name': IntegrityError.ITEM_NAME,
    'idx_listings_item': IntegrityError.LISTING_ITEM,
    'idx_shared_links_token': IntegrityError.LINK_TOKEN,
    'idx_transactions_listing_buyer': IntegrityError.PURCHASE,
    'idx_transactions_link_buyer': IntegrityError.PURCHASE,
    'idx_transactions_payment_hash': IntegrityError.PAYMENT_PROOF,
    'idx_transactions_txid': IntegrityError.RECEIPT,
    'idx_transactions_receipt': IntegrityError.RECEIPT,
    'idx_affiliates_code': IntegrityError.AFFILIATE_CODE,
    'idx_affiliates_listing_pair': IntegrityError.AFFILIATE,
    'idx_affiliates_link_pair': IntegrityError.AFFILIATE,
    'idx_affiliate_tx_unique': IntegrityError.COMMISSION,
}


def _integrity_error(e: asyncpg.exceptions.UniqueViolationError) -> IntegrityError:
    name = getattr(e, 'constraint_name', None) or ''
    constraint = UNIQUE_INDEXES.get(name)
    if constraint is None:
        # CockroachDB reports some violations without a constraint name
        constraint = next((c for idx, c in UNIQUE_INDEXES.items() if idx in str(e)), name)
    return IntegrityError(constraint, str(e))


def _dump(metadata: Dict[str, Any]) -> str:
    return json.dumps(metadata, default=str)


def _load(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _transaction(row) -> Transaction:
    data = dict(row)
    data.pop('payment_tx_hash', None)
    data['metadata'] = _load(data['metadata'])
    return Transaction(**data)


def _commission(row) -> AffiliateTransaction:
    data = dict(row)
    data['metadata'] = _load(data['metadata'])
    return AffiliateTransaction(**data)


class PostgresLedgerStore(LedgerStore):
    """LedgerStore backed by the asyncpg pool of a Database."""

    def __init__(self, database: Database):
        self.database = database

    async def close(self) -> None:
        await self.database.close()

    @asynccontextmanager
    async def connection(self):
        """Acquire a pooled connection, mapping outages and unique violations."""
        try:
            pool = await self.database.get_pool()
        except DatabaseConnectionError as e:
            raise DependencyUnavailableError("Ledger database unavailable") from e
        try:
            async with pool.acquire() as conn:
                yield conn
        except asyncpg.exceptions.UniqueViolationError as e:
            raise _integrity_error(e) from e
        except CONNECTION_ERRORS as e:
            logger.error(f"Lost database connection: {e}")
            await self.database.invalidate()
            raise DependencyUnavailableError("Ledger database unavailable") from e

    # Users

    async def create_user(self, user: User) -> User:
        root = Item(name='root', kind=ItemKind.FOLDER, owner_id=user.id)
        async with self.connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    '''
                    INSERT INTO users (id, name, email, wallet_address, created_at)
                    VALUES ($1, $2, $3, $4, $5)
                    ''',
                    user.id, user.name, user.email, user.wallet_address, user.created_at
                )
                await self._insert_item(conn, root)
                row = await conn.fetchrow(
                    'UPDATE users SET root_folder_id = $2 WHERE id = $1 RETURNING *',
                    user.id, root.id
                )
        return User(**dict(row))

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self.connection() as conn:
            row = await conn.fetchrow('SELECT * FROM users WHERE id = $1', user_id)
        return User(**dict(row)) if row else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM users WHERE lower(email) = lower($1) ORDER BY created_at LIMIT 1',
                email
            )
        return User(**dict(row)) if row else None

    async def set_wallet(self, user_id: str, wallet_address: Optional[str]) -> User:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                'UPDATE users SET wallet_address = $2 WHERE id = $1 RETURNING *',
                user_id, wallet_address
            )
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        return User(**dict(row))

    # Items

    @staticmethod
    async def _insert_item(conn, item: Item) -> None:
        await conn.execute(
            '''
            INSERT INTO items (
                id, name, kind, parent_id, owner_id, size,
                mime_type, blob_ref, content_source, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ''',
            item.id, item.name, item.kind.value, item.parent_id, item.owner_id,
            item.size, item.mime_type, item.blob_ref, item.content_source.value,
            item.created_at
        )

    async def create_item(self, item: Item) -> Item:
        async with self.connection() as conn:
            await self._insert_item(conn, item)
        return item

    async def get_item(self, item_id: str) -> Optional[Item]:
        async with self.connection() as conn:
            row = await conn.fetchrow('SELECT * FROM items WHERE id = $1', item_id)
        return Item(**dict(row)) if row else None

    async def list_children(self, parent_id: str) -> List[Item]:
        async with self.connection() as conn:
            rows = await conn.fetch(
                'SELECT * FROM items WHERE parent_id = $1 ORDER BY created_at, name',
                parent_id
            )
        return [Item(**dict(r)) for r in rows]

    async def find_child(self, owner_id: str, parent_id: str, name: str) -> Optional[Item]:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                '''
                SELECT * FROM items
                WHERE owner_id = $1 AND parent_id = $2 AND name = $3
                ''',
                owner_id, parent_id, name
            )
        return Item(**dict(row)) if row else None

    async def delete_items(self, item_ids: Sequence[str]) -> None:
        if not item_ids:
            return
        async with self.connection() as conn:
            await conn.execute('DELETE FROM items WHERE id = ANY($1::TEXT[])', list(item_ids))

    # Listings and shared links

    async def create_listing(self, listing: Listing) -> Listing:
        async with self.connection() as conn:
            await conn.execute(
                '''
                INSERT INTO listings (
                    id, item_id, seller_id, title, description, price,
                    status, tags, view_count, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ''',
                listing.id, listing.item_id, listing.seller_id, listing.title,
                listing.description, listing.price, listing.status.value,
                listing.tags, listing.view_count, listing.created_at
            )
        return listing

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        async with self.connection() as conn:
            row = await conn.fetchrow('SELECT * FROM listings WHERE id = $1', listing_id)
        return Listing(**dict(row)) if row else None

    async def create_shared_link(self, link: SharedLink) -> SharedLink:
        async with self.connection() as conn:
            await conn.execute(
                '''
                INSERT INTO shared_links (
                    id, item_id, owner_id, link_token, kind, title, description,
                    price, is_active, expires_at, access_count, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ''',
                link.id, link.item_id, link.owner_id, link.link_token, link.kind.value,
                link.title, link.description, link.price, link.is_active,
                link.expires_at, link.access_count, link.created_at
            )
        return link

    async def get_shared_link(self, link_token: str) -> Optional[SharedLink]:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM shared_links WHERE link_token = $1', link_token
            )
        return SharedLink(**dict(row)) if row else None

    async def has_paid(self, shared_link_id: str, user_id: str) -> bool:
        async with self.connection() as conn:
            return await conn.fetchval(
                '''
                SELECT EXISTS (
                    SELECT 1 FROM shared_link_paid_users
                    WHERE shared_link_id = $1 AND user_id = $2
                )
                ''',
                shared_link_id, user_id
            )

    async def record_link_access(self, shared_link_id: str) -> None:
        async with self.connection() as conn:
            await conn.execute(
                'UPDATE shared_links SET access_count = access_count + 1 WHERE id = $1',
                shared_link_id
            )

    # Transactions

    async def find_completed_purchase(
        self,
        buyer_id: str,
        listing_id: Optional[str] = None,
        shared_link_id: Optional[str] = None
    ) -> Optional[Transaction]:
        column, value = ('listing_id', listing_id) if listing_id is not None else ('shared_link_id', shared_link_id)
        if value is None:
            return None
        async with self.connection() as conn:
            row = await conn.fetchrow(
                f'''
                SELECT * FROM transactions
                WHERE buyer_id = $1 AND {column} = $2 AND status = 'completed'
                LIMIT 1
                ''',
                buyer_id, value
            )
        return _transaction(row) if row else None

    async def create_transaction(self, transaction: Transaction) -> Transaction:
        async with self.connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    '''
                    INSERT INTO transactions (
                        id, listing_id, shared_link_id, buyer_id, seller_id, item_id,
                        amount, status, transaction_id, receipt_number,
                        payment_tx_hash, purchase_date, metadata
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::JSONB)
                    ''',
                    transaction.id, transaction.listing_id, transaction.shared_link_id,
                    transaction.buyer_id, transaction.seller_id, transaction.item_id,
                    transaction.amount, transaction.status.value,
                    transaction.transaction_id, transaction.receipt_number,
                    transaction.payment_tx_hash, transaction.purchase_date,
                    _dump(transaction.metadata)
                )
                if transaction.shared_link_id is not None:
                    await conn.execute(
                        '''
                        INSERT INTO shared_link_paid_users (shared_link_id, user_id)
                        VALUES ($1, $2)
                        ON CONFLICT DO NOTHING
                        ''',
                        transaction.shared_link_id, transaction.buyer_id
                    )
        return transaction

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        async with self.connection() as conn:
            row = await conn.fetchrow('SELECT * FROM transactions WHERE id = $1', transaction_id)
        return _transaction(row) if row else None

    async def list_transactions(
        self,
        user_id: str,
        role: str = 'all',
        status: Optional[TransactionStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Transaction], int]:
        if role not in TRANSACTION_ROLES:
            raise ValueError(f"Unknown transaction role: {role}")

        where = {
            'purchases': 'buyer_id = $1',
            'sales': 'seller_id = $1',
            'all': '(buyer_id = $1 OR seller_id = $1)'
        }[role]
        params: List[Any] = [user_id]
        if status is not None:
            params.append(status.value)
            where += f' AND status = ${len(params)}'

        async with self.connection() as conn:
            total = await conn.fetchval(f'SELECT count(*) FROM transactions WHERE {where}', *params)
            rows = await conn.fetch(
                f'''
                SELECT * FROM transactions WHERE {where}
                ORDER BY purchase_date DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                ''',
                *params, limit, offset
            )
        return [_transaction(r) for r in rows], total

    # Affiliates

    async def create_affiliate(self, affiliate: Affiliate) -> Affiliate:
        async with self.connection() as conn:
            await conn.execute(
                '''
                INSERT INTO affiliates (
                    id, listing_id, shared_link_id, owner_id, affiliate_user_id,
                    commission_rate, affiliate_code, status, total_earnings,
                    paid_earnings, total_sales, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ''',
                affiliate.id, affiliate.listing_id, affiliate.shared_link_id,
                affiliate.owner_id, affiliate.affiliate_user_id, affiliate.commission_rate,
                affiliate.affiliate_code, affiliate.status.value, affiliate.total_earnings,
                affiliate.paid_earnings, affiliate.total_sales, affiliate.created_at
            )
        return affiliate

    async def get_affiliate(self, affiliate_id: str) -> Optional[Affiliate]:
        async with self.connection() as conn:
            row = await conn.fetchrow('SELECT * FROM affiliates WHERE id = $1', affiliate_id)
        return Affiliate(**dict(row)) if row else None

    async def get_affiliate_by_code(self, affiliate_code: str) -> Optional[Affiliate]:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM affiliates WHERE affiliate_code = $1', affiliate_code
            )
        return Affiliate(**dict(row)) if row else None

    async def update_affiliate(
        self,
        affiliate_id: str,
        commission_rate: Optional[Decimal] = None,
        status: Optional[AffiliateStatus] = None
    ) -> Affiliate:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE affiliates
                SET commission_rate = COALESCE($2, commission_rate),
                    status = COALESCE($3, status)
                WHERE id = $1
                RETURNING *
                ''',
                affiliate_id, commission_rate, status.value if status else None
            )
        if not row:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")
        return Affiliate(**dict(row))

    # Commissions

    async def create_affiliate_transaction(self, commission: AffiliateTransaction) -> AffiliateTransaction:
        async with self.connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    '''
                    INSERT INTO affiliate_transactions (
                        id, affiliate_id, original_transaction_id, affiliate_user_id,
                        owner_id, buyer_id, affiliate_code, sale_amount, commission_rate,
                        commission_amount, status, paid_at, settlement_claim, claimed_at,
                        metadata, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15::JSONB, $16)
                    ''',
                    commission.id, commission.affiliate_id, commission.original_transaction_id,
                    commission.affiliate_user_id, commission.owner_id, commission.buyer_id,
                    commission.affiliate_code, commission.sale_amount, commission.commission_rate,
                    commission.commission_amount, commission.status.value, commission.paid_at,
                    commission.settlement_claim, commission.claimed_at, _dump(commission.metadata),
                    commission.created_at
                )
                updated = await conn.execute(
                    '''
                    UPDATE affiliates
                    SET total_sales = total_sales + 1,
                        total_earnings = total_earnings + $2
                    WHERE id = $1
                    ''',
                    commission.affiliate_id, commission.commission_amount
                )
                if updated == 'UPDATE 0':
                    raise NotFoundError(f"Affiliate {commission.affiliate_id} not found")
        return commission

    async def get_affiliate_transaction(self, commission_id: str) -> Optional[AffiliateTransaction]:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM affiliate_transactions WHERE id = $1', commission_id
            )
        return _commission(row) if row else None

    @staticmethod
    def _commission_filter(
        owner_id: Optional[str] = None,
        affiliate_user_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        status: Optional[CommissionStatus] = None,
        ids: Optional[Sequence[str]] = None
    ) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []
        if owner_id is not None:
            params.append(owner_id)
            clauses.append(f'owner_id = ${len(params)}')
        if affiliate_user_id is not None:
            params.append(affiliate_user_id)
            clauses.append(f'affiliate_user_id = ${len(params)}')
        if participant_id is not None:
            params.append(participant_id)
            clauses.append(f'(owner_id = ${len(params)} OR affiliate_user_id = ${len(params)})')
        if status is not None:
            params.append(status.value)
            clauses.append(f'status = ${len(params)}')
        if ids is not None:
            params.append(list(ids))
            clauses.append(f'id = ANY(${len(params)}::TEXT[])')
        return (' AND '.join(clauses) or 'true'), params

    async def list_affiliate_transactions(
        self,
        owner_id: Optional[str] = None,
        affiliate_user_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        status: Optional[CommissionStatus] = None,
        ids: Optional[Sequence[str]] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
        oldest_first: bool = False
    ) -> Tuple[List[AffiliateTransaction], int]:
        where, params = self._commission_filter(owner_id, affiliate_user_id, participant_id, status, ids)
        order = 'ASC' if oldest_first else 'DESC'
        page = f'OFFSET {int(offset)}'
        if limit is not None:
            page = f'LIMIT {int(limit)} ' + page
        async with self.connection() as conn:
            total = await conn.fetchval(
                f'SELECT count(*) FROM affiliate_transactions WHERE {where}', *params
            )
            rows = await conn.fetch(
                f'''
                SELECT * FROM affiliate_transactions WHERE {where}
                ORDER BY created_at {order} {page}
                ''',
                *params
            )
        return [_commission(r) for r in rows], total

    async def claim_commission(self, commission_id: str, claim: str) -> Optional[AffiliateTransaction]:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE affiliate_transactions
                SET settlement_claim = $2, claimed_at = now()
                WHERE id = $1 AND status = 'pending' AND settlement_claim IS NULL
                RETURNING *
                ''',
                commission_id, claim
            )
        return _commission(row) if row else None

    async def mark_commission_paid(
        self,
        commission_id: str,
        paid_at: datetime,
        metadata: Dict[str, Any]
    ) -> AffiliateTransaction:
        async with self.connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    '''
                    UPDATE affiliate_transactions
                    SET status = 'paid', paid_at = $2, settlement_claim = NULL, claimed_at = NULL,
                        metadata = metadata || $3::JSONB
                    WHERE id = $1 AND status <> 'paid'
                    RETURNING *
                    ''',
                    commission_id, paid_at, _dump(metadata)
                )
                if row is None:
                    row = await conn.fetchrow(
                        'SELECT * FROM affiliate_transactions WHERE id = $1', commission_id
                    )
                    if row is None:
                        raise NotFoundError(f"Commission {commission_id} not found")
                    return _commission(row)
                await conn.execute(
                    'UPDATE affiliates SET paid_earnings = paid_earnings + $2 WHERE id = $1',
                    row['affiliate_id'], row['commission_amount']
                )
        return _commission(row)

    async def mark_commission_failed(self, commission_id: str, metadata: Dict[str, Any]) -> AffiliateTransaction:
        async with self.connection() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE affiliate_transactions
                SET status = 'failed', settlement_claim = NULL, claimed_at = NULL,
                    metadata = metadata || $2::JSONB
                WHERE id = $1
                RETURNING *
                ''',
                commission_id, _dump(metadata)
            )
        return _commission(row)

    async def requeue_failed_commissions(
        self,
        owner_id: str,
        ids: Optional[Sequence[str]] = None,
        stale_before: Optional[datetime] = None
    ) -> int:
        where, params = self._commission_filter(owner_id=owner_id, status=CommissionStatus.FAILED, ids=ids)
        async with self.connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"UPDATE affiliate_transactions SET status = 'pending' WHERE {where} RETURNING id",
                    *params
                )
                count = len(rows)
                if stale_before is not None:
                    where, params = self._commission_filter(
                        owner_id=owner_id, status=CommissionStatus.PENDING, ids=ids
                    )
                    params.append(stale_before)
                    released = await conn.fetch(
                        f'''
                        UPDATE affiliate_transactions
                        SET settlement_claim = NULL, claimed_at = NULL
                        WHERE {where} AND settlement_claim IS NOT NULL AND claimed_at < ${len(params)}
                        RETURNING id
                        ''',
                        *params
                    )
                    count += len(released)
        return count

    async def summarize_commissions(
        self,
        owner_id: Optional[str] = None,
        affiliate_user_id: Optional[str] = None,
        participant_id: Optional[str] = None
    ) -> Dict[str, Dict[str, Any]]:
        where, params = self._commission_filter(owner_id, affiliate_user_id, participant_id)
        async with self.connection() as conn:
            rows = await conn.fetch(
                f'''
                SELECT status, count(*) AS count, COALESCE(sum(commission_amount), 0) AS amount
                FROM affiliate_transactions WHERE {where}
                GROUP BY status
                ''',
                *params
            )
        return {r['status']: {'count': r['count'], 'amount': Decimal(r['amount'])} for r in rows}
