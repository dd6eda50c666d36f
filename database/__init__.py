"""Database module for managing connections to PostgreSQL/CockroachDB.

This module handles:
- Database connection pool initialization
- Schema management
- Connection lifecycle and reconnection
"""

import asyncio
import logging
import ssl
from dataclasses import dataclass
from typing import Optional, Dict, Any
from urllib.parse import urlparse, parse_qs

import asyncpg
import backoff

from .exceptions import DatabaseError, DatabaseConnectionError, DatabaseSchemaError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

# Errors that mean the server could not be reached, as opposed to a bad query
CONNECTION_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InterfaceError,
    ConnectionError,
    OSError,
)


@dataclass
class ReconnectPolicy:
    """Exponential backoff applied when the pool is (re)established."""
    max_tries: int = 5
    max_time: float = 60.0

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'ReconnectPolicy':
        return cls(
            max_tries=settings['db_reconnect_max_tries'],
            max_time=settings['db_reconnect_max_time']
        )


def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for hosted database connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context


def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    SSL is only forced when the URL does not disable it.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    parsed = urlparse(db_url)
    params = parse_qs(parsed.query)

    kwargs: Dict[str, Any] = {
        'server_settings': {
            'statement_timeout': '300000',  # 5 minutes
        }
    }
    sslmode = params.get('sslmode', ['require'])[0]
    if sslmode != 'disable':
        kwargs['ssl'] = _get_ssl_context()

    return kwargs


class Database:
    """Owns the asyncpg pool used by the ledger.

    The pool is created lazily on first use. When a connection error is
    raised while the pool is in use, the pool is dropped and recreated
    under the reconnect policy on the next acquire.
    """

    def __init__(
        self,
        db_url: str,
        min_size: int = 2,
        max_size: int = 20,
        reconnect: Optional[ReconnectPolicy] = None
    ):
        self.db_url = db_url
        self.min_size = min_size
        self.max_size = max_size
        self.reconnect = reconnect or ReconnectPolicy()
        self._pool: Optional[asyncpg.Pool] = None
        self._schema_manager: Optional[SchemaManager] = None
        self._init_lock = asyncio.Lock()
        self._apply_schema = True

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'Database':
        return cls(
            settings['db_url'],
            min_size=settings['db_min_pool_size'],
            max_size=settings['db_max_pool_size'],
            reconnect=ReconnectPolicy.from_settings(settings)
        )

    async def _create_pool(self) -> asyncpg.Pool:
        @backoff.on_exception(
            backoff.expo,
            CONNECTION_ERRORS,
            max_tries=self.reconnect.max_tries,
            max_time=self.reconnect.max_time,
            logger=logger
        )
        async def connect() -> asyncpg.Pool:
            return await asyncpg.create_pool(
                self.db_url,
                min_size=self.min_size,
                max_size=self.max_size,
                max_inactive_connection_lifetime=300.0,  # 5 minutes
                command_timeout=60.0,
                **_get_connection_kwargs(self.db_url)
            )

        try:
            return await connect()
        except CONNECTION_ERRORS as e:
            logger.error(f"Database unreachable after {self.reconnect.max_tries} tries: {e}")
            raise DatabaseConnectionError(f"Could not connect to database: {e}") from e

    async def init(self, apply_schema: bool = True) -> None:
        """Create the pool and bring the schema up to date.

        Raises:
            DatabaseConnectionError: If the database stays unreachable
            DatabaseSchemaError: If migrations fail
        """
        self._apply_schema = apply_schema
        if self._pool is not None:
            return
        async with self._init_lock:
            # Concurrent callers wait here and reuse the pool the first one made
            if self._pool is not None:
                return
            pool = await self._create_pool()
            logger.info(f"Database pool ready (min={self.min_size}, max={self.max_size})")
            if apply_schema:
                self._schema_manager = SchemaManager(pool)
                try:
                    await self._schema_manager.initialize()
                except Exception:
                    await pool.close()
                    self._schema_manager = None
                    raise
            self._pool = pool

    async def get_pool(self) -> asyncpg.Pool:
        """Get the connection pool, creating it if needed."""
        if self._pool is None:
            await self.init(apply_schema=self._apply_schema)
        if self._pool is None:
            raise DatabaseError("Failed to initialize database pool")
        return self._pool

    async def invalidate(self) -> None:
        """Drop the current pool so the next caller reconnects."""
        pool, self._pool = self._pool, None
        if pool is not None:
            logger.warning("Dropping database pool after connection failure")
            pool.terminate()

    async def close(self) -> None:
        """Close the database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            self._schema_manager = None


__all__ = [
    'Database', 'ReconnectPolicy', 'CONNECTION_ERRORS',
    'DatabaseError', 'DatabaseConnectionError', 'DatabaseSchemaError'
]
