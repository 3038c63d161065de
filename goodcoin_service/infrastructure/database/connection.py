"""
Database connection and utilities (PostgreSQL via asyncpg)
"""
import asyncpg
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
import logging

from ...config import Settings, settings as default_settings
from ...domain.exceptions import ConcurrentUpdateError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


class Database:
    """PostgreSQL database connection manager using asyncpg"""

    def __init__(self, settings: Settings = default_settings):
        self.settings = settings
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Create database connection pool"""
        try:
            self.pool = await asyncpg.create_pool(
                self.settings.DATABASE_URL,
                min_size=1,
                max_size=self.settings.DB_POOL_SIZE,
                command_timeout=self.settings.DB_COMMAND_TIMEOUT,
            )
            logger.info("Database connection pool created successfully")

            await self._init_schema()
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    async def _init_schema(self):
        """Initialize database schema"""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    profile_image TEXT,
                    balance NUMERIC(38, 18) NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS posts (
                    id TEXT PRIMARY KEY,
                    creator_id TEXT NOT NULL,
                    description TEXT NOT NULL,
                    media_url TEXT,
                    media_type TEXT,
                    likes_count INTEGER NOT NULL DEFAULT 0,
                    comments_count INTEGER NOT NULL DEFAULT 0,
                    flag_count INTEGER NOT NULL DEFAULT 0,
                    donations_received NUMERIC(38, 18) NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_posts_creator_created
                ON posts (creator_id, created_at DESC)
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS post_likes (
                    post_id TEXT NOT NULL REFERENCES posts (id),
                    user_id TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (post_id, user_id)
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS post_flags (
                    post_id TEXT NOT NULL REFERENCES posts (id),
                    user_id TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (post_id, user_id)
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS comments (
                    id TEXT PRIMARY KEY,
                    post_id TEXT NOT NULL REFERENCES posts (id),
                    creator_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    from_id TEXT NOT NULL,
                    to_id TEXT NOT NULL,
                    amount NUMERIC(38, 18) NOT NULL CHECK (amount > 0),
                    post_id TEXT NOT NULL,
                    tx_hash TEXT,
                    from_address TEXT,
                    to_address TEXT,
                    token_amount TEXT,
                    token_symbol TEXT,
                    status TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    CHECK (from_id <> to_id)
                )
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_transactions_from
                ON transactions (from_id, created_at DESC)
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_transactions_to
                ON transactions (to_id, created_at DESC)
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_transactions_post
                ON transactions (post_id, created_at DESC)
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS purchases (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    amount NUMERIC(38, 18) NOT NULL CHECK (amount > 0),
                    payment_amount NUMERIC(38, 18) NOT NULL,
                    payment_currency TEXT NOT NULL,
                    tx_hash TEXT,
                    status TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
            """)

            logger.info("Database schema initialized successfully")

    async def fetch_one(self, query: str, *args) -> Optional[Dict[str, Any]]:
        """Fetch a single row"""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row else None

    async def fetch_all(self, query: str, *args) -> List[Dict[str, Any]]:
        """Fetch all rows"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def execute(self, query: str, *args) -> str:
        """Execute a query"""
        async with self.pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def run_in_transaction(
        self,
        body: Callable[[asyncpg.Connection], Awaitable[T]],
        isolation: str = "serializable",
        max_retries: Optional[int] = None,
    ) -> T:
        """
        Run ``body(conn)`` inside a transaction, retrying serialization failures

        Any other exception rolls the transaction back and propagates.
        """
        attempts = max_retries or self.settings.LEDGER_MAX_RETRIES
        for attempt in range(1, attempts + 1):
            async with self.pool.acquire() as conn:
                try:
                    async with conn.transaction(isolation=isolation):
                        return await body(conn)
                except RETRYABLE_ERRORS as e:
                    logger.info(f"Transaction conflict ({e.sqlstate}), retry {attempt}/{attempts}")
        raise ConcurrentUpdateError(f"Transaction gave up after {attempts} attempts")

