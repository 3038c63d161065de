"""
Repository implementations - PostgreSQL data access layer
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

import asyncpg

from ...domain.exceptions import (
    AccountNotFoundError,
    InsufficientBalanceError,
    PostNotFoundError,
)
from ...domain.models import (
    Account,
    CoinPurchase,
    Comment,
    Donation,
    MediaType,
    PaymentCurrency,
    Post,
    PurchaseStatus,
    TokenDonation,
    TransactionKind,
    TransactionStatus,
    VirtualDonation,
    add_amounts,
    generate_id,
    utcnow,
)
from ...domain.repositories import (
    IAccountRepository,
    ICommentRepository,
    ILedgerRepository,
    IPostRepository,
    TransferDirection,
)
from .connection import Database

logger = logging.getLogger(__name__)

ACCOUNT_COLUMNS = "id, username, display_name, profile_image, balance, created_at, updated_at"
POST_COLUMNS = """id, creator_id, description, media_url, media_type, likes_count,
                  comments_count, flag_count, donations_received, created_at, updated_at"""
TRANSACTION_COLUMNS = """id, kind, from_id, to_id, amount, post_id, tx_hash, from_address,
                         to_address, token_amount, token_symbol, status, created_at"""


def _row_to_account(row: Optional[Dict[str, Any]]) -> Optional[Account]:
    """Convert database row to Account model"""
    if not row:
        return None
    return Account(**dict(row))


def _row_to_post(row: Optional[Dict[str, Any]]) -> Optional[Post]:
    """Convert database row to Post model"""
    if not row:
        return None
    data = dict(row)
    if data.get("media_type"):
        data["media_type"] = MediaType(data["media_type"])
    return Post(**data)


def _row_to_comment(row: Optional[Dict[str, Any]]) -> Optional[Comment]:
    """Convert database row to Comment model"""
    if not row:
        return None
    return Comment(**dict(row))


def _row_to_donation(row: Dict[str, Any]) -> Donation:
    """Convert database row to the matching donation variant"""
    data = dict(row)
    common = dict(
        id=data["id"],
        from_id=data["from_id"],
        to_id=data["to_id"],
        amount=data["amount"],
        post_id=data["post_id"],
        created_at=data["created_at"],
    )
    if data["kind"] == TransactionKind.TOKEN.value:
        return TokenDonation(
            **common,
            tx_hash=data["tx_hash"],
            from_address=data["from_address"],
            to_address=data["to_address"],
            token_amount=data["token_amount"],
            token_symbol=data["token_symbol"],
            status=TransactionStatus(data["status"]),
        )
    return VirtualDonation(**common)


def _row_to_purchase(row: Dict[str, Any]) -> CoinPurchase:
    """Convert database row to CoinPurchase model"""
    data = dict(row)
    data["payment_currency"] = PaymentCurrency(data["payment_currency"])
    data["status"] = PurchaseStatus(data["status"])
    return CoinPurchase(**data)


class PostgresAccountRepository(IAccountRepository):
    """Account repository implementation using PostgreSQL"""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, account: Account) -> Account:
        """Create a new account; an existing account is returned untouched"""
        row = await self.db.fetch_one(
            f"""
            INSERT INTO accounts (id, username, display_name, profile_image, balance)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id) DO NOTHING
            RETURNING {ACCOUNT_COLUMNS}
            """,
            account.id,
            account.username,
            account.display_name,
            account.profile_image,
            account.balance
        )
        if row is None:
            return await self.get_account(account.id)
        return _row_to_account(row)

    async def get_account(self, account_id: str) -> Optional[Account]:
        """Find account by ID"""
        row = await self.db.fetch_one(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = $1",
            account_id
        )
        return _row_to_account(row)

    async def adjust_balance(self, account_id: str, delta: Decimal) -> Account:
        """Atomically add delta to the account balance"""
        async def body(conn: asyncpg.Connection) -> Account:
            row = await conn.fetchrow(
                "SELECT balance FROM accounts WHERE id = $1 FOR UPDATE",
                account_id
            )
            if row is None:
                raise AccountNotFoundError(account_id)
            if add_amounts(row["balance"], delta) < 0:
                raise InsufficientBalanceError(account_id, row["balance"], delta.copy_negate())
            updated = await conn.fetchrow(
                f"""
                UPDATE accounts SET balance = balance + $1, updated_at = $2
                WHERE id = $3
                RETURNING {ACCOUNT_COLUMNS}
                """,
                delta,
                utcnow(),
                account_id
            )
            return _row_to_account(updated)

        return await self.db.run_in_transaction(body)

    async def update_profile(self, account_id: str,
                             display_name: Optional[str] = None,
                             username: Optional[str] = None) -> Account:
        """Update profile fields; the balance is left alone"""
        row = await self.db.fetch_one(
            f"""
            UPDATE accounts
            SET display_name = COALESCE($1, display_name),
                username = COALESCE($2, username),
                updated_at = $3
            WHERE id = $4
            RETURNING {ACCOUNT_COLUMNS}
            """,
            display_name,
            username,
            utcnow(),
            account_id
        )
        if row is None:
            raise AccountNotFoundError(account_id)
        return _row_to_account(row)


class PostgresPostRepository(IPostRepository):
    """Post repository implementation using PostgreSQL"""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, creator_id: str, description: str,
                     media_url: Optional[str] = None,
                     media_type: Optional[MediaType] = None) -> Post:
        """Create a new post"""
        now = utcnow()
        row = await self.db.fetch_one(
            f"""
            INSERT INTO posts (id, creator_id, description, media_url, media_type,
                               created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $6)
            RETURNING {POST_COLUMNS}
            """,
            generate_id("post"),
            creator_id,
            description,
            media_url,
            media_type.value if media_type else None,
            now
        )
        return _row_to_post(row)

    async def get_post(self, post_id: str) -> Optional[Post]:
        """Find post by ID"""
        row = await self.db.fetch_one(
            f"SELECT {POST_COLUMNS} FROM posts WHERE id = $1",
            post_id
        )
        return _row_to_post(row)

    async def list_posts(self) -> List[Post]:
        """All posts, newest first"""
        rows = await self.db.fetch_all(
            f"SELECT {POST_COLUMNS} FROM posts ORDER BY created_at DESC"
        )
        return [_row_to_post(row) for row in rows]

    async def list_by_creator(self, creator_id: str) -> List[Post]:
        """Posts created by a user, newest first"""
        rows = await self.db.fetch_all(
            f"""
            SELECT {POST_COLUMNS} FROM posts
            WHERE creator_id = $1
            ORDER BY created_at DESC
            """,
            creator_id
        )
        return [_row_to_post(row) for row in rows]

    async def list_liked_by(self, user_id: str) -> List[Post]:
        """Posts liked by a user, newest first"""
        rows = await self.db.fetch_all(
            f"""
            SELECT {POST_COLUMNS} FROM posts
            WHERE id IN (SELECT post_id FROM post_likes WHERE user_id = $1)
            ORDER BY created_at DESC
            """,
            user_id
        )
        return [_row_to_post(row) for row in rows]

    async def _update_counters(self, post_id: str, assignments: str, *args) -> Post:
        row = await self.db.fetch_one(
            f"""
            UPDATE posts SET {assignments}, updated_at = NOW()
            WHERE id = $1
            RETURNING {POST_COLUMNS}
            """,
            post_id,
            *args
        )
        if row is None:
            raise PostNotFoundError(post_id)
        return _row_to_post(row)

    async def add_donation_total(self, post_id: str, amount: Decimal) -> Post:
        """Increase the post's cumulative donations received"""
        return await self._update_counters(
            post_id, "donations_received = donations_received + $2", amount
        )

    async def _toggle_member(self, table: str, counter: str, post_id: str,
                             user_id: str, add: bool) -> Optional[int]:
        """Insert or delete a (post, user) row and keep the post counter in step"""
        async def body(conn: asyncpg.Connection) -> Optional[int]:
            post = await conn.fetchrow(
                "SELECT id FROM posts WHERE id = $1 FOR UPDATE", post_id
            )
            if post is None:
                raise PostNotFoundError(post_id)
            if add:
                status = await conn.execute(
                    f"INSERT INTO {table} (post_id, user_id) VALUES ($1, $2) ON CONFLICT DO NOTHING",
                    post_id, user_id
                )
            else:
                status = await conn.execute(
                    f"DELETE FROM {table} WHERE post_id = $1 AND user_id = $2",
                    post_id, user_id
                )
            # Status looks like "INSERT 0 1" / "DELETE 1"
            if int(status.split()[-1]) == 0:
                return None
            return await conn.fetchval(
                f"""
                UPDATE posts
                SET {counter} = (SELECT COUNT(*) FROM {table} WHERE post_id = $1),
                    updated_at = NOW()
                WHERE id = $1
                RETURNING {counter}
                """,
                post_id
            )

        return await self.db.run_in_transaction(body, isolation="read_committed")

    async def add_like(self, post_id: str, user_id: str) -> bool:
        """Record a like; False if the user already liked the post"""
        count = await self._toggle_member("post_likes", "likes_count", post_id, user_id, True)
        return count is not None

    async def remove_like(self, post_id: str, user_id: str) -> bool:
        """Remove a like; False if the user had not liked the post"""
        count = await self._toggle_member("post_likes", "likes_count", post_id, user_id, False)
        return count is not None

    async def has_liked(self, post_id: str, user_id: str) -> bool:
        """Check if user liked the post"""
        row = await self.db.fetch_one(
            "SELECT 1 FROM post_likes WHERE post_id = $1 AND user_id = $2",
            post_id, user_id
        )
        return row is not None

    async def increment_comment_count(self, post_id: str) -> Post:
        """Increase the post's comment counter"""
        return await self._update_counters(post_id, "comments_count = comments_count + 1")

    async def add_flag(self, post_id: str, user_id: str) -> Optional[int]:
        """Record a flag; returns the new flag count, None if already flagged"""
        return await self._toggle_member("post_flags", "flag_count", post_id, user_id, True)

    async def remove_flag(self, post_id: str, user_id: str) -> Optional[int]:
        """Remove a flag; returns the new flag count, None if not flagged"""
        return await self._toggle_member("post_flags", "flag_count", post_id, user_id, False)

    async def has_flagged(self, post_id: str, user_id: str) -> bool:
        """Check if user flagged the post"""
        row = await self.db.fetch_one(
            "SELECT 1 FROM post_flags WHERE post_id = $1 AND user_id = $2",
            post_id, user_id
        )
        return row is not None


class PostgresCommentRepository(ICommentRepository):
    """Comment repository implementation using PostgreSQL"""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, post_id: str, creator_id: str, text: str) -> Comment:
        """Create a new comment"""
        now = utcnow()
        row = await self.db.fetch_one(
            """
            INSERT INTO comments (id, post_id, creator_id, text, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $5)
            RETURNING id, post_id, creator_id, text, created_at, updated_at
            """,
            generate_id("comment"),
            post_id,
            creator_id,
            text,
            now
        )
        return _row_to_comment(row)

    async def get_comment(self, comment_id: str) -> Optional[Comment]:
        """Find comment by ID"""
        row = await self.db.fetch_one(
            """
            SELECT id, post_id, creator_id, text, created_at, updated_at
            FROM comments WHERE id = $1
            """,
            comment_id
        )
        return _row_to_comment(row)

    async def list_for_post(self, post_id: str) -> List[Comment]:
        """Comments on a post, oldest first"""
        rows = await self.db.fetch_all(
            """
            SELECT id, post_id, creator_id, text, created_at, updated_at
            FROM comments WHERE post_id = $1
            ORDER BY created_at ASC
            """,
            post_id
        )
        return [_row_to_comment(row) for row in rows]


class PostgresLedgerRepository(ILedgerRepository):
    """Ledger repository implementation using serializable transactions"""

    def __init__(self, db: Database):
        self.db = db

    async def _insert_donation(self, conn: asyncpg.Connection, donation: Donation) -> None:
        token = donation if isinstance(donation, TokenDonation) else None
        await conn.execute(
            """
            INSERT INTO transactions (id, kind, from_id, to_id, amount, post_id, tx_hash,
                                      from_address, to_address, token_amount, token_symbol,
                                      status, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            """,
            donation.id,
            donation.kind.value,
            donation.from_id,
            donation.to_id,
            donation.amount,
            donation.post_id,
            token.tx_hash if token else None,
            token.from_address if token else None,
            token.to_address if token else None,
            token.token_amount if token else None,
            token.token_symbol if token else None,
            token.status.value if token else None,
            donation.created_at
        )

    async def apply_donation(self, donation: VirtualDonation) -> VirtualDonation:
        """Move the amount between accounts, grow the post total and store the record"""
        async def body(conn: asyncpg.Connection) -> VirtualDonation:
            # Lock both accounts in a fixed order
            rows = await conn.fetch(
                "SELECT id, balance FROM accounts WHERE id = ANY($1::text[]) ORDER BY id FOR UPDATE",
                [donation.from_id, donation.to_id]
            )
            balances = {row["id"]: row["balance"] for row in rows}
            if donation.from_id not in balances:
                raise AccountNotFoundError(donation.from_id)
            if donation.to_id not in balances:
                raise AccountNotFoundError(donation.to_id)

            post = await conn.fetchrow(
                "SELECT id FROM posts WHERE id = $1 FOR UPDATE", donation.post_id
            )
            if post is None:
                raise PostNotFoundError(donation.post_id)

            if balances[donation.from_id] < donation.amount:
                raise InsufficientBalanceError(
                    donation.from_id, balances[donation.from_id], donation.amount
                )

            now = utcnow()
            await conn.execute(
                "UPDATE accounts SET balance = balance - $1, updated_at = $2 WHERE id = $3",
                donation.amount, now, donation.from_id
            )
            await conn.execute(
                "UPDATE accounts SET balance = balance + $1, updated_at = $2 WHERE id = $3",
                donation.amount, now, donation.to_id
            )
            await conn.execute(
                """
                UPDATE posts SET donations_received = donations_received + $1, updated_at = $2
                WHERE id = $3
                """,
                donation.amount, now, donation.post_id
            )
            await self._insert_donation(conn, donation)
            return donation

        return await self.db.run_in_transaction(body)

    async def record_token_donation(self, donation: TokenDonation) -> TokenDonation:
        """Store an on-chain donation; confirmed ones grow the post total"""
        async def body(conn: asyncpg.Connection) -> TokenDonation:
            post = await conn.fetchrow(
                "SELECT id FROM posts WHERE id = $1 FOR UPDATE", donation.post_id
            )
            if post is None:
                raise PostNotFoundError(donation.post_id)
            if donation.is_confirmed:
                await conn.execute(
                    """
                    UPDATE posts SET donations_received = donations_received + $1,
                                     updated_at = NOW()
                    WHERE id = $2
                    """,
                    donation.amount, donation.post_id
                )
            await self._insert_donation(conn, donation)
            return donation

        return await self.db.run_in_transaction(body)

    async def apply_purchase(self, purchase: CoinPurchase) -> CoinPurchase:
        """Credit the buyer and store the purchase"""
        async def body(conn: asyncpg.Connection) -> CoinPurchase:
            status = await conn.execute(
                "UPDATE accounts SET balance = balance + $1, updated_at = NOW() WHERE id = $2",
                purchase.amount, purchase.user_id
            )
            if status == "UPDATE 0":
                raise AccountNotFoundError(purchase.user_id)
            await conn.execute(
                """
                INSERT INTO purchases (id, user_id, amount, payment_amount, payment_currency,
                                       tx_hash, status, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                purchase.id,
                purchase.user_id,
                purchase.amount,
                purchase.payment_amount,
                purchase.payment_currency.value,
                purchase.tx_hash,
                purchase.status.value,
                purchase.created_at
            )
            return purchase

        return await self.db.run_in_transaction(body)

    async def list_for_user(
        self,
        user_id: str,
        direction: TransferDirection = TransferDirection.ALL
    ) -> List[Donation]:
        """Donations sent and/or received by a user, newest first"""
        if direction == TransferDirection.SENT:
            condition = "from_id = $1"
        elif direction == TransferDirection.RECEIVED:
            condition = "to_id = $1"
        else:
            condition = "(from_id = $1 OR to_id = $1)"
        rows = await self.db.fetch_all(
            f"""
            SELECT {TRANSACTION_COLUMNS} FROM transactions
            WHERE {condition}
            ORDER BY created_at DESC
            """,
            user_id
        )
        return [_row_to_donation(row) for row in rows]

    async def list_for_post(self, post_id: str) -> List[Donation]:
        """Donations attributed to a post, newest first"""
        rows = await self.db.fetch_all(
            f"""
            SELECT {TRANSACTION_COLUMNS} FROM transactions
            WHERE post_id = $1
            ORDER BY created_at DESC
            """,
            post_id
        )
        return [_row_to_donation(row) for row in rows]

    async def list_purchases(self, user_id: str) -> List[CoinPurchase]:
        """Purchases made by a user, newest first"""
        rows = await self.db.fetch_all(
            """
            SELECT id, user_id, amount, payment_amount, payment_currency, tx_hash,
                   status, created_at
            FROM purchases WHERE user_id = $1
            ORDER BY created_at DESC
            """,
            user_id
        )
        return [_row_to_purchase(row) for row in rows]
