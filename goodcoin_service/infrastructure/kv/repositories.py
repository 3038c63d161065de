"""
Repository implementations - Redis key-value store

Key layout:
- users:{id} -> Account document
- posts:{id} -> Post document
- posts:all -> Set of all post IDs
- posts:creator:{id} -> Set of post IDs created by a user
- posts:likes:{postId} -> Set of user IDs who liked
- posts:flags:{postId} -> Set of user IDs who flagged
- users:likes:{id} -> Set of post IDs liked by a user
- comments:{id} -> Comment document
- comments:post:{postId} -> List of comment IDs, oldest first
- transactions:{id} -> Donation document
- transactions:all -> Set of all donation IDs
- transactions:user:{id} -> Sorted set of donation IDs by time (sent and received)
- transactions:post:{postId} -> Sorted set of donation IDs by time
- purchases:{id} -> Purchase document
- purchases:user:{id} -> Sorted set of purchase IDs by time
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import json
import logging

import redis.asyncio as redis

from ...config import Settings, settings as default_settings
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
from .connection import watch_transaction

logger = logging.getLogger(__name__)


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dumps(doc: Dict[str, Any]) -> str:
    return json.dumps(doc)


def account_to_doc(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "username": account.username,
        "display_name": account.display_name,
        "profile_image": account.profile_image,
        "balance": str(account.balance),
        "created_at": _dt(account.created_at),
        "updated_at": _dt(account.updated_at),
    }


def doc_to_account(doc: Dict[str, Any]) -> Account:
    return Account(
        id=doc["id"],
        username=doc["username"],
        display_name=doc["display_name"],
        profile_image=doc.get("profile_image"),
        balance=Decimal(doc.get("balance", "0")),
        created_at=_parse_dt(doc.get("created_at")),
        updated_at=_parse_dt(doc.get("updated_at")),
    )


def post_to_doc(post: Post) -> Dict[str, Any]:
    return {
        "id": post.id,
        "creator_id": post.creator_id,
        "description": post.description,
        "media_url": post.media_url,
        "media_type": post.media_type.value if post.media_type else None,
        "likes_count": post.likes_count,
        "comments_count": post.comments_count,
        "flag_count": post.flag_count,
        "donations_received": str(post.donations_received),
        "created_at": _dt(post.created_at),
        "updated_at": _dt(post.updated_at),
    }


def doc_to_post(doc: Dict[str, Any]) -> Post:
    media_type = doc.get("media_type")
    return Post(
        id=doc["id"],
        creator_id=doc["creator_id"],
        description=doc["description"],
        media_url=doc.get("media_url"),
        media_type=MediaType(media_type) if media_type else None,
        likes_count=doc.get("likes_count", 0),
        comments_count=doc.get("comments_count", 0),
        flag_count=doc.get("flag_count") or 0,
        donations_received=Decimal(doc.get("donations_received", "0")),
        created_at=_parse_dt(doc.get("created_at")),
        updated_at=_parse_dt(doc.get("updated_at")),
    )


def comment_to_doc(comment: Comment) -> Dict[str, Any]:
    return {
        "id": comment.id,
        "post_id": comment.post_id,
        "creator_id": comment.creator_id,
        "text": comment.text,
        "created_at": _dt(comment.created_at),
        "updated_at": _dt(comment.updated_at),
    }


def doc_to_comment(doc: Dict[str, Any]) -> Comment:
    return Comment(
        id=doc["id"],
        post_id=doc["post_id"],
        creator_id=doc["creator_id"],
        text=doc["text"],
        created_at=_parse_dt(doc.get("created_at")),
        updated_at=_parse_dt(doc.get("updated_at")),
    )


def donation_to_doc(donation: Donation) -> Dict[str, Any]:
    doc = {
        "id": donation.id,
        "kind": donation.kind.value,
        "from_id": donation.from_id,
        "to_id": donation.to_id,
        "amount": str(donation.amount),
        "post_id": donation.post_id,
        "created_at": _dt(donation.created_at),
    }
    if isinstance(donation, TokenDonation):
        doc.update({
            "tx_hash": donation.tx_hash,
            "from_address": donation.from_address,
            "to_address": donation.to_address,
            "token_amount": donation.token_amount,
            "token_symbol": donation.token_symbol,
            "status": donation.status.value,
        })
    return doc


def doc_to_donation(doc: Dict[str, Any]) -> Donation:
    common = dict(
        id=doc["id"],
        from_id=doc["from_id"],
        to_id=doc["to_id"],
        amount=Decimal(doc["amount"]),
        post_id=doc["post_id"],
        created_at=_parse_dt(doc["created_at"]),
    )
    if doc.get("kind") == TransactionKind.TOKEN.value:
        return TokenDonation(
            **common,
            tx_hash=doc["tx_hash"],
            from_address=doc["from_address"],
            to_address=doc.get("to_address"),
            token_amount=doc["token_amount"],
            token_symbol=doc["token_symbol"],
            status=TransactionStatus(doc.get("status", TransactionStatus.CONFIRMED.value)),
        )
    return VirtualDonation(**common)


def purchase_to_doc(purchase: CoinPurchase) -> Dict[str, Any]:
    return {
        "id": purchase.id,
        "kind": purchase.kind.value,
        "user_id": purchase.user_id,
        "amount": str(purchase.amount),
        "payment_amount": str(purchase.payment_amount),
        "payment_currency": purchase.payment_currency.value,
        "tx_hash": purchase.tx_hash,
        "status": purchase.status.value,
        "created_at": _dt(purchase.created_at),
    }


def doc_to_purchase(doc: Dict[str, Any]) -> CoinPurchase:
    return CoinPurchase(
        id=doc["id"],
        user_id=doc["user_id"],
        amount=Decimal(doc["amount"]),
        payment_amount=Decimal(doc["payment_amount"]),
        payment_currency=PaymentCurrency(doc["payment_currency"]),
        tx_hash=doc.get("tx_hash"),
        status=PurchaseStatus(doc["status"]),
        created_at=_parse_dt(doc["created_at"]),
    )


def _account_key(account_id: str) -> str:
    return f"users:{account_id}"


def _post_key(post_id: str) -> str:
    return f"posts:{post_id}"


async def _load_many(client: redis.Redis, keys: List[str]) -> List[Dict[str, Any]]:
    """MGET documents, skipping keys that vanished"""
    if not keys:
        return []
    raws = await client.mget(keys)
    return [json.loads(raw) for raw in raws if raw is not None]


class RedisAccountRepository(IAccountRepository):
    """Account repository implementation using Redis"""

    def __init__(self, client: redis.Redis, settings: Settings = default_settings):
        self.client = client
        self.settings = settings

    async def create(self, account: Account) -> Account:
        """Create a new account; an existing account is returned untouched"""
        now = utcnow()
        account.created_at = account.created_at or now
        account.updated_at = account.updated_at or now
        created = await self.client.set(
            _account_key(account.id),
            _dumps(account_to_doc(account)),
            nx=True
        )
        if not created:
            return await self.get_account(account.id)
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        """Find account by ID"""
        raw = await self.client.get(_account_key(account_id))
        return doc_to_account(json.loads(raw)) if raw else None

    async def adjust_balance(self, account_id: str, delta: Decimal) -> Account:
        """Atomically add delta to the account balance"""
        key = _account_key(account_id)

        async def body(pipe):
            raw = await pipe.get(key)
            if raw is None:
                raise AccountNotFoundError(account_id)
            account = doc_to_account(json.loads(raw))
            new_balance = add_amounts(account.balance, delta)
            if new_balance < 0:
                raise InsufficientBalanceError(account_id, account.balance, delta.copy_negate())
            account.balance = new_balance
            account.updated_at = utcnow()
            pipe.multi()
            pipe.set(key, _dumps(account_to_doc(account)))
            return account

        return await watch_transaction(self.client, [key], body, self.settings.LEDGER_MAX_RETRIES)

    async def update_profile(self, account_id: str,
                             display_name: Optional[str] = None,
                             username: Optional[str] = None) -> Account:
        """Update profile fields; the balance is left alone"""
        key = _account_key(account_id)

        async def body(pipe):
            raw = await pipe.get(key)
            if raw is None:
                raise AccountNotFoundError(account_id)
            account = doc_to_account(json.loads(raw))
            if display_name is not None:
                account.display_name = display_name
            if username is not None:
                account.username = username
            account.updated_at = utcnow()
            pipe.multi()
            pipe.set(key, _dumps(account_to_doc(account)))
            return account

        return await watch_transaction(self.client, [key], body, self.settings.LEDGER_MAX_RETRIES)


class RedisPostRepository(IPostRepository):
    """Post repository implementation using Redis"""

    def __init__(self, client: redis.Redis, settings: Settings = default_settings):
        self.client = client
        self.settings = settings

    async def create(self, creator_id: str, description: str,
                     media_url: Optional[str] = None,
                     media_type: Optional[MediaType] = None) -> Post:
        """Create a new post"""
        now = utcnow()
        post = Post(
            id=generate_id("post"),
            creator_id=creator_id,
            description=description,
            media_url=media_url,
            media_type=media_type,
            created_at=now,
            updated_at=now,
        )
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(_post_key(post.id), _dumps(post_to_doc(post)))
            pipe.sadd("posts:all", post.id)
            pipe.sadd(f"posts:creator:{creator_id}", post.id)
            await pipe.execute()
        return post

    async def get_post(self, post_id: str) -> Optional[Post]:
        """Find post by ID"""
        raw = await self.client.get(_post_key(post_id))
        return doc_to_post(json.loads(raw)) if raw else None

    async def _list_from_set(self, set_key: str) -> List[Post]:
        post_ids = await self.client.smembers(set_key)
        docs = await _load_many(self.client, [_post_key(pid) for pid in post_ids])
        posts = [doc_to_post(doc) for doc in docs]
        posts.sort(key=lambda p: p.created_at, reverse=True)
        return posts

    async def list_posts(self) -> List[Post]:
        """All posts, newest first"""
        return await self._list_from_set("posts:all")

    async def list_by_creator(self, creator_id: str) -> List[Post]:
        """Posts created by a user, newest first"""
        return await self._list_from_set(f"posts:creator:{creator_id}")

    async def list_liked_by(self, user_id: str) -> List[Post]:
        """Posts liked by a user, newest first"""
        return await self._list_from_set(f"users:likes:{user_id}")

    async def _update_post(self, post_id: str, mutate, extra_keys=()) -> Any:
        """
        Read-modify-write a post document under WATCH

        ``mutate(pipe, post)`` may read ``extra_keys`` through the pipeline and
        returns ``(result, changed)``; when ``changed`` the post is rewritten
        together with any writes ``mutate`` queued after ``pipe.multi()``.
        """
        key = _post_key(post_id)

        async def body(pipe):
            raw = await pipe.get(key)
            if raw is None:
                raise PostNotFoundError(post_id)
            post = doc_to_post(json.loads(raw))
            result, changed = await mutate(pipe, post)
            if changed:
                post.updated_at = utcnow()
                pipe.set(key, _dumps(post_to_doc(post)))
            return result

        return await watch_transaction(
            self.client, [key, *extra_keys], body, self.settings.LEDGER_MAX_RETRIES
        )

    async def add_donation_total(self, post_id: str, amount: Decimal) -> Post:
        """Increase the post's cumulative donations received"""
        async def mutate(pipe, post):
            post.donations_received = add_amounts(post.donations_received, amount)
            pipe.multi()
            return post, True

        return await self._update_post(post_id, mutate)

    async def add_like(self, post_id: str, user_id: str) -> bool:
        """Record a like; False if the user already liked the post"""
        likes_key = f"posts:likes:{post_id}"

        async def mutate(pipe, post):
            already = await pipe.sismember(likes_key, user_id)
            pipe.multi()
            if already:
                return False, False
            post.likes_count += 1
            pipe.sadd(likes_key, user_id)
            pipe.sadd(f"users:likes:{user_id}", post_id)
            return True, True

        return await self._update_post(post_id, mutate, [likes_key])

    async def remove_like(self, post_id: str, user_id: str) -> bool:
        """Remove a like; False if the user had not liked the post"""
        likes_key = f"posts:likes:{post_id}"

        async def mutate(pipe, post):
            liked = await pipe.sismember(likes_key, user_id)
            pipe.multi()
            if not liked:
                return False, False
            post.likes_count = max(0, post.likes_count - 1)
            pipe.srem(likes_key, user_id)
            pipe.srem(f"users:likes:{user_id}", post_id)
            return True, True

        return await self._update_post(post_id, mutate, [likes_key])

    async def has_liked(self, post_id: str, user_id: str) -> bool:
        """Check if user liked the post"""
        return bool(await self.client.sismember(f"posts:likes:{post_id}", user_id))

    async def increment_comment_count(self, post_id: str) -> Post:
        """Increase the post's comment counter"""
        async def mutate(pipe, post):
            post.comments_count += 1
            pipe.multi()
            return post, True

        return await self._update_post(post_id, mutate)

    async def _set_flag(self, post_id: str, user_id: str, flagged: bool) -> Optional[int]:
        flags_key = f"posts:flags:{post_id}"

        async def mutate(pipe, post):
            is_member = bool(await pipe.sismember(flags_key, user_id))
            count = await pipe.scard(flags_key)
            pipe.multi()
            if is_member == flagged:
                return None, False
            if flagged:
                pipe.sadd(flags_key, user_id)
                post.flag_count = count + 1
            else:
                pipe.srem(flags_key, user_id)
                post.flag_count = count - 1
            return post.flag_count, True

        return await self._update_post(post_id, mutate, [flags_key])

    async def add_flag(self, post_id: str, user_id: str) -> Optional[int]:
        """Record a flag; returns the new flag count, None if already flagged"""
        return await self._set_flag(post_id, user_id, True)

    async def remove_flag(self, post_id: str, user_id: str) -> Optional[int]:
        """Remove a flag; returns the new flag count, None if not flagged"""
        return await self._set_flag(post_id, user_id, False)

    async def has_flagged(self, post_id: str, user_id: str) -> bool:
        """Check if user flagged the post"""
        return bool(await self.client.sismember(f"posts:flags:{post_id}", user_id))


class RedisCommentRepository(ICommentRepository):
    """Comment repository implementation using Redis"""

    def __init__(self, client: redis.Redis):
        self.client = client

    async def create(self, post_id: str, creator_id: str, text: str) -> Comment:
        """Create a new comment"""
        now = utcnow()
        comment = Comment(
            id=generate_id("comment"),
            post_id=post_id,
            creator_id=creator_id,
            text=text,
            created_at=now,
            updated_at=now,
        )
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(f"comments:{comment.id}", _dumps(comment_to_doc(comment)))
            pipe.rpush(f"comments:post:{post_id}", comment.id)
            await pipe.execute()
        return comment

    async def get_comment(self, comment_id: str) -> Optional[Comment]:
        """Find comment by ID"""
        raw = await self.client.get(f"comments:{comment_id}")
        return doc_to_comment(json.loads(raw)) if raw else None

    async def list_for_post(self, post_id: str) -> List[Comment]:
        """Comments on a post, oldest first"""
        comment_ids = await self.client.lrange(f"comments:post:{post_id}", 0, -1)
        docs = await _load_many(self.client, [f"comments:{cid}" for cid in comment_ids])
        return [doc_to_comment(doc) for doc in docs]


class RedisLedgerRepository(ILedgerRepository):
    """Ledger repository implementation using Redis transactions"""

    def __init__(self, client: redis.Redis, settings: Settings = default_settings):
        self.client = client
        self.settings = settings

    def _queue_donation_record(self, pipe, donation: Donation) -> None:
        score = donation.created_at.timestamp()
        pipe.set(f"transactions:{donation.id}", _dumps(donation_to_doc(donation)))
        pipe.sadd("transactions:all", donation.id)
        pipe.zadd(f"transactions:user:{donation.from_id}", {donation.id: score})
        pipe.zadd(f"transactions:user:{donation.to_id}", {donation.id: score})
        pipe.zadd(f"transactions:post:{donation.post_id}", {donation.id: score})

    async def apply_donation(self, donation: VirtualDonation) -> VirtualDonation:
        """Move the amount between accounts, grow the post total and store the record"""
        payer_key = _account_key(donation.from_id)
        payee_key = _account_key(donation.to_id)
        post_key = _post_key(donation.post_id)

        async def body(pipe):
            payer_raw, payee_raw, post_raw = await pipe.mget(payer_key, payee_key, post_key)
            if payer_raw is None:
                raise AccountNotFoundError(donation.from_id)
            if payee_raw is None:
                raise AccountNotFoundError(donation.to_id)
            if post_raw is None:
                raise PostNotFoundError(donation.post_id)

            payer = doc_to_account(json.loads(payer_raw))
            payee = doc_to_account(json.loads(payee_raw))
            post = doc_to_post(json.loads(post_raw))
            if not payer.can_afford(donation.amount):
                raise InsufficientBalanceError(payer.id, payer.balance, donation.amount)

            now = utcnow()
            payer.balance = add_amounts(payer.balance, donation.amount.copy_negate())
            payer.updated_at = now
            payee.balance = add_amounts(payee.balance, donation.amount)
            payee.updated_at = now
            post.donations_received = add_amounts(post.donations_received, donation.amount)
            post.updated_at = now

            pipe.multi()
            pipe.set(payer_key, _dumps(account_to_doc(payer)))
            pipe.set(payee_key, _dumps(account_to_doc(payee)))
            pipe.set(post_key, _dumps(post_to_doc(post)))
            self._queue_donation_record(pipe, donation)
            return donation

        return await watch_transaction(
            self.client,
            [payer_key, payee_key, post_key],
            body,
            self.settings.LEDGER_MAX_RETRIES
        )

    async def record_token_donation(self, donation: TokenDonation) -> TokenDonation:
        """Store an on-chain donation; confirmed ones grow the post total"""
        post_key = _post_key(donation.post_id)

        async def body(pipe):
            raw = await pipe.get(post_key)
            if raw is None:
                raise PostNotFoundError(donation.post_id)
            post = doc_to_post(json.loads(raw))
            pipe.multi()
            if donation.is_confirmed:
                post.donations_received = add_amounts(post.donations_received, donation.amount)
                post.updated_at = utcnow()
                pipe.set(post_key, _dumps(post_to_doc(post)))
            self._queue_donation_record(pipe, donation)
            return donation

        return await watch_transaction(
            self.client, [post_key], body, self.settings.LEDGER_MAX_RETRIES
        )

    async def apply_purchase(self, purchase: CoinPurchase) -> CoinPurchase:
        """Credit the buyer and store the purchase"""
        account_key = _account_key(purchase.user_id)

        async def body(pipe):
            raw = await pipe.get(account_key)
            if raw is None:
                raise AccountNotFoundError(purchase.user_id)
            account = doc_to_account(json.loads(raw))
            account.balance = add_amounts(account.balance, purchase.amount)
            account.updated_at = utcnow()
            pipe.multi()
            pipe.set(account_key, _dumps(account_to_doc(account)))
            pipe.set(f"purchases:{purchase.id}", _dumps(purchase_to_doc(purchase)))
            pipe.zadd(
                f"purchases:user:{purchase.user_id}",
                {purchase.id: purchase.created_at.timestamp()}
            )
            return purchase

        return await watch_transaction(
            self.client, [account_key], body, self.settings.LEDGER_MAX_RETRIES
        )

    async def _list_donations(self, index_key: str) -> List[Donation]:
        donation_ids = await self.client.zrevrange(index_key, 0, -1)
        docs = await _load_many(self.client, [f"transactions:{tid}" for tid in donation_ids])
        return [doc_to_donation(doc) for doc in docs]

    async def list_for_user(
        self,
        user_id: str,
        direction: TransferDirection = TransferDirection.ALL
    ) -> List[Donation]:
        """Donations sent and/or received by a user, newest first"""
        donations = await self._list_donations(f"transactions:user:{user_id}")
        if direction == TransferDirection.SENT:
            return [d for d in donations if d.from_id == user_id]
        if direction == TransferDirection.RECEIVED:
            return [d for d in donations if d.to_id == user_id]
        return donations

    async def list_for_post(self, post_id: str) -> List[Donation]:
        """Donations attributed to a post, newest first"""
        return await self._list_donations(f"transactions:post:{post_id}")

    async def list_purchases(self, user_id: str) -> List[CoinPurchase]:
        """Purchases made by a user, newest first"""
        purchase_ids = await self.client.zrevrange(f"purchases:user:{user_id}", 0, -1)
        docs = await _load_many(self.client, [f"purchases:{pid}" for pid in purchase_ids])
        return [doc_to_purchase(doc) for doc in docs]
