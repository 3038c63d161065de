"""
Domain models - Core business entities
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Context, Decimal, Inexact, InvalidOperation, Overflow, localcontext
from enum import Enum
from typing import Generic, Iterable, List, Optional, TypeVar, Union
import time
import uuid


class MediaType(str, Enum):
    """Media type enumeration"""
    PHOTO = "photo"
    VIDEO = "video"


class TransactionKind(str, Enum):
    """Discriminant of the transaction union"""
    VIRTUAL = "virtual"
    TOKEN = "token"
    PURCHASE = "purchase"


class TransactionStatus(str, Enum):
    """On-chain transfer status"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PurchaseStatus(str, Enum):
    """Coin purchase status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentCurrency(str, Enum):
    """Currencies accepted for coin purchases"""
    ETH = "ETH"
    USDC = "USDC"


class FailureReason(str, Enum):
    """Why a ledger operation was rejected"""
    INVALID_AMOUNT = "InvalidAmount"
    SELF_DONATION = "SelfDonation"
    PAYER_NOT_FOUND = "PayerNotFound"
    PAYEE_NOT_FOUND = "PayeeNotFound"
    POST_NOT_FOUND = "PostNotFound"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    MISSING_TOKEN_DETAILS = "MissingTokenDetails"
    INVALID_PAYMENT = "InvalidPayment"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Unique, roughly time-ordered identifier such as ``tx_1718000000000_3f2a9c1b0``"""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


# Wide enough for NUMERIC(38, 18) balances plus headroom; any rounding raises Inexact
MONEY_CONTEXT = Context(prec=60, traps=[Inexact, InvalidOperation, Overflow])


def format_amount(amount: Decimal) -> str:
    """Render an amount without trailing zeros or exponent notation"""
    return format(amount.normalize(MONEY_CONTEXT), "f")


def add_amounts(*amounts: Decimal) -> Decimal:
    """Exact sum of amounts; raises decimal.Inexact instead of rounding"""
    return sum_amounts(amounts)


def sum_amounts(amounts: Iterable[Decimal]) -> Decimal:
    with localcontext(MONEY_CONTEXT):
        total = Decimal("0")
        for amount in amounts:
            total += amount
        return total


@dataclass
class Account:
    """Account domain model (a Farcaster user holding coins)"""
    id: str
    username: str
    display_name: str
    profile_image: Optional[str] = None
    balance: Decimal = Decimal("0")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def can_afford(self, amount: Decimal) -> bool:
        """Check if the balance covers the given amount"""
        return self.balance >= amount


@dataclass(frozen=True)
class PostSnapshot:
    """Engagement counters and age of a post, as consumed by the ranking engine"""
    likes_count: int
    comments_count: int
    created_at: Union[datetime, str]
    flag_count: Optional[int] = 0


@dataclass
class Post:
    """Post domain model"""
    id: str
    creator_id: str
    description: str
    media_url: Optional[str] = None
    media_type: Optional[MediaType] = None
    likes_count: int = 0
    comments_count: int = 0
    flag_count: int = 0
    donations_received: Decimal = Decimal("0")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_owner(self, user_id: str) -> bool:
        """Check if the given user_id created this post"""
        return self.creator_id == user_id

    def snapshot(self) -> PostSnapshot:
        return PostSnapshot(
            likes_count=self.likes_count,
            comments_count=self.comments_count,
            created_at=self.created_at,
            flag_count=self.flag_count,
        )


@dataclass
class Comment:
    """Comment domain model"""
    id: str
    post_id: str
    creator_id: str
    text: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class VirtualDonation:
    """Balance-backed donation record; created once, never modified"""
    id: str
    from_id: str
    to_id: str
    amount: Decimal
    post_id: str
    created_at: datetime
    kind: TransactionKind = field(default=TransactionKind.VIRTUAL, init=False)

    def display_text(self, token_symbol: str = "GOOD") -> str:
        return f"Sent {format_amount(self.amount)} {token_symbol} tokens"


@dataclass
class TokenDonation:
    """On-chain GOOD transfer, recorded after the fact"""
    id: str
    from_id: str
    to_id: str
    amount: Decimal
    post_id: str
    created_at: datetime
    tx_hash: str
    from_address: str
    token_amount: str
    token_symbol: str
    to_address: Optional[str] = None
    status: TransactionStatus = TransactionStatus.CONFIRMED
    kind: TransactionKind = field(default=TransactionKind.TOKEN, init=False)

    @property
    def is_confirmed(self) -> bool:
        return self.status == TransactionStatus.CONFIRMED

    def display_text(self, token_symbol: str = "GOOD") -> str:
        return f"Sent {self.token_amount} {self.token_symbol}"


@dataclass
class CoinPurchase:
    """Coins bought with ETH or USDC"""
    id: str
    user_id: str
    amount: Decimal
    payment_amount: Decimal
    payment_currency: PaymentCurrency
    created_at: datetime
    tx_hash: Optional[str] = None
    status: PurchaseStatus = PurchaseStatus.COMPLETED
    kind: TransactionKind = field(default=TransactionKind.PURCHASE, init=False)

    def display_text(self, token_symbol: str = "GOOD") -> str:
        return (
            f"Purchased {format_amount(self.amount)} {token_symbol} "
            f"for {format_amount(self.payment_amount)} {self.payment_currency.value}"
        )


Donation = Union[VirtualDonation, TokenDonation]
Transaction = Union[VirtualDonation, TokenDonation, CoinPurchase]

RecordT = TypeVar("RecordT")


@dataclass
class LedgerResult(Generic[RecordT]):
    """Outcome of a ledger operation: a created record or a failure reason"""
    record: Optional[RecordT] = None
    reason: Optional[FailureReason] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    @classmethod
    def success(cls, record: RecordT) -> "LedgerResult[RecordT]":
        return cls(record=record)

    @classmethod
    def failure(cls, reason: FailureReason) -> "LedgerResult[RecordT]":
        return cls(reason=reason)


@dataclass(frozen=True)
class CoinPackage:
    """Purchasable bundle of coins"""
    coins: int
    price_eth: Decimal
    price_usdc: Decimal
    popular: bool = False
    best_value: bool = False

    def price_in(self, currency: PaymentCurrency) -> Decimal:
        if currency == PaymentCurrency.ETH:
            return self.price_eth
        return self.price_usdc


COIN_PACKAGES: List[CoinPackage] = [
    CoinPackage(100, Decimal("0.001"), Decimal("3")),
    CoinPackage(250, Decimal("0.0024"), Decimal("7"), popular=True),
    CoinPackage(500, Decimal("0.0045"), Decimal("13")),
    CoinPackage(1000, Decimal("0.008"), Decimal("24"), best_value=True),
    CoinPackage(2500, Decimal("0.019"), Decimal("55")),
    CoinPackage(5000, Decimal("0.035"), Decimal("100")),
]
