"""
Donation ledger - balance transfers, on-chain donation records and coin purchases
"""
from decimal import Decimal, Inexact, InvalidOperation, Overflow
from typing import List, Optional, Union
import logging

from ..config import Settings, settings as default_settings
from ..domain.exceptions import (
    AccountNotFoundError,
    InsufficientBalanceError,
    PostNotFoundError,
)
from ..domain.models import (
    COIN_PACKAGES,
    CoinPackage,
    CoinPurchase,
    Donation,
    FailureReason,
    LedgerResult,
    PaymentCurrency,
    PurchaseStatus,
    TokenDonation,
    TransactionStatus,
    VirtualDonation,
    generate_id,
    sum_amounts,
    utcnow,
)
from ..domain.repositories import (
    IAccountRepository,
    ILedgerRepository,
    IPostRepository,
    TransferDirection,
)
from ..infrastructure.kafka_producer import KafkaProducerManager
from ..infrastructure.locks import KeyedLock

logger = logging.getLogger(__name__)

AmountLike = Union[Decimal, int, str, float]


def _to_decimal(value: AmountLike) -> Optional[Decimal]:
    """Coerce an amount to Decimal; None when it is not a number"""
    if isinstance(value, bool):
        return None
    try:
        # str() keeps floats such as 0.1 at their printed value
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


class DonationLedger:
    """Ledger service - every coin movement goes through here"""

    def __init__(
        self,
        accounts: IAccountRepository,
        posts: IPostRepository,
        ledger: ILedgerRepository,
        locks: Optional[KeyedLock] = None,
        events: Optional[KafkaProducerManager] = None,
        settings: Settings = default_settings,
    ):
        self.account_repo = accounts
        self.post_repo = posts
        self.ledger_repo = ledger
        self.locks = locks or KeyedLock()
        self.events = events
        self.settings = settings

    def _parse_amount(self, value: AmountLike) -> Optional[Decimal]:
        """Return the amount if it is finite, positive and not over-precise"""
        amount = _to_decimal(value)
        if amount is None or not amount.is_finite() or amount <= 0:
            return None
        if -amount.as_tuple().exponent > self.settings.AMOUNT_MAX_DECIMAL_PLACES:
            return None
        if amount.adjusted() >= self.settings.AMOUNT_MAX_INTEGER_DIGITS:
            return None
        return amount

    async def _check_parties(self, from_id: str, to_id: str,
                             post_id: str) -> Optional[FailureReason]:
        """Existence checks shared by virtual and token donations, in order"""
        if await self.account_repo.get_account(from_id) is None:
            return FailureReason.PAYER_NOT_FOUND
        if await self.account_repo.get_account(to_id) is None:
            return FailureReason.PAYEE_NOT_FOUND
        if await self.post_repo.get_post(post_id) is None:
            return FailureReason.POST_NOT_FOUND
        return None

    @staticmethod
    def _reason_for(error: Exception, from_id: str) -> FailureReason:
        if isinstance(error, (Inexact, Overflow)):
            return FailureReason.INVALID_AMOUNT
        if isinstance(error, InsufficientBalanceError):
            return FailureReason.INSUFFICIENT_BALANCE
        if isinstance(error, PostNotFoundError):
            return FailureReason.POST_NOT_FOUND
        if error.entity_id == from_id:
            return FailureReason.PAYER_NOT_FOUND
        return FailureReason.PAYEE_NOT_FOUND

    async def create_donation(
        self,
        from_id: str,
        to_id: str,
        amount: AmountLike,
        post_id: str
    ) -> LedgerResult[VirtualDonation]:
        """
        Move ``amount`` coins from payer to payee on behalf of a post

        Preconditions are checked in order and the first failing one is
        reported. On failure no balance, post total or record changes.
        """
        value = self._parse_amount(amount)
        if value is None:
            logger.info(f"Rejected donation {from_id} -> {to_id}: invalid amount {amount!r}")
            return LedgerResult.failure(FailureReason.INVALID_AMOUNT)
        if from_id == to_id:
            return LedgerResult.failure(FailureReason.SELF_DONATION)

        async with self.locks.acquire(
            f"account:{from_id}", f"account:{to_id}", f"post:{post_id}"
        ):
            payer = await self.account_repo.get_account(from_id)
            if payer is None:
                return LedgerResult.failure(FailureReason.PAYER_NOT_FOUND)
            if await self.account_repo.get_account(to_id) is None:
                return LedgerResult.failure(FailureReason.PAYEE_NOT_FOUND)
            if await self.post_repo.get_post(post_id) is None:
                return LedgerResult.failure(FailureReason.POST_NOT_FOUND)
            if not payer.can_afford(value):
                logger.info(
                    f"Rejected donation {from_id} -> {to_id}: balance {payer.balance} < {value}"
                )
                return LedgerResult.failure(FailureReason.INSUFFICIENT_BALANCE)

            donation = VirtualDonation(
                id=generate_id("tx"),
                from_id=from_id,
                to_id=to_id,
                amount=value,
                post_id=post_id,
                created_at=utcnow(),
            )
            try:
                # Another process may have moved funds since the reads above
                await self.ledger_repo.apply_donation(donation)
            except (AccountNotFoundError, PostNotFoundError, InsufficientBalanceError,
                    Inexact, Overflow) as e:
                logger.info(f"Donation {donation.id} rejected by store: {e}")
                return LedgerResult.failure(self._reason_for(e, from_id))

        logger.info(f"Donation {donation.id}: {from_id} -> {to_id} {value} on post {post_id}")
        if self.events:
            await self.events.publish_donation_created(donation)
        return LedgerResult.success(donation)

    async def record_token_donation(
        self,
        from_id: str,
        to_id: str,
        amount: AmountLike,
        post_id: str,
        *,
        tx_hash: str,
        from_address: str,
        token_amount: str,
        token_symbol: Optional[str] = None,
        to_address: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.CONFIRMED
    ) -> LedgerResult[TokenDonation]:
        """Record an on-chain transfer; balances are never touched"""
        value = self._parse_amount(amount)
        if value is None:
            return LedgerResult.failure(FailureReason.INVALID_AMOUNT)
        if from_id == to_id:
            return LedgerResult.failure(FailureReason.SELF_DONATION)
        if not tx_hash or not from_address or not token_amount:
            return LedgerResult.failure(FailureReason.MISSING_TOKEN_DETAILS)

        reason = await self._check_parties(from_id, to_id, post_id)
        if reason is not None:
            return LedgerResult.failure(reason)

        donation = TokenDonation(
            id=generate_id("tx"),
            from_id=from_id,
            to_id=to_id,
            amount=value,
            post_id=post_id,
            created_at=utcnow(),
            tx_hash=tx_hash,
            from_address=from_address,
            token_amount=token_amount,
            token_symbol=token_symbol or self.settings.TOKEN_SYMBOL,
            to_address=to_address,
            status=TransactionStatus(status),
        )
        async with self.locks.acquire(f"post:{post_id}"):
            try:
                await self.ledger_repo.record_token_donation(donation)
            except PostNotFoundError:
                return LedgerResult.failure(FailureReason.POST_NOT_FOUND)
            except (Inexact, Overflow):
                return LedgerResult.failure(FailureReason.INVALID_AMOUNT)

        logger.info(f"Token donation {donation.id} recorded ({tx_hash}, {donation.status.value})")
        if self.events:
            await self.events.publish_donation_created(donation)
        return LedgerResult.success(donation)

    async def purchase_coins(
        self,
        user_id: str,
        amount: AmountLike,
        payment_amount: AmountLike,
        payment_currency: Union[PaymentCurrency, str],
        tx_hash: Optional[str] = None
    ) -> LedgerResult[CoinPurchase]:
        """Credit purchased coins to a user and record the purchase"""
        value = self._parse_amount(amount)
        if value is None:
            return LedgerResult.failure(FailureReason.INVALID_AMOUNT)

        payment = self._parse_amount(payment_amount)
        try:
            currency = PaymentCurrency(payment_currency)
        except ValueError:
            currency = None
        if payment is None or currency is None:
            return LedgerResult.failure(FailureReason.INVALID_PAYMENT)

        purchase = CoinPurchase(
            id=generate_id("purchase"),
            user_id=user_id,
            amount=value,
            payment_amount=payment,
            payment_currency=currency,
            created_at=utcnow(),
            tx_hash=tx_hash,
            status=PurchaseStatus.COMPLETED,
        )
        async with self.locks.acquire(f"account:{user_id}"):
            try:
                await self.ledger_repo.apply_purchase(purchase)
            except AccountNotFoundError:
                return LedgerResult.failure(FailureReason.PAYER_NOT_FOUND)
            except (Inexact, Overflow):
                return LedgerResult.failure(FailureReason.INVALID_AMOUNT)

        logger.info(f"Purchase {purchase.id}: {user_id} bought {value} for {payment} {currency.value}")
        if self.events:
            await self.events.publish_purchase_completed(purchase)
        return LedgerResult.success(purchase)

    async def get_user_transactions(
        self,
        user_id: str,
        direction: TransferDirection = TransferDirection.ALL
    ) -> List[Donation]:
        """Get donations involving a user, newest first"""
        return await self.ledger_repo.list_for_user(user_id, TransferDirection(direction))

    async def get_post_transactions(self, post_id: str) -> List[Donation]:
        """Get donations made on a post, newest first"""
        return await self.ledger_repo.list_for_post(post_id)

    async def get_total_donated_by_user(self, user_id: str) -> Decimal:
        donations = await self.ledger_repo.list_for_user(user_id, TransferDirection.SENT)
        return sum_amounts(d.amount for d in donations)

    async def get_total_received_by_user(self, user_id: str) -> Decimal:
        donations = await self.ledger_repo.list_for_user(user_id, TransferDirection.RECEIVED)
        return sum_amounts(d.amount for d in donations)

    async def get_user_purchases(self, user_id: str) -> List[CoinPurchase]:
        """Get a user's coin purchases, newest first"""
        return await self.ledger_repo.list_purchases(user_id)

    async def get_total_purchased_by_user(self, user_id: str) -> Decimal:
        """Sum of completed purchases"""
        purchases = await self.ledger_repo.list_purchases(user_id)
        return sum_amounts(p.amount for p in purchases if p.status == PurchaseStatus.COMPLETED)

    def get_coin_packages(self) -> List[CoinPackage]:
        return list(COIN_PACKAGES)
