"""
Repository interfaces - Define contracts for data access
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .models import (
    Account,
    CoinPurchase,
    Comment,
    Donation,
    MediaType,
    Post,
    TokenDonation,
    VirtualDonation,
)


class TransferDirection(str, Enum):
    """Which side of a transfer a user is on"""
    ALL = "all"
    SENT = "sent"
    RECEIVED = "received"


class IAccountRepository(ABC):
    """Account repository interface"""

    @abstractmethod
    async def create(self, account: Account) -> Account:
        """Create a new account"""
        pass

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        """Find account by ID"""
        pass

    @abstractmethod
    async def update_profile(self, account_id: str,
                             display_name: Optional[str] = None,
                             username: Optional[str] = None) -> Account:
        """
        Change the given profile fields; None leaves a field untouched

        Raises:
            AccountNotFoundError: account does not exist
        """
        pass

    @abstractmethod
    async def adjust_balance(self, account_id: str, delta: Decimal) -> Account:
        """
        Atomically add ``delta`` to the account balance

        Raises:
            AccountNotFoundError: account does not exist
            InsufficientBalanceError: the balance would go negative
        """
        pass


class IPostRepository(ABC):
    """Post repository interface"""

    @abstractmethod
    async def create(self, creator_id: str, description: str,
                     media_url: Optional[str] = None,
                     media_type: Optional[MediaType] = None) -> Post:
        """Create a new post"""
        pass

    @abstractmethod
    async def get_post(self, post_id: str) -> Optional[Post]:
        """Find post by ID"""
        pass

    @abstractmethod
    async def list_posts(self) -> List[Post]:
        """All posts, newest first"""
        pass

    @abstractmethod
    async def list_by_creator(self, creator_id: str) -> List[Post]:
        """Posts created by a user, newest first"""
        pass

    @abstractmethod
    async def list_liked_by(self, user_id: str) -> List[Post]:
        """Posts liked by a user, newest first"""
        pass

    @abstractmethod
    async def add_donation_total(self, post_id: str, amount: Decimal) -> Post:
        """Increase the post's cumulative donations received"""
        pass

    @abstractmethod
    async def add_like(self, post_id: str, user_id: str) -> bool:
        """Record a like; False if the user already liked the post"""
        pass

    @abstractmethod
    async def remove_like(self, post_id: str, user_id: str) -> bool:
        """Remove a like; False if the user had not liked the post"""
        pass

    @abstractmethod
    async def has_liked(self, post_id: str, user_id: str) -> bool:
        """Check if user liked the post"""
        pass

    @abstractmethod
    async def increment_comment_count(self, post_id: str) -> Post:
        """Increase the post's comment counter"""
        pass

    @abstractmethod
    async def add_flag(self, post_id: str, user_id: str) -> Optional[int]:
        """Record a flag; returns the new flag count, None if already flagged"""
        pass

    @abstractmethod
    async def remove_flag(self, post_id: str, user_id: str) -> Optional[int]:
        """Remove a flag; returns the new flag count, None if not flagged"""
        pass

    @abstractmethod
    async def has_flagged(self, post_id: str, user_id: str) -> bool:
        """Check if user flagged the post"""
        pass


class ICommentRepository(ABC):
    """Comment repository interface"""

    @abstractmethod
    async def create(self, post_id: str, creator_id: str, text: str) -> Comment:
        """Create a new comment"""
        pass

    @abstractmethod
    async def get_comment(self, comment_id: str) -> Optional[Comment]:
        """Find comment by ID"""
        pass

    @abstractmethod
    async def list_for_post(self, post_id: str) -> List[Comment]:
        """Comments on a post, oldest first"""
        pass


class ILedgerRepository(ABC):
    """Transaction ledger repository interface"""

    @abstractmethod
    async def apply_donation(self, donation: VirtualDonation) -> VirtualDonation:
        """
        Debit payer, credit payee, grow the post total and store the record
        as one atomic unit

        Raises:
            AccountNotFoundError, PostNotFoundError, InsufficientBalanceError:
                the state changed after validation; nothing was applied
            ConcurrentUpdateError: retries exhausted
        """
        pass

    @abstractmethod
    async def record_token_donation(self, donation: TokenDonation) -> TokenDonation:
        """Store an on-chain donation; confirmed ones grow the post total"""
        pass

    @abstractmethod
    async def apply_purchase(self, purchase: CoinPurchase) -> CoinPurchase:
        """Credit the buyer and store the purchase as one atomic unit"""
        pass

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        direction: TransferDirection = TransferDirection.ALL
    ) -> List[Donation]:
        """Donations sent and/or received by a user, newest first"""
        pass

    @abstractmethod
    async def list_for_post(self, post_id: str) -> List[Donation]:
        """Donations attributed to a post, newest first"""
        pass

    @abstractmethod
    async def list_purchases(self, user_id: str) -> List[CoinPurchase]:
        """Purchases made by a user, newest first"""
        pass
