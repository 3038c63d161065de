"""
Account service
"""
from decimal import Decimal
from typing import Optional
import logging

from ..config import Settings, settings as default_settings
from ..domain.exceptions import ValidationError
from ..domain.models import Account
from ..domain.repositories import IAccountRepository

logger = logging.getLogger(__name__)


class AccountService:
    """Account lookup and onboarding"""

    def __init__(self, accounts: IAccountRepository, settings: Settings = default_settings):
        self.account_repo = accounts
        self.settings = settings

    async def get_or_create_account(
        self,
        account_id: str,
        username: str,
        display_name: str,
        profile_image: Optional[str] = None,
        balance: Optional[Decimal] = None
    ) -> Account:
        """
        Return the account, creating it on first sight

        New accounts start at ``balance``, or the configured initial balance
        when it is omitted. An existing account is returned unchanged.
        """
        existing = await self.account_repo.get_account(account_id)
        if existing:
            return existing

        opening = Decimal(self.settings.INITIAL_BALANCE if balance is None else balance)
        if not opening.is_finite() or opening < 0:
            raise ValidationError(f"Invalid opening balance: {balance}")

        account = await self.account_repo.create(Account(
            id=account_id,
            username=username,
            display_name=display_name,
            profile_image=profile_image,
            balance=opening,
        ))
        logger.info(f"Created account {account_id} ({username})")
        return account

    async def update_account(
        self,
        account_id: str,
        display_name: Optional[str] = None,
        username: Optional[str] = None
    ) -> Account:
        """Change profile fields; fields left as None keep their value"""
        account = await self.account_repo.update_profile(account_id, display_name, username)
        logger.info(f"Updated profile of account {account_id}")
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        return await self.account_repo.get_account(account_id)

    async def get_balance(self, account_id: str) -> Decimal:
        """Current balance; 0 for unknown accounts"""
        account = await self.account_repo.get_account(account_id)
        return account.balance if account else Decimal("0")
