"""
Domain exceptions raised by stores and services
"""


class GoodcoinError(Exception):
    """Base class for service errors"""


class ValidationError(GoodcoinError):
    """Input rejected by a service"""


class NotFoundError(GoodcoinError):
    """Referenced entity does not exist"""

    entity = "Entity"

    def __init__(self, entity_id: str):
        super().__init__(f"{self.entity} {entity_id} not found")
        self.entity_id = entity_id


class AccountNotFoundError(NotFoundError):
    entity = "Account"


class PostNotFoundError(NotFoundError):
    entity = "Post"


class InsufficientBalanceError(GoodcoinError):
    """A balance adjustment would leave the account negative"""

    def __init__(self, account_id: str, balance, requested):
        super().__init__(
            f"Account {account_id} has balance {balance}, needs {requested}"
        )
        self.account_id = account_id
        self.balance = balance
        self.requested = requested


class ConcurrentUpdateError(GoodcoinError):
    """An optimistic transaction kept conflicting with concurrent writers"""
