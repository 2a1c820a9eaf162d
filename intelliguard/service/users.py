from __future__ import annotations

from typing import List, Optional, Union

from intelliguard.api.schemas import UserProfile
from intelliguard.service.auth import UserStore
from intelliguard.service.errors import NotFoundError, ValidationError
from intelliguard.storage.models import AccountStatus


class UserService:
    """Read-side account queries returning public profiles."""

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def get_user(self, account_id: str) -> UserProfile:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return UserProfile.from_account(account)

    def list_users(
        self,
        status: Optional[Union[AccountStatus, str]] = None,
        limit: int = 100,
    ) -> List[UserProfile]:
        if isinstance(status, str) and not isinstance(status, AccountStatus):
            try:
                status = AccountStatus(status.strip().upper())
            except ValueError:
                raise ValidationError(
                    "unknown account status", detail={"status": status}
                ) from None
        if limit < 1:
            raise ValidationError("limit must be positive", detail={"limit": limit})
        accounts = self.store.list_accounts(status=status, limit=limit)
        return [UserProfile.from_account(account) for account in accounts]

    def list_active_users(self, limit: int = 100) -> List[UserProfile]:
        """Accounts with status ACTIVE that are not soft-deleted."""
        return [
            UserProfile.from_account(account)
            for account in self.store.list_active_accounts(limit=limit)
        ]
