"""
Protected account classification.

Administrators and guest accounts are never deauthorized. Admins are the
configured ADMIN_USERNAMES plus people flagged is_admin; guests are the
configured GUEST_USERNAMES.
"""

from collections.abc import Iterable
from typing import Protocol

from deauth.config import settings
from deauth.db.helpers import fetch_val


class AuthorityService(Protocol):
    async def is_admin_account(self, username: str) -> bool: ...

    async def is_guest_account(self, username: str) -> bool: ...


class PostgresAuthorityService:
    def __init__(
        self,
        admin_usernames: Iterable[str] | None = None,
        guest_usernames: Iterable[str] | None = None,
    ):
        admins = settings.ADMIN_USERNAMES if admin_usernames is None else admin_usernames
        guests = settings.GUEST_USERNAMES if guest_usernames is None else guest_usernames
        self._admin_usernames = {name.lower() for name in admins}
        self._guest_usernames = {name.lower() for name in guests}

    async def is_admin_account(self, username: str) -> bool:
        if username.lower() in self._admin_usernames:
            return True
        is_admin = await fetch_val("SELECT is_admin FROM people WHERE username = %s", (username,))
        return bool(is_admin)

    async def is_guest_account(self, username: str) -> bool:
        return username.lower() in self._guest_usernames
