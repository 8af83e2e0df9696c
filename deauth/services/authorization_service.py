"""
Authorization (license seat) store.

Backed by the user_authorizations table:

    CREATE TABLE user_authorizations (
        username    TEXT PRIMARY KEY,
        state       TEXT NOT NULL CHECK (state IN ('AUTHORIZED', 'DEAUTHORIZED')),
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_by  TEXT
    );

Users without a row are neither authorized nor deauthorized.
"""

from typing import Protocol

from deauth.db.helpers import execute_query, fetch_val
from deauth.db.transactions import TransientCollaboratorFailure
from deauth.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class AuthorizationService(Protocol):
    async def is_authorized(self, username: str) -> bool: ...

    async def is_deauthorized(self, username: str) -> bool: ...

    async def deauthorize(self, username: str, actor: str) -> None: ...

    async def count_authorized_users(self) -> int: ...


class PostgresAuthorizationService:
    """AuthorizationService over user_authorizations; joins the current transaction."""

    async def is_authorized(self, username: str) -> bool:
        state = await fetch_val(
            "SELECT state FROM user_authorizations WHERE username = %s", (username,)
        )
        return state == "AUTHORIZED"

    async def is_deauthorized(self, username: str) -> bool:
        state = await fetch_val(
            "SELECT state FROM user_authorizations WHERE username = %s", (username,)
        )
        return state == "DEAUTHORIZED"

    async def deauthorize(self, username: str, actor: str) -> None:
        """
        Flip an authorized user to deauthorized.

        Raises:
            TransientCollaboratorFailure: the row was no longer authorized,
                i.e. a concurrent update got there first
        """
        updated = await execute_query(
            """
            UPDATE user_authorizations
            SET state = 'DEAUTHORIZED',
                updated_at = NOW(),
                updated_by = %s
            WHERE username = %s
              AND state = 'AUTHORIZED'
            """,
            (actor, username),
        )
        if updated != 1:
            raise TransientCollaboratorFailure(
                f"Authorization of {username} changed concurrently", username=username
            )

        logger.info("User deauthorized", username=username, actor=actor)

    async def count_authorized_users(self) -> int:
        count = await fetch_val("SELECT count(*) FROM user_authorizations WHERE state = 'AUTHORIZED'")
        return int(count or 0)
