"""
Audit-based user activity query.

Scans the person population with a multi-worker BatchProcessor in read-only
transactions, looks up each person's latest audit activity, and reduces the
result to one AuditUserRecord per user, sorted by username.

Audit entries live in:

    CREATE TABLE audit_entries (
        id            BIGSERIAL PRIMARY KEY,
        application   TEXT NOT NULL,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        audit_values  JSONB NOT NULL
    );

audit_values maps audit paths (e.g. /alfresco-access/transaction/user) to
values; the configured selectors name which keys hold the user and the dates.
"""

from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime
from operator import attrgetter
from typing import Protocol

from psycopg import sql

from deauth.batch.processor import BatchProcessor, BatchProcessWorkerAdaptor, BatchWorkProvider
from deauth.db.helpers import fetch_all, fetch_val
from deauth.db.transactions import RetryingTransactionExecutor, Transaction
from deauth.infrastructure.observability.logging import get_logger
from deauth.models.domain.deauth_domain import (
    AuditPathSelectors,
    AuditUserRecord,
    AuthorizedState,
    PersonAuditQueryMode,
    PersonRef,
)

logger = get_logger(__name__)

UserCheck = Callable[[str], Awaitable[bool]]

PERSON_PAGE_SIZE = 1000


class AuditLog(Protocol):
    async def last_activity(
        self, username: str, application: str, selectors: AuditPathSelectors
    ) -> datetime | None: ...


class PostgresAuditLog:
    """AuditLog over the audit_entries table."""

    async def last_activity(
        self, username: str, application: str, selectors: AuditPathSelectors
    ) -> datetime | None:
        # Session-style entries: prefer the end of the session, then its start
        date_expressions = [
            sql.SQL("(audit_values ->> {})::timestamptz").format(sql.Literal(path))
            for path in (selectors.date_to_path, selectors.date_from_path, selectors.date_path)
            if path
        ]
        date_expressions.append(sql.SQL("created_at"))

        query = sql.SQL(
            """
            SELECT MAX(COALESCE({dates}))
            FROM audit_entries
            WHERE application = %s
              AND audit_values ->> %s = %s
            """
        ).format(dates=sql.SQL(", ").join(date_expressions))

        return await fetch_val(query, (application, selectors.user_path, username))


class PersonWorkProvider:
    """Pages through the people table by username."""

    def __init__(self, executor: RetryingTransactionExecutor, page_size: int = PERSON_PAGE_SIZE):
        self._executor = executor
        self._page_size = page_size
        self._last_username: str | None = None

    async def get_total_estimated_work_size(self) -> int:
        async def work(txn: Transaction) -> int:
            return int(await fetch_val("SELECT count(*) FROM people") or 0)

        return await self._executor.run_in_transaction(work, read_only=True)

    async def get_next_work(self) -> Sequence[PersonRef]:
        async def work(txn: Transaction) -> list[dict]:
            return await fetch_all(
                """
                SELECT id, username
                FROM people
                WHERE %(after)s::text IS NULL OR username > %(after)s::text
                ORDER BY username
                LIMIT %(limit)s
                """,
                {"after": self._last_username, "limit": self._page_size},
            )

        rows = await self._executor.run_in_transaction(work, read_only=True)
        if rows:
            self._last_username = rows[-1]["username"]
        return [PersonRef(username=row["username"], person_id=str(row["id"])) for row in rows]


class PersonAuditWorker(BatchProcessWorkerAdaptor[PersonRef]):
    """
    Collects audit user records for the people it is handed.

    Records of a batch are published only when its transaction commits; a
    person whose state check fails is logged and left out.
    """

    def __init__(
        self,
        from_time: datetime,
        mode: PersonAuditQueryMode,
        application: str,
        selectors: AuditPathSelectors,
        audit_log: AuditLog,
        is_authorized_check: UserCheck | None = None,
        is_deauthorized_check: UserCheck | None = None,
    ):
        self.from_time = from_time
        self.mode = mode
        self.application = application
        self.selectors = selectors
        self.audit_log = audit_log
        self.is_authorized_check = is_authorized_check
        self.is_deauthorized_check = is_deauthorized_check
        self._users: list[AuditUserRecord] = []
        self._staged_key = (id(self), "staged-users")

    @property
    def users(self) -> list[AuditUserRecord]:
        return list(self._users)

    def get_identifier(self, entry: PersonRef) -> str:
        return entry.username

    async def process(self, entry: PersonRef, txn: Transaction) -> None:
        staged = txn.get_resource(self._staged_key)
        if staged is None:
            staged = []
            txn.bind_resource(self._staged_key, staged)

        last_active = await self.audit_log.last_activity(
            entry.username, self.application, self.selectors
        )
        active = last_active is not None and last_active >= self.from_time

        if self.mode is PersonAuditQueryMode.INACTIVE_ONLY and active:
            return
        if self.mode is PersonAuditQueryMode.ACTIVE_ONLY and not active:
            return

        try:
            state = await self._resolve_state(entry.username)
        except Exception as e:
            logger.warning(
                "Failed to determine authorization state",
                username=entry.username,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        staged.append(
            AuditUserRecord(
                username=entry.username,
                last_active=last_active,
                authorized_state=state,
                person_ref=entry.person_id,
            )
        )

    async def _resolve_state(self, username: str) -> AuthorizedState:
        if self.is_authorized_check is not None and await self.is_authorized_check(username):
            return AuthorizedState.AUTHORIZED
        if self.is_deauthorized_check is not None and await self.is_deauthorized_check(username):
            return AuthorizedState.DEAUTHORIZED
        return AuthorizedState.UNKNOWN

    async def after_process(self, txn: Transaction) -> None:
        staged = txn.get_resource(self._staged_key, [])
        txn.after_commit(lambda: self._users.extend(staged))


class AuditQueryAdapter:
    """Produces the sorted AuditUserRecord list for a lookback window."""

    def __init__(
        self,
        executor: RetryingTransactionExecutor,
        audit_log: AuditLog,
        population_factory: Callable[[], BatchWorkProvider[PersonRef]] | None = None,
    ):
        self._executor = executor
        self._audit_log = audit_log
        self._population_factory = population_factory or (lambda: PersonWorkProvider(executor))

    async def query_users(
        self,
        from_time: datetime,
        application: str,
        selectors: AuditPathSelectors,
        mode: PersonAuditQueryMode = PersonAuditQueryMode.INACTIVE_ONLY,
        is_authorized_check: UserCheck | None = None,
        is_deauthorized_check: UserCheck | None = None,
        worker_threads: int = 4,
        batch_size: int = 20,
        logging_interval: int = 100,
    ) -> list[AuditUserRecord]:
        logger.debug(
            "Querying audit users",
            mode=mode.value,
            from_time=from_time.isoformat(),
            application=application,
            user_path=selectors.user_path,
            date_path=selectors.date_path,
            date_from_path=selectors.date_from_path,
            date_to_path=selectors.date_to_path,
        )

        worker = PersonAuditWorker(
            from_time=from_time,
            mode=mode,
            application=application,
            selectors=selectors,
            audit_log=self._audit_log,
            is_authorized_check=is_authorized_check,
            is_deauthorized_check=is_deauthorized_check,
        )
        processor = BatchProcessor(
            "DeauthorizeInactiveUsers-PreparationQuery",
            self._executor,
            self._population_factory(),
            worker_threads=worker_threads,
            batch_size=batch_size,
            logging_interval=logging_interval,
            read_only=True,
        )
        await processor.process(worker)

        users = sorted(worker.users, key=attrgetter("username"))
        logger.debug("Audit user query completed", mode=mode.value, users=len(users))
        return users
