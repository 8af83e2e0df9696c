import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import pytest
from redis.exceptions import LockError, LockNotOwnedError

from deauth.auth.verify import admin_dependency
from deauth.db.transactions import (
    RetryingTransactionExecutor,
    TransientCollaboratorFailure,
    current_transaction,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class FakeConnection:
    def __init__(self, pool: "FakePool"):
        self._pool = pool
        self.statements: list[str] = []

    async def execute(self, query, params=None):
        self.statements.append(str(query))

    @asynccontextmanager
    async def transaction(self):
        self._pool.begun += 1
        yield
        if self._pool.fail_commits > 0:
            self._pool.fail_commits -= 1
            raise TransientCollaboratorFailure("could not serialize access")
        self._pool.committed += 1


class FakePool:
    """Stands in for DatabasePoolManager; commits can be made to fail."""

    def __init__(self):
        self.begun = 0
        self.committed = 0
        self.fail_commits = 0
        self.connections: list[FakeConnection] = []

    @asynccontextmanager
    async def connection(self):
        conn = FakeConnection(self)
        self.connections.append(conn)
        yield conn


class InMemoryAuthorizationService:
    """
    Authorization store with transactional semantics.

    Mutations are staged on the current transaction attempt and applied only
    when it commits. `failures` maps a username to exceptions raised by
    successive deauthorize calls for that user.
    """

    def __init__(self, states: dict[str, str] | None = None):
        self.states: dict[str, str] = dict(states or {})
        self.failures: dict[str, list[Exception]] = {}
        self.deauthorize_calls: list[tuple[str, str]] = []
        self.committed_deauthorizations: list[tuple[str, str]] = []
        self._staged_key = object()

    def _staged(self) -> dict[str, str]:
        txn = current_transaction(required=False)
        if txn is None:
            return {}
        return txn.get_resource(self._staged_key, {})

    def _state(self, username: str) -> str | None:
        return self._staged().get(username, self.states.get(username))

    async def is_authorized(self, username: str) -> bool:
        return self._state(username) == "AUTHORIZED"

    async def is_deauthorized(self, username: str) -> bool:
        return self._state(username) == "DEAUTHORIZED"

    async def deauthorize(self, username: str, actor: str) -> None:
        self.deauthorize_calls.append((username, actor))
        pending = self.failures.get(username)
        if pending:
            raise pending.pop(0)
        if self._state(username) != "AUTHORIZED":
            raise TransientCollaboratorFailure(f"{username} changed concurrently", username=username)

        txn = current_transaction()
        staged = txn.get_resource(self._staged_key)
        if staged is None:
            staged = {}
            txn.bind_resource(self._staged_key, staged)

            def apply() -> None:
                for name, state in staged.items():
                    self.states[name] = state
                    self.committed_deauthorizations.append((name, actor))

            txn.after_commit(apply)
        staged[username] = "DEAUTHORIZED"

    async def count_authorized_users(self) -> int:
        return sum(1 for name in self.states if self._state(name) == "AUTHORIZED")


class FakeAuthorityService:
    def __init__(self, admins=("admin",), guests=("guest",)):
        self.admins = set(admins)
        self.guests = set(guests)

    async def is_admin_account(self, username: str) -> bool:
        return username in self.admins

    async def is_guest_account(self, username: str) -> bool:
        return username in self.guests


class FakeAuditLog:
    def __init__(self, last_active: dict[str, datetime | None]):
        self.last_active = dict(last_active)
        self.calls: list[str] = []

    async def last_activity(self, username, application, selectors):
        self.calls.append(username)
        return self.last_active.get(username)


class FakeLock:
    """Mirrors redis.asyncio.lock.Lock ownership semantics over FakeLockStore."""

    def __init__(self, store: "FakeLockStore", name: str, timeout: float):
        self._store = store
        self.name = name
        self.timeout = timeout
        self.token: str | None = None

    async def acquire(self, blocking: bool | None = None) -> bool:
        if self.name in self._store.store:
            return False
        self.token = uuid.uuid4().hex
        self._store.store[self.name] = self.token
        return True

    async def reacquire(self) -> bool:
        self._store.reacquired += 1
        if self.token is None:
            raise LockError("Cannot reacquire an unlocked lock")
        if self._store.store.get(self.name) != self.token:
            raise LockNotOwnedError("Cannot reacquire a lock that's no longer owned")
        return True

    async def release(self) -> None:
        if self._store.release_error is not None:
            raise self._store.release_error
        if self.token is None:
            raise LockError("Cannot release an unlocked lock")
        if self._store.store.get(self.name) != self.token:
            self.token = None
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        del self._store.store[self.name]
        self.token = None


class FakeLockStore:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.reacquired = 0
        self.release_error: Exception | None = None

    async def lock(self, name: str, timeout: float) -> FakeLock:
        return FakeLock(self, name, timeout)


@pytest.fixture
def fake_pool():
    return FakePool()


@pytest.fixture
def executor(fake_pool):
    return RetryingTransactionExecutor(
        fake_pool, max_retries=3, min_retry_wait_ms=0, max_retry_wait_ms=0, retry_wait_increment_ms=0
    )


@pytest.fixture
def fake_lock_store():
    return FakeLockStore()


@pytest.fixture
def admin_override():
    def _override():
        return {"sub": "ops-1", "preferred_username": "ops", "role": "admin"}

    return _override


@pytest.fixture
def apply_admin_override(admin_override):
    def _apply(app):
        app.dependency_overrides[admin_dependency] = admin_override

    return _apply
