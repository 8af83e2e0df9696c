from unittest.mock import patch

import pytest
import structlog

from deauth.batch.deauthorization_worker import PersonDeauthorizationWorker
from deauth.db.transactions import TransientCollaboratorFailure
from deauth.models.domain.deauth_domain import (
    AuditUserRecord,
    AuthorizedState,
    DeauthorizationCandidate,
    DeauthorizationOutcome,
)
from tests.conftest import FakeAuthorityService, InMemoryAuthorizationService


def _candidate(username):
    return DeauthorizationCandidate(
        record=AuditUserRecord(
            username=username, last_active=None, authorized_state=AuthorizedState.AUTHORIZED
        )
    )


def _worker(authorization, dry_run=False):
    return PersonDeauthorizationWorker(
        dry_run=dry_run,
        authority_service=FakeAuthorityService(),
        authorization_service=authorization,
        run_as="System",
    )


async def _run_batch(executor, worker, batch):
    await worker.before_process()

    async def work(txn):
        for entry in batch:
            await worker.process(entry, txn)
        await worker.after_process(txn)

    await executor.run_in_transaction(work)


@pytest.mark.asyncio
async def test_state_machine_outcomes(executor):
    authorization = InMemoryAuthorizationService(
        {"alice": "AUTHORIZED", "admin": "AUTHORIZED", "guest": "AUTHORIZED", "stale": "DEAUTHORIZED"}
    )
    worker = _worker(authorization)
    candidates = [_candidate(u) for u in ("admin", "alice", "guest", "stale")]

    await _run_batch(executor, worker, candidates)

    outcomes = {c.username: c.outcome for c in candidates}
    assert outcomes == {
        "admin": DeauthorizationOutcome.SKIPPED_PROTECTED,
        "alice": DeauthorizationOutcome.DEAUTHORIZED,
        "guest": DeauthorizationOutcome.SKIPPED_PROTECTED,
        "stale": DeauthorizationOutcome.SKIPPED_NOT_AUTHORIZED,
    }
    assert authorization.deauthorize_calls == [("alice", "System")]
    assert authorization.states["admin"] == "AUTHORIZED"
    assert worker.deauthorized == 1
    assert candidates[1].was_authorized is True
    assert candidates[3].was_authorized is False


@pytest.mark.asyncio
async def test_dry_run_marks_but_never_mutates(executor):
    authorization = InMemoryAuthorizationService({"alice": "AUTHORIZED", "bob": "AUTHORIZED"})
    worker = _worker(authorization, dry_run=True)
    candidates = [_candidate("alice"), _candidate("bob")]

    await _run_batch(executor, worker, candidates)

    assert authorization.deauthorize_calls == []
    assert authorization.states == {"alice": "AUTHORIZED", "bob": "AUTHORIZED"}
    assert worker.deauthorized == 2
    assert all(c.deauthorized for c in candidates)


@pytest.mark.asyncio
async def test_retried_attempt_does_not_double_count(executor):
    authorization = InMemoryAuthorizationService(
        {"alice": "AUTHORIZED", "bob": "AUTHORIZED", "carl": "AUTHORIZED"}
    )
    authorization.failures["carl"] = [TransientCollaboratorFailure("conflict", username="carl")]
    worker = _worker(authorization)
    candidates = [_candidate("alice"), _candidate("bob"), _candidate("carl")]

    await _run_batch(executor, worker, candidates)

    assert worker.deauthorized == 3
    assert [c.outcome for c in candidates] == [DeauthorizationOutcome.DEAUTHORIZED] * 3
    # alice and bob were re-applied by the second attempt
    assert [name for name, _ in authorization.deauthorize_calls] == [
        "alice", "bob", "carl", "alice", "bob", "carl",
    ]
    assert sorted(name for name, _ in authorization.committed_deauthorizations) == [
        "alice", "bob", "carl",
    ]


@pytest.mark.asyncio
async def test_failed_commit_discards_counts(executor, fake_pool):
    authorization = InMemoryAuthorizationService({"alice": "AUTHORIZED"})
    worker = _worker(authorization)
    candidate = _candidate("alice")
    fake_pool.fail_commits = 1

    await _run_batch(executor, worker, [candidate])

    assert worker.deauthorized == 1
    assert candidate.outcome is DeauthorizationOutcome.DEAUTHORIZED
    assert authorization.states["alice"] == "DEAUTHORIZED"


@pytest.mark.asyncio
async def test_process_failure_propagates_and_logs_username(executor):
    authorization = InMemoryAuthorizationService({"alice": "AUTHORIZED"})
    authorization.failures["alice"] = [KeyError("broken")] * 5
    worker = _worker(authorization)
    candidate = _candidate("alice")

    with patch("deauth.batch.deauthorization_worker.logger") as mock_logger:
        with pytest.raises(KeyError):
            await _run_batch(executor, worker, [candidate])

    assert mock_logger.warning.call_args.kwargs["username"] == "alice"
    assert worker.deauthorized == 0
    assert candidate.outcome is DeauthorizationOutcome.PENDING


@pytest.mark.asyncio
async def test_before_process_binds_run_as_identity():
    worker = _worker(InMemoryAuthorizationService())
    structlog.contextvars.clear_contextvars()

    await worker.before_process()

    assert structlog.contextvars.get_contextvars()["run_as"] == "System"
    structlog.contextvars.clear_contextvars()
