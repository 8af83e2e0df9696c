from deauth.models.domain.deauth_domain import (
    AuditUserRecord,
    AuthorizedState,
    DeauthorizationOutcome,
)
from deauth.services.candidate_filter import filter_deauthorization_candidates


def _record(username, state):
    return AuditUserRecord(username=username, last_active=None, authorized_state=state)


def test_keeps_only_authorized_in_input_order():
    records = [
        _record("zed", AuthorizedState.AUTHORIZED),
        _record("carol", AuthorizedState.DEAUTHORIZED),
        _record("alice", AuthorizedState.AUTHORIZED),
        _record("dave", AuthorizedState.UNKNOWN),
    ]

    candidates = filter_deauthorization_candidates(records)

    assert [c.username for c in candidates] == ["zed", "alice"]
    assert all(c.outcome is DeauthorizationOutcome.PENDING for c in candidates)


def test_empty_input():
    assert filter_deauthorization_candidates([]) == []
