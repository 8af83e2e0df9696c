from collections.abc import Iterable

from deauth.models.domain.deauth_domain import (
    AuditUserRecord,
    AuthorizedState,
    DeauthorizationCandidate,
)


def filter_deauthorization_candidates(
    records: Iterable[AuditUserRecord],
) -> list[DeauthorizationCandidate]:
    """
    Keep the records that were AUTHORIZED at query time, in input order.

    State is not re-checked here; the worker checks the live state before
    mutating anything.
    """
    return [
        DeauthorizationCandidate(record=record)
        for record in records
        if record.authorized_state is AuthorizedState.AUTHORIZED
    ]
