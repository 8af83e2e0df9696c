"""
Domain models for inactive user deauthorization.

Records come out of the audit query, candidates are what the apply stage works
on, and RunCounters track how many candidates ended up deauthorized.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deauth.db.transactions import Transaction


class AuthorizedState(str, Enum):
    AUTHORIZED = "AUTHORIZED"
    DEAUTHORIZED = "DEAUTHORIZED"
    UNKNOWN = "UNKNOWN"


class DeauthorizationOutcome(str, Enum):
    PENDING = "PENDING"
    DEAUTHORIZED = "DEAUTHORIZED"
    SKIPPED_PROTECTED = "SKIPPED_PROTECTED"
    SKIPPED_NOT_AUTHORIZED = "SKIPPED_NOT_AUTHORIZED"


class PersonAuditQueryMode(str, Enum):
    INACTIVE_ONLY = "INACTIVE_ONLY"
    ACTIVE_ONLY = "ACTIVE_ONLY"
    ALL = "ALL"


@dataclass(frozen=True, slots=True)
class AuditPathSelectors:
    """Keys of the audit entry values holding the user and activity dates."""

    user_path: str
    date_path: str | None = None
    date_from_path: str | None = None
    date_to_path: str | None = None


@dataclass(frozen=True, slots=True)
class PersonRef:
    """A person entity from the account population."""

    username: str
    person_id: str | None = None


@dataclass(frozen=True, slots=True)
class AuditUserRecord:
    """One user as seen by the audit query. last_active is None when never seen."""

    username: str
    last_active: datetime | None
    authorized_state: AuthorizedState
    person_ref: str | None = None


@dataclass(slots=True)
class DeauthorizationCandidate:
    """An authorized, inactive user handed to the apply stage."""

    record: AuditUserRecord
    outcome: DeauthorizationOutcome = DeauthorizationOutcome.PENDING
    was_authorized: bool | None = None

    @property
    def username(self) -> str:
        return self.record.username

    @property
    def deauthorized(self) -> bool:
        return self.outcome is DeauthorizationOutcome.DEAUTHORIZED

    def record_outcome(self, outcome: DeauthorizationOutcome, was_authorized: bool) -> None:
        if outcome is DeauthorizationOutcome.PENDING:
            raise ValueError("PENDING is not a valid outcome")
        if self.outcome is not DeauthorizationOutcome.PENDING:
            raise RuntimeError(
                f"Outcome for {self.username} already recorded as {self.outcome.value}"
            )
        self.outcome = outcome
        self.was_authorized = was_authorized


@dataclass(slots=True)
class RunCounters:
    """
    Transaction-local and cumulative deauthorization counts.

    The transaction-local count lives in the resources of the transaction
    attempt, so a rolled back attempt takes its increments with it. fold() is
    meant to run from an after-commit hook and adds the attempt's count to the
    cumulative total exactly once.
    """

    cumulative: int = 0
    _key: object = field(default_factory=object, init=False, repr=False)

    def reset_transaction_local(self, txn: "Transaction") -> None:
        txn.bind_resource(self._key, 0)

    def increment_transaction_local(self, txn: "Transaction") -> int:
        value = self.transaction_local(txn) + 1
        txn.bind_resource(self._key, value)
        return value

    def transaction_local(self, txn: "Transaction") -> int:
        return txn.get_resource(self._key, 0)

    def fold(self, txn: "Transaction") -> None:
        self.cumulative += self.transaction_local(txn)
        # A second fold of the same attempt adds nothing
        txn.bind_resource(self._key, 0)


@dataclass(slots=True)
class DeauthorizationReport:
    """Summary of one pipeline run."""

    authorised_before: int
    authorised_after: int
    deauthorised: int
    dry_run: bool
    candidates: list[DeauthorizationCandidate] = field(default_factory=list)
