# deauth/models/api/deauth_response.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from deauth.models.domain.deauth_domain import (
    AuditUserRecord,
    AuthorizedState,
    DeauthorizationCandidate,
    DeauthorizationOutcome,
    DeauthorizationReport,
)


class DeauthorizedUserEntry(BaseModel):
    """One candidate user and what the run did with it."""

    model_config = ConfigDict(populate_by_name=True)

    username: str
    last_active: datetime | None = Field(default=None, alias="lastActive")
    was_authorized: bool | None = Field(default=None, alias="wasAuthorised")
    deauthorized: bool = Field(..., alias="deauthorised")
    outcome: DeauthorizationOutcome

    @classmethod
    def from_candidate(cls, candidate: DeauthorizationCandidate) -> "DeauthorizedUserEntry":
        return cls(
            username=candidate.username,
            last_active=candidate.record.last_active,
            was_authorized=candidate.was_authorized,
            deauthorized=candidate.deauthorized,
            outcome=candidate.outcome,
        )


class DeauthorizeInactiveUsersResponse(BaseModel):
    """Summary of an on-demand deauthorization run."""

    model_config = ConfigDict(populate_by_name=True)

    authorised_users_before: int = Field(..., alias="authorisedUsersBefore")
    authorised_users_after: int = Field(..., alias="authorisedUsersAfter")
    deauthorised: int
    dry_run: bool = Field(..., alias="dryRun")
    users: list[DeauthorizedUserEntry] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: DeauthorizationReport) -> "DeauthorizeInactiveUsersResponse":
        return cls(
            authorised_users_before=report.authorised_before,
            authorised_users_after=report.authorised_after,
            deauthorised=report.deauthorised,
            dry_run=report.dry_run,
            users=[DeauthorizedUserEntry.from_candidate(c) for c in report.candidates],
        )


class AuditUserEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str
    last_active: datetime | None = Field(default=None, alias="lastActive")
    authorization_state: AuthorizedState = Field(..., alias="authorizationState")

    @classmethod
    def from_record(cls, record: AuditUserRecord) -> "AuditUserEntry":
        return cls(
            username=record.username,
            last_active=record.last_active,
            authorization_state=record.authorized_state,
        )


class AuditUsersResponse(BaseModel):
    """Audit users for a lookback window, with last activity and authorization state."""

    model_config = ConfigDict(populate_by_name=True)

    mode: str
    from_time: datetime = Field(..., alias="fromTime")
    count: int
    users: list[AuditUserEntry] = Field(default_factory=list)
