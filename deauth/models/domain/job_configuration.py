"""
Job configuration for the deauthorization pipeline.

Both triggers hand a mapping of named parameters (strings from the environment
or typed values from an API request) to resolve_job_configuration(), which
applies defaults, validates and returns an immutable JobConfiguration.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, PositiveInt, ValidationError

from deauth.models.domain.deauth_domain import AuditPathSelectors

DEFAULT_LOOK_BACK_DAYS = 90
DEFAULT_LOOK_BACK_MONTHS = 3
DEFAULT_LOOK_BACK_YEARS = 1
DEFAULT_WORKER_THREADS = 4
DEFAULT_BATCH_SIZE = 20
DEFAULT_LOGGING_INTERVAL = 100
DEFAULT_LOCK_ID = "deauth:DeauthorizeInactiveUsersJob"


class ConfigurationError(ValueError):
    """Invalid job parameters; raised before any query runs."""

    def __init__(self, message: str, parameter: str | None = None):
        super().__init__(message)
        self.parameter = parameter


class LookBackMode(str, Enum):
    DAYS = "DAYS"
    MONTHS = "MONTHS"
    YEARS = "YEARS"

    @property
    def default_amount(self) -> int:
        return {
            LookBackMode.DAYS: DEFAULT_LOOK_BACK_DAYS,
            LookBackMode.MONTHS: DEFAULT_LOOK_BACK_MONTHS,
            LookBackMode.YEARS: DEFAULT_LOOK_BACK_YEARS,
        }[self]

    def delta(self, amount: int) -> relativedelta:
        return {
            LookBackMode.DAYS: relativedelta(days=amount),
            LookBackMode.MONTHS: relativedelta(months=amount),
            LookBackMode.YEARS: relativedelta(years=amount),
        }[self]


class JobConfiguration(BaseModel):
    """Resolved, validated configuration of one run."""

    model_config = ConfigDict(frozen=True)

    look_back_mode: LookBackMode = LookBackMode.MONTHS
    look_back_amount: PositiveInt = DEFAULT_LOOK_BACK_MONTHS
    worker_threads: PositiveInt = DEFAULT_WORKER_THREADS
    batch_size: PositiveInt = DEFAULT_BATCH_SIZE
    logging_interval: PositiveInt = DEFAULT_LOGGING_INTERVAL
    dry_run: bool = False
    audit_application_name: str
    user_audit_path: str
    date_audit_path: str | None = None
    date_from_audit_path: str | None = None
    date_to_audit_path: str | None = None
    lock_id: str = DEFAULT_LOCK_ID

    @property
    def selectors(self) -> AuditPathSelectors:
        return AuditPathSelectors(
            user_path=self.user_audit_path,
            date_path=self.date_audit_path,
            date_from_path=self.date_from_audit_path,
            date_to_path=self.date_to_audit_path,
        )

    def from_time(self, now: datetime | None = None) -> datetime:
        """Start of the lookback window; users without activity since then are inactive."""
        now = now or datetime.now(UTC)
        return now.astimezone(UTC) - self.look_back_mode.delta(self.look_back_amount)


def _parse_positive_int(params: Mapping[str, Any], name: str, default: int) -> int:
    raw = params.get(name)
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        raise ConfigurationError(f"{name} must be a positive integer", parameter=name)
    try:
        value = int(str(raw).strip(), 10)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a positive integer, got {raw!r}", parameter=name) from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value}", parameter=name)
    return value


def _parse_bool(params: Mapping[str, Any], name: str) -> bool:
    raw = params.get(name)
    if isinstance(raw, bool):
        return raw
    if raw is None or raw == "":
        return False
    value = str(raw).strip().lower()
    if value not in ("true", "false"):
        raise ConfigurationError(f"{name} must be true or false, got {raw!r}", parameter=name)
    return value == "true"


def _parse_look_back_mode(params: Mapping[str, Any]) -> LookBackMode:
    raw = params.get("lookBackMode")
    if raw is None or raw == "":
        return LookBackMode.MONTHS
    if isinstance(raw, LookBackMode):
        return raw
    try:
        return LookBackMode(str(raw).strip().upper())
    except ValueError as e:
        allowed = ", ".join(mode.value for mode in LookBackMode)
        raise ConfigurationError(
            f"lookBackMode must be one of {allowed}, got {raw!r}", parameter="lookBackMode"
        ) from e


def _optional_str(params: Mapping[str, Any], name: str) -> str | None:
    raw = params.get(name)
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def resolve_job_configuration(params: Mapping[str, Any]) -> JobConfiguration:
    """
    Resolve named job parameters into a JobConfiguration.

    Recognized names: lookBackMode, lookBackAmount, workerThreads, batchSize,
    loggingInterval, dryRun, auditApplicationName, userAuditPath,
    dateAuditPath, dateFromAuditPath, dateToAuditPath, lockId.

    Raises:
        ConfigurationError: on any invalid or missing required value
    """
    mode = _parse_look_back_mode(params)

    application = _optional_str(params, "auditApplicationName")
    if application is None:
        raise ConfigurationError("auditApplicationName is required", parameter="auditApplicationName")

    user_path = _optional_str(params, "userAuditPath")
    if user_path is None:
        raise ConfigurationError("userAuditPath is required", parameter="userAuditPath")

    try:
        return JobConfiguration(
            look_back_mode=mode,
            look_back_amount=_parse_positive_int(params, "lookBackAmount", mode.default_amount),
            worker_threads=_parse_positive_int(params, "workerThreads", DEFAULT_WORKER_THREADS),
            batch_size=_parse_positive_int(params, "batchSize", DEFAULT_BATCH_SIZE),
            logging_interval=_parse_positive_int(params, "loggingInterval", DEFAULT_LOGGING_INTERVAL),
            dry_run=_parse_bool(params, "dryRun"),
            audit_application_name=application,
            user_audit_path=user_path,
            date_audit_path=_optional_str(params, "dateAuditPath"),
            date_from_audit_path=_optional_str(params, "dateFromAuditPath"),
            date_to_audit_path=_optional_str(params, "dateToAuditPath"),
            lock_id=_optional_str(params, "lockId") or DEFAULT_LOCK_ID,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid job configuration: {e}") from e
