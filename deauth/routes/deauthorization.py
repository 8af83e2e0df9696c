"""
Deauthorization admin API.

- POST /admin/deauthorization/inactive-users: run the pipeline now (optionally dry-run)
- GET  /admin/deauthorization/audit-users: list audit users for a lookback window

Both endpoints require an admin bearer token. Request values override the
process-wide DEAUTH_* settings for this call only.
"""

import time
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from deauth.auth.verify import admin_dependency
from deauth.config import settings
from deauth.infrastructure.observability.logging import get_logger, log_deauthorization_summary
from deauth.models.api.deauth_request import DeauthorizeInactiveUsersRequest
from deauth.models.api.deauth_response import (
    AuditUserEntry,
    AuditUsersResponse,
    DeauthorizeInactiveUsersResponse,
)
from deauth.models.domain.deauth_domain import PersonAuditQueryMode
from deauth.models.domain.job_configuration import (
    ConfigurationError,
    JobConfiguration,
    resolve_job_configuration,
)
from deauth.services.deauthorization_service import (
    DeauthorizationService,
    create_deauthorization_service,
)
from deauth.services.infrastructure.job_lock import (
    LockAcquisitionError,
    RedisJobLock,
    get_job_lock,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/deauthorization", tags=["Deauthorization"])

_service: DeauthorizationService | None = None


def get_deauthorization_service() -> DeauthorizationService:
    global _service
    if _service is None:
        _service = create_deauthorization_service()
    return _service


def _resolve(overrides: dict) -> JobConfiguration:
    params = {**settings.get_deauth_job_parameters(), **overrides}
    try:
        return resolve_job_configuration(params)
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"parameter": e.parameter, "message": str(e)},
        ) from e


def _actor(claims: dict) -> str:
    return claims.get("preferred_username") or claims.get("email") or claims.get("sub") or "unknown"


@router.post(
    "/inactive-users",
    response_model=DeauthorizeInactiveUsersResponse,
    summary="Deauthorize users without recent activity",
)
async def deauthorize_inactive_users(
    request: DeauthorizeInactiveUsersRequest | None = None,
    claims: dict = Depends(admin_dependency),
    service: DeauthorizationService = Depends(get_deauthorization_service),
    lock: RedisJobLock = Depends(get_job_lock),
):
    """
    Run the deauthorization pipeline as the calling admin.

    Returns 422 for invalid parameters and 409 while another run holds the lock.
    """
    request = request or DeauthorizeInactiveUsersRequest()
    config = _resolve(request.to_job_parameters())
    actor = _actor(claims)
    start = time.monotonic()

    logger.info(
        "On-demand deauthorization requested",
        requested_by=actor,
        dry_run=config.dry_run,
        look_back_mode=config.look_back_mode.value,
        look_back_amount=config.look_back_amount,
    )

    try:
        async with lock.hold(config.lock_id):
            report = await service.run(config, run_as=actor)
    except LockAcquisitionError as e:
        logger.info("On-demand deauthorization rejected, lock held", lock_id=e.lock_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A deauthorization run is already in progress",
        ) from e

    log_deauthorization_summary(
        trigger="on_demand",
        authorised_before=report.authorised_before,
        authorised_after=report.authorised_after,
        deauthorised=report.deauthorised,
        dry_run=report.dry_run,
        duration_ms=round((time.monotonic() - start) * 1000, 2),
    )
    return DeauthorizeInactiveUsersResponse.from_report(report)


@router.get(
    "/audit-users",
    response_model=AuditUsersResponse,
    summary="List audit users for a lookback window",
)
async def list_audit_users(
    mode: str = Query(default=PersonAuditQueryMode.INACTIVE_ONLY.value),
    look_back_mode: str | None = Query(default=None, alias="lookBackMode"),
    look_back_amount: str | None = Query(default=None, alias="lookBackAmount"),
    claims: dict = Depends(admin_dependency),
    service: DeauthorizationService = Depends(get_deauthorization_service),
):
    try:
        query_mode = PersonAuditQueryMode(mode.strip().upper())
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"parameter": "mode", "message": f"Unknown mode {mode!r}"},
        ) from e

    overrides = {}
    if look_back_mode is not None:
        overrides["lookBackMode"] = look_back_mode
    if look_back_amount is not None:
        overrides["lookBackAmount"] = look_back_amount
    config = _resolve(overrides)

    now = datetime.now(UTC)
    users = await service.query_users(config, mode=query_mode, now=now)

    return AuditUsersResponse(
        mode=query_mode.value,
        from_time=config.from_time(now),
        count=len(users),
        users=[AuditUserEntry.from_record(u) for u in users],
    )
