"""
Scheduled deauthorization of inactive users.

Takes the job lock, resolves the configuration from process-wide settings and
runs the deauthorization pipeline as the system user. Lock contention is not
a failure: the run is skipped and the next scheduled trigger tries again.
Other failures are logged and reported in the returned result, never raised
into the scheduler loop.
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from deauth.config import settings
from deauth.infrastructure.observability.logging import get_logger, log_deauthorization_summary
from deauth.models.domain.job_configuration import resolve_job_configuration
from deauth.services.deauthorization_service import (
    DeauthorizationService,
    create_deauthorization_service,
)
from deauth.services.infrastructure.job_lock import LockAcquisitionError, RedisJobLock, job_lock

logger = get_logger(__name__)


class DeauthorizeInactiveUsersJob:
    def __init__(
        self,
        service: DeauthorizationService | None = None,
        lock: RedisJobLock | None = None,
        parameters_provider: Callable[[], Mapping[str, Any]] | None = None,
    ):
        self._service = service
        self._lock = lock or job_lock
        self._parameters_provider = parameters_provider or settings.get_deauth_job_parameters
        self.last_run_time: datetime | None = None
        self.last_result: dict | None = None

    @property
    def service(self) -> DeauthorizationService:
        if self._service is None:
            self._service = create_deauthorization_service()
        return self._service

    async def run_once(self) -> dict:
        """
        Run a single iteration of the job.

        Returns:
            Dict: summary counts, or skipped / job_error details
        """
        logger.debug("Running deauthorization of inactive users")
        start = time.monotonic()
        lock_id = None

        try:
            config = resolve_job_configuration(self._parameters_provider())
            lock_id = config.lock_id

            async with self._lock.hold(lock_id):
                report = await self.service.run(config, run_as=settings.SYSTEM_USER)

            duration_ms = round((time.monotonic() - start) * 1000, 2)
            log_deauthorization_summary(
                trigger="scheduled",
                authorised_before=report.authorised_before,
                authorised_after=report.authorised_after,
                deauthorised=report.deauthorised,
                dry_run=report.dry_run,
                duration_ms=duration_ms,
            )
            result = {
                "job_run": "deauthorize_inactive_users",
                "authorised_users_before": report.authorised_before,
                "authorised_users_after": report.authorised_after,
                "deauthorised": report.deauthorised,
                "dry_run": report.dry_run,
                "duration_ms": duration_ms,
            }

        except LockAcquisitionError:
            logger.debug("Deauthorization of inactive users skipped, lock held elsewhere", lock_id=lock_id)
            result = {"skipped": True, "reason": "lock_held"}

        except Exception as e:
            logger.error(
                "Deauthorization of inactive users failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            result = {"job_run": "deauthorize_inactive_users", "job_error": str(e)}

        self.last_run_time = datetime.now(UTC)
        self.last_result = result
        return result


# Singleton instance for application use
deauthorize_inactive_users_job = DeauthorizeInactiveUsersJob()


async def run_deauthorize_inactive_users_job() -> dict:
    """Run a single iteration of the deauthorization job."""
    return await deauthorize_inactive_users_job.run_once()


async def start_deauthorization_scheduler():
    """
    Run the deauthorization job every DEAUTH_JOB_INTERVAL_MINUTES.

    Meant for a dedicated worker process (see deauth.jobs.worker).
    """
    interval_minutes = settings.DEAUTH_JOB_INTERVAL_MINUTES
    logger.info("Starting deauthorization job scheduler", interval_minutes=interval_minutes)

    while True:
        try:
            result = await run_deauthorize_inactive_users_job()
            if result.get("job_error"):
                logger.warning("Deauthorization job cycle ended with an error", **result)

            await asyncio.sleep(interval_minutes * 60)

        except KeyboardInterrupt:
            logger.info("Deauthorization job scheduler stopped by user")
            break
        except Exception as e:
            logger.error(
                "Error in deauthorization job scheduler", error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(60)
