"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable, opens the database pool and Redis client, and runs the job.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from deauth.config import settings
from deauth.db.pool import db_pool
from deauth.infrastructure.observability.logging import get_logger, setup_logging
from deauth.jobs.deauthorize_inactive_users_job import (
    run_deauthorize_inactive_users_job,
    start_deauthorization_scheduler,
)
from deauth.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[object]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "deauthorize_inactive_users": start_deauthorization_scheduler,
    "deauthorize_inactive_users_once": run_deauthorize_inactive_users_job,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "deauthorize_inactive_users").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


async def _run_with_resources(job_name: str) -> None:
    await db_pool.initialize()
    await fast_redis.initialize()
    try:
        await run_worker(job_name)
    finally:
        await fast_redis.close()
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    asyncio.run(_run_with_resources(_resolve_job_name()))


if __name__ == "__main__":
    main()
