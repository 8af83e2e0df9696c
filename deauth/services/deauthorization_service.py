"""
Inactive user deauthorization pipeline.

query (parallel, read-only) -> filter -> apply (single worker, per-batch
transactions) -> before/after/deauthorized summary. Shared by the scheduled
job and the on-demand API; locking and error policy belong to the callers.
"""

import time
from datetime import datetime

from deauth.batch.deauthorization_worker import PersonDeauthorizationWorker
from deauth.batch.processor import BatchProcessor, CollectionWorkProvider
from deauth.db.transactions import (
    RetryingTransactionExecutor,
    Transaction,
    create_transaction_executor,
)
from deauth.infrastructure.observability.logging import get_logger, run_context
from deauth.models.domain.deauth_domain import (
    AuditUserRecord,
    DeauthorizationCandidate,
    DeauthorizationReport,
    PersonAuditQueryMode,
)
from deauth.models.domain.job_configuration import JobConfiguration
from deauth.services.audit_query import AuditQueryAdapter, PostgresAuditLog
from deauth.services.authority_service import AuthorityService, PostgresAuthorityService
from deauth.services.authorization_service import (
    AuthorizationService,
    PostgresAuthorizationService,
)
from deauth.services.candidate_filter import filter_deauthorization_candidates

logger = get_logger(__name__)

# The authorization store produces update conflicts and inconsistent state
# under concurrent mutation; the apply stage always runs with one worker.
APPLY_WORKER_THREADS = 1


class DeauthorizationService:
    def __init__(
        self,
        executor: RetryingTransactionExecutor,
        authorization_service: AuthorizationService,
        authority_service: AuthorityService,
        audit_query: AuditQueryAdapter,
    ):
        self.executor = executor
        self.authorization_service = authorization_service
        self.authority_service = authority_service
        self.audit_query = audit_query

    async def query_users(
        self,
        config: JobConfiguration,
        mode: PersonAuditQueryMode = PersonAuditQueryMode.INACTIVE_ONLY,
        now: datetime | None = None,
    ) -> list[AuditUserRecord]:
        """Audit users for the configured window, stamped with their authorization state."""
        return await self.audit_query.query_users(
            from_time=config.from_time(now),
            application=config.audit_application_name,
            selectors=config.selectors,
            mode=mode,
            is_authorized_check=self.authorization_service.is_authorized,
            is_deauthorized_check=self.authorization_service.is_deauthorized,
            worker_threads=config.worker_threads,
            batch_size=config.batch_size,
            logging_interval=config.logging_interval,
        )

    async def run(
        self, config: JobConfiguration, run_as: str, now: datetime | None = None
    ) -> DeauthorizationReport:
        """
        Run the full pipeline once.

        Args:
            config: Resolved job configuration
            run_as: Identity recorded on every deauthorization
            now: Reference time for the lookback window (defaults to current UTC time)
        """
        start = time.monotonic()

        async def prepare(txn: Transaction) -> tuple[list[DeauthorizationCandidate], int]:
            users = await self.query_users(config, now=now)
            candidates = filter_deauthorization_candidates(users)
            logger.debug(
                "Filtered inactive users to currently authorized",
                inactive=len(users),
                candidates=len(candidates),
            )
            authorised_before = await self.authorization_service.count_authorized_users()
            return candidates, authorised_before

        candidates, authorised_before = await self.executor.run_in_transaction(
            prepare, read_only=True
        )

        deauthorised = await self.apply(candidates, config, run_as)

        if config.dry_run:
            authorised_after = authorised_before - deauthorised
        else:

            async def count(txn: Transaction) -> int:
                return await self.authorization_service.count_authorized_users()

            authorised_after = await self.executor.run_in_transaction(
                count, read_only=True, requires_new=True
            )

        logger.info(
            "Deauthorization pipeline finished",
            authorised_users_before=authorised_before,
            authorised_users_after=authorised_after,
            deauthorised=deauthorised,
            dry_run=config.dry_run,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )

        return DeauthorizationReport(
            authorised_before=authorised_before,
            authorised_after=authorised_after,
            deauthorised=deauthorised,
            dry_run=config.dry_run,
            candidates=candidates,
        )

    async def apply(
        self, candidates: list[DeauthorizationCandidate], config: JobConfiguration, run_as: str
    ) -> int:
        """Deauthorize candidates in transactional batches; returns the committed count."""
        worker = PersonDeauthorizationWorker(
            dry_run=config.dry_run,
            authority_service=self.authority_service,
            authorization_service=self.authorization_service,
            run_as=run_as,
        )

        if not candidates:
            logger.info("No inactive users to deauthorize")
            return 0

        logger.info(
            "Running deauthorization on inactive users",
            candidates=len(candidates),
            dry_run=config.dry_run,
        )

        processor = BatchProcessor(
            "DeauthorizeInactiveUsers",
            self.executor,
            CollectionWorkProvider(candidates),
            worker_threads=APPLY_WORKER_THREADS,
            batch_size=config.batch_size,
            logging_interval=config.logging_interval,
        )
        with run_context(run_as=run_as):
            await processor.process(worker)

        return worker.deauthorized


def create_deauthorization_service() -> DeauthorizationService:
    """Wire the service against PostgreSQL collaborators and the global pool."""
    executor = create_transaction_executor()
    return DeauthorizationService(
        executor=executor,
        authorization_service=PostgresAuthorizationService(),
        authority_service=PostgresAuthorityService(),
        audit_query=AuditQueryAdapter(executor, PostgresAuditLog()),
    )
