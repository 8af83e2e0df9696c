"""
Batch worker that deauthorizes inactive users.

Must run with a single worker task: the authorization store shows update
conflicts and inconsistent state under concurrent mutation.
"""

from deauth.batch.processor import BatchProcessWorkerAdaptor
from deauth.db.transactions import Transaction
from deauth.infrastructure.observability.logging import bind_run_context, get_logger
from deauth.models.domain.deauth_domain import (
    DeauthorizationCandidate,
    DeauthorizationOutcome,
    RunCounters,
)
from deauth.services.authority_service import AuthorityService
from deauth.services.authorization_service import AuthorizationService

logger = get_logger(__name__)


class PersonDeauthorizationWorker(BatchProcessWorkerAdaptor[DeauthorizationCandidate]):
    """
    Deauthorizes each candidate unless protected or no longer authorized.

    Outcomes and counts of a transaction attempt are staged on the attempt and
    only published once it commits; a rolled back attempt leaves no trace.
    """

    def __init__(
        self,
        dry_run: bool,
        authority_service: AuthorityService,
        authorization_service: AuthorizationService,
        run_as: str,
    ):
        self.dry_run = dry_run
        self.authority_service = authority_service
        self.authorization_service = authorization_service
        self.run_as = run_as
        self.counters = RunCounters()
        self._run_initialized_key = (id(self), "run-initialized")
        self._staged_outcomes_key = (id(self), "staged-outcomes")

    @property
    def deauthorized(self) -> int:
        return self.counters.cumulative

    def get_identifier(self, entry: DeauthorizationCandidate) -> str:
        return entry.username

    async def before_process(self) -> None:
        # Batches may run in a different task on every call
        bind_run_context(run_as=self.run_as)

    async def process(self, entry: DeauthorizationCandidate, txn: Transaction) -> None:
        if not txn.get_resource(self._run_initialized_key):
            # First entry of this attempt; a retried attempt starts from zero
            self.counters.reset_transaction_local(txn)
            txn.bind_resource(self._staged_outcomes_key, [])
            txn.bind_resource(self._run_initialized_key, True)

        username = entry.username
        try:
            was_authorized = await self.authorization_service.is_authorized(username)
            outcome = await self._decide(username, was_authorized, txn)
        except Exception as e:
            logger.warning(
                "Failed to process user for deauthorization",
                username=username,
                attempt=txn.attempt,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        txn.get_resource(self._staged_outcomes_key).append((entry, outcome, was_authorized))

    async def _decide(
        self, username: str, was_authorized: bool, txn: Transaction
    ) -> DeauthorizationOutcome:
        if await self.authority_service.is_admin_account(
            username
        ) or await self.authority_service.is_guest_account(username):
            logger.debug("Not deauthorizing special admin / guest account", username=username)
            return DeauthorizationOutcome.SKIPPED_PROTECTED

        if not was_authorized:
            logger.debug("Not deauthorizing user which is not marked as authorized", username=username)
            return DeauthorizationOutcome.SKIPPED_NOT_AUTHORIZED

        logger.debug("Deauthorizing user", username=username, dry_run=self.dry_run)
        if not self.dry_run:
            await self.authorization_service.deauthorize(username, actor=self.run_as)

        self.counters.increment_transaction_local(txn)
        return DeauthorizationOutcome.DEAUTHORIZED

    async def after_process(self, txn: Transaction) -> None:
        staged = txn.get_resource(self._staged_outcomes_key, [])

        def publish() -> None:
            self.counters.fold(txn)
            for entry, outcome, was_authorized in staged:
                entry.record_outcome(outcome, was_authorized)

        txn.after_commit(publish)
