"""
Dispatch of a single due scheduled analysis.

For each analysis the processor runs, in order:

1. claim the analysis in the store (lease on ``next_scheduled_run``)
2. create a new execution through the API
3. publish an ExecutionTrigger to the dispatcher queue
4. record the run and advance ``next_scheduled_run``

None of these steps can be rolled back. A failure before step 4 releases
the claim so the analysis stays due and the next poll retries it; this
means a failed publish can leave an extra execution behind in the API.
A failure in step 4 also releases the claim, so the analysis may be
dispatched again. A release sets ``next_scheduled_run`` to the claim time,
which is never earlier than the due time the claim replaced. Delivery is
therefore at-least-once; the idempotency key sent with steps 2 and 3 lets
downstream services drop repeats.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from analysis_scheduler.client import ExecutionClient
from analysis_scheduler.errors import StoreError, ExecutionCreateError, DispatchError
from analysis_scheduler.models import ScheduledAnalysis, ExecutionTrigger, calculate_next_run
from analysis_scheduler.publisher import DispatchPublisher
from analysis_scheduler.store import ScheduleStore

logger = logging.getLogger(__name__)

OUTCOME_DISPATCHED = 'dispatched'
OUTCOME_SKIPPED = 'skipped'
OUTCOME_CLAIM_FAILED = 'claim_failed'
OUTCOME_TRIGGER_FAILED = 'trigger_failed'
OUTCOME_DISPATCH_FAILED = 'dispatch_failed'
OUTCOME_RESCHEDULE_FAILED = 'reschedule_failed'
OUTCOME_ERROR = 'error'  # Unexpected exception outside the protocol steps

DEFAULT_CLAIM_LEASE = timedelta(minutes=10)


@dataclass
class ProcessResult:
    """Outcome of processing one scheduled analysis"""
    analysis_id: str
    outcome: str
    execution_id: Optional[str] = None
    next_run: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_DISPATCHED


class AnalysisProcessor:
    """Runs the claim / create / publish / reschedule protocol for one analysis"""

    def __init__(
        self,
        store: ScheduleStore,
        client: ExecutionClient,
        publisher: DispatchPublisher,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE
    ):
        self.store = store
        self.client = client
        self.publisher = publisher
        self.claim_lease = claim_lease

    def process(self, analysis: ScheduledAnalysis, now: datetime) -> ProcessResult:
        """
        Process one due analysis.

        Args:
            analysis: Analysis returned by the due query (detached row)
            now: Tick time (naive UTC); becomes ``last_scheduled_run``

        Returns:
            ProcessResult describing how far the protocol got. Errors from
            the store, API and broker are logged and reported here, never
            raised.
        """
        log_prefix = f"[analysis:{analysis.id}]"
        logger.info(f"{log_prefix} Processing scheduled analysis")

        idempotency_key = analysis.idempotency_key()
        lease_until = now + self.claim_lease

        try:
            claimed = self.store.claim(analysis.id, analysis.next_scheduled_run, lease_until)
        except StoreError as e:
            logger.error(f"{log_prefix} Failed to claim analysis: {e}")
            return ProcessResult(analysis.id, OUTCOME_CLAIM_FAILED, error=str(e))

        if not claimed:
            logger.info(f"{log_prefix} Already claimed or rescheduled by another run, skipping")
            return ProcessResult(analysis.id, OUTCOME_SKIPPED)

        # Create a new analysis execution to preserve historical results
        try:
            execution_id = self.client.create_execution(
                analysis.organization_id,
                analysis.project_id,
                analysis.id,
                idempotency_key=idempotency_key
            )
        except ExecutionCreateError as e:
            logger.error(f"{log_prefix} Failed to create new analysis execution: {e}")
            self._release(analysis, lease_until, now)
            return ProcessResult(analysis.id, OUTCOME_TRIGGER_FAILED, error=str(e))

        logger.info(f"{log_prefix} Created new analysis execution: {execution_id}")

        trigger = ExecutionTrigger.from_analysis(analysis, execution_id)
        try:
            self.publisher.publish(trigger, message_id=idempotency_key)
        except DispatchError as e:
            logger.error(f"{log_prefix} Failed to send analysis message for {execution_id}: {e}")
            self._release(analysis, lease_until, now)
            return ProcessResult(analysis.id, OUTCOME_DISPATCH_FAILED, execution_id=execution_id, error=str(e))

        next_run = calculate_next_run(analysis.schedule_type, now)
        try:
            self.store.update_schedule(analysis.id, now, next_run)
        except StoreError as e:
            logger.error(f"{log_prefix} Failed to update analysis schedule: {e}")
            self._release(analysis, lease_until, now)
            return ProcessResult(analysis.id, OUTCOME_RESCHEDULE_FAILED, execution_id=execution_id, error=str(e))

        logger.info(
            f"{log_prefix} Successfully processed, new execution: {execution_id}, "
            f"next run: {next_run.isoformat()}"
        )
        return ProcessResult(analysis.id, OUTCOME_DISPATCHED, execution_id=execution_id, next_run=next_run)

    def _release(self, analysis: ScheduledAnalysis, lease_until: datetime, now: datetime):
        """Make the analysis due again; on failure it becomes due when the lease expires."""
        try:
            released = self.store.release(analysis.id, lease_until, now)
        except StoreError as e:
            logger.warning(
                f"[analysis:{analysis.id}] Failed to release claim, "
                f"it will be retried after {lease_until.isoformat()}: {e}"
            )
            return
        if not released:
            logger.warning(f"[analysis:{analysis.id}] Claim was no longer held when releasing")
