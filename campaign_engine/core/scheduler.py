"""Scheduler Loop: periodically claims due enrollments and advances them."""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.core import Enrollment, EnrollmentStatus
from .clock import ensure_utc, utc_now
from .enrollment_store import EnrollmentStore
from .exceptions import ClaimLostError, StorageError, WorkflowEngineError
from .logging import get_logger, logging_context
from .step_executor import StepExecutor, StepResult
from .trigger_evaluator import TriggerEvaluator

logger = get_logger(__name__)


class TickResult(BaseModel):
    """Counters describing one scheduler tick."""
    started_at: datetime
    scheduled_enrollments: int = 0
    due: int = 0
    claimed: int = 0
    steps: int = 0
    lost_claims: int = 0
    errors: int = 0
    final_statuses: Dict[str, int] = Field(default_factory=dict)


class Scheduler:
    """Drives due enrollments through the Step Executor.

    Ticks may run concurrently in any number of processes. Mutual exclusion
    per enrollment comes solely from the store's claim lease.
    """

    def __init__(
        self,
        enrollment_store: EnrollmentStore,
        step_executor: StepExecutor,
        trigger_evaluator: Optional[TriggerEvaluator] = None,
        interval_seconds: float = 300.0,
        batch_size: int = 100,
        lease_seconds: float = 120.0,
        max_workers: int = 10,
        max_steps_per_claim: int = 20,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the scheduler.

        Args:
            enrollment_store: Durable enrollment state and leases
            step_executor: Advances one enrollment by one node
            trigger_evaluator: Fires date_time triggers at the start of each tick
            interval_seconds: Pause between ticks of the background loop
            batch_size: Maximum enrollments selected per tick
            lease_seconds: Claim duration, renewed between steps
            max_workers: Enrollments processed in parallel
            max_steps_per_claim: Consecutive steps one claim may take
            clock: Source of the current instant
        """
        if max_steps_per_claim < 1:
            raise ValueError("max_steps_per_claim must be at least 1")
        self.enrollment_store = enrollment_store
        self.step_executor = step_executor
        self.trigger_evaluator = trigger_evaluator
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.max_steps_per_claim = max_steps_per_claim
        self._clock = clock

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="enrollment-worker")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._tick_lock = threading.Lock()
        self.last_tick: Optional[TickResult] = None

        logger.info(f"Scheduler initialized with interval={interval_seconds}s, batch_size={batch_size}, "
                    f"max_workers={max_workers}")

    # -- single tick ----------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Run one scheduling pass.

        Args:
            now: Instant to evaluate against; defaults to the scheduler's clock

        Returns:
            TickResult with the pass's counters
        """
        now = ensure_utc(now) or self._clock()
        result = TickResult(started_at=now)

        if self.trigger_evaluator is not None:
            try:
                result.scheduled_enrollments = self.trigger_evaluator.evaluate_scheduled_triggers(now)
            except WorkflowEngineError as e:
                result.errors += 1
                logger.error(f"Scheduled trigger evaluation failed: {e.message}")

        try:
            due = self.enrollment_store.find_due(now, limit=self.batch_size)
        except StorageError as e:
            result.errors += 1
            logger.error(f"Could not select due enrollments: {e.message}")
            self.last_tick = result
            return result
        result.due = len(due)

        claimed: List[tuple] = []
        for enrollment in due:
            try:
                token = self.enrollment_store.claim(enrollment.id, enrollment.version, now, self.lease_seconds)
            except StorageError as e:
                result.errors += 1
                logger.error(f"Could not claim enrollment {enrollment.id}: {e.message}")
                continue
            if token is None:
                logger.debug(f"Enrollment {enrollment.id} is claimed elsewhere")
                continue
            claimed.append((enrollment, token))
        result.claimed = len(claimed)

        futures = {
            self._executor.submit(self._process, enrollment, token, now): enrollment
            for enrollment, token in claimed
        }
        for future in as_completed(futures):
            enrollment = futures[future]
            try:
                steps, final = future.result()
                result.steps += steps
                if final is not None:
                    key = final.status.value
                    result.final_statuses[key] = result.final_statuses.get(key, 0) + 1
            except ClaimLostError:
                result.lost_claims += 1
            except WorkflowEngineError as e:
                result.errors += 1
                logger.error(f"Enrollment {enrollment.id} was not advanced: {e.message}")
            except Exception as e:
                # The lease expires and a later tick picks the enrollment up again
                result.errors += 1
                logger.error(f"Unexpected error advancing enrollment {enrollment.id}: {str(e)}", exc_info=True)

        if claimed or result.scheduled_enrollments:
            logger.info(f"Tick at {now.isoformat()}: due={result.due}, claimed={result.claimed}, "
                        f"steps={result.steps}, errors={result.errors}")
        self.last_tick = result
        return result

    def _process(self, enrollment: Enrollment, claim_token: str, now: datetime):
        """Advance one claimed enrollment while it keeps running. Returns (steps, last result)."""
        steps = 0
        last: Optional[StepResult] = None
        with logging_context(enrollment_id=enrollment.id, workflow_id=enrollment.workflow_id,
                             tenant_id=enrollment.tenant_id):
            try:
                while steps < self.max_steps_per_claim:
                    if steps and not self.enrollment_store.renew_claim(
                            enrollment.id, claim_token, max(now, self._clock()), self.lease_seconds):
                        raise ClaimLostError(f"Lease on enrollment {enrollment.id} expired",
                                             enrollment_id=enrollment.id)
                    last = self.step_executor.execute_step(enrollment.id, claim_token, now)
                    steps += 1
                    if last.status != EnrollmentStatus.RUNNING:
                        break
            except ClaimLostError:
                logger.warning(f"Lost claim on enrollment {enrollment.id} after {steps} step(s)")
                raise
            except StorageError:
                # Lease expiry hands the enrollment to a later tick
                logger.error(f"Storage failure while advancing enrollment {enrollment.id}; leaving lease to expire")
                raise

            self.enrollment_store.release_claim(enrollment.id, claim_token)
        return steps, last

    # -- background loop ------------------------------------------------------

    def start(self):
        """Start ticking in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="SchedulerLoop")
        self._thread.start()
        logger.info("Scheduler loop started")

    def stop(self, timeout: Optional[float] = 30.0):
        """Signal the loop to stop and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Scheduler loop stopped")

    def run_forever(self):
        """Tick in the calling thread until ``stop`` is called or interrupted."""
        logger.info(f"Scheduler running every {self.interval_seconds}s")
        try:
            self._run()
        except KeyboardInterrupt:
            logger.info("Scheduler interrupted")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def shutdown(self):
        self.stop()
        self._executor.shutdown(wait=True)
        self.step_executor.shutdown()

    def _run(self):
        while not self._stop_event.is_set():
            if self._tick_lock.acquire(blocking=False):
                try:
                    self.tick()
                except Exception as e:
                    # Keep the loop alive; the next tick starts from durable state
                    logger.error(f"Error in scheduler loop: {str(e)}")
                finally:
                    self._tick_lock.release()
            self._stop_event.wait(self.interval_seconds)
