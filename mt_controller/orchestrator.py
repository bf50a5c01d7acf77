"""
Test-job lifecycle orchestrator.

Drives each job through queued -> running -> completed | failed:

1. submit() stores a queued job (no provider call)
2. begin() creates the provider test matrix and marks the job running
3. check_job() polls the matrix on a per-job schedule, enforcing the
   wall-clock deadline and backing off on transient provider errors
4. complete() records results and, for finished matrices, runs the
   analysis exactly once

Every status write is a conditional update keyed on the status the writer
observed, so concurrent handlers (poll, cancel, timeout) cannot both win.
A reconciliation loop, in the style of a Kubernetes controller, picks up
queued jobs and resumes monitoring of running jobs after a restart.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from functools import partial

from mt_common.artifacts import ArtifactStore
from mt_common.devices import DeviceCatalog
from mt_common.errors import (
    ArtifactStoreError,
    ConflictError,
    InvalidStateError,
    JobNotFoundError,
    ProviderError,
    ProviderUnavailable,
    TimeoutExceeded,
    ValidationError,
)
from mt_common.models import (
    ACTIVE_STATUSES,
    COMPLETED,
    FAILED,
    QUEUED,
    RUNNING,
    Job,
    JobUpdate,
)
from mt_common.repository import JobRepository

from .analysis import AnalysisEngine, round_half_up
from .matrix_client import FINISHED, MatrixStatus, TestMatrixClient
from .scheduler import Clock, JobScheduler
from .settings import OrchestratorSettings

logger = logging.getLogger(__name__)

MAX_CONTEXT_BYTES = 10 * 1024
CANCEL_REASON = "Job cancelled by user"
CANCEL_ATTEMPTS = 3


class JobOrchestrator:
    """
    Owns every status transition of a job.

    Duplicate begin() and complete() calls are suppressed in-process; the
    conditional updates in the repository protect against everything else.
    """

    def __init__(
        self,
        repository: JobRepository,
        matrix_client: TestMatrixClient,
        analysis_engine: AnalysisEngine | None = None,
        catalog: DeviceCatalog | None = None,
        artifact_store: ArtifactStore | None = None,
        settings: OrchestratorSettings | None = None,
        clock: Clock | None = None,
        scheduler: JobScheduler | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            repository: Job storage
            matrix_client: Device-farm adapter
            analysis_engine: Report generator for finished jobs
            catalog: Device catalog used to validate selections
            artifact_store: Storage for uploaded APKs, used on delete
            settings: Poll, backoff and timeout configuration
            clock: Time source
            scheduler: Per-job delayed task runner
        """
        self.repository = repository
        self.matrix_client = matrix_client
        self.analysis_engine = analysis_engine or AnalysisEngine()
        self.catalog = catalog or DeviceCatalog()
        self.artifact_store = artifact_store
        self.settings = settings or OrchestratorSettings()
        self.clock = clock or (scheduler.clock if scheduler else Clock())
        self.scheduler = scheduler or JobScheduler(self.clock)

        self._beginning: set[str] = set()
        self._completing: set[str] = set()
        self._running = False
        self._task: asyncio.Task | None = None

    # Job lifecycle

    async def submit(
        self,
        artifact_ref: str,
        device_ids: list[str],
        context: str = "",
        owner_id: str | None = None,
    ) -> str:
        """
        Create a queued job. Returns without contacting the provider.

        Args:
            artifact_ref: Reference returned by the artifact store
            device_ids: Requested catalog device ids
            context: Optional README or notes for the analysis
            owner_id: Requesting user

        Returns:
            The new job id

        Raises:
            ValidationError: If any input is missing or invalid
        """
        if not owner_id:
            raise ValidationError("Job owner is required")
        if not artifact_ref:
            raise ValidationError("Artifact reference is required")

        context = context or ""
        if len(context.encode("utf-8")) > MAX_CONTEXT_BYTES:
            raise ValidationError("Context must be at most 10KB")

        selection = self.catalog.validate_selection(device_ids)

        job = Job(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            artifact_ref=artifact_ref,
            device_selection=selection,
            context=context,
            created_at=self.clock.now(),
        )
        await self.repository.create_job(job)

        logger.info(f"Job {job.id} queued for {len(selection)} device(s)")
        return job.id

    async def begin(self, job_id: str) -> bool:
        """
        Start the provider matrix for a queued job.

        Returns:
            True if the job moved to running

        Raises:
            JobNotFoundError: If the job does not exist
        """
        if job_id in self._beginning:
            logger.debug(f"Job {job_id} is already being started")
            return False

        self._beginning.add(job_id)
        try:
            return await self._begin(job_id)
        finally:
            self._beginning.discard(job_id)

    async def _begin(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if job.status != QUEUED:
            logger.info(f"Job {job_id} is {job.status}, not starting")
            return False

        try:
            handle = await self.matrix_client.start(
                job.artifact_ref, job.device_selection, self.settings.matrix_timeout
            )
        except ProviderError as e:
            # start() is not idempotent, so a failed start is never retried
            logger.error(f"Failed to start test matrix for job {job_id}: {e}")
            await self._write_terminal(
                job_id,
                QUEUED,
                JobUpdate(
                    status=FAILED,
                    failure_reason=f"Failed to start test matrix: {e}",
                    completed_at=self.clock.now(),
                ),
            )
            return False

        try:
            await self.repository.conditional_update(
                job_id,
                QUEUED,
                JobUpdate(
                    status=RUNNING,
                    provider_matrix_id=handle.matrix_id,
                    started_at=self.clock.now(),
                ),
            )
        except ConflictError:
            logger.info(
                f"Job {job_id} changed while starting, cancelling matrix {handle.matrix_id}"
            )
            await self._cancel_matrix(handle.matrix_id)
            return False

        logger.info(f"Job {job_id} running on test matrix {handle.matrix_id}")
        self.scheduler.schedule(
            job_id, self.settings.initial_delay, partial(self._run_check, job_id)
        )
        return True

    async def _run_check(self, job_id: str) -> None:
        delay = await self.check_job(job_id)
        if delay is not None:
            self.scheduler.schedule(job_id, delay, partial(self._run_check, job_id))

    async def check_job(self, job_id: str) -> float | None:
        """
        Perform one monitoring step for a running job.

        Returns:
            Seconds until the next check, or None when monitoring should stop
        """
        job = await self.repository.get_job(job_id)
        if job is None or job.status != RUNNING:
            return None

        try:
            self._check_deadline(job)
        except TimeoutExceeded as e:
            await self._fail_timed_out(job, str(e))
            return None

        try:
            status = await self.matrix_client.poll(job.provider_matrix_id)
        except ProviderUnavailable as e:
            logger.warning(
                f"Provider unavailable while polling job {job_id}, "
                f"retrying in {self.settings.retry_backoff}s: {e}"
            )
            return self.settings.retry_backoff

        if not status.is_terminal:
            logger.debug(f"Job {job_id} matrix is {status.state}")
            return self.settings.poll_interval

        await self.complete(job_id, status)
        return None

    def _check_deadline(self, job: Job) -> None:
        started = job.started_at or job.created_at
        if started is None:
            return
        deadline = started + timedelta(seconds=self.settings.job_timeout)
        if self.clock.now() >= deadline:
            raise TimeoutExceeded(self.settings.timeout_reason)

    async def _fail_timed_out(self, job: Job, reason: str) -> None:
        now = self.clock.now()
        won = await self._write_terminal(
            job.id,
            RUNNING,
            JobUpdate(
                status=FAILED,
                failure_reason=reason,
                duration=self._duration(job, now),
                completed_at=now,
            ),
        )
        if won:
            logger.warning(f"Job {job.id} timed out")
            if job.provider_matrix_id:
                await self._cancel_matrix(job.provider_matrix_id)

    async def complete(self, job_id: str, status: MatrixStatus) -> bool:
        """
        Record the terminal provider state of a running job.

        Finished matrices are analyzed; error and cancelled matrices fail the
        job. Only the first caller for a job writes anything.

        Returns:
            True if this call performed the terminal write
        """
        if not status.is_terminal:
            raise ValueError(f"Matrix state {status.state} is not terminal")

        if job_id in self._completing:
            logger.info(f"Job {job_id} is already completing, discarding result")
            return False

        self._completing.add(job_id)
        try:
            job = await self.repository.get_job(job_id)
            if job is None or job.status != RUNNING:
                logger.info(f"Job {job_id} is no longer running, discarding result")
                return False

            results = list(status.results)
            if status.state == FINISHED:
                report = await self.analysis_engine.analyze(
                    results, job.context, job.artifact_name
                )
                now = self.clock.now()
                update = JobUpdate(
                    status=COMPLETED,
                    raw_results=results,
                    report=report,
                    duration=self._duration(job, now),
                    completed_at=now,
                )
            else:
                reason = f"Test matrix {status.state}"
                if status.detail:
                    reason += f": {status.detail}"
                now = self.clock.now()
                update = JobUpdate(
                    status=FAILED,
                    raw_results=results,
                    failure_reason=reason,
                    duration=self._duration(job, now),
                    completed_at=now,
                )

            won = await self._write_terminal(job_id, RUNNING, update)
            if won:
                logger.info(f"Job {job_id} {update.status}")
            return won
        finally:
            self._completing.discard(job_id)

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued or running job.

        Provider-side cancellation is best-effort; the job is marked failed
        regardless.

        Returns:
            True if the job was cancelled, False if it was already terminal

        Raises:
            JobNotFoundError: If the job does not exist
            ConflictError: If the job kept changing across every attempt
        """
        for _ in range(CANCEL_ATTEMPTS):
            job = await self.get_job(job_id)
            if job.is_terminal:
                logger.info(f"Job {job_id} is already {job.status}, nothing to cancel")
                return False

            if job.provider_matrix_id:
                await self._cancel_matrix(job.provider_matrix_id)

            now = self.clock.now()
            try:
                await self.repository.conditional_update(
                    job_id,
                    job.status,
                    JobUpdate(
                        status=FAILED,
                        failure_reason=CANCEL_REASON,
                        duration=self._duration(job, now),
                        completed_at=now,
                    ),
                )
            except ConflictError:
                logger.info(f"Job {job_id} changed while cancelling, retrying")
                continue

            self.scheduler.cancel(job_id)
            logger.info(f"Job {job_id} cancelled")
            return True

        raise ConflictError(f"Could not cancel job {job_id}")

    async def delete(self, job_id: str) -> None:
        """
        Delete a completed or failed job and its artifact.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidStateError: If the job is still queued or running
        """
        job = await self.get_job(job_id)
        if not job.is_terminal:
            raise InvalidStateError(
                f"Job {job_id} is {job.status}; cancel it before deleting"
            )

        if self.artifact_store is not None:
            try:
                await self.artifact_store.delete(job.artifact_ref)
            except ArtifactStoreError as e:
                logger.warning(f"Failed to delete artifact for job {job_id}: {e}")

        await self.repository.delete_job(job_id)
        self.scheduler.cancel(job_id)
        logger.info(f"Job {job_id} deleted")

    async def get_job(self, job_id: str) -> Job:
        job = await self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(
        self, owner_id: str, status: str | None = None, limit: int | None = None
    ) -> list[Job]:
        return await self.repository.list_user_jobs(owner_id, status=status, limit=limit)

    # Helpers

    async def _write_terminal(
        self, job_id: str, expected_status: str, update: JobUpdate
    ) -> bool:
        try:
            await self.repository.conditional_update(job_id, expected_status, update)
        except ConflictError as e:
            logger.info(f"Discarding {update.status} write for job {job_id}: {e}")
            return False
        return True

    async def _cancel_matrix(self, matrix_id: str) -> None:
        try:
            await self.matrix_client.cancel(matrix_id)
        except ProviderError as e:
            logger.warning(f"Failed to cancel test matrix {matrix_id}: {e}")

    @staticmethod
    def _duration(job: Job, now: datetime) -> int | None:
        if job.started_at is None:
            return None
        return max(0, round_half_up((now - job.started_at).total_seconds()))

    # Reconciliation loop

    async def start(self) -> None:
        """Start the reconciliation loop."""
        if self._running:
            logger.warning("Orchestrator already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Job orchestrator started")

    async def stop(self) -> None:
        """Stop the loop and cancel every scheduled check."""
        if not self._running:
            return

        logger.info("Stopping job orchestrator...")
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        await self.scheduler.shutdown()
        logger.info("Job orchestrator stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.reconcile_once()
                await self.clock.sleep(self.settings.reconcile_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await self.clock.sleep(self.settings.reconcile_interval)

    async def reconcile_once(self) -> None:
        """
        Perform one reconciliation cycle.

        Queued jobs are started, running jobs without a scheduled check (for
        example after a controller restart) are polled again, and checks for
        jobs that became terminal elsewhere are dropped.
        """
        try:
            jobs = await self.repository.list_jobs(ACTIVE_STATUSES)
            logger.debug(f"Reconciliation: found {len(jobs)} active jobs")

            active_ids = set()
            for job in jobs:
                active_ids.add(job.id)
                if self.scheduler.is_scheduled(job.id):
                    continue

                if job.status == QUEUED and job.id not in self._beginning:
                    self.scheduler.schedule(job.id, 0, partial(self.begin, job.id))
                elif job.status == RUNNING and job.id not in self._completing:
                    logger.info(f"Resuming monitoring of job {job.id}")
                    self.scheduler.schedule(job.id, 0, partial(self._run_check, job.id))

            for key in self.scheduler.keys:
                if key not in active_ids:
                    logger.debug(f"Dropping scheduled check for inactive job {key}")
                    self.scheduler.cancel(key)

        except Exception as e:
            logger.error(f"Error in reconciliation cycle: {e}", exc_info=True)
