from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from .artifacts import ArtifactStore
from .errors import AutomationError, JobConflictError, JobNotFoundError, JobStateError
from .logstream import JobMonitor, format_log_line
from .models import (
    AutomationJob,
    DeductionRecord,
    DeductionStatus,
    FailureKind,
    JobKind,
    JobStatus,
    ScreenshotMeta,
    StoredCredential,
    can_transition,
    is_terminal,
    utcnow,
)
from .pool import ExecutionQueue
from .portal.client import DeductionPortalClient
from .portal.selectors import PortalSelectors
from .portal.steps import StepRecorder
from .state import JobRepository


logger = logging.getLogger(__name__)

# (ciphertext, iv, auth_tag) -> plaintext
Decryptor = Callable[[str, str, str], str]

_CANCELLABLE = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.WAITING_CONFIRMATION})


class JobOrchestrator:
    """
    Runs automation jobs through the execution queue and owns their state machine.

    Every transition is written to the repository and mirrored into the monitor; job log lines
    are persisted as they are produced so history survives a restart.
    """

    def __init__(
        self,
        repository: JobRepository,
        queue: ExecutionQueue,
        artifacts: ArtifactStore,
        monitor: JobMonitor,
        decrypt: Decryptor,
        *,
        selectors: Optional[PortalSelectors] = None,
        settle_timeout_ms: int = 10_000,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.artifacts = artifacts
        self.monitor = monitor
        self.decrypt = decrypt
        self.selectors = selectors or PortalSelectors()
        self.settle_timeout_ms = settle_timeout_ms
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._user_lock_refs: dict[str, int] = {}
        self._confirming: set[str] = set()

    # Mirrors

    def _require_job(self, job_id: str) -> AutomationJob:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def _ensure_mirror(self, job: AutomationJob) -> None:
        # After a restart the monitor is empty; seed it so cursors line up with the stored log.
        if self.monitor.has(job.id):
            return
        for line in job.logs:
            self.monitor.append_log(job.id, line)
        self.monitor.set_status(job.id, job.status)

    def _log(self, job_id: str, message: str) -> None:
        line = format_log_line(message)
        self.monitor.append_log(job_id, line)
        logger.info("[job %s] %s", job_id, message)
        try:
            self.repository.append_job_log(job_id, line)
        except Exception:
            logger.warning("Could not persist log line for job %s", job_id, exc_info=True)

    @asynccontextmanager
    async def _user_turn(self, user_id: str) -> AsyncIterator[None]:
        """Run one user's jobs one at a time. The lock is dropped once nobody holds or waits on it."""
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        self._user_lock_refs[user_id] = self._user_lock_refs.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._user_lock_refs[user_id] -= 1
            if not self._user_lock_refs[user_id]:
                del self._user_lock_refs[user_id]
                self._user_locks.pop(user_id, None)

    def _transition(self, job_id: str, target: JobStatus, *, strict: bool = True, **fields: Any) -> bool:
        """
        Move a job to `target` if the state machine allows it. `completed_at` follows the target.

        A cancelled job is never moved again; with `strict=False` other illegal moves are logged
        instead of raised.
        """
        job = self._require_job(job_id)
        if not can_transition(job.status, target):
            if job.status == JobStatus.CANCELLED:
                logger.info("Job %s was cancelled; not moving it to %s", job_id, target.value)
                return False
            msg = f"Job {job_id} cannot move from {job.status.value} to {target.value}"
            if strict:
                raise JobStateError(msg)
            logger.warning(msg)
            return False

        fields["completed_at"] = utcnow() if is_terminal(target) else None
        self.repository.update_job(job_id, status=target, **fields)
        self.monitor.set_status(job_id, target)
        logger.debug("Job %s: %s -> %s", job_id, job.status.value, target.value)
        return True

    def _fail(self, job_id: str, message: str, kind: FailureKind) -> bool:
        return self._transition(
            job_id, JobStatus.FAILED, strict=False, error_message=message or "Unknown error", failure_kind=kind
        )

    def _set_deduction_status(self, deduction_id: Optional[str], status: DeductionStatus) -> None:
        if deduction_id:
            self.repository.update_deduction_status(deduction_id, status)

    def _stop_requested(self, job_id: str) -> bool:
        job = self.repository.get_job(job_id)
        if job is None or job.status == JobStatus.CANCELLED:
            self._log(job_id, "Job cancelled; stopping before the next step")
            return True
        return False

    # Commands

    def create_job(
        self,
        user_id: str,
        deduction_id: Optional[str] = None,
        *,
        kind: JobKind = JobKind.SUBMIT_DEDUCTION,
    ) -> AutomationJob:
        if self.repository.get_user(user_id) is None:
            raise AutomationError(f"Unknown user: {user_id}")
        if kind == JobKind.SUBMIT_DEDUCTION and not deduction_id:
            raise ValueError("A deduction id is required for SUBMIT_DEDUCTION jobs")

        job = AutomationJob(id=uuid.uuid4().hex, user_id=user_id, deduction_id=deduction_id, kind=kind)
        self.repository.create_job(job)
        self.monitor.set_status(job.id, job.status)
        if deduction_id and self.repository.get_deduction(deduction_id) is not None:
            self._set_deduction_status(deduction_id, DeductionStatus.QUEUED)
        logger.info("Created job %s (%s) for user %s", job.id, kind.value, user_id)
        return job

    def process(self, job_id: str) -> "asyncio.Future[AutomationJob]":
        """Queue a PENDING job. The returned future resolves to the job as it stands after the run."""
        job = self._require_job(job_id)
        if job.status != JobStatus.PENDING:
            raise JobStateError(f"Job {job_id} is {job.status.value}; only PENDING jobs can be processed")
        self._ensure_mirror(job)
        return self.queue.submit(lambda: self._run(job_id))

    async def _run(self, job_id: str) -> AutomationJob:
        job = self._require_job(job_id)
        if job.status != JobStatus.PENDING:
            logger.info("Job %s is %s at dequeue time; skipping", job_id, job.status.value)
            return job

        credential = self.repository.get_credential(job.user_id)
        if credential is None:
            message = "No ARCA credentials configured for this user"
            self._log(job_id, message)
            self._fail(job_id, message, FailureKind.PRECONDITION)
            return self._require_job(job_id)

        deduction: Optional[DeductionRecord] = None
        if job.kind == JobKind.SUBMIT_DEDUCTION:
            deduction = self.repository.get_deduction(job.deduction_id) if job.deduction_id else None
            if deduction is None:
                message = "Linked deduction record not found"
                self._log(job_id, message)
                self._fail(job_id, message, FailureKind.PRECONDITION)
                return self._require_job(job_id)

        async with self._user_turn(job.user_id):
            if self._stop_requested(job_id):
                return self._require_job(job_id)
            self._transition(
                job_id,
                JobStatus.RUNNING,
                attempts=job.attempts + 1,
                started_at=utcnow(),
                error_message=None,
                failure_kind=None,
            )
            try:
                await self._drive(job, credential, deduction, confirming=False)
            except Exception as e:
                logger.exception("Job %s crashed", job_id)
                message = str(e).strip() or e.__class__.__name__
                self._log(job_id, f"Unexpected error: {message}")
                self._fail(job_id, message, FailureKind.INFRASTRUCTURE)
        return self._require_job(job_id)

    async def _drive(
        self,
        job: AutomationJob,
        credential: StoredCredential,
        deduction: Optional[DeductionRecord],
        *,
        confirming: bool,
    ) -> None:
        job_id = job.id
        self._log(job_id, "Decrypting credentials...")
        password = self.decrypt(credential.ciphertext, credential.iv, credential.auth_tag)

        recorder = StepRecorder(
            job_id,
            self.artifacts,
            lambda message: self._log(job_id, message),
            first_step=self.artifacts.next_step(job_id),
        )
        video_dir = self.artifacts.ensure_video_dir(job_id)

        page = None
        try:
            self._log(job_id, "Starting browser session...")
            lease = await self.queue.acquire_session(job.user_id, video_dir=video_dir)
            page = await lease.open_page()
            client = DeductionPortalClient(
                page, recorder, selectors=self.selectors, settle_timeout_ms=self.settle_timeout_ms
            )

            result = await client.login(credential.cuit, password)
            if not result.ok:
                if result.challenge:
                    self._log(job_id, "Automation paused: the portal requires solving a captcha manually")
                    self._fail(job_id, result.error or "Captcha detected", FailureKind.CHALLENGE)
                else:
                    self._fail(job_id, result.error or "Login failed", FailureKind.PROTOCOL)
                return
            if self._stop_requested(job_id):
                return

            result = await client.open_application()
            if not result.ok:
                self._fail(job_id, result.error or "Could not open SiRADIG", FailureKind.PROTOCOL)
                return

            if job.kind == JobKind.VALIDATE_CREDENTIALS:
                self._log(job_id, "Credentials validated")
                self._transition(job_id, JobStatus.COMPLETED, strict=False)
                return
            if self._stop_requested(job_id):
                return

            if deduction is None:
                raise AutomationError(f"Job {job_id} has no deduction to fill")
            result = await client.fill_deduction(deduction)
            if not result.ok:
                self._fail(job_id, result.error or "Could not fill the deduction form", FailureKind.PROTOCOL)
                return
            if self._stop_requested(job_id):
                return

            if confirming or self.repository.get_auto_submit(job.user_id):
                submitted = await client.submit_deduction()
                if not submitted.ok:
                    self._fail(job_id, submitted.error or "Submit failed", FailureKind.PROTOCOL)
                    return
                self._log(job_id, "Deduction submitted")
                if self._transition(job_id, JobStatus.COMPLETED, strict=False):
                    self._set_deduction_status(job.deduction_id, DeductionStatus.SUBMITTED)
                return

            preview: Optional[ScreenshotMeta] = result.screenshot or recorder.last
            self._log(job_id, "Preview ready. Waiting for confirmation.")
            if self._transition(
                job_id,
                JobStatus.WAITING_CONFIRMATION,
                strict=False,
                screenshot_ref=preview.name if preview else None,
            ):
                self._set_deduction_status(job.deduction_id, DeductionStatus.PREVIEW_READY)
        finally:
            if page is not None:
                try:
                    await page.close()
                except Exception:
                    logger.warning("Closing page for job %s failed", job_id, exc_info=True)
            if not await self.queue.release_session(job.user_id):
                logger.debug("No clean session release for user %s (job %s)", job.user_id, job_id)
            try:
                video = self.artifacts.finalize_video(job_id)
                if video:
                    logger.info("Job %s video: %s", job_id, video)
            except Exception:
                logger.warning("Video finalization failed for job %s", job_id, exc_info=True)

    async def confirm(self, job_id: str) -> AutomationJob:
        """Submit a previewed job: fresh session, log in, refill, save."""
        job = self._require_job(job_id)
        if job.status != JobStatus.WAITING_CONFIRMATION:
            raise JobStateError(
                f"Job {job_id} is {job.status.value}; only WAITING_CONFIRMATION jobs can be confirmed"
            )
        if job_id in self._confirming:
            raise JobConflictError(f"Job {job_id} is already being confirmed")

        credential = self.repository.get_credential(job.user_id)
        if credential is None:
            raise JobStateError("No ARCA credentials configured for this user")
        deduction = self.repository.get_deduction(job.deduction_id) if job.deduction_id else None
        if deduction is None:
            raise JobStateError("Linked deduction record not found")

        self._ensure_mirror(job)
        self._confirming.add(job_id)
        self.monitor.set_live(job_id, True)
        try:
            return await self.queue.submit(lambda: self._run_confirm(job_id, credential, deduction))
        finally:
            self._confirming.discard(job_id)
            self.monitor.set_live(job_id, False)

    async def _run_confirm(
        self, job_id: str, credential: StoredCredential, deduction: DeductionRecord
    ) -> AutomationJob:
        job = self._require_job(job_id)
        async with self._user_turn(job.user_id):
            job = self._require_job(job_id)
            if job.status != JobStatus.WAITING_CONFIRMATION:
                logger.info("Job %s is %s at confirmation time; skipping", job_id, job.status.value)
                return job
            self._log(job_id, "Confirmation received. Submitting deduction...")
            try:
                await self._drive(job, credential, deduction, confirming=True)
            except Exception as e:
                logger.exception("Confirmation of job %s crashed", job_id)
                message = str(e).strip() or e.__class__.__name__
                self._log(job_id, f"Unexpected error: {message}")
                self._fail(job_id, message, FailureKind.INFRASTRUCTURE)
        return self._require_job(job_id)

    def cancel(self, job_id: str) -> AutomationJob:
        """
        Mark the job CANCELLED. A run in flight is not interrupted mid-step; it stops at its next
        checkpoint and leaves the CANCELLED status alone.
        """
        job = self._require_job(job_id)
        if job.status not in _CANCELLABLE:
            raise JobStateError(f"Job {job_id} is {job.status.value} and cannot be cancelled")
        self._ensure_mirror(job)
        self._log(job_id, "Job cancelled by user")
        self._transition(job_id, JobStatus.CANCELLED)
        self._set_deduction_status(job.deduction_id, DeductionStatus.PENDING)
        return self._require_job(job_id)

    def delete(self, job_id: str, *, purge_files: bool = False) -> None:
        job = self._require_job(job_id)
        if not job.is_terminal:
            raise JobConflictError(f"Job {job_id} is {job.status.value}; cancel it first")

        self.repository.delete_job(job_id)
        self.repository.delete_screenshots(job_id)
        self.monitor.clear(job_id)
        self.artifacts.clear_artifacts(job_id)
        if purge_files:
            shutil.rmtree(self.artifacts.job_dir(job_id), ignore_errors=True)

        if job.deduction_id and self.repository.count_jobs_for_deduction(job.deduction_id) == 0:
            self._set_deduction_status(job.deduction_id, DeductionStatus.PENDING)
        logger.info("Deleted job %s", job_id)

    def retry(self, job_id: str) -> AutomationJob:
        """Manual FAILED -> PENDING reset; call `process` afterwards to run it again."""
        job = self._require_job(job_id)
        if job.status != JobStatus.FAILED:
            raise JobStateError(f"Job {job_id} is {job.status.value}; only FAILED jobs can be retried")
        self._ensure_mirror(job)
        self._transition(job_id, JobStatus.PENDING, error_message=None, failure_kind=None)
        self._log(job_id, "Retry requested")
        if job.deduction_id and self.repository.get_deduction(job.deduction_id) is not None:
            self._set_deduction_status(job.deduction_id, DeductionStatus.QUEUED)
        return self._require_job(job_id)

    def recover_interrupted(self) -> list[str]:
        """Fail RUNNING jobs left behind by a previous process (no live mirror here)."""
        recovered: list[str] = []
        for job in self.repository.find_jobs_by_status(JobStatus.RUNNING):
            if self.monitor.get_status(job.id) is not None:
                continue
            self._ensure_mirror(job)
            self._log(job.id, "Interrupted by restart")
            if self._fail(job.id, "Interrupted by restart", FailureKind.INFRASTRUCTURE):
                recovered.append(job.id)
        if recovered:
            logger.warning("Marked %d interrupted job(s) as FAILED", len(recovered))
        return recovered

    # Read accessors

    def get_job(self, job_id: str) -> AutomationJob:
        return self._require_job(job_id)

    def get_status(self, job_id: str) -> JobStatus:
        status = self.monitor.get_status(job_id)
        if status is not None:
            return status
        return self._require_job(job_id).status

    def get_logs(self, job_id: str, start: int = 0) -> list[str]:
        if self.monitor.has(job_id):
            return self.monitor.get_logs(job_id, start)
        return list(self._require_job(job_id).logs[start:])

    def get_screenshots(self, job_id: str) -> list[ScreenshotMeta]:
        return self.artifacts.get_screenshots(job_id)

    def get_video_filenames(self, job_id: str) -> list[str]:
        return self.artifacts.get_video_filenames(job_id)

    def read_screenshot_file(self, job_id: str, filename: str) -> Optional[bytes]:
        return self.artifacts.read_screenshot_file(job_id, filename)

    def read_video_file(self, job_id: str, filename: Optional[str] = None) -> Optional[bytes]:
        return self.artifacts.read_video_file(job_id, filename)
