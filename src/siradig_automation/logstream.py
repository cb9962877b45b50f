from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional

from .artifacts import ArtifactStore
from .errors import JobNotFoundError
from .models import SETTLED_STATUSES, JobStatus

if TYPE_CHECKING:
    from .state import JobRepository


logger = logging.getLogger(__name__)


def format_log_line(message: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"[{now:%H:%M:%S}] {message}"


class JobMonitor:
    """
    In-memory log buffer + status cell per job, written by the orchestrator while a run is live.

    Readers poll with a cursor (`get_logs(job_id, start)`); lines are only ever appended.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._logs: dict[str, list[str]] = {}
        self._status: dict[str, JobStatus] = {}
        self._live: set[str] = set()

    def append_log(self, job_id: str, line: str) -> int:
        with self._lock:
            buf = self._logs.setdefault(job_id, [])
            buf.append(line)
            return len(buf)

    def get_logs(self, job_id: str, start: int = 0) -> list[str]:
        with self._lock:
            return list(self._logs.get(job_id, [])[max(0, start):])

    def set_status(self, job_id: str, status: JobStatus) -> None:
        with self._lock:
            self._status[job_id] = status
            self._logs.setdefault(job_id, [])

    def get_status(self, job_id: str) -> Optional[JobStatus]:
        with self._lock:
            return self._status.get(job_id)

    def set_live(self, job_id: str, live: bool) -> None:
        """Flag a job whose stored status looks settled but which still has a run in flight."""
        with self._lock:
            if live:
                self._live.add(job_id)
            else:
                self._live.discard(job_id)

    def is_live(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._live

    def has(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._status or job_id in self._logs

    def clear(self, job_id: str) -> None:
        with self._lock:
            self._logs.pop(job_id, None)
            self._status.pop(job_id, None)
            self._live.discard(job_id)


class LogStream:
    """
    Push a job's progress to a subscriber as dict events:

        {"log": "[12:00:01] Opening the ARCA login page..."}
        {"screenshot": {"step": 1, "name": "step-01-login-page.png", "label": "...", "timestamp": "..."}}
        {"done": True, "status": "COMPLETED", "videos": ["recording.webm"]}

    Live jobs are polled from the monitor; settled jobs are replayed once from whatever store has them.
    """

    def __init__(
        self,
        monitor: JobMonitor,
        repository: "JobRepository",
        artifacts: ArtifactStore,
        *,
        poll_interval: float = 1.0,
    ) -> None:
        self.monitor = monitor
        self.repository = repository
        self.artifacts = artifacts
        self.poll_interval = poll_interval

    def _status(self, job_id: str) -> JobStatus:
        status = self.monitor.get_status(job_id)
        if status is not None:
            return status
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job.status

    def _logs(self, job_id: str, start: int) -> list[str]:
        if self.monitor.has(job_id):
            return self.monitor.get_logs(job_id, start)
        job = self.repository.get_job(job_id)
        return list(job.logs[start:]) if job is not None else []

    def _settled(self, job_id: str) -> tuple[JobStatus, bool]:
        # Read the live flag before the status; a run clears it only after writing its final status.
        live = self.monitor.is_live(job_id)
        status = self._status(job_id)
        return status, status in SETTLED_STATUSES and not live

    def _done(self, job_id: str, status: JobStatus) -> dict[str, Any]:
        return {"done": True, "status": status.value, "videos": self.artifacts.get_video_filenames(job_id)}

    async def events(self, job_id: str) -> AsyncIterator[dict[str, Any]]:
        status, settled = self._settled(job_id)

        if settled:
            for line in self._logs(job_id, 0):
                yield {"log": line}
            for shot in self.artifacts.get_screenshots(job_id):
                yield {"screenshot": shot.model_dump(mode="json")}
            yield self._done(job_id, status)
            return

        cursor = 0
        seen_shots: set[str] = set()
        while True:
            # Status first: lines written before a settled status are still flushed below.
            status, settled = self._settled(job_id)

            lines = self._logs(job_id, cursor)
            cursor += len(lines)
            for line in lines:
                yield {"log": line}

            for shot in self.artifacts.get_screenshots(job_id):
                if shot.name in seen_shots:
                    continue
                seen_shots.add(shot.name)
                yield {"screenshot": shot.model_dump(mode="json")}

            if settled:
                yield self._done(job_id, status)
                return

            await asyncio.sleep(self.poll_interval)
