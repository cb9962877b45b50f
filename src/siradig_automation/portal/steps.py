from __future__ import annotations

import logging
from typing import Callable, Optional

from ..artifacts import ArtifactStore
from ..models import ScreenshotMeta
from .page import PortalPage


logger = logging.getLogger(__name__)


class StepRecorder:
    """
    Numbered full-page screenshots + job log lines for one run.

    The counter is seeded by the caller (usually `ArtifactStore.next_step`) so a confirmation
    run keeps numbering after the preview run's screenshots.
    """

    def __init__(
        self,
        job_id: str,
        artifacts: ArtifactStore,
        log: Callable[[str], None],
        *,
        first_step: int = 1,
    ) -> None:
        self.job_id = job_id
        self.artifacts = artifacts
        self._log = log
        self._next = max(1, int(first_step))
        self.last: Optional[ScreenshotMeta] = None

    @property
    def next_step(self) -> int:
        return self._next

    def log(self, message: str) -> None:
        self._log(message)

    async def capture(self, page: PortalPage, slug: str, label: str) -> Optional[ScreenshotMeta]:
        """Best-effort: a failed screenshot is logged and never fails the step it documents."""
        try:
            data = await page.screenshot()
            meta = self.artifacts.save_screenshot(self.job_id, self._next, slug, label, data)
        except Exception:
            logger.warning("Screenshot %s failed for job %s", slug, self.job_id, exc_info=True)
            return None
        self._next += 1
        self.last = meta
        return meta
