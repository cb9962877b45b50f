from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol, Union

from .models import ScreenshotMeta, utcnow


logger = logging.getLogger(__name__)

SCREENSHOT_NAME_RE = re.compile(r"^step-(\d{2,})-([\w-]+)\.png$")
VIDEO_NAME_RE = re.compile(r"^recording(?:-(\d+))?\.webm$")
_SLUG_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]+")


class ScreenshotIndex(Protocol):
    """Durable screenshot metadata (implemented by `StateStore`)."""

    def add_screenshot(self, job_id: str, meta: ScreenshotMeta) -> None: ...

    def list_screenshots(self, job_id: str) -> list[ScreenshotMeta]: ...


def sanitize_slug(slug: str) -> str:
    safe = _SLUG_UNSAFE.sub("-", slug or "").strip("-")[:60]
    return safe or "step"


def screenshot_filename(step: int, slug: str) -> str:
    return f"step-{step:02d}-{sanitize_slug(slug)}.png"


def _video_index(name: str) -> int:
    m = VIDEO_NAME_RE.match(name)
    if not m:
        return 0
    return int(m.group(1)) if m.group(1) else 1


class ArtifactStore:
    """
    Job-scoped screenshots and session video on disk:

        <root>/<job_id>/step-01-login-page.png
        <root>/<job_id>/video/recording.webm

    Keeps an in-memory index for jobs that ran in this process and falls back to the
    durable index (when configured) and finally to scanning the job directory.
    """

    def __init__(self, root: Union[str, Path], *, index: Optional[ScreenshotIndex] = None) -> None:
        self.root = Path(root)
        self.index = index
        self._lock = threading.Lock()
        self._screenshots: dict[str, list[ScreenshotMeta]] = {}
        self._videos: dict[str, list[str]] = {}

    def job_dir(self, job_id: str) -> Path:
        # Job ids are generated internally; still refuse anything that could escape the root.
        if not job_id or "/" in job_id or "\\" in job_id or job_id in {".", ".."}:
            raise ValueError(f"Invalid job id for artifact path: {job_id!r}")
        return self.root / job_id

    def _readable_job_dir(self, job_id: str) -> Optional[Path]:
        # Reads treat an unusable id like a missing job.
        try:
            return self.job_dir(job_id)
        except ValueError:
            return None

    def video_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / "video"

    def ensure_video_dir(self, job_id: str) -> Path:
        d = self.video_dir(job_id)
        d.mkdir(parents=True, exist_ok=True)
        return d

    # Screenshots

    def save_screenshot(self, job_id: str, step: int, slug: str, label: str, data: bytes) -> ScreenshotMeta:
        if step < 1:
            raise ValueError(f"step must be >= 1, got {step}")
        d = self.job_dir(job_id)
        d.mkdir(parents=True, exist_ok=True)
        name = screenshot_filename(step, slug)
        (d / name).write_bytes(data)

        meta = ScreenshotMeta(step=step, name=name, label=label, timestamp=utcnow())
        with self._lock:
            self._screenshots.setdefault(job_id, []).append(meta)
        if self.index is not None:
            self.index.add_screenshot(job_id, meta)
        return meta

    def get_screenshots(self, job_id: str) -> list[ScreenshotMeta]:
        with self._lock:
            cached = list(self._screenshots.get(job_id, []))
        if cached:
            return cached
        if self.index is not None:
            durable = self.index.list_screenshots(job_id)
            if durable:
                return durable
        return self.list_screenshots_from_disk(job_id)

    def next_step(self, job_id: str) -> int:
        shots = self.get_screenshots(job_id)
        return max((s.step for s in shots), default=0) + 1

    def read_screenshot_file(self, job_id: str, filename: str) -> Optional[bytes]:
        if not SCREENSHOT_NAME_RE.match(filename or ""):
            return None
        d = self._readable_job_dir(job_id)
        if d is None:
            return None
        p = d / filename
        if not p.is_file():
            return None
        return p.read_bytes()

    def list_screenshots_from_disk(self, job_id: str) -> list[ScreenshotMeta]:
        d = self._readable_job_dir(job_id)
        if d is None or not d.is_dir():
            return []
        out: list[ScreenshotMeta] = []
        for p in d.iterdir():
            m = SCREENSHOT_NAME_RE.match(p.name)
            if not m or not p.is_file():
                continue
            step = int(m.group(1))
            if step < 1:
                continue
            try:
                ts: Optional[datetime] = datetime.fromtimestamp(p.stat().st_mtime, tz=timezone.utc)
            except OSError:
                ts = None
            out.append(ScreenshotMeta(step=step, name=p.name, label=m.group(2).replace("-", " "), timestamp=ts))
        return sorted(out, key=lambda s: s.step)

    # Video

    def _canonical_videos(self, d: Path) -> list[str]:
        names = [p.name for p in d.iterdir() if p.is_file() and VIDEO_NAME_RE.match(p.name)]
        return sorted(names, key=_video_index)

    def finalize_video(self, job_id: str) -> Optional[str]:
        """
        Rename the raw recording(s) left by the browser to `recording.webm` / `recording-N.webm`.

        Safe to call repeatedly: with no new raw file it returns the latest canonical name.
        """
        d = self.video_dir(job_id)
        if not d.is_dir():
            return None

        canonical = self._canonical_videos(d)
        raw = [p for p in d.iterdir() if p.is_file() and p.suffix == ".webm" and not VIDEO_NAME_RE.match(p.name)]
        raw.sort(key=lambda p: p.stat().st_mtime)

        next_index = max((_video_index(n) for n in canonical), default=0) + 1
        for p in raw:
            name = "recording.webm" if next_index == 1 else f"recording-{next_index}.webm"
            p.rename(d / name)
            logger.debug("Finalized video for job %s: %s -> %s", job_id, p.name, name)
            canonical.append(name)
            next_index += 1

        if not canonical:
            return None
        with self._lock:
            self._videos[job_id] = list(canonical)
        return canonical[-1]

    def get_video_filenames(self, job_id: str) -> list[str]:
        with self._lock:
            cached = list(self._videos.get(job_id, []))
        if cached:
            return cached
        return self.list_videos_from_disk(job_id)

    def list_videos_from_disk(self, job_id: str) -> list[str]:
        job_dir = self._readable_job_dir(job_id)
        if job_dir is None or not (job_dir / "video").is_dir():
            return []
        return self._canonical_videos(job_dir / "video")

    def read_video_file(self, job_id: str, filename: Optional[str] = None) -> Optional[bytes]:
        if filename is None:
            names = self.get_video_filenames(job_id)
            if not names:
                return None
            filename = names[-1]
        if not VIDEO_NAME_RE.match(filename):
            return None
        job_dir = self._readable_job_dir(job_id)
        if job_dir is None:
            return None
        p = job_dir / "video" / filename
        if not p.is_file():
            return None
        return p.read_bytes()

    def clear_artifacts(self, job_id: str) -> None:
        """Forget the in-memory entries; files on disk are left alone."""
        with self._lock:
            self._screenshots.pop(job_id, None)
            self._videos.pop(job_id, None)
