from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

from .config import BrowserConfig
from .errors import AutomationError
from .portal.page import PlaywrightPortalPage


logger = logging.getLogger(__name__)

Task = Callable[[], Awaitable[Any]]


def context_options(cfg: BrowserConfig) -> dict[str, Any]:
    """Per-user context settings; every session looks like the same es-AR desktop Chrome."""
    return {
        "locale": cfg.locale,
        "timezone_id": cfg.timezone_id,
        "viewport": {"width": cfg.viewport_width, "height": cfg.viewport_height},
        "user_agent": cfg.user_agent,
    }


class BrowserLauncher(Protocol):
    async def ensure_started(self) -> Any: ...

    def is_alive(self) -> bool: ...

    async def stop(self) -> None: ...


class BrowserProcess:
    """
    The one shared Chromium process. Started lazily, restarted when it has died, stopped on shutdown.
    """

    def __init__(self, cfg: BrowserConfig) -> None:
        self.cfg = cfg
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _launch(self, playwright: Playwright) -> Browser:
        kwargs: dict[str, Any] = {
            "headless": self.cfg.headless,
            "slow_mo": int(self.cfg.slow_mo_ms or 0),
            "args": list(self.cfg.launch_args),
        }
        chromium = playwright.chromium
        if self.cfg.channel:
            return await chromium.launch(channel=self.cfg.channel, **kwargs)

        # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the
        # sandbox/cache doesn't have Playwright browsers available.
        try:
            return await chromium.launch(**kwargs)
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning(
                "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                msg,
            )
            try:
                return await chromium.launch(channel="chrome", **kwargs)
            except Exception:
                return await chromium.launch(channel="msedge", **kwargs)

    async def start(self) -> Browser:
        playwright = self._playwright
        if playwright is None:
            playwright = self._playwright = await async_playwright().start()
        browser = self._browser = await self._launch(playwright)
        logger.info("Browser started (headless=%s)", self.cfg.headless)
        return browser

    def is_alive(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def ensure_started(self) -> Browser:
        async with self._lock:
            browser = self._browser
            if browser is not None and browser.is_connected():
                return browser
            if browser is not None:
                logger.warning("Browser process is gone; restarting.")
            return await self.start()

    async def stop(self) -> None:
        browser, self._browser = self._browser, None
        pw, self._playwright = self._playwright, None
        if browser is not None:
            try:
                await browser.close()
            except Exception:
                logger.debug("Browser close failed", exc_info=True)
        if pw is not None:
            try:
                await pw.stop()
            except Exception:
                logger.debug("Playwright stop failed", exc_info=True)


class SessionLease:
    """An isolated browser context owned by one user until released."""

    def __init__(self, user_id: str, context: BrowserContext, video_dir: Optional[Path] = None) -> None:
        self.user_id = user_id
        self.context = context
        self.video_dir = video_dir

    async def open_page(self) -> PlaywrightPortalPage:
        return PlaywrightPortalPage(await self.context.new_page())

    async def close(self) -> None:
        await self.context.close()


class ExecutionQueue:
    """
    FIFO admission into a fixed pool of workers plus per-user browser sessions.

    At most `max_concurrent` tasks run at once. A task that raises resolves its future with the
    exception; the worker keeps going.
    """

    def __init__(
        self,
        browser: BrowserLauncher,
        *,
        max_concurrent: int = 3,
        context_options: Optional[dict[str, Any]] = None,
        default_timeout_ms: int = 60_000,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.browser = browser
        self.max_concurrent = max_concurrent
        self.context_options = dict(context_options or {})
        self.default_timeout_ms = default_timeout_ms

        self._queue: asyncio.Queue[tuple[Task, asyncio.Future]] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._active = 0
        self._closed = False
        self._sessions: dict[str, SessionLease] = {}
        self._sessions_lock = asyncio.Lock()

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    # Tasks

    def submit(self, task: Task) -> asyncio.Future:
        """Enqueue `task` (a zero-arg coroutine function). Must be called from the event loop."""
        if self._closed:
            raise AutomationError("Execution queue is shut down")
        fut = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((task, fut))
        self._ensure_workers()
        return fut

    def _ensure_workers(self) -> None:
        self._workers = [w for w in self._workers if not w.done()]
        while len(self._workers) < self.max_concurrent:
            n = len(self._workers)
            self._workers.append(asyncio.create_task(self._worker(), name=f"automation-worker-{n}"))

    async def _worker(self) -> None:
        while True:
            task, fut = await self._queue.get()
            try:
                if fut.cancelled():
                    continue
                self._active += 1
                try:
                    result = await task()
                except asyncio.CancelledError:
                    fut.cancel()
                    raise
                except Exception as e:
                    logger.exception("Queued task failed")
                    if not fut.done():
                        fut.set_exception(e)
                else:
                    if not fut.done():
                        fut.set_result(result)
                finally:
                    self._active -= 1
            finally:
                self._queue.task_done()

    # Sessions

    async def acquire_session(self, user_id: str, *, video_dir: Optional[Union[str, Path]] = None) -> SessionLease:
        async with self._sessions_lock:
            existing = self._sessions.get(user_id)
            if existing is not None:
                return existing

            browser = await self.browser.ensure_started()
            opts = dict(self.context_options)
            if video_dir is not None:
                opts["record_video_dir"] = str(video_dir)
                if "viewport" in opts:
                    opts["record_video_size"] = dict(opts["viewport"])
            context = await browser.new_context(**opts)
            context.set_default_timeout(self.default_timeout_ms)

            lease = SessionLease(user_id, context, Path(video_dir) if video_dir is not None else None)
            self._sessions[user_id] = lease
            logger.debug("Session opened for user %s", user_id)
            return lease

    def has_session(self, user_id: str) -> bool:
        return user_id in self._sessions

    async def release_session(self, user_id: str) -> bool:
        """Close and forget the user's session. Returns False when there was none or close failed."""
        lease = self._sessions.pop(user_id, None)
        if lease is None:
            return False
        try:
            await lease.close()
        except Exception:
            logger.warning("Closing session for user %s failed", user_id, exc_info=True)
            return False
        return True

    async def shutdown(self, *, wait: bool = False) -> None:
        if self._closed:
            return
        self._closed = True

        if wait:
            await self._queue.join()

        while not self._queue.empty():
            _task, fut = self._queue.get_nowait()
            fut.cancel()
            self._queue.task_done()

        workers, self._workers = self._workers, []
        for w in workers:
            w.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

        for user_id in list(self._sessions):
            await self.release_session(user_id)
        await self.browser.stop()
        logger.info("Execution queue shut down")
