from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from playwright.async_api import Locator, Page


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Found:
    selector: str
    count: int = 1


@dataclass(frozen=True)
class NotFound:
    selector: str


@dataclass(frozen=True)
class LookupFailed:
    """The lookup itself blew up (detached frame, closed page); distinct from a clean miss."""

    selector: str
    message: str


LookupResult = Union[Found, NotFound, LookupFailed]


class PortalPage(Protocol):
    """
    What the portal protocol needs from a browser tab.

    Kept small so the protocol can run against an in-memory fake in tests.
    """

    @property
    def url(self) -> str: ...

    async def goto(self, url: str) -> None: ...

    async def locate(self, selector: str, *, visible: bool = False) -> LookupResult: ...

    async def fill(self, selector: str, value: str) -> None: ...

    async def click(self, selector: str) -> None: ...

    async def select_option(
        self, selector: str, *, label: Optional[str] = None, value: Optional[str] = None
    ) -> None: ...

    async def text_of(self, selector: str) -> str: ...

    async def wait_for_settle(self, timeout_ms: int) -> None: ...

    async def pause(self, ms: int) -> None: ...

    async def wait_for_filled(self, selector: str, timeout_ms: int) -> bool: ...

    async def screenshot(self) -> bytes: ...

    async def close(self) -> None: ...


class PlaywrightPortalPage:
    """PortalPage backed by a Playwright async `Page`."""

    # Cap on candidates inspected when looking for a visible match.
    MAX_CANDIDATES = 25
    # networkidle never arrives on pages with long-polling widgets; don't wait on it for long.
    NETWORK_IDLE_CAP_MS = 5_000

    def __init__(self, page: Page) -> None:
        self._page = page

    @property
    def url(self) -> str:
        return self._page.url

    @property
    def raw(self) -> Page:
        return self._page

    async def goto(self, url: str) -> None:
        await self._page.goto(url, wait_until="domcontentloaded")

    async def _first_visible(self, selector: str) -> Optional[Locator]:
        loc = self._page.locator(selector)
        try:
            n = min(int(await loc.count()), self.MAX_CANDIDATES)
        except Exception:
            n = 0
        for i in range(n):
            cand = loc.nth(i)
            try:
                if await cand.is_visible():
                    return cand
            except Exception:
                continue
        return None

    async def locate(self, selector: str, *, visible: bool = False) -> LookupResult:
        try:
            if visible:
                cand = await self._first_visible(selector)
                return Found(selector) if cand is not None else NotFound(selector)
            n = int(await self._page.locator(selector).count())
        except Exception as e:
            logger.debug("Lookup failed for %s", selector, exc_info=True)
            return LookupFailed(selector, str(e))
        return Found(selector, n) if n > 0 else NotFound(selector)

    async def _target(self, selector: str) -> Locator:
        cand = await self._first_visible(selector)
        if cand is not None:
            return cand
        # Nothing visible yet: let Playwright's auto-wait decide (raises on timeout).
        return self._page.locator(selector).first

    async def fill(self, selector: str, value: str) -> None:
        target = await self._target(selector)
        await target.fill(value)
        # JSF/jQuery handlers on the portal listen for change, not input.
        try:
            await target.dispatch_event("change")
        except Exception:
            logger.debug("change event dispatch failed for %s", selector, exc_info=True)

    async def click(self, selector: str) -> None:
        target = await self._target(selector)
        await target.click()

    async def select_option(
        self, selector: str, *, label: Optional[str] = None, value: Optional[str] = None
    ) -> None:
        if label is None and value is None:
            raise ValueError("select_option requires label or value")
        target = self._page.locator(selector).first
        if label is not None:
            await target.select_option(label=label)
        else:
            await target.select_option(value=value)

    async def text_of(self, selector: str) -> str:
        texts = await self._page.locator(selector).all_text_contents()
        return " | ".join(t.strip() for t in texts if t and t.strip())

    async def wait_for_settle(self, timeout_ms: int) -> None:
        try:
            await self._page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
        except Exception:
            pass
        try:
            await self._page.wait_for_load_state(
                "networkidle", timeout=min(timeout_ms, self.NETWORK_IDLE_CAP_MS)
            )
        except Exception:
            pass
        await self._page.wait_for_timeout(500)

    async def pause(self, ms: int) -> None:
        await self._page.wait_for_timeout(ms)

    async def wait_for_filled(self, selector: str, timeout_ms: int) -> bool:
        try:
            await self._page.wait_for_function(
                "(sel) => { const el = document.querySelector(sel); return !!el && (el.value || '').trim() !== ''; }",
                arg=selector,
                timeout=timeout_ms,
            )
            return True
        except Exception:
            return False

    async def screenshot(self) -> bytes:
        return await self._page.screenshot(full_page=True)

    async def close(self) -> None:
        if self._page.is_closed():
            return
        await self._page.close()
