from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..models import DeductionRecord, ScreenshotMeta
from ..util.cuit import format_cuit, normalize_cuit
from ..util.dates import format_portal_date
from ..util.money import format_portal_amount
from .mapping import category_label, document_type_label, month_name
from .page import Found, LookupFailed, PortalPage
from .selectors import PortalSelectors
from .steps import StepRecorder


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortalResult:
    """
    Outcome of one protocol stage. Stages never raise; callers branch on this.

    `challenge` marks an anti-automation check (a human has to step in; retrying won't help).
    `soft` marks a submit that finished without the portal confirming it either way.
    """

    ok: bool
    error: Optional[str] = None
    challenge: bool = False
    soft: bool = False
    screenshot: Optional[ScreenshotMeta] = None

    @classmethod
    def success(cls, *, screenshot: Optional[ScreenshotMeta] = None, soft: bool = False) -> "PortalResult":
        return cls(ok=True, screenshot=screenshot, soft=soft)

    @classmethod
    def failure(cls, error: str, *, screenshot: Optional[ScreenshotMeta] = None) -> "PortalResult":
        return cls(ok=False, error=error or "Unknown portal error", screenshot=screenshot)

    @classmethod
    def challenge_detected(cls, error: str, *, screenshot: Optional[ScreenshotMeta] = None) -> "PortalResult":
        return cls(ok=False, error=error, challenge=True, screenshot=screenshot)


class StepFailed(RuntimeError):
    """A required control was missing; turned into a failure result by the enclosing stage."""


class DeductionPortalClient:
    """
    ARCA login -> SiRADIG -> F.572 deduction form, one tab.

    Every browser action is followed by a numbered screenshot and a job log line so a run can be
    replayed after the fact from its artifacts.
    """

    def __init__(
        self,
        page: PortalPage,
        recorder: StepRecorder,
        *,
        selectors: Optional[PortalSelectors] = None,
        settle_timeout_ms: int = 10_000,
    ) -> None:
        self.page = page
        self.recorder = recorder
        self.selectors = selectors or PortalSelectors()
        self.settle_timeout_ms = settle_timeout_ms

    # Helpers

    def _log(self, message: str) -> None:
        self.recorder.log(message)

    async def _capture(self, slug: str, label: str) -> Optional[ScreenshotMeta]:
        return await self.recorder.capture(self.page, slug, label)

    async def _settle(self) -> None:
        await self.page.wait_for_settle(self.settle_timeout_ms)

    async def _present(self, selector: str, *, visible: bool = False) -> bool:
        res = await self.page.locate(selector, visible=visible)
        if isinstance(res, LookupFailed):
            logger.warning("Lookup of %s failed: %s", selector, res.message)
            return False
        return isinstance(res, Found)

    async def _require(self, selector: str, what: str) -> None:
        if not await self._present(selector):
            raise StepFailed(f"{what} not found on the page")

    async def _stage_error(self, stage: str, exc: BaseException, slug: str) -> PortalResult:
        msg = str(exc).strip() or exc.__class__.__name__
        logger.warning("Portal stage %s failed: %s", stage, msg, exc_info=not isinstance(exc, StepFailed))
        self._log(f"Error during {stage}: {msg}")
        shot = await self._capture(slug, f"Error during {stage}")
        return PortalResult.failure(msg, screenshot=shot)

    # Stage (a): authenticate and reach the application

    async def login(self, cuit: str, password: str) -> PortalResult:
        sel = self.selectors
        try:
            self._log("Opening the ARCA login page...")
            await self.page.goto(sel.login_url)
            await self._settle()
            await self._capture("login-page", "ARCA login page")

            if await self._present(sel.captcha):
                shot = await self._capture("captcha-detected", "Captcha detected")
                self._log("Captcha detected. Manual intervention required.")
                return PortalResult.challenge_detected("Captcha detected on the login page", screenshot=shot)

            self._log(f"Entering CUIT {format_cuit(cuit)}...")
            await self._require(sel.cuit_input, "CUIT input")
            await self.page.fill(sel.cuit_input, normalize_cuit(cuit))
            await self.page.click(sel.cuit_next_button)
            await self._settle()
            await self._capture("after-cuit", "CUIT entered")

            self._log("Entering clave fiscal...")
            await self._require(sel.password_input, "Password input")
            await self.page.fill(sel.password_input, password)
            await self.page.click(sel.login_submit_button)
            await self._settle()

            if await self._present(sel.login_error, visible=True):
                text = await self.page.text_of(sel.login_error)
                shot = await self._capture("login-error", "Login error")
                message = text or "Authentication error"
                self._log(f"Login error: {message}")
                return PortalResult.failure(message, screenshot=shot)

            if sel.login_url_marker in (self.page.url or ""):
                shot = await self._capture("login-failed", "Still on the login page")
                self._log("Login failed: still on the login page")
                return PortalResult.failure("Login failed: still on the login page", screenshot=shot)

            shot = await self._capture("login-success", "Logged in")
            self._log("Logged in to ARCA")
            return PortalResult.success(screenshot=shot)
        except Exception as e:
            return await self._stage_error("login", e, "login-exception")

    async def open_application(self) -> PortalResult:
        sel = self.selectors
        try:
            self._log("Opening the services portal...")
            await self.page.goto(sel.services_url)
            await self._settle()
            await self._capture("portal", "ARCA services portal")

            found = await self._present(sel.application_link)
            if not found:
                self._log("Searching for SiRADIG in the services portal...")
                if await self._present(sel.service_search_input):
                    await self.page.fill(sel.service_search_input, sel.application_search_text)
                    await self.page.pause(2_000)
                    found = await self._present(sel.application_link)

            if not found:
                shot = await self._capture("application-not-found", "SiRADIG link not found")
                self._log("SiRADIG application link not found")
                return PortalResult.failure("Application link not found", screenshot=shot)

            self._log("Opening SiRADIG...")
            await self.page.click(sel.application_link)
            await self._settle()
            shot = await self._capture("application-loaded", "SiRADIG loaded")
            self._log("SiRADIG loaded")
            return PortalResult.success(screenshot=shot)
        except Exception as e:
            return await self._stage_error("application navigation", e, "navigation-error")

    # Stage (b): fill and submit

    async def _navigate_to_deductions(self, fiscal_year: int) -> None:
        """Walk the SiRADIG wizard up to the deductions section. Every step is skipped when absent."""
        sel = self.selectors

        if await self._present(sel.person_button, visible=True):
            self._log("Selecting the represented person...")
            await self.page.click(sel.person_button)
            await self._settle()
            await self._capture("person-selected", "Person selected")

        if await self._present(sel.period_select):
            self._log(f"Selecting fiscal period {fiscal_year}...")
            await self.page.select_option(sel.period_select, value=str(fiscal_year))
            await self._capture("period-selected", f"Period {fiscal_year} selected")
            if await self._present(sel.continue_button, visible=True):
                await self.page.click(sel.continue_button)
                await self._settle()
                await self._capture("after-continue", "SiRADIG main page")

        if await self._present(sel.draft_reminder_accept, visible=True):
            self._log("Closing the draft reminder...")
            await self.page.click(sel.draft_reminder_accept)
            await self.page.pause(500)

        if await self._present(sel.new_draft_button, visible=True):
            self._log("Creating a new draft...")
            await self.page.click(sel.new_draft_button)
            # Menu items slide in after the click.
            await self.page.pause(2_000)
            await self._capture("draft-menu", "Draft menu")
        else:
            self._log("Existing draft detected, continuing...")

        if await self._present(sel.form_load_button, visible=True):
            self._log("Opening the form...")
            await self.page.click(sel.form_load_button)
            await self._settle()
            await self._capture("form-loaded", "F.572 Web form loaded")

        if await self._present(sel.deductions_section):
            self._log("Expanding the deductions section...")
            await self.page.click(sel.deductions_section)
            await self._settle()
            await self.page.pause(1_000)
            await self._capture("deductions-section", "Deductions section")

    async def fill_deduction(self, deduction: DeductionRecord) -> PortalResult:
        sel = self.selectors
        try:
            # Resolve labels before touching the page so a bad code fails without side effects.
            category = category_label(deduction.category)
            doc_type = document_type_label(deduction.invoice_type)
            month = month_name(deduction.fiscal_month)

            await self._navigate_to_deductions(deduction.fiscal_year)

            self._log("Opening the deduction type menu...")
            await self._require(sel.add_deduction_toggle, "Add deduction control")
            await self.page.click(sel.add_deduction_toggle)
            await self.page.pause(1_500)
            await self._capture("add-deduction-menu", "Deduction type menu")

            self._log(f"Selecting category: {category}")
            option = sel.category_option(category)
            await self._require(option, f"Category option {category!r}")
            await self.page.click(option)
            await self._settle()
            # Dependent fields render after the category is chosen.
            await self.page.pause(1_000)
            await self._capture("category-selected", f"Category: {category}")

            self._log(f"Entering provider CUIT {format_cuit(deduction.provider_cuit)}")
            await self.page.fill(sel.provider_cuit_input, normalize_cuit(deduction.provider_cuit))
            if not await self.page.wait_for_filled(sel.provider_name_input, 10_000):
                self._log("Provider name was not filled in automatically")
            await self._capture("cuit-filled", "Provider CUIT entered")

            self._log(f"Selecting month: {month}")
            await self.page.select_option(sel.month_select, value=str(deduction.fiscal_month))

            if await self._present(sel.add_receipt_button, visible=True):
                self._log("Opening the receipt dialog...")
                await self.page.click(sel.add_receipt_button)
                await self.page.pause(1_000)
                await self._capture("receipt-dialog", "Receipt dialog")

            if deduction.invoice_date is not None:
                date_str = format_portal_date(deduction.invoice_date)
                self._log(f"Entering receipt date: {date_str}")
                await self.page.fill(sel.receipt_date_input, date_str)

            self._log(f"Selecting receipt type: {doc_type}")
            try:
                await self.page.select_option(sel.receipt_type_select, label=doc_type)
            except Exception:
                logger.debug("Receipt type option %r unavailable", doc_type, exc_info=True)
                self._log(f"Receipt type {doc_type!r} not available, keeping the default")

            if deduction.invoice_number:
                number = deduction.invoice_number.strip()
                self._log(f"Entering receipt number: {number}")
                parts = number.split("-")
                if len(parts) == 2:
                    await self.page.fill(sel.receipt_point_of_sale_input, parts[0])
                    await self.page.fill(sel.receipt_number_input, parts[1])
                else:
                    await self.page.fill(sel.receipt_number_input, number)

            amount = format_portal_amount(deduction.amount)
            self._log(f"Entering amount: ${amount}")
            await self.page.fill(sel.receipt_amount_input, amount)

            if await self._present(sel.receipt_refunded_input):
                await self.page.fill(sel.receipt_refunded_input, "0")

            if await self._present(sel.receipt_add_button, visible=True):
                self._log("Adding the receipt...")
                await self.page.click(sel.receipt_add_button)
                await self.page.pause(1_500)

            shot = await self._capture("form-filled", "Form filled")
            self._log("Form filled")
            return PortalResult.success(screenshot=shot)
        except Exception as e:
            return await self._stage_error("form fill", e, "form-error")

    async def submit_deduction(self) -> PortalResult:
        sel = self.selectors
        try:
            self._log("Saving the deduction...")
            await self._require(sel.save_button, "Save button")
            await self.page.click(sel.save_button)
            # Save handlers fire their request after a short timer.
            await self.page.pause(500)
            await self._settle()
            await self._capture("after-save", "Saving deduction")

            if await self._present(sel.confirm_modal_button, visible=True):
                self._log("Confirming the save...")
                await self.page.click(sel.confirm_modal_button)
                await self._settle()

            if await self._present(sel.success_banner, visible=True):
                shot = await self._capture("submission-success", "Deduction saved")
                self._log("Deduction saved")
                return PortalResult.success(screenshot=shot)

            if await self._present(sel.error_banner, visible=True):
                text = await self.page.text_of(sel.error_banner)
                message = text or "The portal reported an error while saving"
                shot = await self._capture("submission-error", "Error while saving")
                self._log(f"Error while saving: {message}")
                return PortalResult.failure(message, screenshot=shot)

            shot = await self._capture("after-save-state", "State after saving")
            self._log("Deduction processed without explicit confirmation")
            return PortalResult.success(screenshot=shot, soft=True)
        except Exception as e:
            return await self._stage_error("submit", e, "submit-error")
