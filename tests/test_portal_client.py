from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal
from pathlib import Path

from fakes import SEL, FakePage, portal_page
from siradig_automation.artifacts import ArtifactStore
from siradig_automation.models import DeductionRecord
from siradig_automation.portal.client import DeductionPortalClient
from siradig_automation.portal.steps import StepRecorder


def _deduction(**overrides: object) -> DeductionRecord:
    data: dict = dict(
        id="d1",
        user_id="u1",
        category="GASTOS_MEDICOS",
        provider_cuit="30-71234567-1",
        invoice_type="FACTURA_B",
        amount=Decimal("1500"),
        fiscal_month=3,
        fiscal_year=2025,
        invoice_number="00001-00000123",
        invoice_date=date(2025, 3, 10),
    )
    data.update(overrides)
    return DeductionRecord(**data)


def _client(tmp_path: Path, page: FakePage) -> tuple[DeductionPortalClient, ArtifactStore, list[str]]:
    artifacts = ArtifactStore(tmp_path)
    lines: list[str] = []
    recorder = StepRecorder("job1", artifacts, lines.append)
    return DeductionPortalClient(page, recorder), artifacts, lines


def _names(artifacts: ArtifactStore) -> list[str]:
    return [s.name for s in artifacts.get_screenshots("job1")]


def test_login_success(tmp_path: Path) -> None:
    page = portal_page()
    client, artifacts, lines = _client(tmp_path, page)

    result = asyncio.run(client.login("20-12345678-6", "s3cr3t-pw"))

    assert result.ok
    assert ("fill", SEL.cuit_input, "20123456786") in page.actions
    assert ("fill", SEL.password_input, "s3cr3t-pw") in page.actions
    assert _names(artifacts) == [
        "step-01-login-page.png",
        "step-02-after-cuit.png",
        "step-03-login-success.png",
    ]
    assert result.screenshot is not None and result.screenshot.step == 3
    assert "Entering CUIT 20-12345678-6..." in lines
    # The password never reaches the job log.
    assert not any("s3cr3t-pw" in line for line in lines)


def test_login_captcha_is_a_challenge(tmp_path: Path) -> None:
    page = portal_page(captcha=True)
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.login("20123456786", "clave"))

    assert not result.ok
    assert result.challenge
    assert _names(artifacts) == ["step-01-login-page.png", "step-02-captcha-detected.png"]
    # Nothing was typed once the captcha showed up.
    assert not any(a[0] == "fill" for a in page.actions)


def test_login_error_banner(tmp_path: Path) -> None:
    page = portal_page(login_error="Clave o usuario incorrectos")
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.login("20123456786", "wrong"))

    assert not result.ok
    assert not result.challenge
    assert result.error == "Clave o usuario incorrectos"
    assert _names(artifacts)[-1].endswith("-login-error.png")


def test_login_still_on_login_page(tmp_path: Path) -> None:
    page = portal_page(stay_on_login=True)
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.login("20123456786", "clave"))

    assert not result.ok
    assert result.error == "Login failed: still on the login page"
    assert _names(artifacts)[-1].endswith("-login-failed.png")


def test_login_missing_cuit_input(tmp_path: Path) -> None:
    page = portal_page()
    page.present.discard(SEL.cuit_input)
    client, artifacts, lines = _client(tmp_path, page)

    result = asyncio.run(client.login("20123456786", "clave"))

    assert not result.ok
    assert "CUIT input not found" in (result.error or "")
    assert _names(artifacts)[-1].endswith("-login-exception.png")
    assert any(line.startswith("Error during login") for line in lines)


def test_lookup_failure_is_treated_as_absent(tmp_path: Path) -> None:
    page = portal_page(captcha=True)
    page.lookup_errors.add(SEL.captcha)
    client, _, _ = _client(tmp_path, page)

    assert asyncio.run(client.login("20123456786", "clave")).ok


def test_open_application_direct_link(tmp_path: Path) -> None:
    page = portal_page()
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.open_application())

    assert result.ok
    assert page.clicked(SEL.application_link)
    assert _names(artifacts) == ["step-01-portal.png", "step-02-application-loaded.png"]


def test_open_application_via_search(tmp_path: Path) -> None:
    page = portal_page(app_link=False, app_via_search=True)
    client, _, _ = _client(tmp_path, page)

    result = asyncio.run(client.open_application())

    assert result.ok
    assert ("fill", SEL.service_search_input, "SiRADIG") in page.actions
    assert page.clicked(SEL.application_link)


def test_open_application_not_found(tmp_path: Path) -> None:
    page = portal_page(app_link=False)
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.open_application())

    assert not result.ok
    assert result.error == "Application link not found"
    assert _names(artifacts)[-1].endswith("-application-not-found.png")


def test_fill_deduction_enters_every_field(tmp_path: Path) -> None:
    page = portal_page()
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.fill_deduction(_deduction()))

    assert result.ok
    assert ("select", SEL.period_select, "2025") in page.actions
    assert page.clicked(SEL.category_option("Gastos Medicos y Paramédicos"))
    assert page.values[SEL.provider_cuit_input] == "30712345671"
    assert page.values[SEL.month_select] == "3"
    assert page.values[SEL.receipt_date_input] == "10/03/2025"
    assert page.values[SEL.receipt_type_select] == "Factura B"
    assert page.values[SEL.receipt_point_of_sale_input] == "00001"
    assert page.values[SEL.receipt_number_input] == "00000123"
    assert page.values[SEL.receipt_amount_input] == "1500.00"
    assert page.values[SEL.receipt_refunded_input] == "0"
    assert page.clicked(SEL.receipt_add_button)

    names = _names(artifacts)
    assert names[-1].endswith("-form-filled.png")
    assert result.screenshot is not None and result.screenshot.name == names[-1]
    steps = [s.step for s in artifacts.get_screenshots("job1")]
    assert steps == list(range(1, len(steps) + 1))


def test_fill_deduction_skips_absent_wizard_steps(tmp_path: Path) -> None:
    page = portal_page()
    for selector in (SEL.person_button, SEL.period_select, SEL.new_draft_button, SEL.form_load_button):
        page.present.discard(selector)
    page.hidden.add(SEL.add_receipt_button)
    client, _, lines = _client(tmp_path, page)

    result = asyncio.run(client.fill_deduction(_deduction(invoice_number="123", invoice_date=None)))

    assert result.ok
    assert "Existing draft detected, continuing..." in lines
    assert not page.clicked(SEL.add_receipt_button)
    assert SEL.receipt_date_input not in page.values
    assert page.values[SEL.receipt_number_input] == "123"
    assert SEL.receipt_point_of_sale_input not in page.values


def test_fill_deduction_keeps_default_document_type(tmp_path: Path) -> None:
    page = portal_page(doc_type_missing=True)
    client, _, lines = _client(tmp_path, page)

    result = asyncio.run(client.fill_deduction(_deduction()))

    assert result.ok
    assert any("not available, keeping the default" in line for line in lines)


def test_fill_deduction_unknown_category_fails_before_touching_page(tmp_path: Path) -> None:
    page = portal_page()
    client, _, _ = _client(tmp_path, page)

    result = asyncio.run(client.fill_deduction(_deduction(category="VIAJES")))

    assert not result.ok
    assert "VIAJES" in (result.error or "")
    assert page.actions == []


def test_fill_deduction_missing_category_option(tmp_path: Path) -> None:
    page = portal_page()
    page.present.discard(SEL.category_option("Gastos Medicos y Paramédicos"))
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.fill_deduction(_deduction()))

    assert not result.ok
    assert "Category option" in (result.error or "")
    assert _names(artifacts)[-1].endswith("-form-error.png")


def test_submit_success(tmp_path: Path) -> None:
    page = portal_page(submit_outcome="success", modal=True)
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.submit_deduction())

    assert result.ok
    assert not result.soft
    assert page.clicked(SEL.confirm_modal_button)
    assert _names(artifacts)[-1].endswith("-submission-success.png")


def test_submit_error_banner(tmp_path: Path) -> None:
    page = portal_page(submit_outcome="error", error_text="Comprobante duplicado")
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.submit_deduction())

    assert not result.ok
    assert result.error == "Comprobante duplicado"
    assert _names(artifacts)[-1].endswith("-submission-error.png")


def test_submit_without_confirmation_is_soft_success(tmp_path: Path) -> None:
    page = portal_page(submit_outcome="none")
    client, artifacts, lines = _client(tmp_path, page)

    result = asyncio.run(client.submit_deduction())

    assert result.ok
    assert result.soft
    assert "Deduction processed without explicit confirmation" in lines
    assert _names(artifacts)[-1].endswith("-after-save-state.png")


def test_failed_screenshot_does_not_fail_the_step(tmp_path: Path) -> None:
    page = portal_page()
    page.screenshot_error = RuntimeError("Target closed")
    client, artifacts, _ = _client(tmp_path, page)

    result = asyncio.run(client.login("20123456786", "clave"))

    assert result.ok
    assert result.screenshot is None
    assert artifacts.get_screenshots("job1") == []


def test_recorder_continues_numbering(tmp_path: Path) -> None:
    artifacts = ArtifactStore(tmp_path)
    artifacts.save_screenshot("job1", 1, "login-page", "x", b"png")
    recorder = StepRecorder("job1", artifacts, lambda _m: None, first_step=artifacts.next_step("job1"))

    meta = asyncio.run(recorder.capture(FakePage(), "after-save", "Saving"))

    assert meta is not None
    assert meta.name == "step-02-after-save.png"
    assert recorder.next_step == 3
    assert recorder.last == meta
