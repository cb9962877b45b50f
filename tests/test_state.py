from __future__ import annotations

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from siradig_automation.models import (
    AutomationJob,
    DeductionRecord,
    DeductionStatus,
    FailureKind,
    JobStatus,
    ScreenshotMeta,
    StoredCredential,
    utcnow,
)
from siradig_automation.state import StateStore


def _deduction(**overrides: object) -> DeductionRecord:
    data: dict = dict(
        id="d1",
        user_id="u1",
        category="GASTOS_MEDICOS",
        provider_cuit="30712345671",
        invoice_type="FACTURA_B",
        amount=Decimal("1500.00"),
        fiscal_month=3,
        fiscal_year=2025,
        invoice_number="00001-00000123",
        invoice_date=date(2025, 3, 10),
    )
    data.update(overrides)
    return DeductionRecord(**data)


def test_state_creates_backup(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    s = StateStore(str(db_path))
    try:
        s.add_user("u1", "u1@example.com")
        s.backup()
    finally:
        s.close()

    bak = tmp_path / "state.db.bak"
    assert db_path.exists()
    assert bak.exists()
    assert bak.stat().st_size > 0


def test_state_restores_from_backup_when_db_corrupted(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"

    # Create a valid DB + backup.
    s1 = StateStore(str(db_path))
    try:
        s1.add_user("u1", "u1@example.com")
        s1.backup()
    finally:
        s1.close()

    bak = tmp_path / "state.db.bak"
    assert bak.exists()

    # Corrupt the main DB file.
    db_path.write_bytes(b"not a sqlite db")

    # Re-open: should quarantine the corrupted DB and restore from backup.
    s2 = StateStore(str(db_path))
    try:
        user = s2.get_user("u1")
        assert user is not None
        assert user.email == "u1@example.com"
    finally:
        s2.close()

    quarantined = list(tmp_path.glob("state.db.corrupt-*"))
    assert quarantined, "expected quarantined corrupted db file to be created"


def test_users_and_credentials(tmp_path: Path) -> None:
    s = StateStore(tmp_path / "state.db")
    try:
        s.add_user("u1", "u1@example.com")
        assert s.get_auto_submit("u1") is False
        s.set_auto_submit("u1", True)
        assert s.get_auto_submit("u1") is True
        assert s.get_auto_submit("nobody") is False
        with pytest.raises(KeyError):
            s.set_auto_submit("nobody", True)

        assert s.get_credential("u1") is None
        s.save_credential(StoredCredential(user_id="u1", cuit="20123456786", ciphertext="c1", iv="i1", auth_tag="t1"))
        s.save_credential(StoredCredential(user_id="u1", cuit="20123456786", ciphertext="c2", iv="i2", auth_tag="t2"))
        cred = s.get_credential("u1")
        assert cred is not None
        assert (cred.ciphertext, cred.iv, cred.auth_tag) == ("c2", "i2", "t2")
        assert "c2" not in repr(cred)
    finally:
        s.close()


def test_deductions_round_trip_types(tmp_path: Path) -> None:
    s = StateStore(tmp_path / "state.db")
    try:
        s.add_user("u1", "u1@example.com")
        s.add_deduction(_deduction())
        d = s.get_deduction("d1")
        assert d is not None
        assert d.amount == Decimal("1500.00")
        assert d.invoice_date == date(2025, 3, 10)
        assert d.status == DeductionStatus.PENDING

        s.update_deduction_status("d1", DeductionStatus.PREVIEW_READY)
        assert s.get_deduction("d1").status == DeductionStatus.PREVIEW_READY  # type: ignore[union-attr]
        assert s.get_deduction("missing") is None
    finally:
        s.close()


def test_jobs_logs_and_updates(tmp_path: Path) -> None:
    s = StateStore(tmp_path / "state.db")
    try:
        s.create_job(AutomationJob(id="j1", user_id="u1", deduction_id="d1"))
        s.append_job_log("j1", "[10:00:00] one")
        s.append_job_log("j1", "[10:00:01] two")
        s.update_job("j1", status=JobStatus.RUNNING, attempts=1, started_at=utcnow())

        job = s.get_job("j1")
        assert job is not None
        assert job.status == JobStatus.RUNNING
        assert job.attempts == 1
        assert job.logs == ["[10:00:00] one", "[10:00:01] two"]
        assert [j.id for j in s.find_jobs_by_status(JobStatus.RUNNING)] == ["j1"]
        assert s.find_jobs_by_status(JobStatus.PENDING) == []

        s.update_job(
            "j1",
            status=JobStatus.FAILED,
            error_message="boom",
            failure_kind=FailureKind.CHALLENGE,
            completed_at=utcnow(),
        )
        job = s.get_job("j1")
        assert job is not None
        assert job.challenge_detected
        assert job.completed_at is not None

        with pytest.raises(ValueError):
            s.update_job("j1", user_id="u2")

        assert s.count_jobs_for_deduction("d1") == 1
        assert [j.id for j in s.list_jobs("u1")] == ["j1"]
        assert s.list_jobs("u2") == []
    finally:
        s.close()


def test_delete_job_removes_logs_and_screenshots(tmp_path: Path) -> None:
    s = StateStore(tmp_path / "state.db")
    try:
        s.create_job(AutomationJob(id="j1", user_id="u1", deduction_id="d1"))
        s.append_job_log("j1", "line")
        s.add_screenshot("j1", ScreenshotMeta(step=1, name="step-01-login-page.png", label="Login"))
        assert len(s.list_screenshots("j1")) == 1

        s.delete_job("j1")
        assert s.get_job("j1") is None
        assert s.list_screenshots("j1") == []
        assert s.count_jobs_for_deduction("d1") == 0

        # Re-created id starts with an empty log.
        s.create_job(AutomationJob(id="j1", user_id="u1"))
        assert s.get_job("j1").logs == []  # type: ignore[union-attr]
    finally:
        s.close()


def test_terminal_job_requires_completed_at() -> None:
    with pytest.raises(ValueError):
        AutomationJob(id="j", user_id="u", status=JobStatus.COMPLETED)
    with pytest.raises(ValueError):
        AutomationJob(id="j", user_id="u", status=JobStatus.RUNNING, completed_at=utcnow())
    AutomationJob(id="j", user_id="u", status=JobStatus.CANCELLED, completed_at=utcnow())
