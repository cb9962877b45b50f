from __future__ import annotations

import os
from pathlib import Path

import pytest

from siradig_automation.artifacts import ArtifactStore, sanitize_slug, screenshot_filename
from siradig_automation.state import StateStore


def test_screenshot_filename() -> None:
    assert screenshot_filename(1, "login-page") == "step-01-login-page.png"
    assert screenshot_filename(12, "Form Filled!") == "step-12-Form-Filled.png"
    assert sanitize_slug("../../etc") == "etc"
    assert sanitize_slug("") == "step"


def test_save_and_list_screenshots(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    store.save_screenshot("job1", 1, "login-page", "ARCA login page", b"one")
    store.save_screenshot("job1", 2, "after-cuit", "CUIT entered", b"two")

    shots = store.get_screenshots("job1")
    assert [s.name for s in shots] == ["step-01-login-page.png", "step-02-after-cuit.png"]
    assert shots[0].label == "ARCA login page"
    assert shots[0].timestamp is not None
    assert store.next_step("job1") == 3
    assert store.read_screenshot_file("job1", "step-02-after-cuit.png") == b"two"
    assert store.get_screenshots("other") == []
    assert store.next_step("other") == 1


def test_step_numbers_start_at_one(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    with pytest.raises(ValueError):
        store.save_screenshot("job1", 0, "x", "x", b"")


def test_disk_fallback_after_restart(tmp_path: Path) -> None:
    ArtifactStore(tmp_path).save_screenshot("job1", 3, "form-filled", "Form filled", b"png")
    (tmp_path / "job1" / "notes.txt").write_text("ignored", encoding="utf-8")

    fresh = ArtifactStore(tmp_path)
    shots = fresh.get_screenshots("job1")
    assert len(shots) == 1
    assert shots[0].step == 3
    assert shots[0].label == "form filled"
    assert fresh.next_step("job1") == 4


def test_durable_index_preferred_over_disk(tmp_path: Path) -> None:
    db = StateStore(tmp_path / "state.db")
    try:
        ArtifactStore(tmp_path / "artifacts", index=db).save_screenshot(
            "job1", 1, "login-page", "ARCA login page", b"png"
        )
        shots = ArtifactStore(tmp_path / "artifacts", index=db).get_screenshots("job1")
        # Labels come back as recorded, not rebuilt from the filename.
        assert [(s.step, s.label) for s in shots] == [(1, "ARCA login page")]
    finally:
        db.close()


def test_read_screenshot_rejects_other_names(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    store.save_screenshot("job1", 1, "login-page", "x", b"png")
    assert store.read_screenshot_file("job1", "../state.db") is None
    assert store.read_screenshot_file("job1", "step-09-missing.png") is None
    with pytest.raises(ValueError):
        store.job_dir("../escape")


def test_reads_with_escaping_job_id_are_not_found(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path / "automation", index=None)
    (tmp_path / "etc").mkdir()
    (tmp_path / "etc" / "step-01-x.png").write_bytes(b"secret")

    assert store.read_screenshot_file("../etc", "step-01-x.png") is None
    assert store.read_video_file("../etc") is None
    assert store.read_video_file("..", "recording.webm") is None
    assert store.get_screenshots("../etc") == []
    assert store.get_video_filenames("a/b") == []
    assert store.next_step("../etc") == 1
    # Writes still refuse the id outright.
    with pytest.raises(ValueError):
        store.save_screenshot("../etc", 1, "x", "x", b"png")
    with pytest.raises(ValueError):
        store.ensure_video_dir("..")


def test_finalize_video_numbers_recordings(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    vdir = store.ensure_video_dir("job1")
    assert store.finalize_video("job1") is None

    (vdir / "a1b2c3.webm").write_bytes(b"first")
    assert store.finalize_video("job1") == "recording.webm"
    # Idempotent without new raw files.
    assert store.finalize_video("job1") == "recording.webm"

    (vdir / "d4e5f6.webm").write_bytes(b"second")
    assert store.finalize_video("job1") == "recording-2.webm"
    assert store.get_video_filenames("job1") == ["recording.webm", "recording-2.webm"]

    assert store.read_video_file("job1") == b"second"
    assert store.read_video_file("job1", "recording.webm") == b"first"
    assert store.read_video_file("job1", "../../x.webm") is None


def test_finalize_video_orders_raw_files_by_mtime(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    vdir = store.ensure_video_dir("job1")
    late = vdir / "aaa.webm"
    early = vdir / "zzz.webm"
    late.write_bytes(b"late")
    early.write_bytes(b"early")
    os.utime(early, (1_000, 1_000))
    os.utime(late, (2_000, 2_000))

    assert store.finalize_video("job1") == "recording-2.webm"
    assert store.read_video_file("job1", "recording.webm") == b"early"
    assert store.read_video_file("job1", "recording-2.webm") == b"late"


def test_video_list_falls_back_to_disk(tmp_path: Path) -> None:
    store = ArtifactStore(tmp_path)
    (store.ensure_video_dir("job1") / "raw.webm").write_bytes(b"v")
    store.finalize_video("job1")
    store.clear_artifacts("job1")
    assert store.get_video_filenames("job1") == ["recording.webm"]
    assert ArtifactStore(tmp_path).get_video_filenames("job1") == ["recording.webm"]
    assert store.get_video_filenames("nope") == []
