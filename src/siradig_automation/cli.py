from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv

from .artifacts import ArtifactStore
from .config import AppConfig, load_config
from .crypto import CredentialCipher
from .errors import AutomationError, UnknownCodeError
from .logging_config import configure_logging
from .logstream import JobMonitor, LogStream
from .models import AutomationJob, DeductionRecord, JobKind, JobStatus, StoredCredential
from .orchestrator import JobOrchestrator
from .pool import BrowserProcess, ExecutionQueue, context_options
from .portal.mapping import category_label, document_type_label
from .state import StateStore
from .util.cuit import format_cuit, is_valid_cuit, normalize_cuit
from .util.dates import parse_invoice_date
from .util.debug_bundle import create_job_bundle
from .util.money import parse_amount


logger = logging.getLogger("siradig_automation")


@dataclass
class Runtime:
    cfg: AppConfig
    store: StateStore
    artifacts: ArtifactStore
    monitor: JobMonitor
    queue: ExecutionQueue
    orchestrator: JobOrchestrator
    stream: LogStream


def _build_runtime(cfg: AppConfig) -> Runtime:
    store = StateStore(cfg.state.db_path)
    artifacts = ArtifactStore(cfg.artifacts.root_dir, index=store)
    monitor = JobMonitor()
    queue = ExecutionQueue(
        BrowserProcess(cfg.browser),
        max_concurrent=cfg.queue.max_concurrent,
        context_options=context_options(cfg.browser),
        default_timeout_ms=cfg.browser.default_timeout_ms,
    )

    # Built on first use so read-only commands work without the secret key.
    def _decrypt(ciphertext: str, iv: str, auth_tag: str) -> str:
        return CredentialCipher(cfg.security.secret_key).decrypt(ciphertext, iv, auth_tag)

    orchestrator = JobOrchestrator(
        store,
        queue,
        artifacts,
        monitor,
        _decrypt,
        settle_timeout_ms=cfg.portal.settle_timeout_ms,
    )
    stream = LogStream(monitor, store, artifacts, poll_interval=cfg.stream.poll_interval_seconds)
    return Runtime(cfg, store, artifacts, monitor, queue, orchestrator, stream)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="siradig_automation")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")

    sub = p.add_subparsers(dest="cmd", required=True)

    add_user = sub.add_parser("add-user", help="Register a user")
    add_user.add_argument("--user-id", default="", help="User id (default: random)")
    add_user.add_argument("--email", required=True)
    add_user.add_argument("--auto-submit", action="store_true", help="Save deductions without a preview step")

    cred = sub.add_parser("set-credential", help="Store the user's ARCA CUIT + clave fiscal (encrypted)")
    cred.add_argument("--user-id", required=True)
    cred.add_argument("--cuit", required=True)
    cred.add_argument(
        "--password-env",
        default="ARCA_PASSWORD",
        help="Env var holding the clave fiscal (default: ARCA_PASSWORD). Prompts when unset.",
    )

    auto = sub.add_parser("set-auto-submit", help="Turn auto-submit on/off for a user")
    auto.add_argument("--user-id", required=True)
    auto.add_argument("value", choices=("on", "off"))

    ded = sub.add_parser("add-deduction", help="Record a deduction to submit")
    ded.add_argument("--user-id", required=True)
    ded.add_argument("--category", required=True, help="Category code, e.g. GASTOS_MEDICOS")
    ded.add_argument("--provider-cuit", required=True)
    ded.add_argument("--invoice-type", required=True, help="Document type code, e.g. FACTURA_B")
    ded.add_argument("--amount", required=True)
    ded.add_argument("--month", type=int, required=True, help="Fiscal month 1-12")
    ded.add_argument("--year", type=int, required=True, help="Fiscal year")
    ded.add_argument("--invoice-number", default="", help="PPPPP-NNNNNNNN")
    ded.add_argument("--invoice-date", default="", help="DD/MM/YYYY or YYYY-MM-DD")

    run = sub.add_parser("run", help="Create a job, run it and follow its log")
    run.add_argument("--user-id", required=True)
    run.add_argument("--deduction-id", default="")
    run.add_argument("--validate-only", action="store_true", help="Only log in and reach SiRADIG")
    run.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    process = sub.add_parser("process", help="Run an existing PENDING job")
    process.add_argument("job_id")
    process.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    confirm = sub.add_parser("confirm", help="Submit a job that is waiting for confirmation")
    confirm.add_argument("job_id")
    confirm.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    cancel = sub.add_parser("cancel", help="Cancel a pending/running/waiting job")
    cancel.add_argument("job_id")

    delete = sub.add_parser("delete", help="Delete a finished job")
    delete.add_argument("job_id")
    delete.add_argument("--purge", action="store_true", help="Also remove screenshots/video from disk")

    retry = sub.add_parser("retry", help="Reset a FAILED job to PENDING")
    retry.add_argument("job_id")
    retry.add_argument("--process", action="store_true", help="Run it right away")

    status = sub.add_parser("status", help="Show a job")
    status.add_argument("job_id")

    logs = sub.add_parser("logs", help="Print a job's log")
    logs.add_argument("job_id")

    jobs = sub.add_parser("jobs", help="List jobs")
    jobs.add_argument("--user-id", default="")

    sub.add_parser("recover", help="Mark RUNNING jobs left by a crashed process as FAILED")

    bundle = sub.add_parser("bundle", help="Zip a job's artifacts + logs for debugging")
    bundle.add_argument("job_id")
    bundle.add_argument("--out-dir", default="data", help="Where to write the zip (default: data)")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)
    if getattr(args, "headful", False):
        cfg.browser.headless = False

    rt = _build_runtime(cfg)
    try:
        return _dispatch(args, rt)
    except (AutomationError, UnknownCodeError, ValueError) as e:
        print(f"❌ {e}")
        return 2
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130
    finally:
        rt.store.close()


def _dispatch(args: argparse.Namespace, rt: Runtime) -> int:
    store, orch = rt.store, rt.orchestrator

    if args.cmd == "add-user":
        user = store.add_user(args.user_id or uuid.uuid4().hex, args.email, auto_submit=args.auto_submit)
        print(user.id)
        return 0

    if args.cmd == "set-credential":
        if store.get_user(args.user_id) is None:
            raise AutomationError(f"Unknown user: {args.user_id}")
        if not is_valid_cuit(args.cuit):
            raise ValueError(f"Invalid CUIT: {args.cuit}")
        password = os.getenv(args.password_env, "") or getpass.getpass("Clave fiscal: ")
        if not password:
            raise ValueError("Empty clave fiscal")
        sealed = CredentialCipher(rt.cfg.security.secret_key).encrypt(password)
        store.save_credential(
            StoredCredential(
                user_id=args.user_id,
                cuit=normalize_cuit(args.cuit),
                ciphertext=sealed.ciphertext,
                iv=sealed.iv,
                auth_tag=sealed.auth_tag,
            )
        )
        print(f"✅ Credential stored for CUIT {format_cuit(args.cuit)}")
        return 0

    if args.cmd == "set-auto-submit":
        store.set_auto_submit(args.user_id, args.value == "on")
        print(f"auto_submit={args.value}")
        return 0

    if args.cmd == "add-deduction":
        if store.get_user(args.user_id) is None:
            raise AutomationError(f"Unknown user: {args.user_id}")
        # Fail on unknown codes now rather than half-way through a portal run.
        category_label(args.category)
        document_type_label(args.invoice_type)
        if not is_valid_cuit(args.provider_cuit):
            logger.warning("Provider CUIT %s does not pass the check digit; storing anyway.", args.provider_cuit)
        record = store.add_deduction(
            DeductionRecord(
                id=uuid.uuid4().hex,
                user_id=args.user_id,
                category=args.category,
                provider_cuit=normalize_cuit(args.provider_cuit),
                invoice_type=args.invoice_type,
                amount=parse_amount(args.amount),
                fiscal_month=args.month,
                fiscal_year=args.year,
                invoice_number=args.invoice_number or None,
                invoice_date=parse_invoice_date(args.invoice_date) if args.invoice_date else None,
            )
        )
        print(record.id)
        return 0

    if args.cmd == "run":
        kind = JobKind.VALIDATE_CREDENTIALS if args.validate_only else JobKind.SUBMIT_DEDUCTION
        job = orch.create_job(args.user_id, args.deduction_id or None, kind=kind)
        print(f"Job {job.id}")
        return _report(rt, asyncio.run(_process_and_follow(rt, job.id)))

    if args.cmd == "process":
        return _report(rt, asyncio.run(_process_and_follow(rt, args.job_id)))

    if args.cmd == "confirm":
        return _report(rt, asyncio.run(_confirm(rt, args.job_id)))

    if args.cmd == "cancel":
        job = orch.cancel(args.job_id)
        print(f"{job.id}\t{job.status.value}")
        return 0

    if args.cmd == "delete":
        orch.delete(args.job_id, purge_files=args.purge)
        print(f"Deleted {args.job_id}")
        return 0

    if args.cmd == "retry":
        job = orch.retry(args.job_id)
        if not args.process:
            print(f"{job.id}\t{job.status.value}")
            return 0
        return _report(rt, asyncio.run(_process_and_follow(rt, job.id)))

    if args.cmd == "status":
        _print_job(orch.get_job(args.job_id), rt)
        return 0

    if args.cmd == "logs":
        for line in orch.get_logs(args.job_id):
            print(line)
        return 0

    if args.cmd == "jobs":
        for job in store.list_jobs(args.user_id or None):
            print(f"{job.id}\t{job.kind.value}\t{job.status.value}\t{job.created_at.isoformat()}")
        return 0

    if args.cmd == "recover":
        ids = orch.recover_interrupted()
        for job_id in ids:
            print(f"{job_id}\tFAILED")
        return 0

    if args.cmd == "bundle":
        job = orch.get_job(args.job_id)
        out_zip = _write_bundle(rt, job, out_dir=args.out_dir)
        print(f"✅ Debug bundle written: {out_zip}")
        return 0

    raise AssertionError("Unhandled command")


def _print_event(event: dict[str, Any]) -> None:
    if "log" in event:
        print(event["log"])
    elif "screenshot" in event:
        shot = event["screenshot"]
        print(f"    [screenshot] {shot['name']} - {shot['label']}")
    elif event.get("done"):
        videos = ", ".join(event.get("videos") or []) or "none"
        print(f"== {event['status']} (videos: {videos})")


async def _process_and_follow(rt: Runtime, job_id: str) -> AutomationJob:
    try:
        fut = rt.orchestrator.process(job_id)
        async for event in rt.stream.events(job_id):
            _print_event(event)
        return await fut
    finally:
        await rt.queue.shutdown()


async def _confirm(rt: Runtime, job_id: str) -> AutomationJob:
    try:
        confirming = asyncio.ensure_future(rt.orchestrator.confirm(job_id))
        # Let confirm() validate the job and mark it live before attaching the stream.
        await asyncio.sleep(0)
        if not confirming.done():
            async for event in rt.stream.events(job_id):
                _print_event(event)
        return await confirming
    finally:
        await rt.queue.shutdown()


def _write_bundle(rt: Runtime, job: AutomationJob, *, out_dir: str = "data") -> Path:
    return create_job_bundle(
        job_id=job.id,
        job_dir=rt.artifacts.job_dir(job.id),
        logs=job.logs,
        out_dir=out_dir,
        log_file=rt.cfg.logging.file_path or None,
    )


def _print_job(job: AutomationJob, rt: Runtime) -> None:
    print(f"id:           {job.id}")
    print(f"kind:         {job.kind.value}")
    print(f"status:       {job.status.value}")
    print(f"attempts:     {job.attempts}")
    if job.error_message:
        print(f"error:        {job.error_message}")
    if job.challenge_detected:
        print("challenge:    captcha detected (solve it manually, then retry)")
    if job.screenshot_ref:
        print(f"preview:      {rt.artifacts.job_dir(job.id) / job.screenshot_ref}")
    print(f"screenshots:  {len(rt.artifacts.get_screenshots(job.id))}")
    print(f"videos:       {', '.join(rt.artifacts.get_video_filenames(job.id)) or 'none'}")


def _report(rt: Runtime, job: AutomationJob) -> int:
    if job.status == JobStatus.FAILED:
        try:
            out_zip = _write_bundle(rt, job)
            print(f"Debug bundle written: {out_zip}")
        except Exception:
            logger.warning("Could not write debug bundle for job %s", job.id, exc_info=True)
        print(f"❌ Job {job.id} failed: {job.error_message}")
        return 1

    # Refresh the last-known-good snapshot only after a run that went well.
    try:
        rt.store.backup()
    except Exception:
        logger.debug("Failed to refresh state DB backup.", exc_info=True)

    if job.status == JobStatus.WAITING_CONFIRMATION:
        print(f"Preview ready. Review it, then run: siradig-automation confirm {job.id}")
        return 0
    print(f"✅ Job {job.id} {job.status.value}")
    return 0
