from __future__ import annotations

import logging
import shutil
import sqlite3
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol, Union

from .models import (
    AutomationJob,
    DeductionRecord,
    DeductionStatus,
    JobStatus,
    ScreenshotMeta,
    StoredCredential,
    UserProfile,
)


logger = logging.getLogger(__name__)


class JobRepository(Protocol):
    """What the orchestrator and the log stream need from durable storage."""

    def get_user(self, user_id: str) -> Optional[UserProfile]: ...

    def get_auto_submit(self, user_id: str) -> bool: ...

    def get_credential(self, user_id: str) -> Optional[StoredCredential]: ...

    def get_deduction(self, deduction_id: str) -> Optional[DeductionRecord]: ...

    def update_deduction_status(self, deduction_id: str, status: DeductionStatus) -> None: ...

    def create_job(self, job: AutomationJob) -> AutomationJob: ...

    def get_job(self, job_id: str) -> Optional[AutomationJob]: ...

    def update_job(self, job_id: str, **fields: Any) -> None: ...

    def append_job_log(self, job_id: str, line: str) -> None: ...

    def delete_job(self, job_id: str) -> None: ...

    def count_jobs_for_deduction(self, deduction_id: str) -> int: ...

    def find_jobs_by_status(self, status: JobStatus) -> list[AutomationJob]: ...

    def delete_screenshots(self, job_id: str) -> None: ...


_JOB_UPDATABLE = frozenset(
    {"status", "attempts", "error_message", "failure_kind", "screenshot_ref", "started_at", "completed_at"}
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class StateStore:
    """
    SQLite-backed users, credentials, deductions, jobs, job logs and the screenshot index.

    Self-heals on a corrupted file: the DB is quarantined and restored from `<db_path>.bak`
    (or recreated empty) on open.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._ensure_schema()

        # Ensure we have *some* backup available for next time.
        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        self._conn.close()

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the state DB. If it looks corrupted, move it aside and restore from the last-known-good backup.
        """
        if self.db_path.exists():
            try:
                conn = sqlite3.connect(self.db_path)
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except Exception as e:
                logger.warning("State DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = sqlite3.connect(self.db_path)
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored state DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except Exception:
                        logger.warning("Failed to restore state DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No state DB backup found; creating a fresh DB.")

        return sqlite3.connect(self.db_path)

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            # Touch schema_version to fail fast on "file is not a database".
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except Exception:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except Exception:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return
        try:
            self.backup()
        except Exception:
            logger.debug("Failed to write state DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the state DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        # SQLite online backup API gives a consistent snapshot while the DB is open.
        dst = sqlite3.connect(tmp)
        try:
            self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
              id TEXT PRIMARY KEY,
              email TEXT NOT NULL,
              auto_submit INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS credentials (
              user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
              cuit TEXT NOT NULL,
              ciphertext TEXT NOT NULL,
              iv TEXT NOT NULL,
              auth_tag TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS deductions (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
              category TEXT NOT NULL,
              provider_cuit TEXT NOT NULL,
              invoice_type TEXT NOT NULL,
              amount TEXT NOT NULL,
              fiscal_month INTEGER NOT NULL,
              fiscal_year INTEGER NOT NULL,
              invoice_number TEXT,
              invoice_date TEXT,
              status TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS jobs (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              deduction_id TEXT,
              kind TEXT NOT NULL,
              status TEXT NOT NULL,
              attempts INTEGER NOT NULL DEFAULT 0,
              error_message TEXT,
              screenshot_ref TEXT,
              created_at TEXT NOT NULL,
              started_at TEXT,
              completed_at TEXT
            );
            CREATE TABLE IF NOT EXISTS job_logs (
              job_id TEXT NOT NULL,
              seq INTEGER NOT NULL,
              line TEXT NOT NULL,
              PRIMARY KEY (job_id, seq)
            );
            CREATE TABLE IF NOT EXISTS screenshots (
              job_id TEXT NOT NULL,
              step INTEGER NOT NULL,
              name TEXT NOT NULL,
              label TEXT NOT NULL,
              captured_at TEXT,
              PRIMARY KEY (job_id, step)
            );
            CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
            CREATE INDEX IF NOT EXISTS idx_jobs_deduction ON jobs(deduction_id);
            """
        )
        self._apply_light_migrations()
        self._conn.commit()

    def _apply_light_migrations(self) -> None:
        # Best-effort schema evolution for early versions.
        cols = {row[1] for row in self._conn.execute("PRAGMA table_info(jobs);").fetchall()}
        if "failure_kind" not in cols:
            self._conn.execute("ALTER TABLE jobs ADD COLUMN failure_kind TEXT;")

    # Users / credentials

    def add_user(self, user_id: str, email: str, *, auto_submit: bool = False) -> UserProfile:
        self._conn.execute(
            "INSERT INTO users(id, email, auto_submit, created_at) VALUES (?, ?, ?, ?);",
            (user_id, email, 1 if auto_submit else 0, _now_iso()),
        )
        self._conn.commit()
        return UserProfile(id=user_id, email=email, auto_submit=auto_submit)

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        row = self._conn.execute("SELECT id, email, auto_submit FROM users WHERE id = ?;", (user_id,)).fetchone()
        if not row:
            return None
        return UserProfile(id=row["id"], email=row["email"], auto_submit=bool(row["auto_submit"]))

    def set_auto_submit(self, user_id: str, enabled: bool) -> None:
        cur = self._conn.execute("UPDATE users SET auto_submit = ? WHERE id = ?;", (1 if enabled else 0, user_id))
        self._conn.commit()
        if cur.rowcount == 0:
            raise KeyError(f"Unknown user: {user_id}")

    def get_auto_submit(self, user_id: str) -> bool:
        user = self.get_user(user_id)
        return bool(user and user.auto_submit)

    def save_credential(self, cred: StoredCredential) -> None:
        self._conn.execute(
            """
            INSERT INTO credentials(user_id, cuit, ciphertext, iv, auth_tag, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
              cuit = excluded.cuit,
              ciphertext = excluded.ciphertext,
              iv = excluded.iv,
              auth_tag = excluded.auth_tag,
              updated_at = excluded.updated_at;
            """,
            (cred.user_id, cred.cuit, cred.ciphertext, cred.iv, cred.auth_tag, _now_iso()),
        )
        self._conn.commit()

    def get_credential(self, user_id: str) -> Optional[StoredCredential]:
        row = self._conn.execute(
            "SELECT user_id, cuit, ciphertext, iv, auth_tag FROM credentials WHERE user_id = ?;",
            (user_id,),
        ).fetchone()
        if not row:
            return None
        return StoredCredential(**dict(row))

    # Deductions

    def add_deduction(self, d: DeductionRecord) -> DeductionRecord:
        self._conn.execute(
            """
            INSERT INTO deductions(
              id, user_id, category, provider_cuit, invoice_type, amount,
              fiscal_month, fiscal_year, invoice_number, invoice_date, status
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            tuple(
                _to_db(v)
                for v in (
                    d.id,
                    d.user_id,
                    d.category,
                    d.provider_cuit,
                    d.invoice_type,
                    d.amount,
                    d.fiscal_month,
                    d.fiscal_year,
                    d.invoice_number,
                    d.invoice_date,
                    d.status,
                )
            ),
        )
        self._conn.commit()
        return d

    def get_deduction(self, deduction_id: str) -> Optional[DeductionRecord]:
        row = self._conn.execute("SELECT * FROM deductions WHERE id = ?;", (deduction_id,)).fetchone()
        if not row:
            return None
        data = dict(row)
        data["amount"] = Decimal(data["amount"])
        data["invoice_date"] = date.fromisoformat(data["invoice_date"]) if data["invoice_date"] else None
        return DeductionRecord(**data)

    def update_deduction_status(self, deduction_id: str, status: DeductionStatus) -> None:
        self._conn.execute("UPDATE deductions SET status = ? WHERE id = ?;", (_to_db(status), deduction_id))
        self._conn.commit()

    # Jobs

    def create_job(self, job: AutomationJob) -> AutomationJob:
        self._conn.execute(
            """
            INSERT INTO jobs(
              id, user_id, deduction_id, kind, status, attempts, error_message, failure_kind,
              screenshot_ref, created_at, started_at, completed_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            tuple(
                _to_db(v)
                for v in (
                    job.id,
                    job.user_id,
                    job.deduction_id,
                    job.kind,
                    job.status,
                    job.attempts,
                    job.error_message,
                    job.failure_kind,
                    job.screenshot_ref,
                    job.created_at,
                    job.started_at,
                    job.completed_at,
                )
            ),
        )
        for seq, line in enumerate(job.logs):
            self._conn.execute("INSERT INTO job_logs(job_id, seq, line) VALUES (?, ?, ?);", (job.id, seq, line))
        self._conn.commit()
        return job

    def _job_from_row(self, row: sqlite3.Row) -> AutomationJob:
        logs = [
            r["line"]
            for r in self._conn.execute("SELECT line FROM job_logs WHERE job_id = ? ORDER BY seq;", (row["id"],))
        ]
        return AutomationJob(
            id=row["id"],
            user_id=row["user_id"],
            deduction_id=row["deduction_id"],
            kind=row["kind"],
            status=row["status"],
            attempts=row["attempts"],
            error_message=row["error_message"],
            failure_kind=row["failure_kind"],
            logs=logs,
            screenshot_ref=row["screenshot_ref"],
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    def get_job(self, job_id: str) -> Optional[AutomationJob]:
        row = self._conn.execute("SELECT * FROM jobs WHERE id = ?;", (job_id,)).fetchone()
        return self._job_from_row(row) if row else None

    def list_jobs(self, user_id: Optional[str] = None) -> list[AutomationJob]:
        if user_id is None:
            rows = self._conn.execute("SELECT * FROM jobs ORDER BY created_at;").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM jobs WHERE user_id = ? ORDER BY created_at;", (user_id,)
            ).fetchall()
        return [self._job_from_row(r) for r in rows]

    def find_jobs_by_status(self, status: JobStatus) -> list[AutomationJob]:
        rows = self._conn.execute(
            "SELECT * FROM jobs WHERE status = ? ORDER BY created_at;", (_to_db(status),)
        ).fetchall()
        return [self._job_from_row(r) for r in rows]

    def update_job(self, job_id: str, **fields: Any) -> None:
        unknown = set(fields) - _JOB_UPDATABLE
        if unknown:
            raise ValueError(f"update_job: unsupported fields {sorted(unknown)}")
        if not fields:
            return
        cols = sorted(fields)
        assignments = ", ".join(f"{c} = ?" for c in cols)
        params = [_to_db(fields[c]) for c in cols] + [job_id]
        self._conn.execute(f"UPDATE jobs SET {assignments} WHERE id = ?;", params)
        self._conn.commit()

    def append_job_log(self, job_id: str, line: str) -> None:
        self._conn.execute(
            """
            INSERT INTO job_logs(job_id, seq, line)
            VALUES (?, (SELECT COALESCE(MAX(seq) + 1, 0) FROM job_logs WHERE job_id = ?), ?);
            """,
            (job_id, job_id, line),
        )
        self._conn.commit()

    def delete_job(self, job_id: str) -> None:
        self._conn.execute("DELETE FROM job_logs WHERE job_id = ?;", (job_id,))
        self._conn.execute("DELETE FROM screenshots WHERE job_id = ?;", (job_id,))
        self._conn.execute("DELETE FROM jobs WHERE id = ?;", (job_id,))
        self._conn.commit()

    def count_jobs_for_deduction(self, deduction_id: str) -> int:
        row = self._conn.execute("SELECT COUNT(*) FROM jobs WHERE deduction_id = ?;", (deduction_id,)).fetchone()
        return int(row[0])

    # Screenshot index

    def add_screenshot(self, job_id: str, meta: ScreenshotMeta) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO screenshots(job_id, step, name, label, captured_at) VALUES (?, ?, ?, ?, ?);",
            (job_id, meta.step, meta.name, meta.label, _to_db(meta.timestamp)),
        )
        self._conn.commit()

    def list_screenshots(self, job_id: str) -> list[ScreenshotMeta]:
        rows = self._conn.execute(
            "SELECT step, name, label, captured_at FROM screenshots WHERE job_id = ? ORDER BY step;",
            (job_id,),
        ).fetchall()
        return [
            ScreenshotMeta(step=r["step"], name=r["name"], label=r["label"], timestamp=_dt(r["captured_at"]))
            for r in rows
        ]

    def delete_screenshots(self, job_id: str) -> None:
        self._conn.execute("DELETE FROM screenshots WHERE job_id = ?;", (job_id,))
        self._conn.commit()
