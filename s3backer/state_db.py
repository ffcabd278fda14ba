from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import aiosqlite

from s3backer.models import BackupJob, BackupReport, FailureReason, FailureRecord, FailureReport


RUN_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS backup_run (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at REAL NOT NULL,
    finished_at REAL NOT NULL,
    bucket TEXT NOT NULL,
    key_prefix TEXT NOT NULL,
    total_files INTEGER NOT NULL,
    total_bytes INTEGER NOT NULL,
    uploaded INTEGER NOT NULL,
    skipped INTEGER NOT NULL,
    failed INTEGER NOT NULL
);
"""

FAILURE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS run_failure (
    run_id INTEGER NOT NULL REFERENCES backup_run(id),
    path TEXT NOT NULL,
    reason TEXT NOT NULL,
    message TEXT NOT NULL,
    PRIMARY KEY (run_id, path)
);
"""


@dataclass(slots=True)
class RunSummary:
    run_id: int
    started_at: float
    finished_at: float
    bucket: str
    key_prefix: str
    total_files: int
    total_bytes: int
    uploaded: int
    skipped: int
    failed: int


async def ensure_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(RUN_SCHEMA_SQL)
        await db.execute(FAILURE_SCHEMA_SQL)
        await db.commit()


async def record_run(
    db_path: Path,
    job: BackupJob,
    report: BackupReport,
    *,
    started_at: float,
    finished_at: float,
) -> int:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            """
            INSERT INTO backup_run (
                started_at, finished_at, bucket, key_prefix,
                total_files, total_bytes, uploaded, skipped, failed
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                started_at,
                finished_at,
                job.bucket,
                job.key_prefix,
                report.total_files,
                report.total_bytes,
                len(report.uploaded_paths),
                len(report.skipped_paths),
                len(report.failures),
            ),
        )
        run_id = int(cursor.lastrowid)
        await cursor.close()
        if report.failures:
            await db.executemany(
                """
                INSERT INTO run_failure (run_id, path, reason, message)
                VALUES (?, ?, ?, ?)
                """,
                [(run_id, r.path, r.reason.value, r.message) for r in report.failures],
            )
        await db.commit()
    return run_id


async def load_last_run(db_path: Path) -> RunSummary | None:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM backup_run ORDER BY id DESC LIMIT 1")
        row = await cursor.fetchone()
        await cursor.close()
    if row is None:
        return None
    return RunSummary(
        run_id=int(row["id"]),
        started_at=float(row["started_at"]),
        finished_at=float(row["finished_at"]),
        bucket=str(row["bucket"]),
        key_prefix=str(row["key_prefix"]),
        total_files=int(row["total_files"]),
        total_bytes=int(row["total_bytes"]),
        uploaded=int(row["uploaded"]),
        skipped=int(row["skipped"]),
        failed=int(row["failed"]),
    )


async def load_failures(db_path: Path, run_id: int) -> FailureReport:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT path, reason, message FROM run_failure WHERE run_id = ? ORDER BY path",
            (run_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()

    return FailureReport(
        records=tuple(
            FailureRecord(
                path=str(row["path"]),
                reason=FailureReason(str(row["reason"])),
                message=str(row["message"]),
            )
            for row in rows
        )
    )


async def load_last_failures(db_path: Path) -> FailureReport:
    last = await load_last_run(db_path)
    if last is None:
        return FailureReport()
    return await load_failures(db_path, last.run_id)
