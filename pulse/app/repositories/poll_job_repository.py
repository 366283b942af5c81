from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, cast
from uuid import uuid4

from pulse.app.models.domain import RetrySchedulerState
from pulse.app.repositories.common import parse_iso_datetime, utc_now_iso
from pulse.app.repositories.database import Database

JOB_STATUS_SCHEDULED = "scheduled"
JOB_STATUS_RUNNING = "running"


@dataclass(frozen=True)
class PollJobRecord:
    job_name: str
    unit_id: str
    run_at: datetime
    state: RetrySchedulerState
    status: str
    last_outcome: str | None
    last_run_at: datetime | None


class PollJobRepository:
    """Durable slot for the single pending unit of each recurring poll job.

    One row per job name. Writing a new unit replaces whatever was queued,
    which is what keeps the chain single-flight.
    """

    def __init__(self, db: Database, *, default_interval_minutes: int = 5) -> None:
        self._db = db
        self._default_interval_minutes = default_interval_minutes

    def replace_pending(
        self,
        *,
        job_name: str,
        run_at: datetime,
        state: RetrySchedulerState,
    ) -> str:
        unit_id = f"unit_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO poll_jobs
                (job_name, unit_id, run_at, state_json, status, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_name) DO UPDATE SET
                    unit_id = excluded.unit_id,
                    run_at = excluded.run_at,
                    state_json = excluded.state_json,
                    status = excluded.status,
                    updated_at = excluded.updated_at
                """,
                (
                    job_name,
                    unit_id,
                    run_at.astimezone(UTC).isoformat(),
                    json.dumps(state.to_payload(), sort_keys=True),
                    JOB_STATUS_SCHEDULED,
                    utc_now_iso(),
                ),
            )
        return unit_id

    def rearm(
        self,
        *,
        job_name: str,
        expected_unit_id: str,
        run_at: datetime,
        state: RetrySchedulerState,
        outcome: str,
    ) -> str | None:
        """Queue the successor of ``expected_unit_id``.

        Returns ``None`` when the chain was cancelled or replaced while the
        unit was running; the successor is then dropped.
        """
        unit_id = f"unit_{uuid4().hex}"
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE poll_jobs
                SET unit_id = ?, run_at = ?, state_json = ?, status = ?,
                    last_outcome = ?, last_run_at = ?, updated_at = ?
                WHERE job_name = ? AND unit_id = ?
                """,
                (
                    unit_id,
                    run_at.astimezone(UTC).isoformat(),
                    json.dumps(state.to_payload(), sort_keys=True),
                    JOB_STATUS_SCHEDULED,
                    outcome,
                    now_iso,
                    now_iso,
                    job_name,
                    expected_unit_id,
                ),
            )
        if cursor.rowcount == 0:
            return None
        return unit_id

    def claim_due(self, *, job_name: str, now_utc: datetime) -> PollJobRecord | None:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE poll_jobs
                SET status = ?, updated_at = ?
                WHERE job_name = ? AND status = ? AND run_at <= ?
                """,
                (
                    JOB_STATUS_RUNNING,
                    utc_now_iso(),
                    job_name,
                    JOB_STATUS_SCHEDULED,
                    now_utc.astimezone(UTC).isoformat(),
                ),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                """
                SELECT job_name, unit_id, run_at, state_json, status, last_outcome, last_run_at
                FROM poll_jobs
                WHERE job_name = ?
                """,
                (job_name,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def get_job(self, job_name: str) -> PollJobRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT job_name, unit_id, run_at, state_json, status, last_outcome, last_run_at
                FROM poll_jobs
                WHERE job_name = ?
                """,
                (job_name,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def cancel(self, job_name: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute("DELETE FROM poll_jobs WHERE job_name = ?", (job_name,))
        return cursor.rowcount > 0

    def recover_interrupted(self, *, job_name: str, now_utc: datetime) -> bool:
        """Requeue a unit left in ``running`` by a process that died mid-run."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE poll_jobs
                SET status = ?, run_at = ?, updated_at = ?
                WHERE job_name = ? AND status = ?
                """,
                (
                    JOB_STATUS_SCHEDULED,
                    now_utc.astimezone(UTC).isoformat(),
                    utc_now_iso(),
                    job_name,
                    JOB_STATUS_RUNNING,
                ),
            )
        return cursor.rowcount > 0

    def _row_to_record(self, row: sqlite3.Row) -> PollJobRecord:
        last_run_at = row["last_run_at"]
        last_outcome = row["last_outcome"]
        return PollJobRecord(
            job_name=str(row["job_name"]),
            unit_id=str(row["unit_id"]),
            run_at=parse_iso_datetime(str(row["run_at"])),
            state=RetrySchedulerState.from_payload(
                _load_payload(str(row["state_json"])),
                default_interval=self._default_interval_minutes,
            ),
            status=str(row["status"]),
            last_outcome=str(last_outcome) if isinstance(last_outcome, str) else None,
            last_run_at=(
                parse_iso_datetime(last_run_at) if isinstance(last_run_at, str) else None
            ),
        )


def _load_payload(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}

    if isinstance(parsed, dict):
        raw_dict = cast(dict[object, object], parsed)
        payload: dict[str, Any] = {}
        for key, value in raw_dict.items():
            if isinstance(key, str):
                payload[key] = value
        return payload
    return {}
