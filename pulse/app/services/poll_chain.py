from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from threading import Lock
from typing import Protocol

from structlog.contextvars import bind_contextvars, reset_contextvars

from pulse.app.models.domain import RetrySchedulerState
from pulse.app.repositories.poll_job_repository import JOB_STATUS_RUNNING, PollJobRepository
from pulse.app.services.poll_pass import PollPassReport
from pulse.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("pulse.poll_chain")

POLL_JOB_NAME = "pulse.poll"
DEFAULT_BACKOFF_MINUTES: tuple[int, ...] = (1, 2, 5)
DEFAULT_MAX_ATTEMPTS = 3

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_ERROR = "error"


class ChainState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class PassRunner(Protocol):
    def run_pass(self) -> PollPassReport:
        ...


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_minutes: tuple[int, ...] = DEFAULT_BACKOFF_MINUTES

    @classmethod
    def from_schedule(cls, *, max_attempts: int, backoff_minutes: Sequence[int]) -> BackoffPolicy:
        return cls(max_attempts=max(0, max_attempts), backoff_minutes=tuple(backoff_minutes))

    def next_step(
        self,
        state: RetrySchedulerState,
        *,
        succeeded: bool,
    ) -> tuple[RetrySchedulerState, int]:
        """Return the successor state and its delay in minutes."""
        base = state.base_interval_minutes
        if succeeded or state.attempt_count >= self.max_attempts:
            return RetrySchedulerState(attempt_count=0, base_interval_minutes=base), base
        delay = self.delay_for_attempt(state.attempt_count, base_interval_minutes=base)
        return (
            RetrySchedulerState(attempt_count=state.attempt_count + 1, base_interval_minutes=base),
            delay,
        )

    def delay_for_attempt(self, attempt: int, *, base_interval_minutes: int) -> int:
        if 0 <= attempt < len(self.backoff_minutes):
            return self.backoff_minutes[attempt]
        return base_interval_minutes

    def after_crash(self, state: RetrySchedulerState) -> tuple[RetrySchedulerState, int]:
        base = state.base_interval_minutes
        return RetrySchedulerState(attempt_count=0, base_interval_minutes=base), base


@dataclass(frozen=True)
class _Successor:
    expected_unit_id: str
    run_at: datetime
    state: RetrySchedulerState
    outcome: str


@dataclass(frozen=True)
class ChainStatus:
    state: ChainState
    next_run_at: datetime | None
    attempt_count: int
    base_interval_minutes: int
    last_outcome: str | None
    last_run_at: datetime | None

    def to_payload(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "attempt_count": self.attempt_count,
            "base_interval_minutes": self.base_interval_minutes,
            "last_outcome": self.last_outcome,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
        }


class PollChain:
    """Self-rescheduling poll job built from single-shot units.

    Each unit runs one pass and then queues its own successor with a delay
    picked by the backoff policy. The queued unit and its
    ``RetrySchedulerState`` live in ``poll_jobs``, so the chain survives a
    restart. Passes are serialized: a triggered pass waits for a running unit.
    """

    def __init__(
        self,
        *,
        jobs: PollJobRepository,
        runner: PassRunner,
        policy: BackoffPolicy | None = None,
        default_interval_minutes: int = 5,
        telemetry: TelemetryClient | None = None,
        clock: Callable[[], datetime] | None = None,
        job_name: str = POLL_JOB_NAME,
    ) -> None:
        self._jobs = jobs
        self._runner = runner
        self._policy = policy if policy is not None else BackoffPolicy()
        self._default_interval_minutes = max(1, default_interval_minutes)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._job_name = job_name
        self._pass_lock = Lock()
        self._unsaved_successor: _Successor | None = None

    @property
    def job_name(self) -> str:
        return self._job_name

    def start(self, interval_minutes: int | None = None) -> ChainStatus:
        interval = self._default_interval_minutes if interval_minutes is None else interval_minutes
        if interval < 1:
            raise ValueError("interval_minutes must be >= 1")
        self._jobs.replace_pending(
            job_name=self._job_name,
            run_at=self._clock(),
            state=RetrySchedulerState(attempt_count=0, base_interval_minutes=interval),
        )
        LOGGER.info("poll chain started interval_minutes=%s", interval)
        self._telemetry.emit("scheduler.chain.start", interval_minutes=interval)
        return self.status()

    def ensure_armed(self) -> bool:
        """Arm the chain with the default interval unless a unit already exists."""
        if self._jobs.get_job(self._job_name) is not None:
            return False
        self.start()
        return True

    def stop(self) -> bool:
        cancelled = self._jobs.cancel(self._job_name)
        LOGGER.info("poll chain stopped had_pending=%s", cancelled)
        self._telemetry.emit("scheduler.chain.stop", had_pending=cancelled)
        return cancelled

    def status(self) -> ChainStatus:
        record = self._jobs.get_job(self._job_name)
        if record is None:
            return ChainStatus(
                state=ChainState.STOPPED,
                next_run_at=None,
                attempt_count=0,
                base_interval_minutes=self._default_interval_minutes,
                last_outcome=None,
                last_run_at=None,
            )
        running = record.status == JOB_STATUS_RUNNING
        return ChainStatus(
            state=ChainState.RUNNING if running else ChainState.IDLE,
            next_run_at=None if running else record.run_at,
            attempt_count=record.state.attempt_count,
            base_interval_minutes=record.state.base_interval_minutes,
            last_outcome=record.last_outcome,
            last_run_at=record.last_run_at,
        )

    def trigger_now(self) -> PollPassReport:
        """Run one extra pass. The pending unit and its state are left alone."""
        with self._pass_lock:
            report = self._runner.run_pass()
        self._telemetry.emit("scheduler.trigger", succeeded=report.succeeded)
        return report

    def recover(self) -> bool:
        recovered = self._jobs.recover_interrupted(job_name=self._job_name, now_utc=self._clock())
        if recovered:
            LOGGER.warning("requeued poll unit interrupted by a previous shutdown")
        return recovered

    def run_due(self) -> PollPassReport | None:
        pending = self._unsaved_successor
        if pending is not None and not self._save_successor(pending):
            return None
        record = self._jobs.claim_due(job_name=self._job_name, now_utc=self._clock())
        if record is None:
            return None

        tokens = bind_contextvars(poll_unit_id=record.unit_id)
        started_at = time.perf_counter()
        self._telemetry.emit(
            "scheduler.unit.start",
            unit_id=record.unit_id,
            attempt_count=record.state.attempt_count,
        )
        report: PollPassReport | None = None
        try:
            try:
                with self._pass_lock:
                    report = self._runner.run_pass()
            except Exception as exc:
                LOGGER.error("poll unit raised; re-arming at base interval", exc_info=True)
                self._telemetry.emit(
                    "scheduler.unit.error",
                    unit_id=record.unit_id,
                    error_type=type(exc).__name__,
                )
                next_state, delay_minutes = self._policy.after_crash(record.state)
                outcome = OUTCOME_ERROR
            else:
                next_state, delay_minutes = self._policy.next_step(
                    record.state,
                    succeeded=report.succeeded,
                )
                outcome = OUTCOME_SUCCEEDED if report.succeeded else OUTCOME_FAILED

            run_at = self._clock() + timedelta(minutes=delay_minutes)
            settled = self._save_successor(
                _Successor(
                    expected_unit_id=record.unit_id,
                    run_at=run_at,
                    state=next_state,
                    outcome=outcome,
                )
            )
            if settled:
                LOGGER.info(
                    "poll unit finished outcome=%s next_run_at=%s attempt_count=%s",
                    outcome,
                    run_at.isoformat(),
                    next_state.attempt_count,
                )
            self._telemetry.emit(
                "scheduler.unit.finish",
                unit_id=record.unit_id,
                outcome=outcome,
                delay_minutes=delay_minutes,
                attempt_count=next_state.attempt_count,
                successor_settled=settled,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
            )
        finally:
            reset_contextvars(**tokens)
        return report

    def _save_successor(self, successor: _Successor) -> bool:
        """Persist ``successor``; on a storage error keep it for the next tick.

        Returns True once the slot holds the successor or the chain was
        changed while the unit ran (the successor is then dropped).
        """
        try:
            unit_id = self._jobs.rearm(
                job_name=self._job_name,
                expected_unit_id=successor.expected_unit_id,
                run_at=successor.run_at,
                state=successor.state,
                outcome=successor.outcome,
            )
        except Exception:
            LOGGER.warning("saving next poll unit failed; retrying on the next tick", exc_info=True)
            self._unsaved_successor = successor
            return False
        self._unsaved_successor = None
        if unit_id is None:
            LOGGER.info("poll chain changed while unit was running; successor dropped")
        return True
