from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from pulse.app.services.poll_chain import PollChain
from pulse.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("pulse.scheduler")

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


class SchedulerService:
    """Background runner that executes due poll units.

    It stands in for the host job queue: it only wakes every
    ``tick_seconds`` (or when poked through :meth:`wake`) and runs whatever
    unit is due. All cadence decisions live in :class:`PollChain`.
    """

    def __init__(
        self,
        chain: PollChain,
        tick_seconds: int,
        *,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self._chain = chain
        self._tick_seconds = max(1, tick_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock_path = lock_path
        self._lock_file: Any | None = None
        self._lock_acquired = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.running:
            return True

        if not self._try_acquire_process_lock():
            return False

        self._chain.recover()
        self._stop_event.clear()
        self._wake_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="pulse-scheduler")
        self._thread.daemon = True
        self._thread.start()
        return True

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
        self._release_process_lock()

    def wake(self) -> None:
        self._wake_event.set()

    def run_tick(self) -> None:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id)
        try:
            with self._telemetry.span("scheduler.tick", tick_id=tick_id) as finish:
                report = self._chain.run_due()
                finish["ran_unit"] = report is not None
        except Exception:
            LOGGER.warning("scheduler tick failed", exc_info=True)
        finally:
            reset_contextvars(**tick_tokens)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_tick()
            self._wake_event.wait(self._tick_seconds)
            self._wake_event.clear()

    def _try_acquire_process_lock(self) -> bool:
        if self._lock_path is None:
            return True

        if fcntl is None:
            LOGGER.warning(
                "scheduler single-instance lock unavailable on this platform; starting scheduler"
            )
            return True

        lock_path = self._lock_path
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = lock_path.open("a+", encoding="utf-8")
        except OSError:
            LOGGER.warning(
                "scheduler lock file unavailable path=%s; starting scheduler anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            lock_file.close()
            if exc.errno in (errno.EACCES, errno.EAGAIN):
                LOGGER.info(
                    "scheduler start skipped; lock held by another process path=%s",
                    lock_path,
                )
                return False
            LOGGER.warning(
                "scheduler lock acquisition failed path=%s; starting scheduler anyway",
                lock_path,
                exc_info=True,
            )
            return True

        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}\n")
            lock_file.flush()
        except OSError:
            LOGGER.debug("scheduler lock file pid write failed path=%s", lock_path, exc_info=True)

        self._lock_file = lock_file
        self._lock_acquired = True
        return True

    def _release_process_lock(self) -> None:
        lock_file = self._lock_file
        if lock_file is None:
            self._lock_acquired = False
            return

        try:
            if self._lock_acquired and fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError:
            LOGGER.debug("scheduler lock release failed path=%s", self._lock_path, exc_info=True)
        finally:
            try:
                lock_file.close()
            except OSError:
                LOGGER.debug("scheduler lock file close failed path=%s", self._lock_path)
            self._lock_file = None
            self._lock_acquired = False
