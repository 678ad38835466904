"""Scheduler daemon: drives every orchestrator job at its own interval.

No external scheduler library is required — uses stdlib ``threading`` and
``signal`` only.

Typical usage via the CLI::

    rlf start-scheduler

Or import directly::

    from relief_engine.pipeline.orchestrator import Orchestrator
    from relief_engine.scheduler import SchedulerDaemon
    daemon = SchedulerDaemon(Orchestrator(config))
    daemon.start()  # blocks until Ctrl-C

Jobs driven:
  - **priority-recalc** — every ``scheduler.recalc_interval_seconds``
  - any job added with ``Orchestrator.register_job`` — every
    ``expected_interval_ms``

Each job runs on its own thread, so a slow job never delays another.  A
failing tick is logged (and recorded by the health tracker) but does not
stop the daemon.  The orchestrator's single-flight slot means a tick that
fires while a manual recalculation is running joins it instead of starting
a second one.
"""

from __future__ import annotations

import logging
import platform
import signal
import threading
from typing import Optional

from relief_engine.pipeline.orchestrator import Orchestrator

log = logging.getLogger(__name__)


class SchedulerDaemon:
    """Runs each of the orchestrator's scheduled jobs on a fixed interval.

    Parameters
    ----------
    orchestrator:
        The orchestrator whose jobs are driven.
    run_on_start:
        When *True* (default), every job ticks immediately on start instead
        of waiting one full interval.
    """

    def __init__(self, orchestrator: Orchestrator, run_on_start: bool = True) -> None:
        self.orchestrator = orchestrator
        self.run_on_start = run_on_start
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    # ── Job loop ──────────────────────────────────────────────────────────────

    def _tick(self, name: str) -> None:
        try:
            result = self.orchestrator.run_job(name)
        except Exception as exc:
            log.error("[%s] Unexpected error: %s", name, exc, exc_info=True)
            return
        if result.success:
            log.info("[%s] Completed successfully.", name)
        elif result.coalesced:
            log.info("[%s] Joined an in-flight run.", name)
        else:
            log.error("[%s] Failed: %s", name, result.error)

    def _loop(self, name: str, interval_seconds: float) -> None:
        if not self.run_on_start and self._stop.wait(interval_seconds):
            return
        while not self._stop.is_set():
            self._tick(name)
            if self._stop.wait(interval_seconds):
                break
        log.debug("[%s] Loop exited.", name)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start_background(self) -> None:
        """Start one daemon thread per job and return immediately."""
        if self.running:
            return
        self._stop.clear()
        self._threads = []
        for name, interval in self.orchestrator.scheduled_jobs():
            thread = threading.Thread(
                target=self._loop,
                args=(name, interval),
                name=f"relief-scheduler-{name}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
            log.info("Scheduled [%s] every %.0f s", name, interval)

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Signal every loop to exit and wait for in-progress ticks."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        log.info("Scheduler stopped.")

    def start(self) -> None:
        """Start the daemon.  Blocks until Ctrl-C (or SIGTERM on Linux/macOS)."""

        def _shutdown(signum, frame):  # noqa: ANN001
            log.info("Signal %d received — stopping scheduler.", signum)
            self._stop.set()

        signal.signal(signal.SIGINT, _shutdown)
        if platform.system() != "Windows":
            signal.signal(signal.SIGTERM, _shutdown)

        log.info("Scheduler started.  db=%s", self.orchestrator.db_path)
        self.start_background()
        while not self._stop.wait(1.0):
            pass
        self.stop()
