"""Test scheduler: assigns tests to workers, retries failures, drives shutdown."""

from __future__ import annotations

import logging
import time
from typing import Iterable, Optional

from storyshot.models.config import RunnerConfig
from storyshot.models.messages import AssignMessage, ReadyMessage, ReportMessage, WorkerErrorMessage
from storyshot.models.story import StoryDescriptor
from storyshot.models.test_result import RunStatus, TestRecord

from .pool import PoolEvent, WorkerPool, WorkerRecord

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.5


def utc_timestamp(seconds: Optional[float] = None) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(seconds))


class Runner:
    """Owns the test registry; workers only change it through reports.

    Tests are handed out in registry order to idle workers of the matching
    browser. A failed or crashed test goes back to the queue while it has
    retries left and is finalised as ``fail`` otherwise.
    """

    def __init__(
        self,
        config: RunnerConfig,
        tests: dict[str, TestRecord],
        stories: dict[str, StoryDescriptor],
        pool: WorkerPool,
    ):
        self.config = config
        self.tests = tests
        self.stories = stories
        self.pool = pool
        self.is_running = False
        self.stop_requested = False
        self._queue: set[str] = set()
        self._stop_deadline: Optional[float] = None
        self._started_at = ""
        self._start_time = 0.0
        self._worker_errors: dict[str, str] = {}

    # -- control -----------------------------------------------------------

    def start(self, test_ids: Iterable[str]) -> None:
        for test_id in test_ids:
            test = self.tests.get(test_id)
            if test is None or test.skip:
                continue
            test.status = "unknown"
            test.retries = 0
            test.error = None
            self._queue.add(test_id)
        self.is_running = True
        self.stop_requested = False
        self._started_at = utc_timestamp()
        self._start_time = time.time()
        logger.info("Starting run of %d tests", len(self._queue))

    def stop(self) -> None:
        """Stop dispatching and give running tests the grace period to finish."""
        if not self.is_running or self.stop_requested:
            return
        self.stop_requested = True
        self._stop_deadline = time.monotonic() + self.config.shutdown_grace_seconds
        logger.info("Stopping: waiting up to %.0fs for %d running tests",
                    self.config.shutdown_grace_seconds, len(self._in_flight()))

    def abort(self) -> None:
        """Stop without waiting for running tests."""
        self.stop_requested = True
        self._stop_deadline = time.monotonic()

    def run(self, test_ids: Iterable[str]) -> RunStatus:
        """Run tests to completion, or until a stop's grace period ends."""
        self.start(test_ids)
        try:
            while True:
                if self.stop_requested:
                    if not self._in_flight() or time.monotonic() >= self._stop_deadline:
                        break
                else:
                    self._fail_unservable()
                    self._dispatch()
                    if not self._queue and not self._in_flight():
                        break
                for event in self.pool.wait(POLL_INTERVAL_SECONDS):
                    self.handle_event(event)
        finally:
            self.is_running = False
            for test_id in self._in_flight():
                # Interrupted tests never finished, they are not failures
                self.tests[test_id].status = "unknown"
        status = self.status()
        logger.info("Run finished: %d passed, %d failed, %d skipped, %d not run (%.1fs)",
                    status.success, status.failed, status.skipped, status.pending,
                    status.duration_seconds)
        return status

    # -- scheduling --------------------------------------------------------

    def _in_flight(self) -> list[str]:
        return [w.test_id for w in self.pool.workers if w.test_id is not None]

    def _next_test_for(self, browser: str) -> Optional[str]:
        for test_id, test in self.tests.items():
            if test_id in self._queue and test.browser == browser:
                return test_id
        return None

    def _dispatch(self) -> None:
        for record in self.pool.idle_workers():
            test_id = self._next_test_for(record.browser)
            if test_id is None:
                continue
            test = self.tests[test_id]
            message = AssignMessage(
                test_id=test_id,
                test_path=test.path,
                browser=test.browser,
                story=self.stories[test.story_id],
            )
            if not self.pool.send(record, message):
                continue  # the exit event will clean this worker up
            self._queue.discard(test_id)
            record.test_id = test_id
            test.status = "running"
            logger.debug("Assigned %s to %s worker (pid %s)", test.title, record.browser, record.pid)

    def _fail_unservable(self) -> None:
        """Finalise queued tests whose browser has no worker left to run them."""
        for test_id in list(self._queue):
            test = self.tests[test_id]
            if self.pool.workers_for(test.browser):
                continue
            self._queue.discard(test_id)
            test.status = "fail"
            reason = self._worker_errors.get(test.browser, "no worker available")
            test.error = f"Browser '{test.browser}' is unavailable: {reason}"
            logger.error("[FAIL] %s: %s", test.title, test.error)

    def _handle_failure(self, test: TestRecord, error: Optional[str]) -> None:
        test.error = error
        if test.retries < self.config.max_retries and not self.stop_requested:
            test.retries += 1
            test.status = "unknown"
            self._queue.add(test.id)
            logger.info("Retrying %s (%d/%d)", test.title, test.retries, self.config.max_retries)
        else:
            test.status = "fail"

    # -- events ------------------------------------------------------------

    def handle_event(self, event: PoolEvent) -> None:
        record = event.record
        if event.kind == "exit":
            self._handle_exit(record, event.exit_code)
            return
        message = event.message
        if isinstance(message, ReadyMessage):
            record.ready = True
            logger.debug("%s worker ready (pid %s)", record.browser, message.pid)
        elif isinstance(message, ReportMessage):
            self._handle_report(record, message)
        elif isinstance(message, WorkerErrorMessage):
            record.fatal_error = message.error
            self._worker_errors[record.browser] = message.error
            if message.resolve_failed:
                logger.error("%s browser cannot reach storybook: %s", record.browser, message.error)
            else:
                logger.error("%s worker failed to start: %s", record.browser, message.error)

    def _handle_report(self, record: WorkerRecord, message: ReportMessage) -> None:
        if record.test_id != message.test_id:
            logger.warning("Ignoring report for %s, worker was assigned %s",
                           message.test_id, record.test_id)
            return
        record.test_id = None
        test = self.tests[message.test_id]
        test.images = list(message.images)
        if message.outcome == "success":
            test.status = "success"
            test.error = None
        else:
            self._handle_failure(test, message.error)

    def _handle_exit(self, record: WorkerRecord, exit_code: Optional[int]) -> None:
        self.pool.remove(record)
        if record.test_id is not None:
            test = self.tests[record.test_id]
            record.test_id = None
            logger.error("%s worker (pid %s) exited with code %s while running %s",
                         record.browser, record.pid, exit_code, test.title)
            self._handle_failure(test, f"Worker process exited unexpectedly (code {exit_code})")
        if self.stop_requested or not self.is_running:
            return
        if record.fatal_error is not None:
            # Startup errors repeat on every attempt
            return
        logger.warning("%s worker (pid %s) exited with code %s, spawning a replacement",
                       record.browser, record.pid, exit_code)
        self.pool.respawn(record)

    # -- reporting ---------------------------------------------------------

    def status(self) -> RunStatus:
        tests = list(self.tests.values())
        return RunStatus(
            started_at=self._started_at,
            completed_at=utc_timestamp(),
            duration_seconds=round(time.time() - self._start_time, 2) if self._start_time else 0.0,
            total=len(tests),
            success=sum(1 for t in tests if t.status == "success"),
            failed=sum(1 for t in tests if t.status == "fail"),
            skipped=sum(1 for t in tests if t.skip),
            pending=sum(1 for t in tests if not t.skip and t.status in ("unknown", "running")),
            tests=tests,
        )
