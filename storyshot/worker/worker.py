"""Worker process: one browser session running assigned tests one at a time."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Optional

from storyshot.browser.capture import CaptureEngine
from storyshot.browser.session import SessionError, SessionManager, SessionState
from storyshot.browser.story_switcher import switch_story
from storyshot.browser.url_resolver import ResolveUrlError
from storyshot.log import setup_logging
from storyshot.models.config import RunnerConfig
from storyshot.models.messages import (
    AssignMessage,
    ReadyMessage,
    ReportMessage,
    ShutdownMessage,
    WorkerErrorMessage,
    decode_message,
    encode_message,
)

from .comparator import ImageComparator, PixelComparator
from .context import TestContext
from .images import ImageStore

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    ASSIGNED = "assigned"
    SELECTING_STORY = "selecting_story"
    CAPTURING = "capturing"
    COMPARING = "comparing"
    REPORTING = "reporting"


class Worker:
    """Pairs one session manager with a sequential test loop.

    Assignments arrive over ``conn`` from the master; a shutdown message
    cancels the session token immediately so that in-flight browser calls
    abort instead of hanging.
    """

    def __init__(
        self,
        config: RunnerConfig,
        browser_name: str,
        conn,
        session_manager: Optional[SessionManager] = None,
        comparator: Optional[ImageComparator] = None,
        image_store: Optional[ImageStore] = None,
    ):
        self.config = config
        self.browser_name = browser_name
        self.conn = conn
        self.session_manager = session_manager or SessionManager(config, browser_name)
        self.token = self.session_manager.token
        self.comparator = comparator or PixelComparator(tolerance=config.diff_tolerance)
        self.images = image_store or ImageStore(Path(config.screen_dir), Path(config.report_dir))
        self.state = WorkerState.IDLE
        self._inbox: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def run(self) -> int:
        """Open the session, then serve assignments until shutdown. Returns an exit code."""
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        self._start_reader()

        try:
            session = await self.session_manager.open()
        except ResolveUrlError as e:
            logger.error("Cannot reach storybook from %s: %s", self.browser_name, e)
            self._send(WorkerErrorMessage(
                browser=self.browser_name, pid=os.getpid(), error=str(e), resolve_failed=True,
            ))
            return 1
        except SessionError as e:
            logger.error("Failed to start %s session: %s", self.browser_name, e)
            self._send(WorkerErrorMessage(browser=self.browser_name, pid=os.getpid(), error=str(e)))
            return 1

        if session is None:
            logger.debug("Shutdown before the session was ready")
            return 0

        self._send(ReadyMessage(browser=self.browser_name, pid=os.getpid()))
        try:
            while True:
                assignment = await self._inbox.get()
                if assignment is None:
                    break
                report = await self.execute(assignment)
                if self.token.cancelled:
                    # Results of a test interrupted by shutdown are noise
                    break
                if report.outcome == "error" and not self.session_manager.is_alive():
                    # Unreported, the master retries this test on a replacement worker
                    logger.error("%s session is gone (%s), exiting for a replacement",
                                 self.browser_name, report.error)
                    return 1
                self._send(report)
        finally:
            await self.session_manager.close()
        return 0

    async def execute(self, assignment: AssignMessage) -> ReportMessage:
        """Run one test: select the story, capture it, compare, report."""
        context = TestContext(
            test_id=assignment.test_id,
            test_path=assignment.test_path,
            browser_name=assignment.browser,
            story=assignment.story,
        )
        self.state = WorkerState.ASSIGNED
        self.session_manager.state = SessionState.EXECUTING
        start = time.time()
        logger.info("[START] %s", context.title)

        outcome = "success"
        error: Optional[str] = None
        try:
            self.state = WorkerState.SELECTING_STORY
            await switch_story(self.session_manager, context)

            self.state = WorkerState.CAPTURING
            session = self.session_manager.session
            engine = CaptureEngine(
                session.page, session.quirks,
                self.session_manager.scrollbar_width, self.token,
            )
            actual = await engine.take_screenshot(
                context.capture_element, context.story.parameters.ignore_selectors,
            )

            self.state = WorkerState.COMPARING
            passed, error = self._compare(context, actual)
            if not passed:
                outcome = "fail"
        except Exception as e:
            outcome = "error"
            error = str(e) or type(e).__name__
            if not self.token.cancelled:
                logger.debug("Test %s raised", context.title, exc_info=True)
        finally:
            self.state = WorkerState.REPORTING
            if self.session_manager.state == SessionState.EXECUTING:
                self.session_manager.state = SessionState.READY

        duration = time.time() - start
        if outcome == "success":
            logger.info("[PASS] %s (%.1fs)", context.title, duration)
        elif not self.token.cancelled:
            logger.info("[FAIL] %s (%.1fs): %s", context.title, duration, error)

        report = ReportMessage(
            test_id=context.test_id, outcome=outcome, images=context.images, error=error,
        )
        self.state = WorkerState.IDLE
        return report

    def _compare(self, context: TestContext, actual: bytes) -> tuple[bool, Optional[str]]:
        browser = context.browser_name
        expected = self.images.load_expected(context.test_path, browser)
        if expected is None:
            context.images.append(self.images.save_attempt(
                context.test_id, context.test_path, browser, actual,
            ))
            return False, f"Expected image '{browser}.png' does not exist"

        result = self.comparator.compare(actual, expected)
        if result.passed:
            context.images.append(self.images.save_attempt(
                context.test_id, context.test_path, browser, actual,
            ))
            return True, None
        context.images.append(self.images.save_attempt(
            context.test_id, context.test_path, browser, actual,
            expected=expected, diff=result.diff,
        ))
        return False, f"Expected image '{browser}.png' does not match: {result.message}"

    # -- master channel ----------------------------------------------------

    def _send(self, message) -> None:
        try:
            self.conn.send(encode_message(message))
        except (BrokenPipeError, EOFError, OSError) as e:
            logger.debug("Master connection lost: %s", e)
            self._dispatch(ShutdownMessage())

    def _start_reader(self) -> None:
        thread = threading.Thread(target=self._read_messages, name="storyshot-reader", daemon=True)
        thread.start()

    def _read_messages(self) -> None:
        while True:
            try:
                message = decode_message(self.conn.recv())
            except (EOFError, OSError):
                message = ShutdownMessage()
            try:
                self._loop.call_soon_threadsafe(self._dispatch, message)
            except RuntimeError:
                return  # loop already closed
            if isinstance(message, ShutdownMessage):
                return

    def _dispatch(self, message) -> None:
        if isinstance(message, ShutdownMessage):
            if not self.token.cancelled:
                logger.debug("Shutdown received")
            self.token.cancel()
            self._inbox.put_nowait(None)
        elif isinstance(message, AssignMessage):
            self._inbox.put_nowait(message)
        else:
            logger.warning("Unexpected message from master: %s", message.type)


def worker_main(config_data: dict, browser_name: str, conn, verbose: bool = False) -> None:
    """Entry point of a worker process."""
    setup_logging(verbose, role=browser_name)
    # Ctrl+C reaches the whole process group; the master decides how to stop
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    config = RunnerConfig(**config_data)
    worker = Worker(config, browser_name, conn)
    exit_code = asyncio.run(worker.run())
    conn.close()
    sys.exit(exit_code)
