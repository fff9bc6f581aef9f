"""Pytest configuration and shared fixtures."""

import io
from collections import deque
from typing import Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from storyshot.master.pool import PoolEvent, WorkerRecord
from storyshot.models.config import BrowserConfig, RunnerConfig
from storyshot.models.messages import AssignMessage, ReportMessage
from storyshot.models.story import CaptureParameters, StoryDescriptor


# ============================================================================
# Image Helpers
# ============================================================================


def png_bytes(width: int = 10, height: int = 10, color=(255, 255, 255, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def make_png() -> Callable[..., bytes]:
    """Factory for solid-colour PNG images."""
    return png_bytes


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def runner_config(tmp_path) -> RunnerConfig:
    """Create a runner configuration writing into a temp directory."""
    return RunnerConfig(
        storybook_url="http://localhost:6006",
        browsers={"chromium": BrowserConfig(browser_name="chromium")},
        stories_file=str(tmp_path / "stories.json"),
        screen_dir=str(tmp_path / "images"),
        report_dir=str(tmp_path / "report"),
    )


@pytest.fixture
def story() -> StoryDescriptor:
    """Create a story descriptor."""
    return StoryDescriptor(
        id="components-button--primary",
        kind="Components/Button",
        name="Primary",
        parameters=CaptureParameters(),
    )


# ============================================================================
# Playwright Fixtures
# ============================================================================


@pytest.fixture
def mock_page() -> MagicMock:
    """Create a mock Playwright page."""
    page = MagicMock()
    page.url = "about:blank"
    page.viewport_size = {"width": 1024, "height": 720}
    page.goto = AsyncMock()
    page.content = AsyncMock(return_value="")
    page.evaluate = AsyncMock()
    page.evaluate_handle = AsyncMock()
    page.screenshot = AsyncMock(return_value=png_bytes())
    page.wait_for_function = AsyncMock()
    page.set_viewport_size = AsyncMock()
    page.mouse.move = AsyncMock()
    page.is_closed = MagicMock(return_value=False)
    page.locator.return_value.first.screenshot = AsyncMock(return_value=png_bytes())
    return page


def make_playwright_factory(page, version: str = "120.0.6099.28"):
    """Build an ``async_playwright`` stand-in handing out ``page``."""
    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()

    browser = MagicMock()
    browser.version = version
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock()
    browser.is_connected = MagicMock(return_value=True)

    browser_type = MagicMock()
    browser_type.connect = AsyncMock(return_value=browser)
    browser_type.launch = AsyncMock(return_value=browser)

    playwright = MagicMock()
    playwright.chromium = playwright.firefox = playwright.webkit = browser_type
    playwright.stop = AsyncMock()

    starter = MagicMock()
    starter.start = AsyncMock(return_value=playwright)
    factory = MagicMock(return_value=starter)
    factory.playwright = playwright
    factory.browser_type = browser_type
    factory.browser = browser
    factory.context = context
    return factory


@pytest.fixture
def make_playwright():
    """Factory for playwright stand-ins reporting a given browser version."""
    return make_playwright_factory


@pytest.fixture
def playwright_factory(mock_page):
    return make_playwright_factory(mock_page)


# ============================================================================
# Worker Pool Fixtures
# ============================================================================


class FakePool:
    """In-process stand-in for WorkerPool.

    Every assignment is answered on the next ``wait()`` by ``behaviour``,
    which returns the events a real worker would have produced.
    """

    def __init__(self, config: RunnerConfig, behaviour: Optional[Callable] = None):
        self.config = config
        self.behaviour = behaviour or self.succeed
        self.workers: list[WorkerRecord] = []
        self.sent: list[AssignMessage] = []
        self.pending: deque = deque()
        self.queued_events: list[PoolEvent] = []
        self.respawned: list[str] = []
        self.started_with = None
        self.shutdown_called = False
        self._pid = 1000

    @staticmethod
    def succeed(record, message):
        return [PoolEvent(record, "message", message=ReportMessage(test_id=message.test_id, outcome="success"))]

    def add_worker(self, browser: str = "chromium", ready: bool = True) -> WorkerRecord:
        self._pid += 1
        record = WorkerRecord(browser=browser, process=MagicMock(pid=self._pid), conn=MagicMock(), ready=ready)
        self.workers.append(record)
        return record

    def start(self, browsers=None) -> None:
        self.started_with = list(browsers) if browsers is not None else None
        for name in self.started_with or list(self.config.browsers):
            for _ in range(self.config.browsers[name].limit):
                self.add_worker(name)

    def respawn(self, record: WorkerRecord):
        self.respawned.append(record.browser)
        return self.add_worker(record.browser)

    def remove(self, record: WorkerRecord) -> None:
        if record in self.workers:
            self.workers.remove(record)

    def workers_for(self, browser: str) -> list[WorkerRecord]:
        return [w for w in self.workers if w.browser == browser]

    def idle_workers(self) -> list[WorkerRecord]:
        return [w for w in self.workers if w.is_idle]

    def send(self, record: WorkerRecord, message) -> bool:
        self.sent.append(message)
        self.pending.append((record, message))
        return True

    def wait(self, timeout: float) -> list[PoolEvent]:
        events, self.queued_events = self.queued_events, []
        while self.pending:
            record, message = self.pending.popleft()
            events.extend(self.behaviour(record, message))
        return events

    def shutdown(self, timeout: float = 5.0) -> None:
        self.shutdown_called = True
        self.workers.clear()


@pytest.fixture
def fake_pool(runner_config) -> FakePool:
    return FakePool(runner_config)
