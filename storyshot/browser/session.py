"""Browser session lifecycle: one remote Playwright session per worker process."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from storyshot.models.config import BrowserConfig, RunnerConfig

from .cancellation import CancellationToken, run_sequence
from .quirks import BrowserQuirks, major_version, resolve_quirks
from .story_switcher import update_storybook_globals
from .url_resolver import (
    ResolveUrlError,
    append_iframe_path,
    call_resolver,
    is_localhost_url,
    load_resolver,
    make_url_checker,
    resolve_storybook_url,
)

logger = logging.getLogger(__name__)

_SCROLLBAR_WIDTH_JS = """() => {
    var div = document.createElement('div');
    div.innerHTML = 'a';  // clientWidth is 0 for an empty div in some engines
    div.style.overflowY = 'scroll';
    document.body.appendChild(div);
    var widthDiff = div.offsetWidth - div.clientWidth;
    document.body.removeChild(div);
    return widthDiff;
}"""


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    EXECUTING = "executing"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionError(Exception):
    """The remote browser could not be started or could not load Storybook."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


@dataclass
class Session:
    browser_name: str
    page: Page
    quirks: BrowserQuirks
    version: str = ""


def window_chrome_delta(window_size: dict, inner_size: dict) -> tuple[int, int]:
    """Size taken by window chrome (title bar, scrollbars) around the content."""
    return (
        int(window_size["width"] - inner_size["innerWidth"]),
        int(window_size["height"] - inner_size["innerHeight"]),
    )


class SessionManager:
    """Owns the lifecycle of one browser session.

    ``open()`` connects to the grid (or launches a local browser), loads
    Storybook and waits until it is ready. ``close()`` can be called at any
    point, any number of times. A shutdown signalled through the
    cancellation token force-closes the session; ``open()`` then returns
    None instead of raising.
    """

    def __init__(
        self,
        config: RunnerConfig,
        browser_name: str,
        token: Optional[CancellationToken] = None,
        playwright_factory: Callable = async_playwright,
    ):
        self.config = config
        self.browser_name = browser_name
        self.browser_config: BrowserConfig = config.browsers[browser_name]
        self.token = token or CancellationToken()
        self.state = SessionState.IDLE
        self.session: Optional[Session] = None
        self._playwright_factory = playwright_factory
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._last_url: Optional[str] = None
        self._scrollbar_width: Optional[int] = None
        self._close_task: Optional[asyncio.Task] = None
        self.token.add_callback(self._on_shutdown)

    # -- lifecycle ---------------------------------------------------------

    async def open(self) -> Optional[Session]:
        self.state = SessionState.CONNECTING
        try:
            await self._connect()
            completed = await run_sequence(
                [
                    self._configure_timeouts,
                    self._resize_viewport,
                    self._open_storybook,
                    self._wait_for_storybook,
                    self._apply_globals,
                ],
                self.token,
            )
        except ResolveUrlError:
            await self.close()
            if self.token.cancelled:
                return None
            raise
        except Exception as e:
            if self.token.cancelled:
                logger.debug("Ignoring error raised during shutdown: %s", e)
                await self.close()
                return None
            url = await self._current_url()
            await self.close()
            raise SessionError(f"Can't load storybook root page by URL {url}", url=url) from e

        if not completed or self._page is None:
            await self.close()
            return None

        version = self._session_version()
        self.session = Session(
            browser_name=self.browser_name,
            page=self._page,
            quirks=resolve_quirks(self.browser_config.browser_name, version),
            version=version,
        )
        self.state = SessionState.READY
        logger.info("Browser session ready: %s %s %s", self.browser_name, version,
                    self.browser_config.platform or "")
        return self.session

    def _session_version(self) -> str:
        reported = self._browser.version if self._browser else ""
        configured = self.browser_config.version
        if not reported:
            return configured or ""
        if configured and major_version(configured) != major_version(reported):
            logger.warning("%s: configured version %s but the browser reports %s",
                           self.browser_name, configured, reported)
        return reported

    async def close(self) -> None:
        """Tear down whatever part of the session exists.

        A close already started by a shutdown is awaited, not skipped.
        """
        if self._close_task is None or self._close_task.done():
            self._close_task = asyncio.ensure_future(self._close())
        await self._close_task

    def is_alive(self) -> bool:
        """False once the page is closed or the browser has disconnected."""
        if self._page is None or self._page.is_closed():
            return False
        return self._browser is None or self._browser.is_connected()

    async def _close(self) -> None:
        self.state = SessionState.CLOSING
        context, browser, playwright = self._context, self._browser, self._playwright
        self._page = self._context = self._browser = self._playwright = None
        self.session = None
        for label, closer in (
            ("context", context.close if context else None),
            ("browser", browser.close if browser else None),
            ("playwright", playwright.stop if playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.debug("Failed to close %s: %s", label, e)
        self.state = SessionState.CLOSED
        logger.debug("Browser session closed: %s", self.browser_name)

    def _on_shutdown(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        logger.debug("Shutdown requested, closing %s session", self.browser_name)
        if self._close_task is None or self._close_task.done():
            self._close_task = loop.create_task(self._close())

    # -- open steps --------------------------------------------------------

    async def _connect(self) -> None:
        cfg = self.browser_config
        self._playwright = await self._playwright_factory().start()
        browser_type = getattr(self._playwright, cfg.browser_name)
        if cfg.grid_url:
            logger.debug("Connecting to %s grid at %s", cfg.browser_name, cfg.grid_url)
            self._browser = await browser_type.connect(
                cfg.grid_url, headers=cfg.headers or None,
            )
        else:
            logger.debug("Launching local %s", cfg.browser_name)
            self._browser = await browser_type.launch(**cfg.launch_options)
        self._context = await self._browser.new_context()
        self._page = await self._context.new_page()

    def _configure_timeouts(self) -> None:
        self._context.set_default_navigation_timeout(self.config.page_load_timeout_seconds * 1000)
        self._context.set_default_timeout(self.config.script_timeout_seconds * 1000)

    async def _resize_viewport(self) -> None:
        viewport = self.browser_config.viewport
        if not viewport:
            return
        inner = await self._page.evaluate(
            "() => ({innerWidth: window.innerWidth, innerHeight: window.innerHeight,"
            " outerWidth: window.outerWidth, outerHeight: window.outerHeight})"
        )
        window_size = self._page.viewport_size or {
            "width": inner["outerWidth"], "height": inner["outerHeight"],
        }
        d_width, d_height = window_chrome_delta(window_size, inner)
        await self._page.set_viewport_size({
            "width": viewport.width + d_width,
            "height": viewport.height + d_height,
        })

    async def _open_storybook(self) -> None:
        storybook_url = self.browser_config.storybook_url or self.config.storybook_url
        url = append_iframe_path(storybook_url)
        self._last_url = url
        # A locally launched browser shares our network, only remote ones need resolving
        if not is_localhost_url(storybook_url) or not self.browser_config.grid_url:
            await self._page.goto(url, wait_until="commit")
            return
        try:
            if self.config.resolve_storybook_url:
                resolver = load_resolver(self.config.resolve_storybook_url)
                url = append_iframe_path(await call_resolver(resolver))
                self._last_url = url
                await self._page.goto(url, wait_until="commit")
            else:
                # The checker leaves the browser on the resolved page
                url = await resolve_storybook_url(
                    url,
                    make_url_checker(self._page, self.config.page_source_timeout_seconds, self.token),
                )
                self._last_url = url
        except Exception as e:
            logger.warning("Failed to resolve storybook URL: %s", e)
            raise

    async def _wait_for_storybook(self) -> None:
        await self._page.wait_for_function("() => document.readyState == 'complete'")

    async def _apply_globals(self) -> None:
        if self.browser_config.globals:
            await update_storybook_globals(self._page, self.browser_config.globals)

    async def _current_url(self) -> Optional[str]:
        if self._page is not None:
            url = self._page.url
            if url and url != "about:blank":
                return url
        return self._last_url

    # -- helpers used while executing tests --------------------------------

    async def scrollbar_width(self) -> int:
        """Width of a classic scrollbar; measured once per session manager."""
        if self._scrollbar_width is None:
            self._scrollbar_width = int(await self._page.evaluate(_SCROLLBAR_WIDTH_JS))
        return self._scrollbar_width

    async def reset_mouse_position(self) -> None:
        strategy = self.session.quirks.mouse_reset_strategy if self.session else "viewport_origin"
        page = self._page
        if strategy == "body_offset":
            # Offset from the body's center back to the viewport origin
            rect = await page.evaluate(
                "() => { var r = document.body.getBoundingClientRect();"
                " return {top: r.top, left: r.left, width: r.width, height: r.height}; }"
            )
            x = rect["left"] + rect["width"] / 2 + math.ceil(-rect["width"] / 2) - rect["left"]
            y = rect["top"] + rect["height"] / 2 + math.ceil(-rect["height"] / 2) - rect["top"]
            await page.mouse.move(max(0, x), max(0, y))
        elif strategy == "viewport_offset_y":
            await page.mouse.move(0, 1)
        else:
            await page.mouse.move(0, 0)
