"""Storybook URL resolution for browsers that cannot see the runner's localhost."""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import re
import socket
import time
from typing import Awaitable, Callable, Optional

import psutil
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

DOCKER_INTERNAL = "host.docker.internal"
LOCALHOST_PATTERN = re.compile(r"(localhost|127\.0\.0\.1|0\.0\.0\.0)", re.IGNORECASE)
ROOT_CONTAINER = '<div id="root"></div>'
_BODY_WITH_CONTENT = re.compile(r"<body([^>]*>).+</body>", re.DOTALL)

POLL_INTERVAL_SECONDS = 0.1


class ResolveUrlError(Exception):
    """No candidate address let the remote browser reach Storybook."""


class PageSourceTimeout(TimeoutError):
    pass


def is_localhost_url(url: str) -> bool:
    return bool(LOCALHOST_PATTERN.search(url))


def append_iframe_path(url: str) -> str:
    return f"{url.rstrip('/')}/iframe.html"


def local_ipv4_addresses() -> list[str]:
    """IPv4 addresses of every local network interface, in interface order."""
    addresses = []
    for infos in psutil.net_if_addrs().values():
        for info in infos:
            if info.family == socket.AF_INET:
                addresses.append(info.address)
    return addresses


async def open_url_and_wait_for_page_source(
    page: Page,
    url: str,
    is_pending: Callable[[str], bool],
    timeout: float = 30.0,
    token: Optional[CancellationToken] = None,
) -> str:
    """Navigate without waiting for load, then poll the page source.

    Polls until ``is_pending(source)`` turns false. Raises PageSourceTimeout
    after ``timeout`` seconds.
    """
    source = ""
    deadline = time.monotonic() + timeout
    await page.goto(url, wait_until="commit")
    while True:
        try:
            source = await page.content()
        except PlaywrightError as e:
            # Firefox can fail while the new document is being attached
            logger.debug("Page source unavailable yet: %s", e)
        if not is_pending(source):
            return source
        if token is not None:
            token.raise_if_cancelled()
        if time.monotonic() >= deadline:
            raise PageSourceTimeout(f"Timed out waiting for page source of {url}")
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def make_url_checker(
    page: Page,
    timeout: float = 30.0,
    token: Optional[CancellationToken] = None,
) -> Callable[[str], Awaitable[bool]]:
    """Build a check that loads a URL and reports whether Storybook rendered."""

    async def check_url(url: str) -> bool:
        try:
            # Reset the current document before trying a new address
            await open_url_and_wait_for_page_source(
                page, "about:blank",
                lambda source: "<body></body>" not in source,
                timeout, token,
            )
            source = await open_url_and_wait_for_page_source(
                page, url,
                # Some browsers return only `head` until the body is parsed
                lambda source: len(source) == 0 or not _BODY_WITH_CONTENT.search(source),
                timeout, token,
            )
            return ROOT_CONTAINER in source
        except (PlaywrightError, PageSourceTimeout) as e:
            logger.debug("Storybook is not reachable at %s: %s", url, e)
            return False

    return check_url


async def resolve_storybook_url(
    storybook_url: str,
    check_url: Callable[[str], Awaitable[bool]],
    addresses: Optional[list[str]] = None,
) -> str:
    """Replace the loopback host with the first address the browser can reach."""
    if addresses is None:
        addresses = local_ipv4_addresses()
    candidates = [DOCKER_INTERNAL] + [a for a in addresses if a != DOCKER_INTERNAL]
    for address in candidates:
        resolved = LOCALHOST_PATTERN.sub(address, storybook_url, count=1)
        logger.debug("Trying storybook address %s", resolved)
        if await check_url(resolved):
            logger.info("Resolved storybook URL to %s", resolved)
            return resolved
    raise ResolveUrlError(
        "Please specify `storybook_url` with an IP address that is accessible from the remote browser"
    )


def load_resolver(import_path: str) -> Callable[[], object]:
    """Import a ``package.module:function`` callable (URL resolver or run hook)."""
    module_name, _, attr = import_path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Resolver must look like 'module:function', got '{import_path}'")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


async def call_resolver(resolver: Callable[[], object]) -> str:
    result = resolver()
    if inspect.isawaitable(result):
        result = await result
    return str(result)
