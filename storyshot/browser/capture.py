"""Screenshot capture: viewport, single element, or stitched multi-tile composite."""

from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from PIL import Image
from playwright.async_api import JSHandle, Page

from .cancellation import CancellationToken
from .quirks import BrowserQuirks
from .story_switcher import StoryHarnessError

logger = logging.getLogger(__name__)

_RECTS_JS = """(selector) => {
    window.scrollTo(0, 0);
    var element = document.querySelector(selector);
    if (!element) return null;
    var elementRect = element.getBoundingClientRect();
    return {
        elementRect: {
            top: elementRect.top,
            left: elementRect.left,
            width: elementRect.width,
            height: elementRect.height,
        },
        windowRect: {
            top: Math.round(window.scrollY || window.pageYOffset),
            left: Math.round(window.scrollX || window.pageXOffset),
            width: window.innerWidth,
            height: window.innerHeight,
        },
    };
}"""

_HAS_IGNORE_HOOKS_JS = """() => typeof window.__STORYSHOT_INSERT_IGNORE_STYLES__ == 'function'
    && typeof window.__STORYSHOT_REMOVE_IGNORE_STYLES__ == 'function'"""


class CaptureError(Exception):
    """The requested capture target could not be screenshotted."""


@dataclass(frozen=True)
class ElementRect:
    top: float
    left: float
    width: float
    height: float

    @classmethod
    def from_dict(cls, data: dict) -> "ElementRect":
        return cls(
            top=float(data["top"]), left=float(data["left"]),
            width=float(data["width"]), height=float(data["height"]),
        )


def fits_into_viewport(window_rect: ElementRect, element_rect: ElementRect) -> bool:
    return (
        element_rect.width + element_rect.left <= window_rect.width
        and element_rect.height + element_rect.top <= window_rect.height
    )


@dataclass
class CompositePlan:
    """Tile layout for an element larger than the viewport.

    Tiles are captured row-major at ``scroll_positions``. Destination pixel
    (x, y) comes from tile ``(y // tile_height, x // tile_width)`` at
    ``(x % tile_width + col_offsets[col], y % tile_height + row_offsets[row])``.
    Offsets are zero except where a tile had to be scrolled back to keep the
    element's trailing edge inside the page.
    """

    width: int
    height: int
    cols: int
    rows: int
    tile_width: int
    tile_height: int
    col_offsets: list[int] = field(default_factory=list)
    row_offsets: list[int] = field(default_factory=list)
    scroll_positions: list[tuple[float, float]] = field(default_factory=list)

    @property
    def x_offset(self) -> int:
        return self.col_offsets[-1]

    @property
    def y_offset(self) -> int:
        return self.row_offsets[-1]

    def source_pixel(self, x: int, y: int) -> tuple[int, int, int]:
        """Return (tile index, x, y) of the tile pixel feeding output pixel (x, y)."""
        col = x // self.tile_width
        row = y // self.tile_height
        return (
            row * self.cols + col,
            x % self.tile_width + self.col_offsets[col],
            y % self.tile_height + self.row_offsets[row],
        )


def plan_composite(
    window_rect: ElementRect,
    element_rect: ElementRect,
    scrollbar_width: int,
    excludes_scrollbar: bool,
) -> CompositePlan:
    """Work out how to tile an element that does not fit in the viewport."""
    # Only a scrollbar painted into the screenshot eats tile space
    scrollbar = 0 if excludes_scrollbar else scrollbar_width

    # The viewport may already be scrolled somewhere
    left = element_rect.left - window_rect.left
    top = element_rect.top - window_rect.top
    right = left + element_rect.width
    bottom = top + element_rect.height

    fits_horizontally = window_rect.width >= element_rect.width + left
    fits_vertically = window_rect.height >= element_rect.height + top
    tile_width = int(window_rect.width - (0 if fits_vertically else scrollbar))
    tile_height = int(window_rect.height - (0 if fits_horizontally else scrollbar))
    cols = max(1, math.ceil(element_rect.width / tile_width))
    rows = max(1, math.ceil(element_rect.height / tile_height))

    xs = [max(0.0, min(tile_width * col + left, max(0.0, right - tile_width))) for col in range(cols)]
    ys = [max(0.0, min(tile_height * row + top, max(0.0, bottom - tile_height))) for row in range(rows)]

    return CompositePlan(
        width=round(element_rect.width),
        height=round(element_rect.height),
        cols=cols,
        rows=rows,
        tile_width=tile_width,
        tile_height=tile_height,
        col_offsets=[round(tile_width * col + left - x) for col, x in enumerate(xs)],
        row_offsets=[round(tile_height * row + top - y) for row, y in enumerate(ys)],
        scroll_positions=[(x, y) for y in ys for x in xs],
    )


def stitch_tiles(plan: CompositePlan, tiles: list[Union[bytes, Image.Image]]) -> Image.Image:
    """Assemble captured tiles into one image of exactly the element's size.

    Tiles are addressed by their own width, so a scrollbar painted into a
    tile never shifts the rows that follow it.
    """
    if len(tiles) != plan.rows * plan.cols:
        raise CaptureError(f"Expected {plan.rows * plan.cols} tiles, got {len(tiles)}")
    images = [
        (t if isinstance(t, Image.Image) else Image.open(io.BytesIO(t))).convert("RGBA")
        for t in tiles
    ]
    composite = Image.new("RGBA", (plan.width, plan.height))

    for row in range(plan.rows):
        y0 = row * plan.tile_height
        y1 = min(y0 + plan.tile_height, plan.height)
        if y0 >= y1:
            continue
        for col in range(plan.cols):
            x0 = col * plan.tile_width
            x1 = min(x0 + plan.tile_width, plan.width)
            if x0 >= x1:
                continue
            sx = plan.col_offsets[col]
            sy = plan.row_offsets[row]
            region = images[row * plan.cols + col].crop((sx, sy, sx + x1 - x0, sy + y1 - y0))
            composite.paste(region, (x0, y0))
    return composite


def encode_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


class CaptureEngine:
    """Produces the canonical PNG for the current story."""

    def __init__(
        self,
        page: Page,
        quirks: BrowserQuirks,
        scrollbar_width: Callable[[], Awaitable[int]],
        token: Optional[CancellationToken] = None,
    ):
        self.page = page
        self.quirks = quirks
        self._scrollbar_width = scrollbar_width
        self.token = token or CancellationToken()

    async def take_screenshot(
        self,
        capture_element: Optional[str] = None,
        ignore_selectors: Optional[list[str]] = None,
    ) -> bytes:
        ignore_styles = await self._insert_ignore_styles(ignore_selectors or [])
        try:
            if not capture_element:
                return await self.page.screenshot()

            rects = await self.page.evaluate(_RECTS_JS, capture_element)
            if not rects:
                raise CaptureError(f"Couldn't find element with selector: '{capture_element}'")
            element_rect = ElementRect.from_dict(rects["elementRect"])
            window_rect = ElementRect.from_dict(rects["windowRect"])

            if fits_into_viewport(window_rect, element_rect):
                return await self.page.locator(capture_element).first.screenshot()
            logger.debug("Element %s (%.0fx%.0f) exceeds the viewport, taking composite screenshot",
                         capture_element, element_rect.width, element_rect.height)
            return await self._take_composite_screenshot(window_rect, element_rect)
        finally:
            await self._remove_ignore_styles(ignore_styles)

    async def _take_composite_screenshot(self, window_rect: ElementRect, element_rect: ElementRect) -> bytes:
        plan = plan_composite(
            window_rect, element_rect,
            await self._scrollbar_width(),
            self.quirks.excludes_scrollbar_in_screenshot,
        )
        logger.debug("Composite plan: %d cols x %d rows of %dx%d tiles",
                     plan.cols, plan.rows, plan.tile_width, plan.tile_height)
        tiles = []
        for x, y in plan.scroll_positions:
            self.token.raise_if_cancelled()
            await self.page.evaluate("([x, y]) => window.scrollTo(x, y)", [x, y])
            tiles.append(await self.page.screenshot())
        return encode_png(stitch_tiles(plan, tiles))

    async def _insert_ignore_styles(self, selectors: list[str]) -> Optional[JSHandle]:
        if not selectors:
            return None
        if not await self.page.evaluate(_HAS_IGNORE_HOOKS_JS):
            raise StoryHarnessError(
                "Can't hide ignored elements, the storyshot addon hooks are not available on the page."
            )
        return await self.page.evaluate_handle(
            "(selectors) => window.__STORYSHOT_INSERT_IGNORE_STYLES__(selectors)", selectors,
        )

    async def _remove_ignore_styles(self, ignore_styles: Optional[JSHandle]) -> None:
        if ignore_styles is None:
            return
        try:
            await self.page.evaluate(
                "(styles) => window.__STORYSHOT_REMOVE_IGNORE_STYLES__(styles)", ignore_styles,
            )
        finally:
            await ignore_styles.dispose()
