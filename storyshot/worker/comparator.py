"""Default image comparison used to turn a screenshot into a pass/fail verdict."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from PIL import Image, ImageChops

logger = logging.getLogger(__name__)


@dataclass
class CompareResult:
    passed: bool
    message: str = ""
    diff: Optional[bytes] = None  # PNG highlighting the differing pixels


class ImageComparator(Protocol):
    def compare(self, actual: bytes, expected: bytes) -> CompareResult: ...


class PixelComparator:
    """Counts pixels whose channels differ by more than ``pixel_threshold``.

    The images match when the share of differing pixels is within
    ``tolerance``; the defaults require an exact match.
    """

    def __init__(self, tolerance: float = 0.0, pixel_threshold: int = 0):
        self.tolerance = tolerance
        self.pixel_threshold = pixel_threshold

    def compare(self, actual: bytes, expected: bytes) -> CompareResult:
        current = Image.open(io.BytesIO(actual)).convert("RGBA")
        baseline = Image.open(io.BytesIO(expected)).convert("RGBA")

        if current.size != baseline.size:
            return CompareResult(
                False,
                f"Image size mismatch: expected {baseline.size[0]}x{baseline.size[1]}, "
                f"got {current.size[0]}x{current.size[1]}",
            )

        total = current.size[0] * current.size[1]
        if total == 0:
            return CompareResult(True, "Empty images")

        # Largest per-channel difference of every pixel
        r, g, b, a = ImageChops.difference(current, baseline).split()
        channel_max = ImageChops.lighter(ImageChops.lighter(r, g), ImageChops.lighter(b, a))
        threshold = self.pixel_threshold
        mask = channel_max.point(lambda v: 255 if v > threshold else 0)
        diff_count = mask.histogram()[255]

        diff_ratio = diff_count / total
        passed = diff_ratio <= self.tolerance
        msg = f"Pixel diff: {diff_ratio:.2%} (tolerance: {self.tolerance:.2%})"
        if passed:
            return CompareResult(True, msg)

        highlight = Image.new("RGBA", current.size, (255, 0, 0, 255))
        diff_image = Image.composite(highlight, baseline.point(lambda v: v // 3), mask)
        buf = io.BytesIO()
        diff_image.save(buf, format="PNG")
        logger.debug("Images differ in %d of %d pixels", diff_count, total)
        return CompareResult(False, msg, diff=buf.getvalue())
