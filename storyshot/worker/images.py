"""Screenshot persistence: reference images and per-attempt report images."""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import Optional

from storyshot.models.test_result import ImageArtifact

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[<>:"\\|?*\x00-\x1f]')


def safe_part(part: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", part).strip().strip(".")
    return cleaned or "_"


class ImageStore:
    """Maps test paths to image files.

    References live at ``<screen_dir>/<kind...>/<story>/<browser>.png``;
    each attempt writes ``<browser>.png``, ``<browser>-expect.png`` and
    ``<browser>-diff.png`` under the same layout in ``report_dir``.
    """

    def __init__(self, screen_dir: Path, report_dir: Path):
        self.screen_dir = Path(screen_dir)
        self.report_dir = Path(report_dir)

    def _story_dir(self, root: Path, test_path: list[str]) -> Path:
        # The last path element is the browser name, it names the file instead
        return root.joinpath(*(safe_part(p) for p in test_path[:-1]))

    def expected_path(self, test_path: list[str], browser: str) -> Path:
        return self._story_dir(self.screen_dir, test_path) / f"{safe_part(browser)}.png"

    def load_expected(self, test_path: list[str], browser: str) -> Optional[bytes]:
        path = self.expected_path(test_path, browser)
        if not path.exists():
            logger.debug("No reference image at %s", path)
            return None
        return path.read_bytes()

    def save_attempt(
        self,
        test_id: str,
        test_path: list[str],
        browser: str,
        actual: bytes,
        expected: Optional[bytes] = None,
        diff: Optional[bytes] = None,
    ) -> ImageArtifact:
        """Write one attempt's images, replacing those of a previous attempt."""
        report_dir = self._story_dir(self.report_dir, test_path)
        report_dir.mkdir(parents=True, exist_ok=True)
        name = safe_part(browser)

        actual_path = report_dir / f"{name}.png"
        actual_path.write_bytes(actual)

        expected_path = None
        if expected is not None:
            expected_path = report_dir / f"{name}-expect.png"
            expected_path.write_bytes(expected)

        diff_path = None
        if diff is not None:
            diff_path = report_dir / f"{name}-diff.png"
            diff_path.write_bytes(diff)

        return ImageArtifact(
            test_id=test_id,
            browser=browser,
            actual=str(actual_path.relative_to(self.report_dir)),
            expected=str(expected_path.relative_to(self.report_dir)) if expected_path else None,
            diff=str(diff_path.relative_to(self.report_dir)) if diff_path else None,
            image_hash=hashlib.sha256(actual).hexdigest(),
        )

    def reference_images(self) -> set[str]:
        """All reference images under screen_dir, relative and POSIX-style."""
        if not self.screen_dir.exists():
            return set()
        return {
            p.relative_to(self.screen_dir).as_posix()
            for p in self.screen_dir.rglob("*.png")
        }
