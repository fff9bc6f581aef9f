"""Per-browser behaviour flags, keyed by engine family and major version."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

MouseResetStrategy = Literal["viewport_origin", "viewport_offset_y", "body_offset"]


@dataclass(frozen=True)
class BrowserQuirks:
    excludes_scrollbar_in_screenshot: bool = False
    mouse_reset_strategy: MouseResetStrategy = "viewport_origin"


DEFAULT_QUIRKS = BrowserQuirks()

# (engine, major version); a None version matches every version of the engine.
QUIRKS_TABLE: dict[tuple[str, Optional[int]], BrowserQuirks] = {
    # WebKit screenshots the viewport without its scrollbars
    ("webkit", None): BrowserQuirks(excludes_scrollbar_in_screenshot=True),
    # Firefox 61 moves the pointer to the bottom-left corner on a (0, 0) move
    ("firefox", 61): BrowserQuirks(
        excludes_scrollbar_in_screenshot=True,
        mouse_reset_strategy="viewport_offset_y",
    ),
    # Chrome 70 grid nodes only accept pointer moves relative to an element
    ("chromium", 70): BrowserQuirks(mouse_reset_strategy="body_offset"),
}


def major_version(version: Optional[str]) -> Optional[int]:
    """Parse the major version out of a browser version string."""
    if not version:
        return None
    head = version.strip().split(".")[0]
    return int(head) if head.isdigit() else None


def resolve_quirks(engine: str, version: Optional[str]) -> BrowserQuirks:
    """Look up quirks for an engine, exact version first."""
    major = major_version(version)
    if (engine, major) in QUIRKS_TABLE:
        return QUIRKS_TABLE[(engine, major)]
    return QUIRKS_TABLE.get((engine, None), DEFAULT_QUIRKS)
