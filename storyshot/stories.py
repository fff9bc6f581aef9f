"""Story loading and test registry construction."""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from storyshot.models.config import BrowserConfig
from storyshot.models.story import StoryDescriptor
from storyshot.models.test_result import TestRecord

logger = logging.getLogger(__name__)


def make_test_id(path: list[str]) -> str:
    """Stable test ID derived from the test path."""
    return hashlib.md5("/".join(path).encode()).hexdigest()[:12]


def load_stories(path: str | Path) -> list[StoryDescriptor]:
    """Load stories from a JSON list or a Storybook ``stories.json`` export."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Stories file not found: {path}")
    with open(path) as f:
        data = json.load(f)

    if isinstance(data, dict):
        entries = list((data.get("stories") or data.get("entries") or {}).values())
    else:
        entries = data

    stories = []
    for entry in entries:
        if entry.get("type", "story") != "story":
            continue  # docs entries
        entry = dict(entry)
        entry.setdefault("kind", entry.get("title", ""))
        params = entry.get("parameters") or {}
        # Storybook keeps addon parameters under the addon's own key
        entry["parameters"] = params.get("storyshot", params)
        stories.append(StoryDescriptor.model_validate(
            {k: entry[k] for k in ("id", "kind", "name", "parameters")}
        ))
    logger.debug("Loaded %d stories from %s", len(stories), path)
    return stories


def build_test_registry(
    stories: Iterable[StoryDescriptor],
    browsers: dict[str, BrowserConfig],
    only_browsers: Optional[Iterable[str]] = None,
) -> dict[str, TestRecord]:
    """Create one test per story and browser, in story order then browser order."""
    selected = [b for b in browsers if only_browsers is None or b in set(only_browsers)]
    tests: dict[str, TestRecord] = {}
    for story in stories:
        skip = story.parameters.skip
        for browser in selected:
            path = story.title_path + [browser]
            test_id = make_test_id(path)
            tests[test_id] = TestRecord(
                id=test_id,
                path=path,
                browser=browser,
                story_id=story.id,
                skip=skip,
                status="skipped" if skip else "unknown",
            )
    return tests
