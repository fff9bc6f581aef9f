"""Per-test execution context shared by the story switcher and the capture engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from storyshot.models.story import StoryDescriptor
from storyshot.models.test_result import ImageArtifact


@dataclass
class TestContext:
    __test__ = False  # not a pytest test class

    test_id: str
    test_path: list[str]
    browser_name: str
    story: StoryDescriptor
    capture_element: Optional[str] = None  # set or cleared by switch_story
    images: list[ImageArtifact] = field(default_factory=list)

    @property
    def title(self) -> str:
        return "/".join(self.test_path)
