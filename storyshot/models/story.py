"""Story descriptors: the UI variants under test."""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class CaptureParameters(BaseModel):
    capture_element: Optional[str] = None  # explicit CSS selector to capture
    ignore_elements: Union[str, list[str], None] = None
    wait_for_ready: bool = False
    skip: Union[bool, str] = False  # True or a reason string
    globals: dict[str, Any] = Field(default_factory=dict)

    @property
    def ignore_selectors(self) -> list[str]:
        if not self.ignore_elements:
            return []
        if isinstance(self.ignore_elements, str):
            return [self.ignore_elements]
        return [s for s in self.ignore_elements if s]


class StoryDescriptor(BaseModel):
    id: str
    kind: str  # "Components/Button"
    name: str
    parameters: CaptureParameters = Field(default_factory=CaptureParameters)

    @property
    def title_path(self) -> list[str]:
        return [part for part in self.kind.split("/") if part] + [self.name]
