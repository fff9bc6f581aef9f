"""Messages exchanged between the master process and its workers."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from storyshot.models.story import StoryDescriptor
from storyshot.models.test_result import ImageArtifact


class AssignMessage(BaseModel):
    type: Literal["assign"] = "assign"
    test_id: str
    test_path: list[str]
    browser: str
    story: StoryDescriptor


class ShutdownMessage(BaseModel):
    type: Literal["shutdown"] = "shutdown"


class ReadyMessage(BaseModel):
    type: Literal["ready"] = "ready"
    browser: str
    pid: int


class ReportMessage(BaseModel):
    type: Literal["report"] = "report"
    test_id: str
    outcome: Literal["success", "fail", "error"]
    images: list[ImageArtifact] = Field(default_factory=list)
    error: Optional[str] = None


class WorkerErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    browser: str
    pid: int
    error: str
    resolve_failed: bool = False


Message = Annotated[
    Union[AssignMessage, ShutdownMessage, ReadyMessage, ReportMessage, WorkerErrorMessage],
    Field(discriminator="type"),
]

_message_adapter = TypeAdapter(Message)


def encode_message(message: BaseModel) -> dict:
    """Serialize a message for a multiprocessing pipe."""
    return message.model_dump(mode="json")


def decode_message(data: dict):
    """Rebuild a typed message from its pipe payload."""
    return _message_adapter.validate_python(data)
