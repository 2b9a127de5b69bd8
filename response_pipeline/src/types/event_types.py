# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
from enum import Enum
from typing import Annotated, Any, Literal, Union
from dataclasses import dataclass
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class FrameKind(str, Enum):
    TEXT = "text"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    STRUCTURED_DATA = "structured_data"
    COMPLETION = "completion"
    ERROR = "error"


# The envelope field that carries the payload for each frame kind
PAYLOAD_FIELDS: dict[FrameKind, str] = {
    FrameKind.TEXT: "content",
    FrameKind.THINKING: "content",
    FrameKind.TOOL_CALL: "data",
    FrameKind.STRUCTURED_DATA: "data",
    FrameKind.COMPLETION: "data",
    FrameKind.ERROR: "error",
}


@dataclass(frozen=True)
class Frame:
    """One decoded protocol unit"""

    kind: FrameKind
    payload: Any
    synthetic: bool = False  # True for error frames produced by the decoder itself


@dataclass(frozen=True)
class StreamClosed:
    """Terminal item of every decode"""

    aborted: bool


# Typed events ================================================================


class ErrorSource(str, Enum):
    PROTOCOL = "protocol"  # malformed frame
    TRANSPORT = "transport"  # source read failure
    REMOTE = "remote"  # error envelope sent by the backend


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int | None = Field(
        default=None, validation_alias=AliasChoices("prompt_tokens", "promptTokens")
    )
    completion_tokens: int | None = Field(
        default=None,
        validation_alias=AliasChoices("completion_tokens", "completionTokens"),
    )


class TextEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    content: str


class ThinkingEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["thinking"] = "thinking"
    content: str


class ToolCallEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_call"] = "tool_call"
    data: dict[str, Any]

    @property
    def tool_name(self) -> str | None:
        name = self.data.get("toolName", self.data.get("name"))
        return name if isinstance(name, str) else None


class StructuredDataEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["structured_data"] = "structured_data"
    data: dict[str, Any]


class CompletionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["completion"] = "completion"
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["error"] = "error"
    message: str
    source: ErrorSource = ErrorSource.REMOTE


StreamEvent = Annotated[
    Union[
        TextEvent,
        ThinkingEvent,
        ToolCallEvent,
        StructuredDataEvent,
        CompletionEvent,
        ErrorEvent,
    ],
    Field(discriminator="kind"),
]

stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)
