"""Canonical run, chunk and agent-event models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from agent_workbench.errors import InvalidTransitionError


class RunStatus(str, Enum):
    """Agent run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"


RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLING, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLING}),
    RunStatus.CANCELLING: frozenset({RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


def validate_run_transition(current: RunStatus, target: RunStatus) -> None:
    if target not in RUN_TRANSITIONS[current]:
        raise InvalidTransitionError("run", current.value, target.value)


class ChunkType(str, Enum):
    TEXT = "text"
    EVENT = "event"
    DONE = "done"
    PROGRESS = "progress"
    MESSAGE = "message"


class AgentEventKind(str, Enum):
    INFERENCE_START = "inference_start"
    INFERENCE_STOP = "inference_stop"
    TOOL_CALLING = "tool_calling"
    TOOL_CALLED = "tool_called"
    TOOL_ERROR = "tool_error"
    AGENT_ERROR = "agent_error"


@dataclass(frozen=True, slots=True)
class ToolInput:
    key: str
    value: str


@dataclass(frozen=True, slots=True)
class AgentEvent:
    """Structured agent activity carried inside an event chunk."""

    kind: AgentEventKind
    tool_name: str | None = None
    tool_inputs: tuple[ToolInput, ...] | None = None
    tool_result: str | None = None
    error_message: str | None = None
    input_bytes: int | None = None
    result_bytes: int | None = None

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value}
        if self.tool_name is not None:
            data["toolName"] = self.tool_name
        if self.tool_inputs is not None:
            data["toolInputs"] = [
                {"key": item.key, "value": item.value} for item in self.tool_inputs
            ]
        if self.tool_result is not None:
            data["toolResult"] = self.tool_result
        if self.error_message is not None:
            data["errorMessage"] = self.error_message
        if self.input_bytes is not None:
            data["inputBytes"] = self.input_bytes
        if self.result_bytes is not None:
            data["resultBytes"] = self.result_bytes
        return data

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> AgentEvent:
        raw_inputs = data.get("toolInputs")
        tool_inputs = (
            tuple(ToolInput(key=str(item["key"]), value=str(item["value"])) for item in raw_inputs)
            if isinstance(raw_inputs, list)
            else None
        )
        return cls(
            kind=AgentEventKind(data["kind"]),
            tool_name=data.get("toolName"),
            tool_inputs=tool_inputs,
            tool_result=data.get("toolResult"),
            error_message=data.get("errorMessage"),
            input_bytes=data.get("inputBytes"),
            result_bytes=data.get("resultBytes"),
        )


@dataclass(frozen=True, slots=True)
class StreamChunk:
    """One unit of canonical streamed output."""

    chunk_type: ChunkType
    content: str | None = None
    event: AgentEvent | None = None
    success: bool | None = None
    error_message: str | None = None
    backend_session_state: str | None = None

    @classmethod
    def text(cls, content: str) -> StreamChunk:
        return cls(chunk_type=ChunkType.TEXT, content=content)

    @classmethod
    def progress(cls, content: str) -> StreamChunk:
        return cls(chunk_type=ChunkType.PROGRESS, content=content)

    @classmethod
    def message(cls, content: str) -> StreamChunk:
        return cls(chunk_type=ChunkType.MESSAGE, content=content)

    @classmethod
    def of_event(cls, event: AgentEvent) -> StreamChunk:
        return cls(chunk_type=ChunkType.EVENT, event=event)

    @classmethod
    def done(
        cls,
        *,
        success: bool,
        error_message: str | None = None,
        backend_session_state: str | None = None,
    ) -> StreamChunk:
        return cls(
            chunk_type=ChunkType.DONE,
            success=success,
            error_message=error_message,
            backend_session_state=backend_session_state,
        )

    def payload(self) -> dict[str, Any]:
        """Wire fields without ``chunkType``; stored as the chunk's payload JSON."""

        data: dict[str, Any] = {}
        if self.content is not None:
            data["content"] = self.content
        if self.event is not None:
            data["event"] = self.event.to_wire()
        if self.chunk_type == ChunkType.DONE:
            data["success"] = bool(self.success)
            data["errorMessage"] = self.error_message
            if self.backend_session_state is not None:
                data["backendSessionState"] = self.backend_session_state
        return data

    def to_wire(self) -> dict[str, Any]:
        return {"chunkType": self.chunk_type.value, **self.payload()}

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> StreamChunk:
        raw_event = data.get("event")
        return cls(
            chunk_type=ChunkType(data["chunkType"]),
            content=data.get("content"),
            event=AgentEvent.from_wire(raw_event) if isinstance(raw_event, dict) else None,
            success=data.get("success"),
            error_message=data.get("errorMessage"),
            backend_session_state=data.get("backendSessionState"),
        )


@dataclass(slots=True)
class RunView:
    """Readable agent run view."""

    run_id: str
    conversation_id: str
    workspace_id: str
    instruction: str
    status: RunStatus
    backend_session_state: str | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    cancel_requested_at: datetime | None
    finished_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class RunChunkView:
    """Stored chunk as served to pollers."""

    run_id: str
    sequence: int
    chunk: StreamChunk
    created_at: datetime

    def to_wire(self) -> dict[str, Any]:
        return {"sequence": self.sequence, **self.chunk.to_wire()}
