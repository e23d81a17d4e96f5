"""Incremental parser for the agent CLI ``stream-json`` output dialect.

The agent prints one JSON object per line. Bytes arrive in arbitrary pieces
from a reader thread, so the parser keeps a single byte buffer and only
decodes complete lines. Every decoded object is dispatched on its
``(type, subtype)`` pair into canonical ``StreamChunk`` values queued for
``drain()``.

Lines that are not JSON objects are dropped without error: agents and the
shells wrapping them print progress noise on the same stream.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from typing import Any

from agent_workbench.agent.models import AgentEvent, AgentEventKind, StreamChunk, ToolInput

logger = logging.getLogger(__name__)

DEFAULT_MAX_VALUE_CHARS = 500
AGENT_FAILURE_FALLBACK = "Agent reported a failure."
TRUNCATION_SUFFIX = "..."


class AgentStreamParser:
    """Turn raw agent output into canonical chunks.

    ``feed`` and ``drain`` may be called from different threads. The parser
    never raises on bad input; agent failures surface as an ``agent_error``
    event and ``success`` turning false.
    """

    def __init__(self, *, max_value_chars: int = DEFAULT_MAX_VALUE_CHARS) -> None:
        self.max_value_chars = max_value_chars
        self._lock = threading.Lock()
        self._buffer = bytearray()
        self._queue: deque[StreamChunk] = deque()
        self._thinking = False
        self._last_text = ""
        self._emitted_text = False
        self._success = True
        self._error_message: str | None = None
        self._session_id: str | None = None
        self._result_received = False

    @property
    def success(self) -> bool:
        with self._lock:
            return self._success

    @property
    def error_message(self) -> str | None:
        with self._lock:
            return self._error_message

    @property
    def session_id(self) -> str | None:
        """Last resumable session id reported by the agent."""

        with self._lock:
            return self._session_id

    @property
    def result_received(self) -> bool:
        with self._lock:
            return self._result_received

    @property
    def emitted_text(self) -> bool:
        with self._lock:
            return self._emitted_text

    @property
    def thinking(self) -> bool:
        with self._lock:
            return self._thinking

    def feed(self, data: bytes | str) -> None:
        """Append raw output and parse every complete line in the buffer."""

        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return
        with self._lock:
            self._buffer.extend(data)
            while True:
                newline = self._buffer.find(b"\n")
                if newline < 0:
                    return
                line = bytes(self._buffer[:newline]).strip()
                del self._buffer[: newline + 1]
                if line:
                    self._handle_line(line)

    def finish(self) -> None:
        """Parse a trailing line that was never newline-terminated."""

        with self._lock:
            line = bytes(self._buffer).strip()
            self._buffer.clear()
            if line:
                self._handle_line(line)

    def drain(self) -> list[StreamChunk]:
        """Remove and return every queued chunk in FIFO order."""

        with self._lock:
            drained = list(self._queue)
            self._queue.clear()
            return drained

    def _handle_line(self, line: bytes) -> None:
        try:
            decoded = json.loads(line.decode("utf-8", errors="replace"))
        except ValueError:
            logger.debug("Dropping non-JSON agent output line: %.200r", line)
            return
        if not isinstance(decoded, dict):
            return

        self._capture_session_id(decoded)

        event_type = decoded.get("type")
        if not isinstance(event_type, str):
            return
        subtype = decoded.get("subtype")
        if not isinstance(subtype, str):
            subtype = None

        if event_type == "thinking":
            if subtype == "delta":
                self._thinking = True
            elif subtype == "completed":
                self._thinking = False
            return

        self._thinking = False
        if event_type == "tool_call":
            self._handle_tool_call(decoded, subtype)
        elif event_type == "assistant":
            self._handle_assistant(decoded)
        elif event_type == "result":
            self._handle_result(decoded, subtype)

    def _handle_tool_call(self, event: dict[str, Any], subtype: str | None) -> None:
        tool_call = event.get("tool_call")
        if not isinstance(tool_call, dict) or not tool_call:
            return
        tool_name = next(iter(tool_call))
        payload = tool_call[tool_name]
        if not isinstance(payload, dict):
            payload = {}

        tool_inputs, input_bytes = self._build_tool_inputs(payload.get("args"))

        if subtype == "started":
            self._queue.append(
                StreamChunk.of_event(
                    AgentEvent(
                        kind=AgentEventKind.TOOL_CALLING,
                        tool_name=tool_name,
                        tool_inputs=tool_inputs,
                        input_bytes=input_bytes,
                    ),
                ),
            )
        elif subtype == "completed":
            rendered = _render_value(payload.get("result"))
            self._queue.append(
                StreamChunk.of_event(
                    AgentEvent(
                        kind=AgentEventKind.TOOL_CALLED,
                        tool_name=tool_name,
                        tool_inputs=tool_inputs,
                        tool_result=self._truncate(rendered),
                        input_bytes=input_bytes,
                        result_bytes=len(rendered.encode("utf-8")),
                    ),
                ),
            )

    def _handle_assistant(self, event: dict[str, Any]) -> None:
        message = event.get("message")
        if not isinstance(message, dict):
            return
        content = message.get("content")
        if isinstance(content, str):
            text = content
        elif isinstance(content, list):
            text = "".join(
                item["text"]
                for item in content
                if isinstance(item, dict)
                and item.get("type") == "text"
                and isinstance(item.get("text"), str)
            )
        else:
            return
        if not text:
            return

        # Upstream may resend the whole accumulated text on every update.
        if text.startswith(self._last_text):
            delta = text[len(self._last_text) :]
        else:
            delta = text
        self._last_text = text
        if delta:
            self._queue.append(StreamChunk.text(delta))
            self._emitted_text = True

    def _handle_result(self, event: dict[str, Any], subtype: str | None) -> None:
        self._result_received = True
        if subtype == "success":
            self._success = True
            self._error_message = None
            result = event.get("result")
            if not self._emitted_text and isinstance(result, str) and result:
                self._queue.append(StreamChunk.text(result))
                self._emitted_text = True
            return

        self._success = False
        self._error_message = _extract_error_message(event)
        self._queue.append(
            StreamChunk.of_event(
                AgentEvent(kind=AgentEventKind.AGENT_ERROR, error_message=self._error_message),
            ),
        )

    def _capture_session_id(self, event: dict[str, Any]) -> None:
        for key in ("session_id", "sessionId"):
            value = event.get(key)
            if isinstance(value, str) and value:
                self._session_id = value
                break
        session = event.get("session")
        if isinstance(session, dict):
            nested = session.get("id") or session.get("session_id")
            if isinstance(nested, str) and nested:
                self._session_id = nested

    def _build_tool_inputs(self, args: Any) -> tuple[tuple[ToolInput, ...] | None, int | None]:
        if isinstance(args, dict):
            items = [(str(key), value) for key, value in args.items()]
        elif isinstance(args, list):
            items = [(str(index), value) for index, value in enumerate(args)]
        else:
            return None, None
        if not items:
            return None, None

        inputs: list[ToolInput] = []
        total_bytes = 0
        for key, value in items:
            rendered = _render_value(value)
            total_bytes += len(rendered.encode("utf-8"))
            inputs.append(ToolInput(key=key, value=self._truncate(rendered)))
        return tuple(inputs), total_bytes

    def _truncate(self, value: str) -> str:
        if len(value) <= self.max_value_chars:
            return value
        return value[: self.max_value_chars] + TRUNCATION_SUFFIX


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return "[unserializable]"


def _extract_error_message(event: dict[str, Any]) -> str:
    for key in ("error", "message"):
        value = event.get(key)
        if isinstance(value, dict):
            value = value.get("message")
        if isinstance(value, str) and value.strip():
            return value
    return AGENT_FAILURE_FALLBACK
