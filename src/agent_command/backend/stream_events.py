"""Typed events parsed from the CLI's newline-delimited stream-json output."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

ASK_USER_QUESTION_TOOL = "AskUserQuestion"
EXIT_PLAN_MODE_TOOL = "ExitPlanMode"


@dataclass(frozen=True, slots=True)
class SessionStarted:
    session_id: str


@dataclass(frozen=True, slots=True)
class AssistantText:
    text: str


@dataclass(frozen=True, slots=True)
class ToolUse:
    tool_name: str
    input_json: str
    tool_use_id: str | None = None

    @property
    def is_question(self) -> bool:
        return self.tool_name == ASK_USER_QUESTION_TOOL

    @property
    def is_plan_ready(self) -> bool:
        return self.tool_name == EXIT_PLAN_MODE_TOOL


@dataclass(frozen=True, slots=True)
class ToolResult:
    content: str
    is_error: bool = False
    tool_use_id: str | None = None


@dataclass(frozen=True, slots=True)
class ResultEvent:
    """Final ``result`` record of one CLI run."""

    is_error: bool
    result: str = ""
    error: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    session_id: str | None = None


@dataclass(frozen=True, slots=True)
class ProcessExited:
    """Emitted once per process after its output streams are drained."""

    exit_code: int
    stderr_tail: str = ""
    timed_out: bool = False
    cancelled: bool = False


StreamEvent = SessionStarted | AssistantText | ToolUse | ToolResult | ResultEvent | ProcessExited


def parse_stream_line(line: str) -> list[StreamEvent]:
    """Parse one stdout line; non-JSON and unknown records yield no events."""

    stripped = line.strip()
    if not stripped:
        return []
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("Ignoring non-JSON CLI output: %s", stripped[:120])
        return []
    if not isinstance(payload, dict):
        return []

    kind = payload.get("type")
    if kind == "system":
        session_id = payload.get("session_id")
        return [SessionStarted(session_id=session_id)] if isinstance(session_id, str) else []
    if kind == "assistant":
        return _assistant_events(payload)
    if kind == "user":
        return _user_events(payload)
    if kind == "result":
        return [_result_event(payload)]
    return []


def _content_blocks(payload: dict[str, Any]) -> list[dict[str, Any]]:
    message = payload.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _assistant_events(payload: dict[str, Any]) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    for block in _content_blocks(payload):
        block_type = block.get("type")
        if block_type == "text" and isinstance(block.get("text"), str):
            events.append(AssistantText(text=block["text"]))
        elif block_type == "tool_use":
            tool_input = block.get("input", {})
            events.append(
                ToolUse(
                    tool_name=str(block.get("name", "")),
                    input_json=json.dumps(tool_input, ensure_ascii=False, sort_keys=True),
                    tool_use_id=block.get("id"),
                ),
            )
    return events


def _user_events(payload: dict[str, Any]) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    for block in _content_blocks(payload):
        if block.get("type") != "tool_result":
            continue
        content = block.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)
        events.append(
            ToolResult(
                content=content,
                is_error=bool(block.get("is_error", False)),
                tool_use_id=block.get("tool_use_id"),
            ),
        )
    return events


def _result_event(payload: dict[str, Any]) -> ResultEvent:
    is_error = payload.get("subtype") == "error" or bool(payload.get("is_error", False))
    session_id = payload.get("session_id")
    cost = payload.get("total_cost_usd", payload.get("cost_usd"))
    duration = payload.get("duration_ms")
    result_text = payload.get("result")
    return ResultEvent(
        is_error=is_error,
        result=result_text if isinstance(result_text, str) else "",
        error=_error_text(payload) if is_error else None,
        cost_usd=float(cost) if isinstance(cost, int | float) else None,
        duration_ms=int(duration) if isinstance(duration, int | float) else None,
        session_id=session_id if isinstance(session_id, str) else None,
    )


def _error_text(payload: dict[str, Any]) -> str:
    for key in ("error", "error_message", "result", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return "Unknown error"


def progress_estimate(tool_call_count: int) -> float:
    """Rough progress from tool usage; never reports done before the result arrives."""

    return min(tool_call_count / 20.0, 0.9)
