"""Parsing and rendering of ``claude --output-format stream-json`` output.

Each line the CLI prints is one JSON message. Only the parts a chat user
cares about are kept: assistant text, tool calls, tool results, and the
final result with its cost summary.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

# Tool results longer than this are cut in chat messages
TOOL_RESULT_PREVIEW_LINES = 20


class EventKind(Enum):
    INIT = "init"
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    PLAIN = "plain"
    OTHER = "other"


@dataclass
class ClaudeEvent:
    kind: EventKind
    text: str = ""
    conversation_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Any = None
    is_error: bool = False
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    num_turns: Optional[int] = None


@dataclass
class PromptOutcome:
    """What a finished prompt left behind."""

    conversation_id: Optional[str] = None
    result: Optional[ClaudeEvent] = None
    exit_code: Optional[int] = None
    stderr: str = ""
    events: list[ClaudeEvent] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        if self.result is not None:
            return self.result.is_error
        return self.exit_code != 0


def _tool_result_text(content) -> str:
    # Either a plain string or a list of {"type": "text", "text": ...} blocks
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            block.get("text", "") for block in content if isinstance(block, dict)
        )
    return ""


def _first_block(message: dict, kind: str) -> Optional[dict]:
    for block in message.get("content") or []:
        if isinstance(block, dict) and block.get("type") == kind:
            return block
    return None


def parse_stream_line(line: str) -> Optional[ClaudeEvent]:
    """Turn one output line into an event; None for blank lines.

    Lines that are not JSON objects come back as ``PLAIN`` events.
    """
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return ClaudeEvent(EventKind.PLAIN, text=line)
    if not isinstance(data, dict):
        return ClaudeEvent(EventKind.PLAIN, text=line)

    conversation_id = data.get("session_id")
    msg_type = data.get("type")

    if msg_type == "system":
        kind = EventKind.INIT if data.get("subtype") == "init" else EventKind.OTHER
        return ClaudeEvent(kind, conversation_id=conversation_id)

    if msg_type == "assistant":
        message = data.get("message") or {}
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                return ClaudeEvent(
                    EventKind.TEXT, text=block.get("text", ""), conversation_id=conversation_id
                )
            if block.get("type") == "tool_use":
                return ClaudeEvent(
                    EventKind.TOOL_USE,
                    conversation_id=conversation_id,
                    tool_name=block.get("name", "tool"),
                    tool_input=block.get("input"),
                )
        return ClaudeEvent(EventKind.OTHER, conversation_id=conversation_id)

    if msg_type == "user":
        block = _first_block(data.get("message") or {}, "tool_result")
        if block is not None:
            return ClaudeEvent(
                EventKind.TOOL_RESULT,
                text=_tool_result_text(block.get("content")),
                conversation_id=conversation_id,
                is_error=bool(block.get("is_error")),
            )
        return ClaudeEvent(EventKind.OTHER, conversation_id=conversation_id)

    if msg_type == "result":
        return ClaudeEvent(
            EventKind.RESULT,
            text=data.get("result") or "",
            conversation_id=conversation_id,
            is_error=bool(data.get("is_error")),
            cost_usd=data.get("total_cost_usd"),
            duration_ms=data.get("duration_ms"),
            num_turns=data.get("num_turns"),
        )

    return ClaudeEvent(EventKind.OTHER, conversation_id=conversation_id)


# ---------------------------------------------------------------------------
# Chat rendering
# ---------------------------------------------------------------------------


def preview_tool_result(content: str, max_lines: int = TOOL_RESULT_PREVIEW_LINES) -> str:
    lines = content.splitlines()
    if len(lines) <= max_lines:
        return content
    hidden = len(lines) - max_lines
    return "\n".join(lines[:max_lines]) + f"\n... [{hidden} more lines hidden]"


def format_summary(event: ClaudeEvent) -> str:
    """One-line cost/duration/turns summary of a result event."""
    parts = []
    if event.cost_usd:
        parts.append(f"${event.cost_usd:.4f}")
    if event.duration_ms is not None:
        parts.append(f"{event.duration_ms}ms")
    if event.num_turns is not None:
        parts.append(f"{event.num_turns} turns")
    return " • ".join(parts) if parts else "Session completed"


def _fence(text: str, lang: str = "") -> str:
    # A literal fence inside would close the block early
    return f"```{lang}\n{text.replace('```', '` ` `')}\n```"


def format_event(event: ClaudeEvent) -> Optional[str]:
    """Markdown for events worth showing while the prompt runs, else None.

    The result event is reported separately once the run is over.
    """
    if event.kind is EventKind.INIT:
        return "🤖 **Claude session initialized**"
    if event.kind is EventKind.TEXT and event.text.strip():
        return event.text
    if event.kind is EventKind.TOOL_USE:
        rendered = json.dumps(event.tool_input, indent=2) if event.tool_input else ""
        header = f"🔧 **Using tool: {event.tool_name}**"
        return f"{header}\n{_fence(rendered, 'json')}" if rendered else header
    if event.kind is EventKind.TOOL_RESULT and event.text.strip():
        label = "❌ **Tool error:**" if event.is_error else "📋 **Tool result:**"
        return f"{label}\n{_fence(preview_tool_result(event.text))}"
    return None
