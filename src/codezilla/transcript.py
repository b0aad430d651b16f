"""Classify Claude Code and Codex transcript lines into semantic signals.

Signal matchers are kept explicit so that manual debugging can map behavior
back to concrete transcript shapes. Rules are evaluated in order and the
first match wins; several shapes would also match a later rule, so the order
below is part of the contract.

Every ``parse_*`` function returns:
- a ``ParsedTranscriptSignal`` for a recognized line,
- the shared ignored signal for recognized-but-irrelevant lines,
- ``None`` when the line is not JSON or its shape is unrecognized.
"""

import json
import re
import uuid
from typing import Any

from .events import (
    ApiErrorEvent,
    AssistantText,
    CommandStarted,
    Compaction,
    ContextCompacted,
    Ignored,
    ItemCompleted,
    ParsedTranscriptSignal,
    Result,
    SystemErrorEvent,
    ToolResult,
    ToolUse,
    TranscriptEvent,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from .models import AgentKind, IdleReason, SemanticPhase, SemanticSignalGroup, SignalConfidence
from .signals import get_signal_definition

# Paragraph separator: a blank line (possibly containing whitespace)
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")

_QUESTION_END_RE = re.compile(r"\?\s*$")
_SOLICITATION_RE = re.compile(
    r"\b(can you|could you|would you|do you want|what should|how should|shall I|want me to)\b",
    re.IGNORECASE,
)

# Claude: phrasing that confirms an approval already happened wins over a request
_CLAUDE_ALREADY_APPROVED_RE = re.compile(
    r"\b(I've approved|has been approved|was approved|already approved)\b",
    re.IGNORECASE,
)
_CLAUDE_APPROVAL_RE = re.compile(
    r"\b(do you want to allow|allow this action|approve this|waiting for approval)\b",
    re.IGNORECASE,
)

_CODEX_APPROVAL_RE = re.compile(
    r"\b(allow this action|approve|approval|escalated|require_escalated|elevated permissions)\b",
    re.IGNORECASE,
)
_CODEX_CHOICE_RE = re.compile(r"\b(choose|select|pick)\b.+\b(option|action|plan)\b", re.IGNORECASE)
_CODEX_REPLY_RE = re.compile(r"\b(reply with|respond with)\b", re.IGNORECASE)

# Longest tail still considered a question aimed at the user
_QUESTION_MAX_CHARS = 200

# Tools that may trigger a permission prompt in Claude Code's CLI.
# When the PTY goes idle after one of these, the user is likely being asked to approve.
APPROVAL_LIKELY_TOOLS = frozenset({
    "Write", "Edit", "Bash", "NotebookEdit", "WebFetch", "WebSearch",
})

CLAUDE_INPUT_TOOLS = frozenset({"AskUserQuestion", "ExitPlanMode", "EnterPlanMode"})
CODEX_INPUT_TOOLS = frozenset({"request_user_input", "RequestUserInput"})

# Streaming deltas, config and ping lines carry no turn state
_CLAUDE_IGNORED_TYPES = frozenset({
    "config",
    "content_block_delta",
    "message_start",
    "message_delta",
    "content_block_start",
    "content_block_stop",
    "message_stop",
    "ping",
    "stream_event",
    "file-history-snapshot",
    "queue-operation",
})

_CODEX_IGNORED_TYPES = frozenset({
    "session.started",
    "session.ended",
    "session_meta",
    "turn_context",
    "thread.started",
    "thread.ended",
    "config",
    "message.delta",
    "event_msg",
})

_CODEX_CONTEXT_ROLES = frozenset({"user", "developer", "system"})


IGNORED_SIGNAL = ParsedTranscriptSignal(
    event=Ignored(),
    signal_key="ignored",
    signal_group=SemanticSignalGroup.UNKNOWN,
    semantic_phase=SemanticPhase.UNKNOWN,
    idle_reason_hint=IdleReason.NONE,
    confidence=SignalConfidence.HIGH,
)


def _make_parsed(
    signal_key: str,
    event: TranscriptEvent,
    idle_reason_hint: IdleReason = IdleReason.NONE,
) -> ParsedTranscriptSignal:
    definition = get_signal_definition(signal_key)
    return ParsedTranscriptSignal(
        event=event,
        signal_key=signal_key,
        signal_group=definition.group if definition else SemanticSignalGroup.UNKNOWN,
        semantic_phase=definition.phase if definition else SemanticPhase.UNKNOWN,
        idle_reason_hint=idle_reason_hint,
        confidence=definition.confidence if definition else SignalConfidence.LOW,
    )


def _safe_parse_json(raw: Any) -> Any:
    """Parse JSON, returning None on any decode failure."""
    if not isinstance(raw, (str, bytes, bytearray)):
        return None
    try:
        return json.loads(raw)
    except (ValueError, RecursionError):
        return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first(*values: Any) -> Any:
    """Return the first value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _non_blank_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _block_type(block: Any) -> str | None:
    if isinstance(block, dict):
        return block.get("type")
    return None


def _is_non_empty_text_block(block: Any) -> bool:
    return (
        _block_type(block) == "text"
        and isinstance(block.get("text"), str)
        and bool(block["text"].strip())
    )


# ---------------------------------------------------------------------------
# Text heuristics (applied to the last paragraph only)
# ---------------------------------------------------------------------------

def last_paragraph(text: str) -> str:
    """Extract the last paragraph from assistant text."""
    return _PARAGRAPH_SPLIT_RE.split(text.strip())[-1].strip()


def is_question_like_text(tail: str) -> bool:
    if not tail or len(tail) > _QUESTION_MAX_CHARS:
        return False
    if _QUESTION_END_RE.search(tail):
        return True
    return bool(_SOLICITATION_RE.search(tail))


def is_claude_approval_like_text(tail: str) -> bool:
    if _CLAUDE_ALREADY_APPROVED_RE.search(tail):
        return False
    return bool(_CLAUDE_APPROVAL_RE.search(tail))


def is_codex_approval_like_text(tail: str) -> bool:
    return bool(_CODEX_APPROVAL_RE.search(tail))


def is_codex_input_like_text(tail: str) -> bool:
    if is_question_like_text(tail):
        return True
    return bool(_CODEX_CHOICE_RE.search(tail) or _CODEX_REPLY_RE.search(tail))


def detect_claude_idle_reason_from_text(text: str) -> IdleReason:
    tail = last_paragraph(text)
    if is_claude_approval_like_text(tail):
        return IdleReason.WAITING_FOR_APPROVAL
    if is_question_like_text(tail):
        return IdleReason.WAITING_FOR_INPUT
    return IdleReason.NONE


def detect_codex_idle_reason_from_text(text: str) -> IdleReason:
    tail = last_paragraph(text)
    if is_codex_approval_like_text(tail):
        return IdleReason.WAITING_FOR_APPROVAL
    if is_codex_input_like_text(tail):
        return IdleReason.WAITING_FOR_INPUT
    return IdleReason.NONE


# ---------------------------------------------------------------------------
# Tool request heuristics
# ---------------------------------------------------------------------------

def _requires_escalation(tool_input: dict[str, Any] | None) -> bool:
    return isinstance(tool_input, dict) and tool_input.get("sandbox_permissions") == "require_escalated"


def detect_claude_idle_reason_from_tool(tool_name: str | None, tool_input: dict[str, Any] | None) -> IdleReason:
    """Idle reason implied by a Claude tool request, independent of any text."""
    if not isinstance(tool_name, str) or not tool_name:
        return IdleReason.NONE
    if tool_name in CLAUDE_INPUT_TOOLS:
        return IdleReason.WAITING_FOR_INPUT
    if _requires_escalation(tool_input):
        return IdleReason.WAITING_FOR_APPROVAL
    if tool_name in APPROVAL_LIKELY_TOOLS:
        return IdleReason.WAITING_FOR_APPROVAL
    return IdleReason.NONE


def detect_codex_idle_reason_from_tool(tool_name: str | None, tool_input: dict[str, Any] | None) -> IdleReason:
    """Idle reason implied by a Codex function call."""
    if not isinstance(tool_name, str) or not tool_name:
        return IdleReason.NONE
    if tool_name in CODEX_INPUT_TOOLS:
        return IdleReason.WAITING_FOR_INPUT
    if _requires_escalation(tool_input):
        return IdleReason.WAITING_FOR_APPROVAL
    return IdleReason.NONE


def derive_codex_tool_target(tool_name: str, tool_input: dict[str, Any]) -> str | None:
    """Well-known argument naming what a Codex tool acts on."""
    if tool_name == "exec_command":
        keys = ("cmd",)
    elif tool_name in ("read_file", "write_file"):
        keys = ("path", "file_path")
    elif tool_name == "list_dir":
        keys = ("path", "dir")
    else:
        return None
    for key in keys:
        value = tool_input.get(key)
        if isinstance(value, str):
            return value
    return None


# ---------------------------------------------------------------------------
# Claude Code
# ---------------------------------------------------------------------------

def _compaction_path(obj: dict[str, Any]) -> str | None:
    path = _first(obj.get("newTranscriptPath"), _as_dict(obj.get("summary")).get("newTranscriptPath"))
    return path if isinstance(path, str) and path else None


def _error_message(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        message = value.get("message")
        if isinstance(message, str) and message:
            return message
    return None


def _tool_use_parts(block: dict[str, Any], default_name: str) -> tuple[str | None, str, dict[str, Any]]:
    tool_id = _non_blank_str(block.get("id"))
    name = block.get("name") if isinstance(block.get("name"), str) else default_name
    tool_input = _as_dict(block.get("input"))
    return tool_id, name, tool_input


def _parse_claude_assistant(content: list[Any]) -> ParsedTranscriptSignal | None:
    for block in content:
        if _block_type(block) == "thinking" and isinstance(block.get("thinking"), str):
            return _make_parsed("claude.assistant.thinking_block", TurnStarted())

    for block in content:
        if _block_type(block) == "redacted_thinking":
            return _make_parsed("claude.assistant.redacted_thinking", TurnStarted())

    for block in content:
        if _block_type(block) == "server_tool_use":
            tool_id, name, tool_input = _tool_use_parts(block, "mcp_tool")
            if not tool_id:
                return None
            return _make_parsed(
                "claude.assistant.server_tool_use",
                ToolUse(id=tool_id, name=name, input=tool_input),
            )

    for block in content:
        if _block_type(block) == "tool_use":
            tool_id, name, tool_input = _tool_use_parts(block, "tool")
            if not tool_id:
                return None
            hint = detect_claude_idle_reason_from_tool(_as_str(block.get("name")), tool_input)
            return _make_parsed(
                "claude.assistant.tool_use",
                ToolUse(id=tool_id, name=name, input=tool_input),
                hint,
            )

    for block in content:
        if _is_non_empty_text_block(block):
            hint = detect_claude_idle_reason_from_text(block["text"])
            return _make_parsed("claude.assistant.text", AssistantText(), hint)

    # Assistant message with no meaningful content (e.g. whitespace-only text)
    return IGNORED_SIGNAL


def parse_claude_line_detailed(line: str) -> ParsedTranscriptSignal | None:
    """Classify one line of a Claude Code transcript."""
    obj = _safe_parse_json(line)
    if not isinstance(obj, dict):
        return None
    entry_type = _as_str(obj.get("type"))
    message = _as_dict(obj.get("message"))

    # 1) Queued prompt dequeued
    if entry_type == "queue-operation" and obj.get("operation") == "dequeue":
        return _make_parsed("claude.turn.dequeue", TurnStarted())

    # 2) User message: tool results come back as user content
    if entry_type == "user":
        user_content = _first(message.get("content"), obj.get("content"))
        if isinstance(user_content, list):
            for block in user_content:
                if _block_type(block) == "tool_result" and block.get("tool_use_id"):
                    return _make_parsed(
                        "claude.user.tool_result",
                        ToolResult(tool_use_id=str(block["tool_use_id"])),
                    )
        return _make_parsed("claude.turn.user_message", TurnStarted())

    # 3) Compaction boundary
    if entry_type == "CompactBoundaryMessage" or obj.get("subtype") == "CompactBoundaryMessage":
        new_path = _compaction_path(obj)
        if new_path:
            return _make_parsed("claude.lifecycle.compaction", Compaction(new_transcript_path=new_path))
        return None

    # 4) Result
    if entry_type == "result":
        cost = _as_number(_first(obj.get("cost_usd"), _as_dict(obj.get("cost")).get("total_cost_usd")))
        duration = _as_number(_first(obj.get("duration_ms"), obj.get("duration")))
        return _make_parsed("claude.lifecycle.result", Result(cost=cost, duration=duration))

    # 5) bash/hook progress is PTY-level activity; agent progress is subagent work
    if entry_type == "progress":
        return IGNORED_SIGNAL

    # 6) System messages
    if entry_type == "system":
        error_msg = _error_message(obj.get("error")) or _error_message(obj.get("warning"))
        if error_msg:
            return _make_parsed("claude.lifecycle.system_error", SystemErrorEvent(message=error_msg))
        # hook results and info lines
        return IGNORED_SIGNAL

    # 7) API errors
    if entry_type == "api_error" or isinstance(obj.get("error"), dict):
        error_msg = _error_message(obj.get("error")) or "Unknown API error"
        return _make_parsed("claude.lifecycle.api_error", ApiErrorEvent(message=error_msg))

    # 8) Summary compaction (newer format)
    if entry_type == "summary":
        new_path = _compaction_path(obj)
        if new_path:
            return _make_parsed("claude.lifecycle.summary", Compaction(new_transcript_path=new_path))
        return IGNORED_SIGNAL

    # 9) Intentionally ignored types
    if entry_type in _CLAUDE_IGNORED_TYPES:
        return IGNORED_SIGNAL

    # 10) Message-based signals
    role = _first(obj.get("role"), message.get("role"))
    content = _first(obj.get("content"), message.get("content"))
    if not role or not isinstance(content, list):
        return None

    if role == "assistant":
        return _parse_claude_assistant(content)

    if role == "user":
        for block in content:
            if _block_type(block) == "tool_result":
                tool_use_id = block.get("tool_use_id")
                if not tool_use_id:
                    return None
                return _make_parsed("claude.user.tool_result", ToolResult(tool_use_id=str(tool_use_id)))

    # Conversation metadata lines without a recognized type
    if not entry_type and ("parentUuid" in obj or "sessionId" in obj):
        return IGNORED_SIGNAL

    return None


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------

def _codex_call_id(payload: dict[str, Any]) -> str | None:
    call_id = _first(payload.get("call_id"), payload.get("id"))
    return str(call_id) if call_id else None


def _parse_codex_response_item(payload: dict[str, Any]) -> ParsedTranscriptSignal | None:
    payload_type = _as_str(payload.get("type"))

    if payload_type == "reasoning":
        return _make_parsed("codex.response.reasoning", TurnStarted())

    if payload_type == "function_call":
        call_id = _codex_call_id(payload)
        if not call_id:
            return None
        tool_name = payload.get("name") if isinstance(payload.get("name"), str) else "tool"
        raw_args = payload.get("arguments")
        tool_input = _as_dict(_safe_parse_json(raw_args)) if isinstance(raw_args, str) and raw_args else {}
        hint = detect_codex_idle_reason_from_tool(tool_name, tool_input)
        target = derive_codex_tool_target(tool_name, tool_input)
        return _make_parsed(
            "codex.response.function_call",
            CommandStarted(id=call_id, command=tool_name, target=target),
            hint,
        )

    if payload_type == "function_call_output":
        call_id = _codex_call_id(payload)
        if not call_id:
            return None
        return _make_parsed("codex.response.function_call_output", ItemCompleted(id=call_id))

    if payload_type == "message" and payload.get("role") == "assistant":
        content = payload.get("content")
        if isinstance(content, list):
            for block in content:
                is_output_text = _block_type(block) == "output_text" and isinstance(block.get("text"), str)
                if is_output_text or _is_non_empty_text_block(block):
                    hint = detect_codex_idle_reason_from_text(block["text"])
                    return _make_parsed("codex.response.assistant_message", TurnCompleted(), hint)

    if payload_type == "web_search_call":
        call_id = payload.get("id") or f"ws-{uuid.uuid4().hex[:12]}"
        return _make_parsed("codex.response.web_search", CommandStarted(id=str(call_id), command="web_search"))

    if payload_type == "file_search_call":
        call_id = payload.get("id") or f"fs-{uuid.uuid4().hex[:12]}"
        return _make_parsed("codex.response.file_search", CommandStarted(id=str(call_id), command="file_search"))

    return None


def parse_codex_line_detailed(line: str) -> ParsedTranscriptSignal | None:
    """Classify one line of a Codex rollout transcript."""
    obj = _safe_parse_json(line)
    if not isinstance(obj, dict):
        return None
    entry_type = _as_str(obj.get("type"))
    payload = _as_dict(obj.get("payload"))

    if entry_type == "turn.started":
        return _make_parsed("codex.turn.started", TurnStarted())

    if entry_type == "response_item":
        parsed = _parse_codex_response_item(payload)
        if parsed is not None:
            return parsed

    if entry_type == "event_msg":
        if payload.get("type") == "agent_message":
            message = payload.get("message")
            hint = detect_codex_idle_reason_from_text(message) if isinstance(message, str) and message else IdleReason.NONE
            return _make_parsed("codex.event.agent_message", TurnCompleted(), hint)
        if payload.get("type") in ("request_user_input", "elicitation_request"):
            return _make_parsed(
                "codex.event.user_input_request",
                TurnCompleted(),
                IdleReason.WAITING_FOR_INPUT,
            )

    if entry_type == "turn.failed":
        return _make_parsed("codex.lifecycle.turn_failed", TurnFailed(error=_error_message(obj.get("error"))))

    if entry_type == "context.compacted":
        return _make_parsed("codex.lifecycle.context_compacted", ContextCompacted())

    # Legacy schema compatibility
    if entry_type == "item.started":
        item = _as_dict(obj.get("item"))
        if item.get("type") in ("command_execution", "function_call"):
            item_id = item.get("id")
            if not item_id:
                return None
            command = _first(item.get("command"), item.get("name"), "")
            return _make_parsed(
                "codex.legacy.item_started",
                CommandStarted(id=str(item_id), command=str(command)),
            )

    if entry_type == "item.completed":
        item_id = _as_dict(obj.get("item")).get("id")
        if not item_id:
            return None
        return _make_parsed("codex.legacy.item_completed", ItemCompleted(id=str(item_id)))

    if entry_type == "turn.completed":
        cost = _as_number(_as_dict(obj.get("usage")).get("total_cost_usd"))
        return _make_parsed("codex.turn.completed", TurnCompleted(cost=cost))

    if entry_type in _CODEX_IGNORED_TYPES:
        return IGNORED_SIGNAL

    # Non-assistant response items are input context, not events
    if entry_type == "response_item" and _as_str(payload.get("role")) in _CODEX_CONTEXT_ROLES:
        return IGNORED_SIGNAL

    return None


def classify(line: str, agent_kind: AgentKind) -> ParsedTranscriptSignal | None:
    """Classify a transcript line with the parser for the thread's agent kind.

    Shell threads have no transcript, so their lines are never recognized.
    """
    if agent_kind is AgentKind.CODEX:
        return parse_codex_line_detailed(line)
    if agent_kind is AgentKind.CLAUDE:
        return parse_claude_line_detailed(line)
    return None


# Backward-compatible APIs returning just the event

def parse_claude_line(line: str) -> TranscriptEvent | None:
    parsed = parse_claude_line_detailed(line)
    if parsed is None or parsed.is_ignored:
        return None
    return parsed.event


def parse_codex_line(line: str) -> TranscriptEvent | None:
    parsed = parse_codex_line_detailed(line)
    if parsed is None or parsed.is_ignored:
        return None
    return parsed.event
