"""Runtime state reducer for transcript events.

Pure computation: no I/O and no clocks. Callers pass ``now``; without it the
record's previous event time is reused.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .events import (
    ApiErrorEvent,
    CommandStarted,
    ItemCompleted,
    Result,
    SystemErrorEvent,
    ToolResult,
    ToolUse,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from .models import (
    IdleReason,
    LastError,
    PlanProgress,
    RuntimeStateSource,
    SemanticPhase,
    TranscriptInfo,
    TranscriptStatus,
    merge_source,
)
from .signals import COMPACTION_SIGNAL_KEYS, get_signal_definition

if TYPE_CHECKING:
    from .events import ParsedTranscriptSignal, TranscriptEvent


TOOL_VERBS: dict[str, str] = {
    # Claude tools
    "Edit": "Editing",
    "Write": "Editing",
    "Read": "Reading",
    "Bash": "Running",
    "Grep": "Searching",
    "Glob": "Searching",
    "WebSearch": "Searching",
    "WebFetch": "Fetching",
    "Task": "Delegating",
    "TodoWrite": "Updating plan",
    "TaskCreate": "Planning",
    "TaskUpdate": "Executing plan",
    "TaskList": "Checking plan",
    "TaskGet": "Checking task",
    # Codex tools
    "exec_command": "Running",
    "read_file": "Reading",
    "write_file": "Writing",
    "list_dir": "Listing",
    "apply_diff": "Editing",
    "web_search": "Searching",
    "file_search": "Searching",
}

# Argument naming what a Claude tool acts on
TOOL_TARGET_KEYS: dict[str, tuple[str, ...]] = {
    "Edit": ("file_path", "path"),
    "Write": ("file_path", "path"),
    "Read": ("file_path", "path"),
    "Bash": ("command",),
    "Grep": ("pattern",),
    "Glob": ("pattern",),
}

# Shell targets are shown in full (truncated); everything else by basename
FULL_TARGET_TOOLS = frozenset({"Bash", "exec_command"})
TARGET_MAX_CHARS = 40

_WAITING_REASONS = (IdleReason.WAITING_FOR_APPROVAL, IdleReason.WAITING_FOR_INPUT)


def truncate(text: str | None, max_len: int = TARGET_MAX_CHARS) -> str | None:
    """Truncate text to max_len characters, marking the cut with an ellipsis."""
    if not text:
        return None
    return text[:max_len] + "..." if len(text) > max_len else text


def short_path(path: str | None) -> str | None:
    """Basename of a slash-separated path."""
    if not path:
        return None
    return path.split("/")[-1]


def derive_tool_target(name: str, tool_input: dict[str, Any]) -> str | None:
    """Display target for a Claude tool call, or None when the tool has none."""
    for key in TOOL_TARGET_KEYS.get(name, ()):
        value = tool_input.get(key)
        if isinstance(value, str):
            return truncate(value) if name == "Bash" else value
    return None


def _format_tool_subtitle(info: TranscriptInfo) -> str:
    name = info.last_tool_name or ""
    verb = TOOL_VERBS.get(name, f"Using {name}")
    if name in FULL_TARGET_TOOLS:
        target = info.last_tool_target
    else:
        target = short_path(info.last_tool_target)
    return f"{verb} {target}" if target else verb


def _append_plan_progress(base: str, info: TranscriptInfo) -> str:
    progress = info.plan_progress
    if progress and progress.total > 0:
        # Show the item being worked on (1-indexed) rather than the count finished
        current = min(progress.done + 1, progress.total)
        return f"{base} ({current}/{progress.total})"
    return base


def _is_compacting(info: TranscriptInfo) -> bool:
    return info.semantic_signal_key in COMPACTION_SIGNAL_KEYS


def _base_subtitle(info: TranscriptInfo) -> str:
    if _is_compacting(info):
        return "Compacting conversation"

    phase = info.semantic_phase
    tool_live = bool(info.last_tool_name) and bool(info.pending_tool_use_ids)

    if info.status is TranscriptStatus.IDLE:
        if info.idle_reason is IdleReason.WAITING_FOR_APPROVAL:
            return "Waiting for approval"
        if info.idle_reason is IdleReason.WAITING_FOR_INPUT:
            return "Waiting for input"
        if phase is SemanticPhase.THINKING:
            return "Thinking"
        if phase is SemanticPhase.TOOLING and tool_live:
            return _format_tool_subtitle(info)
        # Mid-turn phases: the agent is still working while the PTY is quiet
        if phase in (SemanticPhase.TOOLING, SemanticPhase.RESPONDING):
            return "Working"
        if phase is SemanticPhase.WAITING and info.last_error:
            return "Error"
        if phase is SemanticPhase.WAITING:
            return "Idle · Done"
        return "Idle"

    if phase is SemanticPhase.THINKING:
        return "Thinking"
    if tool_live:
        return _format_tool_subtitle(info)
    return "Working"


def derive_subtitle(info: TranscriptInfo) -> str:
    """Human-readable subtitle for a thread's runtime state."""
    if info.status is TranscriptStatus.EXITED:
        return "Session ended"
    return _append_plan_progress(_base_subtitle(info), info)


def _apply_plan_mutation(progress: PlanProgress | None, event: ToolUse) -> PlanProgress | None:
    """Adjust plan progress for plan-mutating tool calls; other tools leave it as is."""
    if event.name == "TodoWrite":
        todos = event.input.get("todos")
        if isinstance(todos, list):
            done = sum(1 for t in todos if isinstance(t, dict) and t.get("status") == "completed")
            return PlanProgress(total=len(todos), done=done)
        return progress

    prev = progress or PlanProgress(total=0, done=0)
    if event.name == "TaskCreate":
        return PlanProgress(total=prev.total + 1, done=prev.done)
    if event.name == "TaskUpdate":
        task_status = event.input.get("status")
        if task_status == "completed":
            return PlanProgress(total=prev.total, done=prev.done + 1)
        if task_status == "deleted":
            return PlanProgress(total=max(0, prev.total - 1), done=prev.done)
    return progress


def transcript_reducer(
    current: TranscriptInfo,
    event: TranscriptEvent,
    signal: ParsedTranscriptSignal | None = None,
    now: datetime | None = None,
) -> TranscriptInfo:
    """Pure state machine: (current info, event) -> next info.

    Phase and idle reason follow the signal first; the event-specific rules
    run afterwards and the subtitle is always recomputed from the result.
    """
    if now is None:
        now = current.last_event_time
    pending = set(current.pending_tool_use_ids)

    last_tool_name = current.last_tool_name
    last_tool_target = current.last_tool_target
    cost_usd = current.cost_usd
    last_error = current.last_error
    plan_progress = current.plan_progress
    idle_reason = current.idle_reason
    semantic_phase = current.semantic_phase
    semantic_signal_group = current.semantic_signal_group
    semantic_signal_key = current.semantic_signal_key
    semantic_signal_pattern = current.semantic_signal_pattern
    semantic_signal_description = current.semantic_signal_description

    if signal is not None:
        semantic_phase = signal.semantic_phase
        semantic_signal_group = signal.signal_group
        semantic_signal_key = signal.signal_key
        definition = get_signal_definition(signal.signal_key)
        semantic_signal_pattern = definition.pattern if definition else None
        semantic_signal_description = definition.description if definition else None

        if signal.idle_reason_hint is not IdleReason.NONE:
            idle_reason = signal.idle_reason_hint
        elif signal.semantic_phase is not SemanticPhase.WAITING:
            # Waiting-phase events keep the reason set earlier in the same turn
            idle_reason = IdleReason.NONE

    if isinstance(event, TurnStarted):
        idle_reason = IdleReason.NONE
        last_error = None

    elif isinstance(event, ToolUse):
        pending.add(event.id)
        last_tool_name = event.name
        last_tool_target = derive_tool_target(event.name, event.input)
        if idle_reason not in _WAITING_REASONS:
            idle_reason = IdleReason.NONE
        plan_progress = _apply_plan_mutation(current.plan_progress, event)

    elif isinstance(event, ToolResult):
        pending.discard(event.tool_use_id)

    elif isinstance(event, Result):
        if event.cost is not None:
            cost_usd = event.cost
        pending.clear()

    elif isinstance(event, CommandStarted):
        pending.add(event.id)
        last_tool_name = event.command or "Bash"
        last_tool_target = truncate(event.target) if event.target else None
        if idle_reason not in _WAITING_REASONS:
            idle_reason = IdleReason.NONE

    elif isinstance(event, ItemCompleted):
        pending.discard(event.id)

    elif isinstance(event, TurnCompleted):
        if event.cost is not None:
            cost_usd = (cost_usd or 0.0) + event.cost
        pending.clear()

    elif isinstance(event, (SystemErrorEvent, ApiErrorEvent)):
        pending.clear()
        last_tool_name = None
        last_tool_target = None
        last_error = LastError(message=event.message, time=now)

    elif isinstance(event, TurnFailed):
        pending.clear()
        last_tool_name = None
        last_tool_target = None
        last_error = LastError(message=event.error or "Turn failed", time=now)

    # AssistantText, Compaction, ContextCompacted and Ignored carry no state
    # beyond the signal metadata applied above. Compaction does not switch the
    # watched file here; the caller does that.

    next_info = replace(
        current,
        last_tool_name=last_tool_name,
        last_tool_target=last_tool_target,
        cost_usd=cost_usd,
        last_error=last_error,
        plan_progress=plan_progress,
        idle_reason=idle_reason,
        semantic_phase=semantic_phase,
        semantic_signal_group=semantic_signal_group,
        semantic_signal_key=semantic_signal_key,
        semantic_signal_pattern=semantic_signal_pattern,
        semantic_signal_description=semantic_signal_description,
        signal_confidence=signal.confidence if signal is not None else current.signal_confidence,
        pending_tool_use_ids=frozenset(pending),
        last_event_time=now,
        source=merge_source(current.source, RuntimeStateSource.TRANSCRIPT),
    )
    return replace(next_info, subtitle=derive_subtitle(next_info))


# Short alias used by callers that think of this as a fold step
reduce = transcript_reducer
