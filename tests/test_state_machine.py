"""Tests for the transcript reducer and subtitle derivation."""

from dataclasses import replace
from datetime import datetime

import pytest

from codezilla.events import (
    ApiErrorEvent,
    AssistantText,
    CommandStarted,
    Compaction,
    ItemCompleted,
    ParsedTranscriptSignal,
    Result,
    SystemErrorEvent,
    ToolResult,
    ToolUse,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from codezilla.models import (
    IdleReason,
    LastError,
    PlanProgress,
    RuntimeStateSource,
    SemanticPhase,
    TranscriptInfo,
    TranscriptStatus,
    create_initial_transcript_info,
)
from codezilla.signals import get_signal_definition
from codezilla.state_machine import derive_subtitle, derive_tool_target, transcript_reducer, truncate

NOW = datetime(2026, 3, 1, 12, 0, 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_signal(key: str, event, hint: IdleReason = IdleReason.NONE) -> ParsedTranscriptSignal:
    definition = get_signal_definition(key)
    return ParsedTranscriptSignal(
        event=event,
        signal_key=key,
        signal_group=definition.group,
        semantic_phase=definition.phase,
        idle_reason_hint=hint,
        confidence=definition.confidence,
    )


def _make_info(**kwargs) -> TranscriptInfo:
    return replace(create_initial_transcript_info(NOW), **kwargs)


def _reduce(info: TranscriptInfo, key: str, event, hint: IdleReason = IdleReason.NONE) -> TranscriptInfo:
    return transcript_reducer(info, event, _make_signal(key, event, hint), NOW)


# ---------------------------------------------------------------------------
# Reducer scenarios
# ---------------------------------------------------------------------------

class TestReducerScenarios:
    def test_initial_record(self):
        info = create_initial_transcript_info(NOW)
        assert info.status is TranscriptStatus.IDLE
        assert info.semantic_phase is SemanticPhase.INITIAL
        assert info.subtitle == "Idle"

    def test_result_sets_cost_and_clears_pending(self):
        info = _make_info(pending_tool_use_ids=frozenset({"a", "b"}))
        result = _reduce(info, "claude.lifecycle.result", Result(cost=0.42))
        assert result.cost_usd == 0.42
        assert result.pending_tool_use_ids == frozenset()
        assert result.semantic_phase is SemanticPhase.WAITING
        assert result.subtitle == "Idle · Done"

    def test_result_without_cost_keeps_previous(self):
        info = _make_info(cost_usd=1.25)
        assert _reduce(info, "claude.lifecycle.result", Result()).cost_usd == 1.25

    def test_question_text_waits_for_input(self):
        info = _make_info()
        result = _reduce(info, "claude.assistant.text", AssistantText(), IdleReason.WAITING_FOR_INPUT)
        assert result.idle_reason is IdleReason.WAITING_FOR_INPUT
        assert result.subtitle == "Waiting for input"

    def test_edit_subtitle_uses_basename(self):
        info = _make_info()
        event = ToolUse(id="t1", name="Write", input={"file_path": "src/a.ts"})
        result = _reduce(info, "claude.assistant.tool_use", event)
        assert result.semantic_phase is SemanticPhase.TOOLING
        assert result.idle_reason is IdleReason.NONE
        assert result.pending_tool_use_ids == frozenset({"t1"})
        assert result.subtitle == "Editing a.ts"

    def test_write_with_approval_hint_waits_for_approval(self):
        event = ToolUse(id="t1", name="Write", input={"file_path": "src/a.ts"})
        result = _reduce(_make_info(), "claude.assistant.tool_use", event, IdleReason.WAITING_FOR_APPROVAL)
        assert result.idle_reason is IdleReason.WAITING_FOR_APPROVAL
        assert result.subtitle == "Waiting for approval"

    def test_reducer_is_pure(self):
        info = _make_info(pending_tool_use_ids=frozenset({"x"}))
        event = ToolResult(tool_use_id="x")
        signal = _make_signal("claude.user.tool_result", event)
        first = transcript_reducer(info, event, signal, NOW)
        second = transcript_reducer(info, event, signal, NOW)
        assert first == second
        assert info.pending_tool_use_ids == frozenset({"x"})

    def test_reducer_without_now_is_deterministic(self):
        info = _make_info(pending_tool_use_ids=frozenset({"x"}), last_event_time=NOW)
        event = ToolResult(tool_use_id="x")
        signal = _make_signal("claude.user.tool_result", event)
        first = transcript_reducer(info, event, signal)
        second = transcript_reducer(info, event, signal)
        assert first == second
        assert first.last_event_time == NOW

    def test_source_becomes_transcript_then_mixed(self):
        result = _reduce(_make_info(), "claude.turn.user_message", TurnStarted())
        assert result.source is RuntimeStateSource.TRANSCRIPT
        from_pty = _reduce(_make_info(source=RuntimeStateSource.PTY), "claude.turn.user_message", TurnStarted())
        assert from_pty.source is RuntimeStateSource.MIXED

    def test_last_event_time_is_now(self):
        result = _reduce(_make_info(), "claude.turn.user_message", TurnStarted())
        assert result.last_event_time == NOW

    def test_signal_metadata_recorded(self):
        result = _reduce(_make_info(), "claude.assistant.thinking_block", TurnStarted())
        assert result.semantic_signal_key == "claude.assistant.thinking_block"
        assert result.semantic_signal_description is not None
        assert result.signal_confidence is not None

    def test_no_signal_keeps_phase(self):
        info = _make_info(semantic_phase=SemanticPhase.THINKING)
        result = transcript_reducer(info, ToolResult(tool_use_id="nope"), None, NOW)
        assert result.semantic_phase is SemanticPhase.THINKING


class TestIdleReason:
    def test_turn_started_clears_reason_and_error(self):
        info = _make_info(
            idle_reason=IdleReason.WAITING_FOR_APPROVAL,
            last_error=LastError(message="boom", time=NOW),
        )
        result = _reduce(info, "claude.turn.user_message", TurnStarted())
        assert result.idle_reason is IdleReason.NONE
        assert result.last_error is None

    def test_waiting_phase_keeps_existing_reason(self):
        info = _make_info(idle_reason=IdleReason.WAITING_FOR_INPUT)
        result = _reduce(info, "claude.lifecycle.result", Result())
        assert result.idle_reason is IdleReason.WAITING_FOR_INPUT

    def test_non_waiting_phase_clears_reason(self):
        info = _make_info(idle_reason=IdleReason.WAITING_FOR_APPROVAL)
        result = _reduce(info, "claude.user.tool_result", ToolResult(tool_use_id="t1"))
        assert result.idle_reason is IdleReason.NONE

    def test_hint_replaces_reason(self):
        info = _make_info(idle_reason=IdleReason.WAITING_FOR_INPUT)
        event = ToolUse(id="t2", name="Bash", input={"command": "ls"})
        result = _reduce(info, "claude.assistant.tool_use", event, IdleReason.WAITING_FOR_APPROVAL)
        assert result.idle_reason is IdleReason.WAITING_FOR_APPROVAL


# ---------------------------------------------------------------------------
# Pending calls, costs and errors
# ---------------------------------------------------------------------------

class TestPendingCalls:
    def test_tool_result_removes_id(self):
        info = _make_info(pending_tool_use_ids=frozenset({"a", "b"}))
        result = _reduce(info, "claude.user.tool_result", ToolResult(tool_use_id="a"))
        assert result.pending_tool_use_ids == frozenset({"b"})

    def test_unknown_tool_result_is_harmless(self):
        info = _make_info(pending_tool_use_ids=frozenset({"a"}))
        result = _reduce(info, "claude.user.tool_result", ToolResult(tool_use_id="zzz"))
        assert result.pending_tool_use_ids == frozenset({"a"})

    def test_command_started_and_completed(self):
        info = _make_info(status=TranscriptStatus.WORKING)
        started = _reduce(
            info,
            "codex.response.function_call",
            CommandStarted(id="c1", command="exec_command", target="npm test"),
        )
        assert started.pending_tool_use_ids == frozenset({"c1"})
        assert started.subtitle == "Running npm test"

        done = _reduce(started, "codex.response.function_call_output", ItemCompleted(id="c1"))
        assert done.pending_tool_use_ids == frozenset()
        assert done.subtitle == "Working"

    def test_turn_completed_accumulates_cost(self):
        info = _make_info(cost_usd=0.1, pending_tool_use_ids=frozenset({"c1"}))
        result = _reduce(info, "codex.turn.completed", TurnCompleted(cost=0.2))
        assert result.cost_usd == pytest.approx(0.3)
        assert result.pending_tool_use_ids == frozenset()

    def test_turn_completed_cost_from_nothing(self):
        result = _reduce(_make_info(), "codex.turn.completed", TurnCompleted(cost=0.05))
        assert result.cost_usd == pytest.approx(0.05)


class TestErrors:
    @pytest.mark.parametrize(
        "key,event",
        [
            ("claude.lifecycle.system_error", SystemErrorEvent(message="hook failed")),
            ("claude.lifecycle.api_error", ApiErrorEvent(message="hook failed")),
        ],
    )
    def test_error_event(self, key, event):
        info = _make_info(
            pending_tool_use_ids=frozenset({"t1"}),
            last_tool_name="Bash",
            last_tool_target="ls",
        )
        result = _reduce(info, key, event)
        assert result.last_error == LastError(message="hook failed", time=NOW)
        assert result.pending_tool_use_ids == frozenset()
        assert result.last_tool_name is None
        assert result.last_tool_target is None
        assert result.subtitle == "Error"

    def test_turn_failed_default_message(self):
        result = _reduce(_make_info(), "codex.lifecycle.turn_failed", TurnFailed())
        assert result.last_error.message == "Turn failed"

    def test_turn_failed_message(self):
        result = _reduce(_make_info(), "codex.lifecycle.turn_failed", TurnFailed(error="rate limited"))
        assert result.last_error.message == "rate limited"


# ---------------------------------------------------------------------------
# Plan progress
# ---------------------------------------------------------------------------

class TestPlanProgress:
    def _todos(self, *statuses):
        return {"todos": [{"content": f"step {i}", "status": s} for i, s in enumerate(statuses)]}

    def test_todo_write_replaces_progress(self):
        event = ToolUse(id="t1", name="TodoWrite", input=self._todos("completed", "in_progress", "pending"))
        result = _reduce(_make_info(), "claude.assistant.tool_use", event)
        assert result.plan_progress == PlanProgress(total=3, done=1)

    def test_unrelated_tool_keeps_progress(self):
        info = _make_info(plan_progress=PlanProgress(total=3, done=1))
        event = ToolUse(id="t2", name="Read", input={"file_path": "/repo/main.py"})
        result = _reduce(info, "claude.assistant.tool_use", event)
        assert result.plan_progress == PlanProgress(total=3, done=1)
        assert result.subtitle == "Reading main.py (2/3)"

    def test_non_tool_events_keep_progress(self):
        info = _make_info(plan_progress=PlanProgress(total=2, done=2))
        result = _reduce(info, "claude.lifecycle.result", Result(cost=0.1))
        assert result.plan_progress == PlanProgress(total=2, done=2)
        assert result.subtitle == "Idle · Done (2/2)"

    def test_task_create_and_update(self):
        info = _make_info()
        info = _reduce(info, "claude.assistant.tool_use", ToolUse(id="a", name="TaskCreate", input={}))
        info = _reduce(info, "claude.assistant.tool_use", ToolUse(id="b", name="TaskCreate", input={}))
        assert info.plan_progress == PlanProgress(total=2, done=0)

        info = _reduce(info, "claude.assistant.tool_use", ToolUse(id="c", name="TaskUpdate", input={"status": "completed"}))
        assert info.plan_progress == PlanProgress(total=2, done=1)

        info = _reduce(info, "claude.assistant.tool_use", ToolUse(id="d", name="TaskUpdate", input={"status": "deleted"}))
        assert info.plan_progress == PlanProgress(total=1, done=1)

    def test_task_delete_floors_at_zero(self):
        event = ToolUse(id="d", name="TaskUpdate", input={"status": "deleted"})
        result = _reduce(_make_info(), "claude.assistant.tool_use", event)
        assert result.plan_progress == PlanProgress(total=0, done=0)

    def test_todo_write_without_list_keeps_progress(self):
        info = _make_info(plan_progress=PlanProgress(total=4, done=1))
        event = ToolUse(id="t1", name="TodoWrite", input={"todos": "nope"})
        assert _reduce(info, "claude.assistant.tool_use", event).plan_progress == PlanProgress(total=4, done=1)


# ---------------------------------------------------------------------------
# Subtitle derivation
# ---------------------------------------------------------------------------

class TestSubtitle:
    def test_exited(self):
        info = _make_info(status=TranscriptStatus.EXITED, semantic_phase=SemanticPhase.THINKING)
        assert derive_subtitle(info) == "Session ended"

    def test_compacting(self):
        result = _reduce(_make_info(), "claude.lifecycle.compaction", Compaction(new_transcript_path="/n.jsonl"))
        assert result.subtitle == "Compacting conversation"

    def test_idle_thinking(self):
        assert derive_subtitle(_make_info(semantic_phase=SemanticPhase.THINKING)) == "Thinking"

    def test_idle_tooling_without_live_tool(self):
        info = _make_info(semantic_phase=SemanticPhase.TOOLING, last_tool_name="Read")
        assert derive_subtitle(info) == "Working"

    def test_idle_responding(self):
        assert derive_subtitle(_make_info(semantic_phase=SemanticPhase.RESPONDING)) == "Working"

    def test_idle_unknown_phase(self):
        assert derive_subtitle(_make_info(semantic_phase=SemanticPhase.UNKNOWN)) == "Idle"

    def test_approval_beats_phase(self):
        info = _make_info(semantic_phase=SemanticPhase.THINKING, idle_reason=IdleReason.WAITING_FOR_APPROVAL)
        assert derive_subtitle(info) == "Waiting for approval"

    def test_working_thinking(self):
        info = _make_info(status=TranscriptStatus.WORKING, semantic_phase=SemanticPhase.THINKING)
        assert derive_subtitle(info) == "Thinking"

    def test_working_ignores_idle_reason(self):
        info = _make_info(
            status=TranscriptStatus.WORKING,
            semantic_phase=SemanticPhase.RESPONDING,
            idle_reason=IdleReason.WAITING_FOR_INPUT,
        )
        assert derive_subtitle(info) == "Working"

    def test_unknown_tool_verb(self):
        info = _make_info(
            status=TranscriptStatus.WORKING,
            last_tool_name="mcp_tool",
            pending_tool_use_ids=frozenset({"x"}),
        )
        assert derive_subtitle(info) == "Using mcp_tool"

    def test_bash_command_is_truncated_not_shortened(self):
        command = "cd /repo/packages/api && npm run test -- --coverage --watch=false"
        event = ToolUse(id="t1", name="Bash", input={"command": command})
        info = _make_info(status=TranscriptStatus.WORKING)
        result = _reduce(info, "claude.assistant.tool_use", event, IdleReason.WAITING_FOR_APPROVAL)
        assert result.last_tool_target == command[:40] + "..."
        assert result.subtitle == f"Running {command[:40]}..."

    def test_plan_suffix_caps_at_total(self):
        info = _make_info(semantic_phase=SemanticPhase.THINKING, plan_progress=PlanProgress(total=3, done=3))
        assert derive_subtitle(info) == "Thinking (3/3)"

    def test_empty_plan_has_no_suffix(self):
        info = _make_info(semantic_phase=SemanticPhase.THINKING, plan_progress=PlanProgress(total=0, done=0))
        assert derive_subtitle(info) == "Thinking"


class TestToolTarget:
    def test_truncate(self):
        assert truncate("abc", 5) == "abc"
        assert truncate("abcdef", 5) == "abcde..."
        assert truncate("") is None
        assert truncate(None) is None

    def test_targets(self):
        assert derive_tool_target("Read", {"path": "/a/b.py"}) == "/a/b.py"
        assert derive_tool_target("Grep", {"pattern": "TODO"}) == "TODO"
        assert derive_tool_target("Task", {"prompt": "x"}) is None
        assert derive_tool_target("Edit", {"file_path": 3}) is None
