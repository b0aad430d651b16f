"""Tests for merging terminal activity into thread records."""

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from codezilla.activity import (
    ActivityGate,
    ActivityMode,
    ActivitySignalSource,
    apply_command_end,
    apply_command_start,
    apply_pty_activity,
    derive_core_runtime_status,
    next_pty_source,
    next_transcript_source,
    parse_activity_mode,
)
from codezilla.models import (
    Badge,
    IdleReason,
    PtyLifecycleSource,
    RuntimeStateSource,
    SemanticPhase,
    TranscriptInfo,
    TranscriptStatus,
    create_initial_transcript_info,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _make_info(**kwargs) -> TranscriptInfo:
    return replace(create_initial_transcript_info(NOW), **kwargs)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestActivityMode:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("legacy", ActivityMode.LEGACY),
            (" MARKER ", ActivityMode.MARKER),
            ("hybrid", ActivityMode.HYBRID),
            ("bogus", ActivityMode.HYBRID),
            ("", ActivityMode.HYBRID),
            (None, ActivityMode.HYBRID),
        ],
    )
    def test_parse(self, raw, expected):
        assert parse_activity_mode(raw) is expected


class TestSources:
    def test_pty_source(self):
        assert next_pty_source(RuntimeStateSource.UNKNOWN) is RuntimeStateSource.PTY
        assert next_pty_source(RuntimeStateSource.PTY) is RuntimeStateSource.PTY
        assert next_pty_source(RuntimeStateSource.TRANSCRIPT) is RuntimeStateSource.MIXED
        assert next_pty_source(RuntimeStateSource.MIXED) is RuntimeStateSource.MIXED

    def test_transcript_source(self):
        assert next_transcript_source(RuntimeStateSource.UNKNOWN) is RuntimeStateSource.TRANSCRIPT
        assert next_transcript_source(RuntimeStateSource.PTY) is RuntimeStateSource.MIXED
        assert next_transcript_source(RuntimeStateSource.MIXED) is RuntimeStateSource.MIXED


class TestCoreStatus:
    def test_exited_is_terminal(self):
        assert derive_core_runtime_status(TranscriptStatus.EXITED, True) is TranscriptStatus.EXITED

    def test_pty_decides(self):
        assert derive_core_runtime_status(TranscriptStatus.IDLE, True) is TranscriptStatus.WORKING
        assert derive_core_runtime_status(TranscriptStatus.WORKING, False) is TranscriptStatus.IDLE


# ---------------------------------------------------------------------------
# Applying activity to a record
# ---------------------------------------------------------------------------

class TestApplyPtyActivity:
    def test_becomes_working(self):
        info = _make_info(semantic_phase=SemanticPhase.THINKING)
        result = apply_pty_activity(info, True, PtyLifecycleSource.OUTPUT, "output_activity", NOW)
        assert result.status is TranscriptStatus.WORKING
        assert result.previous_status is TranscriptStatus.IDLE
        assert result.source is RuntimeStateSource.PTY
        assert result.pty_active is True
        assert result.pty_lifecycle_source is PtyLifecycleSource.OUTPUT
        assert result.pty_last_transition_reason == "output_activity"
        assert result.pty_last_transition_at == NOW
        assert result.subtitle == "Thinking"

    def test_going_idle_recomputes_subtitle(self):
        info = _make_info(
            status=TranscriptStatus.WORKING,
            semantic_phase=SemanticPhase.RESPONDING,
            idle_reason=IdleReason.WAITING_FOR_INPUT,
            subtitle="Working",
        )
        result = apply_pty_activity(info, False, PtyLifecycleSource.OUTPUT, "output_idle", NOW)
        assert result.status is TranscriptStatus.IDLE
        assert result.subtitle == "Waiting for input"

    def test_same_status_keeps_previous_status(self):
        info = _make_info(previous_status=TranscriptStatus.WORKING)
        result = apply_pty_activity(info, False, PtyLifecycleSource.OUTPUT, "output_idle", NOW)
        assert result.status is TranscriptStatus.IDLE
        assert result.previous_status is TranscriptStatus.WORKING

    def test_exited_stays_exited(self):
        info = _make_info(status=TranscriptStatus.EXITED, subtitle="Session ended")
        result = apply_pty_activity(info, True, PtyLifecycleSource.OUTPUT, "output_activity", NOW)
        assert result.status is TranscriptStatus.EXITED
        assert result.subtitle == "Session ended"

    @pytest.mark.parametrize("badge", [Badge.NEEDS_APPROVAL, Badge.NEEDS_INPUT])
    def test_needs_badges_survive_working(self, badge):
        since = NOW - timedelta(seconds=10)
        info = _make_info(badge=badge, badge_since=since)
        result = apply_pty_activity(info, True, PtyLifecycleSource.OUTPUT, "output_activity", NOW)
        assert result.badge is badge
        assert result.badge_since == since

    @pytest.mark.parametrize("badge", [Badge.DONE, Badge.ERROR])
    def test_transient_badges_cleared_by_working(self, badge):
        info = _make_info(badge=badge, badge_since=NOW)
        result = apply_pty_activity(info, True, PtyLifecycleSource.OUTPUT, "output_activity", NOW)
        assert result.badge is None
        assert result.badge_since is None

    def test_idle_transition_leaves_badge(self):
        info = _make_info(status=TranscriptStatus.WORKING, badge=Badge.DONE, badge_since=NOW)
        result = apply_pty_activity(info, False, PtyLifecycleSource.OUTPUT, "output_idle", NOW)
        assert result.badge is Badge.DONE

    def test_strict_marker_drops_output_after_marker(self):
        info = _make_info(pty_lifecycle_source=PtyLifecycleSource.MARKER)
        assert apply_pty_activity(info, True, PtyLifecycleSource.OUTPUT, "output_activity", NOW, strict_marker=True) is None

    def test_non_strict_accepts_output_after_marker(self):
        info = _make_info(pty_lifecycle_source=PtyLifecycleSource.MARKER)
        result = apply_pty_activity(info, True, PtyLifecycleSource.OUTPUT, "output_activity", NOW)
        assert result.pty_lifecycle_source is PtyLifecycleSource.OUTPUT

    def test_strict_marker_accepts_marker_updates(self):
        info = _make_info(pty_lifecycle_source=PtyLifecycleSource.MARKER)
        result = apply_pty_activity(info, True, PtyLifecycleSource.MARKER, "progress_activity", NOW, strict_marker=True)
        assert result.status is TranscriptStatus.WORKING


class TestCommandMarkers:
    def test_command_start(self):
        result = apply_command_start(_make_info(), NOW)
        assert result.status is TranscriptStatus.WORKING
        assert result.pty_lifecycle_source is PtyLifecycleSource.MARKER
        assert result.pty_last_transition_reason == "command_start"

    def test_command_end_with_code(self):
        info = apply_command_start(_make_info(), NOW)
        result = apply_command_end(info, 0, NOW)
        assert result.status is TranscriptStatus.IDLE
        assert result.pty_last_transition_reason == "command_end:0"

    def test_command_end_unknown_code(self):
        result = apply_command_end(_make_info(status=TranscriptStatus.WORKING), None, NOW)
        assert result.pty_last_transition_reason == "command_end:unknown"


# ---------------------------------------------------------------------------
# Activity gate
# ---------------------------------------------------------------------------

class TestActivityGate:
    def test_output_admitted(self):
        gate = ActivityGate()
        admitted = gate.admit(True, ActivitySignalSource.OUTPUT, NOW)
        assert admitted.active is True
        assert admitted.lifecycle_source is PtyLifecycleSource.OUTPUT
        assert admitted.reason == "output_activity"

    def test_progress_maps_to_marker(self):
        gate = ActivityGate()
        admitted = gate.admit(False, ActivitySignalSource.PROGRESS, NOW)
        assert admitted.lifecycle_source is PtyLifecycleSource.MARKER
        assert admitted.reason == "progress_idle"

    def test_markers_supersede_output_in_hybrid(self):
        gate = ActivityGate(ActivityMode.HYBRID)
        assert gate.observe_marker() is True
        assert gate.admit(True, ActivitySignalSource.OUTPUT, NOW) is None
        assert gate.admit(True, ActivitySignalSource.PROGRESS, NOW) is not None

    def test_legacy_ignores_markers(self):
        gate = ActivityGate(ActivityMode.LEGACY)
        assert gate.observe_marker() is False
        assert gate.marker_events_observed is False
        assert gate.admit(True, ActivitySignalSource.OUTPUT, NOW) is not None

    def test_mode_flags(self):
        assert ActivityGate(ActivityMode.MARKER).strict_marker
        assert not ActivityGate(ActivityMode.HYBRID).strict_marker
        assert not ActivityGate(ActivityMode.LEGACY).markers_enabled

    def test_progress_blocks_output_idle(self):
        gate = ActivityGate()
        gate.admit(True, ActivitySignalSource.PROGRESS, NOW)
        assert gate.admit(False, ActivitySignalSource.OUTPUT, NOW) is None
        assert gate.admit(True, ActivitySignalSource.OUTPUT, NOW) is not None

    def test_progress_idle_releases_output_idle(self):
        gate = ActivityGate()
        gate.admit(True, ActivitySignalSource.PROGRESS, NOW)
        gate.admit(False, ActivitySignalSource.PROGRESS, NOW)
        assert gate.admit(False, ActivitySignalSource.OUTPUT, NOW) is not None

    def test_input_echo_suppressed(self):
        gate = ActivityGate()
        gate.note_user_input(NOW)
        assert gate.admit(True, ActivitySignalSource.OUTPUT, NOW + timedelta(milliseconds=200)) is None
        assert gate.admit(True, ActivitySignalSource.PROGRESS, NOW + timedelta(milliseconds=200)) is not None

    def test_input_echo_window_expires(self):
        gate = ActivityGate()
        gate.note_user_input(NOW)
        assert gate.admit(True, ActivitySignalSource.OUTPUT, NOW + timedelta(milliseconds=500)) is not None

    def test_clear_drops_suppression(self):
        gate = ActivityGate()
        gate.note_user_input(NOW)
        gate.clear()
        assert gate.admit(True, ActivitySignalSource.OUTPUT, NOW + timedelta(milliseconds=100)) is not None
