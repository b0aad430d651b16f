"""Merge terminal activity with transcript-derived state.

Terminal activity arrives independently of transcript lines as booleans
tagged with the mechanism that produced them: the output-quiet heuristic,
the CLI's own progress spinner, or explicit command start/end markers
emitted by the shell wrapper.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum

from .models import (
    Badge,
    PtyLifecycleSource,
    RuntimeStateSource,
    TranscriptInfo,
    TranscriptStatus,
    merge_source,
)
from .state_machine import derive_subtitle

logger = logging.getLogger(__name__)

RESIZE_ACTIVITY_SUPPRESS = timedelta(milliseconds=900)
INPUT_ECHO_SUPPRESS = timedelta(milliseconds=450)

# Badges that survive brief PTY activity blips such as resize redraws
STICKY_BADGES = (Badge.NEEDS_INPUT, Badge.NEEDS_APPROVAL)


class ActivityMode(Enum):
    """How command-boundary markers interact with the output heuristic."""
    LEGACY = "legacy"  # markers ignored, heuristic only
    HYBRID = "hybrid"  # markers supersede the heuristic once observed
    MARKER = "marker"  # additionally drop heuristic updates once a record is marker-driven


class ActivitySignalSource(Enum):
    OUTPUT = "output"      # output-quiet watchdog
    PROGRESS = "progress"  # CLI-reported spinner state


def parse_activity_mode(raw: str | None) -> ActivityMode:
    """Parse an activity mode name, falling back to hybrid."""
    normalized = (raw or "").strip().lower()
    for mode in ActivityMode:
        if mode.value == normalized:
            return mode
    return ActivityMode.HYBRID


def next_pty_source(source: RuntimeStateSource) -> RuntimeStateSource:
    return merge_source(source, RuntimeStateSource.PTY)


def next_transcript_source(source: RuntimeStateSource) -> RuntimeStateSource:
    return merge_source(source, RuntimeStateSource.TRANSCRIPT)


def derive_core_runtime_status(current_status: TranscriptStatus, pty_active: bool) -> TranscriptStatus:
    """Exited is terminal; otherwise the PTY decides working vs idle."""
    if current_status is TranscriptStatus.EXITED:
        return TranscriptStatus.EXITED
    return TranscriptStatus.WORKING if pty_active else TranscriptStatus.IDLE


def apply_resolved_core_status(current: TranscriptInfo, next_info: TranscriptInfo) -> TranscriptInfo:
    """Resolve the status implied by next_info's PTY flag against current."""
    next_status = derive_core_runtime_status(current.status, next_info.pty_active)
    if next_status is current.status:
        return next_info

    resolved = replace(next_info, previous_status=current.status, status=next_status)
    resolved = replace(resolved, subtitle=derive_subtitle(resolved))

    if next_status is TranscriptStatus.WORKING:
        keep_badge = current.badge in STICKY_BADGES
        return replace(
            resolved,
            badge=current.badge if keep_badge else None,
            badge_since=current.badge_since if keep_badge else None,
        )

    # Idle transitions leave badges to the transcript side, which has the
    # confirmation delay and the idle reason needed to pick one.
    return resolved


def _apply_pty_update(
    current: TranscriptInfo,
    active: bool,
    lifecycle_source: PtyLifecycleSource,
    reason: str,
    now: datetime,
) -> TranscriptInfo:
    base = replace(
        current,
        pty_active=active,
        source=next_pty_source(current.source),
        last_event_time=now,
        pty_lifecycle_source=lifecycle_source,
        pty_last_transition_reason=reason,
        pty_last_transition_at=now,
    )
    return apply_resolved_core_status(current, base)


def apply_pty_activity(
    current: TranscriptInfo,
    active: bool,
    lifecycle_source: PtyLifecycleSource,
    reason: str,
    now: datetime | None = None,
    strict_marker: bool = False,
) -> TranscriptInfo | None:
    """Apply an activity boolean; returns None when strict marker mode drops it."""
    if (
        strict_marker
        and lifecycle_source is PtyLifecycleSource.OUTPUT
        and current.pty_lifecycle_source is PtyLifecycleSource.MARKER
    ):
        return None
    return _apply_pty_update(current, active, lifecycle_source, reason, now or datetime.now())


def apply_command_start(current: TranscriptInfo, now: datetime | None = None) -> TranscriptInfo:
    return _apply_pty_update(current, True, PtyLifecycleSource.MARKER, "command_start", now or datetime.now())


def apply_command_end(
    current: TranscriptInfo,
    exit_code: int | None,
    now: datetime | None = None,
) -> TranscriptInfo:
    reason = f"command_end:{exit_code if exit_code is not None else 'unknown'}"
    return _apply_pty_update(current, False, PtyLifecycleSource.MARKER, reason, now or datetime.now())


@dataclass
class AdmittedActivity:
    """An activity boolean that passed the gate, ready for apply_pty_activity."""

    active: bool
    lifecycle_source: PtyLifecycleSource
    reason: str


class ActivityGate:
    """Per-thread filter deciding which raw activity signals reach the record.

    Once command markers have been seen, output-heuristic signals are
    superseded. Progress signals stay authoritative in both directions, and
    an output-quiet "inactive" is dropped while the spinner reports active.
    """

    def __init__(self, mode: ActivityMode = ActivityMode.HYBRID) -> None:
        self.mode = mode
        self.marker_events_observed = False
        self.progress_active = False
        self._input_echo_until: datetime | None = None
        self._suppress_until: datetime | None = None

    @property
    def markers_enabled(self) -> bool:
        return self.mode is not ActivityMode.LEGACY

    @property
    def strict_marker(self) -> bool:
        return self.mode is ActivityMode.MARKER

    def suppress_output(self, duration: timedelta, now: datetime) -> None:
        until = now + max(duration, timedelta(0))
        if self._suppress_until is None or until > self._suppress_until:
            self._suppress_until = until

    def note_resize(self, now: datetime) -> None:
        self.suppress_output(RESIZE_ACTIVITY_SUPPRESS, now)

    def note_user_input(self, now: datetime) -> None:
        self._input_echo_until = now + INPUT_ECHO_SUPPRESS
        self.suppress_output(INPUT_ECHO_SUPPRESS, now)

    def _output_suppressed(self, now: datetime) -> bool:
        in_echo_window = self._input_echo_until is not None and now <= self._input_echo_until
        suppressed = self._suppress_until is not None and now <= self._suppress_until
        return in_echo_window and suppressed

    def admit(self, active: bool, source: ActivitySignalSource, now: datetime) -> AdmittedActivity | None:
        """Filter one activity signal; None means it must be ignored."""
        from_progress = source is ActivitySignalSource.PROGRESS
        if from_progress:
            self.progress_active = active

        if self.markers_enabled and self.marker_events_observed and not from_progress:
            return None

        if not from_progress and not active and self.progress_active:
            return None

        if not from_progress and self._output_suppressed(now):
            logger.debug("Output activity suppressed (input echo)")
            return None

        if from_progress:
            return AdmittedActivity(active, PtyLifecycleSource.MARKER, "progress_activity" if active else "progress_idle")
        return AdmittedActivity(active, PtyLifecycleSource.OUTPUT, "output_activity" if active else "output_idle")

    def observe_marker(self) -> bool:
        """Record a command boundary marker; False when markers are disabled."""
        if not self.markers_enabled:
            return False
        self.marker_events_observed = True
        return True

    def clear(self) -> None:
        self._input_echo_until = None
        self._suppress_until = None
