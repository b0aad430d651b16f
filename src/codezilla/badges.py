"""Attention badge lifecycle.

The transcript side is the only badge setter for idle threads; the periodic
sweep settles "responding" into "waiting" and expires transient badges.
"""

from dataclasses import replace
from datetime import datetime, timedelta

from .models import (
    Badge,
    IdleReason,
    RuntimeStateSource,
    SemanticPhase,
    TranscriptInfo,
    TranscriptStatus,
)
from .state_machine import derive_subtitle

DONE_CONFIRM = timedelta(seconds=2)
BADGE_TTL = timedelta(seconds=30)

# Only these expire on a timer; needs-* badges wait for the user to focus the thread
EXPIRING_BADGES = (Badge.DONE, Badge.ERROR)


def _set_badge(info: TranscriptInfo, badge: Badge, now: datetime) -> TranscriptInfo:
    return replace(info, badge=badge, badge_since=info.badge_since or now)


def apply_transcript_badge(info: TranscriptInfo, focused: bool, now: datetime) -> TranscriptInfo:
    """Badge an unfocused idle thread from its idle reason or last error.

    An error badge is only assigned when no badge exists yet: the first
    badge wins until it is cleared.
    """
    if focused or info.status is not TranscriptStatus.IDLE:
        return info
    if info.idle_reason is IdleReason.WAITING_FOR_APPROVAL:
        return _set_badge(info, Badge.NEEDS_APPROVAL, now)
    if info.idle_reason is IdleReason.WAITING_FOR_INPUT:
        return _set_badge(info, Badge.NEEDS_INPUT, now)
    if info.last_error and info.badge is None:
        return _set_badge(info, Badge.ERROR, now)
    return info


def last_activity_time(info: TranscriptInfo) -> datetime:
    """Latest of the last event and the last transcript line (ignored lines included)."""
    if info.last_line_time is None:
        return info.last_event_time
    return max(info.last_event_time, info.last_line_time)


def sweep_badge(
    info: TranscriptInfo,
    now: datetime,
    focused: bool,
    done_confirm: timedelta = DONE_CONFIRM,
    badge_ttl: timedelta = BADGE_TTL,
) -> TranscriptInfo | None:
    """One sweep step for a thread; returns the new record or None if unchanged."""
    if (
        info.semantic_phase is SemanticPhase.RESPONDING
        and info.status is TranscriptStatus.IDLE
        and now - last_activity_time(info) >= done_confirm
    ):
        settled = replace(info, semantic_phase=SemanticPhase.WAITING)
        settled = replace(settled, subtitle=derive_subtitle(settled))
        if not focused and settled.badge is None:
            settled = replace(settled, badge=Badge.DONE, badge_since=now)
        return settled

    if (
        info.badge in EXPIRING_BADGES
        and info.badge_since is not None
        and now - info.badge_since >= badge_ttl
    ):
        return replace(info, badge=None, badge_since=None)

    return None


def clear_badge_on_focus(info: TranscriptInfo) -> TranscriptInfo:
    """Focusing a thread acknowledges its badge, like marking mail read."""
    if info.badge is None:
        return info
    return replace(info, badge=None, badge_since=None)


def mark_exited(info: TranscriptInfo) -> TranscriptInfo:
    """Overwrite a record with the terminal exited state."""
    if info.status is TranscriptStatus.EXITED:
        return info
    return replace(
        info,
        previous_status=info.status,
        status=TranscriptStatus.EXITED,
        subtitle="Session ended",
        badge=None,
        badge_since=None,
        source=RuntimeStateSource.PTY if info.source is RuntimeStateSource.UNKNOWN else info.source,
    )
