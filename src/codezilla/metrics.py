"""Transcript parser diagnostics.

Counters and timestamps per thread, plus a coarse parser health derived from
them. Pure computation apart from the small per-thread store.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING

from .models import ParserHealth

if TYPE_CHECKING:
    from .models import RuntimeStateSource, TranscriptInfo


PARSER_DEGRADED_MIN_UNPARSED = 20

# Unparsed-count updates: the first few, then every Nth
UNPARSED_UPDATE_HEAD = 3
UNPARSED_UPDATE_EVERY = 50


@dataclass
class ParseMetrics:
    """Monotonic line counters for one thread."""

    parsed: int = 0
    unparsed: int = 0
    ignored: int = 0
    last_line_time: datetime | None = None
    last_parsed_time: datetime | None = None

    def record_line(self, now: datetime) -> None:
        self.last_line_time = now

    def record_parsed(self, now: datetime) -> None:
        self.parsed += 1
        self.last_parsed_time = now

    def record_unparsed(self) -> int:
        self.unparsed += 1
        return self.unparsed

    def record_ignored(self) -> None:
        self.ignored += 1


def get_parser_health(
    parsed: int,
    unparsed: int,
    degraded_min_unparsed: int = PARSER_DEGRADED_MIN_UNPARSED,
) -> ParserHealth:
    """Healthy once anything parsed; degraded only if nothing ever did."""
    if parsed > 0:
        return ParserHealth.HEALTHY
    if unparsed >= degraded_min_unparsed:
        return ParserHealth.DEGRADED
    return ParserHealth.UNKNOWN


def should_emit_unparsed_update(unparsed_count: int) -> bool:
    """Throttle UI updates for unparsed lines to avoid storms on garbage input."""
    return unparsed_count <= UNPARSED_UPDATE_HEAD or unparsed_count % UNPARSED_UPDATE_EVERY == 0


def with_diagnostics(
    info: TranscriptInfo,
    metrics: ParseMetrics,
    source: RuntimeStateSource | None = None,
    degraded_min_unparsed: int = PARSER_DEGRADED_MIN_UNPARSED,
) -> TranscriptInfo:
    """Copy the thread's counters and health onto its record."""
    updated = replace(
        info,
        parsed_line_count=metrics.parsed,
        unparsed_line_count=metrics.unparsed,
        ignored_line_count=metrics.ignored,
        last_line_time=metrics.last_line_time,
        last_parsed_time=metrics.last_parsed_time,
        parser_health=get_parser_health(metrics.parsed, metrics.unparsed, degraded_min_unparsed),
    )
    if source is not None:
        updated = replace(updated, source=source)
    return updated


class ParseMetricsStore:
    """Per-thread metrics, owned by the runtime and torn down on thread removal."""

    def __init__(self) -> None:
        self._metrics: dict[str, ParseMetrics] = {}

    def get(self, thread_id: str) -> ParseMetrics:
        metrics = self._metrics.get(thread_id)
        if metrics is None:
            metrics = ParseMetrics()
            self._metrics[thread_id] = metrics
        return metrics

    def reset(self, thread_id: str) -> ParseMetrics:
        metrics = ParseMetrics()
        self._metrics[thread_id] = metrics
        return metrics

    def remove(self, thread_id: str) -> None:
        self._metrics.pop(thread_id, None)

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._metrics

    def __len__(self) -> int:
        return len(self._metrics)
