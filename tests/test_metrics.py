"""Tests for parser diagnostics counters and health."""

from datetime import datetime, timedelta

from codezilla.metrics import (
    ParseMetrics,
    ParseMetricsStore,
    get_parser_health,
    should_emit_unparsed_update,
    with_diagnostics,
)
from codezilla.models import ParserHealth, RuntimeStateSource, create_initial_transcript_info

NOW = datetime(2026, 3, 1, 12, 0, 0)


class TestParserHealth:
    def test_unknown_before_any_lines(self):
        assert get_parser_health(0, 0) is ParserHealth.UNKNOWN

    def test_unknown_below_threshold(self):
        assert get_parser_health(0, 19) is ParserHealth.UNKNOWN

    def test_degraded_at_threshold(self):
        assert get_parser_health(0, 20) is ParserHealth.DEGRADED

    def test_healthy_once_anything_parsed(self):
        assert get_parser_health(1, 500) is ParserHealth.HEALTHY

    def test_custom_threshold(self):
        assert get_parser_health(0, 5, degraded_min_unparsed=5) is ParserHealth.DEGRADED


class TestUnparsedThrottle:
    def test_first_three_emit(self):
        assert [should_emit_unparsed_update(n) for n in (1, 2, 3)] == [True, True, True]

    def test_quiet_between_multiples(self):
        assert not should_emit_unparsed_update(4)
        assert not should_emit_unparsed_update(20)
        assert not should_emit_unparsed_update(49)

    def test_every_fiftieth(self):
        assert should_emit_unparsed_update(50)
        assert should_emit_unparsed_update(100)
        assert not should_emit_unparsed_update(101)


class TestParseMetrics:
    def test_counters(self):
        metrics = ParseMetrics()
        metrics.record_line(NOW)
        metrics.record_parsed(NOW)
        metrics.record_ignored()
        assert metrics.record_unparsed() == 1
        assert metrics.record_unparsed() == 2
        assert (metrics.parsed, metrics.unparsed, metrics.ignored) == (1, 2, 1)
        assert metrics.last_line_time == NOW
        assert metrics.last_parsed_time == NOW

    def test_unparsed_line_does_not_touch_parsed_time(self):
        metrics = ParseMetrics()
        metrics.record_parsed(NOW)
        later = NOW + timedelta(seconds=5)
        metrics.record_line(later)
        metrics.record_unparsed()
        assert metrics.last_line_time == later
        assert metrics.last_parsed_time == NOW


class TestWithDiagnostics:
    def test_copies_counters_and_health(self):
        metrics = ParseMetrics(parsed=3, unparsed=1, ignored=7, last_line_time=NOW, last_parsed_time=NOW)
        info = with_diagnostics(create_initial_transcript_info(NOW), metrics)
        assert info.parsed_line_count == 3
        assert info.unparsed_line_count == 1
        assert info.ignored_line_count == 7
        assert info.last_line_time == NOW
        assert info.parser_health is ParserHealth.HEALTHY

    def test_degraded(self):
        info = with_diagnostics(create_initial_transcript_info(NOW), ParseMetrics(unparsed=25))
        assert info.parser_health is ParserHealth.DEGRADED

    def test_source_override(self):
        info = with_diagnostics(
            create_initial_transcript_info(NOW),
            ParseMetrics(),
            source=RuntimeStateSource.TRANSCRIPT,
        )
        assert info.source is RuntimeStateSource.TRANSCRIPT

    def test_source_untouched_by_default(self):
        info = with_diagnostics(create_initial_transcript_info(NOW), ParseMetrics())
        assert info.source is RuntimeStateSource.UNKNOWN


class TestParseMetricsStore:
    def test_get_creates_once(self):
        store = ParseMetricsStore()
        first = store.get("t1")
        first.record_ignored()
        assert store.get("t1") is first
        assert "t1" in store
        assert len(store) == 1

    def test_reset_replaces(self):
        store = ParseMetricsStore()
        store.get("t1").record_unparsed()
        fresh = store.reset("t1")
        assert fresh.unparsed == 0
        assert store.get("t1") is fresh

    def test_remove(self):
        store = ParseMetricsStore()
        store.get("t1")
        store.remove("t1")
        store.remove("missing")
        assert "t1" not in store
        assert len(store) == 0
