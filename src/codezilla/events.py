"""Transcript events extracted from Claude Code and Codex JSONL lines."""

from dataclasses import dataclass, field
from typing import Any, Union

from .models import IdleReason, SemanticPhase, SemanticSignalGroup, SignalConfidence


# Claude Code events

@dataclass(frozen=True)
class TurnStarted:
    pass


@dataclass(frozen=True)
class ToolUse:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class ToolResult:
    tool_use_id: str


@dataclass(frozen=True)
class AssistantText:
    pass


@dataclass(frozen=True)
class Result:
    cost: float | None = None
    duration: float | None = None


@dataclass(frozen=True)
class Compaction:
    new_transcript_path: str


# Codex events

@dataclass(frozen=True)
class CommandStarted:
    id: str
    command: str
    target: str | None = None


@dataclass(frozen=True)
class ItemCompleted:
    id: str


@dataclass(frozen=True)
class TurnCompleted:
    cost: float | None = None


# Error / lifecycle events (shared)

@dataclass(frozen=True)
class SystemErrorEvent:
    message: str


@dataclass(frozen=True)
class ApiErrorEvent:
    message: str


@dataclass(frozen=True)
class TurnFailed:
    error: str | None = None


@dataclass(frozen=True)
class ContextCompacted:
    pass


@dataclass(frozen=True)
class Ignored:
    pass


TranscriptEvent = Union[
    TurnStarted,
    ToolUse,
    ToolResult,
    AssistantText,
    Result,
    Compaction,
    CommandStarted,
    ItemCompleted,
    TurnCompleted,
    SystemErrorEvent,
    ApiErrorEvent,
    TurnFailed,
    ContextCompacted,
    Ignored,
]


@dataclass(frozen=True)
class ParsedTranscriptSignal:
    """A transcript event plus the classification metadata that produced it."""

    event: TranscriptEvent
    signal_key: str
    signal_group: SemanticSignalGroup
    semantic_phase: SemanticPhase
    idle_reason_hint: IdleReason
    confidence: SignalConfidence

    @property
    def is_ignored(self) -> bool:
        return isinstance(self.event, Ignored)
