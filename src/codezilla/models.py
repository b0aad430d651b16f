"""Data models for Codezilla."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AgentKind(Enum):
    """Kind of program running inside a thread's terminal."""
    CLAUDE = "claude"
    CODEX = "codex"
    SHELL = "shell"


class ThreadState(Enum):
    """Lifecycle state of a thread's process."""
    RUNNING = "running"
    EXITED = "exited"
    DORMANT = "dormant"


class TranscriptStatus(Enum):
    """Authoritative runtime status of a thread."""
    WORKING = "working"  # PTY reports active
    IDLE = "idle"        # PTY reports inactive for a running thread
    EXITED = "exited"    # process/session ended


class Badge(Enum):
    """Attention indicator shown when a thread is not focused."""
    DONE = "done"
    NEEDS_INPUT = "needs_input"
    NEEDS_APPROVAL = "needs_approval"
    ERROR = "error"


class RuntimeStateSource(Enum):
    """Which inputs have contributed to the current status."""
    UNKNOWN = "unknown"
    TRANSCRIPT = "transcript"
    PTY = "pty"
    MIXED = "mixed"


class ParserHealth(Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class PtyLifecycleSource(Enum):
    """Mechanism that last set the raw terminal-activity flag."""
    UNKNOWN = "unknown"
    OUTPUT = "output"  # output-quiet heuristic
    MARKER = "marker"  # explicit command boundary or CLI progress marker


class SignalConfidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SemanticPhase(Enum):
    UNKNOWN = "unknown"
    INITIAL = "initial"
    THINKING = "thinking"
    TOOLING = "tooling"
    RESPONDING = "responding"
    WAITING = "waiting"


class SemanticSignalGroup(Enum):
    UNKNOWN = "unknown"
    TURN = "turn"
    THINKING = "thinking"
    TOOLING = "tooling"
    RESPONSE = "response"
    LIFECYCLE = "lifecycle"


class IdleReason(Enum):
    NONE = "none"
    WAITING_FOR_INPUT = "waiting_for_input"
    WAITING_FOR_APPROVAL = "waiting_for_approval"


class BindingState(Enum):
    """Codex transcript binding state."""
    PENDING = "pending"
    BOUND = "bound"
    FAILED = "failed"


@dataclass(frozen=True)
class LastError:
    message: str
    time: datetime


@dataclass(frozen=True)
class PlanProgress:
    total: int
    done: int


@dataclass(frozen=True)
class TranscriptInfo:
    """Per-thread runtime snapshot.

    Records are never mutated in place: every writer builds a new record with
    ``dataclasses.replace`` so readers always see a whole snapshot.
    """

    status: TranscriptStatus = TranscriptStatus.IDLE
    previous_status: TranscriptStatus | None = None
    badge: Badge | None = None
    badge_since: datetime | None = None
    subtitle: str = "Idle"
    cost_usd: float | None = None
    transcript_path: str | None = None
    # State machine tracking
    pending_tool_use_ids: frozenset[str] = frozenset()
    last_tool_name: str | None = None
    last_tool_target: str | None = None
    last_event_time: datetime = field(default_factory=datetime.now)
    source: RuntimeStateSource = RuntimeStateSource.UNKNOWN
    semantic_phase: SemanticPhase = SemanticPhase.INITIAL
    semantic_signal_group: SemanticSignalGroup = SemanticSignalGroup.UNKNOWN
    semantic_signal_key: str | None = None
    semantic_signal_pattern: str | None = None
    semantic_signal_description: str | None = None
    last_error: LastError | None = None
    plan_progress: PlanProgress | None = None
    idle_reason: IdleReason = IdleReason.NONE
    signal_confidence: SignalConfidence | None = None
    # Raw terminal activity, kept for debugging
    pty_active: bool = False
    pty_lifecycle_source: PtyLifecycleSource = PtyLifecycleSource.UNKNOWN
    pty_last_transition_reason: str | None = None
    pty_last_transition_at: datetime | None = None
    # Parser diagnostics
    parsed_line_count: int = 0
    unparsed_line_count: int = 0
    ignored_line_count: int = 0
    last_line_time: datetime | None = None
    last_parsed_time: datetime | None = None
    parser_health: ParserHealth = ParserHealth.UNKNOWN
    # Codex binding
    codex_binding_state: BindingState | None = None
    codex_binding_attempts: int = 0
    codex_binding_error: str | None = None


def create_initial_transcript_info(now: datetime | None = None) -> TranscriptInfo:
    """Fresh record for a thread that just started running."""
    return TranscriptInfo(last_event_time=now or datetime.now())


@dataclass
class Thread:
    """A terminal thread managed by the workspace."""

    id: str
    kind: AgentKind
    state: ThreadState = ThreadState.DORMANT
    project_path: str | None = None
    claude_session_id: str | None = None  # stable id passed to `claude --session-id`
    codex_thread_id: str | None = None    # captured from Codex binding
    resuming: bool = False
    exit_code: int | None = None


def merge_source(current: RuntimeStateSource, contributor: RuntimeStateSource) -> RuntimeStateSource:
    """Fold a contributing input into the provenance lattice.

    The first contributor sets its own tag, a contributor from the other side
    promotes to mixed, and mixed never regresses.
    """
    if current is RuntimeStateSource.MIXED:
        return RuntimeStateSource.MIXED
    if current is RuntimeStateSource.UNKNOWN or current is contributor:
        return contributor
    return RuntimeStateSource.MIXED
