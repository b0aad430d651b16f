"""Locate Claude Code transcript files for running threads.

Claude Code does not announce where it writes its transcript, so after a
thread starts we poll a lookup by session id with bounded retries.
"""

import logging
import os
from pathlib import Path
from typing import Callable

from .models import AgentKind, Thread, ThreadState, TranscriptInfo
from .scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DISCOVERY_INITIAL_DELAY = 1.5
DISCOVERY_RETRY_DELAY = 2.0
DISCOVERY_MAX_ATTEMPTS = 30
DISCOVERY_MAX_DEPTH = 4


class TranscriptPathError(ValueError):
    """Raised when a transcript path falls outside the allowed directories."""


def _claude_dir() -> Path:
    return Path.home() / ".claude"


def allowed_transcript_roots() -> list[Path]:
    """Directories transcripts may live in: ~/.claude, ~/.codex and $CODEX_HOME."""
    roots = [Path.home() / ".claude", Path.home() / ".codex"]
    codex_home = os.getenv("CODEX_HOME")
    if codex_home:
        roots.append(Path(codex_home))
    return roots


def validate_transcript_path(raw_path: str, allowed_roots: list[Path] | None = None) -> Path:
    """Resolve a transcript path and check it lies inside an allowed root.

    Raises:
        TranscriptPathError: If the path cannot be resolved or is outside every root.
    """
    path = Path(raw_path)
    if path.exists():
        canonical = path.resolve()
    elif path.parent.exists():
        if not path.name:
            raise TranscriptPathError(f"Invalid path: no filename: {raw_path}")
        canonical = path.parent.resolve() / path.name
    else:
        raise TranscriptPathError(f"Parent directory does not exist: {path.parent}")

    roots = allowed_transcript_roots() if allowed_roots is None else allowed_roots
    for root in roots:
        candidates = [root]
        if root.exists():
            candidates.append(root.resolve())
        for candidate in candidates:
            if canonical == candidate or candidate in canonical.parents:
                return canonical
    raise TranscriptPathError(f"Transcript path must be within ~/.claude/ or ~/.codex/: {canonical}")


def _find_transcript(directory: Path, session_id: str, depth: int, max_depth: int) -> Path | None:
    if depth > max_depth:
        return None
    try:
        entries = list(directory.iterdir())
    except (PermissionError, OSError):
        return None

    subdirs: list[Path] = []
    for entry in entries:
        try:
            if entry.is_file():
                if entry.suffix == ".jsonl" and (session_id in entry.parent.name or session_id in entry.name):
                    return entry
            elif entry.is_dir():
                subdirs.append(entry)
        except OSError:
            continue

    for subdir in subdirs:
        found = _find_transcript(subdir, session_id, depth + 1, max_depth)
        if found is not None:
            return found
    return None


def discover_transcript(
    session_id: str,
    claude_dir: Path | None = None,
    max_depth: int = DISCOVERY_MAX_DEPTH,
    allowed_roots: list[Path] | None = None,
) -> str | None:
    """Find the .jsonl transcript for a Claude session id.

    Walks ``~/.claude`` up to ``max_depth`` levels looking for a .jsonl file
    whose name, or whose parent directory's name, contains the session id.
    """
    root = claude_dir or _claude_dir()
    if not session_id or not root.is_dir():
        return None
    found = _find_transcript(root, session_id, 0, max_depth)
    if found is None:
        return None
    if allowed_roots is None and claude_dir is not None:
        allowed_roots = [claude_dir]
    return str(validate_transcript_path(str(found), allowed_roots))


class DiscoveryCoordinator:
    """Bounded-retry transcript discovery, one procedure per thread.

    Attempt 0 fires ``initial_delay`` seconds after ``schedule``; each failed
    attempt retries after ``retry_delay`` until ``max_attempts`` is reached,
    after which discovery is abandoned with a warning. Every attempt aborts
    early when the thread stopped running, is not a Claude thread, has no
    session id, or already has a transcript path.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        context: Callable[[str], tuple[Thread | None, TranscriptInfo | None]],
        lookup: Callable[[str], str | None],
        start_watch: Callable[[str, str, bool], None],
        on_bound: Callable[[str, str], None],
        initial_delay: float = DISCOVERY_INITIAL_DELAY,
        retry_delay: float = DISCOVERY_RETRY_DELAY,
        max_attempts: int = DISCOVERY_MAX_ATTEMPTS,
    ):
        """Initialize the coordinator.

        Args:
            scheduler: Timer source for the initial delay and retries.
            context: Returns the current (thread, info) pair for a thread id.
            lookup: Session id -> transcript path, or None when not found yet.
            start_watch: Starts tailing (thread_id, path, from_start).
            on_bound: Called with (thread_id, path) once watching started.
        """
        self._scheduler = scheduler
        self._context = context
        self._lookup = lookup
        self._start_watch = start_watch
        self._on_bound = on_bound
        self._initial_delay = initial_delay
        self._retry_delay = retry_delay
        self._max_attempts = max_attempts
        self._in_flight: set[str] = set()
        self._timers: dict[str, TimerHandle] = {}
        self._generations: dict[str, int] = {}

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def is_pending(self, thread_id: str) -> bool:
        return thread_id in self._in_flight or thread_id in self._timers

    def schedule(self, thread_id: str) -> None:
        """Start discovery for a thread that just began running."""
        generation = self._generations.get(thread_id, 0)
        self._schedule_attempt(thread_id, 0, generation, self._initial_delay)

    def cancel(self, thread_id: str) -> None:
        """Stop discovery: clear timers and discard any attempt in flight."""
        self._generations[thread_id] = self._generations.get(thread_id, 0) + 1
        self._in_flight.discard(thread_id)
        timer = self._timers.pop(thread_id, None)
        if timer is not None:
            timer.cancel()

    def forget(self, thread_id: str) -> None:
        """Cancel and drop all bookkeeping for a removed thread."""
        self.cancel(thread_id)
        self._generations.pop(thread_id, None)

    def _schedule_attempt(self, thread_id: str, attempt: int, generation: int, delay: float) -> None:
        timer = self._scheduler.call_later(delay, lambda: self.attempt(thread_id, attempt, generation))
        self._timers[thread_id] = timer

    def _finish(self, thread_id: str) -> None:
        self._in_flight.discard(thread_id)
        self._timers.pop(thread_id, None)

    def _stale(self, thread_id: str, generation: int) -> bool:
        return self._generations.get(thread_id, 0) != generation

    def attempt(self, thread_id: str, attempt: int, generation: int | None = None) -> None:
        """Run one discovery attempt."""
        if generation is None:
            generation = self._generations.get(thread_id, 0)
        if self._stale(thread_id, generation):
            return

        thread, info = self._context(thread_id)
        if thread is None or thread.state is not ThreadState.RUNNING or thread.kind is not AgentKind.CLAUDE:
            self._finish(thread_id)
            return
        if not thread.claude_session_id:
            self._finish(thread_id)
            return
        if info is not None and info.transcript_path:
            self._finish(thread_id)
            return

        self._timers.pop(thread_id, None)
        if attempt == 0:
            if thread_id in self._in_flight:
                return
            self._in_flight.add(thread_id)

        path: str | None = None
        try:
            path = self._lookup(thread.claude_session_id)
        except (OSError, ValueError) as e:
            logger.debug(f"Transcript lookup failed for {thread_id}: {e}")

        if self._stale(thread_id, generation):
            return

        if path:
            try:
                self._start_watch(thread_id, path, not thread.resuming)
            except Exception as e:
                logger.debug(f"Failed to start watching {path} for {thread_id}: {e}")
            else:
                self._on_bound(thread_id, path)
                logger.info(f"Watching {thread.kind.value} transcript for {thread_id}: {path}")
                self._in_flight.discard(thread_id)
                return

        if attempt >= self._max_attempts - 1:
            self._in_flight.discard(thread_id)
            logger.warning(f"Failed to discover transcript for thread {thread_id} after {self._max_attempts} attempts")
            return

        self._schedule_attempt(thread_id, attempt + 1, generation, self._retry_delay)
