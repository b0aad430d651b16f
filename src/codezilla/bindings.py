"""Bind Codex threads to their rollout transcript files.

Codex writes each session to ``$CODEX_HOME/sessions/**/rollout-*.jsonl`` and
never tells us which file belongs to which terminal. The registry polls the
sessions directory and matches pending threads to rollouts by working
directory, start time and, for resumes, the expected session id.
"""

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

from .models import BindingState, TranscriptInfo

logger = logging.getLogger(__name__)

CODEX_BIND_SCAN_INTERVAL = 1.0
CODEX_BIND_MAX_ATTEMPTS = 120
CODEX_BIND_MAX_DEPTH = 4
CODEX_BIND_CANDIDATE_LIMIT = 200
CODEX_BIND_EARLY_SKEW_MS = 30_000

NO_MATCH_ERROR = "No matching Codex rollout found"

# session_meta is always near the top of a rollout
SESSION_META_MAX_LINES = 8


@dataclass(frozen=True)
class CodexBindingUpdate:
    """Binding notification pushed to the runtime."""

    thread_id: str
    state: BindingState
    path: str | None = None
    codex_session_id: str | None = None
    attempts: int = 0
    error: str | None = None


@dataclass
class CodexBindingRegistration:
    thread_id: str
    cwd: str
    started_at_ms: int
    expected_codex_id: str | None = None
    state: BindingState = BindingState.PENDING
    bound_path: str | None = None
    bound_codex_session_id: str | None = None
    attempts: int = 0
    last_error: str | None = None

    def snapshot(self) -> CodexBindingUpdate:
        return CodexBindingUpdate(
            thread_id=self.thread_id,
            state=self.state,
            path=self.bound_path,
            codex_session_id=self.bound_codex_session_id,
            attempts=self.attempts,
            error=self.last_error,
        )


@dataclass(frozen=True)
class CodexRolloutCandidate:
    path: str
    cwd: str
    session_id: str
    modified_ms: int


def normalize_path(path: str) -> str:
    """Strip trailing slashes; the root stays "/"."""
    trimmed = path.rstrip("/")
    return trimmed or "/"


def now_ms() -> int:
    return int(time.time() * 1000)


def file_modified_ms(path: Path) -> int:
    try:
        return int(path.stat().st_mtime * 1000)
    except OSError:
        return 0


def codex_sessions_root() -> Path:
    codex_home = os.getenv("CODEX_HOME")
    if codex_home:
        return Path(codex_home) / "sessions"
    return Path.home() / ".codex" / "sessions"


def collect_rollout_files(directory: Path, depth: int = 0, max_depth: int = CODEX_BIND_MAX_DEPTH) -> list[Path]:
    """Recursively gather rollout-*.jsonl files, at most max_depth levels down."""
    if depth > max_depth:
        return []
    try:
        entries = list(directory.iterdir())
    except (PermissionError, OSError):
        return []

    found: list[Path] = []
    for entry in entries:
        try:
            if entry.is_dir():
                found.extend(collect_rollout_files(entry, depth + 1, max_depth))
                continue
        except OSError:
            continue
        if entry.name.startswith("rollout-") and entry.name.endswith(".jsonl"):
            found.append(entry)
    return found


def parse_codex_session_meta(path: Path) -> tuple[str, str] | None:
    """Read (session id, cwd) from a rollout's session_meta line."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            for index, raw_line in enumerate(f):
                if index >= SESSION_META_MAX_LINES:
                    break
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    return None
                if not isinstance(entry, dict) or entry.get("type") != "session_meta":
                    continue
                payload = entry.get("payload")
                if not isinstance(payload, dict):
                    return None
                session_id = payload.get("id")
                cwd = payload.get("cwd")
                if isinstance(session_id, str) and isinstance(cwd, str):
                    return session_id, cwd
                return None
    except (OSError, UnicodeDecodeError):
        return None
    return None


def load_codex_rollout_candidates(
    root: Path | None = None,
    limit: int = CODEX_BIND_CANDIDATE_LIMIT,
    max_depth: int = CODEX_BIND_MAX_DEPTH,
) -> list[CodexRolloutCandidate]:
    """Most recently modified rollouts (up to limit) that carry session metadata."""
    root = root or codex_sessions_root()
    if not root.exists():
        return []

    files = collect_rollout_files(root, 0, max_depth)
    files.sort(key=file_modified_ms, reverse=True)

    candidates = []
    for path in files[:limit]:
        meta = parse_codex_session_meta(path)
        if meta is None:
            continue
        session_id, cwd = meta
        candidates.append(CodexRolloutCandidate(
            path=str(path),
            cwd=normalize_path(cwd),
            session_id=session_id,
            modified_ms=file_modified_ms(path),
        ))
    return candidates


def candidate_score(
    registration: CodexBindingRegistration,
    candidate: CodexRolloutCandidate,
    early_skew_ms: int = CODEX_BIND_EARLY_SKEW_MS,
) -> int | None:
    """Score a rollout for a registration; None means it cannot match.

    An expected session id match beats any working-directory match.
    """
    diff = abs(candidate.modified_ms - registration.started_at_ms)
    if registration.expected_codex_id and registration.expected_codex_id == candidate.session_id:
        return 2_000_000 - min(diff, 1_000_000)

    if normalize_path(registration.cwd) != normalize_path(candidate.cwd):
        return None
    if candidate.modified_ms + early_skew_ms < registration.started_at_ms:
        return None
    return 1_000_000 - min(diff, 900_000)


def pick_candidate(
    registration: CodexBindingRegistration,
    candidates: list[CodexRolloutCandidate],
    claims: dict[str, str],
    early_skew_ms: int = CODEX_BIND_EARLY_SKEW_MS,
) -> CodexRolloutCandidate | None:
    """Best unclaimed candidate; ties go to the newer file, then the larger path."""
    best: tuple[int, int, str] | None = None
    best_candidate: CodexRolloutCandidate | None = None

    for candidate in candidates:
        owner = claims.get(candidate.path)
        if owner is not None and owner != registration.thread_id:
            continue
        score = candidate_score(registration, candidate, early_skew_ms)
        if score is None:
            continue
        key = (score, candidate.modified_ms, candidate.path)
        if best is None or key > best:
            best = key
            best_candidate = candidate

    return best_candidate


def apply_binding_update(info: TranscriptInfo, update: CodexBindingUpdate) -> TranscriptInfo:
    """Project a binding notification onto a thread's record."""
    return replace(
        info,
        codex_binding_state=update.state,
        codex_binding_attempts=update.attempts,
        codex_binding_error=update.error,
    )


class CodexBindingRegistry:
    """Pending Codex registrations and the background scan that binds them.

    Each registration moves pending -> bound or pending -> failed exactly once.
    A bound path is claimed for its thread and never offered to another.
    """

    def __init__(
        self,
        on_update: Callable[[CodexBindingUpdate], None],
        sessions_root: Path | None = None,
        scan_interval: float = CODEX_BIND_SCAN_INTERVAL,
        max_attempts: int = CODEX_BIND_MAX_ATTEMPTS,
        candidate_limit: int = CODEX_BIND_CANDIDATE_LIMIT,
        early_skew_ms: int = CODEX_BIND_EARLY_SKEW_MS,
        max_depth: int = CODEX_BIND_MAX_DEPTH,
        autostart: bool = True,
    ):
        """Initialize the registry.

        Args:
            on_update: Receives every binding notification, outside the registry lock.
            sessions_root: Directory to scan; defaults to the Codex sessions dir.
            autostart: Start the scan thread on first registration. Tests turn
                this off and drive ``scan_once`` directly.
        """
        self._on_update = on_update
        self._sessions_root = sessions_root
        self._scan_interval = scan_interval
        self._max_attempts = max_attempts
        self._candidate_limit = candidate_limit
        self._early_skew_ms = early_skew_ms
        self._max_depth = max_depth
        self._autostart = autostart
        self._registrations: dict[str, CodexBindingRegistration] = {}
        self._path_claims: dict[str, str] = {}
        self._lock = threading.Lock()
        self._running = False
        self._thread: threading.Thread | None = None

    def register(
        self,
        thread_id: str,
        cwd: str,
        started_at_ms: int | None = None,
        expected_codex_id: str | None = None,
    ) -> None:
        """Register (or re-register) a thread and emit its pending notification."""
        registration = CodexBindingRegistration(
            thread_id=thread_id,
            cwd=normalize_path(cwd),
            started_at_ms=started_at_ms if started_at_ms is not None else now_ms(),
            expected_codex_id=expected_codex_id,
        )
        with self._lock:
            self._release(thread_id)
            self._registrations[thread_id] = registration
            update = registration.snapshot()

        if self._autostart:
            self.start()
        self._emit([update])

    def unregister(self, thread_id: str) -> None:
        with self._lock:
            self._release(thread_id)

    def _release(self, thread_id: str) -> None:
        existing = self._registrations.pop(thread_id, None)
        if existing is not None and existing.bound_path:
            self._path_claims.pop(existing.bound_path, None)

    def get(self, thread_id: str) -> CodexBindingUpdate | None:
        with self._lock:
            registration = self._registrations.get(thread_id)
            return registration.snapshot() if registration else None

    def __contains__(self, thread_id: str) -> bool:
        with self._lock:
            return thread_id in self._registrations

    def scan_once(self) -> list[CodexBindingUpdate]:
        """Run one matching pass over pending registrations and emit updates."""
        with self._lock:
            pending = [r for r in self._registrations.values() if r.state is BindingState.PENDING]
            claims = dict(self._path_claims)

        if not pending:
            return []

        pending.sort(key=lambda r: (r.started_at_ms, r.thread_id))
        candidates = load_codex_rollout_candidates(self._sessions_root, self._candidate_limit, self._max_depth)
        logger.debug(f"Codex binding scan: {len(pending)} pending, {len(candidates)} candidates")

        # Pick outside the lock; claims made here prevent two pending threads
        # from choosing the same rollout within one pass.
        results: list[tuple[str, int, CodexRolloutCandidate | None]] = []
        for registration in pending:
            chosen = pick_candidate(registration, candidates, claims, self._early_skew_ms)
            if chosen is not None:
                claims[chosen.path] = registration.thread_id
            results.append((registration.thread_id, registration.attempts + 1, chosen))

        updates: list[CodexBindingUpdate] = []
        with self._lock:
            for thread_id, attempts, candidate in results:
                registration = self._registrations.get(thread_id)
                if registration is None or registration.state is not BindingState.PENDING:
                    continue
                registration.attempts = attempts

                if candidate is not None:
                    owner = self._path_claims.get(candidate.path)
                    if owner is not None and owner != thread_id:
                        continue
                    registration.state = BindingState.BOUND
                    registration.bound_path = candidate.path
                    registration.bound_codex_session_id = candidate.session_id
                    registration.last_error = None
                    self._path_claims[candidate.path] = thread_id
                    updates.append(registration.snapshot())
                elif attempts >= self._max_attempts:
                    registration.state = BindingState.FAILED
                    registration.last_error = NO_MATCH_ERROR
                    updates.append(registration.snapshot())
                elif attempts == 1 or attempts % 10 == 0:
                    updates.append(registration.snapshot())

        self._emit(updates)
        return updates

    def _emit(self, updates: list[CodexBindingUpdate]) -> None:
        for update in updates:
            try:
                self._on_update(update)
            except Exception as e:
                logger.error(f"Codex binding callback failed for {update.thread_id}: {e}", exc_info=True)

    def start(self) -> None:
        """Start the background scan thread if it is not already running."""
        with self._lock:
            if self._running:
                return
            self._running = True
        self._thread = threading.Thread(target=self._watch_loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        if self._thread:
            self._thread.join(timeout=1.0)
            self._thread = None

    def _watch_loop(self) -> None:
        """Poll the sessions directory while registrations are pending."""
        while self._running:
            time.sleep(self._scan_interval)
            if not self._running:
                break
            try:
                self.scan_once()
            except Exception as e:
                logger.error(f"Error in Codex binding scan: {e}", exc_info=True)
