"""Per-thread runtime state, fed by transcripts and terminal activity.

``ThreadRuntime`` owns the thread id -> ``TranscriptInfo`` map and is the
only writer to it. Transcript lines, terminal activity, binding
notifications, discovery results and the badge sweep all arrive on
different threads; every mutation runs under one lock, and every write
replaces a thread's whole record.
"""

import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from .activity import (
    ActivityGate,
    ActivitySignalSource,
    apply_command_end,
    apply_command_start,
    apply_pty_activity,
)
from .badges import apply_transcript_badge, clear_badge_on_focus, mark_exited, sweep_badge
from .bindings import CodexBindingRegistry, CodexBindingUpdate, apply_binding_update, now_ms
from .config import Config
from .discovery import DiscoveryCoordinator, discover_transcript, validate_transcript_path
from .events import Compaction
from .metrics import ParseMetricsStore, should_emit_unparsed_update, with_diagnostics
from .models import (
    AgentKind,
    BindingState,
    PtyLifecycleSource,
    RuntimeStateSource,
    Thread,
    ThreadState,
    TranscriptInfo,
    create_initial_transcript_info,
)
from .scheduler import Scheduler, ThreadingScheduler, TimerHandle
from .state_machine import transcript_reducer
from .transcript import classify
from .watcher import TranscriptWatcherManager

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, TranscriptInfo | None], None]

REGISTER_FAILED_ERROR = "Failed to register Codex thread binding"
MISSING_PROJECT_ERROR = "Missing project path for Codex binding"
WATCH_FAILED_ERROR = "Cannot watch Codex rollout"


class _SerializedScheduler:
    """Run scheduled callbacks under the runtime lock."""

    def __init__(self, scheduler: Scheduler, lock: threading.RLock):
        self._scheduler = scheduler
        self._lock = lock

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        def _run() -> None:
            with self._lock:
                callback()

        return self._scheduler.call_later(delay, _run)


class ThreadRuntime:
    """Integration layer between the classifiers, reducers and the outside world.

    Thread-safe: all state is protected by ``_lock``. The lock is reentrant
    because collaborators (binding registration, watcher switches) may call
    back into the runtime synchronously.
    """

    def __init__(
        self,
        config: Config | None = None,
        scheduler: Scheduler | None = None,
        watcher: TranscriptWatcherManager | None = None,
        registry: CodexBindingRegistry | None = None,
        lookup: Callable[[str], str | None] | None = None,
        allowed_roots: list[Path] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the runtime.

        Args:
            config: Effective configuration; defaults apply when omitted.
            scheduler: Timer source for discovery retries.
            watcher: Transcript tailer; built from config when omitted.
            registry: Codex binding registry; built from config when omitted.
            lookup: Claude session id -> transcript path.
            allowed_roots: Directories watched transcripts must live in.
                Defaults to ~/.claude, ~/.codex and $CODEX_HOME.
            clock: Source of "now" for every update.
        """
        self._config = config or Config()
        self._clock = clock
        self._allowed_roots = allowed_roots
        self._lock = threading.RLock()

        self._threads: dict[str, Thread] = {}
        self._records: dict[str, TranscriptInfo] = {}
        self._metrics = ParseMetricsStore()
        self._gates: dict[str, ActivityGate] = {}
        self._active_thread_id: str | None = None
        self._subscribers: list[Subscriber] = []

        self._watcher = watcher or TranscriptWatcherManager(
            self.handle_line,
            poll_interval=self._config.watcher.poll_interval,
        )
        bindings = self._config.bindings
        self._registry = registry or CodexBindingRegistry(
            self.handle_binding_update,
            scan_interval=bindings.scan_interval,
            max_attempts=bindings.max_attempts,
            candidate_limit=bindings.candidate_limit,
            early_skew_ms=int(bindings.early_skew * 1000),
            max_depth=bindings.max_depth,
        )
        discovery = self._config.discovery
        self._discovery = DiscoveryCoordinator(
            _SerializedScheduler(scheduler or ThreadingScheduler(), self._lock),
            context=self._discovery_context,
            lookup=lookup or discover_transcript,
            start_watch=self._start_watch,
            on_bound=self._on_transcript_discovered,
            initial_delay=discovery.initial_delay,
            retry_delay=discovery.retry_delay,
            max_attempts=discovery.max_attempts,
        )

        self._sweep_running = False
        self._sweep_thread: threading.Thread | None = None

    # -- reads ---------------------------------------------------------------

    @property
    def active_thread_id(self) -> str | None:
        return self._active_thread_id

    @property
    def discovery(self) -> DiscoveryCoordinator:
        return self._discovery

    def get_info(self, thread_id: str) -> TranscriptInfo | None:
        with self._lock:
            return self._records.get(thread_id)

    def get_thread(self, thread_id: str) -> Thread | None:
        with self._lock:
            return self._threads.get(thread_id)

    def snapshot(self) -> dict[str, TranscriptInfo]:
        """Copy of every thread's current record."""
        with self._lock:
            return dict(self._records)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Receive (thread_id, info) on every change; info is None on removal.

        Returns:
            A function that unsubscribes the callback.
        """
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    # -- record helpers ------------------------------------------------------

    def _now(self, now: datetime | None) -> datetime:
        return now or self._clock()

    def _current(self, thread_id: str, now: datetime) -> TranscriptInfo:
        return self._records.get(thread_id) or create_initial_transcript_info(now)

    def _gate(self, thread_id: str) -> ActivityGate:
        gate = self._gates.get(thread_id)
        if gate is None:
            gate = ActivityGate(self._config.activity_mode)
            self._gates[thread_id] = gate
        return gate

    def _focused(self, thread_id: str) -> bool:
        return thread_id == self._active_thread_id

    def _publish(self, thread_id: str, info: TranscriptInfo | None) -> None:
        for callback in list(self._subscribers):
            try:
                callback(thread_id, info)
            except Exception as e:
                logger.error(f"Subscriber failed for {thread_id}: {e}", exc_info=True)

    def _update(self, thread_id: str, info: TranscriptInfo) -> None:
        self._records[thread_id] = info
        self._publish(thread_id, info)

    def _diagnose(
        self,
        info: TranscriptInfo,
        thread_id: str,
        source: RuntimeStateSource | None = None,
    ) -> TranscriptInfo:
        return with_diagnostics(
            info,
            self._metrics.get(thread_id),
            source,
            self._config.diagnostics.degraded_min_unparsed,
        )

    # -- thread lifecycle ----------------------------------------------------

    def thread_started(self, thread: Thread, now: datetime | None = None) -> None:
        """A thread's process began running: reset state and begin locating its transcript."""
        with self._lock:
            now = self._now(now)
            thread.state = ThreadState.RUNNING
            self._threads[thread.id] = thread
            self._gates[thread.id] = ActivityGate(self._config.activity_mode)

            self._metrics.reset(thread.id)
            info = self._diagnose(create_initial_transcript_info(now), thread.id)
            if thread.kind is AgentKind.CODEX:
                info = replace(
                    info,
                    codex_binding_state=BindingState.PENDING,
                    codex_binding_attempts=0,
                    codex_binding_error=None,
                )
            self._update(thread.id, info)

            if not self._config.transcript_watcher_enabled:
                return

            if thread.kind is AgentKind.CLAUDE:
                self._discovery.schedule(thread.id)
            elif thread.kind is AgentKind.CODEX:
                self._register_codex(thread)

    def _register_codex(self, thread: Thread) -> None:
        if not thread.project_path:
            self._fail_binding(thread.id, MISSING_PROJECT_ERROR)
            return

        expected_codex_id = thread.codex_thread_id if thread.resuming else None
        try:
            self._registry.register(thread.id, thread.project_path, now_ms(), expected_codex_id)
        except Exception as e:
            logger.error(f"Failed to register Codex thread {thread.id}: {e}", exc_info=True)
            self._fail_binding(thread.id, REGISTER_FAILED_ERROR)

    def _fail_binding(self, thread_id: str, error: str) -> None:
        current = self._current(thread_id, self._clock())
        info = replace(current, codex_binding_state=BindingState.FAILED, codex_binding_error=error)
        self._update(thread_id, self._diagnose(info, thread_id))

    def _stop_tracking(self, thread: Thread) -> None:
        # The tailer may be blocked on our lock inside handle_line; never join it here
        self._watcher.unwatch(thread.id, wait=False)
        if thread.kind is AgentKind.CODEX:
            self._registry.unregister(thread.id)
        self._discovery.cancel(thread.id)

    def thread_stopped(self, thread_id: str, exit_code: int | None = None) -> None:
        """A running thread stopped: stop watching and mark the record exited."""
        with self._lock:
            thread = self._threads.get(thread_id)
            if thread is None:
                return
            was_running = thread.state is ThreadState.RUNNING
            thread.state = ThreadState.EXITED
            thread.exit_code = exit_code
            if was_running:
                self._stop_tracking(thread)
            gate = self._gates.get(thread_id)
            if gate is not None:
                gate.clear()
            if self._active_thread_id == thread_id:
                self._active_thread_id = None

            info = self._records.get(thread_id)
            if info is not None:
                exited = mark_exited(info)
                if exited is not info:
                    self._update(thread_id, exited)

    def thread_removed(self, thread_id: str) -> None:
        """Forget a thread entirely."""
        with self._lock:
            thread = self._threads.pop(thread_id, None)
            if thread is not None:
                self._stop_tracking(thread)
            else:
                self._watcher.unwatch(thread_id, wait=False)
                self._registry.unregister(thread_id)
            self._discovery.forget(thread_id)
            self._metrics.remove(thread_id)
            self._gates.pop(thread_id, None)
            if self._active_thread_id == thread_id:
                self._active_thread_id = None
            if self._records.pop(thread_id, None) is not None:
                self._publish(thread_id, None)

    def set_active_thread(self, thread_id: str | None) -> None:
        """Focus a thread; its badge is cleared like marking mail read."""
        with self._lock:
            if thread_id is not None and thread_id not in self._threads:
                return
            self._active_thread_id = thread_id
            if thread_id is None:
                return
            info = self._records.get(thread_id)
            if info is not None and info.badge is not None:
                self._update(thread_id, clear_badge_on_focus(info))

    # -- transcript side -----------------------------------------------------

    def _start_watch(self, thread_id: str, path: str, from_start: bool) -> None:
        validated = validate_transcript_path(path, self._allowed_roots)
        self._watcher.watch(thread_id, str(validated), from_start=from_start)

    def _discovery_context(self, thread_id: str) -> tuple[Thread | None, TranscriptInfo | None]:
        return self._threads.get(thread_id), self._records.get(thread_id)

    def _on_transcript_discovered(self, thread_id: str, path: str) -> None:
        current = self._current(thread_id, self._clock())
        source = RuntimeStateSource.MIXED if current.source is RuntimeStateSource.PTY else current.source
        info = replace(current, transcript_path=path)
        self._update(thread_id, self._diagnose(info, thread_id, source))

    def handle_line(self, thread_id: str, line: str, now: datetime | None = None) -> None:
        """Classify one transcript line and fold it into the thread's record."""
        with self._lock:
            thread = self._threads.get(thread_id)
            if thread is None or thread.state is not ThreadState.RUNNING:
                return
            now = self._now(now)
            metrics = self._metrics.get(thread_id)
            metrics.record_line(now)

            parsed = classify(line, thread.kind)
            if parsed is None:
                unparsed = metrics.record_unparsed()
                threshold = self._config.diagnostics.degraded_min_unparsed
                if unparsed == threshold and metrics.parsed == 0:
                    logger.warning(f"Parser degraded for thread {thread_id}; no recognized events yet")
                if should_emit_unparsed_update(unparsed):
                    current = self._current(thread_id, now)
                    self._update(thread_id, self._diagnose(current, thread_id))
                return

            if parsed.is_ignored:
                # Still counts as activity for the done-confirmation delay
                metrics.record_ignored()
                current = self._current(thread_id, now)
                self._update(
                    thread_id,
                    replace(current, ignored_line_count=metrics.ignored, last_line_time=now),
                )
                return

            metrics.record_parsed(now)
            current = self._diagnose(self._current(thread_id, now), thread_id)
            reduced = transcript_reducer(current, parsed.event, parsed, now)
            info = self._diagnose(reduced, thread_id)

            if self._config.debug_signals:
                logger.debug(
                    f"[transcript-signal] {thread.kind.value}:{thread_id} signal={parsed.signal_key} "
                    f"group={parsed.signal_group.value} phase={parsed.semantic_phase.value} "
                    f"event={type(parsed.event).__name__} idle_hint={parsed.idle_reason_hint.value}"
                )

            if isinstance(parsed.event, Compaction):
                new_path = parsed.event.new_transcript_path
                try:
                    validated = validate_transcript_path(new_path, self._allowed_roots)
                    self._watcher.switch(thread_id, str(validated))
                except ValueError as e:
                    logger.error(f"Cannot switch transcript for {thread_id}: {e}")
                info = replace(info, transcript_path=new_path)

            info = apply_transcript_badge(info, self._focused(thread_id), now)
            self._update(thread_id, info)

    def handle_binding_update(self, update: CodexBindingUpdate) -> None:
        """Apply a Codex binding notification and start watching a newly bound path."""
        with self._lock:
            thread = self._threads.get(update.thread_id)
            if thread is None or thread.kind is not AgentKind.CODEX:
                return

            if update.codex_session_id:
                thread.codex_thread_id = update.codex_session_id

            current = self._current(update.thread_id, self._clock())
            info = apply_binding_update(current, update)

            # Record the path only once it is watched
            if update.state is BindingState.BOUND and update.path and current.transcript_path != update.path:
                try:
                    self._start_watch(update.thread_id, update.path, not thread.resuming)
                except (OSError, ValueError) as e:
                    logger.error(f"Failed to watch Codex rollout for {update.thread_id}: {e}")
                    info = replace(
                        info,
                        codex_binding_state=BindingState.FAILED,
                        codex_binding_error=f"{WATCH_FAILED_ERROR}: {e}",
                    )
                else:
                    logger.info(f"Watching {thread.kind.value} transcript for {update.thread_id}: {update.path}")
                    info = replace(info, transcript_path=update.path)

            self._update(update.thread_id, self._diagnose(info, update.thread_id))

    # -- terminal side -------------------------------------------------------

    def handle_pty_activity(
        self,
        thread_id: str,
        active: bool,
        source: ActivitySignalSource = ActivitySignalSource.OUTPUT,
        now: datetime | None = None,
    ) -> None:
        """Raw terminal activity from the output watchdog or the CLI spinner."""
        with self._lock:
            if thread_id not in self._threads:
                return
            now = self._now(now)
            gate = self._gate(thread_id)
            admitted = gate.admit(active, source, now)
            if admitted is None:
                return
            updated = apply_pty_activity(
                self._current(thread_id, now),
                admitted.active,
                admitted.lifecycle_source,
                admitted.reason,
                now,
                strict_marker=gate.strict_marker,
            )
            if updated is not None:
                self._update(thread_id, updated)

    def handle_command_start(self, thread_id: str, now: datetime | None = None) -> None:
        with self._lock:
            if thread_id not in self._threads or not self._gate(thread_id).observe_marker():
                return
            now = self._now(now)
            self._update(thread_id, apply_command_start(self._current(thread_id, now), now))

    def handle_command_end(self, thread_id: str, exit_code: int | None, now: datetime | None = None) -> None:
        with self._lock:
            if thread_id not in self._threads or not self._gate(thread_id).observe_marker():
                return
            now = self._now(now)
            self._update(thread_id, apply_command_end(self._current(thread_id, now), exit_code, now))

    def handle_exit(self, thread_id: str, exit_code: int | None, now: datetime | None = None) -> None:
        """The thread's process exited: a final inactive update, then exited."""
        with self._lock:
            if thread_id not in self._threads:
                return
            now = self._now(now)
            gate = self._gate(thread_id)
            current = self._current(thread_id, now)
            if gate.markers_enabled and gate.marker_events_observed:
                final = apply_command_end(current, exit_code, now)
            else:
                final = apply_pty_activity(
                    current, False, PtyLifecycleSource.OUTPUT, "output_idle", now,
                    strict_marker=gate.strict_marker,
                )
            if final is not None:
                self._update(thread_id, final)
            gate.clear()
            self.thread_stopped(thread_id, exit_code)

    def note_resize(self, thread_id: str, now: datetime | None = None) -> None:
        """Terminal resized; the redraw is not agent activity."""
        with self._lock:
            self._gate(thread_id).note_resize(self._now(now))

    def note_user_input(self, thread_id: str, now: datetime | None = None) -> None:
        """User typed; the echo is not agent activity."""
        with self._lock:
            self._gate(thread_id).note_user_input(self._now(now))

    # -- badge sweep ---------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> int:
        """Settle responding threads and expire stale badges.

        Returns:
            Number of records changed.
        """
        badges = self._config.badges
        done_confirm = timedelta(seconds=badges.done_confirm)
        badge_ttl = timedelta(seconds=badges.badge_ttl)
        changed = 0
        with self._lock:
            now = self._now(now)
            for thread_id, info in list(self._records.items()):
                updated = sweep_badge(info, now, self._focused(thread_id), done_confirm, badge_ttl)
                if updated is not None:
                    self._update(thread_id, updated)
                    changed += 1
        return changed

    def start(self) -> None:
        """Start the periodic badge sweep."""
        if self._sweep_running:
            return
        self._sweep_running = True
        self._sweep_thread = threading.Thread(target=self._sweep_loop, daemon=True)
        self._sweep_thread.start()

    def _sweep_loop(self) -> None:
        while self._sweep_running:
            time.sleep(self._config.badges.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error in badge sweep: {e}", exc_info=True)

    def shutdown(self) -> None:
        """Stop the sweep, all tailers and the binding scan."""
        self._sweep_running = False
        if self._sweep_thread:
            self._sweep_thread.join(timeout=2.0)
            self._sweep_thread = None
        with self._lock:
            for thread_id in list(self._threads):
                self._discovery.cancel(thread_id)
        self._watcher.stop_all()
        self._registry.stop()
