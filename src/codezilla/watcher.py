"""Tail transcript files and forward complete lines."""

import logging
import threading
import time
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5


class TranscriptWatcher:
    """Tail one transcript file for one thread."""

    def __init__(
        self,
        thread_id: str,
        on_line: Callable[[str, str], None],
        poll_interval: float = POLL_INTERVAL,
    ):
        self.thread_id = thread_id
        self._on_line = on_line
        self._poll_interval = poll_interval
        self._current_path: Path | None = None
        self._last_position: int = 0
        self._running = False
        self._cancelled = False  # Set by stop() to prevent start() from spawning
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path | None:
        return self._current_path

    @property
    def position(self) -> int:
        with self._lock:
            return self._last_position

    def watch(self, transcript_path: str, from_start: bool = False) -> None:
        """Point the watcher at a file.

        Args:
            transcript_path: Path to the transcript file. It may not exist yet.
            from_start: Replay existing content (new sessions). Resumed sessions
                start at the end so old history is not replayed.
        """
        path = Path(transcript_path)
        with self._lock:
            self._current_path = path
            if from_start:
                self._last_position = 0
            else:
                try:
                    self._last_position = path.stat().st_size
                except OSError:
                    self._last_position = 0

    def start(self) -> None:
        """Start the polling thread."""
        with self._lock:
            if self._cancelled:
                logger.debug(f"Watcher cancelled before start: {self.thread_id}")
                return
            if self._running:
                return
            self._running = True

        logger.debug(f"Starting watcher for {self.thread_id} at position {self._last_position}")
        self._thread = threading.Thread(target=self._watch_loop, daemon=True)
        self._thread.start()

    def stop(self, wait: bool = True) -> None:
        """Stop watching.

        Args:
            wait: Join the polling thread. Callers holding a lock that the line
                callback also takes must pass False; a line already inside the
                callback is then delivered after stop() returns.
        """
        with self._lock:
            self._cancelled = True
            self._running = False
        # A line callback may stop its own watcher (compaction switch)
        if wait and self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)

    def _watch_loop(self) -> None:
        """Main watch loop - poll for new content."""
        while self._running:
            try:
                self.poll()
            except Exception as e:
                logger.error(f"Error in transcript watcher: {e}", exc_info=True)
            time.sleep(self._poll_interval)

    def poll(self) -> int:
        """Forward complete lines appended since the last poll.

        The position only advances past newline-terminated lines, so a line
        the agent is still writing is re-read on the next poll.

        Returns:
            Number of lines forwarded.
        """
        with self._lock:
            path = self._current_path
            pos = self._last_position

        if not path:
            return 0
        try:
            current_size = path.stat().st_size
        except OSError:
            return 0
        if current_size < pos:
            # Truncated or replaced; start over
            logger.debug(f"Transcript shrank, rereading: {path.name}")
            pos = 0
        if current_size == pos:
            return 0

        forwarded = 0
        last_good_position = pos
        try:
            with open(path, "rb") as f:
                f.seek(pos)
                for raw_line in f:
                    if not raw_line.endswith(b"\n"):
                        break  # incomplete, retry next poll
                    last_good_position += len(raw_line)
                    line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                    if not line.strip():
                        continue
                    if self._cancelled:
                        break
                    self._on_line(self.thread_id, line)
                    forwarded += 1
        except OSError as e:
            logger.error(f"Error reading transcript file: {e}")
            return forwarded

        with self._lock:
            if self._current_path == path:
                self._last_position = last_good_position
        return forwarded


class TranscriptWatcherManager:
    """One tailer per thread, with watch / switch / unwatch."""

    def __init__(
        self,
        on_line: Callable[[str, str], None],
        poll_interval: float = POLL_INTERVAL,
        autostart: bool = True,
    ):
        """Initialize the manager.

        Args:
            on_line: Called with (thread_id, line) for every complete line.
            autostart: Spawn a polling thread per watcher. Tests turn this off
                and call ``poll_all``.
        """
        self._on_line = on_line
        self._poll_interval = poll_interval
        self._autostart = autostart
        self._watchers: dict[str, TranscriptWatcher] = {}
        self._lock = threading.Lock()

    def watch(self, thread_id: str, path: str, from_start: bool = False) -> None:
        """Start tailing path for thread_id, replacing any previous watch."""
        watcher = TranscriptWatcher(thread_id, self._on_line, self._poll_interval)
        watcher.watch(path, from_start=from_start)
        with self._lock:
            previous = self._watchers.pop(thread_id, None)
            self._watchers[thread_id] = watcher
        if previous is not None:
            previous.stop(wait=False)
        logger.debug(f"Watching {path} for {thread_id} (from_start={from_start})")
        if self._autostart:
            watcher.start()

    def switch(self, thread_id: str, new_path: str) -> None:
        """Re-target a thread to a new file (after compaction), reading it from the start."""
        self.unwatch(thread_id, wait=False)
        self.watch(thread_id, new_path, from_start=True)

    def unwatch(self, thread_id: str, wait: bool = True) -> None:
        with self._lock:
            watcher = self._watchers.pop(thread_id, None)
        if watcher is not None:
            watcher.stop(wait=wait)
            logger.debug(f"Stopped watching transcript for {thread_id}")

    def path_for(self, thread_id: str) -> str | None:
        with self._lock:
            watcher = self._watchers.get(thread_id)
        if watcher is None or watcher.path is None:
            return None
        return str(watcher.path)

    def is_watching(self, thread_id: str) -> bool:
        with self._lock:
            return thread_id in self._watchers

    def poll_all(self) -> int:
        """Poll every watcher once on the calling thread."""
        with self._lock:
            watchers = list(self._watchers.values())
        return sum(w.poll() for w in watchers)

    def stop_all(self) -> None:
        with self._lock:
            watchers = list(self._watchers.values())
            self._watchers.clear()
        for watcher in watchers:
            watcher.stop()
