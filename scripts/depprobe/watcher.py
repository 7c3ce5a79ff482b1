"""Interrupt handling for long probe runs.

The main loop publishes a finalized snapshot of the catalog after each
library. On SIGINT/SIGTERM a watcher thread writes the last published
snapshot and terminates the process, so an interrupted run never leaves a
half-updated record or a partially written file behind.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from scripts.depprobe.catalog import save_catalog

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 2


class InterruptWatcher:
    """Flushes the published catalog snapshot when the process is interrupted."""

    def __init__(
        self,
        catalog_path: Path | str,
        exit_code: int = EXIT_INTERRUPTED,
        exit_fn: Callable[[int], Any] = os._exit,
        signals: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM),
    ):
        self.catalog_path = Path(catalog_path)
        self.exit_code = exit_code
        self.exit_fn = exit_fn
        self.signals = signals

        self._lock = threading.Lock()
        self._event = threading.Event()
        self._snapshot: Optional[dict[str, Any]] = None
        self._finished = False
        self._interrupted = False
        self._thread: Optional[threading.Thread] = None
        self._previous_handlers: dict[int, Any] = {}

    def __enter__(self) -> "InterruptWatcher":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def start(self) -> None:
        """Start the watcher thread and install signal handlers.

        Handlers can only be installed from the main thread; elsewhere the
        watcher still runs and can be fired with ``trigger``.
        """
        if threading.current_thread() is threading.main_thread():
            for signum in self.signals:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        self._thread = threading.Thread(target=self._watch, name="depprobe-interrupt-watcher", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop watching and restore the previous signal handlers."""
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        self._event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None

    def publish(self, snapshot: dict[str, Any]) -> None:
        """Replace the snapshot the watcher would write.

        ``snapshot`` must be a private copy that nobody mutates afterwards.
        """
        with self._lock:
            self._snapshot = snapshot

    @property
    def interrupted(self) -> bool:
        """True once a termination signal arrived or ``trigger`` was called."""
        return self._interrupted

    def finish(self, write: Callable[[], None]) -> None:
        """Run the end-of-run save, unless the watcher already wrote or is about to.

        Shares the watcher's lock, so the two final writes never interleave.
        """
        with self._lock:
            if self._finished or self._interrupted:
                return
            write()
            self._finished = True

    def trigger(self) -> None:
        """Behave as if a termination signal had arrived."""
        self._interrupted = True
        self._event.set()

    def _handle_signal(self, signum, frame) -> None:
        self._interrupted = True
        self._event.set()

    def _watch(self) -> None:
        self._event.wait()
        if not self._interrupted:
            return

        with self._lock:
            if self._finished:
                logger.debug("Interrupted after final save, nothing to flush")
                return
            if self._snapshot is not None:
                try:
                    save_catalog(self._snapshot, self.catalog_path)
                except (IOError, OSError, TypeError) as e:
                    logger.error("Could not flush catalog on interrupt: %s", e)
            self._finished = True

        print("Exiting due to CTRL+C")
        sys.stdout.flush()
        sys.stderr.flush()
        self.exit_fn(self.exit_code)
