"""Finalizer registry for resources acquired during a run.

Each resource registers its own finalizer at the moment it is acquired
(a mount, a snapshot, a credential file) and discharges it on normal
release. Whatever is still registered when the process unwinds from a
signal or a fatal error is released in reverse acquisition order.

Signals are converted into ``OperationInterrupted`` so that the ordinary
``finally``/context-manager paths do the work; the ``atexit`` hook is the
last-resort sweep for anything those paths did not reach.
"""

from __future__ import annotations

import atexit
import itertools
import signal
import threading
from typing import Callable, Optional

from zfs_bmr.logging import LoggerFactory
from zfs_bmr.storage.exceptions import OperationInterrupted, ResourceLeakGuardTriggered

log = LoggerFactory.for_system()

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class CleanupRegistry:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[int, tuple[str, Callable[[], object]]] = {}
        self._counter = itertools.count(1)
        self._previous_handlers: dict[int, object] = {}
        self._installed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def pending(self) -> list[str]:
        """Descriptions of registered finalizers, oldest first."""
        with self._lock:
            return [description for description, _ in self._entries.values()]

    def register(self, description: str, callback: Callable[[], object]) -> int:
        with self._lock:
            token = next(self._counter)
            self._entries[token] = (description, callback)
        log.trace(f"Registered cleanup: {description}")
        return token

    def forget(self, token: int) -> None:
        """Drop a finalizer without running it (resource already released)."""
        with self._lock:
            self._entries.pop(token, None)

    def discharge(self, token: int) -> bool:
        """Run one finalizer now and drop it. Returns False if it failed."""
        with self._lock:
            entry = self._entries.pop(token, None)
        if entry is None:
            return True
        return self._run_entry(*entry)

    def run_all(self) -> int:
        """Run every remaining finalizer, newest first. Returns failure count."""
        failures = 0
        while True:
            with self._lock:
                if not self._entries:
                    break
                token = max(self._entries)
                entry = self._entries.pop(token)
            if not self._run_entry(*entry):
                failures += 1
        return failures

    def _run_entry(self, description: str, callback: Callable[[], object]) -> bool:
        try:
            callback()
        except Exception as error:
            guard = ResourceLeakGuardTriggered(description, error)
            log.warning(str(guard))
            return False
        log.debug(f"Cleaned up: {description}")
        return True

    def install(self) -> None:
        """Hook the registry into process exit and operator signals.

        Must be called from the main thread.
        """
        if self._installed:
            return
        atexit.register(self._atexit_sweep)
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)
        self._installed = True

    def uninstall(self) -> None:
        if not self._installed:
            return
        atexit.unregister(self._atexit_sweep)
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        self._installed = False

    def _atexit_sweep(self) -> None:
        if len(self):
            log.warning(f"Releasing {len(self)} leftover resource(s) at exit")
            self.run_all()

    def _handle_signal(self, signum: int, frame: Optional[object]) -> None:
        # Further signals during unwinding would abort cleanup half way.
        for other in HANDLED_SIGNALS:
            signal.signal(other, signal.SIG_IGN)
        log.warning(f"Received signal {signum}, cleaning up")
        raise OperationInterrupted(signum)
