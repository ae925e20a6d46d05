"""Graceful shutdown: route SIGINT/SIGTERM to registered cleanup callbacks."""

from __future__ import annotations

import signal
import threading
from types import FrameType
from typing import Any, Callable, Optional

from loguru import logger


class ShutdownManager:
    """Keep a registry of cleanup callbacks and run them once on shutdown.

    Handlers only run on the main thread; elsewhere `install()` is a no-op and
    callers may still trigger `shutdown()` explicitly.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: list[tuple[str, Callable[[], Any]]] = []
        self._previous: dict[int, Any] = {}
        self._installed = False
        self.requested = threading.Event()
        self._ran = False

    def register(self, name: str, callback: Callable[[], Any]) -> None:
        with self._lock:
            self._callbacks.append((name, callback))

    def unregister(self, name: str) -> None:
        with self._lock:
            self._callbacks = [(n, cb) for n, cb in self._callbacks if n != name]

    def install(self) -> bool:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread; signal handlers not installed")
            return False
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle)
        self._installed = True
        return True

    def uninstall(self) -> None:
        if not self._installed:
            return
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()
        self._installed = False

    def _handle(self, signum: int, frame: Optional[FrameType]) -> None:
        name = signal.Signals(signum).name
        if self.requested.is_set():
            logger.warning("Received {} again; cleanup already in progress", name)
            return
        logger.warning("Received {}; stopping new work and cleaning up", name)
        self.shutdown()

    def shutdown(self) -> list[str]:
        """Run every registered callback once, newest first.

        Returns:
            Names of callbacks that raised.
        """
        self.requested.set()
        with self._lock:
            if self._ran:
                return []
            self._ran = True
            callbacks = list(reversed(self._callbacks))
        failed: list[str] = []
        for name, callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.error("Shutdown callback {} failed: {}", name, exc)
                failed.append(name)
        return failed

    def __enter__(self) -> "ShutdownManager":
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.uninstall()
