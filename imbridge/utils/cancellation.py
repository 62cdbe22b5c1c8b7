from __future__ import annotations

import logging
from typing import Callable, List


logger = logging.getLogger(__name__)


class AbortSignal:
    """Read side of an AbortController: query state and subscribe to abort."""

    def __init__(self) -> None:
        self._aborted = False
        self._listeners: List[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    def add_listener(self, fn: Callable[[], None]) -> None:
        """Subscribe ``fn`` to fire once on abort. No-op if already aborted."""
        if self._aborted:
            return
        self._listeners.append(fn)

    def remove_listener(self, fn: Callable[[], None]) -> None:
        try:
            self._listeners.remove(fn)
        except ValueError:
            pass

    def _fire(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        listeners, self._listeners = self._listeners, []
        for fn in listeners:
            try:
                fn()
            except Exception as e:
                logger.error("abort listener failed: %s", e, exc_info=True)


class AbortController:
    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self) -> None:
        self.signal._fire()
