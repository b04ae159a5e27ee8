"""A thread-safe boolean flag."""

from __future__ import annotations

import threading


class AtomicBool:
    """Boolean value guarded by a lock."""

    def __init__(self, value: bool = False) -> None:
        self._lock = threading.Lock()
        self._value = bool(value)

    @property
    def value(self) -> bool:
        with self._lock:
            return self._value

    def set(self, value: bool) -> None:
        with self._lock:
            self._value = bool(value)

    def __bool__(self) -> bool:
        return self.value

    def __repr__(self) -> str:
        return f"AtomicBool({self.value})"