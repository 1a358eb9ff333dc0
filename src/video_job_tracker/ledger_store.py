from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Protocol

logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]
Unsubscribe = Callable[[], None]


class LedgerStore(Protocol):
    """Key-value persistence surface the history ledger is written to."""

    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def subscribe(self, listener: Listener) -> Unsubscribe:
        ...


class ListenerRegistry:
    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def add(self, listener: Listener) -> Unsubscribe:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def notify(self, key: str, value: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(key, value)
            except Exception:
                logger.exception("Ledger listener raised", extra={"key": key})


class InMemoryLedgerStore:
    """Process-local store. Values are deep-copied in and out."""

    def __init__(self, initial: Dict[str, Any] | None = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self._lock = threading.Lock()
        self._listeners = ListenerRegistry()

    def get(self, key: str) -> Any | None:
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)
        self._listeners.notify(key, copy.deepcopy(value))

    def subscribe(self, listener: Listener) -> Unsubscribe:
        return self._listeners.add(listener)


__all__ = ["LedgerStore", "InMemoryLedgerStore", "ListenerRegistry"]
