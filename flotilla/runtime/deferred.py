"""
Lazily resolved values shared between launches.
"""

from __future__ import annotations

import socket
import threading
from typing import Callable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_UNRESOLVED = object()


class LazySharedValue(Generic[T]):
    """
    A value resolved once, on first use, and then shared.

    Typical use is a cluster-wide port handed to every role of a builder:
    the port is chosen when the first member launches and every later
    member (including relaunched ones) sees the same value.
    """

    def __init__(self, supplier: Callable[[], T], name: Optional[str] = None):
        self._supplier = supplier
        self._name = name or getattr(supplier, "__name__", "value")
        self._value: object = _UNRESOLVED
        self._lock = threading.Lock()

    @classmethod
    def of(cls, value: T) -> "LazySharedValue[T]":
        """An already resolved value."""
        shared: LazySharedValue[T] = cls(lambda: value)
        shared.get()
        return shared

    @property
    def is_resolved(self) -> bool:
        return self._value is not _UNRESOLVED

    def get(self) -> T:
        """Resolve the value if needed and return it."""
        if self._value is _UNRESOLVED:
            with self._lock:
                if self._value is _UNRESOLVED:
                    # a failing supplier leaves the value unresolved for the next caller
                    value = self._supplier()
                    self._value = value
                    logger.debug("Resolved shared value", name=self._name, value=value)
        return self._value  # type: ignore[return-value]

    def __repr__(self) -> str:
        state = repr(self._value) if self.is_resolved else "unresolved"
        return f"LazySharedValue({self._name}={state})"


def available_port(host: str = "127.0.0.1") -> int:
    """Find a TCP port that is currently free on the host."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, 0))
        return sock.getsockname()[1]
