"""
Flotilla Launch Collaborators

The engine never starts processes itself. A Platform turns a role and its
options into a live ProcessHandle; the handle reports its own closure to
whoever registered a close listener, on whichever thread observed it.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

import structlog

from flotilla.runtime.models import FlotillaError
from flotilla.runtime.options import Arguments, Executable, Option, OptionsByType

logger = structlog.get_logger(__name__)

CloseListener = Callable[["ProcessHandle"], None]


class LaunchError(FlotillaError):
    """Raised when a member could not be launched."""

    def __init__(self, message: str, role: Any = None, options: Optional[OptionsByType] = None):
        super().__init__(message)
        self.role = role
        self.options = options


class Role:
    """
    Base class for roles.

    Any class can be used as a role; subclassing Role only adds a default
    command line for platforms that start operating system processes.
    """

    executable: Optional[str] = None
    arguments: tuple = ()

    @classmethod
    def prefix(cls) -> str:
        return cls.__name__

    @classmethod
    def command(cls, options: OptionsByType) -> List[str]:
        """The command line for a member of this role."""
        executable = options.get_or_default(Executable, None)
        path = executable.path if executable is not None else cls.executable
        if not path:
            raise LaunchError(f"No Executable defined for role {cls.__name__}", role=cls, options=options)

        arguments = options.get(Arguments)
        return [path, *[str(a) for a in cls.arguments], *arguments.values]


class ProcessHandle(ABC):
    """A live process produced by a Platform."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def close(self, *options: Option) -> None:
        """Terminate the process. Closing a closed handle does nothing."""
        ...

    @abstractmethod
    def is_operational(self) -> bool:
        ...

    @abstractmethod
    def wait_for(self, timeout: Optional[float] = None) -> int:
        """Wait for the process to terminate and return its exit code."""
        ...

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        ...

    @abstractmethod
    def add_close_listener(self, listener: CloseListener) -> None:
        ...

    @abstractmethod
    def remove_close_listener(self, listener: CloseListener) -> None:
        ...


class AbstractProcessHandle(ProcessHandle):
    """
    Close listener bookkeeping for ProcessHandle implementations.

    Subclasses call _fire_closed() once the process is gone, whether that was
    requested through close() or observed by a watcher. Listeners run exactly
    once, synchronously, on the thread that calls _fire_closed(). A second
    caller blocks until the first has finished notifying, so close() never
    returns while listeners are still running elsewhere.
    """

    def __init__(self, name: str):
        self._name = name
        self._listeners: List[CloseListener] = []
        self._closed = False
        self._listener_lock = threading.Lock()
        self._notify_lock = threading.RLock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_closed(self) -> bool:
        return self._closed

    def add_close_listener(self, listener: CloseListener) -> None:
        with self._listener_lock:
            if not self._closed:
                self._listeners.append(listener)
                return

        # already closed: notify immediately
        self._invoke(listener)

    def remove_close_listener(self, listener: CloseListener) -> None:
        with self._listener_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _fire_closed(self) -> bool:
        """Mark the handle closed and notify listeners. Returns False if already closed."""
        with self._notify_lock:
            with self._listener_lock:
                if self._closed:
                    return False
                self._closed = True
                listeners = list(self._listeners)
                self._listeners.clear()

            for listener in listeners:
                self._invoke(listener)
        return True

    def _invoke(self, listener: CloseListener) -> None:
        try:
            listener(self)
        except Exception as e:
            logger.error("Close listener failed", process=self._name, error=str(e))

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"{type(self).__name__}({self._name!r}, {state})"


class Platform(ABC):
    """Somewhere members can be launched."""

    def __init__(self, name: str):
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @abstractmethod
    def launch(self, role: Any, *options: Option) -> ProcessHandle:
        """
        Launch a process for a role.

        Raises:
            LaunchError: If the process could not be started
        """
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._name!r})"
