"""
Shared fixtures for the Flotilla test suite.

FakePlatform launches in-memory handles so the engine can be exercised
without starting processes: launches can be made to fail, closes can be
made to fail, and handles can be terminated "externally" from another
thread the way a crashed process would be.
"""

from __future__ import annotations

import threading
from typing import Any, List, Optional, Set

import pytest

from flotilla.core.config import reset_config
from flotilla.runtime.models import role_prefix
from flotilla.runtime.options import Discriminator, Option, OptionsByType
from flotilla.runtime.platform import AbstractProcessHandle, LaunchError, Platform, Role


# ==================== Roles ====================

class Storage(Role):
    """A storage-enabled member."""
    pass


class Proxy(Role):
    """A proxy member."""
    pass


class FailingRole(Role):
    """A role that FakePlatform refuses to launch."""
    fails = True


# ==================== Fakes ====================

class FakeHandle(AbstractProcessHandle):
    """An in-memory process handle."""

    def __init__(self, name: str, options: OptionsByType, fail_close: bool = False):
        super().__init__(name)
        self.options = options
        self.fail_close = fail_close
        self.operational = True
        self.close_calls = 0
        self.close_options: List[Option] = []
        self.exit_code: Optional[int] = None

    def close(self, *options: Option) -> None:
        self.close_calls += 1
        self.close_options = list(options)
        if self.is_closed:
            return
        if self.fail_close:
            raise RuntimeError(f"{self.name} refused to close")
        self.exit_code = 0
        self._fire_closed()

    def terminate_externally(self, exit_code: int = 137) -> None:
        """Simulate the process dying on its own, observed by a watcher thread."""
        def watcher() -> None:
            self.exit_code = exit_code
            self._fire_closed()

        thread = threading.Thread(target=watcher)
        thread.start()
        thread.join()

    def is_operational(self) -> bool:
        return self.operational and not self.is_closed

    def wait_for(self, timeout: Optional[float] = None) -> int:
        return self.exit_code if self.exit_code is not None else 0


class FakePlatform(Platform):
    """A platform producing FakeHandles."""

    def __init__(
        self,
        name: str = "fake",
        fail_on: Optional[Set[int]] = None,
        fail_close: Optional[Set[str]] = None,
        error: Optional[Exception] = None,
    ):
        super().__init__(name)
        self.fail_on = fail_on or set()
        self.fail_close = fail_close or set()
        self.error = error
        self.attempts = 0
        self.handles: List[FakeHandle] = []

    def launch(self, role: Any, *options: Option) -> FakeHandle:
        self.attempts += 1
        launch_options = OptionsByType.of(*options)

        prefix = role_prefix(role, launch_options)
        discriminator = launch_options.get_or_default(Discriminator, None)
        name = f"{prefix}-{discriminator.value}" if discriminator is not None else prefix

        if getattr(role, "fails", False) or self.attempts in self.fail_on:
            if self.error is not None:
                raise self.error
            raise LaunchError(f"Failed to launch {name}", role=role, options=launch_options)

        handle = FakeHandle(name, launch_options, fail_close=name in self.fail_close)
        self.handles.append(handle)
        return handle

    @property
    def launched(self) -> List[str]:
        return [h.name for h in self.handles]

    @property
    def running(self) -> List[str]:
        return [h.name for h in self.handles if not h.is_closed]

    def handle(self, name: str) -> FakeHandle:
        return next(h for h in self.handles if h.name == name)


# ==================== Fixtures ====================

@pytest.fixture(autouse=True)
def isolated_config():
    """Every test starts from the default configuration."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def platform():
    return FakePlatform()
