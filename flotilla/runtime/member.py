"""
Flotilla Cluster Members
"""

from __future__ import annotations

from typing import Any, Optional

from flotilla.runtime.models import MemberState
from flotilla.runtime.options import Discriminator, Option, OptionsByType
from flotilla.runtime.platform import CloseListener, Platform, ProcessHandle


class Member:
    """
    A named, live process plus what is needed to launch it again.

    The name is ``<prefix>-<discriminator>``. A member never outlives its
    process handle: once the handle is closed the member is closed too.
    """

    def __init__(
        self,
        name: str,
        role: Any,
        platform: Platform,
        options: OptionsByType,
        handle: ProcessHandle,
        prefix: Optional[str] = None,
    ):
        self.name = name
        self.role = role
        self.platform = platform
        self.handle = handle
        self._options = options.copy()
        self.prefix = prefix or name.rsplit("-", 1)[0]

    @property
    def options(self) -> OptionsByType:
        """A copy of the options the member was launched with."""
        return self._options.copy()

    @property
    def discriminator(self) -> Optional[int]:
        """The Discriminator option, else the trailing index of the name."""
        discriminator = self._options.get_or_default(Discriminator, None)
        if discriminator is not None:
            return discriminator.value

        _, _, suffix = self.name.rpartition("-")
        return int(suffix) if suffix.isdigit() else None

    @property
    def state(self) -> MemberState:
        return MemberState.CLOSED if self.handle.is_closed else MemberState.RUNNING

    @property
    def is_closed(self) -> bool:
        return self.handle.is_closed

    def is_operational(self) -> bool:
        return not self.handle.is_closed and self.handle.is_operational()

    def close(self, *options: Option) -> None:
        """Close the underlying process; listeners remove the member from its cluster."""
        self.handle.close(*options)

    def wait_for(self, timeout: Optional[float] = None) -> int:
        return self.handle.wait_for(timeout)

    def on_close(self, listener: CloseListener) -> None:
        self.handle.add_close_listener(listener)

    def __repr__(self) -> str:
        return f"Member({self.name!r}, role={getattr(self.role, '__name__', self.role)}, {self.state.value})"
