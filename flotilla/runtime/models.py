"""
Flotilla Runtime - Core Data Models

Data structures shared by the cluster engine:
- Member lifecycle states
- Role specifications accumulated by a ClusterBuilder
- Progress records for rolling relaunches
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from flotilla.runtime.options import DisplayName, Option, OptionsByType


class FlotillaError(Exception):
    """Base class of all Flotilla errors."""
    pass


class MemberState(Enum):
    """
    Member lifecycle states.

    RUNNING -> CLOSED, either by an explicit close or because the
    underlying process was observed to terminate.
    """
    RUNNING = "running"
    CLOSED = "closed"


def role_prefix(role: Any, options: Optional[OptionsByType] = None) -> str:
    """The member name prefix for a role, honouring a DisplayName option."""
    if options is not None:
        display_name = options.get_or_default(DisplayName, None)
        if display_name is not None:
            return display_name.value

    prefix = getattr(role, "prefix", None)
    if callable(prefix):
        return prefix()
    return getattr(role, "__name__", str(role))


@dataclass(frozen=True)
class RoleSpec:
    """Declares how to produce one or more identical members."""
    role: Any
    count: int
    options: Tuple[Option, ...] = ()

    def __post_init__(self):
        if self.count < 0:
            raise ValueError(f"RoleSpec count must not be negative: {self.count}")

    @property
    def prefix(self) -> str:
        return role_prefix(self.role, OptionsByType.of(*self.options))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": getattr(self.role, "__name__", str(self.role)),
            "prefix": self.prefix,
            "count": self.count,
            "options": [repr(o) for o in self.options],
        }


@dataclass(frozen=True)
class RelaunchStep:
    """One completed replacement of a relaunch."""
    original: str
    replacement: str
    completed_at: datetime = field(default_factory=datetime.now)


@dataclass
class RelaunchProgress:
    """How far a relaunch progressed."""
    requested: List[str] = field(default_factory=list)
    steps: List[RelaunchStep] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Optional[str] = None

    @property
    def relaunched(self) -> List[str]:
        return [step.original for step in self.steps]

    @property
    def replacements(self) -> Dict[str, str]:
        return {step.original: step.replacement for step in self.steps}

    @property
    def remaining(self) -> List[str]:
        """Requested members that were neither relaunched nor skipped."""
        visited = set(self.relaunched) | set(self.skipped)
        return [name for name in self.requested if name not in visited]

    @property
    def is_complete(self) -> bool:
        return self.failed is None and not self.remaining

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested": list(self.requested),
            "relaunched": self.replacements,
            "skipped": list(self.skipped),
            "remaining": self.remaining,
            "failed": self.failed,
        }
