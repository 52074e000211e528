"""
Flotilla Runtime - cluster membership and rolling orchestration.

Launches named clusters of processes as a single unit and mutates them
safely at runtime: atomic builds, views over members, and stability-gated
relaunch, clone and expand.
"""

from flotilla.runtime.builder import BuildError, ClusterBuilder
from flotilla.runtime.cluster import (
    Cluster,
    ClusterCloseError,
    ClusterClosedError,
    RelaunchError,
    RollbackAggregateError,
)
from flotilla.runtime.deferred import LazySharedValue, available_port
from flotilla.runtime.local import LocalPlatform, LocalProcessHandle
from flotilla.runtime.member import Member
from flotilla.runtime.models import (
    FlotillaError,
    MemberState,
    RelaunchProgress,
    RelaunchStep,
    RoleSpec,
)
from flotilla.runtime.options import (
    Arguments,
    ClusterName,
    ClusterPort,
    ComposableOption,
    Discriminator,
    DisplayName,
    EnvironmentVariables,
    Executable,
    Option,
    OptionsByType,
    PollInterval,
    StabilityPrecheck,
    StabilityPredicate,
    Timeout,
    WorkingDirectory,
)
from flotilla.runtime.platform import (
    AbstractProcessHandle,
    LaunchError,
    Platform,
    ProcessHandle,
    Role,
)
from flotilla.runtime.stability import (
    BackoffStrategy,
    StabilityEvaluator,
    StabilityTimeoutError,
    all_of,
    all_operational,
    always_stable,
    minimum_size,
)
from flotilla.runtime.view import View

__all__ = [
    # Engine
    "Cluster",
    "ClusterBuilder",
    "Member",
    "View",
    "RoleSpec",
    "MemberState",
    "RelaunchProgress",
    "RelaunchStep",
    # Launching
    "Platform",
    "ProcessHandle",
    "AbstractProcessHandle",
    "Role",
    "LocalPlatform",
    "LocalProcessHandle",
    # Options
    "Option",
    "ComposableOption",
    "OptionsByType",
    "Arguments",
    "ClusterName",
    "ClusterPort",
    "Discriminator",
    "DisplayName",
    "EnvironmentVariables",
    "Executable",
    "PollInterval",
    "StabilityPrecheck",
    "StabilityPredicate",
    "Timeout",
    "WorkingDirectory",
    "LazySharedValue",
    "available_port",
    # Stability
    "StabilityEvaluator",
    "BackoffStrategy",
    "always_stable",
    "all_operational",
    "minimum_size",
    "all_of",
    # Errors
    "FlotillaError",
    "LaunchError",
    "BuildError",
    "RollbackAggregateError",
    "RelaunchError",
    "StabilityTimeoutError",
    "ClusterClosedError",
    "ClusterCloseError",
]
