"""
Flotilla Cluster Builder

Accumulates role specifications and launches them all as one atomic unit:
either every member is launched, or none are left running.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import structlog

from flotilla.runtime.cluster import Cluster, RollbackAggregateError
from flotilla.runtime.models import RoleSpec
from flotilla.runtime.options import ClusterName, Option, OptionsByType
from flotilla.runtime.platform import LaunchError, Platform
from flotilla.runtime.stability import StabilityEvaluator

logger = structlog.get_logger(__name__)

ClusterFactory = Callable[..., Cluster]


class BuildError(LaunchError):
    """
    Raised when a build failed and was rolled back.

    ``cause`` is the launch failure that triggered the rollback;
    ``close_failures`` holds any members that could not be closed during it.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException,
        close_failures: Optional[Dict[str, BaseException]] = None,
    ):
        super().__init__(
            message,
            role=getattr(cause, "role", None),
            options=getattr(cause, "options", None),
        )
        self.cause = cause
        self.close_failures = close_failures or {}


class ClusterBuilder:
    """
    Declarative construction of a Cluster.

    Usage:
        cluster = (
            ClusterBuilder()
            .include(3, Storage, ClusterName.of("orders"))
            .include(1, Proxy)
            .build(LocalPlatform())
        )
    """

    def __init__(
        self,
        cluster_factory: ClusterFactory = Cluster,
        evaluator: Optional[StabilityEvaluator] = None,
    ):
        self._specs: List[RoleSpec] = []
        self._options = OptionsByType.empty()
        self._cluster_factory = cluster_factory
        self._evaluator = evaluator

    @property
    def specs(self) -> List[RoleSpec]:
        return list(self._specs)

    def with_options(self, *options: Option) -> "ClusterBuilder":
        """Options applied to every member and to the cluster itself."""
        self._options.add_all(*options)
        return self

    def include(self, count: int, role: Any, *options: Option) -> "ClusterBuilder":
        """Declare ``count`` identical members of a role."""
        spec = RoleSpec(role, count, tuple(options))
        if count > 0:
            self._specs.append(spec)
        return self

    def _cluster_options(self, build_options: OptionsByType) -> OptionsByType:
        options = OptionsByType.of(self._options, build_options)

        if not options.contains(ClusterName):
            for spec in self._specs:
                cluster_name = OptionsByType.of(*spec.options).get_or_default(ClusterName, None)
                if cluster_name is not None:
                    options.add(cluster_name)
                    break

        return options

    def build(self, platform: Platform, *options: Option) -> Cluster:
        """
        Launch every declared member on a platform.

        Options are layered: builder options, then each spec's options, then
        the options given here.

        Raises:
            BuildError: If any member failed to launch; no member is left running
        """
        build_options = OptionsByType.of(*options)
        cluster = self._cluster_factory(
            options=self._cluster_options(build_options),
            evaluator=self._evaluator,
        )

        requests = [
            (platform, spec.role, OptionsByType.of(self._options).add_all(*spec.options, build_options))
            for spec in self._specs
            for _ in range(spec.count)
        ]

        log = logger.bind(cluster=cluster.name)
        log.info("Building cluster", members=len(requests), roles=[s.to_dict() for s in self._specs])

        try:
            cluster.launch_all(requests, cluster.options)
        except RollbackAggregateError as e:
            cluster.close()
            log.error("Build failed and rollback was incomplete", error=str(e.cause), close_failures=sorted(e.close_failures))
            raise BuildError(str(e), cause=e.cause, close_failures=e.close_failures) from e.cause
        except LaunchError as e:
            cluster.close()
            log.error("Build failed, rolled back", error=str(e))
            raise BuildError(f"Failed to build cluster {cluster.name}: {e}", cause=e) from e

        log.info("Cluster built", members=cluster.names())
        return cluster
