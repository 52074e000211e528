"""
Flotilla - clusters of processes operated as one unit

- Atomic, all-or-nothing cluster builds with rollback
- Self-healing membership driven by process close notifications
- View combinators for selecting members
- Stability-gated rolling relaunch, clone and expand
"""

__version__ = "1.0.0"
__author__ = "Flotilla Team"

from flotilla.core.config import FlotillaConfig
from flotilla.runtime.builder import ClusterBuilder
from flotilla.runtime.cluster import Cluster
from flotilla.runtime.local import LocalPlatform

__all__ = ["Cluster", "ClusterBuilder", "LocalPlatform", "FlotillaConfig", "__version__"]
