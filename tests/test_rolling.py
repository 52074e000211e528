"""
Tests for rolling mutations of a running cluster.

Tests cover:
- Relaunch preserving cluster size with fresh member names
- Sequential stability gating and timeouts
- Stability pre-check
- Stale members skipped during a walk
- Clone
"""

from __future__ import annotations

import random

import pytest

from conftest import FakePlatform, Proxy, Storage
from flotilla.runtime.builder import ClusterBuilder
from flotilla.runtime.cluster import Cluster, RelaunchError
from flotilla.runtime.member import Member
from flotilla.runtime.options import (
    ClusterName,
    Discriminator,
    DisplayName,
    OptionsByType,
    StabilityPrecheck,
    StabilityPredicate,
    Timeout,
)
from flotilla.runtime.platform import LaunchError
from flotilla.runtime.stability import (
    StabilityEvaluator,
    StabilityTimeoutError,
    all_operational,
    always_stable,
    minimum_size,
)


# ==================== Test Fixtures ====================

class FakeClock:
    def __init__(self):
        self.now = 0.0

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def evaluator():
    clock = FakeClock()
    return StabilityEvaluator(poll_interval=1.0, sleep=clock.sleep, clock=clock)


@pytest.fixture
def cluster(platform, evaluator):
    cluster = ClusterBuilder(evaluator=evaluator).include(4, Storage, ClusterName.of("roll")).build(platform)
    yield cluster
    cluster.close()


def replacements_made(platform: FakePlatform, initial: int) -> int:
    return len(platform.handles) - initial


class HookCluster(Cluster):
    """A cluster recording relaunch hooks."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.events = []

    def on_relaunching(self, member, options):
        self.events.append(("relaunching", member.name))

    def on_relaunched(self, original, replacement, options):
        self.events.append(("relaunched", original.name, replacement.name))


# ==================== Relaunch ====================

class TestRelaunch:
    """Test rolling relaunch."""

    def test_rolling_restart_preserves_size(self, cluster):
        before = cluster.names()

        progress = cluster.unordered(random.Random(7)).relaunch(always_stable())

        assert cluster.size() == 4
        assert set(cluster.names()).isdisjoint(before)
        assert progress.is_complete
        assert sorted(progress.relaunched) == sorted(before)

    def test_replacement_names_are_fresh(self, cluster):
        progress = cluster.relaunch(always_stable())

        assert progress.replacements == {
            "Storage-1": "Storage-5",
            "Storage-2": "Storage-6",
            "Storage-3": "Storage-7",
            "Storage-4": "Storage-8",
        }
        assert cluster.discriminator("Storage") == 8

    def test_names_unique_across_relaunches(self, cluster, platform):
        for _ in range(3):
            cluster.relaunch(always_stable())
            cluster.limit(1).relaunch()

        assert len(platform.launched) == len(set(platform.launched))
        assert cluster.size() == 4

    def test_view_order_is_followed(self, cluster):
        view = cluster.filter(lambda m: m.discriminator in (2, 4))
        progress = view.relaunch(always_stable())

        assert progress.relaunched == ["Storage-2", "Storage-4"]
        assert cluster.names() == ["Storage-1", "Storage-3", "Storage-5", "Storage-6"]

    def test_replacement_keeps_launch_options(self, cluster, platform):
        cluster.limit(1).relaunch()

        replacement = platform.handle("Storage-5")
        assert replacement.options.get(ClusterName).value == "roll"

    def test_close_options_are_forwarded(self, cluster, platform):
        cluster.limit(1).relaunch(None, None, Timeout.after(2))

        assert Timeout.after(2) in platform.handle("Storage-1").close_options

    def test_without_predicate_there_is_no_gating(self, cluster):
        progress = cluster.relaunch()
        assert progress.is_complete

    def test_sequential_gating(self, cluster, platform):
        """A predicate failing after the second replacement stops the walk there."""
        def stable(snapshot):
            return replacements_made(platform, 4) < 2

        with pytest.raises(RelaunchError) as exc_info:
            cluster.relaunch(stable, 5.0)

        progress = exc_info.value.progress
        assert replacements_made(platform, 4) == 2
        assert progress.relaunched == ["Storage-1", "Storage-2"]
        assert progress.remaining == ["Storage-3", "Storage-4"]
        assert progress.failed == "Storage-2"
        assert isinstance(exc_info.value.__cause__, StabilityTimeoutError)

    def test_timeout_leaves_cluster_as_is(self, cluster):
        with pytest.raises(RelaunchError):
            cluster.relaunch(minimum_size(5), 3.0, StabilityPrecheck.disabled())

        assert cluster.names() == ["Storage-2", "Storage-3", "Storage-4", "Storage-5"]

    def test_predicate_sees_whole_cluster(self, cluster):
        sizes = []

        def predicate(snapshot):
            sizes.append(len(snapshot))
            return True

        cluster.limit(2).relaunch(predicate)
        assert sizes == [4, 4, 4]

    def test_predicate_from_cluster_options(self, platform, evaluator):
        cluster = (
            ClusterBuilder(evaluator=evaluator)
            .include(2, Storage)
            .build(platform, StabilityPredicate.of(minimum_size(3)))
        )

        with pytest.raises(RelaunchError) as exc_info:
            cluster.relaunch(timeout=2.0)

        assert exc_info.value.progress.steps == []
        cluster.close()

    def test_predicate_option_in_call(self, cluster):
        with pytest.raises(RelaunchError):
            cluster.relaunch(None, 1.0, StabilityPredicate.of(minimum_size(10)))

    def test_operational_predicate(self, cluster):
        progress = cluster.relaunch(all_operational(), 1.0)
        assert len(progress.steps) == 4

    def test_launch_failure_stops_relaunch(self, cluster, platform):
        platform.fail_on = {6}

        with pytest.raises(RelaunchError) as exc_info:
            cluster.relaunch(always_stable())

        progress = exc_info.value.progress
        assert progress.relaunched == ["Storage-1"]
        assert progress.failed == "Storage-2"
        assert isinstance(exc_info.value.__cause__, LaunchError)
        assert cluster.names() == ["Storage-3", "Storage-4", "Storage-5"]

    def test_replacement_name_collision(self, cluster, platform):
        """A replacement whose name is taken is closed, never left running untracked."""
        handle = platform.launch(Storage, Discriminator.of(5))
        external = Member("Storage-5", Storage, platform, OptionsByType.of(Discriminator.of(0)), handle)
        cluster.add(external)

        with pytest.raises(RelaunchError) as exc_info:
            cluster.limit(1).relaunch()

        assert exc_info.value.progress.failed == "Storage-1"
        assert isinstance(exc_info.value.__cause__, LaunchError)
        assert platform.handles[-1].is_closed
        assert cluster.get("Storage-5") is external
        assert cluster.names() == ["Storage-2", "Storage-3", "Storage-4", "Storage-5"]

    def test_hooks(self, platform):
        cluster = ClusterBuilder(cluster_factory=HookCluster).include(1, Proxy).build(platform)
        cluster.relaunch()

        assert cluster.events == [("relaunching", "Proxy-1"), ("relaunched", "Proxy-1", "Proxy-2")]
        cluster.close()

    def test_progress_to_dict(self, cluster):
        data = cluster.limit(1).relaunch().to_dict()

        assert data["relaunched"] == {"Storage-1": "Storage-5"}
        assert data["remaining"] == []
        assert data["failed"] is None


class TestPrecheck:
    """Test stability evaluation before the first replacement."""

    def test_unstable_cluster_is_not_touched(self, cluster, platform):
        with pytest.raises(RelaunchError) as exc_info:
            cluster.relaunch(lambda snapshot: False, 2.0)

        assert exc_info.value.progress.steps == []
        assert exc_info.value.progress.failed is None
        assert len(platform.handles) == 4

    def test_precheck_can_be_disabled(self, cluster, platform):
        with pytest.raises(RelaunchError) as exc_info:
            cluster.relaunch(lambda snapshot: False, 2.0, StabilityPrecheck.disabled())

        assert len(exc_info.value.progress.steps) == 1
        assert len(platform.handles) == 5


class TestStaleMembers:
    """Test members that vanish while a walk is in progress."""

    def test_closed_member_is_skipped(self, cluster):
        view = cluster.view()
        cluster.get("Storage-2").close()

        progress = view.relaunch(always_stable())

        assert progress.skipped == ["Storage-2"]
        assert progress.relaunched == ["Storage-1", "Storage-3", "Storage-4"]
        assert progress.is_complete
        assert cluster.size() == 3

    def test_member_closed_by_predicate_is_skipped(self, cluster, platform):
        """An external close racing with the walk is not an error."""
        def predicate(snapshot):
            handle = platform.handle("Storage-3")
            if not handle.is_closed:
                handle.terminate_externally()
            return True

        progress = cluster.relaunch(predicate, None, StabilityPrecheck.disabled())

        assert progress.skipped == ["Storage-3"]
        assert cluster.size() == 3


# ==================== Clone ====================

class TestClone:
    """Test cloning members."""

    def test_clone_one_member(self, platform):
        cluster = ClusterBuilder().include(1, Storage).build(platform)
        original = cluster.get("Storage-1")

        added = cluster.limit(1).clone(2)

        assert cluster.size() == 3
        assert [m.name for m in added] == ["Storage-2", "Storage-3"]
        assert cluster.get("Storage-1") is original
        assert not original.is_closed
        cluster.close()

    def test_clone_per_member(self, cluster):
        added = cluster.filter(lambda m: m.discriminator <= 2).clone(1)

        assert len(added) == 2
        assert cluster.size() == 6

    def test_clone_with_overrides(self, cluster, platform):
        added = cluster.limit(1).clone(1, DisplayName.of("replica"))

        assert [m.name for m in added] == ["replica-1"]
        assert platform.handle("replica-1").options.get(ClusterName).value == "roll"

    def test_clone_failure_rolls_back(self, cluster, platform):
        platform.fail_on = {6}

        with pytest.raises(LaunchError):
            cluster.limit(1).clone(3)

        assert cluster.size() == 4
        assert platform.running == ["Storage-1", "Storage-2", "Storage-3", "Storage-4"]

    def test_clone_skips_stale_members(self, cluster):
        view = cluster.limit(2)
        view[0].close()

        added = view.clone(1)
        assert [m.name for m in added] == ["Storage-5"]
