"""
Flotilla Cluster

A named set of independently running members treated as one unit:
- Membership kept accurate by close notifications from process handles
- Collision-free member names from per-prefix discriminators
- All-or-nothing expansion with rollback
- Stability-gated rolling relaunch, one member at a time
- Aggregated failure reporting on close
"""

from __future__ import annotations

import threading
from collections import OrderedDict, defaultdict
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import structlog

from flotilla.runtime.member import Member
from flotilla.runtime.models import (
    FlotillaError,
    RelaunchProgress,
    RelaunchStep,
    role_prefix,
)
from flotilla.runtime.options import (
    ClusterName,
    Discriminator,
    DisplayName,
    Option,
    OptionsByType,
    PollInterval,
    StabilityPrecheck,
    StabilityPredicate,
    Timeout,
)
from flotilla.runtime.platform import CloseListener, LaunchError, Platform
from flotilla.runtime.stability import StabilityEvaluator, StabilityTimeoutError
from flotilla.runtime.view import MemberPredicate, View

logger = structlog.get_logger(__name__)

LaunchRequest = Tuple[Platform, Any, OptionsByType]


class ClusterClosedError(FlotillaError):
    """Raised when changing a cluster that has been closed."""
    pass


class ClusterCloseError(FlotillaError):
    """Raised when one or more members failed to close."""

    def __init__(self, message: str, failures: Dict[str, BaseException]):
        super().__init__(message)
        self.failures = failures


class RollbackAggregateError(LaunchError):
    """
    A launch failed and closing the members already launched failed too.

    ``cause`` is the original launch failure; ``close_failures`` maps member
    names to the errors raised while closing them.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException,
        close_failures: Dict[str, BaseException],
    ):
        super().__init__(message)
        self.cause = cause
        self.close_failures = close_failures


class RelaunchError(FlotillaError):
    """Raised when a relaunch stopped early; ``progress`` records how far it got."""

    def __init__(self, message: str, progress: RelaunchProgress):
        super().__init__(message)
        self.progress = progress


class Cluster:
    """
    A mutable, thread-safe set of members.

    Every read and write of the membership mapping happens under one lock,
    held only for the mapping operation itself; launches, closes and
    stability polling run outside it.
    """

    def __init__(
        self,
        options: Optional[OptionsByType] = None,
        evaluator: Optional[StabilityEvaluator] = None,
    ):
        self._options = options.copy() if options is not None else OptionsByType.empty()

        cluster_name = self._options.get_or_default(ClusterName, None)
        self.name = cluster_name.value if cluster_name is not None else "cluster"

        self._members: "OrderedDict[str, Member]" = OrderedDict()
        self._close_listeners: Dict[str, CloseListener] = {}
        self._discriminators: Dict[str, int] = defaultdict(int)
        self._lock = threading.RLock()
        self._closed = False

        self._evaluator = evaluator or StabilityEvaluator()
        self._log = logger.bind(cluster=self.name)

    # === Properties ===

    @property
    def options(self) -> OptionsByType:
        return self._options.copy()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def discriminator(self, prefix: str) -> int:
        """The last discriminator handed out for a prefix (0 if none)."""
        with self._lock:
            return self._discriminators.get(prefix, 0)

    # === Membership ===

    def _next_discriminator(self, prefix: str) -> int:
        with self._lock:
            self._discriminators[prefix] += 1
            return self._discriminators[prefix]

    def _track(self, member: Member) -> bool:
        """Add a member to the mapping and subscribe to its closure."""
        with self._lock:
            if self._closed:
                raise ClusterClosedError(f"Can't add {member.name} as cluster {self.name} is closed")
            if member.name in self._members:
                return False
            self._members[member.name] = member

            def listener(handle: Any, member: Member = member) -> None:
                self._on_member_closed(member)

            self._close_listeners[member.name] = listener

        # registered outside the lock; a handle that is already closed
        # notifies immediately and the member is removed again
        member.on_close(listener)
        return True

    def _forget(self, member: Member) -> bool:
        with self._lock:
            if self._members.get(member.name) is not member:
                return False
            del self._members[member.name]
            self._close_listeners.pop(member.name, None)
            return True

    def _on_member_closed(self, member: Member) -> None:
        """Close notification from a member's process handle."""
        if self._forget(member):
            self._log.info("Member closed, removed from cluster", member=member.name)

    def is_current(self, member: Member) -> bool:
        """Whether this exact member is still in the cluster and open."""
        with self._lock:
            current = self._members.get(member.name) is member
        return current and not member.is_closed

    def add(self, member: Member) -> bool:
        """
        Add a member launched elsewhere.

        Returns:
            False if a member with the same name is already present

        Raises:
            ClusterClosedError: If the cluster is closed
        """
        with self._lock:
            self._discriminators[member.prefix] = max(
                self._discriminators[member.prefix],
                member.discriminator or 0,
            )

        added = self._track(member)
        if added:
            self.on_expanded([member], member.options)
        return added

    def remove(self, member: Member) -> bool:
        """Stop tracking a member without closing it."""
        with self._lock:
            listener = self._close_listeners.get(member.name)
            removed = self._forget(member)

        if removed and listener is not None:
            member.handle.remove_close_listener(listener)
        return removed

    # === Queries ===

    def get(self, name: str) -> Optional[Member]:
        """A member by exact name (or full regular expression match), else None."""
        with self._lock:
            member = self._members.get(name)
        if member is not None:
            return member
        return self.view().get(name)

    def get_all(self, selector: Union[str, MemberPredicate]) -> View:
        return self.view().get_all(selector)

    def view(self) -> View:
        """A snapshot of every member, in insertion order."""
        with self._lock:
            members = list(self._members.values())
        return View(self, members, (self.name,))

    def filter(self, predicate: MemberPredicate) -> View:
        return self.view().filter(predicate)

    def limit(self, maximum: int) -> View:
        return self.view().limit(maximum)

    def unordered(self, rng: Any = None) -> View:
        return self.view().unordered(rng)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._members)

    def members(self) -> List[Member]:
        with self._lock:
            return list(self._members.values())

    def size(self) -> int:
        with self._lock:
            return len(self._members)

    def __len__(self) -> int:
        return self.size()

    def __iter__(self) -> Iterator[Member]:
        return iter(self.members())

    def __contains__(self, item: Union[Member, str]) -> bool:
        with self._lock:
            if isinstance(item, str):
                return item in self._members
            return self._members.get(item.name) is item

    # === Extension hooks ===

    def on_expanded(self, members: List[Member], options: OptionsByType) -> None:
        """Called after members were added to the cluster."""
        pass

    def on_relaunching(self, member: Member, options: OptionsByType) -> None:
        """Called before a member is closed for relaunch."""
        pass

    def on_relaunched(self, original: Member, replacement: Member, options: OptionsByType) -> None:
        """Called after a replacement was launched and added."""
        pass

    # === Launching ===

    def _launch(self, platform: Platform, role: Any, options: OptionsByType) -> Member:
        """Launch one member with a fresh discriminator."""
        launch_options = options.copy()
        launch_options.remove(Discriminator)

        prefix = role_prefix(role, launch_options)
        discriminator = self._next_discriminator(prefix)
        name = f"{prefix}-{discriminator}"

        launch_options.add(DisplayName(prefix))
        launch_options.add(Discriminator(discriminator))

        try:
            handle = platform.launch(role, *launch_options.as_tuple())
        except LaunchError:
            raise
        except Exception as e:
            raise LaunchError(
                f"Failed to launch {name} on {platform.name}: {e}",
                role=role,
                options=launch_options,
            ) from e

        self._log.info("Launched member", member=name, platform=platform.name)
        return Member(name, role, platform, launch_options, handle, prefix=prefix)

    def _admit(self, member: Member) -> None:
        """
        Track a freshly launched member.

        Raises:
            LaunchError: If the cluster closed meanwhile or the name is taken
        """
        try:
            tracked = self._track(member)
        except ClusterClosedError as e:
            raise LaunchError(str(e), role=member.role, options=member.options) from e

        if not tracked:
            raise LaunchError(
                f"Member name {member.name} is already in use in cluster {self.name}",
                role=member.role,
                options=member.options,
            )

    def _discard(self, member: Member) -> None:
        """Close a launched member that never joined the cluster."""
        try:
            member.close()
        except Exception as e:
            self._log.error("Failed to close untracked member", member=member.name, error=str(e))

    def _rollback(self, launched: Sequence[Member], cause: LaunchError) -> None:
        """Close members launched by a failed call, then re-raise the failure."""
        self._log.warning(
            "Launch failed, rolling back",
            launched=[m.name for m in launched],
            error=str(cause),
        )

        close_failures: Dict[str, BaseException] = {}
        for member in reversed(launched):
            try:
                member.close()
            except Exception as e:
                close_failures[member.name] = e
                self._log.error("Rollback close failed", member=member.name, error=str(e))
            finally:
                self._forget(member)

        if close_failures:
            raise RollbackAggregateError(
                f"{cause}; additionally {len(close_failures)} member(s) failed to close "
                f"during rollback: {sorted(close_failures)}",
                cause=cause,
                close_failures=close_failures,
            ) from cause

        raise cause

    def launch_all(
        self,
        requests: Iterable[LaunchRequest],
        options: Optional[OptionsByType] = None,
    ) -> List[Member]:
        """
        Launch members one after the other, all or nothing.

        Each member joins the cluster as soon as it is launched. If any launch
        fails, the members launched by this call are closed and the failure
        is raised. ``options`` are handed to the on_expanded hook.

        Raises:
            LaunchError: The original failure, when rollback was clean
            RollbackAggregateError: When rollback itself had failures
        """
        if self._closed:
            raise ClusterClosedError(f"Cluster {self.name} is closed")

        launched: List[Member] = []

        for platform, role, launch_options in requests:
            try:
                member = self._launch(platform, role, launch_options)
            except LaunchError as e:
                self._rollback(launched, e)

            launched.append(member)
            try:
                self._admit(member)
            except LaunchError as e:
                self._rollback(launched, e)

        if launched:
            self.on_expanded(launched, options or OptionsByType.empty())
        return launched

    def expand(self, count: int, platform: Platform, role: Any, *options: Option) -> List[Member]:
        """Launch ``count`` members of a role on a platform and add them."""
        if count < 0:
            raise ValueError(f"count must not be negative: {count}")

        launch_options = OptionsByType.of(self._options).add_all(*options)
        return self.launch_all(
            ((platform, role, launch_options) for _ in range(count)),
            launch_options,
        )

    # === Rolling operations ===

    def _setting(self, call_options: OptionsByType, option_type: type) -> Any:
        option = call_options.get_or_default(option_type, None)
        if option is None:
            option = self._options.get(option_type)
        return option

    def _await_stability(
        self,
        predicate: Callable[[Any], bool],
        poll_interval: Optional[float],
        timeout: float,
    ) -> None:
        self._evaluator.evaluate(predicate, self.view, poll_interval=poll_interval, timeout=timeout)

    def relaunch_members(
        self,
        members: Sequence[Member],
        predicate: Optional[Callable[[Any], bool]] = None,
        timeout: Optional[float] = None,
        *options: Option,
    ) -> RelaunchProgress:
        """Close and relaunch members one at a time, gated on stability."""
        call_options = OptionsByType.of(*options)

        if predicate is None:
            stability = self._setting(call_options, StabilityPredicate)
            predicate = stability.predicate if stability is not None else None
        if timeout is None:
            timeout = self._setting(call_options, Timeout).seconds
        interval = call_options.get_or_default(PollInterval, self._options.get_or_default(PollInterval, None))
        poll_interval = interval.seconds if interval is not None else None
        precheck = bool(self._setting(call_options, StabilityPrecheck))

        progress = RelaunchProgress(requested=[m.name for m in members])

        if self._closed:
            raise ClusterClosedError(f"Cluster {self.name} is closed")

        if predicate is not None and precheck and members:
            try:
                self._await_stability(predicate, poll_interval, timeout)
            except StabilityTimeoutError as e:
                raise RelaunchError(
                    f"Cluster {self.name} was not stable before relaunching",
                    progress,
                ) from e

        for member in members:
            if not self.is_current(member):
                self._log.debug("Skipping member no longer in cluster", member=member.name)
                progress.skipped.append(member.name)
                continue

            self.on_relaunching(member, call_options)

            try:
                member.close(*call_options.as_tuple())
            except Exception as e:
                progress.failed = member.name
                raise RelaunchError(f"Failed to close {member.name} for relaunch", progress) from e
            finally:
                if member.is_closed:
                    self._forget(member)

            try:
                replacement = self._launch(member.platform, member.role, member.options)
            except LaunchError as e:
                progress.failed = member.name
                raise RelaunchError(f"Failed to relaunch {member.name}", progress) from e

            try:
                self._admit(replacement)
            except LaunchError as e:
                progress.failed = member.name
                self._discard(replacement)
                raise RelaunchError(f"Failed to relaunch {member.name}", progress) from e

            self.on_relaunched(member, replacement, call_options)
            progress.steps.append(RelaunchStep(member.name, replacement.name))
            self._log.info("Relaunched member", member=member.name, replacement=replacement.name)

            if predicate is not None:
                try:
                    self._await_stability(predicate, poll_interval, timeout)
                except StabilityTimeoutError as e:
                    progress.failed = member.name
                    raise RelaunchError(
                        f"Cluster {self.name} did not stabilize after relaunching "
                        f"{member.name} as {replacement.name}",
                        progress,
                    ) from e

        return progress

    def clone_members(self, members: Sequence[Member], count: int, *options: Option) -> List[Member]:
        """Launch ``count`` copies of each member, overriding with ``options``."""
        if count < 0:
            raise ValueError(f"count must not be negative: {count}")

        requests: List[LaunchRequest] = []
        for member in members:
            if not self.is_current(member):
                self._log.debug("Skipping clone of member no longer in cluster", member=member.name)
                continue
            launch_options = member.options.add_all(*options)
            requests.extend((member.platform, member.role, launch_options) for _ in range(count))

        return self.launch_all(requests, OptionsByType.of(*options))

    def relaunch(
        self,
        predicate: Optional[Callable[[Any], bool]] = None,
        timeout: Optional[float] = None,
        *options: Option,
    ) -> RelaunchProgress:
        """Relaunch every member in insertion order."""
        return self.view().relaunch(predicate, timeout, *options)

    def clone(self, count: int, *options: Option) -> List[Member]:
        return self.view().clone(count, *options)

    # === Closing ===

    def close_members(self, members: Iterable[Member], *options: Option) -> None:
        """Close members, continuing past failures and reporting them together."""
        failures: Dict[str, BaseException] = {}

        for member in members:
            try:
                member.close(*options)
            except Exception as e:
                failures[member.name] = e
                self._log.error("Failed to close member", member=member.name, error=str(e))

        if failures:
            raise ClusterCloseError(
                f"{len(failures)} member(s) of cluster {self.name} failed to close: {sorted(failures)}",
                failures,
            )

    def close(self, *options: Option) -> None:
        """Close every remaining member. Closing a closed cluster does nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            members = list(self._members.values())

        try:
            self.close_members(members, *options)
        finally:
            with self._lock:
                self._members.clear()
                self._close_listeners.clear()
            self._log.info("Cluster closed", members=len(members))

    def __enter__(self) -> "Cluster":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"Cluster({self.name!r}, {state}, members={self.names()})"
