"""
Flotilla Cluster Views

A View is an immutable, ordered snapshot of some of a cluster's members.
Combinators return new views and never touch the cluster; the rolling
operations (relaunch, clone) ask the cluster to act on the view's members.
"""

from __future__ import annotations

import random
import re
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, List, Optional, Tuple, Union

from flotilla.runtime.member import Member
from flotilla.runtime.models import RelaunchProgress
from flotilla.runtime.options import Option

if TYPE_CHECKING:
    from flotilla.runtime.cluster import Cluster

MemberPredicate = Callable[[Member], bool]


def name_matches(name: str, pattern: str) -> bool:
    """Whether a member name equals or fully matches a regular expression."""
    if name == pattern:
        return True
    try:
        return re.fullmatch(pattern, name) is not None
    except re.error:
        return False


def _describe(predicate: Any) -> str:
    return getattr(predicate, "__name__", repr(predicate))


class View:
    """
    An immutable, ordered selection of cluster members.

    ``provenance`` records the chain of transforms that produced the view,
    for diagnostics only.
    """

    def __init__(
        self,
        cluster: "Cluster",
        members: Iterable[Member],
        provenance: Tuple[str, ...] = ("all",),
    ):
        self._cluster = cluster
        self._members: Tuple[Member, ...] = tuple(members)
        self._provenance = provenance

    @property
    def cluster(self) -> "Cluster":
        return self._cluster

    @property
    def provenance(self) -> Tuple[str, ...]:
        return self._provenance

    def _live(self) -> List[Member]:
        """The members of this view that are still in the cluster."""
        return [m for m in self._members if self._cluster.is_current(m)]

    def _derive(self, members: Iterable[Member], step: str) -> "View":
        return View(self._cluster, members, self._provenance + (step,))

    # === Combinators ===

    def filter(self, predicate: MemberPredicate) -> "View":
        """Keep the members matching the predicate, preserving order."""
        return self._derive(
            [m for m in self._live() if predicate(m)],
            f"filter({_describe(predicate)})",
        )

    def limit(self, maximum: int) -> "View":
        """Keep at most the first ``maximum`` members."""
        if maximum < 0:
            raise ValueError(f"limit must not be negative: {maximum}")
        return self._derive(self._live()[:maximum], f"limit({maximum})")

    def unordered(self, rng: Optional[random.Random] = None) -> "View":
        """The same members in a random order."""
        members = self._live()
        (rng or random).shuffle(members)
        return self._derive(members, "unordered")

    def get(self, name: str) -> Optional[Member]:
        """A member by exact name or full regular expression match, else None."""
        live = self._live()
        for member in live:
            if member.name == name:
                return member
        for member in live:
            if name_matches(member.name, name):
                return member
        return None

    def get_all(self, selector: Union[str, MemberPredicate]) -> "View":
        """Members whose names start with or match a pattern, or that satisfy a predicate."""
        if callable(selector):
            return self._derive(
                [m for m in self._live() if selector(m)],
                f"get_all({_describe(selector)})",
            )

        return self._derive(
            [m for m in self._live() if m.name.startswith(selector) or name_matches(m.name, selector)],
            f"get_all({selector!r})",
        )

    # === Queries ===

    def names(self) -> List[str]:
        return [m.name for m in self._members]

    def members(self) -> List[Member]:
        return list(self._members)

    def first(self) -> Optional[Member]:
        return self._members[0] if self._members else None

    def count(self) -> int:
        return len(self._members)

    def all_match(self, predicate: MemberPredicate) -> bool:
        return all(predicate(m) for m in self._members)

    def any_match(self, predicate: MemberPredicate) -> bool:
        return any(predicate(m) for m in self._members)

    def none_match(self, predicate: MemberPredicate) -> bool:
        return not self.any_match(predicate)

    # === Rolling operations ===

    def relaunch(
        self,
        predicate: Optional[Callable[[Any], bool]] = None,
        timeout: Optional[float] = None,
        *options: Option,
    ) -> RelaunchProgress:
        """
        Replace the members of this view one at a time, in view order.

        After each replacement the whole cluster must satisfy the stability
        predicate before the next member is touched.

        Args:
            predicate: Stability predicate over a snapshot of the whole cluster
            timeout: Seconds to wait for the predicate after each replacement
            options: Overrides for closing and the relaunch hooks

        Returns:
            The progress record of the relaunch

        Raises:
            RelaunchError: Carrying the progress made before the failure
        """
        return self._cluster.relaunch_members(self._members, predicate, timeout, *options)

    def clone(self, count: int, *options: Option) -> List[Member]:
        """Launch ``count`` additional members like each member of this view."""
        return self._cluster.clone_members(self._members, count, *options)

    def close(self, *options: Option) -> None:
        """Close the members of this view."""
        self._cluster.close_members(self._members, *options)

    # === Protocol ===

    def __iter__(self) -> Iterator[Member]:
        return iter(self._members)

    def __len__(self) -> int:
        return len(self._members)

    def __getitem__(self, index: int) -> Member:
        return self._members[index]

    def __contains__(self, item: Union[Member, str]) -> bool:
        if isinstance(item, str):
            return any(m.name == item for m in self._members)
        return item in self._members

    def __repr__(self) -> str:
        return f"View({' -> '.join(self._provenance)}: {self.names()})"
