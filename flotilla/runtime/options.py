"""
Flotilla Launch Options

A type-indexed bag of launch parameters. Each concrete option type occupies
at most one slot in an OptionsByType collection; adding a second option of
the same type replaces the first, unless both are composable, in which case
they are composed.

Defaults are resolved in this order:
1. The option present in the collection
2. A provider registered with OptionsByType.register_default()
3. The option type's own ``default()`` classmethod
"""

from __future__ import annotations

import threading
from typing import (
    Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Tuple, Type, TypeVar, Union
)

from flotilla.core.config import get_config

O = TypeVar("O", bound="Option")


class Option:
    """Base class for every launch option."""

    @classmethod
    def option_type(cls) -> Type["Option"]:
        """The type used to index this option in an OptionsByType."""
        for klass in cls.__mro__:
            if Option in klass.__bases__ or ComposableOption in klass.__bases__:
                return klass
        return cls


class ComposableOption(Option):
    """An option that merges with an existing option of the same type."""

    def compose(self, other: "ComposableOption") -> "ComposableOption":
        raise NotImplementedError


class OptionsByType:
    """
    An ordered, type-indexed collection of Options.

    Not thread-safe; snapshots are taken with copy() before being shared.
    """

    _defaults: Dict[type, Callable[[], Optional[Option]]] = {}
    _defaults_lock = threading.Lock()

    def __init__(self, options: Iterable[Option] = ()):
        self._options: Dict[type, Option] = {}
        for option in options:
            self.add(option)

    # === Construction ===

    @classmethod
    def of(cls, *options: Union[Option, "OptionsByType", None]) -> "OptionsByType":
        """Create a collection from options and/or other collections."""
        result = cls()
        result.add_all(*options)
        return result

    @classmethod
    def empty(cls) -> "OptionsByType":
        return cls()

    def copy(self) -> "OptionsByType":
        result = OptionsByType()
        result._options = dict(self._options)
        return result

    # === Default providers ===

    @classmethod
    def register_default(
        cls,
        option_type: Type[O],
        provider: Callable[[], Optional[O]],
    ) -> None:
        """Register a provider for the default value of an option type."""
        with cls._defaults_lock:
            cls._defaults[option_type.option_type()] = provider

    @classmethod
    def unregister_default(cls, option_type: Type[Option]) -> None:
        with cls._defaults_lock:
            cls._defaults.pop(option_type.option_type(), None)

    @classmethod
    def _resolve_default(cls, option_type: Type[O]) -> Optional[O]:
        provider = cls._defaults.get(option_type.option_type())
        if provider is not None:
            return provider()

        factory = getattr(option_type, "default", None)
        if callable(factory):
            return factory()

        return None

    # === Access ===

    def get(self, option_type: Type[O]) -> Optional[O]:
        """Get the option of a type, or its default when absent."""
        option = self._options.get(option_type.option_type())
        if option is not None:
            return option  # type: ignore[return-value]
        return self._resolve_default(option_type)

    def get_or_default(self, option_type: Type[O], default: Optional[O]) -> Optional[O]:
        """Get the option of a type, or the given default when absent."""
        option = self._options.get(option_type.option_type())
        return option if option is not None else default  # type: ignore[return-value]

    def contains(self, option: Union[Option, Type[Option]]) -> bool:
        if isinstance(option, Option):
            return self._options.get(option.option_type()) == option
        return option.option_type() in self._options

    def as_tuple(self) -> Tuple[Option, ...]:
        return tuple(self._options.values())

    # === Mutation ===

    def add(self, option: Optional[Option]) -> "OptionsByType":
        """Add an option, replacing or composing with one of the same type."""
        if option is None:
            return self

        key = option.option_type()
        existing = self._options.get(key)

        if isinstance(existing, ComposableOption) and isinstance(option, ComposableOption):
            option = existing.compose(option)

        self._options[key] = option
        return self

    def add_if_absent(self, option: Option) -> "OptionsByType":
        if option.option_type() not in self._options:
            self._options[option.option_type()] = option
        return self

    def add_all(self, *options: Union[Option, "OptionsByType", None]) -> "OptionsByType":
        for option in options:
            if isinstance(option, OptionsByType):
                for nested in option.as_tuple():
                    self.add(nested)
            else:
                self.add(option)
        return self

    def remove(self, option_type: Type[Option]) -> bool:
        return self._options.pop(option_type.option_type(), None) is not None

    # === Protocol ===

    def __iter__(self) -> Iterator[Option]:
        return iter(tuple(self._options.values()))

    def __len__(self) -> int:
        return len(self._options)

    def __contains__(self, option: Union[Option, Type[Option]]) -> bool:
        return self.contains(option)

    def __repr__(self) -> str:
        return f"OptionsByType({', '.join(repr(o) for o in self._options.values())})"


# === Naming ===

class DisplayName(Option):
    """The name prefix of the members launched with these options."""

    def __init__(self, value: str):
        if not value:
            raise ValueError("DisplayName must not be empty")
        self.value = value

    @classmethod
    def of(cls, value: str) -> "DisplayName":
        return cls(value)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, DisplayName) and other.value == self.value

    def __hash__(self) -> int:
        return hash(("DisplayName", self.value))

    def __repr__(self) -> str:
        return f"DisplayName({self.value!r})"


class Discriminator(Option):
    """The per-prefix index that makes a member name unique."""

    def __init__(self, value: int):
        self.value = value

    @classmethod
    def of(cls, value: int) -> "Discriminator":
        return cls(value)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Discriminator) and other.value == self.value

    def __hash__(self) -> int:
        return hash(("Discriminator", self.value))

    def __repr__(self) -> str:
        return f"Discriminator({self.value})"


class ClusterName(Option):
    """The logical name of the cluster a member joins."""

    def __init__(self, value: str):
        self.value = value

    @classmethod
    def of(cls, value: str) -> "ClusterName":
        return cls(value)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ClusterName) and other.value == self.value

    def __hash__(self) -> int:
        return hash(("ClusterName", self.value))

    def __repr__(self) -> str:
        return f"ClusterName({self.value!r})"


class ClusterPort(Option):
    """
    The port members use to find each other.

    Accepts either a fixed port or a LazySharedValue so that every member
    sharing this option resolves the same port on first use.
    """

    def __init__(self, port: Any):
        self._port = port

    @classmethod
    def of(cls, port: Any) -> "ClusterPort":
        return cls(port)

    @property
    def port(self) -> int:
        getter = getattr(self._port, "get", None)
        return int(getter()) if callable(getter) else int(self._port)

    def __repr__(self) -> str:
        return f"ClusterPort({self._port!r})"


# === Orchestration ===

class Timeout(Option):
    """Maximum time, in seconds, to wait for an operation to converge."""

    def __init__(self, seconds: float):
        if seconds < 0:
            raise ValueError("Timeout must not be negative")
        self.seconds = float(seconds)

    @classmethod
    def after(cls, seconds: float) -> "Timeout":
        return cls(seconds)

    @classmethod
    def default(cls) -> "Timeout":
        return cls(get_config().orchestration.stability_timeout)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Timeout) and other.seconds == self.seconds

    def __hash__(self) -> int:
        return hash(("Timeout", self.seconds))

    def __repr__(self) -> str:
        return f"Timeout({self.seconds}s)"


class PollInterval(Option):
    """Delay, in seconds, between stability evaluations."""

    def __init__(self, seconds: float):
        if seconds < 0:
            raise ValueError("PollInterval must not be negative")
        self.seconds = float(seconds)

    @classmethod
    def every(cls, seconds: float) -> "PollInterval":
        return cls(seconds)

    @classmethod
    def default(cls) -> "PollInterval":
        return cls(get_config().orchestration.poll_interval)

    def __repr__(self) -> str:
        return f"PollInterval({self.seconds}s)"


class StabilityPredicate(Option):
    """The predicate a cluster must satisfy before a rolling mutation continues."""

    def __init__(self, predicate: Callable[[Any], bool]):
        self.predicate = predicate

    @classmethod
    def of(cls, predicate: Callable[[Any], bool]) -> "StabilityPredicate":
        return cls(predicate)

    def __repr__(self) -> str:
        return f"StabilityPredicate({getattr(self.predicate, '__name__', self.predicate)!r})"


class StabilityPrecheck(Option):
    """Whether to require stability before the first replacement of a relaunch."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    @classmethod
    def disabled(cls) -> "StabilityPrecheck":
        return cls(False)

    @classmethod
    def default(cls) -> "StabilityPrecheck":
        return cls(get_config().orchestration.stability_precheck)

    def __bool__(self) -> bool:
        return self.enabled

    def __repr__(self) -> str:
        return f"StabilityPrecheck({self.enabled})"


# === Process launching ===

class Executable(Option):
    """The program a local member runs."""

    def __init__(self, path: str):
        self.path = str(path)

    @classmethod
    def named(cls, path: str) -> "Executable":
        return cls(path)

    def __repr__(self) -> str:
        return f"Executable({self.path!r})"


class Arguments(ComposableOption):
    """Command line arguments; composing appends."""

    def __init__(self, *values: Any):
        self.values: Tuple[str, ...] = tuple(str(v) for v in values)

    @classmethod
    def of(cls, *values: Any) -> "Arguments":
        return cls(*values)

    @classmethod
    def default(cls) -> "Arguments":
        return cls()

    def compose(self, other: "ComposableOption") -> "Arguments":
        if not isinstance(other, Arguments):
            raise TypeError(f"Cannot compose Arguments with {type(other).__name__}")
        return Arguments(*(self.values + other.values))

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Arguments) and other.values == self.values

    def __hash__(self) -> int:
        return hash(("Arguments", self.values))

    def __repr__(self) -> str:
        return f"Arguments{self.values!r}"


class EnvironmentVariables(ComposableOption):
    """Environment variables; composing merges with later values winning."""

    def __init__(self, variables: Optional[Mapping[str, Any]] = None, inherit: bool = True):
        self.variables: Dict[str, str] = {k: str(v) for k, v in (variables or {}).items()}
        self.inherit = inherit

    @classmethod
    def of(cls, **variables: Any) -> "EnvironmentVariables":
        return cls(variables)

    @classmethod
    def default(cls) -> "EnvironmentVariables":
        return cls()

    def compose(self, other: "ComposableOption") -> "EnvironmentVariables":
        if not isinstance(other, EnvironmentVariables):
            raise TypeError(f"Cannot compose EnvironmentVariables with {type(other).__name__}")
        merged = dict(self.variables)
        merged.update(other.variables)
        return EnvironmentVariables(merged, inherit=self.inherit and other.inherit)

    def __repr__(self) -> str:
        return f"EnvironmentVariables({self.variables!r})"


class WorkingDirectory(Option):
    """The directory a local member is launched in."""

    def __init__(self, path: Any):
        self.path = str(path)

    @classmethod
    def at(cls, path: Any) -> "WorkingDirectory":
        return cls(path)

    def __repr__(self) -> str:
        return f"WorkingDirectory({self.path!r})"
