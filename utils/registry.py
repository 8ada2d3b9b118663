"""
Capability registry - first-match selection among named implementations.

Each entry pairs a name with a predicate. select() returns the first entry whose
predicate accepts the target and raises UnsupportedBackendError when none does;
there is no silent default.
"""

from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from utils.errors import UnsupportedBackendError

T = TypeVar("T")


@dataclass(frozen=True)
class Registration(Generic[T]):
    name: str
    supports: Callable[[str], bool]
    factory: T


class CapabilityRegistry(Generic[T]):
    """Ordered registry of implementations keyed by a capability predicate."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._entries: list[Registration[T]] = []

    def register(self, name: str, supports: Callable[[str], bool]) -> Callable[[T], T]:
        """Decorator registering ``factory`` under ``name``."""

        def decorator(factory: T) -> T:
            self._entries.append(Registration(name=name, supports=supports, factory=factory))
            return factory

        return decorator

    def names(self) -> list[str]:
        return [entry.name for entry in self._entries]

    def select(self, target: str) -> Registration[T]:
        for entry in self._entries:
            if entry.supports(target):
                return entry
        raise UnsupportedBackendError(
            f"No {self.kind} supports {target!r} (registered: {', '.join(self.names()) or 'none'})"
        )
