"""
=============================================================================
REQUEST-SCOPED ATTRIBUTES
=============================================================================

Middleware hands values down to handlers (the authenticated user, a
request id, a parsed tenant) through an attribute store attached to the
request Context.

=============================================================================
COPY ON WRITE
=============================================================================

Setting an attribute never mutates the store a caller already holds. It
returns a NEW store (and Context.set_attribute a new Context) that sees
every earlier binding plus the new one:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   ctx0 ── {}                                                         │
    │    │                                                                 │
    │    └─► ctx1 = ctx0.set_attribute(USER, "ana")     {USER: ana}        │
    │         │                                                            │
    │         ├─► ctx2 = ctx1.set_attribute(ROLE, "admin")                 │
    │         │                                  {USER: ana, ROLE: admin}  │
    │         │                                                            │
    │         └─► ctx3 = ctx1.set_attribute(USER, "bob")                   │
    │                                            {USER: bob}               │
    │                                                                      │
    │   ctx1 still sees USER=ana; ctx2 and ctx3 never see each other.      │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

A middleware that passes the new Context to `next` scopes the value to
everything downstream of it, and nothing upstream can observe it.

=============================================================================
KEYS
=============================================================================

Keys are AttributeKey instances compared by identity, never plain
strings. Two packages that both pick the name "user" still get distinct
slots:

    USER = AttributeKey("user")          # module-level, shared by reference

=============================================================================
"""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Generic, Iterator, Optional, TypeVar


T = TypeVar("T")


class AttributeKey(Generic[T]):
    """
    Namespaced key for a Context attribute.

    `name` is only used for display; equality and hashing are by identity.
    """

    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return f"AttributeKey({self.name!r})"


class Attributes(Mapping):
    """
    Immutable mapping of AttributeKey → value.

        attrs = Attributes()
        child = attrs.set(USER, "ana")

        attrs.get(USER)   # None
        child.get(USER)   # "ana"
    """

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping] = None):
        values = dict(values or {})
        for key in values:
            _check_key(key)
        self._values = MappingProxyType(values)

    def set(self, key: AttributeKey, value: Any) -> "Attributes":
        """A new store with `key` bound to `value`; this one is unchanged."""
        _check_key(key)
        values = dict(self._values)
        values[key] = value
        return Attributes(values)

    def get(self, key: AttributeKey, default: Any = None) -> Any:
        """The bound value, or `default` (None) when the key was never set."""
        return self._values.get(key, default)

    def __getitem__(self, key: AttributeKey) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[AttributeKey]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        items = ", ".join(f"{key.name}={value!r}" for key, value in self._values.items())
        return f"Attributes({items})"


def _check_key(key: Any) -> None:
    if not isinstance(key, AttributeKey):
        raise TypeError(
            f"Attribute keys must be AttributeKey instances, got {type(key).__name__}"
        )
