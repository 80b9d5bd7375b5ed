"""Capability contexts for sandboxed code.

A :class:`CapabilityContext` is the only scope a condition, action or script
can see. It is an immutable, enumerated mapping: names outside the allowed
set fail loudly on access instead of resolving to anything, writes and
deletes fail, and enumeration yields exactly the allowed names.

Values are deep-frozen on the way in. Callables are wrapped in
:class:`CapabilityFunction`, which exposes nothing but a name and a call, and
which converts arguments and results to plain data so host objects never
reach the script.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Optional, Tuple

from policy_sandbox.errors import CapabilityError

logger = logging.getLogger(__name__)


class CapabilityFunction:
    """A whitelisted function as seen from inside the sandbox.

    Slotted and read-only: the script can call it, nothing more. The wrapped
    callable is never reachable through the wrapper.
    """

    __slots__ = ("_name", "_fn")

    def __init__(self, name: str, fn: Callable[..., Any]) -> None:
        object.__setattr__(self, "_name", name)
        object.__setattr__(self, "_fn", fn)

    @property
    def name(self) -> str:
        return self._name

    def __call__(self, *args: Any) -> Any:
        plain_args = [thaw(arg) for arg in args]
        return freeze(self._fn(*plain_args))

    def __setattr__(self, key: str, value: Any) -> None:
        raise CapabilityError(f"Capability function '{self._name}' is immutable")

    def __delattr__(self, key: str) -> None:
        raise CapabilityError(f"Capability function '{self._name}' is immutable")

    def __repr__(self) -> str:
        return f"<capability {self._name}>"


def freeze(value: Any, name: str = "value") -> Any:
    """Convert *value* into the sandbox value domain.

    Mappings become read-only ``MappingProxyType`` views, sequences become
    tuples and callables become :class:`CapabilityFunction`.

    Raises:
        CapabilityError: if the value has no sandbox representation.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, CapabilityFunction):
        return value
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): freeze(v, str(k)) for k, v in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(freeze(v, name) for v in value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return freeze(dataclasses.asdict(value), name)
    if callable(value):
        return CapabilityFunction(name, value)
    raise CapabilityError(
        f"Value of type {type(value).__name__} cannot enter the sandbox ({name})"
    )


def thaw(value: Any, strict: bool = True) -> Any:
    """Convert a sandbox value back into plain, mutable Python data.

    With ``strict`` (the default) a capability function anywhere inside
    *value* raises; otherwise it is replaced by its repr.
    """
    if isinstance(value, CapabilityFunction):
        if strict:
            raise CapabilityError("Capability functions cannot be passed to the host")
        return repr(value)
    if isinstance(value, Mapping):
        return {k: thaw(v, strict) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v, strict) for v in value]
    return value


class CapabilityContext(Mapping):
    """Read-only view over exactly the allowed names.

    Example:
        ctx = build_context({"event": {...}, "secret": "x"}, {"event"})
        ctx["event"]      # frozen event payload
        ctx["secret"]     # raises CapabilityError
        list(ctx)         # ["event"]
    """

    __slots__ = ("_values", "_allowed")

    def __init__(self, values: Mapping[str, Any], allowed: Tuple[str, ...]) -> None:
        object.__setattr__(self, "_values", MappingProxyType(dict(values)))
        object.__setattr__(self, "_allowed", allowed)

    def __getitem__(self, key: str) -> Any:
        if key not in self._allowed:
            logger.warning("[SANDBOX_CAPABILITY] Blocked access to '%s'", key)
            raise CapabilityError(f"Access to '{key}' is not allowed in this context")
        return self._values.get(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self._allowed)

    def __len__(self) -> int:
        return len(self._allowed)

    def __contains__(self, key: object) -> bool:
        return key in self._allowed

    def __setitem__(self, key: str, value: Any) -> None:
        raise CapabilityError("Context is immutable")

    def __delitem__(self, key: str) -> None:
        raise CapabilityError("Context is immutable")

    def __setattr__(self, key: str, value: Any) -> None:
        raise CapabilityError("Context is immutable")

    def __delattr__(self, key: str) -> None:
        raise CapabilityError("Context is immutable")

    def __repr__(self) -> str:
        return f"CapabilityContext({list(self._allowed)!r})"

    @property
    def allowed_keys(self) -> frozenset[str]:
        return frozenset(self._allowed)

    def extend(
        self,
        extra: Mapping[str, Any],
        allowed: Optional[Iterable[str]] = None,
    ) -> CapabilityContext:
        """Return a new context with *extra* names added.

        Args:
            extra: Additional values (typically allowed functions).
            allowed: Names of *extra* to expose. Defaults to all of them.
        """
        names = list(extra) if allowed is None else list(allowed)
        merged = dict(self._values)
        for key in names:
            if key in extra:
                merged[key] = freeze(extra[key], key)
        return CapabilityContext(merged, _ordered_unique((*self._allowed, *names)))


def _ordered_unique(keys: Iterable[str]) -> Tuple[str, ...]:
    seen: dict[str, None] = {}
    for key in keys:
        if not isinstance(key, str):
            raise CapabilityError("Capability names must be strings")
        seen.setdefault(key, None)
    return tuple(seen)


def build_context(base: Mapping[str, Any], allowed_keys: Iterable[str]) -> CapabilityContext:
    """Build an immutable capability context over *allowed_keys* of *base*.

    Only allowed names are copied out of *base*; an allowed name that *base*
    lacks reads as ``None``.
    """
    allowed = _ordered_unique(allowed_keys)
    values = {key: freeze(base[key], key) for key in allowed if key in base}
    return CapabilityContext(values, allowed)
