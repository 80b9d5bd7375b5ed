"""Small structural schema types.

Each schema checks a plain Python value and returns a list of problems
(empty when the value conforms), with a JSON-path-like location in every
message. Used for webhook provider payload shapes and persisted policy
records.

Example:
    schema = ObjectSchema(required={"id": StringSchema(min_length=1)})
    schema.check({"id": ""})   # ["$.id: shorter than 1 characters"]
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Tuple


class Schema(ABC):
    """Base class for all schema variants."""

    @abstractmethod
    def check(self, value: Any, path: str = "$") -> List[str]:
        """Return a list of problems with *value*; empty means it conforms."""

    def matches(self, value: Any) -> bool:
        return not self.check(value)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


@dataclass(frozen=True)
class AnySchema(Schema):
    """Accepts every value."""

    def check(self, value: Any, path: str = "$") -> List[str]:
        return []


@dataclass(frozen=True)
class NullSchema(Schema):
    def check(self, value: Any, path: str = "$") -> List[str]:
        return [] if value is None else [f"{path}: expected null, got {_type_name(value)}"]


@dataclass(frozen=True)
class BoolSchema(Schema):
    def check(self, value: Any, path: str = "$") -> List[str]:
        if isinstance(value, bool):
            return []
        return [f"{path}: expected boolean, got {_type_name(value)}"]


@dataclass(frozen=True)
class StringSchema(Schema):
    min_length: int = 0
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    choices: Optional[Tuple[str, ...]] = None

    def check(self, value: Any, path: str = "$") -> List[str]:
        if not isinstance(value, str):
            return [f"{path}: expected string, got {_type_name(value)}"]
        problems = []
        if len(value) < self.min_length:
            problems.append(f"{path}: shorter than {self.min_length} characters")
        if self.max_length is not None and len(value) > self.max_length:
            problems.append(f"{path}: longer than {self.max_length} characters")
        if self.pattern is not None and not re.fullmatch(self.pattern, value):
            problems.append(f"{path}: does not match {self.pattern!r}")
        if self.choices is not None and value not in self.choices:
            problems.append(f"{path}: must be one of {', '.join(self.choices)}")
        return problems


@dataclass(frozen=True)
class NumberSchema(Schema):
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    integer: bool = False

    def check(self, value: Any, path: str = "$") -> List[str]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return [f"{path}: expected number, got {_type_name(value)}"]
        problems = []
        if self.integer and not float(value).is_integer():
            problems.append(f"{path}: expected an integer")
        if self.minimum is not None and value < self.minimum:
            problems.append(f"{path}: below minimum {self.minimum}")
        if self.maximum is not None and value > self.maximum:
            problems.append(f"{path}: above maximum {self.maximum}")
        return problems


@dataclass(frozen=True)
class ListSchema(Schema):
    items: Schema = field(default_factory=AnySchema)
    min_items: int = 0
    max_items: Optional[int] = None

    def check(self, value: Any, path: str = "$") -> List[str]:
        if not isinstance(value, (list, tuple)):
            return [f"{path}: expected array, got {_type_name(value)}"]
        problems = []
        if len(value) < self.min_items:
            problems.append(f"{path}: fewer than {self.min_items} items")
        if self.max_items is not None and len(value) > self.max_items:
            problems.append(f"{path}: more than {self.max_items} items")
        for idx, item in enumerate(value):
            problems.extend(self.items.check(item, f"{path}[{idx}]"))
        return problems


@dataclass(frozen=True)
class ObjectSchema(Schema):
    """A mapping with required and optional keys.

    Unknown keys are accepted unless ``allow_extra`` is False.
    """

    required: Mapping[str, Schema] = field(default_factory=dict)
    optional: Mapping[str, Schema] = field(default_factory=dict)
    allow_extra: bool = True

    def check(self, value: Any, path: str = "$") -> List[str]:
        if not isinstance(value, Mapping):
            return [f"{path}: expected object, got {_type_name(value)}"]
        problems = []
        for key, schema in self.required.items():
            if key not in value:
                problems.append(f"{path}.{key}: missing")
            else:
                problems.extend(schema.check(value[key], f"{path}.{key}"))
        for key, schema in self.optional.items():
            if key in value and value[key] is not None:
                problems.extend(schema.check(value[key], f"{path}.{key}"))
        if not self.allow_extra:
            known = set(self.required) | set(self.optional)
            for key in value:
                if key not in known:
                    problems.append(f"{path}.{key}: unexpected key")
        return problems


@dataclass(frozen=True)
class AnyOfSchema(Schema):
    """Conforms when at least one option conforms."""

    options: Tuple[Schema, ...] = ()

    def check(self, value: Any, path: str = "$") -> List[str]:
        if not self.options:
            return []
        collected: List[str] = []
        for option in self.options:
            problems = option.check(value, path)
            if not problems:
                return []
            collected.extend(problems)
        return [f"{path}: matches none of {len(self.options)} alternatives"] + collected
