"""Typed tool parameter values."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Iterator, Union

ToolValue = Union[str, int, float, bool, None, list["ToolValue"], "ToolParameters"]

_TYPE_NAMES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
}


def type_name(expected: type) -> str:
    return _TYPE_NAMES.get(expected, "object")


def to_tool_value(value: Any) -> ToolValue:
    """Convert decoded JSON into tool values, rejecting anything else."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, list):
        return [to_tool_value(item) for item in value]
    if isinstance(value, dict):
        return ToolParameters(value)
    raise TypeError(f"Unsupported tool parameter value: {type(value).__name__}")


def matches(value: ToolValue, expected: type) -> bool:
    # bool is an int subclass; keep them apart
    if expected is bool:
        return isinstance(value, bool)
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    if expected is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected is dict or expected is ToolParameters:
        return isinstance(value, ToolParameters)
    return isinstance(value, expected)


class ToolParameters(Mapping):
    """Read-only string-keyed parameter map."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        data: dict[str, ToolValue] = {}
        for key, value in (values or {}).items():
            if not isinstance(key, str):
                raise TypeError("Tool parameter names must be strings")
            data[key] = to_tool_value(value)
        self._data = data

    def __getitem__(self, key: str) -> ToolValue:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ToolParameters({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ToolParameters):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def get_str(self, key: str) -> str | None:
        value = self._data.get(key)
        return value if isinstance(value, str) else None

    def get_int(self, key: str) -> int | None:
        value = self._data.get(key)
        return value if isinstance(value, int) and not isinstance(value, bool) else None

    def get_float(self, key: str) -> float | None:
        value = self._data.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    def get_bool(self, key: str) -> bool | None:
        value = self._data.get(key)
        return value if isinstance(value, bool) else None

    def to_dict(self) -> dict[str, Any]:
        def _plain(value: ToolValue) -> Any:
            if isinstance(value, ToolParameters):
                return value.to_dict()
            if isinstance(value, list):
                return [_plain(item) for item in value]
            return value

        return {key: _plain(value) for key, value in self._data.items()}
