"""Strict configuration namespace with consumed-keys enforcement."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable

_MISSING = object()


def _join_path(parent: str, key: str) -> str:
    if not parent:
        return key
    return f"{parent}.{key}"


@dataclass
class ConfigNamespace:
    """Typed accessors over one mapping; every key must be read before `assert_consumed`."""

    data: Mapping[str, Any]
    path: str
    _consumed: set[str] = field(default_factory=set, init=False, repr=False)
    _children: dict[str, "ConfigNamespace"] = field(default_factory=dict, init=False, repr=False)
    _effective: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def keys(self) -> tuple[str, ...]:
        return tuple(str(key) for key in self.data.keys())

    def consumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._consumed))

    def unconsumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(str(k) for k in self.data.keys() if k not in self._consumed))

    def assert_consumed(self) -> None:
        unknown = list(self.unconsumed_keys())
        if unknown:
            path = self.path or "<root>"
            consumed = ", ".join(self.consumed_keys()) or "<none>"
            raise ValueError(
                f"Unknown config keys under {path}: {', '.join(unknown)} (consumed: {consumed})"
            )
        for child in self._children.values():
            child.assert_consumed()

    def unknown_key_paths(self) -> list[str]:
        paths = [_join_path(self.path, key) for key in self.unconsumed_keys()]
        for child in self._children.values():
            paths.extend(child.unknown_key_paths())
        return paths

    def effective_values(self) -> dict[str, Any]:
        out = dict(self._effective)
        for key, child in self._children.items():
            child_effective = child.effective_values()
            if child_effective:
                out[key] = child_effective
        return out

    def _key_path(self, key: str) -> str:
        return _join_path(self.path, key.strip())

    def _get_raw(self, key: str, *, default: Any) -> Any:
        if not isinstance(key, str) or not key.strip():
            raise TypeError("ConfigNamespace key must be a non-empty string")
        normalized = key.strip()
        if normalized in self._children:
            raise ValueError(f"{self._key_path(normalized)} already accessed as a nested namespace")

        self._consumed.add(normalized)
        if normalized not in self.data:
            if default is _MISSING:
                raise ValueError(f"Missing required config key: {self._key_path(normalized)}")
            return default
        return self.data.get(normalized)

    def _record(self, key: str, value: Any) -> Any:
        self._effective[key.strip()] = value
        return value

    def get_raw(self, key: str, *, default: Any = _MISSING) -> Any:
        """Return an unvalidated value (marked consumed); callers own the type checks."""
        return self._get_raw(key, default=default)

    def namespace(
        self,
        key: str,
        *,
        default: Mapping[str, Any] | None | object = _MISSING,
    ) -> "ConfigNamespace":
        normalized = (key or "").strip()
        if not normalized:
            raise TypeError("ConfigNamespace key must be a non-empty string")
        if normalized in self._children:
            return self._children[normalized]

        raw = self.data.get(normalized)
        self._consumed.add(normalized)
        if raw is None:
            if default is _MISSING:
                raise ValueError(f"Missing required config namespace: {self._key_path(normalized)}")
            if default is not None and not isinstance(default, Mapping):
                raise TypeError(f"default for {self._key_path(normalized)} must be a mapping or None")
            raw = dict(default or {})
        if not isinstance(raw, Mapping):
            raise TypeError(
                f"{self._key_path(normalized)} must be a mapping (type={type(raw).__name__})"
            )

        child = ConfigNamespace(dict(raw), path=self._key_path(normalized))
        self._children[normalized] = child
        return child

    def get_bool(self, key: str, *, default: bool | object = _MISSING) -> bool:
        if default is not _MISSING and not isinstance(default, bool):
            raise TypeError(f"{self._key_path(key)} default must be a boolean")
        value = self._get_raw(key, default=default)
        if not isinstance(value, bool):
            raise TypeError(f"{self._key_path(key)} must be a boolean (type={type(value).__name__})")
        return self._record(key, value)

    def get_optional_int(
        self,
        key: str,
        *,
        default: int | None | object = _MISSING,
        min_value: int | None = None,
    ) -> int | None:
        raw = self._get_raw(key, default=default)
        if raw is None:
            return self._record(key, None)
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise TypeError(
                f"{self._key_path(key)} must be an int or null (type={type(raw).__name__})"
            )
        if min_value is not None and raw < min_value:
            raise ValueError(f"{self._key_path(key)} must be >= {min_value} (got {raw})")
        return self._record(key, int(raw))

    def get_int(self, key: str, *, default: int | object = _MISSING, min_value: int | None = None) -> int:
        if default is None:
            raise TypeError(f"{self._key_path(key)} default must be an int")
        value = self.get_optional_int(key, default=default, min_value=min_value)
        if value is None:
            raise TypeError(f"{self._key_path(key)} must be an int (type=NoneType)")
        return value

    def get_optional_float(
        self,
        key: str,
        *,
        default: float | None | object = _MISSING,
        min_value: float | None = None,
        exclusive_min: bool = False,
    ) -> float | None:
        raw = self._get_raw(key, default=default)
        if raw is None:
            return self._record(key, None)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise TypeError(
                f"{self._key_path(key)} must be a number or null (type={type(raw).__name__})"
            )
        value = float(raw)
        if min_value is not None:
            if exclusive_min and value <= min_value:
                raise ValueError(f"{self._key_path(key)} must be > {min_value} (got {value})")
            if not exclusive_min and value < min_value:
                raise ValueError(f"{self._key_path(key)} must be >= {min_value} (got {value})")
        return self._record(key, value)

    def get_str(
        self,
        key: str,
        *,
        default: str | None | object = _MISSING,
        allow_empty: bool = False,
        choices: Iterable[str] | None = None,
    ) -> str | None:
        raw = self._get_raw(key, default=default)
        if raw is None:
            return self._record(key, None)
        if not isinstance(raw, str):
            raise TypeError(f"{self._key_path(key)} must be a string (type={type(raw).__name__})")
        value = raw.strip()
        if not value and not allow_empty:
            raise ValueError(f"{self._key_path(key)} cannot be empty")
        if choices is not None:
            choice_set = {str(item).strip() for item in choices if str(item).strip()}
            if value not in choice_set:
                allowed = ", ".join(sorted(choice_set)) or "<none>"
                raise ValueError(f"{self._key_path(key)} must be one of: {allowed} (got {value!r})")
        return self._record(key, value)

    def get_list_str(
        self,
        key: str,
        *,
        default: list[str] | tuple[str, ...] | object = _MISSING,
        allow_empty: bool = False,
    ) -> list[str]:
        raw = self._get_raw(key, default=default)
        if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
            raise TypeError(
                f"{self._key_path(key)} must be a list of strings (type={type(raw).__name__})"
            )

        items: list[str] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, str):
                raise TypeError(
                    f"{self._key_path(key)}[{idx}] must be a string (type={type(item).__name__})"
                )
            trimmed = item.strip()
            if not trimmed:
                raise ValueError(f"{self._key_path(key)}[{idx}] cannot be empty")
            items.append(trimmed)

        if not items and not allow_empty:
            raise ValueError(f"{self._key_path(key)} cannot be empty")
        self._record(key, list(items))
        return items

    def get_list_mapping(
        self,
        key: str,
        *,
        default: list[Mapping[str, Any]] | object = _MISSING,
        allow_empty: bool = False,
    ) -> list[dict[str, Any]]:
        raw = self._get_raw(key, default=default)
        if not isinstance(raw, (list, tuple)):
            raise TypeError(
                f"{self._key_path(key)} must be a list of mappings (type={type(raw).__name__})"
            )

        items: list[dict[str, Any]] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, Mapping):
                raise TypeError(
                    f"{self._key_path(key)}[{idx}] must be a mapping (type={type(item).__name__})"
                )
            items.append(dict(item))

        if not items and not allow_empty:
            raise ValueError(f"{self._key_path(key)} cannot be empty")
        return items

    def get_str_mapping(
        self,
        key: str,
        *,
        default: Mapping[str, str] | object = _MISSING,
    ) -> dict[str, str]:
        """Parse a flat mapping of scalar values (integers and booleans become strings).

        Floats are rejected: YAML reads `1.70` as 1.7, so version pins must be quoted.
        """

        raw = self._get_raw(key, default=default)
        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            raise TypeError(f"{self._key_path(key)} must be a mapping (type={type(raw).__name__})")

        out: dict[str, str] = {}
        for name, value in raw.items():
            if not isinstance(name, str) or not name.strip():
                raise TypeError(f"{self._key_path(key)} keys must be non-empty strings")
            if value is None or isinstance(value, (Mapping, list, tuple)):
                raise TypeError(
                    f"{self._key_path(key)}.{name} must be a scalar (type={type(value).__name__})"
                )
            if isinstance(value, float):
                raise TypeError(
                    f"{self._key_path(key)}.{name} must be quoted (YAML read {value!r} as a number)"
                )
            if isinstance(value, bool):
                value = "true" if value else "false"
            out[name.strip()] = str(value)
        self._record(key, dict(out))
        return out
