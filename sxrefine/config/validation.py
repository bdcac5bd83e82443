"""Validation helpers for configuration payloads."""

from __future__ import annotations

from dataclasses import fields
from typing import Any, TypeVar

T = TypeVar("T")


def ensure_mapping(value: Any, *, name: str) -> dict[str, Any]:
    """Return *value* as ``dict`` or raise a descriptive ``TypeError``."""

    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"{name} must be a mapping, got {type(value).__name__}")
    return value


def build_settings(cls: type[T], value: Any, *, name: str) -> T:
    """Instantiate the settings dataclass *cls* from a mapping.

    Unknown keys raise ``KeyError``; values are coerced to the type of the
    field's default so that YAML integers work for float fields.
    """

    mapping = ensure_mapping(value, name=name)
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(mapping) - set(known))
    if unknown:
        raise KeyError(f"Unknown keys in {name}: {', '.join(unknown)}")

    kwargs = {}
    defaults = cls()
    for key, raw in mapping.items():
        target = type(getattr(defaults, key))
        try:
            kwargs[key] = target(raw)
        except (TypeError, ValueError) as exc:
            raise TypeError(
                f"{name}.{key} must be {target.__name__}, got {raw!r}"
            ) from exc
    settings = cls(**kwargs)
    _check_positive(settings, name=name)
    return settings


def _check_positive(settings: Any, *, name: str) -> None:
    for f in fields(settings):
        value = getattr(settings, f.name)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value < 0:
            raise ValueError(f"{name}.{f.name} must not be negative, got {value}")
