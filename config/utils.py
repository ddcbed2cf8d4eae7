"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from typing import Any, Dict


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from Config, SectionProxy, or dict objects."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = source.get(section, {})
        return dict(candidate) if isinstance(candidate, dict) else {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        to_dict = getattr(candidate, 'to_dict', None)
        if callable(to_dict):
            return dict(to_dict())
        if isinstance(candidate, dict):
            return dict(candidate)

    return {}


def as_bool(value: Any, default: bool = False) -> bool:
    """Interpret YAML/env flags such as ``"true"``, ``"1"`` or ``"on"``."""
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
