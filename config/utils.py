"""Helper utilities for reading configuration sections regardless of the backing object."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict


def _as_dict(candidate: Any) -> Dict:
    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        return dict(to_dict())
    if isinstance(candidate, Mapping):
        return dict(candidate)
    return {}


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dict section from a Config, SectionProxy or dict."""
    if source is None:
        return {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        return _as_dict(getter(section, {}))

    return _as_dict(getattr(source, section, None))
