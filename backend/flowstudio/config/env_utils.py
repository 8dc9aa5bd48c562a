"""
Environment helpers for dataclass configs.

Each config class declares an ``_ENV_MAP`` (field name → environment
variable). ``read_env_defaults`` turns the variables that are set into
keyword arguments coerced to the dataclass field types.
"""

from __future__ import annotations

import os
from dataclasses import Field
from logging import getLogger
from typing import Any, Dict, Mapping

logger = getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _coerce(raw: str, field_type: Any) -> Any:
    type_name = field_type if isinstance(field_type, str) else getattr(field_type, "__name__", "")
    if type_name == "bool":
        return raw.strip().lower() in _TRUE_VALUES
    if type_name == "int":
        return int(raw)
    if type_name == "float":
        return float(raw)
    return raw


def read_env_defaults(
    env_map: Mapping[str, str],
    fields: Mapping[str, Field],
) -> Dict[str, Any]:
    """Read environment overrides for the fields listed in ``env_map``.

    Values that cannot be coerced are skipped with a warning so a typo
    in the environment falls back to the dataclass default.
    """
    values: Dict[str, Any] = {}
    for field_name, env_name in env_map.items():
        raw = os.environ.get(env_name)
        if raw is None or field_name not in fields:
            continue
        try:
            values[field_name] = _coerce(raw, fields[field_name].type)
        except ValueError:
            logger.warning(f"Ignoring invalid value for {env_name}: {raw!r}")
    return values
