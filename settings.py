"""Default simulation settings, overridable through environment variables."""
from __future__ import annotations

import os
from typing import Mapping, Optional

from calculations import SimulationConfig
from lines_loader import LinesInputError, parse_brazilian_number

ENV_PREFIX = "IMPORT_SIM_"

_FLOAT_FIELDS = {
    "EXCHANGE_RATE": "exchange_rate",
    "DUTY_RATE": "duty_rate",
    "ICMS_RATE": "icms_rate",
    "FREIGHT_TOTAL": "freight_total",
    "OTHER_FEES_TOTAL": "other_fees_total",
}

_TEXT_FIELDS = {
    "FREIGHT_CURRENCY": "freight_currency",
    "FREIGHT_ALLOCATION": "freight_allocation_method",
    "FEES_ALLOCATION": "fees_allocation_method",
}

_TRUE = {"1", "true", "yes", "sim", "on"}
_FALSE = {"0", "false", "no", "nao", "não", "off", ""}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> SimulationConfig:
    """Build a SimulationConfig from IMPORT_SIM_* variables; unset ones keep their defaults."""
    env = os.environ if environ is None else environ
    kwargs: dict[str, object] = {}

    for suffix, field_name in _FLOAT_FIELDS.items():
        name = ENV_PREFIX + suffix
        if name in env:
            try:
                kwargs[field_name] = parse_brazilian_number(env[name])
            except LinesInputError as exc:
                raise ValueError(f"{name} must be a number, got {env[name]!r}") from exc

    for suffix, field_name in _TEXT_FIELDS.items():
        name = ENV_PREFIX + suffix
        if name in env:
            kwargs[field_name] = env[name]

    name = ENV_PREFIX + "ICMS_INSIDE_BASE"
    if name in env:
        kwargs["icms_inside_base"] = _parse_bool(name, env[name])

    try:
        return SimulationConfig(**kwargs)
    except ValueError as exc:
        raise ValueError(f"Invalid {ENV_PREFIX}* setting: {exc}") from exc
