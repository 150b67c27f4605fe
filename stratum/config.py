"""
Engine settings and input variable resolution

Settings layer, lowest precedence first: field defaults, ``STRATUM_*``
environment variables, explicit (CLI) overrides. Input variables layer the
same way: ``variable`` block defaults (applied by the graph builder),
``STRATUM_VAR_<name>`` environment variables, ``--var name=value`` options.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from stratum.error_msg import ConfigurationError
from stratum.execution import RetryPolicy

ENV_PREFIX = "STRATUM_"
VAR_ENV_PREFIX = "STRATUM_VAR_"


class EngineSettings(BaseModel):
    """Tunable engine parameters"""

    state_path: Path = Path(".stratum") / "state.db"
    parallelism: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=4, ge=1)
    backoff_base: float = Field(default=0.5, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    backoff_max: float = Field(default=30.0, ge=0)
    provider_root: Path = Path(".stratum") / "resources"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "EngineSettings":
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            key = f"{ENV_PREFIX}{name.upper()}"
            if key in environ:
                values[name] = environ[key]
        values.update({name: value for name, value in overrides.items() if value is not None})
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid settings: {e}") from e

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            multiplier=self.backoff_multiplier,
            max_delay=self.backoff_max,
        )


def parse_var_value(raw: str) -> Any:
    """JSON when it parses (numbers, booleans, lists, maps), else the raw string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_var_options(options: Iterable[str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for option in options:
        name, sep, raw = option.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ConfigurationError(f"Expected --var name=value, got '{option}'")
        values[name] = parse_var_value(raw)
    return values


def resolve_variables(
    options: Iterable[str] = (), environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Variable overrides from the environment, then from ``--var`` options."""
    environ = os.environ if environ is None else environ
    values = {
        key[len(VAR_ENV_PREFIX):]: parse_var_value(value)
        for key, value in environ.items()
        if key.startswith(VAR_ENV_PREFIX) and len(key) > len(VAR_ENV_PREFIX)
    }
    values.update(parse_var_options(options))
    return values
