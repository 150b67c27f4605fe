from __future__ import annotations

from pathlib import Path

import pytest

from stratum.config import EngineSettings, parse_var_options, parse_var_value, resolve_variables
from stratum.error_msg import ConfigurationError
from stratum.execution import RetryPolicy


@pytest.mark.unit
def test_backoff_is_monotonic_and_capped():
    policy = RetryPolicy(max_attempts=6, base_delay=0.5, multiplier=2.0, max_delay=3.0)
    delays = [policy.delay_for(attempt) for attempt in range(1, 7)]
    assert delays == [0.5, 1.0, 2.0, 3.0, 3.0, 3.0]
    assert delays == sorted(delays)


@pytest.mark.unit
@pytest.mark.parametrize(
    "kwargs",
    [{"max_attempts": 0}, {"base_delay": -1}, {"multiplier": 0.5}],
)
def test_retry_policy_validation(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


@pytest.mark.unit
def test_settings_defaults_env_and_overrides():
    settings = EngineSettings.from_env(environ={})
    assert settings.parallelism == 4
    assert settings.state_path == Path(".stratum") / "state.db"

    environ = {"STRATUM_PARALLELISM": "8", "STRATUM_MAX_ATTEMPTS": "2", "STRATUM_BACKOFF_BASE": "0.1"}
    settings = EngineSettings.from_env(environ=environ, parallelism=2, state_path=None)
    assert settings.parallelism == 2
    assert settings.max_attempts == 2
    assert settings.retry_policy() == RetryPolicy(max_attempts=2, base_delay=0.1, multiplier=2.0, max_delay=30.0)


@pytest.mark.unit
def test_invalid_settings_are_configuration_errors():
    with pytest.raises(ConfigurationError):
        EngineSettings.from_env(environ={"STRATUM_PARALLELISM": "0"})
    with pytest.raises(ConfigurationError):
        EngineSettings.from_env(environ={"STRATUM_BACKOFF_MULTIPLIER": "abc"})


@pytest.mark.unit
def test_variable_values_and_precedence():
    assert parse_var_value("3") == 3
    assert parse_var_value('["a"]') == ["a"]
    assert parse_var_value("img-1") == "img-1"
    assert parse_var_options(["a=1", "b=x=y"]) == {"a": 1, "b": "x=y"}
    with pytest.raises(ConfigurationError):
        parse_var_options(["novalue"])

    environ = {"STRATUM_VAR_image": "img-env", "STRATUM_VAR_size": "2", "OTHER": "1"}
    assert resolve_variables(["image=img-cli"], environ) == {"image": "img-cli", "size": 2}
