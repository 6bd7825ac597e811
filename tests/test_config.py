from __future__ import annotations

import pytest

from execution_authority.config import DEV_HMAC_SECRET, Settings, strict_startup_required


def test_settings_defaults():
    settings = Settings.from_env({})
    assert settings.app_env == "development"
    assert settings.service_name == "ruvvector-service"
    assert settings.ledger_backend == "memory"
    assert settings.vector_service_url == "http://localhost:6379"
    assert settings.vector_timeout_ms == 30000
    assert settings.breaker_threshold == 5
    assert settings.breaker_timeout_ms == 30000
    assert settings.breaker_reset_ms == 60000
    assert settings.max_latency_ms == 2000
    assert settings.hmac_secret == DEV_HMAC_SECRET
    assert settings.hmac_secret_configured is False
    assert settings.is_production is False
    assert settings.strict_startup is False


def test_settings_read_environment_values():
    settings = Settings.from_env(
        {
            "APP_ENV": "Production",
            "LOG_LEVEL": "debug",
            "EXECUTION_HMAC_SECRET": "  configured-secret  ",
            "LEDGER_BACKEND": "SQLITE",
            "RUVVECTOR_HOST": "vectors.internal",
            "RUVVECTOR_PORT": "8080",
            "RUVVECTOR_TIMEOUT": "250",
        }
    )
    assert settings.is_production is True
    assert settings.strict_startup is True
    assert settings.log_level == "DEBUG"
    assert settings.hmac_secret == "configured-secret"
    assert settings.hmac_secret_configured is True
    assert settings.ledger_backend == "sqlite"
    assert settings.vector_service_url == "http://vectors.internal:8080"
    assert settings.vector_timeout_s == 0.25


def test_explicit_service_url_wins_over_host_and_port():
    settings = Settings.from_env({"RUVVECTOR_SERVICE_URL": "https://vec.example/", "RUVVECTOR_HOST": "ignored"})
    assert settings.vector_service_url == "https://vec.example"


def test_invalid_integer_names_the_variable():
    with pytest.raises(ValueError, match="CIRCUIT_BREAKER_THRESHOLD"):
        Settings.from_env({"CIRCUIT_BREAKER_THRESHOLD": "five"})


@pytest.mark.parametrize(
    ("env", "expected"),
    [
        ({}, False),
        ({"APP_ENV": "production"}, True),
        ({"APP_ENV": "staging", "EXECUTION_STRICT_STARTUP": "yes"}, True),
        ({"EXECUTION_STRICT_STARTUP": "0"}, False),
    ],
)
def test_strict_startup_required(env, expected):
    assert strict_startup_required(env) is expected
