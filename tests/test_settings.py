import pytest

import eksconverge.settings
from eksconverge.settings import Settings


def test_defaults() -> None:
    settings = Settings.from_env({})

    assert settings == Settings()
    assert settings.retry_policy.max_attempts == 5
    assert settings.controller_healthy_polls == 3


def test_from_env() -> None:
    settings = Settings.from_env(
        {
            "EKSCONVERGE_MAX_ATTEMPTS": "8",
            "EKSCONVERGE_POLL_INTERVAL": "2.5",
            "EKSCONVERGE_HELM_BINARY": "/usr/local/bin/helm",
            "EKSCONVERGE_CLUSTER_TIMEOUT": " ",
        }
    )

    assert settings.max_attempts == 8
    assert settings.poll_interval == 2.5
    assert settings.helm_binary == "/usr/local/bin/helm"
    assert settings.cluster_timeout == Settings().cluster_timeout


def test_overrides_win_over_environment() -> None:
    settings = Settings.from_env({"EKSCONVERGE_MAX_ATTEMPTS": "8"}, max_attempts=2, poll_interval=None)

    assert settings.max_attempts == 2
    assert settings.poll_interval == Settings().poll_interval


@pytest.mark.parametrize(
    ("environ", "match"),
    [
        ({"EKSCONVERGE_MAX_ATTEMPTS": "lots"}, "is not a valid int"),
        ({"EKSCONVERGE_MAX_ATTEMPTS": "0"}, "max_attempts must be at least 1"),
        ({"EKSCONVERGE_CONTROLLER_HEALTHY_POLLS": "0"}, "controller_healthy_polls"),
        ({"EKSCONVERGE_ROLLOUT_TIMEOUT": "-1"}, "rollout_timeout must not be negative"),
        ({"EKSCONVERGE_BASE_DELAY": "-0.5"}, "base_delay must not be negative"),
        ({"EKSCONVERGE_INGRESS_TIMEOUT": "-1"}, "ingress_timeout must not be negative"),
        ({"EKSCONVERGE_HELM_TIMEOUT": "-1"}, "helm_timeout must not be negative"),
        ({"EKSCONVERGE_LOG_LEVEL": "chatty"}, "log_level must be one of"),
    ],
)
def test_invalid_values(environ, match) -> None:
    with pytest.raises(ValueError, match=match):
        Settings.from_env(environ)


def test_log_level_is_case_insensitive() -> None:
    assert Settings.from_env({"EKSCONVERGE_LOG_LEVEL": "debug"}).log_level == "debug"


def test_settings_are_frozen() -> None:
    with pytest.raises(AttributeError):
        Settings().max_attempts = 2  # type: ignore[misc]


def test_env_prefix() -> None:
    assert eksconverge.settings.ENV_PREFIX == "EKSCONVERGE_"
