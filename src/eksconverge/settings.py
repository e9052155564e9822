from __future__ import annotations

import dataclasses
import os
import typing

import eksconverge.paths
import eksconverge.retry

ENV_PREFIX = "EKSCONVERGE_"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclasses.dataclass(frozen=True)
class Settings:
    """Runtime knobs shared by every component; read-only once built."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    poll_interval: float = 10.0
    cluster_timeout: float = 1800.0
    capacity_timeout: float = 900.0
    rollout_timeout: float = 300.0
    controller_timeout: float = 600.0
    controller_healthy_polls: int = 3
    ingress_timeout: float = 600.0
    helm_timeout: float = 600.0
    helm_binary: str = "helm"
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    log_level: str = "INFO"
    paths: eksconverge.paths.Paths = dataclasses.field(default_factory=eksconverge.paths.Paths, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            msg = f"max_attempts must be at least 1, got {self.max_attempts}"
            raise ValueError(msg)
        if self.controller_healthy_polls < 1:
            msg = f"controller_healthy_polls must be at least 1, got {self.controller_healthy_polls}"
            raise ValueError(msg)
        for name in (
            "base_delay",
            "max_delay",
            "poll_interval",
            "cluster_timeout",
            "capacity_timeout",
            "rollout_timeout",
            "controller_timeout",
            "ingress_timeout",
            "helm_timeout",
            "connect_timeout",
            "read_timeout",
        ):
            if getattr(self, name) < 0:
                msg = f"{name} must not be negative"
                raise ValueError(msg)
        if self.log_level.upper() not in LOG_LEVELS:
            msg = f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}"
            raise ValueError(msg)

    @property
    def retry_policy(self) -> eksconverge.retry.RetryPolicy:
        return eksconverge.retry.RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )

    @classmethod
    def from_env(cls, environ: typing.Mapping[str, str] | None = None, **overrides: typing.Any) -> Settings:
        """Build settings from EKSCONVERGE_* variables, then apply non-None overrides.

        EKSCONVERGE_MAX_ATTEMPTS=8 sets `max_attempts`, and so on for every field.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, typing.Any] = {}

        for field in dataclasses.fields(cls):
            if field.name == "paths":
                continue
            raw = environ.get(f"{ENV_PREFIX}{field.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            values[field.name] = _coerce(field.name, field.type, raw.strip())

        values |= {k: v for k, v in overrides.items() if v is not None}
        return cls(**values)


def _coerce(name: str, type_name: typing.Any, raw: str) -> typing.Any:
    # field types are strings under `from __future__ import annotations`
    try:
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
    except ValueError as e:
        msg = f"{ENV_PREFIX}{name.upper()}={raw!r} is not a valid {type_name}"
        raise ValueError(msg) from e

    return raw
