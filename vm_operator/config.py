"""Configuration for the VictoriaMetrics cluster operator."""

import re
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: object) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers and Go-style duration strings such as "20s", "1m30s"
    or "500ms".

    Args:
        value: Raw setting value

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the value is not a valid duration
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_RE.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"invalid duration: {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


class Settings(BaseSettings):
    """Operator settings."""

    model_config = SettingsConfigDict(
        env_prefix="VM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Settings
    service_name: str = "vm-operator"
    version: str = "0.1.0"
    log_level: str = "INFO"

    # Kubernetes Settings
    kubeconfig_path: Optional[str] = None
    kube_context: Optional[str] = None
    watch_namespace: str = Field(
        default="",
        description="Namespace to watch, empty for all namespaces",
    )

    # Reconcile Settings
    workers: int = 4
    reconcile_timeout: float = 60.0
    conflict_requeue: float = 1.0
    error_backoff_base: float = 5.0
    error_backoff_max: float = 300.0

    # Rollout Settings
    app_ready_timeout: float = Field(
        default=80.0,
        description="Time a component may stay expanding before it is reported failed",
    )
    pod_wait_ready_timeout: float = Field(
        default=0.0,
        description="Readiness polling budget per component within one pass, 0 to only requeue",
    )
    pod_wait_ready_interval_check: float = 5.0

    @field_validator(
        "reconcile_timeout",
        "conflict_requeue",
        "error_backoff_base",
        "error_backoff_max",
        "app_ready_timeout",
        "pod_wait_ready_timeout",
        "pod_wait_ready_interval_check",
        mode="before",
    )
    @classmethod
    def _duration(cls, value: object) -> float:
        return parse_duration(value)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
