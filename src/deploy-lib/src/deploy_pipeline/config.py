"""
deploy_pipeline.config — Worker configuration read from the Lambda environment.

Settings are loaded once per container and cached. Any problem is raised as
ConfigurationError so the function fails at cold start instead of per event.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from deploy_pipeline.exceptions import ConfigurationError
from deploy_pipeline.models import (
    DEFAULT_MANIFEST_KEY,
    MAX_INVALIDATION_PATHS,
    MAX_RECEIVE_BATCH,
    VISIBILITY_TIMEOUT_MULTIPLE,
    Environment,
)

DEFAULT_REGION = "eu-west-2"
DEFAULT_MAX_RECEIVE_COUNT = 5

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    asset_bucket: str
    expiry_grace_days: int
    distribution_id: str
    topic_arn: str | None
    queue_url: str | None
    environment: Environment = Environment.DEV
    region: str = DEFAULT_REGION
    manifest_key: str = DEFAULT_MANIFEST_KEY
    cache_control: str | None = None
    max_batch_size: int = MAX_RECEIVE_BATCH
    max_paths_per_invalidation: int = MAX_INVALIDATION_PATHS
    dead_letter_queue_url: str | None = None
    max_receive_count: int = DEFAULT_MAX_RECEIVE_COUNT
    conditional_manifest_writes: bool = False

    @property
    def expiry_enabled(self) -> bool:
        return self.expiry_grace_days >= 0

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def log_level(self) -> str:
        return "INFO" if self.is_production else "DEBUG"

    @property
    def reserved_prefix(self) -> str:
        """Namespace that bundle content may never write into."""
        head, sep, _ = self.manifest_key.rpartition("/")
        return f"{head}{sep}" if sep else self.manifest_key


def _required(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise ConfigurationError(f"{name} environment variable not set")
    return value


def _optional(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(name, "").strip()
    return value or None


def _int(env: Mapping[str, str], name: str, default: int | None = None) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        if default is None:
            raise ConfigurationError(f"{name} environment variable not set")
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _environment(raw: str | None) -> Environment:
    if not raw:
        return Environment.DEV
    normalized = raw.strip().lower()
    if normalized in {"prod", "production"}:
        return Environment.PRODUCTION
    if normalized in {"stage", "staging"}:
        return Environment.STAGING
    return Environment.DEV


def settings_from_env(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from environment variables, validating every input."""
    env = os.environ if env is None else env

    topic_arn = _optional(env, "INVALIDATION_TOPIC_ARN")
    queue_url = _optional(env, "INVALIDATION_QUEUE_URL")
    if not topic_arn and not queue_url:
        raise ConfigurationError(
            "INVALIDATION_TOPIC_ARN or INVALIDATION_QUEUE_URL environment variable not set"
        )

    max_batch_size = _int(env, "MAX_BATCH_SIZE", MAX_RECEIVE_BATCH)
    if not 1 <= max_batch_size <= MAX_RECEIVE_BATCH:
        raise ConfigurationError(f"MAX_BATCH_SIZE must be between 1 and {MAX_RECEIVE_BATCH}")

    max_paths = _int(env, "MAX_PATHS_PER_INVALIDATION", MAX_INVALIDATION_PATHS)
    if not 1 <= max_paths <= MAX_INVALIDATION_PATHS:
        raise ConfigurationError(
            f"MAX_PATHS_PER_INVALIDATION must be between 1 and {MAX_INVALIDATION_PATHS}"
        )

    max_receive_count = _int(env, "MAX_RECEIVE_COUNT", DEFAULT_MAX_RECEIVE_COUNT)
    if max_receive_count < 1:
        raise ConfigurationError("MAX_RECEIVE_COUNT must be at least 1")

    worker_timeout = _int(env, "WORKER_TIMEOUT_SECONDS", 0)
    visibility_timeout = _int(env, "VISIBILITY_TIMEOUT_SECONDS", 0)
    if worker_timeout and visibility_timeout:
        if visibility_timeout < VISIBILITY_TIMEOUT_MULTIPLE * worker_timeout:
            raise ConfigurationError(
                f"VISIBILITY_TIMEOUT_SECONDS ({visibility_timeout}) must be at least "
                f"{VISIBILITY_TIMEOUT_MULTIPLE}x WORKER_TIMEOUT_SECONDS ({worker_timeout})"
            )

    manifest_key = _optional(env, "MANIFEST_KEY") or DEFAULT_MANIFEST_KEY
    if manifest_key.startswith("/"):
        raise ConfigurationError("MANIFEST_KEY must be a relative object key")

    return Settings(
        asset_bucket=_required(env, "ASSET_BUCKET"),
        expiry_grace_days=_int(env, "EXPIRY_GRACE_DAYS"),
        distribution_id=_required(env, "DISTRIBUTION_ID"),
        topic_arn=topic_arn,
        queue_url=queue_url,
        environment=_environment(_optional(env, "ENVIRONMENT")),
        region=_optional(env, "AWS_REGION") or DEFAULT_REGION,
        manifest_key=manifest_key,
        cache_control=_optional(env, "CACHE_CONTROL"),
        max_batch_size=max_batch_size,
        max_paths_per_invalidation=max_paths,
        dead_letter_queue_url=_optional(env, "DEAD_LETTER_QUEUE_URL"),
        max_receive_count=max_receive_count,
        conditional_manifest_writes=(
            env.get("MANIFEST_CONDITIONAL_WRITES", "").strip().lower() in _TRUTHY
        ),
    )


_settings: Settings | None = None


def load_settings() -> Settings:
    """Return the cached Settings, reading the environment on first use."""
    global _settings
    if _settings is None:
        _settings = settings_from_env()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
