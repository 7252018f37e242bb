"""Settings for hatimer.

Every process that shares a queue must agree on ``queue_name`` and
``queue_split_count`` or removal and polling will look at different keys.
``TimerSettings`` reads them from ``HATIMER_*`` environment variables (or a
``.env`` file) so all instances of one deployment are configured the same way.

Examples:
    >>> settings = TimerSettings(queue_name="billing", queue_split_count=8)
    >>> settings.idle_poll_interval_ms
    1000

    HATIMER_QUEUE_NAME=billing HATIMER_QUEUE_SPLIT_COUNT=8 hatimer pending

Tags:
    settings, configuration, pydantic, environment, hatimer
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class UndeliverablePolicy(str, Enum):
    """What to do with a pulled event whose type has no registered handler."""

    DROP = "drop"
    REQUEUE = "requeue"
    DEAD_LETTER = "dead_letter"


class TimerSettings(BaseSettings):
    """Configuration for one HATimer instance.

    Fields
    ──────
    redis_url              : Connection URL used by the CLI client factory
    queue_name             : Key namespace shared by all instances of the queue
    queue_split_count      : Number of due-marker shards (≥ 1)
    pull_count_per_cycle   : Max ids pulled from one shard per poll cycle
    idle_poll_interval_ms  : Wait between poll cycles
    undeliverable_policy   : drop | requeue | dead_letter
    log_level / json_logs  : Passed to ``configure_logging``
    """

    model_config = SettingsConfigDict(
        env_prefix="HATIMER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────────────
    redis_url: str = "redis://localhost:6379/0"

    # ── Queue layout ─────────────────────────────────────────────
    queue_name: str = Field(default="hatimer", min_length=1)
    queue_split_count: int = Field(default=1, ge=1)

    # ── Polling ──────────────────────────────────────────────────
    pull_count_per_cycle: int = Field(default=64, ge=1)
    idle_poll_interval_ms: int = Field(default=1000, ge=0)
    undeliverable_policy: UndeliverablePolicy = UndeliverablePolicy.DROP

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None


@lru_cache
def get_settings() -> TimerSettings:
    """Return process-wide settings loaded from the environment."""
    return TimerSettings()
