from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from mqtt_history.common import env_float, env_int, env_str

DEFAULT_PAGE_SIZE = 100
DEFAULT_RETENTION_INTERVAL_SECONDS = 300


@dataclass(frozen=True, slots=True)
class Settings:
    db_path: str | None = None
    log_level: str = "WARNING"
    retention_max_age_days: int = 0
    retention_max_messages: int = 0
    retention_interval_seconds: int = DEFAULT_RETENTION_INTERVAL_SECONDS
    # Whether a new broker connection also wipes stored history. The topic tree
    # is always reset on a new connection; history is kept unless this is set.
    clear_history_on_connect: bool = False
    page_size: int = DEFAULT_PAGE_SIZE
    search_timeout_seconds: float = 10.0

    @property
    def retention_enabled(self) -> bool:
        return self.retention_max_age_days > 0 or self.retention_max_messages > 0

    def with_overrides(self, **overrides: Any) -> Settings:
        """Copy with the given fields replaced; ``None`` values are ignored."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def load_settings() -> Settings:
    """Read settings from ``MQTT_HISTORY_*`` environment variables."""
    db_path = env_str("MQTT_HISTORY_DB", default="")
    return Settings(
        db_path=db_path or None,
        log_level=env_str("MQTT_HISTORY_LOG_LEVEL", default="WARNING").upper(),
        retention_max_age_days=env_int("MQTT_HISTORY_RETENTION_MAX_AGE_DAYS", default=0, min_value=0),
        retention_max_messages=env_int(
            "MQTT_HISTORY_RETENTION_MAX_MESSAGES", default=0, min_value=0
        ),
        retention_interval_seconds=env_int(
            "MQTT_HISTORY_RETENTION_INTERVAL_SECONDS",
            default=DEFAULT_RETENTION_INTERVAL_SECONDS,
            min_value=1,
        ),
        clear_history_on_connect=env_int(
            "MQTT_HISTORY_CLEAR_HISTORY_ON_CONNECT", default=0, min_value=0
        )
        != 0,
        page_size=env_int("MQTT_HISTORY_PAGE_SIZE", default=DEFAULT_PAGE_SIZE, min_value=1),
        search_timeout_seconds=env_float(
            "MQTT_HISTORY_SEARCH_TIMEOUT_SECONDS", default=10.0, min_value=0.0
        ),
    )
