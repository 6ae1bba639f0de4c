"""Configuration for the periodic escalation sweep."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class SweepSettings(BaseSettings):
    """Sweep settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    # Scheduling
    SWEEP_INTERVAL_SECONDS: float = 300.0
    SWEEP_MAX_CONCURRENCY: int = 10

    # Comma-separated user ids notified at MANAGER level
    ESCALATION_MANAGER_IDS: str = ''

    # Notification delivery
    NOTIFICATION_WEBHOOK_URL: str = ''
    NOTIFICATION_API_KEY: str = ''

    @property
    def manager_ids(self) -> list[str]:
        return [m.strip() for m in self.ESCALATION_MANAGER_IDS.split(',') if m.strip()]


@lru_cache
def get_settings() -> SweepSettings:
    """Cached settings singleton."""
    return SweepSettings()
