"""
Configuration management for the Deal Workflow engine.

Loads settings from environment variables with sensible defaults.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / '.env'
if _env_file.exists():
    load_dotenv(_env_file)


def _parse_thresholds(raw: str) -> dict[str, float]:
    """Parse 'field=0.03,other=0.1' into a mapping; blank entries are skipped."""
    thresholds: dict[str, float] = {}
    for part in raw.split(','):
        part = part.strip()
        if not part or '=' not in part:
            continue
        name, value = part.split('=', 1)
        thresholds[name.strip()] = float(value)
    return thresholds


class Config:
    """Configuration settings loaded from environment."""

    # Claim conflict detection
    CLAIM_VARIANCE_THRESHOLD: float = float(os.getenv('CLAIM_VARIANCE_THRESHOLD', '0.05'))
    CLAIM_FIELD_THRESHOLDS: dict[str, float] = _parse_thresholds(
        os.getenv('CLAIM_FIELD_THRESHOLDS', 'noi=0.03,capRate=0.02,occupancy=0.02')
    )

    # OM generation
    OM_GENERATION_TIMEOUT_SECONDS: float = float(
        os.getenv('OM_GENERATION_TIMEOUT_SECONDS', '60')
    )

    # OpenAI (content generation collaborator)
    OPENAI_API_KEY: str = os.getenv('OPENAI_API_KEY', '')
    OPENAI_CHAT_MODEL: str = os.getenv('OPENAI_CHAT_MODEL', 'gpt-4.1-mini')

    # Notification sink
    NOTIFICATION_WEBHOOK_URL: str = os.getenv('NOTIFICATION_WEBHOOK_URL', '')
    NOTIFICATION_API_KEY: str = os.getenv('NOTIFICATION_API_KEY', '')
    NOTIFICATION_TIMEOUT_SECONDS: float = float(os.getenv('NOTIFICATION_TIMEOUT_SECONDS', '10'))

    LOG_LEVEL: str = os.getenv('LOG_LEVEL', 'INFO')
    LOG_JSON: bool = os.getenv('LOG_JSON', 'false').lower() in ('1', 'true', 'yes')

    @classmethod
    def variance_threshold_for(cls, field_name: str) -> float:
        """Variance threshold (fraction) above which two claims for a field conflict."""
        return cls.CLAIM_FIELD_THRESHOLDS.get(field_name, cls.CLAIM_VARIANCE_THRESHOLD)


# Singleton config instance
config = Config()
