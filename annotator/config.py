"""
Application Configuration

Settings for the annotation backend and engine, read through pydantic-settings.
Defaults suit local development; each field can be overridden with an
``ANNOTATOR_<FIELD>`` environment variable (e.g. ``ANNOTATOR_DB_PATH``).
Tests construct ``Settings(...)`` directly for isolation.
"""

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Runtime settings"""

    model_config = SettingsConfigDict(env_prefix="ANNOTATOR_", extra="ignore")

    db_path: str = "data/annotations.db"
    api_base_url: str = "http://localhost:8000"
    http_timeout: float = 10.0
    log_level: str = "INFO"

    # Selection toolbar
    selection_clear_delay: float = 0.5  # seconds the selection stays visible after highlighting
    toolbar_width: int = 200
    toolbar_height: int = 44
    toolbar_gap: int = 50


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return a cached Settings instance.

    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    settings = Settings()
    logger.info(f"Settings loaded (db_path={settings.db_path})")
    return settings
