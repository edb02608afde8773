"""Main settings and configuration management.

Composes the settings from the different modules (app, redis) into a single
`Settings` class, loaded from environment variables and `.env` files.
"""

import os
from pathlib import Path

from pydantic_settings import SettingsConfigDict

from .app import AppSettings
from .redis import RedisSettings


class Settings(AppSettings, RedisSettings):
    """The aggregate settings class.

    Usage:
        - Access settings via the singleton instance `settings`.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )


def create_settings() -> Settings:
    """Create settings using the `.env` file that matches `APP_ENV`.

    Returns:
        Settings: Configured settings instance
    """
    env = os.getenv("APP_ENV", "development")

    env_files = {
        "development": ".env",
        "test": ".env.test",
        "staging": ".env.staging",
        "production": ".env.production",
    }
    env_file = env_files.get(env, ".env")

    if env != "development" and Path(env_file).exists():
        return Settings(_env_file=env_file)
    return Settings()


# Singleton used across the package.
settings = create_settings()
