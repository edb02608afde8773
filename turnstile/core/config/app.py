"""
Application-specific settings.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class AppSettings(BaseSettings):
    """
    Defines process-wide settings like project name, environment and logging.

    Performance Note:
        - LOG_JSON should stay enabled in production; the console renderer is
          slower and meant for development.
    """
    PROJECT_NAME: str = "turnstile"
    VERSION: str = "0.1.0"
    APP_ENV: str = "development"
    DEBUG: bool = False

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        """
        Upper-cases the level and rejects names the logging module does not know.

        Args:
            value: Level name from the environment.

        Returns:
            Upper-cased level name.
        """
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level: {value}")
        return level
