from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class Settings(BaseSettings):
    # General settings
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Relation cache settings
    RELATIONS_CACHE_MAX_ENTRIES: int = 5000  # LRU bound across all views
    RELATION_INDEX_MAX_SIZE: int = (
        10_000  # Tracked event_id -> relation pairs for redaction lookups
    )
    ENABLE_INCREMENTAL_REACTIONS: bool = (
        True  # Patch cached reaction aggregates instead of recomputing
    )

    # View defaults
    THREAD_SUMMARY_MAX_REPLIES: int = 10  # Recent replies shown per thread summary
    TOP_REACTIONS_LIMIT: int = 10  # Emoji returned by get_top_reactions

    # Matrix (nio) adapter settings
    MATRIX_HOMESERVER_URL: str = ""  # e.g., "https://matrix.org"
    MATRIX_USER: str = ""  # e.g., "@alice:matrix.org"
    MATRIX_ROOMS: str | list[str] = ""  # Rooms to track (comma-separated or list)
    MATRIX_TIMELINE_MAX_EVENTS: int = 2000  # Live timeline window kept per room

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize LOG_LEVEL to an upper-case stdlib level name.

        Raises:
            ValueError: If the level is not a known logging level
        """
        v = v.strip().upper()
        if v not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid LOG_LEVEL: {v}. Expected one of: {', '.join(_LOG_LEVELS)}"
            )
        return v

    @field_validator(
        "RELATIONS_CACHE_MAX_ENTRIES",
        "RELATION_INDEX_MAX_SIZE",
        "THREAD_SUMMARY_MAX_REPLIES",
        "TOP_REACTIONS_LIMIT",
        "MATRIX_TIMELINE_MAX_EVENTS",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("MATRIX_HOMESERVER_URL")
    @classmethod
    def validate_homeserver_url(cls, v: str) -> str:
        """Strip whitespace and trailing slashes from the homeserver URL."""
        v = v.strip()
        if v and "://" not in v:
            v = "https://" + v
        return v.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide Settings, reading the environment on first use.

    Returns:
        Settings: Engine and Matrix adapter settings
    """
    return Settings()


def reset_settings() -> None:
    """Drop the cached Settings so the next get_settings() re-reads the environment."""
    get_settings.cache_clear()
