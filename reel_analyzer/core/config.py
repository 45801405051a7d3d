"""Configuration Manager for Reel Analyzer.

Centralized configuration loading from environment variables with sensible defaults.
All configuration is validated at load time to fail fast on invalid values.
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from reel_analyzer.core.exceptions import ConfigurationError

DEFAULT_CONTENT_API_URL = "http://localhost:8080/api/update-content"
DEFAULT_CONTENT_STATUS_URL = "http://localhost:8080/api/update-content-status"


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    Optional (with defaults):
        gemini_api_key: API key for Google Gemini. Only needed for analysis.
        webhook_token: Bearer token required on POST endpoints when set.
        content_api_url: Callback receiving analysis text.
        content_status_url: Callback receiving failure status updates.
        temp_dir: Directory for downloaded media.
        navigation_timeout: Seconds to wait for a page to reach network idle.
        download_timeout: Seconds allowed for a single media download.
        analysis_timeout: Seconds allowed for a single Gemini call.
        notify_timeout: Seconds allowed for a callback request.
        analysis_cache_ttl: Seconds an analysis result stays cached.
        cache_max_entries: LRU bound for the result cache (0 = unbounded).
        max_pages: Maximum number of concurrently open browser pages.
        headless: Run Chromium without a visible window.
        gemini_model: Gemini model name.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        port: Port for the HTTP server.
    """

    gemini_api_key: str = ""
    webhook_token: str | None = None
    content_api_url: str = DEFAULT_CONTENT_API_URL
    content_status_url: str = DEFAULT_CONTENT_STATUS_URL
    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    navigation_timeout: float = 30.0
    download_timeout: float = 60.0
    analysis_timeout: float = 300.0
    notify_timeout: float = 5.0
    analysis_cache_ttl: float = 7200.0
    cache_max_entries: int = 0
    max_pages: int = 5
    headless: bool = True
    gemini_model: str = "gemini-2.0-flash-001"
    log_level: str = "INFO"
    port: int = 3000

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if isinstance(self.temp_dir, str):
            self.temp_dir = Path(self.temp_dir)

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL '{self.log_level}'. "
                f"Must be one of: {', '.join(sorted(valid_log_levels))}"
            )
        self.log_level = self.log_level.upper()

        for name in (
            "navigation_timeout",
            "download_timeout",
            "analysis_timeout",
            "notify_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

        if self.analysis_cache_ttl < 0:
            raise ConfigurationError("REEL_ANALYSIS_CACHE_TTL must be non-negative")
        if self.cache_max_entries < 0:
            raise ConfigurationError("REEL_CACHE_MAX_ENTRIES must be non-negative")
        if self.max_pages < 1:
            raise ConfigurationError("REEL_MAX_PAGES must be at least 1")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"PORT must be between 1 and 65535, got {self.port}")

    @property
    def analysis_enabled(self) -> bool:
        """Whether a Gemini API key is configured."""
        return bool(self.gemini_api_key)


def load_config() -> Config:
    """Load configuration from environment variables.

    Returns:
        Config object with all settings loaded.

    Raises:
        ConfigurationError: If values are invalid.
    """

    def get_float(key: str, default: float) -> float:
        """Parse float from env var with default."""
        value = os.environ.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise ConfigurationError(f"{key} must be a valid number, got '{value}'")

    def get_int(key: str, default: int) -> int:
        """Parse int from env var with default."""
        value = os.environ.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"{key} must be a valid integer, got '{value}'")

    def get_bool(key: str, default: bool) -> bool:
        value = os.environ.get(key)
        if value is None:
            return default
        return value.strip().lower() not in {"0", "false", "no", "off"}

    return Config(
        gemini_api_key=os.environ.get("GOOGLE_GEMINI_API_KEY", ""),
        webhook_token=os.environ.get("REEL_ANALYZER_TOKEN") or None,
        content_api_url=os.environ.get("CONTENT_API_URL", DEFAULT_CONTENT_API_URL),
        content_status_url=os.environ.get(
            "CONTENT_STATUS_URL", DEFAULT_CONTENT_STATUS_URL
        ),
        temp_dir=Path(os.environ.get("REEL_TEMP_DIR", tempfile.gettempdir())),
        navigation_timeout=get_float("REEL_NAVIGATION_TIMEOUT", 30.0),
        download_timeout=get_float("REEL_DOWNLOAD_TIMEOUT", 60.0),
        analysis_timeout=get_float("REEL_ANALYSIS_TIMEOUT", 300.0),
        notify_timeout=get_float("REEL_NOTIFY_TIMEOUT", 5.0),
        analysis_cache_ttl=get_float("REEL_ANALYSIS_CACHE_TTL", 7200.0),
        cache_max_entries=get_int("REEL_CACHE_MAX_ENTRIES", 0),
        max_pages=get_int("REEL_MAX_PAGES", 5),
        headless=get_bool("REEL_HEADLESS", True),
        gemini_model=os.environ.get("GEMINI_MODEL", "gemini-2.0-flash-001"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        port=get_int("PORT", 3000),
    )


# Singleton instance for convenience
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call and caches it for subsequent calls.
    Use reset_config() to force a reload.

    Returns:
        The global Config instance.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset the global configuration instance.

    Forces the next get_config() call to reload from environment variables.
    Useful for testing.
    """
    global _config
    _config = None
