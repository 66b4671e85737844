from dotenv import load_dotenv
from dataclasses import dataclass, field
from typing import Optional
import os

from seo_audit.constants import (
    DEFAULT_AUDITS_DIR,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT_MS,
    DEFAULT_RETRY_BASE_DELAY_MS,
    DEFAULT_USER_AGENT,
)

load_dotenv()  # Loads variables from .env file


class Settings:
    """
    Manages application settings loaded from environment variables.
    """
    AUDITS_DIR = os.getenv("AUDITS_DIR", DEFAULT_AUDITS_DIR)
    USER_AGENT = os.getenv("USER_AGENT", DEFAULT_USER_AGENT)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default  # Keep default if conversion fails


@dataclass
class CrawlConfig:
    """Runtime configuration for a crawl."""
    concurrency: int = DEFAULT_CONCURRENCY
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    user_agent: str = DEFAULT_USER_AGENT
    respect_crawl_delay: bool = True
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS
    audits_dir: str = field(default=DEFAULT_AUDITS_DIR)

    def __post_init__(self):
        self.concurrency = max(1, self.concurrency)
        self.max_retries = max(0, self.max_retries)

    @property
    def timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000

    @classmethod
    def from_env(cls) -> "CrawlConfig":
        """Load configuration from environment variables.

        Read at call time rather than import time so tests can control the
        environment before invoking.

        Returns:
            CrawlConfig: Configuration instance with values from environment
        """
        return cls(
            concurrency=_env_int("CONCURRENCY", DEFAULT_CONCURRENCY),
            request_timeout_ms=_env_int("REQUEST_TIMEOUT_MS", DEFAULT_REQUEST_TIMEOUT_MS),
            user_agent=os.getenv("USER_AGENT", DEFAULT_USER_AGENT),
            respect_crawl_delay=os.getenv("RESPECT_CRAWL_DELAY", "true").lower() != "false",
            max_retries=_env_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_base_delay_ms=_env_int("RETRY_BASE_DELAY_MS", DEFAULT_RETRY_BASE_DELAY_MS),
            audits_dir=os.getenv("AUDITS_DIR", DEFAULT_AUDITS_DIR),
        )

    def to_dict(self) -> dict:
        """Convert config to a dictionary for logging."""
        return {
            field_name: getattr(self, field_name)
            for field_name in self.__dataclass_fields__
        }


def load_config(overrides: Optional[dict] = None) -> CrawlConfig:
    """Build a CrawlConfig from the environment, applying explicit overrides.

    Args:
        overrides: Field values that take precedence over the environment

    Returns:
        CrawlConfig instance
    """
    config = CrawlConfig.from_env()
    for key, value in (overrides or {}).items():
        if key in config.__dataclass_fields__ and value is not None:
            setattr(config, key, value)
    config.__post_init__()
    return config
