"""Configuration loader for the dispatch service with validation."""
import os
from dataclasses import dataclass, field
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_ids(name: str) -> frozenset:
    raw = os.getenv(name, "") or ""
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@dataclass
class Config:
    """
    Dispatch service configuration from environment variables.

    All settings are validated on load to fail fast if misconfigured.
    """

    # Operator tooling auth
    admin_api_token: str

    # Links
    public_base_url: str = "https://example.com"

    # Module behavior
    dispatch_enabled: bool = True
    timezone_name: str = ""  # empty = system local time
    description_limit: int = 200
    default_daily_quota: int = 10
    audit_retention_days: int = 90
    rate_limit_enabled: bool = True
    super_admin_ids: frozenset = field(default_factory=frozenset)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.public_base_url = (self.public_base_url or "").rstrip("/")
        if not self.public_base_url.startswith(("http://", "https://")):
            raise ValueError("PUBLIC_BASE_URL must start with http:// or https://")

        if self.description_limit < 50 or self.description_limit > 2000:
            raise ValueError("DESCRIPTION_LIMIT must be between 50 and 2000")

        if self.default_daily_quota < 0:
            raise ValueError("DEFAULT_DAILY_QUOTA must be >= 0")

        if self.audit_retention_days < 1:
            raise ValueError("AUDIT_RETENTION_DAYS must be at least 1")

        if self.timezone_name:
            try:
                ZoneInfo(self.timezone_name)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"Unknown DISPATCH_TIMEZONE: {self.timezone_name}") from e

    @classmethod
    def from_env(cls) -> "Config":
        """
        Load configuration from environment variables.

        Raises:
            RuntimeError: If required environment variables are missing
            ValueError: If configuration values are invalid
        """
        admin_api_token = (os.getenv("ADMIN_API_TOKEN") or "").strip()
        if not admin_api_token:
            raise RuntimeError("ADMIN_API_TOKEN environment variable is required")

        return cls(
            admin_api_token=admin_api_token,
            public_base_url=os.getenv("PUBLIC_BASE_URL", "https://example.com"),
            dispatch_enabled=_env_bool("DISPATCH_MODULE_ENABLED", "true"),
            timezone_name=os.getenv("DISPATCH_TIMEZONE", ""),
            description_limit=int(os.getenv("DESCRIPTION_LIMIT", "200")),
            default_daily_quota=int(os.getenv("DEFAULT_DAILY_QUOTA", "10")),
            audit_retention_days=int(os.getenv("AUDIT_RETENTION_DAYS", "90")),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", "true"),
            super_admin_ids=_env_ids("SUPER_ADMIN_IDS"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
        )

    @property
    def catalog_url(self) -> str:
        """Landing page linked at the bottom of digests."""
        return self.public_base_url
