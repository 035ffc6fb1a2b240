"""Configuration management with pydantic-settings for commit-mirror.

- Automatic .env file loading with environment variables taking precedence
- SecretStr for credentials (GitHub token, Notion key, webhook secret)
- Bounded numeric fields for every delay, batch size and timeout
- Frozen config (immutable after load)

Required credentials are checked by ``require_backfill()``,
``require_store()`` and ``require_server()`` at startup rather than at load time, so tests and
tooling can build a config without a full credential set.
"""

import logging
from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = logging.getLogger("commit_mirror.config")

__all__ = [
    "DEFAULT_LEGACY_TIMEZONE",
    "MONTHS_MAX",
    "MONTHS_MIN",
    "MirrorConfig",
    "get_config",
    "reset_config",
]

# Fixed-window backfill bounds (months)
MONTHS_MIN = 1
MONTHS_MAX = 72

# Zone older versions used for date-only Date values
DEFAULT_LEGACY_TIMEZONE = "America/New_York"


class MirrorConfig(BaseSettings):
    """Configuration for commit-mirror.

    Loads from (in order of precedence):
    1. Environment variables (highest priority)
    2. .env file in the working directory
    3. Default values (lowest priority)

    Attributes:
        github_token: GitHub token used for backfill and repository listing
        github_owner: Default owner whose repositories are backfilled
        github_repos: Comma-separated owner/name list overriding discovery
        notion_api_key: Notion integration token
        notion_database_id: Target Notion database holding commit rows
        webhook_secret: Shared secret for X-Hub-Signature-256 verification
        commit_api_key: API key guarding POST /api/commits (disabled if empty)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        validate_default=True,
        frozen=True,
        extra="ignore",
    )

    # --- Credentials ---

    github_token: SecretStr = Field(
        default=SecretStr(""),
        description="GitHub token (repo read scope)",
    )
    github_owner: str = Field(
        default="",
        description="Owner (user or org) whose repositories are backfilled",
    )
    github_repos: str = Field(
        default="",
        description="Comma-separated owner/name list; empty means discover from owner",
    )
    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL",
    )
    notion_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Notion integration token",
    )
    notion_database_id: str = Field(
        default="",
        description="Notion database that stores one row per commit",
    )
    notion_api_url: str = Field(
        default="https://api.notion.com/v1",
        description="Notion REST API base URL",
    )
    webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret for push event signatures",
    )
    commit_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="API key for POST /api/commits; endpoint disabled when empty",
    )

    # --- Record mapping ---

    project_name_style: Literal["name", "full_name"] = Field(
        default="name",
        description="Store 'widgets' (name) or 'acme/widgets' (full_name) as project",
    )
    message_max_length: int = Field(
        default=2000,
        ge=10,
        le=2000,
        description="Stored message limit; Notion rich text caps content at 2000",
    )

    # --- Dedup cache ---

    dedup_cache_ttl_seconds: int = Field(
        default=1800,
        ge=0,
        le=86400,
        description="Age after which a repository's known state is re-fetched",
    )
    dedup_cache_max_repos: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Repositories kept in the dedup cache before oldest-first eviction",
    )
    dedup_scan_max_pages: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Safety page limit for a dedup scan; hitting it marks the state incomplete",
    )
    dedup_scan_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Upper bound for one dedup scan",
    )
    dedup_force_refresh_threshold: int = Field(
        default=100,
        ge=1,
        description="Batches at least this large force a dedup cache refresh",
    )
    identifier_only_large_batches: bool = Field(
        default=False,
        description="Skip the legacy fingerprint scan for large batches when SHA column exists",
    )
    legacy_timezone: str = Field(
        default=DEFAULT_LEGACY_TIMEZONE,
        description="IANA zone of the calendar dates on rows written without a time",
    )
    notion_page_delay_ms: int = Field(
        default=100,
        ge=0,
        le=10000,
        description="Delay between record store query pages",
    )

    # --- Batch writer ---

    write_batch_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Candidates per write sub-batch",
    )
    write_concurrency: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum record store writes in flight",
    )
    write_batch_delay_ms: int = Field(
        default=200,
        ge=0,
        le=10000,
        description="Delay between write sub-batches",
    )
    write_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Timeout for one existence check or record creation",
    )

    # --- Duplicate sweep ---

    dedupe_batch_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Duplicate rows archived per batch",
    )
    dedupe_concurrency: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Archive requests in flight",
    )
    dedupe_batch_delay_ms: int = Field(
        default=100,
        ge=0,
        le=60000,
        description="Delay between archive batches",
    )

    # --- Sync coordinator ---

    repo_concurrency: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Repositories synced concurrently per chunk",
    )
    repo_delay_ms: int = Field(
        default=300,
        ge=0,
        le=60000,
        description="Delay between repository chunks",
    )
    backfill_batch_size: int = Field(
        default=150,
        ge=1,
        le=1000,
        description="Commits handed to the batch writer per slice",
    )
    backfill_batch_delay_ms: int = Field(
        default=100,
        ge=0,
        le=60000,
        description="Delay between writer slices within one repository",
    )
    github_page_delay_ms: int = Field(
        default=50,
        ge=0,
        le=10000,
        description="Delay between commit history pages",
    )
    github_max_pages: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Safety cap on commit history pages per repository",
    )
    overlap_days: int = Field(
        default=1,
        ge=0,
        le=30,
        description="Backward pad applied to the sync cursor in incremental mode",
    )
    fallback_days: int = Field(
        default=7,
        ge=1,
        le=365,
        description="Look-back window when a repository has no stored commits",
    )
    default_months: int = Field(
        default=6,
        ge=MONTHS_MIN,
        le=MONTHS_MAX,
        description="Fixed-window length when none is given",
    )
    rate_limit_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Coordinator-level retries after a source rate limit",
    )
    rate_limit_max_wait_seconds: float = Field(
        default=60.0,
        ge=0,
        le=3600,
        description="Longest wait for a rate limit reset before retrying",
    )

    # --- Event receiver ---

    webhook_timeout_seconds: float = Field(
        default=25.0,
        gt=0,
        le=300,
        description="Hard timeout for the asynchronous write after a push event",
    )

    # --- Metrics ---

    pushgateway_url: str = Field(
        default="localhost:9091",
        description="Prometheus Pushgateway address for backfill metrics",
    )
    pushgateway_enabled: bool = Field(
        default=False,
        description="Push backfill metrics at the end of a run",
    )

    # --- HTTP server ---

    server_host: str = Field(default="0.0.0.0", description="Bind address")
    server_port: int = Field(default=3000, ge=1, le=65535, description="Bind port")

    @field_validator("github_owner", "notion_database_id", mode="before")
    @classmethod
    def strip_value(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("legacy_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        v = v.strip()
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"LEGACY_TIMEZONE '{v}' is not a known IANA zone") from e
        return v

    @property
    def legacy_tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.legacy_timezone)

    @model_validator(mode="after")
    def validate_repositories(self) -> "MirrorConfig":
        """Validate GITHUB_REPOS entries are in owner/name format."""
        for repo in self.repository_list:
            if repo.count("/") != 1 or repo.startswith("/") or repo.endswith("/"):
                raise ValueError(
                    f"GITHUB_REPOS entry '{repo}' must be in owner/name format"
                )
        return self

    @property
    def repository_list(self) -> list[str]:
        """Parsed GITHUB_REPOS value."""
        return [r.strip() for r in self.github_repos.split(",") if r.strip()]

    def _missing(self, names: list[str]) -> list[str]:
        missing = []
        for name in names:
            value = getattr(self, name)
            if isinstance(value, SecretStr):
                value = value.get_secret_value()
            if not value:
                missing.append(name.upper())
        return missing

    def require_backfill(self, need_owner: bool = False) -> None:
        """Fail fast when backfill credentials are incomplete.

        Raises:
            ConfigurationError: listing every missing variable.
        """
        names = ["github_token", "notion_api_key", "notion_database_id"]
        if need_owner:
            names.append("github_owner")
        missing = self._missing(names)
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

    def require_store(self) -> None:
        """Fail fast when the record store credentials are incomplete.

        Raises:
            ConfigurationError: listing every missing variable.
        """
        missing = self._missing(["notion_api_key", "notion_database_id"])
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

    def require_server(self) -> None:
        """Fail fast when webhook server credentials are incomplete.

        Raises:
            ConfigurationError: listing every missing variable.
        """
        missing = self._missing(
            ["webhook_secret", "notion_api_key", "notion_database_id"]
        )
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )
        if not self.commit_api_key.get_secret_value():
            logger.warning("commit_api_disabled", extra={"reason": "no COMMIT_API_KEY"})


@lru_cache(maxsize=1)
def get_config() -> MirrorConfig:
    """Get global configuration singleton.

    First call loads from environment + .env file, subsequent calls return
    the cached instance.

    Raises:
        ValidationError: If configuration values are invalid.
    """
    return MirrorConfig()


def reset_config() -> None:
    """Reset configuration singleton for testing."""
    get_config.cache_clear()
