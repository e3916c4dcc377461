"""Configuration module for noknok.

Implements Pydantic v2 Settings for configuration management with support for:
- Plain environment variables (DB_HOST, PUBLIC_URL, OWNER_DID, ...)
- `<KEY>_FILE` variants for secrets mounted as files (Docker secrets)
- YAML/TOML configuration files
- Command-line argument overrides
- Fail-fast validation at startup

Configuration priority (later overrides earlier):
1. Built-in defaults
2. `.env` file
3. `<KEY>_FILE` variants
4. Environment variables
5. Explicit keyword arguments (config file values, CLI overrides)
"""

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote_plus

from pydantic import Field, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string such as ``24h``, ``1h30m`` or ``90s``.

    Args:
        value: Duration text

    Returns:
        Equivalent timedelta

    Raises:
        ValueError: If the text is not a valid duration
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return timedelta(seconds=seconds)


class FileEnvSettingsSource(PydanticBaseSettingsSource):
    """Settings source reading `<KEY>_FILE` variants.

    For every field, if the environment names a file through `<FIELD>_FILE`,
    the file content (whitespace stripped) becomes the value. The plain
    environment source is placed ahead of this one, so a directly set
    variable always wins.
    """

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        file_var = f"{field_name.upper()}_FILE"
        path = os.environ.get(file_var)
        if not path:
            return None, field_name, False
        try:
            content = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"read {file_var}: {e}") from e
        return content.strip(), field_name, False

    def __call__(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            value, key, _ = self.get_field_value(field, field_name)
            if value is not None:
                data[key] = value
        return data


class Settings(BaseSettings):
    """Application configuration with sensible defaults.

    Example:
        # Load from environment only
        settings = Settings()

        # Override specific values
        settings = Settings(public_url="https://auth.example.com", owner_did="did:plc:abc")
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown fields
    )

    # ========================================
    # Application Settings
    # ========================================

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    log_format: Literal["json", "text"] = Field(default="json", description="Log output format")

    log_file: str | None = Field(default=None, description="Optional log file path")

    listen_addr: str = Field(default=":4321", description="HTTP bind address (host:port)")

    public_url: str = Field(
        default="http://noknok.localhost",
        description="External base URL of the gateway (portal, login, OAuth callback)",
    )

    metrics_enabled: bool = Field(default=True, description="Expose Prometheus /metrics")

    # ========================================
    # Database Configuration
    # ========================================

    db_host: str = Field(default="localhost", description="PostgreSQL host")

    db_port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")

    db_name: str = Field(default="noknok", description="PostgreSQL database name")

    db_user: str = Field(default="dba_noknok", description="PostgreSQL user")

    db_password: str = Field(default="", description="PostgreSQL password")

    db_sslmode: str = Field(default="disable", description="PostgreSQL SSL mode")

    database_url: str | None = Field(
        default=None,
        description="Full database URL; overrides the DB_* settings when set",
    )

    database_pool_size: int = Field(
        default=5, ge=1, le=100, description="Database connection pool size"
    )

    database_max_overflow: int = Field(
        default=10, ge=0, le=100, description="Max overflow connections beyond pool size"
    )

    database_echo: bool = Field(
        default=False, description="Echo SQL statements to logs (debug only)"
    )

    # ========================================
    # Sessions & Cookies
    # ========================================

    session_ttl: timedelta = Field(
        default=timedelta(hours=24), description="Session lifetime (Go-style, e.g. 24h)"
    )

    session_cleanup_interval_seconds: int = Field(
        default=900, ge=10, le=86400, description="Expired session sweep interval"
    )

    cookie_domain: str = Field(default=".localhost", description="Primary cookie domain")

    cookie_domains: str = Field(
        default="", description="Comma-separated additional cookie domains"
    )

    # ========================================
    # Identity & OAuth
    # ========================================

    owner_did: str = Field(default="", description="DID of the bootstrap owner (required)")

    owner_username: str = Field(default="", description="Initial username for the owner")

    oauth_key: str = Field(
        default="",
        description="Multibase-encoded P-256 private key for OAuth client assertions (required)",
    )

    plc_directory_url: str = Field(
        default="https://plc.directory", description="PLC directory for did:plc resolution"
    )

    handle_resolver_url: str = Field(
        default="https://public.api.bsky.app",
        description="XRPC host used for com.atproto.identity.resolveHandle",
    )

    oauth_http_timeout_seconds: float = Field(
        default=10.0, ge=1.0, le=60.0, description="Timeout for OAuth/identity HTTP calls"
    )

    # ========================================
    # Service Catalog & Health
    # ========================================

    services_file: str = Field(
        default="services.json", description="JSON service catalog seeded at startup"
    )

    health_check_interval_seconds: int = Field(
        default=60, ge=5, le=3600, description="Service health poll interval"
    )

    health_check_timeout_seconds: float = Field(
        default=4.0, ge=0.5, le=60.0, description="Per-service HEAD timeout"
    )

    # ========================================
    # Sources
    # ========================================

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            FileEnvSettingsSource(settings_cls),
            dotenv_settings,
            file_secret_settings,
        )

    # ========================================
    # Validators
    # ========================================

    @field_validator("session_ttl", mode="before")
    @classmethod
    def parse_session_ttl(cls, v: Any) -> Any:
        """Accept Go-style duration strings."""
        if isinstance(v, str) and not v.startswith("P"):
            return parse_duration(v)
        return v

    @field_validator("session_ttl")
    @classmethod
    def validate_session_ttl(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("session_ttl must be positive")
        return v

    @field_validator("public_url")
    @classmethod
    def validate_public_url(cls, v: str) -> str:
        """Validate public URL scheme and drop trailing slashes."""
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("public_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is None or v == "":
            return None
        if not (
            v.startswith("sqlite+aiosqlite://")
            or v.startswith("postgresql+asyncpg://")
        ):
            raise ValueError(
                "database_url must use an async driver: "
                "sqlite+aiosqlite:// or postgresql+asyncpg://"
            )
        return v

    @model_validator(mode="after")
    def validate_required_identity(self) -> "Settings":
        """OWNER_DID and OAUTH_KEY have no usable defaults."""
        if not self.owner_did:
            raise ValueError("OWNER_DID is required")
        if not self.owner_did.startswith("did:"):
            raise ValueError("OWNER_DID must be a DID (did:plc:... or did:web:...)")
        if not self.oauth_key:
            raise ValueError("OAUTH_KEY is required")
        return self

    # ========================================
    # Helper Methods
    # ========================================

    @property
    def effective_database_url(self) -> str:
        """Database URL, assembled from DB_* settings unless overridden."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{quote_plus(self.db_user)}:{quote_plus(self.db_password)}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}?ssl={self.db_sslmode}"
        )

    @property
    def is_sqlite(self) -> bool:
        """Check if database is SQLite."""
        return self.effective_database_url.startswith("sqlite")

    @property
    def secure_cookies(self) -> bool:
        """Cookies carry the Secure attribute when the public URL is HTTPS."""
        return self.public_url.startswith("https://")

    @property
    def cookie_domain_list(self) -> list[str]:
        """Primary cookie domain followed by the additional ones."""
        domains = [self.cookie_domain]
        for domain in self.cookie_domains.split(","):
            domain = domain.strip()
            if domain and domain not in domains:
                domains.append(domain)
        return domains

    @property
    def additional_cookie_domains(self) -> list[str]:
        return self.cookie_domain_list[1:]

    def domain_for_host(self, host: str) -> str | None:
        """Find the configured cookie domain covering ``host``.

        Entries starting with ``.`` match the bare base name and any
        subdomain; other entries match exactly.

        Args:
            host: Request host, optionally with a port

        Returns:
            Matching cookie domain, or None
        """
        host = strip_port(host)
        if not host:
            return None
        for domain in self.cookie_domain_list:
            if domain.startswith("."):
                if host == domain[1:] or host.endswith(domain):
                    return domain
            elif host == domain:
                return domain
        return None

    @property
    def listen_host(self) -> str:
        host, _, _ = self.listen_addr.rpartition(":")
        host = host.strip("[]")
        return host or "0.0.0.0"

    @property
    def listen_port(self) -> int:
        _, _, port = self.listen_addr.rpartition(":")
        return int(port) if port else 4321

    def to_dict(self) -> dict:
        """Convert settings to dictionary, masking secrets."""
        data = self.model_dump()
        for key in ("db_password", "oauth_key"):
            if data.get(key):
                data[key] = "***REDACTED***"
        if data.get("database_url"):
            data["database_url"] = "***REDACTED***"
        data["session_ttl"] = str(self.session_ttl)
        return data


def strip_port(host: str) -> str:
    """Drop a trailing ``:port`` from a host, keeping IPv6 brackets."""
    host = host.strip()
    if host.startswith("["):
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


# ========================================
# Global Settings Instance
# ========================================

_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Set global settings instance.

    Args:
        settings: Settings instance to use globally
    """
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Drop the global settings instance (mainly for testing)."""
    global _settings
    _settings = None


def load_settings_from_file(config_file: Path | str, **overrides: Any) -> Settings:
    """Load settings from YAML or TOML configuration file.

    Environment variables still apply to keys the file does not set.

    Args:
        config_file: Path to configuration file
        **overrides: Values that take precedence over the file

    Returns:
        Settings instance loaded from file

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file format is invalid
    """
    config_path = Path(config_file)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    if suffix in [".yaml", ".yml"]:
        import yaml

        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}
    elif suffix == ".toml":
        import tomllib

        with open(config_path, "rb") as f:
            config_data = tomllib.load(f)
    else:
        raise ValueError(f"Unsupported config file format: {suffix}. Use .yaml, .yml, or .toml")

    if not isinstance(config_data, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    return Settings(**{**config_data, **overrides})
