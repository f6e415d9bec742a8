"""
streamcouch Configuration System.

Type-safe settings built on Pydantic. Settings can be loaded from:
1. Environment variables (prefixed with COUCH_STREAM_)
2. Config file (TOML or JSON)
3. Explicit keyword overrides (highest priority)

Example usage:
    from streamcouch.config import load_settings

    settings = load_settings("config.toml")
    key = settings.get_sequence_store_key()
"""

from __future__ import annotations

import json
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from streamcouch.errors import ConfigurationError


class SequenceStoreKind(str, Enum):
    """Checkpoint backend selection."""

    REDIS = "redis"
    DYNAMODB = "dynamodb"
    NULL = "null"
    FILE = "file"


class RedisSettings(BaseModel):
    """Connection settings for the Redis checkpoint backend."""

    use_tls: bool = False
    host: str = "localhost"
    port: int = Field(default=6379, ge=1, le=65535)
    db: int = Field(default=0, ge=0)
    prefix: str | None = Field(
        default=None,
        description="Namespace prepended to checkpoint keys as 'prefix:key'",
    )
    password: SecretStr | None = None


class DynamoDBSettings(BaseModel):
    """Settings for the DynamoDB checkpoint backend."""

    table: str
    local_url: str | None = Field(
        default=None,
        description="Endpoint override, e.g. http://localhost:8000 for DynamoDB Local",
    )
    region: str | None = None
    create_table: bool = Field(
        default=True,
        description="Create the table on startup if it does not exist",
    )
    poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between table status checks while provisioning",
    )
    provision_timeout: float | None = Field(
        default=300.0,
        gt=0,
        description="Give up waiting for the table after this many seconds (None = wait forever)",
    )


class FileStoreSettings(BaseModel):
    """Settings for the local JSON-file checkpoint backend."""

    path: Path = Path(".streamcouch-checkpoint.json")


class FeedSettings(BaseModel):
    """CouchDB change feed tuning."""

    heartbeat_ms: int = Field(
        default=30_000,
        ge=1000,
        description="Heartbeat interval requested from CouchDB",
    )
    timeout: float = Field(
        default=10.0,
        gt=0,
        description="Connect/request timeout in seconds",
    )


class RetryPolicy(BaseModel):
    """Bounded backoff for transient failures."""

    max_attempts: int = Field(default=5, ge=1, le=100)
    initial_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=30.0, ge=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    format: str = Field(
        default="compact",
        pattern="^(rich|json|compact)$",
        description="Log format: rich (colored), json, or compact",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class Settings(BaseSettings):
    """
    Main settings class for streamcouch.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments / config file values
    2. Environment variables (COUCH_STREAM_* prefix)
    3. Defaults

    Example:
        export COUCH_STREAM_SOURCE_URL="http://localhost:5984/"
        export COUCH_STREAM_REDIS__HOST="redis.internal"
        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="COUCH_STREAM_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # CouchDB source
    source_url: str = Field(default="", description="CouchDB base URL, e.g. http://localhost:5984/")
    source_database: str = Field(default="", description="Database to read changes from")
    couchdb_username: str | None = None
    couchdb_password: SecretStr | None = None

    # MongoDB destination
    mongodb_connect_string: SecretStr = Field(default=SecretStr(""))
    mongodb_database: str = ""
    mongodb_collection: str | None = Field(
        default=None,
        description="Static destination collection",
    )
    mongodb_collection_field: str | None = Field(
        default=None,
        description="Document field naming the destination collection (wins over mongodb_collection)",
    )

    # Checkpointing
    sequence_store_key: str | None = Field(
        default=None,
        description="Checkpoint key (defaults to mongodb_database)",
    )
    sequence_store: SequenceStoreKind | None = Field(
        default=None,
        description="Checkpoint backend (redis, dynamodb, file or null)",
    )
    redis: RedisSettings | None = None
    dynamodb: DynamoDBSettings | None = None
    file: FileStoreSettings = Field(default_factory=FileStoreSettings)

    # Runtime
    feed: FeedSettings = Field(default_factory=FeedSettings)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("sequence_store", mode="before")
    @classmethod
    def normalize_store(cls, v: Any) -> Any:
        """Accept 'DynamoDB', 'Redis', 'Null' spellings."""
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("mongodb_connect_string", mode="before")
    @classmethod
    def validate_connect_string(cls, v: Any) -> SecretStr:
        if isinstance(v, SecretStr):
            return v
        if isinstance(v, str):
            return SecretStr(v)
        return SecretStr("")

    @classmethod
    def from_file(cls, path: Path | str) -> Self:
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls(**data)

    def get_sequence_store_key(self) -> str:
        """Checkpoint key for this stream."""
        return self.sequence_store_key or self.mongodb_database

    def validate_required(self) -> list[str]:
        """Validate that required settings are present. Returns list of errors."""
        errors = []
        if not self.source_url:
            errors.append("source_url is required")
        if not self.source_database:
            errors.append("source_database is required")
        if not self.mongodb_connect_string.get_secret_value():
            errors.append("mongodb_connect_string is required")
        if not self.mongodb_database:
            errors.append("mongodb_database is required")
        if self.sequence_store is None:
            errors.append("sequence_store is required (redis, dynamodb, file or null)")
        if self.sequence_store == SequenceStoreKind.REDIS and self.redis is None:
            errors.append("[redis] section is required when sequence_store = 'redis'")
        if self.sequence_store == SequenceStoreKind.DYNAMODB and self.dynamodb is None:
            errors.append("[dynamodb] section is required when sequence_store = 'dynamodb'")
        return errors


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load and validate settings, raising ConfigurationError on any problem.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    try:
        if config_file:
            settings = Settings.from_file(config_file)
            if overrides:
                data = settings.model_dump()
                data.update(overrides)
                settings = Settings(**data)
        else:
            settings = Settings(**overrides)
    except FileNotFoundError as e:
        raise ConfigurationError(str(e)) from e
    except (ValueError, ValidationError) as e:
        raise ConfigurationError(f"unable to load config: {e}") from e

    errors = settings.validate_required()
    if errors:
        raise ConfigurationError("; ".join(errors))
    return settings
