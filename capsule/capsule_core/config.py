"""
Configuration management for the time capsule core.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages
    - Media URL TTL is strictly larger than the expiry skew

How to change safely:
    - Add new settings with defaults that keep existing deployments working
    - Keep variable names stable; the storage bucket name matches the web app
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class ObjectBackend(Enum):
    """Supported media object stores."""

    S3 = "s3"
    MEMORY = "memory"


@dataclass(frozen=True)
class StorageConfig:
    """Local row storage configuration.

    Attributes:
        data_dir: Directory holding the SQLite database
        db_name: SQLite database file name
        busy_timeout_ms: SQLite busy timeout in milliseconds
        wal_mode: SQLite WAL journal mode enabled
    """

    data_dir: str = "./capsule-data"
    db_name: str = "capsule.db"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, self.db_name)

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("CAPSULE_DATA_DIR", "./capsule-data"),
            db_name=os.getenv("CAPSULE_DB_NAME", "capsule.db"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for media objects.

    Attributes:
        bucket: Bucket holding one folder per group id
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "entries"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("STORAGE_BUCKET", "entries"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class MediaConfig:
    """Media resolution configuration.

    Attributes:
        url_ttl_seconds: Lifetime requested for each signed URL
        expiry_skew_seconds: Cached URLs this close to expiry are re-issued
    """

    url_ttl_seconds: int = 600
    expiry_skew_seconds: int = 5

    @classmethod
    def from_env(cls) -> MediaConfig:
        """Load configuration from environment variables."""
        return cls(
            url_ttl_seconds=int(os.getenv("MEDIA_URL_TTL_SECONDS", "600")),
            expiry_skew_seconds=int(os.getenv("MEDIA_EXPIRY_SKEW_SECONDS", "5")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class CapsuleConfig:
    """Complete configuration.

    Attributes:
        object_backend: Which object store holds uploaded media
        storage: Row storage configuration
        s3: S3 configuration (if object_backend is S3)
        media: Media resolution configuration
        observability: Logging configuration
    """

    object_backend: ObjectBackend = ObjectBackend.S3
    storage: StorageConfig = field(default_factory=StorageConfig)
    s3: S3Config = field(default_factory=S3Config)
    media: MediaConfig = field(default_factory=MediaConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> CapsuleConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("CAPSULE_OBJECT_BACKEND", "s3").lower()
        try:
            object_backend = ObjectBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid CAPSULE_OBJECT_BACKEND '{backend_str}'. Must be one of: s3, memory"
            )

        config = cls(
            object_backend=object_backend,
            storage=StorageConfig.from_env(),
            s3=S3Config.from_env(),
            media=MediaConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.media.url_ttl_seconds <= 0:
            raise ValueError("MEDIA_URL_TTL_SECONDS must be positive")
        if self.media.expiry_skew_seconds < 0:
            raise ValueError("MEDIA_EXPIRY_SKEW_SECONDS must not be negative")
        if self.media.expiry_skew_seconds >= self.media.url_ttl_seconds:
            raise ValueError("MEDIA_EXPIRY_SKEW_SECONDS must be smaller than the URL TTL")

        if self.object_backend == ObjectBackend.S3 and not self.s3.bucket:
            raise ValueError("STORAGE_BUCKET is required when CAPSULE_OBJECT_BACKEND=s3")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(f"Invalid LOG_FORMAT '{self.observability.log_format}'")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first use."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Capsule configuration loaded",
            extra={
                "object_backend": self.object_backend.value,
                "db_path": self.storage.db_path,
                "s3_bucket": self.s3.bucket
                if self.object_backend == ObjectBackend.S3
                else None,
                "s3_endpoint": self.s3.endpoint_url
                if self.object_backend == ObjectBackend.S3
                else None,
                "media_url_ttl_seconds": self.media.url_ttl_seconds,
                "log_level": self.observability.log_level,
            },
        )
