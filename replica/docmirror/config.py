"""
Configuration management for DocMirror.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings except store locations have defaults for local development
    - Credentials embedded in connection strings are never logged
    - The primary and the mirror never point at the same collection

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep the legacy ATLAS_* / LOCAL_MONGO_URI names working as fallbacks
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("mongodb", "mongodb+srv", "memory")

# Database used when the primary is given through EFFORTS_MONGO_URL
EFFORTS_DATABASE = "efforts"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def redact_uri(uri: str) -> str:
    """Hide the password of a connection string."""
    return re.sub(r"(://[^:/@]+):[^@]*@", r"\1:***@", uri)


@dataclass(frozen=True)
class StoreConfig:
    """Primary and mirror store locations.

    Attributes:
        primary_uri: Connection string of the source-of-truth store
        mirror_uri: Connection string of the mirror store
        database: Database name, shared by both sides
        collection: Collection name, shared by both sides
        server_selection_timeout_ms: Connection timeout for each store
    """

    primary_uri: str = ""
    mirror_uri: str = ""
    database: str = ""
    collection: str = ""
    server_selection_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables.

        EFFORTS_MONGO_URL, when set, overrides the primary location and
        selects the "efforts" database.
        """
        primary_uri = os.getenv("PRIMARY_URI") or os.getenv("ATLAS_URI", "")
        database = os.getenv("DATABASE_NAME") or os.getenv("ATLAS_DB", "")

        efforts_url = os.getenv("EFFORTS_MONGO_URL")
        if efforts_url:
            primary_uri = efforts_url
            database = EFFORTS_DATABASE

        return cls(
            primary_uri=primary_uri,
            mirror_uri=os.getenv("MIRROR_URI") or os.getenv("LOCAL_MONGO_URI", ""),
            database=database,
            collection=os.getenv("COLLECTION_NAME") or os.getenv("ATLAS_COLLECTION", ""),
            server_selection_timeout_ms=int(os.getenv("SERVER_SELECTION_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Sync engine configuration.

    Attributes:
        queue_size: Maximum change events buffered between stream and mirror
        restart_delay_ms: Delay before resynchronizing after a disconnect
        max_restart_delay_ms: Upper bound for the doubling restart delay
        dump_after_write: Log every mirror document after each write (DEBUG)
    """

    queue_size: int = 1000
    restart_delay_ms: int = 500
    max_restart_delay_ms: int = 30000
    dump_after_write: bool = False

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            queue_size=int(os.getenv("SYNC_QUEUE_SIZE", "1000")),
            restart_delay_ms=int(os.getenv("SYNC_RESTART_DELAY_MS", "500")),
            max_restart_delay_ms=int(os.getenv("SYNC_MAX_RESTART_DELAY_MS", "30000")),
            dump_after_write=_env_bool("SYNC_DUMP_AFTER_WRITE", "false"),
        )


@dataclass(frozen=True)
class StatusConfig:
    """Status endpoint configuration.

    Attributes:
        enabled: Whether to serve the status endpoint
        host: Bind address
        port: Bind port
    """

    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8081

    @classmethod
    def from_env(cls) -> StatusConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("STATUS_ENABLED", "false"),
            host=os.getenv("STATUS_HOST", "0.0.0.0"),
            port=int(os.getenv("STATUS_PORT", "8081")),
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
class ServerConfig:
    """Complete process configuration.

    Attributes:
        store: Primary and mirror locations
        sync: Sync engine configuration
        status: Status endpoint configuration
        observability: Logging configuration
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    status: StatusConfig = field(default_factory=StatusConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            store=StoreConfig.from_env(),
            sync=SyncConfig.from_env(),
            status=StatusConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.store.primary_uri:
            raise ValueError("PRIMARY_URI (or ATLAS_URI / EFFORTS_MONGO_URL) is required")
        if not self.store.mirror_uri:
            raise ValueError("MIRROR_URI (or LOCAL_MONGO_URI) is required")
        if not self.store.database:
            raise ValueError("DATABASE_NAME (or ATLAS_DB) is required")
        if not self.store.collection:
            raise ValueError("COLLECTION_NAME (or ATLAS_COLLECTION) is required")

        for name, uri in (("primary", self.store.primary_uri), ("mirror", self.store.mirror_uri)):
            scheme = uri.split("://", 1)[0].lower() if "://" in uri else ""
            if scheme not in SUPPORTED_SCHEMES:
                raise ValueError(
                    f"Unsupported {name} store URI scheme '{scheme}'. "
                    f"Must be one of: {', '.join(SUPPORTED_SCHEMES)}"
                )

        if self.store.primary_uri == self.store.mirror_uri and not self.store.primary_uri.startswith(
            "memory://"
        ):
            raise ValueError("Primary and mirror must be different stores")

        if self.sync.queue_size <= 0:
            raise ValueError("SYNC_QUEUE_SIZE must be positive")
        if self.sync.restart_delay_ms < 0 or self.sync.max_restart_delay_ms < 0:
            raise ValueError("Restart delays must not be negative")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Configuration loaded",
            extra={
                "primary_uri": redact_uri(self.store.primary_uri),
                "mirror_uri": redact_uri(self.store.mirror_uri),
                "database": self.store.database,
                "collection": self.store.collection,
                "queue_size": self.sync.queue_size,
                "restart_delay_ms": self.sync.restart_delay_ms,
                "status_enabled": self.status.enabled,
                "log_level": self.observability.log_level,
            },
        )
