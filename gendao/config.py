"""
Configuration management for gendao.

All configuration is done via environment variables. This module provides
typed configuration classes with validation; DAOs receive the values
explicitly through their constructors, nothing reads configuration as
ambient state.

Invariants:
    - All settings have sensible defaults for local development
    - The backend is chosen here, never by inspecting DAO instances
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() and log_config() in sync with new fields
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class DaoBackend(Enum):
    """Supported persistence backends."""

    DOCUMENT = "document"
    RELATIONAL = "relational"


class DocumentEngineKind(Enum):
    """Supported document store engines."""

    COUCHDB = "couchdb"
    MEMORY = "memory"


@dataclass(frozen=True)
class CouchDBConfig:
    """CouchDB document engine configuration.

    Attributes:
        url: Base URL of the CouchDB server
        database: Database name holding every logical type
        username: Basic auth username (optional)
        password: Basic auth password (optional)
        timeout_seconds: HTTP request timeout
        create_database: Create the database on connect if missing
    """

    url: str = "http://localhost:5984"
    database: str = "gendao"
    username: str | None = None
    password: str | None = None
    timeout_seconds: float = 30.0
    create_database: bool = True

    @classmethod
    def from_env(cls) -> CouchDBConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("COUCHDB_URL", "http://localhost:5984"),
            database=os.getenv("COUCHDB_DATABASE", "gendao"),
            username=os.getenv("COUCHDB_USERNAME"),
            password=os.getenv("COUCHDB_PASSWORD"),
            timeout_seconds=float(os.getenv("COUCHDB_TIMEOUT_SECONDS", "30")),
            create_database=os.getenv("COUCHDB_CREATE_DATABASE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class SqliteConfig:
    """SQLite relational engine configuration.

    Attributes:
        path: Database file path
        busy_timeout_ms: SQLite busy timeout
        wal_mode: Enable SQLite WAL journal mode
    """

    path: str = "gendao.db"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> SqliteConfig:
        """Load configuration from environment variables."""
        return cls(
            path=os.getenv("SQLITE_PATH", "gendao.db"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class SequenceConfig:
    """Sequence counter configuration.

    Attributes:
        max_retries: Attempts before get_next_sequence_id gives up
    """

    max_retries: int = 200

    @classmethod
    def from_env(cls) -> SequenceConfig:
        """Load configuration from environment variables."""
        return cls(max_retries=int(os.getenv("SEQUENCE_MAX_RETRIES", "200")))


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
class DaoConfig:
    """Complete gendao configuration.

    Attributes:
        backend: Which persistence backend DAOs are built for
        app_version: Build/version string stamped into every record
        document_engine: Which document engine backs the document DAO
        couchdb: CouchDB configuration (document backend)
        sqlite: SQLite configuration (relational backend)
        sequence: Sequence counter configuration
        observability: Logging configuration
    """

    backend: DaoBackend = DaoBackend.DOCUMENT
    app_version: str = "0.0.0-dev"
    document_engine: DocumentEngineKind = DocumentEngineKind.COUCHDB
    couchdb: CouchDBConfig = field(default_factory=CouchDBConfig)
    sqlite: SqliteConfig = field(default_factory=SqliteConfig)
    sequence: SequenceConfig = field(default_factory=SequenceConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> DaoConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("DAO_BACKEND", "document").lower()
        try:
            backend = DaoBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid DAO_BACKEND '{backend_str}'. Must be one of: document, relational"
            )

        engine_str = os.getenv("DOCUMENT_ENGINE", "couchdb").lower()
        try:
            document_engine = DocumentEngineKind(engine_str)
        except ValueError:
            raise ValueError(
                f"Invalid DOCUMENT_ENGINE '{engine_str}'. Must be one of: couchdb, memory"
            )

        config = cls(
            backend=backend,
            app_version=os.getenv("APP_VERSION", "0.0.0-dev"),
            document_engine=document_engine,
            couchdb=CouchDBConfig.from_env(),
            sqlite=SqliteConfig.from_env(),
            sequence=SequenceConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.app_version:
            raise ValueError("APP_VERSION must not be empty")

        if self.sequence.max_retries < 1:
            raise ValueError("SEQUENCE_MAX_RETRIES must be at least 1")

        if self.backend == DaoBackend.DOCUMENT:
            if self.document_engine == DocumentEngineKind.COUCHDB:
                if not self.couchdb.url:
                    raise ValueError("COUCHDB_URL is required when DOCUMENT_ENGINE=couchdb")
                if not self.couchdb.database:
                    raise ValueError("COUCHDB_DATABASE is required when DOCUMENT_ENGINE=couchdb")
        elif self.backend == DaoBackend.RELATIONAL:
            if not self.sqlite.path:
                raise ValueError("SQLITE_PATH is required when DAO_BACKEND=relational")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "DAO configuration loaded",
            extra={
                "backend": self.backend.value,
                "app_version": self.app_version,
                "document_engine": self.document_engine.value
                if self.backend == DaoBackend.DOCUMENT
                else None,
                "couchdb_url": self.couchdb.url
                if self.backend == DaoBackend.DOCUMENT
                else None,
                "couchdb_database": self.couchdb.database
                if self.backend == DaoBackend.DOCUMENT
                else None,
                "couchdb_auth": self.couchdb.username is not None,
                "sqlite_path": self.sqlite.path
                if self.backend == DaoBackend.RELATIONAL
                else None,
                "sequence_max_retries": self.sequence.max_retries,
                "log_level": self.observability.log_level,
            },
        )
