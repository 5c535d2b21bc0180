from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

DEFAULT_DATABASE_URL = "sqlite:///json_persister.db"
DEFAULT_DB_CONNECT_TIMEOUT = 30.0
DEFAULT_API_TIMEOUT = 30.0
DEFAULT_API_MAX_RETRIES = 3
DEFAULT_API_BACKOFF_FACTOR = 1.0
DEFAULT_API_BACKOFF_MAX = 30.0
DEFAULT_LOG_LEVEL = "INFO"


@dataclass(frozen=True)
class PersisterOptions:
    # Leave one-to-many rows that disappeared from the document in place.
    disable_foreign_collection_cleanup: bool = False
    # Do not log document keys that have no matching field.
    disable_ignored_attributes_warning: bool = False


@dataclass(frozen=True)
class ApiConfig:
    url: str
    timeout: float = DEFAULT_API_TIMEOUT
    api_key: Optional[str] = None
    max_retries: int = DEFAULT_API_MAX_RETRIES
    backoff_factor: float = DEFAULT_API_BACKOFF_FACTOR
    backoff_max: float = DEFAULT_API_BACKOFF_MAX


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = DEFAULT_DATABASE_URL
    connect_timeout: float = DEFAULT_DB_CONNECT_TIMEOUT
    apply_schema: bool = False
    schema_resource: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    database: DatabaseConfig
    options: PersisterOptions = field(default_factory=PersisterOptions)
    api: Optional[ApiConfig] = None
    log_level: str = DEFAULT_LOG_LEVEL
