"""Configuration loading for the JSON persister."""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv

from .models import (DEFAULT_API_BACKOFF_FACTOR, DEFAULT_API_BACKOFF_MAX,
                     DEFAULT_API_MAX_RETRIES, DEFAULT_API_TIMEOUT,
                     DEFAULT_DATABASE_URL, DEFAULT_DB_CONNECT_TIMEOUT,
                     DEFAULT_LOG_LEVEL, ApiConfig, DatabaseConfig,
                     PersisterOptions, Settings)

TRUTHY = {"1", "true", "yes", "on"}


def _int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in TRUTHY


def load_config(dotenv: bool = True) -> Settings:
    """Load settings from environment variables (and a ``.env`` file)."""
    if dotenv:
        load_dotenv()

    database = DatabaseConfig(
        url=os.getenv("JSON_PERSISTER_DATABASE_URL", DEFAULT_DATABASE_URL),
        connect_timeout=_float(
            os.getenv("JSON_PERSISTER_CONNECT_TIMEOUT"), DEFAULT_DB_CONNECT_TIMEOUT
        ),
        apply_schema=_bool(os.getenv("JSON_PERSISTER_APPLY_SCHEMA")),
        schema_resource=os.getenv("JSON_PERSISTER_SCHEMA") or None,
    )

    options = PersisterOptions(
        disable_foreign_collection_cleanup=_bool(
            os.getenv("JSON_PERSISTER_DISABLE_CLEANUP")
        ),
        disable_ignored_attributes_warning=_bool(
            os.getenv("JSON_PERSISTER_DISABLE_IGNORED_WARNINGS")
        ),
    )

    api: Optional[ApiConfig] = None
    api_url = os.getenv("JSON_PERSISTER_API_URL")
    if api_url:
        api = ApiConfig(
            url=api_url.rstrip("/"),
            timeout=_float(os.getenv("JSON_PERSISTER_API_TIMEOUT"), DEFAULT_API_TIMEOUT),
            api_key=os.getenv("JSON_PERSISTER_API_KEY") or None,
            max_retries=max(
                0, _int(os.getenv("JSON_PERSISTER_API_MAX_RETRIES"), DEFAULT_API_MAX_RETRIES)
            ),
            backoff_factor=_float(
                os.getenv("JSON_PERSISTER_API_BACKOFF_FACTOR"), DEFAULT_API_BACKOFF_FACTOR
            ),
            backoff_max=_float(
                os.getenv("JSON_PERSISTER_API_BACKOFF_MAX"), DEFAULT_API_BACKOFF_MAX
            ),
        )

    return Settings(
        database=database,
        options=options,
        api=api,
        log_level=os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
    )
