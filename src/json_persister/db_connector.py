from __future__ import annotations

import logging
import time
from typing import Optional

from sqlalchemy import MetaData, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from .models import DatabaseConfig, PersisterOptions
from .persistence import JsonPersister
from .resolver import MetadataResolver
from .schema import EntityRegistry
from .schema_builder import build_metadata
from .schema_loader import load_schema_file

LOGGER = logging.getLogger("json_persister.db")


class DatabaseSession:
    """Manage the SQLAlchemy engine, the entity metadata and the tables built from it."""

    def __init__(
        self,
        config: DatabaseConfig,
        registry: Optional[EntityRegistry] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._engine: Optional[Engine] = None
        self._resolver: Optional[MetadataResolver] = None
        self._metadata: Optional[MetaData] = None

    def open(self) -> Engine:
        if self._engine is not None:
            return self._engine

        deadline = time.time() + self._config.connect_timeout
        attempts = 0
        while True:
            attempts += 1
            try:
                LOGGER.info("Creating SQLAlchemy engine (attempt %s)", attempts)
                engine = create_engine(self._config.url)
                with engine.connect() as connection:
                    connection.execute(text("SELECT 1"))
                self._engine = engine
                LOGGER.info("Connected to database")
                break
            except OperationalError as exc:
                if time.time() >= deadline:
                    raise RuntimeError("Database connection timed out") from exc
                LOGGER.warning("Database not ready yet (%s), retrying...", exc)
                time.sleep(min(2 * attempts, 10))

        self._ensure_schema_loaded()
        if self._config.apply_schema:
            self.ensure_schema()
        return self._engine

    def _load_registry(self) -> EntityRegistry:
        if self._registry is None:
            if not self._config.schema_resource:
                raise RuntimeError(
                    "No entity registry given and no schema resource configured"
                )
            self._registry = load_schema_file(self._config.schema_resource)
        return self._registry

    def _ensure_schema_loaded(self) -> None:
        if self._resolver is None:
            self._resolver = MetadataResolver(self._load_registry())
        if self._metadata is None:
            self._metadata = build_metadata(self._resolver)

    def ensure_schema(self) -> None:
        self._ensure_schema_loaded()
        with self.engine.begin() as conn:
            self._metadata.create_all(conn)
        LOGGER.info("Created %s tables", len(self._metadata.tables))

    def drop_schema(self) -> None:
        self._ensure_schema_loaded()
        with self.engine.begin() as conn:
            self._metadata.drop_all(conn)
        LOGGER.info("Dropped %s tables", len(self._metadata.tables))

    def recreate_schema(self) -> None:
        self.drop_schema()
        self.ensure_schema()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Engine not initialised; call open()")
        return self._engine

    @property
    def resolver(self) -> MetadataResolver:
        self._ensure_schema_loaded()
        return self._resolver

    @property
    def schema(self) -> MetaData:
        self._ensure_schema_loaded()
        return self._metadata

    def persister(self, options: Optional[PersisterOptions] = None) -> JsonPersister:
        return JsonPersister(self.engine, self.resolver, options)

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._resolver = None
        self._metadata = None
