"""Shared test fixtures for json-persister."""

from collections.abc import Callable, Generator

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from json_persister import (EntityRegistry, JsonPersister, MetadataResolver,
                            entity, identity, many_to_many, one_to_many,
                            reference, scalar)
from json_persister.schema_builder import build_metadata


def build_registry() -> EntityRegistry:
    """Users with tags and groups, plus a few entities for edge cases."""
    return EntityRegistry(
        [
            entity(
                "User",
                identity("id"),
                scalar("name", "text"),
                one_to_many("tags", "UserTag", value_column="value"),
                many_to_many("groups", "UserGroup", "Group"),
                table="users",
            ),
            entity("Group", identity("id"), scalar("name", "text"), table="groups"),
            entity(
                "UserGroup",
                identity("id"),
                reference("user", "User"),
                reference("group", "Group"),
                table="user_groups",
            ),
            entity(
                "UserTag",
                identity("id"),
                reference("user", "User"),
                scalar("value", "text"),
                table="user_tags",
            ),
            entity(
                "Person",
                identity("id", column="_id", map_from="theId"),
                scalar("name", "text"),
                scalar("age", "integer"),
                scalar("active", "boolean"),
                scalar("score", "number"),
                table="people",
            ),
            entity("Record", identity("id"), scalar("created", "datetime"), abstract=True),
            entity(
                "Post",
                scalar("title", "text"),
                reference("author", "Person"),
                table="posts",
                bases=("Record",),
            ),
            entity(
                "Order",
                identity("id"),
                scalar("reference", "text"),
                one_to_many("lines", "OrderLine"),
                table="orders",
            ),
            entity(
                "OrderLine",
                identity("id"),
                reference("order", "Order"),
                scalar("product", "text"),
                table="order_lines",
            ),
            entity("Message", identity("id", "text"), scalar("body", "text"), table="messages"),
        ]
    )


@pytest.fixture
def registry() -> EntityRegistry:
    return build_registry()


@pytest.fixture
def resolver(registry: EntityRegistry) -> MetadataResolver:
    return MetadataResolver(registry)


@pytest.fixture
def engine(resolver: MetadataResolver) -> Generator[Engine, None, None]:
    """SQLite in-memory engine with every declared table created."""
    engine = create_engine("sqlite://")
    build_metadata(resolver).create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def persister(engine: Engine, resolver: MetadataResolver) -> JsonPersister:
    return JsonPersister(engine, resolver)


@pytest.fixture
def fetch(engine: Engine) -> Callable[[str], list]:
    """Run a query and return its rows as plain tuples."""

    def run(sql: str) -> list:
        with engine.connect() as conn:
            return [tuple(row) for row in conn.execute(text(sql))]

    return run
