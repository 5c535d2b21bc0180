"""Tests for persisting documents and their relations."""

import asyncio
import logging
from datetime import datetime

import pytest
from sqlalchemy import create_engine, text

from json_persister import (EntityRegistry, JsonPersister,
                            MalformedDocumentError, MetadataResolver,
                            PersisterOptions, SchemaError, StorageWriteError,
                            TypeMismatchError, entity, identity, scalar)
from json_persister.schema_builder import build_metadata


class TestObjects:
    """Plain objects and their identities."""

    def test_persist_inserts_row_and_returns_identity(self, persister, fetch):
        identity = persister.persist_object("Group", {"id": 4, "name": "Admins"})

        assert identity == 4
        assert fetch("SELECT id, name FROM groups") == [(4, "Admins")]

    def test_persist_updates_existing_row(self, persister, fetch):
        persister.persist_object("Group", {"id": 4, "name": "Admins"})
        persister.persist_object("Group", {"id": 4, "name": "Owners"})

        assert fetch("SELECT id, name FROM groups") == [(4, "Owners")]

    def test_missing_identity_lets_store_assign_one(self, persister, fetch):
        first = persister.persist_object("Group", {"name": "One"})
        second = persister.persist_object("Group", {"name": "Two"})

        assert (first, second) == (1, 2)
        assert fetch("SELECT id, name FROM groups ORDER BY id") == [(1, "One"), (2, "Two")]

    def test_null_identity_is_treated_as_missing(self, persister, fetch):
        identity = persister.persist_object("Group", {"id": None, "name": "Anon"})

        assert identity == 1
        assert fetch("SELECT name FROM groups WHERE id = 1") == [("Anon",)]

    def test_map_from_and_column_name(self, persister, fetch):
        identity = persister.persist_object(
            "Person", {"theId": 9, "name": "Ann", "age": "41", "active": True, "score": 2}
        )

        assert identity == 9
        assert fetch("SELECT _id, name, age, active, score FROM people") == [
            (9, "Ann", 41, 1, 2)
        ]

    def test_identity_set_twice_is_rejected(self, persister, fetch):
        with pytest.raises(MalformedDocumentError):
            persister.persist_object("Person", {"id": 1, "theId": 1})

        assert fetch("SELECT COUNT(*) FROM people") == [(0,)]

    def test_string_identity(self, persister, fetch):
        identity = persister.persist_object("Message", {"id": "m-1", "body": "hello"})

        assert identity == "m-1"
        assert fetch("SELECT id, body FROM messages") == [("m-1", "hello")]

    def test_wrong_identity_type_raises_type_mismatch(self, persister, fetch):
        with pytest.raises(TypeMismatchError):
            persister.persist_object("Group", {"id": "stringInsteadOfInteger"})

        assert fetch("SELECT COUNT(*) FROM groups") == [(0,)]

    def test_wrong_scalar_type_raises_type_mismatch(self, persister):
        with pytest.raises(TypeMismatchError):
            persister.persist_object("Person", {"id": 1, "age": True})

    def test_object_where_scalar_expected(self, persister):
        with pytest.raises(MalformedDocumentError):
            persister.persist_object("Group", {"id": 1, "name": {"de": "Gruppe"}})

    def test_unknown_type_raises_schema_error(self, persister):
        with pytest.raises(SchemaError):
            persister.persist_object("Unknown", {"id": 1})

    def test_abstract_type_raises_schema_error(self, persister):
        with pytest.raises(SchemaError):
            persister.persist_object("Record", {"id": 1})

    def test_inherited_fields_are_persisted(self, persister, fetch):
        persister.persist_object("Post", {"id": 3, "title": "Hello"})

        assert fetch("SELECT id, title FROM posts") == [(3, "Hello")]

    def test_datetime_identity_updates_existing_row(self):
        resolver = MetadataResolver(
            EntityRegistry(
                [
                    entity(
                        "Event",
                        identity("at", "datetime"),
                        scalar("note", "text"),
                        table="events",
                    )
                ]
            )
        )
        engine = create_engine("sqlite://")
        build_metadata(resolver).create_all(engine)
        persister = JsonPersister(engine, resolver)

        first = persister.persist_object("Event", {"at": "2024-01-01T10:00:00", "note": "draft"})
        second = persister.persist_object("Event", {"at": "2024-01-01T10:00:00", "note": "final"})

        with engine.connect() as conn:
            rows = conn.execute(text("SELECT note FROM events")).all()
        engine.dispose()

        assert first == second == datetime(2024, 1, 1, 10, 0)
        assert [tuple(row) for row in rows] == [("final",)]

class TestUnmappedKeys:
    """Document keys without a field are skipped with a warning."""

    def test_unmapped_key_logs_warning(self, persister, fetch, caplog):
        with caplog.at_level(logging.WARNING, logger="json_persister"):
            persister.persist_object("Group", {"id": 1, "name": "G", "color": "red"})

        assert "Ignored attribute color" in caplog.text
        assert fetch("SELECT id, name FROM groups") == [(1, "G")]

    def test_warning_can_be_disabled(self, engine, resolver, caplog):
        persister = JsonPersister(
            engine, resolver, PersisterOptions(disable_ignored_attributes_warning=True)
        )
        with caplog.at_level(logging.WARNING, logger="json_persister"):
            persister.persist_object("Group", {"id": 1, "color": "red"})

        assert "Ignored attribute" not in caplog.text


class TestReferences:
    """Foreign references given inline or as a bare identity."""

    def test_inline_reference_is_persisted_first(self, persister, fetch):
        persister.persist_object(
            "Post", {"id": 1, "title": "T", "author": {"theId": 7, "name": "Ann"}}
        )

        assert fetch("SELECT _id, name FROM people") == [(7, "Ann")]
        assert fetch("SELECT author_id FROM posts WHERE id = 1") == [(7,)]

    def test_bare_identity_reference(self, persister, fetch):
        persister.persist_object("Post", {"id": 1, "author": 7})

        assert fetch("SELECT author_id FROM posts WHERE id = 1") == [(7,)]
        assert fetch("SELECT COUNT(*) FROM people") == [(0,)]

    def test_null_reference_clears_column(self, persister, fetch):
        persister.persist_object("Post", {"id": 1, "author": 7})
        persister.persist_object("Post", {"id": 1, "author": None})

        assert fetch("SELECT author_id FROM posts WHERE id = 1") == [(None,)]

    def test_list_reference_is_malformed(self, persister):
        with pytest.raises(MalformedDocumentError):
            persister.persist_object("Post", {"id": 1, "author": [7]})


class TestManyToMany:
    """Junction rows are replaced on every write."""

    def test_links_are_created(self, persister, fetch):
        persister.persist_object(
            "User",
            {"id": 1, "groups": [{"id": 10, "name": "A"}, {"id": 11, "name": "B"}]},
        )

        assert fetch("SELECT id, name FROM groups ORDER BY id") == [(10, "A"), (11, "B")]
        assert fetch("SELECT user_id, group_id FROM user_groups ORDER BY group_id") == [
            (1, 10),
            (1, 11),
        ]

    def test_links_are_replaced(self, persister, fetch):
        persister.persist_object("User", {"id": 1, "groups": [{"id": 10}, {"id": 11}]})
        persister.persist_object("User", {"id": 1, "groups": [{"id": 11}, {"id": 12}]})

        assert fetch("SELECT group_id FROM user_groups ORDER BY group_id") == [(11,), (12,)]
        # Target rows stay even when they are no longer linked.
        assert fetch("SELECT id FROM groups ORDER BY id") == [(10,), (11,), (12,)]

    def test_other_owners_keep_their_links(self, persister, fetch):
        persister.persist_object("User", {"id": 1, "groups": [{"id": 10}]})
        persister.persist_object("User", {"id": 2, "groups": [{"id": 10}]})
        persister.persist_object("User", {"id": 1, "groups": []})

        assert fetch("SELECT user_id, group_id FROM user_groups") == [(2, 10)]

    def test_null_collection_leaves_links_and_warns(self, persister, fetch, caplog):
        persister.persist_object("User", {"id": 1, "groups": [{"id": 10}]})
        with caplog.at_level(logging.WARNING, logger="json_persister"):
            persister.persist_object("User", {"id": 1, "groups": None})

        assert "groups" in caplog.text
        assert fetch("SELECT user_id, group_id FROM user_groups") == [(1, 10)]

    def test_non_list_collection_is_malformed(self, persister):
        with pytest.raises(MalformedDocumentError):
            persister.persist_object("User", {"id": 1, "groups": {"id": 10}})


class TestOneToMany:
    """Children point back at their owner; stale children are removed."""

    def test_children_point_at_owner(self, persister, fetch):
        persister.persist_object(
            "Order",
            {"id": 1, "lines": [{"id": 1, "product": "tea"}, {"id": 2, "product": "milk"}]},
        )

        assert fetch("SELECT id, order_id, product FROM order_lines ORDER BY id") == [
            (1, 1, "tea"),
            (2, 1, "milk"),
        ]

    def test_stale_children_are_deleted(self, persister, fetch):
        persister.persist_object("Order", {"id": 1, "lines": [{"id": 1}, {"id": 2}]})
        persister.persist_object("Order", {"id": 1, "lines": [{"id": 2}]})

        assert fetch("SELECT id, order_id FROM order_lines") == [(2, 1)]

    def test_empty_array_deletes_all_children(self, persister, fetch):
        persister.persist_object("Order", {"id": 1, "lines": [{"id": 1}, {"id": 2}]})
        persister.persist_object("Order", {"id": 1, "lines": []})

        assert fetch("SELECT COUNT(*) FROM order_lines") == [(0,)]

    def test_cleanup_only_touches_this_owner(self, persister, fetch):
        persister.persist_object("Order", {"id": 1, "lines": [{"id": 1}]})
        persister.persist_object("Order", {"id": 2, "lines": [{"id": 3}]})
        persister.persist_object("Order", {"id": 1, "lines": []})

        assert fetch("SELECT id, order_id FROM order_lines") == [(3, 2)]

    def test_cleanup_can_be_disabled(self, engine, resolver, fetch):
        persister = JsonPersister(
            engine, resolver, PersisterOptions(disable_foreign_collection_cleanup=True)
        )
        persister.persist_object("Order", {"id": 1, "lines": [{"id": 1}, {"id": 2}]})
        persister.persist_object("Order", {"id": 1, "lines": [{"id": 2}]})

        assert fetch("SELECT id, order_id FROM order_lines ORDER BY id") == [(1, 1), (2, 1)]

    def test_null_collection_leaves_children(self, persister, fetch):
        persister.persist_object("Order", {"id": 1, "lines": [{"id": 1}]})
        persister.persist_object("Order", {"id": 1, "lines": None})

        assert fetch("SELECT id, order_id FROM order_lines") == [(1, 1)]

    def test_scalar_collection_creates_value_rows(self, persister, fetch):
        persister.persist_object("User", {"id": 1, "tags": ["tag1", "tag2"]})

        assert fetch("SELECT user_id, value FROM user_tags ORDER BY id") == [
            (1, "tag1"),
            (1, "tag2"),
        ]

    def test_scalar_collection_is_replaced(self, persister, fetch):
        persister.persist_object("User", {"id": 1, "tags": ["tag1", "tag2"]})
        persister.persist_object("User", {"id": 1, "tags": ["tag3"]})

        assert fetch("SELECT user_id, value FROM user_tags") == [(1, "tag3")]

    def test_scalar_collection_rejects_objects(self, persister):
        with pytest.raises(MalformedDocumentError):
            persister.persist_object("User", {"id": 1, "tags": [{"value": "x"}]})

    def test_scalar_collection_accumulates_without_cleanup(self, engine, resolver, fetch):
        persister = JsonPersister(
            engine, resolver, PersisterOptions(disable_foreign_collection_cleanup=True)
        )
        persister.persist_object("User", {"id": 1, "tags": ["a", "b"]})
        persister.persist_object("User", {"id": 1, "tags": ["a", "b"]})

        assert fetch("SELECT user_id, value FROM user_tags ORDER BY id") == [
            (1, "a"),
            (1, "b"),
            (1, "a"),
            (1, "b"),
        ]


class TestArrays:
    def test_identities_are_returned_in_input_order(self, persister, fetch):
        identities = persister.persist_array(
            "Group", [{"id": 3, "name": "c"}, {"id": 1, "name": "a"}, {"id": 2, "name": "b"}]
        )

        assert identities == [3, 1, 2]
        assert fetch("SELECT COUNT(*) FROM groups") == [(3,)]

    def test_empty_array(self, persister):
        assert persister.persist_array("Group", []) == []

    def test_non_object_item_is_malformed(self, persister, fetch):
        with pytest.raises(MalformedDocumentError):
            persister.persist_array("Group", [{"id": 1}, 2])

        assert fetch("SELECT COUNT(*) FROM groups") == [(0,)]

    def test_array_argument_must_be_a_list(self, persister):
        with pytest.raises(MalformedDocumentError):
            persister.persist_array("Group", {"id": 1})


class TestTransactions:
    def test_write_failure_raises_storage_error_and_rolls_back(self):
        resolver = MetadataResolver(
            EntityRegistry(
                [entity("Note", identity("id"), scalar("body", "text"), table="notes")]
            )
        )
        engine = create_engine("sqlite://")
        with engine.begin() as conn:
            conn.execute(text("CREATE TABLE notes (id INTEGER PRIMARY KEY)"))
        persister = JsonPersister(engine, resolver)

        with pytest.raises(StorageWriteError):
            persister.persist_object("Note", {"id": 1, "body": "lost"})

        with engine.connect() as conn:
            count = conn.execute(text("SELECT COUNT(*) FROM notes")).scalar_one()
        engine.dispose()

        assert count == 0

    def test_failure_rolls_back_every_row(self, persister, fetch):
        with pytest.raises(TypeMismatchError):
            persister.persist_object(
                "User",
                {
                    "id": 1,
                    "name": "Ann",
                    "tags": ["a"],
                    "groups": [{"id": 10}, {"id": "not-a-number"}],
                },
            )

        assert fetch("SELECT COUNT(*) FROM users") == [(0,)]
        assert fetch("SELECT COUNT(*) FROM groups") == [(0,)]
        assert fetch("SELECT COUNT(*) FROM user_groups") == [(0,)]

    def test_failed_array_keeps_nothing(self, persister, fetch):
        with pytest.raises(TypeMismatchError):
            persister.persist_array("Group", [{"id": 1}, {"id": 2}, {"id": "x"}])

        assert fetch("SELECT COUNT(*) FROM groups") == [(0,)]

    def test_connection_bind(self, engine, resolver, fetch):
        with engine.connect() as conn:
            persister = JsonPersister(conn, resolver)
            persister.persist_object("Group", {"id": 1, "name": "G"})

        assert fetch("SELECT id, name FROM groups") == [(1, "G")]

    def test_running_event_loop_logs_warning(self, persister, caplog):
        async def persist():
            return persister.persist_object("Group", {"id": 1})

        with caplog.at_level(logging.WARNING, logger="json_persister"):
            asyncio.run(persist())

        assert "running event loop" in caplog.text


def test_users_groups_and_tags(persister, fetch):
    """A realistic payload: users sharing groups, each with their own tags."""
    groups = [{"id": 1, "name": "Group 1"}, {"id": 2, "name": "Group 2"}]
    users = [
        {"id": 1, "name": "User 1", "tags": ["tag1", "tag2"], "groups": groups},
        {"id": 2, "name": "User 2", "tags": ["tag3"], "groups": [groups[1]]},
    ]

    assert persister.persist_array("User", users) == [1, 2]
    assert persister.persist_array("Group", groups) == [1, 2]

    assert fetch("SELECT id, name FROM users ORDER BY id") == [(1, "User 1"), (2, "User 2")]
    assert fetch("SELECT id, name FROM groups ORDER BY id") == [
        (1, "Group 1"),
        (2, "Group 2"),
    ]
    assert fetch("SELECT user_id, group_id FROM user_groups ORDER BY user_id, group_id") == [
        (1, 1),
        (1, 2),
        (2, 2),
    ]
    assert fetch("SELECT user_id, value FROM user_tags ORDER BY id") == [
        (1, "tag1"),
        (1, "tag2"),
        (2, "tag3"),
    ]
