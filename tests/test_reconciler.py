"""Tests for PropertyReconciler persistence policy."""
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from notd_engine.config import EngineConfig
from notd_engine.exceptions import EntityNotFoundError, PropertyPersistenceError
from notd_engine.models.db_models import DBPropertyDefinition
from notd_engine.models.schema import EntityType, ExtractedProperty
from notd_engine.services.property_reconciler import PropertyReconciler, group_by_name
from notd_engine.storage.property_repository import PropertyRepository
from tests.fakes import create_webhook


def prop(name, value, weight=None, internal=None):
    return ExtractedProperty(name=name, value=value, weight=weight, internal=internal)


@pytest.fixture
def dispatcher():
    return MagicMock()


@pytest.fixture
def reconciler(session_factory, test_config, dispatcher):
    return PropertyReconciler(session_factory, config=test_config, dispatcher=dispatcher)


def active_rows(session_factory, entity_type, entity_id, name=None):
    with session_factory() as session:
        rows = PropertyRepository(session).list_for_entity(entity_type, entity_id, name=name)
        return [(r.name, r.value, r.weight, r.internal) for r in rows]


class TestGrouping:
    def test_group_order_is_first_seen(self):
        groups = group_by_name([prop("b", "1"), prop("a", "2"), prop("b", "3")])
        assert list(groups) == ["b", "a"]
        assert [p.value for p in groups["b"]] == ["1", "3"]


class TestReplace:
    """Replace groups delete the active rows first."""

    def test_multi_value_replace(self, reconciler, session_factory, seeded):
        note_id = seeded["note_id"]
        reconciler.save([prop("tag", "a", 3), prop("tag", "b", 3)], EntityType.NOTE, note_id)
        rows = active_rows(session_factory, EntityType.NOTE, note_id, "tag")
        assert [(r[0], r[1]) for r in rows] == [("tag", "a"), ("tag", "b")]

    def test_replace_leaves_only_last_saved_set(self, reconciler, session_factory, seeded):
        note_id = seeded["note_id"]
        reconciler.save([prop("tag", "a", 2), prop("tag", "b", 2)], EntityType.NOTE, note_id)
        reconciler.save([prop("tag", "c", 2)], EntityType.NOTE, note_id)
        rows = active_rows(session_factory, EntityType.NOTE, note_id, "tag")
        assert [r[1] for r in rows] == ["c"]

    def test_replace_keeps_per_item_weight(self, reconciler, session_factory, seeded):
        note_id = seeded["note_id"]
        reconciler.save([prop("mix", "a", 2), prop("mix", "b", 3)], EntityType.NOTE, note_id)
        rows = active_rows(session_factory, EntityType.NOTE, note_id, "mix")
        assert [r[2] for r in rows] == [2, 3]

    def test_missing_weight_uses_default(self, reconciler, session_factory, seeded):
        note_id = seeded["note_id"]
        reconciler.save([prop("plain", "x")], EntityType.NOTE, note_id)
        assert active_rows(session_factory, EntityType.NOTE, note_id, "plain")[0][2] == 3

    def test_replace_scoped_to_entity_and_name(self, reconciler, session_factory, seeded):
        note_id, page_id = seeded["note_id"], seeded["page_id"]
        reconciler.save([prop("tag", "note", 2), prop("other", "keep", 2)], EntityType.NOTE, note_id)
        reconciler.save([prop("tag", "page", 2)], EntityType.PAGE, page_id)
        reconciler.save([prop("tag", "note2", 2)], EntityType.NOTE, note_id)

        assert [r[1] for r in active_rows(session_factory, EntityType.NOTE, note_id, "tag")] == ["note2"]
        assert [r[1] for r in active_rows(session_factory, EntityType.NOTE, note_id, "other")] == ["keep"]
        assert [r[1] for r in active_rows(session_factory, EntityType.PAGE, page_id, "tag")] == ["page"]

    def test_unknown_weight_replaces(self, reconciler, session_factory, seeded):
        note_id = seeded["note_id"]
        reconciler.save([prop("odd", "1", 9)], EntityType.NOTE, note_id)
        reconciler.save([prop("odd", "2", 9)], EntityType.NOTE, note_id)
        assert [r[1] for r in active_rows(session_factory, EntityType.NOTE, note_id, "odd")] == ["2"]


class TestAppend:
    """Append groups keep history."""

    def test_append_accumulates(self, reconciler, session_factory, seeded):
        note_id = seeded["note_id"]
        reconciler.save([prop("status", "TODO", 4)], EntityType.NOTE, note_id)
        reconciler.save([prop("status", "DONE", 4)], EntityType.NOTE, note_id)
        rows = active_rows(session_factory, EntityType.NOTE, note_id, "status")
        assert [r[1] for r in rows] == ["TODO", "DONE"]

    def test_append_uses_group_weight(self, reconciler, session_factory, seeded):
        note_id = seeded["note_id"]
        reconciler.save([prop("log", "a", 4), prop("log", "b", 2)], EntityType.NOTE, note_id)
        rows = active_rows(session_factory, EntityType.NOTE, note_id, "log")
        assert [r[2] for r in rows] == [4, 4]


class TestInternalClassification:
    """explicit > definition > heuristic > visible."""

    def test_explicit_wins(self, reconciler, session_factory, seeded):
        with session_factory() as session:
            session.add(DBPropertyDefinition(name="color", internal=True))
            session.commit()
        reconciler.save([prop("color", "red", 2, internal=False)], EntityType.NOTE, seeded["note_id"])
        assert active_rows(session_factory, EntityType.NOTE, seeded["note_id"], "color")[0][3] is False

    def test_definition_beats_heuristic(self, reconciler, session_factory, seeded):
        with session_factory() as session:
            session.add(DBPropertyDefinition(name="_visible", internal=False))
            session.commit()
        reconciler.save([prop("_visible", "x", 2)], EntityType.NOTE, seeded["note_id"])
        assert active_rows(session_factory, EntityType.NOTE, seeded["note_id"], "_visible")[0][3] is False

    def test_heuristic(self, reconciler, session_factory, seeded):
        note_id = seeded["note_id"]
        reconciler.save(
            [prop("_private", "x", 2), prop("type", "y", 2), prop("color", "z", 2)],
            EntityType.NOTE,
            note_id,
        )
        flags = {r[0]: r[3] for r in active_rows(session_factory, EntityType.NOTE, note_id)}
        assert flags == {"_private": True, "type": True, "color": False}


class TestTriggerDispatch:
    """Once per (entity, name) group."""

    def test_dispatch_once_per_group(self, reconciler, dispatcher, seeded):
        note_id = seeded["note_id"]
        reconciler.save(
            [prop("tag", "a", 2), prop("tag", "b", 2), prop("tag", "c", 2), prop("status", "TODO", 4)],
            EntityType.NOTE,
            note_id,
        )
        calls = [c.args[1:] for c in dispatcher.dispatch.call_args_list]
        assert calls == [
            (EntityType.NOTE, note_id, "tag", "a"),
            (EntityType.NOTE, note_id, "status", "TODO"),
        ]

    def test_empty_batch(self, reconciler, dispatcher, seeded):
        assert reconciler.save([], EntityType.NOTE, seeded["note_id"]) == []
        dispatcher.dispatch.assert_not_called()

    def test_notified_after_commit(self, reconciler, dispatcher, session_factory, seeded):
        note_id = seeded["note_id"]
        committed = []
        dispatcher.notify_committed.side_effect = lambda factory, changes: committed.append(
            [r[0] for r in active_rows(factory, EntityType.NOTE, note_id)]
        )

        reconciler.save([prop("tag", "a", 2), prop("color", "red", 2)], EntityType.NOTE, note_id)

        assert committed == [["tag", "color"]]
        changes = dispatcher.notify_committed.call_args.args[1]
        assert changes == [dispatcher.dispatch.return_value] * 2

    def test_caller_session_collects_changes(self, reconciler, dispatcher, session_factory, seeded):
        changes = []
        with session_factory() as session:
            reconciler.save(
                [prop("tag", "a", 2), prop("tag", "b", 2)],
                EntityType.NOTE,
                seeded["note_id"],
                session=session,
                changes=changes,
            )
            session.commit()
        assert changes == [dispatcher.dispatch.return_value]
        dispatcher.notify_committed.assert_not_called()


class TestAtomicity:
    """All groups persist or none do."""

    def test_failure_rolls_back_every_group(self, reconciler, dispatcher, session_factory, seeded, monkeypatch):
        note_id = seeded["note_id"]
        reconciler.save([prop("keep", "old", 2)], EntityType.NOTE, note_id)
        original_insert = PropertyRepository.insert

        def insert(self, entity_type, entity_id, name, value, weight, internal=False):
            if name == "second":
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return original_insert(self, entity_type, entity_id, name, value, weight, internal)

        monkeypatch.setattr(PropertyRepository, "insert", insert)
        with pytest.raises(PropertyPersistenceError) as exc_info:
            reconciler.save(
                [prop("keep", "new", 2), prop("second", "x", 2)], EntityType.NOTE, note_id
            )

        assert exc_info.value.property_name == "second"
        rows = active_rows(session_factory, EntityType.NOTE, note_id)
        assert [(r[0], r[1]) for r in rows] == [("keep", "old")]
        # only the first, committed save was notified
        assert dispatcher.notify_committed.call_count == 1

    def test_caller_session_not_committed(self, reconciler, session_factory, seeded):
        note_id = seeded["note_id"]
        with session_factory() as session:
            persisted = reconciler.save([prop("draft", "x", 2)], EntityType.NOTE, note_id, session=session)
            assert persisted[0].id is not None
            session.rollback()
        assert active_rows(session_factory, EntityType.NOTE, note_id, "draft") == []

    def test_unknown_entity(self, reconciler):
        with pytest.raises(EntityNotFoundError):
            reconciler.save([prop("a", "1", 2)], EntityType.NOTE, 9999)

    def test_returns_persisted_models(self, reconciler, seeded):
        persisted = reconciler.save([prop("a", "1", 2)], "note", seeded["note_id"])
        assert persisted[0].entity_type == EntityType.NOTE
        assert persisted[0].entity_id == seeded["note_id"]
        assert persisted[0].weight == 2
        assert persisted[0].active is True


def test_reconciler_uses_configured_default_weight(session_factory, seeded):
    reconciler = PropertyReconciler(
        session_factory, config=EngineConfig(default_weight=2), dispatcher=MagicMock()
    )
    persisted = reconciler.save([prop("plain", "x")], EntityType.NOTE, seeded["note_id"])
    assert persisted[0].weight == 2


def test_default_dispatcher_notifies_webhooks(session_factory, test_config, http_client, seeded):
    create_webhook(session_factory)
    reconciler = PropertyReconciler(session_factory, config=test_config)
    try:
        reconciler.save([prop("status", "TODO", 4)], EntityType.NOTE, seeded["note_id"])
    finally:
        reconciler.close()

    assert http_client.post.call_count == 1
    http_client.close.assert_called_once()
