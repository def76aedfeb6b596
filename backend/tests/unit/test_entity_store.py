from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from editorial_engine.core.errors import (
    ConcurrentModification,
    DuplicateEntity,
    EntityNotFound,
    EntityStoreError,
)
from editorial_engine.lib.entity_store import InMemoryEntityStore
from editorial_engine.lib.supabase_store import SupabaseEntityStore


# === 内存实现 ===


def test_create_assigns_id_and_version():
    store = InMemoryEntityStore()
    row = store.create("manuscripts", {"title": "T"})
    assert row["id"] and row["version"] == 1
    assert store.get("manuscripts", row["id"]) == row


def test_rows_are_copies():
    store = InMemoryEntityStore()
    row = store.create("manuscripts", {"title": "T", "author_ids": ["a"]})
    row["author_ids"].append("b")
    assert store.get("manuscripts", row["id"])["author_ids"] == ["a"]


def test_update_bumps_version_and_checks_expected_version():
    store = InMemoryEntityStore()
    row = store.create("manuscripts", {"status": "draft"})

    updated = store.update("manuscripts", row["id"], {"status": "submitted"}, expected_version=1)
    assert updated["version"] == 2

    with pytest.raises(ConcurrentModification):
        store.update("manuscripts", row["id"], {"status": "with_editor"}, expected_version=1)
    assert store.get("manuscripts", row["id"])["status"] == "submitted"

    with pytest.raises(EntityNotFound):
        store.update("manuscripts", "missing", {"status": "x"})


def test_unique_keys_raise_duplicate_entity():
    store = InMemoryEntityStore()
    store.create("invitation_reminders", {"invitation_id": "inv-1", "offset_days": 3})
    with pytest.raises(DuplicateEntity):
        store.create("invitation_reminders", {"invitation_id": "inv-1", "offset_days": 3})
    store.create("invitation_reminders", {"invitation_id": "inv-1", "offset_days": 7})


def test_null_columns_do_not_collide_on_unique_keys():
    store = InMemoryEntityStore()
    store.create("reviewer_training_tasks", {"reviewer_id": "r1", "open_slot": None})
    store.create("reviewer_training_tasks", {"reviewer_id": "r1", "open_slot": None})
    store.create("reviewer_training_tasks", {"reviewer_id": "r1", "open_slot": "r1"})
    with pytest.raises(DuplicateEntity):
        store.create("reviewer_training_tasks", {"reviewer_id": "r1", "open_slot": "r1"})


def test_list_filters_by_value_list_and_null():
    store = InMemoryEntityStore()
    store.seed(
        "reviewer_invitations",
        [
            {"id": "a", "status": "pending", "sent_at": None},
            {"id": "b", "status": "accepted", "sent_at": "2026-01-01"},
            {"id": "c", "status": "declined", "sent_at": None},
        ],
    )
    assert [r["id"] for r in store.list("reviewer_invitations", status=["pending", "accepted"])] == ["a", "b"]
    assert [r["id"] for r in store.list("reviewer_invitations", sent_at=None)] == ["a", "c"]
    assert store.first("reviewer_invitations", status="withdrawn") is None


def test_delete_frees_unique_key():
    store = InMemoryEntityStore()
    row = store.create("invitation_reminders", {"invitation_id": "i1", "offset_days": 3})

    assert store.delete("invitation_reminders", row["id"]) is True
    assert store.delete("invitation_reminders", row["id"]) is False
    assert store.list("invitation_reminders") == []
    store.create("invitation_reminders", {"invitation_id": "i1", "offset_days": 3})


# === Supabase 实现（MagicMock 链式调用） ===


def _client(data=None, error=None):
    client = MagicMock()
    chain = MagicMock()
    client.table.return_value = chain
    for method in ("select", "eq", "limit", "is_", "in_", "order", "insert", "update", "delete"):
        getattr(chain, method).return_value = chain
    if error is not None:
        chain.execute.side_effect = error
    else:
        chain.execute.return_value = SimpleNamespace(data=data or [])
    return client, chain


def test_supabase_list_translates_filters():
    client, chain = _client(data=[{"id": "a"}])
    store = SupabaseEntityStore(client)

    rows = store.list("reviewer_invitations", manuscript_id="m1", status=["pending", "accepted"], sent_at=None)

    assert rows == [{"id": "a"}]
    client.table.assert_called_with("reviewer_invitations")
    chain.eq.assert_called_with("manuscript_id", "m1")
    chain.in_.assert_called_with("status", ["pending", "accepted"])
    chain.is_.assert_called_with("sent_at", "null")
    chain.order.assert_called_with("created_at", desc=False)


def test_supabase_create_maps_unique_violation():
    error = APIError({"code": "23505", "message": "duplicate key value", "details": None, "hint": None})
    client, _chain = _client(error=error)
    with pytest.raises(DuplicateEntity):
        SupabaseEntityStore(client).create("decision_actions", {"decision_id": "d1"})


def test_supabase_create_wraps_other_errors():
    error = APIError({"code": "PGRST000", "message": "boom", "details": None, "hint": None})
    client, _chain = _client(error=error)
    with pytest.raises(EntityStoreError):
        SupabaseEntityStore(client).create("decision_actions", {"decision_id": "d1"})


def test_supabase_create_sets_id_and_version():
    client, chain = _client(data=[])
    row = SupabaseEntityStore(client).create("notifications", {"user_id": "u1"})
    payload = chain.insert.call_args[0][0]
    assert payload["version"] == 1 and payload["id"] == row["id"]


def test_supabase_cas_update_filters_on_version():
    client, chain = _client(data=[{"id": "m1", "version": 4}])
    row = SupabaseEntityStore(client).update("manuscripts", "m1", {"status": "accepted"}, expected_version=3)

    assert row["version"] == 4
    assert chain.update.call_args[0][0] == {"status": "accepted", "version": 4}
    chain.eq.assert_any_call("version", 3)


def test_supabase_cas_update_miss_is_concurrent_modification():
    client, chain = _client()
    chain.execute.side_effect = [SimpleNamespace(data=[]), SimpleNamespace(data=[{"id": "m1", "version": 5}])]
    with pytest.raises(ConcurrentModification):
        SupabaseEntityStore(client).update("manuscripts", "m1", {"status": "accepted"}, expected_version=3)


def test_supabase_cas_update_on_missing_row_is_not_found():
    client, chain = _client()
    chain.execute.side_effect = [SimpleNamespace(data=[]), SimpleNamespace(data=[])]
    with pytest.raises(EntityNotFound):
        SupabaseEntityStore(client).update("manuscripts", "m1", {"status": "accepted"}, expected_version=3)


def test_supabase_unconditional_update_reads_version_first():
    client, chain = _client()
    chain.execute.side_effect = [
        SimpleNamespace(data=[{"id": "m1", "version": 7}]),
        SimpleNamespace(data=[{"id": "m1", "version": 8, "doi": "10.5555/x"}]),
    ]
    row = SupabaseEntityStore(client).update("manuscripts", "m1", {"doi": "10.5555/x"})
    assert row["version"] == 8
    assert chain.update.call_args[0][0] == {"doi": "10.5555/x", "version": 8}


def test_supabase_delete_by_id():
    client, chain = _client(data=[{"id": "k1"}])

    assert SupabaseEntityStore(client).delete("invitation_reminders", "k1") is True
    client.table.assert_called_with("invitation_reminders")
    chain.delete.assert_called_once_with()
    chain.eq.assert_called_with("id", "k1")


def test_supabase_delete_wraps_errors():
    error = APIError({"code": "PGRST000", "message": "boom", "details": None, "hint": None})
    client, _chain = _client(error=error)
    with pytest.raises(EntityStoreError):
        SupabaseEntityStore(client).delete("invitation_reminders", "k1")
