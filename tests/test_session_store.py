from __future__ import annotations

import pytest

from conduit.shared.services.session_store import (
    STATUS_ABANDONED,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    SessionStore,
)


@pytest.fixture
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "nested" / "conduit.db")


def test_create_and_get(store) -> None:
    record = store.create("s1", "claude", "/w", model="sonnet", tab_index=2)
    assert record.id == "s1"
    assert record.status == STATUS_ACTIVE
    assert record.tab_index == 2
    assert record.total_tokens == 0
    assert store.get("s1") == record
    assert store.get("missing") is None


def test_create_existing_reactivates(store) -> None:
    store.create("s1", "claude", "/w", model="sonnet")
    store.update("s1", status=STATUS_COMPLETED, agent_session_id="b-1")
    record = store.create("s1", "claude", "/w")
    assert record.status == STATUS_ACTIVE
    assert record.model == "sonnet"
    assert record.agent_session_id == "b-1"


def test_update_rejects_unknown_columns_and_statuses(store) -> None:
    store.create("s1", "codex", "/w")
    with pytest.raises(ValueError, match="Cannot update"):
        store.update("s1", working_dir="/elsewhere")
    with pytest.raises(ValueError, match="Invalid session status"):
        store.update("s1", status="paused")


def test_update_counters_and_touch(store) -> None:
    before = store.create("s1", "codex", "/w")
    store.update("s1", total_tokens=120, turn_count=3, touch=True)
    after = store.get("s1")
    assert after.total_tokens == 120
    assert after.turn_count == 3
    assert after.last_active >= before.last_active


def test_list_filters_and_orders(store) -> None:
    store.create("old", "claude", "/w", tab_index=0)
    store.create("new", "gemini", "/w", tab_index=1)
    store.update("new", touch=True)
    store.update("old", status=STATUS_COMPLETED)
    assert [r.id for r in store.list()][0] == "new"
    assert [r.id for r in store.list(status=STATUS_COMPLETED)] == ["old"]
    assert store.next_tab_index() == 2


def test_mark_abandoned_only_touches_active_rows(store) -> None:
    store.create("a", "claude", "/w")
    store.create("b", "claude", "/w")
    store.update("b", status=STATUS_COMPLETED)
    assert store.mark_abandoned() == 1
    assert store.get("a").status == STATUS_ABANDONED
    assert store.get("b").status == STATUS_COMPLETED


def test_delete(store) -> None:
    store.create("s1", "claude", "/w")
    store.delete("s1")
    assert store.get("s1") is None
    assert store.list() == []


def test_to_dict(store) -> None:
    data = store.create("s1", "claude", "/w").to_dict()
    assert data["id"] == "s1"
    assert set(data) >= {"agent_type", "working_dir", "status", "last_active"}
