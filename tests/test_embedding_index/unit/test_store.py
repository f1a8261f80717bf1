"""Unit tests for the in-memory ordered key-value store."""

import pytest

from embedding_index.store import InMemoryOrderedStore


@pytest.fixture
def store() -> InMemoryOrderedStore:
    s = InMemoryOrderedStore()
    for key in ["05", "00", "ff", "03", "10"]:
        s.put(key, key.upper())
    return s


class TestInMemoryOrderedStore:
    """Tests for point and range operations."""

    def test_get_put(self, store):
        assert store.get("03") == "03"
        assert store.get("04") is None
        assert store.get("04", "missing") == "missing"

    def test_put_replaces(self, store):
        store.put("03", "new")
        assert store.get("03") == "new"
        assert len(store) == 5

    def test_delete(self, store):
        assert store.delete("03") is True
        assert store.delete("03") is False
        assert "03" not in store
        assert [k for k, _ in store.items()] == ["00", "05", "10", "ff"]

    def test_range_inclusive_ascending(self, store):
        assert list(store.range("00", "05")) == [("00", "00"), ("03", "03"), ("05", "05")]

    def test_range_limit(self, store):
        assert [k for k, _ in store.range("00", "ff", limit=2)] == ["00", "03"]

    def test_range_between_keys(self, store):
        assert list(store.range("06", "0f")) == []

    def test_inverted_range_is_empty(self, store):
        assert list(store.range("ff", "00")) == []

    def test_items_sorted(self, store):
        assert [k for k, _ in store.items()] == ["00", "03", "05", "10", "ff"]

    def test_clear(self, store):
        store.clear()
        assert len(store) == 0
        assert list(store.items()) == []

    def test_write_during_iteration(self, store):
        seen = []
        for key, _ in store.range("00", "ff"):
            seen.append(key)
            store.put("04", "late")
        assert seen == ["00", "03", "05", "10", "ff"]
        assert "04" in store

    def test_delete_during_iteration(self, store):
        seen = []
        for key, value in store.range("00", "ff"):
            seen.append((key, value))
            store.delete("05")
            store.delete("10")
        assert seen == [("00", "00"), ("03", "03"), ("05", "05"), ("10", "10"), ("ff", "FF")]
        assert "05" not in store

    def test_delete_during_items(self, store):
        keys = []
        for key, _ in store.items():
            keys.append(key)
            store.delete("ff")
        assert keys == ["00", "03", "05", "10", "ff"]
