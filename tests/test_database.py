import json
import threading
from unittest.mock import MagicMock

import pytest

from pymongo import ASCENDING
from pymongo.errors import PyMongoError

import database
from database import STORAGE_KEYS, LocalAdapter, MongoAdapter, get_adapter
from errors import PersistenceError
from settings import PLACEHOLDER_DATABASE_URL, Settings


class TestLocalAdapter:
    def test_initialize_seeds_defaults(self, tmp_path):
        adapter = LocalAdapter(str(tmp_path))
        adapter.initialize_default_data()

        for key in STORAGE_KEYS.values():
            assert (tmp_path / f"{key}.json").exists()
        assert [c["name"] for c in adapter.select("categories")] == ["Small", "Medium", "Large"]
        assert [ct["quantity"] for ct in adapter.select("card_types")] == [100, 200, 400, 500]
        assert adapter.select("products") == []
        assert adapter.select("orders") == []

    def test_initialize_keeps_existing_rows(self, tmp_path):
        adapter = LocalAdapter(str(tmp_path))
        adapter.initialize_default_data()
        adapter.insert("products", {"name": "Water"})

        adapter.initialize_default_data()

        assert len(adapter.select("products")) == 1

    def test_insert_generates_id_and_timestamps(self, local_adapter):
        row = local_adapter.insert("categories", {"name": "Bulk", "is_default": False})

        assert row["id"]
        assert row["created_at"]
        assert row["updated_at"]
        assert row in local_adapter.select("categories")

    def test_insert_keeps_caller_id(self, local_adapter):
        row = local_adapter.insert("products", {"id": "p1", "name": "Water"})
        assert row["id"] == "p1"

    def test_insert_duplicate_id_fails(self, local_adapter):
        local_adapter.insert("products", {"id": "p1", "name": "Water"})
        with pytest.raises(PersistenceError):
            local_adapter.insert("products", {"id": "p1", "name": "Soda"})

    def test_update_merges_fields(self, local_adapter):
        local_adapter.insert("products", {"id": "p1", "name": "Water", "stock": 5})
        local_adapter.update("products", "p1", {"stock": 3, "id": "ignored"})

        (row,) = local_adapter.select("products")
        assert row["id"] == "p1"
        assert row["stock"] == 3
        assert row["name"] == "Water"

    def test_delete_removes_row(self, local_adapter):
        local_adapter.insert("products", {"id": "p1", "name": "Water"})
        local_adapter.delete("products", "p1")
        assert local_adapter.select("products") == []

    def test_select_ordering(self, local_adapter):
        assert [r["quantity"] for r in local_adapter.select("card_types", "quantity", descending=True)] == [
            500,
            400,
            200,
            100,
        ]

    def test_unknown_table(self, local_adapter):
        with pytest.raises(PersistenceError):
            local_adapter.select("customers")

    def test_corrupt_partition(self, tmp_path):
        adapter = LocalAdapter(str(tmp_path))
        (tmp_path / f"{STORAGE_KEYS['orders']}.json").write_text("{not json")
        with pytest.raises(PersistenceError):
            adapter.select("orders")

    def test_non_list_partition(self, tmp_path):
        adapter = LocalAdapter(str(tmp_path))
        (tmp_path / f"{STORAGE_KEYS['orders']}.json").write_text(json.dumps({"a": 1}))
        with pytest.raises(PersistenceError):
            adapter.select("orders")

    def test_subscribe_is_noop(self, local_adapter):
        calls = []
        unsubscribe = local_adapter.subscribe_to_changes("products", calls.append)
        local_adapter.insert("products", {"name": "Water"})
        unsubscribe()
        assert calls == []


class TestGetAdapter:
    def test_local_without_credentials(self, tmp_path):
        adapter = get_adapter(Settings(LOCAL_STORAGE_DIR=str(tmp_path)))
        assert isinstance(adapter, LocalAdapter)

    def test_local_without_access_key(self, tmp_path):
        settings = Settings(DATABASE_URL="mongodb://db.example.com:27017", LOCAL_STORAGE_DIR=str(tmp_path))
        assert isinstance(get_adapter(settings), LocalAdapter)

    def test_local_with_placeholder_url(self, tmp_path):
        settings = Settings(
            DATABASE_URL=PLACEHOLDER_DATABASE_URL,
            DATABASE_ACCESS_KEY="secret",
            LOCAL_STORAGE_DIR=str(tmp_path),
        )
        assert isinstance(get_adapter(settings), LocalAdapter)

    def test_remote_with_credentials(self, monkeypatch, memory_adapter):
        monkeypatch.setattr(database.MongoAdapter, "from_settings", classmethod(lambda cls, s: memory_adapter))
        settings = Settings(DATABASE_URL="mongodb://db.example.com:27017", DATABASE_ACCESS_KEY="secret")

        assert get_adapter(settings) is memory_adapter


class TestMongoAdapter:
    @pytest.fixture
    def collection(self):
        return MagicMock()

    @pytest.fixture
    def adapter(self, collection):
        db = MagicMock()
        db.__getitem__.return_value = collection
        return MongoAdapter(db)

    def test_select_exposes_id(self, adapter, collection):
        collection.find.return_value = [{"_id": "p1", "name": "Water"}]

        rows = adapter.select("products", "created_at")

        assert rows == [{"id": "p1", "name": "Water"}]
        collection.find.assert_called_once_with({}, sort=[("created_at", ASCENDING)])

    def test_insert_uses_id_as_primary_key(self, adapter, collection):
        row = adapter.insert("products", {"id": "p1", "name": "Water"})

        doc = collection.insert_one.call_args[0][0]
        assert doc["_id"] == "p1"
        assert "id" not in doc
        assert row["id"] == "p1"
        assert row["created_at"] and row["updated_at"]

    def test_update_sets_fields(self, adapter, collection):
        adapter.update("products", "p1", {"stock": 3, "id": "p2"})

        filt, change = collection.update_one.call_args[0]
        assert filt == {"_id": "p1"}
        assert change["$set"]["stock"] == 3
        assert "id" not in change["$set"]
        assert "updated_at" in change["$set"]

    def test_driver_errors_are_wrapped(self, adapter, collection):
        collection.delete_one.side_effect = PyMongoError("connection refused")

        with pytest.raises(PersistenceError) as exc:
            adapter.delete("products", "p1")
        assert isinstance(exc.value.__cause__, PyMongoError)

    def test_change_stream_delivers_events(self, adapter, collection):
        stream = MagicMock()
        stream.__iter__.return_value = iter([{"operationType": "insert"}])
        collection.watch.return_value = stream
        received = threading.Event()

        unsubscribe = adapter.subscribe_to_changes("orders", lambda change: received.set())

        assert received.wait(timeout=2)
        unsubscribe()
        stream.close.assert_called_once()
