"""
Persistence adapters for the POS stores.

Two interchangeable row stores sit behind PersistenceAdapter:

* MongoAdapter - a hosted MongoDB database. Change streams deliver change
  notifications so every connected process can refresh its caches.
* LocalAdapter - one JSON document per table in a local directory. There is
  no cross-process notification; subscribing is a no-op.

get_adapter() picks one of them once, at startup, from the settings.
"""
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import PersistenceError
from schemas import new_id
from settings import Settings

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
ChangeHandler = Callable[[Row], None]
Unsubscribe = Callable[[], None]

TABLES = ("products", "orders", "categories", "card_types")

SEED_TIMESTAMP = "2024-01-01T00:00:00Z"

DEFAULT_ROWS: Dict[str, List[Row]] = {
    "categories": [
        {"id": "small", "name": "Small", "description": "Small sized water bottles", "is_default": True},
        {"id": "medium", "name": "Medium", "description": "Medium sized water bottles", "is_default": True},
        {"id": "large", "name": "Large", "description": "Large sized water bottles", "is_default": True},
    ],
    "card_types": [
        {"id": str(qty), "label": f"{qty}-pack", "quantity": qty, "is_default": True}
        for qty in (100, 200, 400, 500)
    ],
    "products": [],
    "orders": [],
}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_rows(table: str) -> List[Row]:
    return [
        {**row, "created_at": SEED_TIMESTAMP, "updated_at": SEED_TIMESTAMP}
        for row in DEFAULT_ROWS.get(table, [])
    ]


def check_table(table: str) -> None:
    if table not in TABLES:
        raise PersistenceError(f"Unknown table: {table}")


def _noop() -> None:
    return None


# -----------------------------
# Adapter interface
# -----------------------------
class PersistenceAdapter(ABC):
    """Table-scoped select/insert/update/delete plus change subscription."""

    name = "abstract"
    emits_changes = False

    @abstractmethod
    def select(self, table: str, order_by: Optional[str] = None, descending: bool = False) -> List[Row]:
        ...

    @abstractmethod
    def insert(self, table: str, row: Row) -> Row:
        """Persist ``row`` and return it with ``id`` and timestamps filled in."""

    @abstractmethod
    def update(self, table: str, id: str, fields: Row) -> None:
        ...

    @abstractmethod
    def delete(self, table: str, id: str) -> None:
        ...

    def subscribe_to_changes(self, table: str, on_change: ChangeHandler) -> Unsubscribe:
        check_table(table)
        return _noop

    def ping(self) -> bool:
        return True

    def initialize_default_data(self) -> None:
        for table in ("categories", "card_types"):
            if not self.select(table):
                logger.info("Seeding default %s", table)
                for row in default_rows(table):
                    self.insert(table, row)


# -----------------------------
# Remote backend (MongoDB)
# -----------------------------
def to_row(doc: Dict[str, Any]) -> Row:
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


@contextmanager
def wrap_errors(op: str, table: str):
    try:
        yield
    except PyMongoError as e:
        logger.error("MongoDB %s on %s failed: %s", op, table, e)
        raise PersistenceError(f"Failed to {op} {table}: {e}") from e


class MongoAdapter(PersistenceAdapter):
    name = "mongodb"
    emits_changes = True

    def __init__(self, db: Database):
        self.db = db

    @classmethod
    def from_settings(cls, settings: Settings) -> "MongoAdapter":
        client = MongoClient(
            settings.DATABASE_URL,
            username=settings.DATABASE_USERNAME,
            password=settings.DATABASE_ACCESS_KEY,
        )
        return cls(client[settings.DATABASE_NAME])

    def select(self, table: str, order_by: Optional[str] = None, descending: bool = False) -> List[Row]:
        check_table(table)
        sort = [(order_by, DESCENDING if descending else ASCENDING)] if order_by else None
        with wrap_errors("select", table):
            return [to_row(d) for d in self.db[table].find({}, sort=sort)]

    def insert(self, table: str, row: Row) -> Row:
        check_table(table)
        now = now_iso()
        doc = {**row, "created_at": row.get("created_at") or now, "updated_at": now}
        doc["_id"] = doc.pop("id", None) or new_id()
        with wrap_errors("insert", table):
            self.db[table].insert_one(doc)
        return to_row(doc)

    def update(self, table: str, id: str, fields: Row) -> None:
        check_table(table)
        changes = {k: v for k, v in fields.items() if k != "id"}
        changes["updated_at"] = now_iso()
        with wrap_errors("update", table):
            self.db[table].update_one({"_id": id}, {"$set": changes})

    def delete(self, table: str, id: str) -> None:
        check_table(table)
        with wrap_errors("delete", table):
            self.db[table].delete_one({"_id": id})

    def subscribe_to_changes(self, table: str, on_change: ChangeHandler) -> Unsubscribe:
        check_table(table)
        with wrap_errors("watch", table):
            stream = self.db[table].watch()

        def listen():
            try:
                for change in stream:
                    on_change(change)
            except PyMongoError as e:
                # closing the stream from unsubscribe() ends the loop with an error
                if stream.alive:
                    logger.error("Change stream on %s stopped: %s", table, e)

        threading.Thread(target=listen, name=f"{table}-changes", daemon=True).start()
        logger.info("Subscribed to %s changes", table)
        return stream.close

    def ping(self) -> bool:
        with wrap_errors("ping", "database"):
            self.db.command("ping")
        return True


# -----------------------------
# Local backend (JSON files)
# -----------------------------
STORAGE_KEYS = {
    "products": "newlife-pos-products",
    "orders": "newlife-pos-orders",
    "categories": "newlife-pos-categories",
    "card_types": "newlife-pos-card-types",
}


class LocalAdapter(PersistenceAdapter):
    name = "local"

    def __init__(self, storage_dir: str):
        self.storage_dir = Path(storage_dir)

    def path_for(self, table: str) -> Path:
        check_table(table)
        return self.storage_dir / f"{STORAGE_KEYS[table]}.json"

    def _read(self, table: str) -> List[Row]:
        path = self.path_for(table)
        if not path.exists():
            return default_rows(table)
        try:
            with path.open(encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {table}: {e}") from e
        if not isinstance(data, list):
            raise PersistenceError(f"Failed to read {table}: expected a list of rows")
        return data

    def _write(self, table: str, rows: List[Row]) -> None:
        path = self.path_for(table)
        tmp = None
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.storage_dir, prefix=path.stem, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(rows, fh, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            if tmp and os.path.exists(tmp):
                os.unlink(tmp)
            logger.error("Failed to save %s to %s: %s", table, path, e)
            raise PersistenceError(f"Failed to save {table}: {e}") from e

    def select(self, table: str, order_by: Optional[str] = None, descending: bool = False) -> List[Row]:
        rows = self._read(table)
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        return rows

    def insert(self, table: str, row: Row) -> Row:
        rows = self._read(table)
        now = now_iso()
        new_row = {
            **row,
            "id": row.get("id") or new_id(),
            "created_at": row.get("created_at") or now,
            "updated_at": now,
        }
        if any(r.get("id") == new_row["id"] for r in rows):
            raise PersistenceError(f"Failed to insert {table}: duplicate id {new_row['id']}")
        rows.append(new_row)
        self._write(table, rows)
        return new_row

    def update(self, table: str, id: str, fields: Row) -> None:
        changes = {k: v for k, v in fields.items() if k != "id"}
        changes["updated_at"] = now_iso()
        rows = [{**r, **changes} if r.get("id") == id else r for r in self._read(table)]
        self._write(table, rows)

    def delete(self, table: str, id: str) -> None:
        rows = [r for r in self._read(table) if r.get("id") != id]
        self._write(table, rows)

    def ping(self) -> bool:
        return self.storage_dir.is_dir()

    def initialize_default_data(self) -> None:
        for table in TABLES:
            rows = self._read(table)
            if not self.path_for(table).exists() or not rows:
                if table in ("categories", "card_types"):
                    logger.info("Seeding default %s in %s", table, self.storage_dir)
                self._write(table, rows or default_rows(table))


def get_adapter(settings: Settings) -> PersistenceAdapter:
    if settings.has_remote_credentials:
        logger.info("Using MongoDB backend (database %s)", settings.DATABASE_NAME)
        adapter: PersistenceAdapter = MongoAdapter.from_settings(settings)
    else:
        logger.info("Remote database not configured; using local storage in %s", settings.LOCAL_STORAGE_DIR)
        adapter = LocalAdapter(settings.LOCAL_STORAGE_DIR)
    adapter.initialize_default_data()
    return adapter
