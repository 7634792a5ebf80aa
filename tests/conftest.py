"""
Pytest configuration and fixtures for the POS backend.
"""
import copy
from collections import defaultdict

import pytest

from cart import Cart
from checkout import Checkout
from database import TABLES, LocalAdapter, PersistenceAdapter, check_table, default_rows, now_iso
from errors import PersistenceError
from schemas import Product, ProductVariant, new_id
from stores import CardTypeStore, CategoryStore, OrderStore, ProductStore


class MemoryAdapter(PersistenceAdapter):
    """In-memory row store that emits change events and can be told to fail."""

    name = "memory"
    emits_changes = True

    def __init__(self):
        self.tables = {t: default_rows(t) for t in TABLES}
        self.fail_on = set()
        self.handlers = defaultdict(list)
        self.calls = []

    def _call(self, op, table):
        check_table(table)
        self.calls.append((op, table))
        if op in self.fail_on or (op, table) in self.fail_on:
            raise PersistenceError(f"{op} on {table} failed")

    def select(self, table, order_by=None, descending=False):
        self._call("select", table)
        rows = copy.deepcopy(self.tables[table])
        if order_by:
            rows.sort(key=lambda r: r.get(order_by), reverse=descending)
        return rows

    def insert(self, table, row):
        self._call("insert", table)
        now = now_iso()
        new_row = {**copy.deepcopy(row), "id": row.get("id") or new_id(), "created_at": now, "updated_at": now}
        self.tables[table].append(new_row)
        return copy.deepcopy(new_row)

    def update(self, table, id, fields):
        self._call("update", table)
        for row in self.tables[table]:
            if row["id"] == id:
                row.update(copy.deepcopy(fields), updated_at=now_iso())

    def delete(self, table, id):
        self._call("delete", table)
        self.tables[table] = [r for r in self.tables[table] if r["id"] != id]

    def subscribe_to_changes(self, table, on_change):
        self._call("subscribe", table)
        self.handlers[table].append(on_change)
        return lambda: self.handlers[table].remove(on_change)

    def emit(self, table, change=None):
        for handler in list(self.handlers[table]):
            handler(change or {"operationType": "update"})


@pytest.fixture
def memory_adapter():
    return MemoryAdapter()


@pytest.fixture
def local_adapter(tmp_path):
    adapter = LocalAdapter(str(tmp_path / "data"))
    adapter.initialize_default_data()
    return adapter


@pytest.fixture(params=["local", "memory"])
def adapter(request, tmp_path):
    if request.param == "local":
        adapter = LocalAdapter(str(tmp_path / "data"))
        adapter.initialize_default_data()
        return adapter
    return MemoryAdapter()


@pytest.fixture
def categories(adapter):
    store = CategoryStore(adapter)
    store.fetch_all()
    return store


@pytest.fixture
def card_types(adapter):
    store = CardTypeStore(adapter)
    store.fetch_all()
    return store


@pytest.fixture
def products(adapter, categories):
    store = ProductStore(adapter, categories=categories)
    store.fetch_all()
    return store


@pytest.fixture
def orders(adapter):
    store = OrderStore(adapter)
    store.fetch_all()
    return store


@pytest.fixture
def water(products):
    """Product p1: 50 bottles on hand, sold in cards of 10 at 2000 per card."""
    return products.add(
        Product(
            id="p1",
            name="Water",
            bottle_size="500ml",
            bottle_price=200,
            category="Small",
            stock=50,
            variants=[ProductVariant(id="v1", card_type="10-pack", quantity=10, total_price=2000)],
        )
    )


@pytest.fixture
def cart(products):
    return Cart(products)


@pytest.fixture
def checkout(cart, products, orders):
    return Checkout(cart, products, orders)
