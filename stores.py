"""
Entity stores.

Each store owns one table's in-memory cache and funnels every mutation
through the injected PersistenceAdapter. After a successful write the store
applies the same change to its cache; with a change-emitting backend the
following change event replaces the cache wholesale via fetch_all().
"""
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError

from database import PersistenceAdapter, Unsubscribe
from errors import (
    DefaultEntityProtectedError,
    NotFoundError,
    PersistenceError,
    POSError,
    ValidationError,
)
from schemas import CardType, Category, Order, Product

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

Dispatch = Callable[[Callable[[], Any]], Any]

PROTECTED_FIELDS = ("id", "created_at", "updated_at")


class StoreState(str, Enum):
    idle = "idle"
    loading = "loading"
    ready = "ready"
    error = "error"


class EntityStore(Generic[T]):
    table: str
    model: Type[T]
    order_by = "created_at"
    descending = False

    def __init__(self, adapter: PersistenceAdapter):
        self.adapter = adapter
        self.items: List[T] = []
        self.state = StoreState.idle
        self.error: Optional[str] = None

    @property
    def loading(self) -> bool:
        return self.state is StoreState.loading

    def sort_key(self, item: T) -> Any:
        return item.created_at or ""

    def _sort(self) -> None:
        self.items.sort(key=self.sort_key, reverse=self.descending)

    @contextmanager
    def recording_errors(self, op: str):
        try:
            yield
        except POSError as e:
            self.error = e.message
            if not isinstance(e, PersistenceError):
                logger.warning("%s %s rejected: %s", self.table, op, e.message)
            raise

    def _parse(self, row: Dict[str, Any]) -> T:
        try:
            return self.model.model_validate(row)
        except ModelValidationError as e:
            raise PersistenceError(f"Malformed {self.table} row {row.get('id')}: {e}") from e

    # -----------------------------
    # Reads
    # -----------------------------
    def fetch_all(self) -> List[T]:
        self.state = StoreState.loading
        self.error = None
        try:
            rows = self.adapter.select(self.table, self.order_by, self.descending)
            items = [self._parse(r) for r in rows]
        except PersistenceError as e:
            self.state = StoreState.error
            self.error = e.message
            raise
        self.items = items
        self._sort()
        self.state = StoreState.ready
        return self.items

    def refresh(self) -> None:
        """fetch_all() for change callbacks; the failure stays on ``error``."""
        try:
            self.fetch_all()
        except PersistenceError as e:
            logger.error("Refreshing %s after a change failed: %s", self.table, e.message)

    def get(self, id: str) -> Optional[T]:
        return next((item for item in self.items if item.id == id), None)

    def require(self, id: str) -> T:
        item = self.get(id)
        if item is None:
            raise NotFoundError(f"{self.model.__name__} {id} not found")
        return item

    # -----------------------------
    # Validation hooks
    # -----------------------------
    def validate_new(self, entity: T) -> None:
        pass

    def validate_update(self, id: str, fields: Dict[str, Any]) -> None:
        pass

    def validate_delete(self, id: str) -> None:
        pass

    # -----------------------------
    # Writes
    # -----------------------------
    def add(self, entity: T) -> T:
        with self.recording_errors("add"):
            self.validate_new(entity)
            row = entity.model_dump(mode="json", exclude={"created_at", "updated_at"})
            if row.get("id") is None:
                row.pop("id", None)
            saved = self._parse(self.adapter.insert(self.table, row))
        self.items.append(saved)
        self._sort()
        logger.info("Added %s %s", self.table, saved.id)
        return saved

    def update(self, id: str, fields: Dict[str, Any]) -> T:
        fields = {k: v for k, v in fields.items() if k not in PROTECTED_FIELDS}
        with self.recording_errors("update"):
            current = self.require(id)
            try:
                merged = self.model.model_validate({**current.model_dump(), **fields})
            except ModelValidationError as e:
                raise ValidationError(str(e)) from e
            self.validate_update(id, fields)
            self.adapter.update(self.table, id, merged.model_dump(mode="json", include=set(fields)))
        self.items = [merged if item.id == id else item for item in self.items]
        self._sort()
        return merged

    def delete(self, id: str) -> None:
        with self.recording_errors("delete"):
            self.validate_delete(id)
            self.adapter.delete(self.table, id)
        self.items = [item for item in self.items if item.id != id]
        logger.info("Deleted %s %s", self.table, id)

    def subscribe_to_changes(self, dispatch: Optional[Dispatch] = None) -> Unsubscribe:
        """Refetch on every backend change event.

        ``dispatch`` receives the refresh callable; pass the event loop's
        ``call_soon_threadsafe`` to run refreshes on the loop thread.
        """
        def on_change(change):
            if dispatch is not None:
                dispatch(self.refresh)
            else:
                self.refresh()

        return self.adapter.subscribe_to_changes(self.table, on_change)


# -----------------------------
# Categories
# -----------------------------
class CategoryStore(EntityStore[Category]):
    table = "categories"
    model = Category

    def get_by_name(self, name: str) -> Optional[Category]:
        return next((c for c in self.items if c.name == name), None)

    def validate_delete(self, id: str) -> None:
        category = self.get(id)
        if category is not None and category.is_default:
            raise DefaultEntityProtectedError("Cannot delete default categories")


# -----------------------------
# Card types
# -----------------------------
class CardTypeStore(EntityStore[CardType]):
    table = "card_types"
    model = CardType
    order_by = "quantity"

    def sort_key(self, item: CardType) -> Any:
        return item.quantity

    def _check_quantity(self, quantity: int, exclude_id: Optional[str] = None) -> None:
        if any(ct.quantity == quantity and ct.id != exclude_id for ct in self.items):
            raise ValidationError(f"A card type with {quantity} bottles already exists")

    def validate_new(self, entity: CardType) -> None:
        self._check_quantity(entity.quantity)

    def validate_update(self, id: str, fields: Dict[str, Any]) -> None:
        if fields.get("quantity") is not None:
            self._check_quantity(fields["quantity"], exclude_id=id)

    def validate_delete(self, id: str) -> None:
        card_type = self.get(id)
        if card_type is not None and card_type.is_default:
            raise DefaultEntityProtectedError("Cannot delete default card types")


# -----------------------------
# Products
# -----------------------------
class ProductStore(EntityStore[Product]):
    table = "products"
    model = Product

    def __init__(self, adapter: PersistenceAdapter, categories: Optional[CategoryStore] = None):
        super().__init__(adapter)
        self.categories = categories

    def _check_category(self, name: str) -> None:
        if self.categories is not None and self.categories.get_by_name(name) is None:
            raise ValidationError(f"Unknown category: {name}")

    def validate_new(self, entity: Product) -> None:
        self._check_category(entity.category)
        if self.get(entity.id) is not None:
            raise ValidationError(f"Product {entity.id} already exists")

    def validate_update(self, id: str, fields: Dict[str, Any]) -> None:
        if "category" in fields:
            self._check_category(fields["category"])

    def check_stock_availability(self, product_id: str, variant_id: str, requested_cards: int) -> bool:
        product = self.get(product_id)
        if product is None:
            return False
        variant = product.get_variant(variant_id)
        if variant is None:
            return False
        return product.stock >= requested_cards * variant.quantity

    def update_stock(self, product_id: str, stock: int) -> Product:
        return self.update(product_id, {"stock": stock})

    def search(self, term: str = "", category: Optional[str] = None) -> List[Product]:
        term = term.lower()
        return [
            p
            for p in self.items
            if term in p.name.lower() and (category is None or p.category == category)
        ]

    def low_stock(self, threshold: int = 10) -> List[Product]:
        return [p for p in self.items if p.stock < threshold]


# -----------------------------
# Orders
# -----------------------------
class OrderStore(EntityStore[Order]):
    table = "orders"
    model = Order
    order_by = "date"
    descending = True

    def sort_key(self, item: Order) -> Any:
        return item.date

    def search(self, term: str = "") -> List[Order]:
        term = term.lower()
        return [o for o in self.items if term in o.customer_name.lower() or term in (o.id or "")]
