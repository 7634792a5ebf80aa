import logging
from typing import List, Optional

from errors import InsufficientStockError
from schemas import CartItem, Product, ProductVariant
from stores import ProductStore

logger = logging.getLogger(__name__)


def cart_item_id(product_id: str, variant_id: str) -> str:
    return f"{product_id}-{variant_id}"


class Cart:
    """Local-only cart. Every increase is checked against current product stock."""

    def __init__(self, products: ProductStore):
        self.products = products
        self._items: List[CartItem] = []

    @property
    def items(self) -> List[CartItem]:
        return [item.model_copy() for item in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def get(self, cart_item_id: str) -> Optional[CartItem]:
        item = self._find(cart_item_id)
        return item.model_copy() if item else None

    def _find(self, cart_item_id: str) -> Optional[CartItem]:
        return next((i for i in self._items if i.id == cart_item_id), None)

    def _ensure_available(self, product_id: str, variant_id: str, cards: int, name: str) -> None:
        if not self.products.check_stock_availability(product_id, variant_id, cards):
            logger.warning("Not enough stock for %s x%d", name, cards)
            raise InsufficientStockError(name)

    def add_to_cart(self, product: Product, variant: ProductVariant) -> CartItem:
        item_id = cart_item_id(product.id, variant.id)
        existing = self._find(item_id)
        if existing is not None:
            quantity = existing.quantity + 1
            self._ensure_available(product.id, variant.id, quantity, product.name)
            existing.quantity = quantity
            existing.total_price = quantity * existing.price_per_card
            return existing.model_copy()

        self._ensure_available(product.id, variant.id, 1, product.name)
        item = CartItem(
            id=item_id,
            product_id=product.id,
            variant_id=variant.id,
            name=f"{product.name} - {product.bottle_size}",
            bottle_size=product.bottle_size,
            card_type=variant.card_type,
            quantity=1,
            bottles_per_card=variant.quantity,
            price_per_card=variant.total_price,
            total_price=variant.total_price,
        )
        self._items.append(item)
        return item.model_copy()

    def update_cart_quantity(self, cart_item_id: str, quantity: int) -> Optional[CartItem]:
        if quantity <= 0:
            self.remove_from_cart(cart_item_id)
            return None
        item = self._find(cart_item_id)
        if item is None:
            return None
        self._ensure_available(item.product_id, item.variant_id, quantity, item.name)
        item.quantity = quantity
        item.total_price = quantity * item.price_per_card
        return item.model_copy()

    def remove_from_cart(self, cart_item_id: str) -> None:
        self._items = [i for i in self._items if i.id != cart_item_id]

    def clear_cart(self) -> None:
        self._items = []

    def get_cart_total(self) -> float:
        return sum(item.total_price for item in self._items)
