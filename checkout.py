"""
Checkout workflow.

The order insert and the per-line stock decrements are separate persistence
calls with no transaction around them. A failure after the order is stored
leaves stock partly decremented; this is logged and surfaced, not repaired.
"""
import logging

from cart import Cart
from errors import InsufficientStockError, PersistenceError, ValidationError
from schemas import Order, OrderStatus, utcnow
from stores import OrderStore, ProductStore

logger = logging.getLogger(__name__)


class Checkout:
    def __init__(self, cart: Cart, products: ProductStore, orders: OrderStore):
        self.cart = cart
        self.products = products
        self.orders = orders

    def checkout(self, customer_name: str) -> Order:
        customer_name = (customer_name or "").strip()
        if not customer_name:
            raise ValidationError("Customer name is required")

        items = self.cart.items
        if not items:
            raise ValidationError("Cart is empty")

        # stock may have moved since the items were added
        for item in items:
            if not self.products.check_stock_availability(item.product_id, item.variant_id, item.quantity):
                logger.warning("Checkout for %s blocked: not enough stock for %s", customer_name, item.name)
                raise InsufficientStockError(item.name)

        order = self.orders.add(
            Order(
                items=items,
                total=self.cart.get_cart_total(),
                customer_name=customer_name,
                date=utcnow(),
                status=OrderStatus.completed,
            )
        )

        for item in items:
            product = self.products.get(item.product_id)
            if product is None:
                continue
            new_stock = max(0, product.stock - item.quantity * item.bottles_per_card)
            try:
                self.products.update_stock(item.product_id, new_stock)
            except PersistenceError:
                logger.exception(
                    "Order %s stored but stock update for %s failed; stock is partially decremented",
                    order.id,
                    item.product_id,
                )
                raise

        self.cart.clear_cart()
        logger.info("Order %s completed for %s, total %.2f", order.id, customer_name, order.total)
        return order
