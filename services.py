import logging
from dataclasses import dataclass, field
from typing import List, Optional

from auth import AdminGate
from cart import Cart
from checkout import Checkout
from database import PersistenceAdapter, Unsubscribe, get_adapter
from errors import PersistenceError
from settings import Settings
from stores import CardTypeStore, CategoryStore, Dispatch, EntityStore, OrderStore, ProductStore

logger = logging.getLogger(__name__)


@dataclass
class POS:
    """Every service object of one running shop, built once at startup."""

    adapter: PersistenceAdapter
    categories: CategoryStore
    card_types: CardTypeStore
    products: ProductStore
    orders: OrderStore
    cart: Cart
    checkout: Checkout
    gate: AdminGate
    unsubscribers: List[Unsubscribe] = field(default_factory=list)

    @classmethod
    def build(cls, settings: Settings, adapter: Optional[PersistenceAdapter] = None) -> "POS":
        adapter = adapter or get_adapter(settings)
        categories = CategoryStore(adapter)
        products = ProductStore(adapter, categories=categories)
        orders = OrderStore(adapter)
        cart = Cart(products)
        return cls(
            adapter=adapter,
            categories=categories,
            card_types=CardTypeStore(adapter),
            products=products,
            orders=orders,
            cart=cart,
            checkout=Checkout(cart, products, orders),
            gate=AdminGate(settings.ADMIN_PASSPHRASE, settings.LOCAL_STORAGE_DIR),
        )

    @property
    def stores(self) -> List[EntityStore]:
        return [self.categories, self.card_types, self.products, self.orders]

    def load(self) -> None:
        for store in self.stores:
            store.refresh()

    def subscribe(self, dispatch: Optional[Dispatch] = None) -> None:
        if not self.adapter.emits_changes:
            return
        for store in self.stores:
            try:
                self.unsubscribers.append(store.subscribe_to_changes(dispatch))
            except PersistenceError as e:
                # writes still work; this store just won't see other clients' changes
                store.error = e.message
                logger.error("Live updates for %s unavailable: %s", store.table, e.message)

    def close(self) -> None:
        for unsubscribe in self.unsubscribers:
            unsubscribe()
        self.unsubscribers.clear()
