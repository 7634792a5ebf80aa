import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from database import PersistenceAdapter
from errors import NotFoundError, POSError, ValidationError
from reports import (
    CustomerStats,
    ProductSales,
    Summary,
    customer_stats,
    orders_to_csv,
    recent_orders,
    summary,
    top_products,
)
from schemas import CardType, CartItem, Category, Order, Product, Role, build_variants
from services import POS
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

# -----------------------------
# Pydantic Schemas (API layer)
# -----------------------------
class ProductIn(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    bottle_size: str = ""
    bottle_price: float = Field(..., ge=0)
    category: str
    stock: int = Field(..., ge=0)
    card_type_ids: List[str] = Field(..., min_length=1)
    image: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    bottle_size: Optional[str] = None
    bottle_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    card_type_ids: Optional[List[str]] = Field(None, min_length=1)
    image: Optional[str] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None


class CardTypeIn(BaseModel):
    quantity: int = Field(..., gt=0)
    label: Optional[str] = None


class CardTypeUpdate(BaseModel):
    quantity: Optional[int] = Field(None, gt=0)
    label: Optional[str] = None


class CartAdd(BaseModel):
    product_id: str
    variant_id: str


class CartQuantity(BaseModel):
    quantity: int


class CartOut(BaseModel):
    items: List[CartItem]
    total: float


class CheckoutRequest(BaseModel):
    customer_name: str


class RoleIn(BaseModel):
    role: Role


class PassphraseIn(BaseModel):
    passphrase: str


class SessionOut(BaseModel):
    role: Role
    is_authenticated: bool
    can_manage: bool


class DashboardOut(BaseModel):
    total_revenue: float
    total_products: int
    total_orders: int
    low_stock_products: int
    recent_orders: List[Order]
    top_products: List[ProductSales]


# -----------------------------
# Dependencies
# -----------------------------
def get_pos(request: Request) -> POS:
    return request.app.state.pos


async def current_role(request: Request, x_user_role: Optional[Role] = Header(None)) -> Role:
    return x_user_role or get_pos(request).gate.role


def section(name: str):
    async def check(request: Request, role: Role = Depends(current_role)) -> Role:
        get_pos(request).gate.ensure_section(name, role)
        return role

    return check


async def admin_only(request: Request, role: Role = Depends(current_role)) -> Role:
    get_pos(request).gate.ensure_admin(role)
    return role


async def handle_pos_error(request: Request, exc: POSError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# -----------------------------
# Helpers
# -----------------------------
def resolve_card_types(pos: POS, ids: List[str]) -> List[CardType]:
    card_types = []
    for ct_id in ids:
        ct = pos.card_types.get(ct_id)
        if ct is None:
            raise ValidationError(f"Unknown card type: {ct_id}")
        card_types.append(ct)
    return card_types


def cart_out(pos: POS) -> CartOut:
    return CartOut(items=pos.cart.items, total=pos.cart.get_cart_total())


router = APIRouter()


@router.get("/")
async def root(pos: POS = Depends(get_pos)):
    return {"message": "POS Backend Running", "backend": pos.adapter.name}


@router.get("/health")
async def health(pos: POS = Depends(get_pos)):
    return {
        "status": "ok" if pos.adapter.ping() else "degraded",
        "backend": pos.adapter.name,
        "stores": {s.table: s.state.value for s in pos.stores},
    }


# -----------------------------
# Session / admin gate
# -----------------------------
@router.get("/auth/session", response_model=SessionOut)
@router.get("/auth/role", response_model=SessionOut)
async def get_session(pos: POS = Depends(get_pos), role: Role = Depends(current_role)):
    return SessionOut(role=role, is_authenticated=pos.gate.check_auth(), can_manage=pos.gate.can_manage(role))


@router.post("/auth/role", response_model=SessionOut)
async def set_role(payload: RoleIn, pos: POS = Depends(get_pos)):
    pos.gate.set_role(payload.role)
    return SessionOut(role=pos.gate.role, is_authenticated=pos.gate.check_auth(), can_manage=pos.gate.can_manage())


@router.post("/auth/admin", response_model=SessionOut)
async def unlock_admin(payload: PassphraseIn, pos: POS = Depends(get_pos)):
    if not pos.gate.authenticate(payload.passphrase):
        raise HTTPException(status_code=401, detail="Invalid admin passphrase")
    return SessionOut(role=pos.gate.role, is_authenticated=True, can_manage=pos.gate.can_manage())


@router.delete("/auth/admin", response_model=SessionOut)
async def lock_admin(pos: POS = Depends(get_pos)):
    pos.gate.logout()
    return SessionOut(role=pos.gate.role, is_authenticated=False, can_manage=False)


# -----------------------------
# Categories
# -----------------------------
@router.get("/categories", response_model=List[Category])
async def list_categories(pos: POS = Depends(get_pos)):
    return pos.categories.items


@router.post("/categories", response_model=Category, dependencies=[Depends(admin_only)])
async def create_category(payload: CategoryIn, pos: POS = Depends(get_pos)):
    return pos.categories.add(Category(**payload.model_dump()))


@router.put("/categories/{category_id}", response_model=Category, dependencies=[Depends(admin_only)])
async def update_category(category_id: str, payload: CategoryUpdate, pos: POS = Depends(get_pos)):
    return pos.categories.update(category_id, payload.model_dump(exclude_unset=True))


@router.delete("/categories/{category_id}", dependencies=[Depends(admin_only)])
async def delete_category(category_id: str, pos: POS = Depends(get_pos)):
    pos.categories.require(category_id)
    pos.categories.delete(category_id)
    return {"message": "deleted"}


# -----------------------------
# Card types
# -----------------------------
@router.get("/card-types", response_model=List[CardType])
async def list_card_types(pos: POS = Depends(get_pos)):
    return pos.card_types.items


@router.post("/card-types", response_model=CardType, dependencies=[Depends(admin_only)])
async def create_card_type(payload: CardTypeIn, pos: POS = Depends(get_pos)):
    return pos.card_types.add(CardType(quantity=payload.quantity, label=payload.label or ""))


@router.put("/card-types/{card_type_id}", response_model=CardType, dependencies=[Depends(admin_only)])
async def update_card_type(card_type_id: str, payload: CardTypeUpdate, pos: POS = Depends(get_pos)):
    return pos.card_types.update(card_type_id, payload.model_dump(exclude_unset=True))


@router.delete("/card-types/{card_type_id}", dependencies=[Depends(admin_only)])
async def delete_card_type(card_type_id: str, pos: POS = Depends(get_pos)):
    pos.card_types.require(card_type_id)
    pos.card_types.delete(card_type_id)
    return {"message": "deleted"}


# -----------------------------
# Products
# -----------------------------
@router.get("/products", response_model=List[Product])
async def list_products(
    q: Optional[str] = Query(None, description="Search by name"),
    category: Optional[str] = None,
    pos: POS = Depends(get_pos),
):
    return pos.products.search(q or "", category)


@router.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: str, pos: POS = Depends(get_pos)):
    return pos.products.require(product_id)


@router.post("/products", response_model=Product, dependencies=[Depends(admin_only)])
async def create_product(payload: ProductIn, pos: POS = Depends(get_pos)):
    card_types = resolve_card_types(pos, payload.card_type_ids)
    data = payload.model_dump(exclude={"card_type_ids"}, exclude_none=True)
    product = Product(**data, variants=build_variants(payload.bottle_price, card_types))
    return pos.products.add(product)


@router.put("/products/{product_id}", response_model=Product, dependencies=[Depends(admin_only)])
async def update_product(product_id: str, payload: ProductUpdate, pos: POS = Depends(get_pos)):
    current = pos.products.require(product_id)
    fields = payload.model_dump(exclude_unset=True, exclude={"card_type_ids"})
    if payload.card_type_ids is not None:
        price = fields.get("bottle_price", current.bottle_price)
        card_types = resolve_card_types(pos, payload.card_type_ids)
        fields["variants"] = build_variants(price, card_types, existing=current.variants)
    return pos.products.update(product_id, fields)


@router.delete("/products/{product_id}", dependencies=[Depends(admin_only)])
async def delete_product(product_id: str, pos: POS = Depends(get_pos)):
    pos.products.require(product_id)
    pos.products.delete(product_id)
    return {"message": "deleted"}


# -----------------------------
# Cart & checkout
# -----------------------------
pos_only = [Depends(section("pos"))]


@router.get("/cart", response_model=CartOut, dependencies=pos_only)
async def get_cart(pos: POS = Depends(get_pos)):
    return cart_out(pos)


@router.post("/cart/items", response_model=CartOut, dependencies=pos_only)
async def add_cart_item(payload: CartAdd, pos: POS = Depends(get_pos)):
    product = pos.products.require(payload.product_id)
    variant = product.get_variant(payload.variant_id)
    if variant is None:
        raise NotFoundError(f"Variant {payload.variant_id} not found")
    pos.cart.add_to_cart(product, variant)
    return cart_out(pos)


@router.put("/cart/items/{item_id}", response_model=CartOut, dependencies=pos_only)
async def update_cart_item(item_id: str, payload: CartQuantity, pos: POS = Depends(get_pos)):
    if payload.quantity > 0 and pos.cart.get(item_id) is None:
        raise NotFoundError(f"Cart item {item_id} not found")
    pos.cart.update_cart_quantity(item_id, payload.quantity)
    return cart_out(pos)


@router.delete("/cart/items/{item_id}", response_model=CartOut, dependencies=pos_only)
async def remove_cart_item(item_id: str, pos: POS = Depends(get_pos)):
    pos.cart.remove_from_cart(item_id)
    return cart_out(pos)


@router.delete("/cart", response_model=CartOut, dependencies=pos_only)
async def clear_cart(pos: POS = Depends(get_pos)):
    pos.cart.clear_cart()
    return cart_out(pos)


@router.post("/checkout", response_model=Order, dependencies=pos_only)
async def checkout(payload: CheckoutRequest, pos: POS = Depends(get_pos)):
    return pos.checkout.checkout(payload.customer_name)


# -----------------------------
# Orders & customers
# -----------------------------
@router.get("/orders", response_model=List[Order], dependencies=[Depends(section("orders"))])
async def list_orders(q: Optional[str] = Query(None, description="Customer name or order id"), pos: POS = Depends(get_pos)):
    return pos.orders.search(q or "")


@router.get("/orders/export", dependencies=[Depends(section("orders"))])
async def export_orders(q: Optional[str] = None, pos: POS = Depends(get_pos)):
    filename = f"orders-{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.csv"
    return Response(
        content=orders_to_csv(pos.orders.search(q or "")),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/orders/{order_id}", response_model=Order, dependencies=[Depends(section("orders"))])
async def get_order(order_id: str, pos: POS = Depends(get_pos)):
    return pos.orders.require(order_id)


@router.delete("/orders/{order_id}", dependencies=[Depends(admin_only)])
async def delete_order(order_id: str, pos: POS = Depends(get_pos)):
    pos.orders.require(order_id)
    pos.orders.delete(order_id)
    return {"message": "deleted"}


@router.get("/customers", response_model=List[CustomerStats], dependencies=[Depends(section("customers"))])
async def list_customers(pos: POS = Depends(get_pos)):
    return customer_stats(pos.orders.items)


# -----------------------------
# Dashboard & reports
# -----------------------------
@router.get("/dashboard", response_model=DashboardOut, dependencies=[Depends(section("dashboard"))])
async def dashboard(pos: POS = Depends(get_pos)):
    s = summary(pos.orders.items, pos.products.items)
    return DashboardOut(
        total_revenue=s.total_revenue,
        total_products=s.total_products,
        total_orders=s.total_orders,
        low_stock_products=s.low_stock_products,
        recent_orders=recent_orders(pos.orders.items),
        top_products=top_products(pos.orders.items),
    )


@router.get("/reports/summary", response_model=Summary, dependencies=[Depends(section("reports"))])
async def report_summary(pos: POS = Depends(get_pos)):
    return summary(pos.orders.items, pos.products.items)


@router.get("/reports/recent-orders", response_model=List[Order], dependencies=[Depends(section("reports"))])
async def report_recent_orders(limit: int = Query(5, ge=1, le=100), pos: POS = Depends(get_pos)):
    return recent_orders(pos.orders.items, limit)


@router.get("/reports/top-products", response_model=List[ProductSales], dependencies=[Depends(section("reports"))])
async def report_top_products(limit: int = Query(5, ge=1, le=100), pos: POS = Depends(get_pos)):
    return top_products(pos.orders.items, limit)


@router.get("/reports/low-stock", response_model=List[Product], dependencies=[Depends(section("reports"))])
async def report_low_stock(threshold: int = Query(10, ge=0), pos: POS = Depends(get_pos)):
    return pos.products.low_stock(threshold)


# -----------------------------
# FastAPI App
# -----------------------------
def create_app(settings: Optional[Settings] = None, adapter: Optional[PersistenceAdapter] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pos = POS.build(settings, adapter)
        pos.load()
        pos.subscribe(asyncio.get_running_loop().call_soon_threadsafe)
        app.state.pos = pos
        logger.info("POS ready on %s backend", pos.adapter.name)
        try:
            yield
        finally:
            pos.close()

    app = FastAPI(title="Newlife POS API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(POSError, handle_pos_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
