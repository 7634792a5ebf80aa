"""
Read-only aggregates over the order and product caches.
"""
import csv
import io
from typing import Dict, List, Sequence

from pydantic import BaseModel

from schemas import Order, Product

LOW_STOCK_THRESHOLD = 10

CSV_HEADER = ["Order ID", "Customer", "Items", "Total", "Status", "Date"]


class Summary(BaseModel):
    total_revenue: float
    total_orders: int
    total_products: int
    total_customers: int
    avg_order_value: float
    low_stock_products: int
    out_of_stock_products: int


class CustomerStats(BaseModel):
    name: str
    total_orders: int
    total_spent: float
    last_order: str


class ProductSales(BaseModel):
    name: str
    cards_sold: int
    revenue: float


def summary(orders: Sequence[Order], products: Sequence[Product]) -> Summary:
    total_revenue = sum(o.total for o in orders)
    total_orders = len(orders)
    return Summary(
        total_revenue=round(total_revenue, 2),
        total_orders=total_orders,
        total_products=len(products),
        total_customers=len({o.customer_name for o in orders}),
        avg_order_value=round(total_revenue / total_orders, 2) if total_orders else 0.0,
        low_stock_products=sum(1 for p in products if p.stock < LOW_STOCK_THRESHOLD),
        out_of_stock_products=sum(1 for p in products if p.stock == 0),
    )


def customer_stats(orders: Sequence[Order]) -> List[CustomerStats]:
    stats: Dict[str, dict] = {}
    for o in orders:
        entry = stats.setdefault(
            o.customer_name,
            {"name": o.customer_name, "total_orders": 0, "total_spent": 0.0, "last_order": o.date},
        )
        entry["total_orders"] += 1
        entry["total_spent"] += o.total
        if o.date > entry["last_order"]:
            entry["last_order"] = o.date
    out = [
        CustomerStats(**{**s, "last_order": s["last_order"].isoformat()})
        for s in stats.values()
    ]
    return sorted(out, key=lambda c: c.total_spent, reverse=True)


def recent_orders(orders: Sequence[Order], limit: int = 5) -> List[Order]:
    return sorted(orders, key=lambda o: o.date, reverse=True)[:limit]


def top_products(orders: Sequence[Order], limit: int = 5) -> List[ProductSales]:
    sales: Dict[str, ProductSales] = {}
    for o in orders:
        for item in o.items:
            entry = sales.setdefault(item.name, ProductSales(name=item.name, cards_sold=0, revenue=0.0))
            entry.cards_sold += item.quantity
            entry.revenue += item.total_price
    return sorted(sales.values(), key=lambda p: p.revenue, reverse=True)[:limit]


def orders_to_csv(orders: Sequence[Order]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for o in orders:
        writer.writerow([
            o.id,
            o.customer_name,
            len(o.items),
            f"{o.total:.2f}",
            o.status.value,
            o.date.date().isoformat(),
        ])
    return buf.getvalue()
