"""
Back-office operations

Read-only sales metrics derived from the order history (optionally limited to
a recent time window) plus the mutations only an admin may perform: product
CRUD, stock edits, order status, review moderation and bulk order removal.

Concurrent admin edits are not reconciled; the last write wins.
"""
import calendar
import logging
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel

import database
from cart import floor_money, to_decimal
from catalog import to_stock
from schemas import ORDER_STATUSES, Product, ReviewStatus

logger = logging.getLogger(__name__)

TIME_RANGES = ("all", "1week", "15days", "1month")
TOP_PRODUCTS = 5


class ConfirmationRequired(Exception):
    """Raised by destructive operations called without explicit confirmation."""


class ProductInvalid(ValueError):
    pass


# ---------- Time ranges ----------

def _months_back(moment: datetime, months: int = 1) -> datetime:
    month = moment.month - months
    year = moment.year
    while month < 1:
        month += 12
        year -= 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def range_cutoff(time_range: str, now: Optional[datetime] = None) -> Optional[datetime]:
    if time_range not in TIME_RANGES:
        raise ValueError(f"Unknown time range: {time_range}")
    now = now or datetime.now(timezone.utc)
    if time_range == "1week":
        return now - timedelta(days=7)
    if time_range == "15days":
        return now - timedelta(days=15)
    if time_range == "1month":
        return _months_back(now)
    return None


def range_query(time_range: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    cutoff = range_cutoff(time_range, now)
    if cutoff is None:
        return {}
    return {"created_at": {"$gte": database.utc_now_iso(cutoff)}}


def parse_timestamp(value: Any) -> Optional[datetime]:
    parsed = database.parse_iso(value)
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def filter_by_range(docs: Iterable[Dict[str, Any]], time_range: str,
                    now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    cutoff = range_cutoff(time_range, now)
    if cutoff is None:
        return list(docs)
    selected = []
    for doc in docs:
        created = parse_timestamp(doc.get("created_at"))
        if created is not None and created >= cutoff:
            selected.append(doc)
    return selected


def newest_first(docs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(docs, key=lambda d: parse_timestamp(d.get("created_at")) or epoch, reverse=True)


# ---------- Metrics ----------

class SalesMetrics(BaseModel):
    total_revenue: int = 0
    order_count: int = 0
    average_order_value: int = 0


class ProductSales(BaseModel):
    id: str
    name: str
    total_quantity: int = 0
    total_revenue: int = 0


class ProductRanking(BaseModel):
    by_quantity: List[ProductSales] = []
    by_revenue: List[ProductSales] = []


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _valid_items(order: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = order.get("items")
    if not isinstance(items, list):
        return []
    return [
        item for item in items
        if isinstance(item, dict) and item.get("id") and item.get("name")
        and _is_number(item.get("quantity")) and _is_number(item.get("price"))
    ]


def order_total(order: Dict[str, Any]) -> Decimal:
    """Stored total, or the item snapshot sum when the order has none."""
    if _is_number(order.get("total")):
        return to_decimal(order["total"])
    return sum((to_decimal(i["price"]) * i["quantity"] for i in _valid_items(order)), Decimal(0))


def compute_metrics(orders: List[Dict[str, Any]]) -> SalesMetrics:
    revenue = sum((order_total(order) for order in orders), Decimal(0))
    count = len(orders)
    return SalesMetrics(
        total_revenue=floor_money(revenue),
        order_count=count,
        average_order_value=floor_money(revenue / count) if count else 0,
    )


def rank_products(orders: Iterable[Dict[str, Any]], top: Optional[int] = None) -> ProductRanking:
    quantities: Dict[str, int] = {}
    revenues: Dict[str, Decimal] = {}
    names: Dict[str, str] = {}
    for order in orders:
        for item in _valid_items(order):
            product_id = item["id"]
            names.setdefault(product_id, item["name"])
            quantities[product_id] = quantities.get(product_id, 0) + int(item["quantity"])
            revenues[product_id] = revenues.get(product_id, Decimal(0)) + to_decimal(item["price"]) * int(item["quantity"])

    def sales(product_id: str) -> ProductSales:
        return ProductSales(
            id=product_id,
            name=names[product_id],
            total_quantity=quantities[product_id],
            total_revenue=floor_money(revenues[product_id]),
        )

    by_quantity = sorted(names, key=lambda pid: quantities[pid], reverse=True)
    by_revenue = sorted(names, key=lambda pid: revenues[pid], reverse=True)
    if top is not None:
        by_quantity = by_quantity[:top]
        by_revenue = by_revenue[:top]
    return ProductRanking(
        by_quantity=[sales(pid) for pid in by_quantity],
        by_revenue=[sales(pid) for pid in by_revenue],
    )


def list_orders(time_range: str = "all", now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    return newest_first(database.get_documents("order", range_query(time_range, now)))


def bulk_clear_orders(confirmed: bool = False, time_range: str = "all",
                      now: Optional[datetime] = None) -> int:
    """Delete every order in the range. Irreversible."""
    if not confirmed:
        raise ConfirmationRequired("Deleting orders cannot be undone. Confirm to delete all orders.")
    deleted = database.delete_documents("order", range_query(time_range, now))
    logger.warning("Deleted %d orders (range %s)", deleted, time_range)
    return deleted


def update_order_status(order_id: str, status: str) -> bool:
    if status not in ORDER_STATUSES:
        raise ValueError(f"Unknown order status: {status}")
    return database.update_document("order", order_id, {"status": status})


# ---------- Inventory ----------

class ProductPayload(BaseModel):
    """Product form input; price and stock arrive as text or numbers."""
    name: str = ""
    description: Optional[str] = None
    price: Optional[Union[str, float]] = None
    stock: Optional[Union[str, int, float]] = 0
    category: Optional[str] = None
    image: Optional[str] = None


def parse_product(payload: ProductPayload) -> Product:
    try:
        price = to_decimal(payload.price)
    except ValueError:
        raise ProductInvalid("Price must be a valid number.")
    name = payload.name.strip()
    category = (payload.category or "").strip()
    if not name or price <= 0 or not category:
        raise ProductInvalid("Please complete all required fields (Name, Price > 0, Category).")
    return Product(
        name=name,
        description=(payload.description or "").strip() or None,
        price=float(price),
        stock=to_stock(payload.stock),
        category=category,
        image=payload.image or None,
    )


def create_product(payload: ProductPayload) -> str:
    product_id = database.create_document("product", parse_product(payload))
    logger.info("Product %s created", product_id)
    return product_id


def update_product(product_id: str, payload: ProductPayload) -> bool:
    return database.update_document("product", product_id, parse_product(payload).model_dump())


def delete_product(product_id: str, confirmed: bool = False) -> bool:
    if not confirmed:
        raise ConfirmationRequired("Deleting a product cannot be undone. Confirm to delete it.")
    return database.delete_document("product", product_id)


def set_stock(product_id: str, value: Any) -> Optional[int]:
    """Persist a clamped stock value; None when the product does not exist."""
    stock = to_stock(value)
    if not database.update_document("product", product_id, {"stock": stock}):
        return None
    return stock


# ---------- Reviews ----------

def list_reviews(time_range: str = "all", now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    return newest_first(database.get_documents("review", range_query(time_range, now)))


def update_review_status(review_id: str, status: ReviewStatus) -> bool:
    return database.update_document("review", review_id, {"status": status})


def delete_review(review_id: str, confirmed: bool = False) -> bool:
    if not confirmed:
        raise ConfirmationRequired("Deleting a review cannot be undone. Confirm to delete it.")
    return database.delete_document("review", review_id)


# ---------- Demo data ----------

DEMO_PRODUCTS = [
    {"name": "Muzzarella Pizza", "description": "Tomato sauce, muzzarella and green olives.",
     "price": 8500, "stock": 40, "category": "Pizzas"},
    {"name": "Napolitana Pizza", "description": "Muzzarella, fresh tomato, garlic and oregano.",
     "price": 9800, "stock": 30, "category": "Pizzas"},
    {"name": "Fugazzeta Pizza", "description": "Stuffed with muzzarella and caramelised onion.",
     "price": 10500, "stock": 20, "category": "Pizzas"},
    {"name": "Beef Empanada", "description": "Hand-cut beef, egg and olives.",
     "price": 1200, "stock": 120, "category": "Empanadas"},
    {"name": "Ham and Cheese Empanada", "description": "Cooked ham and muzzarella.",
     "price": 1100, "stock": 120, "category": "Empanadas"},
    {"name": "Chocolate Flan", "description": "With dulce de leche.",
     "price": 3200, "stock": 15, "category": "Desserts"},
]


def seed_demo(order_count: int = 0, now: Optional[datetime] = None) -> Dict[str, int]:
    """Fill an empty catalog with demo products and optionally fake past orders."""
    created_products = 0
    if not database.get_documents("product", {}, limit=1):
        for data in DEMO_PRODUCTS:
            database.create_document("product", Product(**data))
            created_products += 1

    from faker import Faker
    fake = Faker()
    now = now or datetime.now(timezone.utc)
    products = database.get_documents("product", {})
    created_orders = 0
    for _ in range(order_count if products else 0):
        picked = random.sample(products, k=min(len(products), random.randint(1, 3)))
        items = [
            {"id": p["id"], "name": p["name"], "price": float(p["price"]), "quantity": random.randint(1, 3)}
            for p in picked
        ]
        total = floor_money(sum((to_decimal(i["price"]) * i["quantity"] for i in items), Decimal(0)))
        created_at = database.utc_now_iso(now - timedelta(days=random.randint(0, 45), minutes=random.randint(0, 1440)))
        database.create_document("order", {
            "user_id": fake.uuid4(),
            "items": items,
            "total": total,
            "customer_info": {"name": fake.name(), "address": fake.street_address(),
                              "phone": fake.numerify("11########")},
            "payment_method": "mercadopago",
            "cash_amount": None,
            "change": None,
            "delivery_method": "delivery",
            "order_type": "immediate",
            "order_time": created_at,
            "notes": None,
            "status": random.choice(ORDER_STATUSES),
            "created_at": created_at,
        })
        created_orders += 1
    return {"products": created_products, "orders": created_orders}
