"""
Catalog store

Keeps the live product list delivered by the "product" subscription and
derives the storefront views from it: search, category grouping, featured and
favourite products. Stock bounds for carts are read from here.
"""
import logging
import threading
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import database
from cart import to_decimal
from database import StoreError
from schemas import Review

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
FEATURED_COUNT = 5


def to_stock(value: Any) -> int:
    """Coerce user or stored input to a non-negative whole stock count (invalid -> 0)."""
    try:
        number = to_decimal(value)
    except ValueError:
        return 0
    return max(0, int(number))


def to_price(value: Any) -> float:
    try:
        number = to_decimal(value)
    except ValueError:
        return 0.0
    return float(max(number, Decimal(0)))


def normalize_product(doc: Dict[str, Any]) -> Dict[str, Any]:
    product = dict(doc)
    product["name"] = product.get("name") or ""
    product["price"] = to_price(product.get("price", 0))
    product["stock"] = to_stock(product.get("stock", 0))
    product.setdefault("description", None)
    product.setdefault("category", None)
    product.setdefault("image", None)
    product.setdefault("reviews", [])
    return product


def _by_name(products: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(products, key=lambda p: (p.get("name") or "").lower())


def search(products: Iterable[Dict[str, Any]], term: Optional[str]) -> List[Dict[str, Any]]:
    if not term:
        return list(products)
    needle = term.lower()
    return [
        p for p in products
        if needle in (p.get("name") or "").lower() or needle in (p.get("description") or "").lower()
    ]


def group_by_category(products: Iterable[Dict[str, Any]]) -> List[Tuple[str, List[Dict[str, Any]]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for product in products:
        grouped.setdefault(product.get("category") or UNCATEGORIZED, []).append(product)
    return [(category, _by_name(items)) for category, items in grouped.items()]


def featured(products: List[Dict[str, Any]], count: int = FEATURED_COUNT) -> List[Dict[str, Any]]:
    return _by_name(products[:count])


def favorites(products: Iterable[Dict[str, Any]], product_ids: Iterable[str]) -> List[Dict[str, Any]]:
    wanted = set(product_ids)
    return _by_name(p for p in products if p["id"] in wanted)


def categories(products: Iterable[Dict[str, Any]]) -> List[str]:
    return ["all", *sorted({p["category"] for p in products if p.get("category")})]


def filter_products(products: Iterable[Dict[str, Any]], category: Optional[str] = None,
                    term: Optional[str] = None) -> List[Dict[str, Any]]:
    """Admin product list: category filter, then search, sorted by name."""
    selected = list(products)
    if category and category != "all":
        selected = [p for p in selected if p.get("category") == category]
    if term:
        needle = term.lower()
        selected = [
            p for p in selected
            if needle in (p.get("name") or "").lower()
            or needle in (p.get("description") or "").lower()
            or needle in (p.get("category") or "").lower()
        ]
    return _by_name(selected)


def approved_reviews(product_id: str) -> List[Dict[str, Any]]:
    reviews = database.get_documents("review", {"product_id": product_id, "status": "approved"})
    return sorted(reviews, key=lambda r: r.get("created_at") or "", reverse=True)


def submit_review(product_id: str, user_id: str, rating: int, comment: Optional[str]) -> str:
    """Store a review as pending; it is shown once an admin approves it."""
    review = Review(product_id=product_id, user_id=user_id, rating=rating,
                    comment=(comment or "").strip() or None, status="pending")
    return database.create_document("review", review)


class CatalogStore:
    def __init__(self, subscribe: Callable = database.subscribe):
        self._subscribe = subscribe
        self._lock = threading.Lock()
        self._products: List[Dict[str, Any]] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.loading = True
        self.error: Optional[str] = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._subscribe("product", {}, self._on_data, self._on_error)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_data(self, docs: List[Dict[str, Any]]) -> None:
        products = [normalize_product(doc) for doc in docs]
        with self._lock:
            self._products = products
            self.loading = False
            self.error = None
        logger.debug("Catalog updated: %d products", len(products))

    def _on_error(self, exc: StoreError) -> None:
        with self._lock:
            self.loading = False
            self.error = "Products could not be loaded. Please try again later."

    def products(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._products)

    def get(self, product_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for product in self._products:
                if product["id"] == product_id:
                    return product
        return None

    def stock_of(self, product_id: str) -> int:
        product = self.get(product_id)
        return product["stock"] if product else 0
