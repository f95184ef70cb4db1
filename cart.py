"""
Cart engine

Holds one session's order-in-progress as an ordered list of lines. Quantities
are bounded by the product's *current* stock, looked up in the live catalog on
every call that can grow a line, so a ceiling can tighten between additions.

Money is truncated to whole currency units everywhere a total is shown or
persisted (``floor_money``), never rounded.
"""
import math
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

import notices
from notices import Notice


def to_decimal(value: Any) -> Decimal:
    """Parse a price-like value; invalid or non-finite input raises ValueError."""
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}")
    if not number.is_finite():
        raise ValueError(f"Not a number: {value!r}")
    return number


def floor_money(amount: Any) -> int:
    return math.floor(to_decimal(amount))


class InsufficientStock(Exception):
    def __init__(self, name: str, requested: int, available: int):
        self.name = name
        self.requested = requested
        self.available = available
        self.notice = notices.error(
            f"Not enough stock to add {requested} unit(s) of {name}. Available stock: {available}",
            3000,
        )
        super().__init__(self.notice.message)


class LineNotFound(KeyError):
    pass


class CartLine(BaseModel):
    id: str
    name: str
    price: Decimal
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity

    def snapshot(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "price": float(self.price), "quantity": self.quantity}


class Cart:
    def __init__(self, stock_of: Callable[[str], int]):
        self._stock_of = stock_of
        self._lines: List[CartLine] = []

    def __len__(self) -> int:
        return len(self._lines)

    def __bool__(self) -> bool:
        return bool(self._lines)

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines)

    def _find(self, product_id: str) -> Optional[CartLine]:
        for line in self._lines:
            if line.id == product_id:
                return line
        return None

    def _line(self, product_id: str) -> CartLine:
        line = self._find(product_id)
        if line is None:
            raise LineNotFound(product_id)
        return line

    def quantity_of(self, product_id: str) -> int:
        line = self._find(product_id)
        return line.quantity if line else 0

    def add_item(self, product: Dict[str, Any], quantity: int = 1) -> Notice:
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")
        product_id = product["id"]
        name = product.get("name") or ""
        available = self._stock_of(product_id)
        existing = self._find(product_id)
        new_quantity = (existing.quantity if existing else 0) + quantity
        if new_quantity > available:
            raise InsufficientStock(name, quantity, available)

        if existing:
            existing.quantity = new_quantity
            return notices.info(f"{name} +{quantity} unit(s)", 1500)
        price = to_decimal(product.get("price", 0))
        self._lines.append(CartLine(id=product_id, name=name, price=price, quantity=quantity))
        return notices.success(f'"{name}" added to cart', 2000)

    def increase(self, product_id: str) -> Notice:
        line = self._line(product_id)
        available = self._stock_of(product_id)
        if line.quantity + 1 > available:
            raise InsufficientStock(line.name, 1, available)
        line.quantity += 1
        return notices.info(f"{line.name} +1 unit", 1500)

    def decrease(self, product_id: str) -> Notice:
        line = self._line(product_id)
        if line.quantity <= 1:
            return notices.info(f"Minimum quantity for {line.name} is 1", 1500)
        line.quantity -= 1
        return notices.info(f"{line.name} -1 unit", 1500)

    def remove_item(self, product_id: str) -> Notice:
        self._lines = [line for line in self._lines if line.id != product_id]
        return notices.error("Product removed from cart", 2000)

    def clear(self) -> Notice:
        self._lines = []
        return notices.error("Cart emptied", 2000)

    def subtotal(self) -> Decimal:
        return sum((line.subtotal for line in self._lines), Decimal(0))

    def total(self) -> int:
        return floor_money(self.subtotal())

    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines)

    def change_due(self, cash_amount: Any) -> Optional[int]:
        """Whole-unit change for a cash payment, None when the amount falls short."""
        paid = to_decimal(cash_amount)
        total = self.total()
        if paid < total:
            return None
        return floor_money(paid - total)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [line.snapshot() for line in self._lines]

    def view(self) -> Dict[str, Any]:
        return {
            "items": [
                {**line.snapshot(), "stock": self._stock_of(line.id), "subtotal": floor_money(line.subtotal)}
                for line in self._lines
            ],
            "item_count": self.item_count(),
            "total": self.total(),
        }
