"""
Order assembly

Checkout moves Cart -> Summary -> Form -> Submitted, and every step can go back
without losing the cart. A submitted form is validated locally, saved as an
order, turned into a WhatsApp message and handed off. Stock is decremented
afterwards, item by item, best-effort.

A failed save is reported to the user but does not stop the handoff or the
cart clear: the WhatsApp message stays the primary "order sent" signal.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

from pydantic import BaseModel

import database
import notices
import settings
from cart import Cart, floor_money, to_decimal
from catalog import to_stock
from database import StoreError
from notices import Notice
from schemas import CustomerInfo, DeliveryMethod, Order, OrderItem, OrderType, PaymentMethod

logger = logging.getLogger(__name__)

MIN_PHONE_LENGTH = 8
MIN_RESERVATION_LEAD = timedelta(minutes=1)
MAX_CASH_AMOUNT = Decimal(10_000_000)

PERSISTENCE_MESSAGES = {
    StoreError.PERMISSION_DENIED: "Error: insufficient permissions to save the order. Check the database access rules.",
    StoreError.UNAVAILABLE: "Database connection error. Check your internet connection and try again.",
    StoreError.RESOURCE_EXHAUSTED: "Error: quota exceeded. Please try again later.",
}
DEFAULT_PERSISTENCE_MESSAGE = "Error saving the order. Please try again."

_DIGITS = re.compile(r"[0-9]+")


class CheckoutStep(str, Enum):
    CART = "cart"
    SUMMARY = "summary"
    FORM = "form"
    SUBMITTED = "submitted"


class CheckoutError(Exception):
    pass


class OrderFormInvalid(Exception):
    def __init__(self, errors: Dict[str, str]):
        super().__init__("; ".join(errors.values()))
        self.errors = errors


class OrderForm(BaseModel):
    """Raw checkout form input, parsed by validate_order_form."""
    name: str = ""
    phone: str = ""
    address: str = ""
    payment_method: PaymentMethod = "cash"
    cash_amount: Optional[Union[str, float]] = None
    delivery_method: DeliveryMethod = "delivery"
    order_type: OrderType = "immediate"
    order_time: Optional[str] = None
    notes: Optional[str] = None
    proof_acknowledged: bool = False


class CheckoutDetails(BaseModel):
    name: str
    phone: str
    address: Optional[str]
    payment_method: str
    cash_amount: Optional[Decimal]
    change: Optional[int]
    delivery_method: str
    order_type: str
    order_time: datetime
    notes: Optional[str]


class CheckoutResult(BaseModel):
    order_id: Optional[str] = None
    total: int
    change: Optional[int] = None
    message: str
    whatsapp_url: str
    notices: List[Notice] = []


def parse_order_time(value: Optional[str]) -> Optional[datetime]:
    """ISO date-time from the form; naive values are in the store's timezone."""
    parsed = database.parse_iso(value)
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=settings.store_tz())
    return parsed


def validate_order_form(form: OrderForm, total: int, now: Optional[datetime] = None) -> CheckoutDetails:
    now = now or datetime.now(timezone.utc)
    errors: Dict[str, str] = {}

    name = form.name.strip()
    if not name:
        errors["name"] = "Name is required."

    phone = form.phone.strip()
    if not phone:
        errors["phone"] = "Phone is required."
    elif not _DIGITS.fullmatch(phone):
        errors["phone"] = "Phone must contain digits only."
    elif len(phone) < MIN_PHONE_LENGTH:
        errors["phone"] = f"Phone must have at least {MIN_PHONE_LENGTH} digits."

    address = (form.address or "").strip()
    if form.delivery_method == "delivery" and not address:
        errors["address"] = "Address is required for delivery."

    cash_amount: Optional[Decimal] = None
    change: Optional[int] = None
    if form.payment_method == "cash":
        try:
            cash_amount = to_decimal(form.cash_amount)
        except ValueError:
            cash_amount = None
        if cash_amount is None or cash_amount < total:
            errors["cash_amount"] = f"The amount must be equal to or greater than the order total (${total})."
        elif cash_amount > MAX_CASH_AMOUNT:
            errors["cash_amount"] = f"The amount cannot exceed ${MAX_CASH_AMOUNT}."
        else:
            change = floor_money(cash_amount - total)
    elif not form.proof_acknowledged:
        errors["proof_acknowledged"] = "Confirm that you will send the proof of payment."

    if form.order_type == "reserved":
        order_time = parse_order_time(form.order_time)
        if order_time is None:
            errors["order_time"] = "Reservation date and time are required."
        elif order_time < now + MIN_RESERVATION_LEAD:
            errors["order_time"] = "The reservation must be at least 1 minute in the future."
    else:
        order_time = now

    if errors:
        raise OrderFormInvalid(errors)

    return CheckoutDetails(
        name=name,
        phone=phone,
        address=address or None,
        payment_method=form.payment_method,
        cash_amount=cash_amount,
        change=change,
        delivery_method=form.delivery_method,
        order_type=form.order_type,
        order_time=order_time,
        notes=(form.notes or "").strip() or None,
    )


def build_order(user_id: str, items: List[Dict[str, Any]], details: CheckoutDetails,
                now: Optional[datetime] = None) -> Order:
    order_items = [OrderItem(**item) for item in items]
    total = floor_money(sum((to_decimal(i.price) * i.quantity for i in order_items), Decimal(0)))
    return Order(
        user_id=user_id,
        items=order_items,
        total=total,
        customer_info=CustomerInfo(name=details.name, address=details.address, phone=details.phone),
        payment_method=details.payment_method,
        cash_amount=float(details.cash_amount) if details.cash_amount is not None else None,
        change=details.change,
        delivery_method=details.delivery_method,
        order_type=details.order_type,
        order_time=database.utc_now_iso(details.order_time),
        notes=details.notes,
        status="Pending",
        created_at=database.utc_now_iso(now),
    )


def format_order_message(details: CheckoutDetails, items: List[Dict[str, Any]], total: int) -> str:
    item_lines = "\n".join(
        f"{item['quantity']}x {item['name']} (${floor_money(item['price'])} each)" for item in items
    )

    if details.delivery_method == "pickup":
        delivery_info = f"*Delivery method:* Pickup at the store ({settings.PICKUP_ADDRESS})"
    else:
        delivery_info = f"*Delivery method:* Home delivery (free)\n*Address:* {details.address}"

    if details.order_type == "reserved":
        local_time = details.order_time.astimezone(settings.store_tz())
        timing_info = f"*Order type:* Reservation for {local_time.strftime('%d/%m/%Y %H:%M')}"
    else:
        timing_info = "*Order type:* Immediate"

    if details.payment_method == "cash":
        payment_info = (
            "*Payment method:* Cash\n"
            f"*Paying with:* ${floor_money(details.cash_amount)}\n"
            f"*Change:* ${details.change}"
        )
    else:
        payment_info = "*Payment method:* Mercado Pago\n_(Proof of payment required to confirm)_"

    customer = [
        "*Customer details:*",
        f"Name: {details.name}",
        f"Phone: {details.phone}",
        delivery_info,
        timing_info,
    ]
    if details.notes:
        customer.append(f"*Notes:* {details.notes}")

    return "\n\n".join([
        f"*--- {settings.STORE_NAME} ---*",
        "\n".join(customer),
        f"*Order details:*\n{item_lines}",
        f"*Total to pay:* ${total}",
        payment_info,
        "Thank you for your order!",
    ])


def whatsapp_url(message: str, number: Optional[str] = None) -> str:
    return f"https://wa.me/{number or settings.WHATSAPP_NUMBER}?text={quote(message, safe='')}"


def decrement_stock(items: List[Dict[str, Any]]) -> List[Notice]:
    """Take ordered quantities off each product, floored at 0. Failures only warn."""
    warnings: List[Notice] = []
    for item in items:
        try:
            product = database.get_document("product", item["id"])
            if product is None:
                logger.warning("Product %s not found while updating stock", item["id"])
                continue
            current = to_stock(product.get("stock", 0))
            new_stock = max(0, current - item["quantity"])
            database.update_document("product", item["id"], {"stock": new_stock})
            logger.info("Stock for %s (%s) updated from %d to %d", item["name"], item["id"], current, new_stock)
        except StoreError as exc:
            logger.error("Could not update stock for %s: %s", item["id"], exc.message)
            warnings.append(notices.warning(f"Warning: could not update stock for {item['name']}."))
    return warnings


def place_order(cart: Cart, form: OrderForm, user_id: str, now: Optional[datetime] = None) -> CheckoutResult:
    if not cart:
        raise CheckoutError("The cart is empty. Add products before placing an order.")
    now = now or datetime.now(timezone.utc)
    total = cart.total()
    details = validate_order_form(form, total, now)
    items = cart.snapshot()

    result_notices: List[Notice] = []
    order_id = None
    try:
        order_id = database.create_document("order", build_order(user_id, items, details, now))
    except StoreError as exc:
        logger.error("Order could not be saved (%s): %s", exc.code, exc.message)
        result_notices.append(notices.error(PERSISTENCE_MESSAGES.get(exc.code, DEFAULT_PERSISTENCE_MESSAGE), 7000))
    else:
        logger.info("Order %s saved for %s, total %d", order_id, user_id, total)
        result_notices.append(notices.success("Order saved and sent to WhatsApp!"))
        result_notices.extend(decrement_stock(items))

    message = format_order_message(details, items, total)
    url = whatsapp_url(message)
    cart.clear()
    return CheckoutResult(
        order_id=order_id,
        total=total,
        change=details.change,
        message=message,
        whatsapp_url=url,
        notices=result_notices,
    )


class CheckoutFlow:
    """Per-session checkout navigation."""

    def __init__(self):
        self.step = CheckoutStep.CART

    def to_summary(self, cart: Cart) -> None:
        if self.step not in (CheckoutStep.CART, CheckoutStep.SUBMITTED):
            raise CheckoutError(f"Cannot open the summary from the {self.step.value} step.")
        if not cart:
            raise CheckoutError("The cart is empty. Add products before placing an order.")
        self.step = CheckoutStep.SUMMARY

    def to_form(self) -> None:
        if self.step != CheckoutStep.SUMMARY:
            raise CheckoutError("Review the order summary before filling in the form.")
        self.step = CheckoutStep.FORM

    def back(self) -> None:
        if self.step == CheckoutStep.FORM:
            self.step = CheckoutStep.SUMMARY
        else:
            self.step = CheckoutStep.CART

    def reset(self) -> None:
        self.step = CheckoutStep.CART

    def submit(self, cart: Cart, form: OrderForm, user_id: str, now: Optional[datetime] = None) -> CheckoutResult:
        if self.step != CheckoutStep.FORM:
            raise CheckoutError("Fill in the order form before sending the order.")
        result = place_order(cart, form, user_id, now)
        self.step = CheckoutStep.SUBMITTED
        return result
