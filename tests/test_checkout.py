from datetime import datetime, timedelta, timezone
from decimal import Decimal
from urllib.parse import unquote

import pytest

import database
from cart import Cart
from checkout import (
    CheckoutError,
    CheckoutFlow,
    CheckoutStep,
    OrderForm,
    OrderFormInvalid,
    place_order,
    validate_order_form,
    whatsapp_url,
)
from database import StoreError

NOW = datetime(2026, 10, 19, 20, 0, tzinfo=timezone.utc)


def cash_form(**overrides):
    data = {"name": "Ana", "phone": "1126884940", "address": "Calle 123",
            "payment_method": "cash", "cash_amount": "400"}
    data.update(overrides)
    return OrderForm(**data)


def test_cash_amount_covering_total_yields_change():
    details = validate_order_form(cash_form(cash_amount="400"), 381, NOW)
    assert details.change == 19
    assert details.order_time == NOW


def test_cash_amount_below_total_is_rejected():
    with pytest.raises(OrderFormInvalid) as exc_info:
        validate_order_form(cash_form(cash_amount="380"), 381, NOW)
    assert "$381" in exc_info.value.errors["cash_amount"]


def test_cash_amount_must_be_numeric():
    with pytest.raises(OrderFormInvalid) as exc_info:
        validate_order_form(cash_form(cash_amount="four hundred"), 381, NOW)
    assert "cash_amount" in exc_info.value.errors


@pytest.mark.parametrize("phone, fragment", [
    ("", "required"),
    ("11-2688-4940", "digits only"),
    ("1234567", "at least 8"),
])
def test_phone_rules(phone, fragment):
    with pytest.raises(OrderFormInvalid) as exc_info:
        validate_order_form(cash_form(phone=phone), 100, NOW)
    assert fragment in exc_info.value.errors["phone"]


def test_name_required():
    with pytest.raises(OrderFormInvalid) as exc_info:
        validate_order_form(cash_form(name="   "), 100, NOW)
    assert set(exc_info.value.errors) == {"name"}


def test_address_only_required_for_delivery():
    with pytest.raises(OrderFormInvalid) as exc_info:
        validate_order_form(cash_form(address=""), 100, NOW)
    assert "address" in exc_info.value.errors

    details = validate_order_form(cash_form(address="", delivery_method="pickup"), 100, NOW)
    assert details.address is None


def test_mercadopago_requires_proof_acknowledgment():
    form = cash_form(payment_method="mercadopago", cash_amount=None)
    with pytest.raises(OrderFormInvalid) as exc_info:
        validate_order_form(form, 100, NOW)
    assert set(exc_info.value.errors) == {"proof_acknowledged"}

    form.proof_acknowledged = True
    details = validate_order_form(form, 100, NOW)
    assert details.cash_amount is None
    assert details.change is None


def test_reservation_must_be_at_least_a_minute_ahead():
    too_soon = cash_form(order_type="reserved", order_time=(NOW + timedelta(seconds=30)).isoformat())
    with pytest.raises(OrderFormInvalid) as exc_info:
        validate_order_form(too_soon, 100, NOW)
    assert "order_time" in exc_info.value.errors

    later = cash_form(order_type="reserved", order_time=(NOW + timedelta(minutes=2)).isoformat())
    details = validate_order_form(later, 100, NOW)
    assert details.order_time == NOW + timedelta(minutes=2)


def test_reservation_time_required():
    with pytest.raises(OrderFormInvalid) as exc_info:
        validate_order_form(cash_form(order_type="reserved"), 100, NOW)
    assert "required" in exc_info.value.errors["order_time"]


@pytest.fixture
def stocked_cart(db, make_product):
    pizza = make_product(name="Muzzarella", price=150.7, stock=5)
    empanada = make_product(name="Empanada", price=80.4, stock=3, category="Empanadas")
    stock = {doc["id"]: doc["stock"] for doc in database.get_documents("product")}
    cart = Cart(lambda product_id: stock.get(product_id, 0))
    cart.add_item({"id": pizza, "name": "Muzzarella", "price": 150.7}, 2)
    cart.add_item({"id": empanada, "name": "Empanada", "price": 80.4})
    return cart, pizza, empanada


def test_place_order_persists_and_hands_off(stocked_cart):
    cart, pizza, empanada = stocked_cart
    result = place_order(cart, cash_form(notes="No onion"), "user-1", NOW)

    order = database.get_document("order", result.order_id)
    assert order["total"] == 381
    assert order["status"] == "Pending"
    assert order["change"] == 19
    assert order["cash_amount"] == 400.0
    assert order["items"][0] == {"id": pizza, "name": "Muzzarella", "quantity": 2, "price": 150.7}
    assert order["customer_info"] == {"name": "Ana", "address": "Calle 123", "phone": "1126884940"}

    assert database.get_document("product", pizza)["stock"] == 3
    assert database.get_document("product", empanada)["stock"] == 2

    assert result.whatsapp_url.startswith("https://wa.me/5491126884940?text=")
    message = unquote(result.whatsapp_url.split("text=", 1)[1])
    assert message == result.message
    assert "2x Muzzarella ($150 each)" in message
    assert "*Total to pay:* $381" in message
    assert "*Change:* $19" in message
    assert "*Notes:* No onion" in message
    assert [n.type for n in result.notices] == ["success"]
    assert not cart


def test_stock_decrement_floors_at_zero(db, make_product):
    product_id = make_product(stock=1)
    cart = Cart(lambda _: 5)  # catalog snapshot is stale
    cart.add_item({"id": product_id, "name": "Muzzarella", "price": 100}, 3)
    place_order(cart, cash_form(cash_amount="300"), "user-1", NOW)
    assert database.get_document("product", product_id)["stock"] == 0


def test_persistence_failure_still_hands_off(stocked_cart, monkeypatch):
    cart, pizza, _ = stocked_cart

    def unavailable(*args, **kwargs):
        raise StoreError(StoreError.UNAVAILABLE, "connection refused")

    monkeypatch.setattr(database, "create_document", unavailable)
    result = place_order(cart, cash_form(), "user-1", NOW)

    assert result.order_id is None
    assert result.whatsapp_url.startswith("https://wa.me/")
    assert result.notices[0].type == "error"
    assert "connection" in result.notices[0].message
    assert not cart
    # no order, no stock change
    assert database.get_document("product", pizza)["stock"] == 5


@pytest.mark.parametrize("code, fragment", [
    (StoreError.PERMISSION_DENIED, "permissions"),
    (StoreError.RESOURCE_EXHAUSTED, "quota"),
    (StoreError.UNKNOWN, "Error saving the order"),
])
def test_persistence_failure_messages(stocked_cart, monkeypatch, code, fragment):
    cart, _, _ = stocked_cart

    def fail(*args, **kwargs):
        raise StoreError(code, "boom")

    monkeypatch.setattr(database, "create_document", fail)
    result = place_order(cart, cash_form(), "user-1", NOW)
    assert fragment in result.notices[0].message
    assert result.notices[0].duration == 7000


def test_stock_update_failure_is_only_a_warning(stocked_cart, monkeypatch):
    cart, _, _ = stocked_cart

    def fail(*args, **kwargs):
        raise StoreError(StoreError.PERMISSION_DENIED, "denied")

    monkeypatch.setattr(database, "update_document", fail)
    result = place_order(cart, cash_form(), "user-1", NOW)

    assert result.order_id is not None
    assert database.get_document("order", result.order_id) is not None
    assert [n.type for n in result.notices] == ["success", "warning", "warning"]
    assert "Muzzarella" in result.notices[1].message


def test_invalid_form_touches_nothing(stocked_cart):
    cart, _, _ = stocked_cart
    with pytest.raises(OrderFormInvalid):
        place_order(cart, cash_form(cash_amount="10"), "user-1", NOW)
    assert database.get_documents("order") == []
    assert len(cart) == 2


def test_pickup_reservation_message(stocked_cart):
    cart, _, _ = stocked_cart
    form = cash_form(delivery_method="pickup", address="", payment_method="mercadopago",
                     cash_amount=None, proof_acknowledged=True, order_type="reserved",
                     order_time="2026-10-19T22:30:00+00:00")
    result = place_order(cart, form, "user-1", NOW)
    assert "Pickup at the store" in result.message
    assert "Reservation for 19/10/2026 22:30" in result.message
    assert "Mercado Pago" in result.message
    assert result.change is None


def test_whatsapp_url_encodes_message():
    url = whatsapp_url("Total: $10 & more\nok", number="123")
    assert url == "https://wa.me/123?text=Total%3A%20%2410%20%26%20more%0Aok"


def test_flow_moves_forward_and_back(stocked_cart):
    cart, _, _ = stocked_cart
    flow = CheckoutFlow()
    flow.to_summary(cart)
    flow.to_form()
    assert flow.step == CheckoutStep.FORM
    flow.back()
    assert flow.step == CheckoutStep.SUMMARY
    flow.back()
    assert flow.step == CheckoutStep.CART
    assert len(cart) == 2


def test_flow_rejects_empty_cart_and_skipped_steps():
    flow = CheckoutFlow()
    with pytest.raises(CheckoutError):
        flow.to_summary(Cart(lambda _: 0))
    with pytest.raises(CheckoutError):
        flow.to_form()


def test_flow_submit_only_from_form(stocked_cart):
    cart, _, _ = stocked_cart
    flow = CheckoutFlow()
    with pytest.raises(CheckoutError):
        flow.submit(cart, cash_form(), "user-1", NOW)
    flow.to_summary(cart)
    flow.to_form()
    result = flow.submit(cart, cash_form(), "user-1", NOW)
    assert result.order_id
    assert flow.step == CheckoutStep.SUBMITTED


def test_cash_amount_has_an_upper_bound():
    with pytest.raises(OrderFormInvalid) as exc_info:
        validate_order_form(cash_form(cash_amount="100000000000000000000"), 381, NOW)
    assert "cannot exceed" in exc_info.value.errors["cash_amount"]


def test_reservation_accepts_utc_z_suffix():
    form = cash_form(order_type="reserved", order_time="2026-10-19T20:05:00.000Z")
    details = validate_order_form(form, 100, NOW)
    assert details.order_time == NOW + timedelta(minutes=5)


def test_encoding_failure_on_save_still_hands_off(stocked_cart, db, monkeypatch):
    cart, pizza, _ = stocked_cart

    def too_wide(self, *args, **kwargs):
        raise OverflowError("MongoDB can only handle up to 8-byte ints")

    monkeypatch.setattr(type(db["order"]), "insert_one", too_wide)
    result = place_order(cart, cash_form(), "user-1", NOW)

    assert result.order_id is None
    assert result.notices[0].message == "Error saving the order. Please try again."
    assert result.whatsapp_url.startswith("https://wa.me/")
    assert not cart
    assert database.get_document("product", pizza)["stock"] == 5


def test_checkout_details_are_typed():
    details = validate_order_form(cash_form(cash_amount="400.50"), 381, NOW)
    dumped = details.model_dump()
    assert dumped["cash_amount"] == Decimal("400.50")
    assert dumped["change"] == 19
    assert dumped["address"] == "Calle 123"
