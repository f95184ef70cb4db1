from datetime import datetime, timedelta, timezone

import pytest

import admin
import database
from admin import ConfirmationRequired, ProductInvalid, ProductPayload

NOW = datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)


def order(total, days_ago=0, items=None):
    return {
        "id": f"o{total}-{days_ago}",
        "total": total,
        "items": items or [],
        "created_at": database.utc_now_iso(NOW - timedelta(days=days_ago)),
    }


def item(product_id, name, quantity, price):
    return {"id": product_id, "name": name, "quantity": quantity, "price": price}


def test_metrics_sum_count_and_average():
    metrics = admin.compute_metrics([order(100), order(250), order(520)])
    assert metrics.total_revenue == 870
    assert metrics.order_count == 3
    assert metrics.average_order_value == 290


def test_metrics_mix_stored_totals_and_item_sums():
    legacy = {"items": [item("p1", "Empanada", 2, 40), item("p2", "Flan", 1, 40)]}
    metrics = admin.compute_metrics([order(300), order(450), legacy])
    assert (metrics.total_revenue, metrics.order_count, metrics.average_order_value) == (870, 3, 290)


def test_metrics_for_no_orders():
    metrics = admin.compute_metrics([])
    assert metrics.model_dump() == {"total_revenue": 0, "order_count": 0, "average_order_value": 0}


def test_average_uses_unfloored_revenue():
    metrics = admin.compute_metrics([order(10.6), order(10.6)])
    assert metrics.total_revenue == 21
    assert metrics.average_order_value == 10


def test_order_without_total_falls_back_to_items():
    legacy = {"items": [item("p1", "Muzzarella", 2, 150.7)], "created_at": None}
    assert admin.compute_metrics([legacy]).total_revenue == 301


def test_rank_products_by_quantity_and_revenue():
    orders = [
        order(0, items=[item("p1", "Muzzarella", 1, 9000), item("p2", "Empanada", 4, 1000)]),
        order(0, items=[item("p2", "Empanada", 3, 1000), item("p3", "Flan", 1, 3000)]),
        order(0, items=[{"id": "p4", "name": "Broken", "quantity": "x", "price": 1}]),
    ]
    ranking = admin.rank_products(orders)
    assert [p.id for p in ranking.by_quantity] == ["p2", "p1", "p3"]
    assert [p.id for p in ranking.by_revenue] == ["p1", "p2", "p3"]
    assert ranking.by_quantity[0].total_quantity == 7
    assert ranking.by_quantity[0].total_revenue == 7000

    top = admin.rank_products(orders, top=1)
    assert len(top.by_quantity) == 1 and len(top.by_revenue) == 1


def test_range_cutoffs():
    assert admin.range_cutoff("all", NOW) is None
    assert admin.range_cutoff("1week", NOW) == NOW - timedelta(days=7)
    assert admin.range_cutoff("15days", NOW) == NOW - timedelta(days=15)
    # March 31st has no February counterpart
    assert admin.range_cutoff("1month", NOW) == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        admin.range_cutoff("1year", NOW)


def test_filter_by_range():
    orders = [order(1, days_ago=2), order(2, days_ago=10), order(3, days_ago=40), {"total": 4}]
    assert admin.filter_by_range(orders, "all", NOW) == orders
    assert admin.filter_by_range(admin.filter_by_range(orders, "all"), "all") == orders
    assert [o["total"] for o in admin.filter_by_range(orders, "1week", NOW)] == [1]
    assert [o["total"] for o in admin.filter_by_range(orders, "15days", NOW)] == [1, 2]
    assert [o["total"] for o in admin.filter_by_range(orders, "1month", NOW)] == [1, 2]


def test_list_orders_range_and_order(db):
    for total, days_ago in [(100, 20), (200, 1), (300, 5)]:
        database.create_document("order", order(total, days_ago))
    assert [o["total"] for o in admin.list_orders("all", NOW)] == [200, 300, 100]
    assert [o["total"] for o in admin.list_orders("1week", NOW)] == [200, 300]


def test_bulk_clear_requires_confirmation(db):
    database.create_document("order", order(100))
    with pytest.raises(ConfirmationRequired):
        admin.bulk_clear_orders()
    assert len(database.get_documents("order")) == 1
    assert admin.bulk_clear_orders(confirmed=True) == 1
    assert database.get_documents("order") == []


def test_bulk_clear_within_range(db):
    database.create_document("order", order(100, days_ago=1))
    database.create_document("order", order(200, days_ago=30))
    assert admin.bulk_clear_orders(confirmed=True, time_range="1week", now=NOW) == 1
    assert [o["total"] for o in database.get_documents("order")] == [200]


def test_update_order_status(db):
    order_id = database.create_document("order", order(100))
    assert admin.update_order_status(order_id, "Delivered")
    assert database.get_document("order", order_id)["status"] == "Delivered"
    with pytest.raises(ValueError):
        admin.update_order_status(order_id, "Lost")


def test_parse_product_coerces_form_input():
    product = admin.parse_product(ProductPayload(name=" Fugazzeta ", price="10500.5", stock="-3",
                                                 category="Pizzas", description="  "))
    assert product.name == "Fugazzeta"
    assert product.price == 10500.5
    assert product.stock == 0
    assert product.description is None


@pytest.mark.parametrize("payload", [
    ProductPayload(name="", price="100", category="Pizzas"),
    ProductPayload(name="Flan", price="0", category="Desserts"),
    ProductPayload(name="Flan", price="abc", category="Desserts"),
    ProductPayload(name="Flan", price="100", category=" "),
])
def test_parse_product_rejects_incomplete_forms(payload):
    with pytest.raises(ProductInvalid):
        admin.parse_product(payload)


def test_product_crud(db):
    product_id = admin.create_product(ProductPayload(name="Flan", price=3200, stock="7.9", category="Desserts"))
    assert database.get_document("product", product_id)["stock"] == 7

    assert admin.update_product(product_id, ProductPayload(name="Flan", price=3500, stock=2, category="Desserts"))
    assert database.get_document("product", product_id)["price"] == 3500

    with pytest.raises(ConfirmationRequired):
        admin.delete_product(product_id)
    assert admin.delete_product(product_id, confirmed=True)
    assert database.get_document("product", product_id) is None


def test_set_stock_clamps_and_reports_missing(db, make_product):
    product_id = make_product()
    assert admin.set_stock(product_id, "-4") == 0
    assert admin.set_stock(product_id, "12") == 12
    assert database.get_document("product", product_id)["stock"] == 12
    assert admin.set_stock("5f0000000000000000000000", 3) is None


def test_review_moderation(db):
    review_id = database.create_document("review", {"product_id": "p1", "user_id": "u1", "rating": 5,
                                                     "comment": "Great", "status": "pending"})
    assert admin.update_review_status(review_id, "approved")
    assert admin.list_reviews()[0]["status"] == "approved"
    with pytest.raises(ConfirmationRequired):
        admin.delete_review(review_id)
    assert admin.delete_review(review_id, confirmed=True)
    assert admin.list_reviews() == []


def test_seed_demo_only_fills_empty_catalog(db):
    result = admin.seed_demo(order_count=3, now=NOW)
    assert result == {"products": len(admin.DEMO_PRODUCTS), "orders": 3}
    orders = database.get_documents("order")
    assert all(o["total"] > 0 for o in orders)

    again = admin.seed_demo()
    assert again == {"products": 0, "orders": 0}


def test_filter_by_range_reads_z_suffixed_timestamps():
    orders = [{"total": 1, "created_at": "2026-03-29T12:00:00.000Z"},
              {"total": 2, "created_at": "2026-03-01T12:00:00.000Z"}]
    assert [o["total"] for o in admin.filter_by_range(orders, "1week", NOW)] == [1]
    assert [o["total"] for o in admin.newest_first(orders)] == [1, 2]
