from datetime import datetime

import pytest

import analytics
from errors import ValidationError


def add_order(db, created_at, status, amount, items=()):
    db["order"].insert_one({
        "order_number": f"ORD{db['order'].count_documents({}):04d}",
        "status": status,
        "final_amount": amount,
        "items": [{"product": {"name": name}, "quantity": qty, "price": price} for name, qty, price in items],
        "created_at": created_at,
    })


@pytest.fixture
def history(db):
    add_order(db, datetime(2026, 3, 10, 10), "pending", 100)
    add_order(db, datetime(2026, 3, 10, 15), "delivered", 250.5)
    add_order(db, datetime(2026, 3, 12, 9), "cancelled", 50)


def test_stats_over_all_time(db, history):
    stats = analytics.orders_stats(db, "all", now=datetime(2026, 3, 15))
    assert stats["period"] == "all"
    assert stats["orders_by_status"] == [
        {"status": "cancelled", "count": 1, "total_amount": 50},
        {"status": "delivered", "count": 1, "total_amount": 250.5},
        {"status": "pending", "count": 1, "total_amount": 100},
    ]
    assert stats["daily_orders"] == [
        {"date": "2026-03-10", "count": 2, "revenue": 350.5},
        {"date": "2026-03-12", "count": 1, "revenue": 50},
    ]
    assert stats["total_stats"] == {"total_orders": 3, "total_revenue": 400.5, "average_order_value": 133.5}


def test_period_windows(db, history):
    week = analytics.orders_stats(db, "week", now=datetime(2026, 3, 15))
    assert week["total_stats"]["total_orders"] == 3

    day = analytics.orders_stats(db, "day", now=datetime(2026, 3, 12, 18))
    assert day["total_stats"]["total_orders"] == 1
    assert day["orders_by_status"] == [{"status": "cancelled", "count": 1, "total_amount": 50}]


def test_empty_period_reports_zeros(db, history):
    stats = analytics.orders_stats(db, "month", now=datetime(2026, 4, 2))
    assert stats["orders_by_status"] == []
    assert stats["daily_orders"] == []
    assert stats["total_stats"] == {"total_orders": 0, "total_revenue": 0, "average_order_value": 0}


def test_unknown_period(db):
    with pytest.raises(ValidationError):
        analytics.orders_stats(db, "decade")


def test_top_products_orders_by_units_then_name(db):
    when = datetime(2026, 3, 1)
    add_order(db, when, "delivered", 450, items=[("Beta Tee", 3, 50), ("Alpha Hoodie", 1, 100)])
    add_order(db, when, "pending", 250, items=[("Alpha Hoodie", 2, 100), ("Gamma Socks", 5, 10)])

    top = analytics.top_products(db)
    assert top == [
        {"name": "Gamma Socks", "total_sold": 5, "total_revenue": 50},
        {"name": "Alpha Hoodie", "total_sold": 3, "total_revenue": 300},
        {"name": "Beta Tee", "total_sold": 3, "total_revenue": 150},
    ]
    assert [p["name"] for p in analytics.top_products(db, limit=2)] == ["Gamma Socks", "Alpha Hoodie"]
