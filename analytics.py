"""Dashboard aggregations over orders. Read-only."""
from datetime import datetime, timedelta
from typing import List, Optional

from database import utcnow
from errors import ValidationError

PERIODS = ("day", "week", "month", "all")


def period_start(period: str, now: datetime) -> Optional[datetime]:
    if period == "day":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if period == "all":
        return None
    raise ValidationError(f"Period must be one of {', '.join(PERIODS)}")


def orders_stats(db, period: str = "week", now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    start = period_start(period, now)
    match = {"$match": {"created_at": {"$gte": start}} if start else {}}

    by_status = db["order"].aggregate([
        match,
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_amount": {"$sum": "$final_amount"}}},
        {"$sort": {"_id": 1}},
    ])
    daily = db["order"].aggregate([
        match,
        {"$group": {
            "_id": {
                "year": {"$year": "$created_at"},
                "month": {"$month": "$created_at"},
                "day": {"$dayOfMonth": "$created_at"},
            },
            "count": {"$sum": 1},
            "revenue": {"$sum": "$final_amount"},
        }},
        {"$sort": {"_id.year": 1, "_id.month": 1, "_id.day": 1}},
    ])
    totals = list(db["order"].aggregate([
        match,
        {"$group": {
            "_id": None,
            "total_orders": {"$sum": 1},
            "total_revenue": {"$sum": "$final_amount"},
            "average_order_value": {"$avg": "$final_amount"},
        }},
    ]))

    total_stats = {"total_orders": 0, "total_revenue": 0, "average_order_value": 0}
    if totals:
        total_stats = {
            "total_orders": totals[0]["total_orders"],
            "total_revenue": round(totals[0]["total_revenue"], 2),
            "average_order_value": round(totals[0]["average_order_value"] or 0, 2),
        }
    return {
        "orders_by_status": [
            {"status": row["_id"], "count": row["count"], "total_amount": round(row["total_amount"], 2)}
            for row in by_status
        ],
        "daily_orders": [
            {
                "date": f"{row['_id']['year']:04d}-{row['_id']['month']:02d}-{row['_id']['day']:02d}",
                "count": row["count"],
                "revenue": round(row["revenue"], 2),
            }
            for row in daily
        ],
        "total_stats": total_stats,
        "period": period,
    }


def top_products(db, limit: int = 10) -> List[dict]:
    """Best sellers by units sold; equal counts are ordered by product name."""
    rows = db["order"].aggregate([
        {"$unwind": "$items"},
        {"$group": {
            "_id": "$items.product.name",
            "total_sold": {"$sum": "$items.quantity"},
            "total_revenue": {"$sum": {"$multiply": ["$items.quantity", "$items.price"]}},
        }},
        {"$sort": {"total_sold": -1, "_id": 1}},
        {"$limit": limit},
    ])
    return [
        {"name": row["_id"], "total_sold": row["total_sold"], "total_revenue": round(row["total_revenue"], 2)}
        for row in rows
    ]
