"""Aggregations behind the admin order dashboard."""
import calendar
from datetime import datetime
from typing import Dict, Optional

from documents import utcnow

ORDER_STATUSES = (
    "pending",
    "confirmed",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
)
MONTHLY_STATS_WINDOW = 6


def subtract_months(moment: datetime, months: int) -> datetime:
    """Same day and time ``months`` earlier, clamped to the end of shorter months."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def total_revenue(orders) -> float:
    result = list(
        orders.aggregate(
            [
                {"$match": {"total": {"$exists": True, "$ne": None}}},
                {"$group": {"_id": None, "total": {"$sum": "$total"}}},
            ]
        )
    )
    if not result:
        return 0
    return result[0].get("total") or 0


def status_distribution(orders):
    counts = {
        row["_id"]: row["count"]
        for row in orders.aggregate(
            [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
        )
    }
    return [{"status": status, "count": counts.get(status, 0)} for status in ORDER_STATUSES]


def monthly_stats(orders, since: datetime):
    rows = orders.aggregate(
        [
            {"$match": {"createdAt": {"$gte": since}}},
            {
                "$group": {
                    "_id": {
                        "year": {"$year": "$createdAt"},
                        "month": {"$month": "$createdAt"},
                    },
                    "count": {"$sum": 1},
                    "revenue": {"$sum": "$total"},
                }
            },
            {"$sort": {"_id.year": 1, "_id.month": 1}},
        ]
    )
    return [
        {
            "month": f"{row['_id']['year']}-{row['_id']['month']:02d}",
            "count": row["count"],
            "revenue": row.get("revenue") or 0,
        }
        for row in rows
    ]


def build_order_statistics(orders, now: Optional[datetime] = None) -> Dict:
    now = now or utcnow()
    return {
        "totalOrders": orders.count_documents({}),
        "totalRevenue": total_revenue(orders),
        "ordersByStatus": status_distribution(orders),
        "monthlyStats": monthly_stats(
            orders, subtract_months(now, MONTHLY_STATS_WINDOW)
        ),
    }
