"""Sales reports for superadmins.

Only completed sales count: orders that were picked up (which marks them paid)
and are not archived, dated by their last update, i.e. the pickup.
"""
from __future__ import annotations

import datetime as dt
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .clock import as_utc, utcnow
from .models import Order
from .schemas import OrderStatus, ReportGroupBy

DEFAULT_WINDOWS = {
    ReportGroupBy.DAY: dt.timedelta(days=7),
    ReportGroupBy.WEEK: dt.timedelta(weeks=8),
    ReportGroupBy.MONTH: dt.timedelta(days=183),
}
TOP_PRODUCTS_LIMIT = 10


def _money(value) -> float:
    return round(float(value or 0), 2)


def _bucket_key(when: dt.datetime, group_by: ReportGroupBy) -> Tuple:
    if group_by == ReportGroupBy.MONTH:
        return (when.year, when.month)
    if group_by == ReportGroupBy.WEEK:
        iso = when.isocalendar()
        return (iso[0], iso[1])
    return (when.year, when.month, when.day)


def _label(when: dt.datetime, group_by: ReportGroupBy) -> str:
    if group_by == ReportGroupBy.MONTH:
        return when.strftime("%b %Y")
    if group_by == ReportGroupBy.WEEK:
        monday = when - dt.timedelta(days=when.weekday())
        return f"Week of {monday.strftime('%b')} {monday.day}"
    return f"{when.strftime('%b')} {when.day}"


def completed_sales(db: Session, start: dt.datetime, end: dt.datetime) -> List[Order]:
    return (
        db.query(Order)
        .filter(
            Order.order_status == OrderStatus.PICKED_UP.value,
            Order.is_archived.is_(False),
            Order.order_update_date >= start,
            Order.order_update_date <= end,
        )
        .order_by(Order.order_update_date.asc())
        .all()
    )


def build_sales_report(
    db: Session,
    group_by: ReportGroupBy = ReportGroupBy.DAY,
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    end = as_utc(end) if end else (now or utcnow())
    start = as_utc(start) if start else end - DEFAULT_WINDOWS[group_by]
    if end < start:
        start, end = end, start

    buckets: "OrderedDict[Tuple, Dict[str, Any]]" = OrderedDict()
    products: Dict[int, Dict[str, Any]] = {}
    total_sales = Decimal("0")
    total_items = 0

    orders = completed_sales(db, start, end)
    for order in orders:
        when = as_utc(order.order_update_date)
        items_count = sum(i.quantity for i in order.items)
        amount = Decimal(str(order.total_amount or 0))

        bucket = buckets.setdefault(
            _bucket_key(when, group_by),
            {
                "label": _label(when, group_by),
                "total_sales": Decimal("0"),
                "order_count": 0,
                "total_items": 0,
                "first_order_date": when,
            },
        )
        bucket["total_sales"] += amount
        bucket["order_count"] += 1
        bucket["total_items"] += items_count

        total_sales += amount
        total_items += items_count

        for item in order.items:
            entry = products.setdefault(
                item.product_id,
                {"product_id": item.product_id, "title": item.title, "quantity": 0, "revenue": Decimal("0")},
            )
            entry["quantity"] += item.quantity
            entry["revenue"] += Decimal(str(item.unit_price)) * item.quantity

    trend = []
    for bucket in buckets.values():
        count = bucket["order_count"]
        trend.append(
            {
                **bucket,
                "total_sales": _money(bucket["total_sales"]),
                "avg_order_value": _money(bucket["total_sales"] / count) if count else 0.0,
            }
        )

    top = sorted(products.values(), key=lambda p: p["revenue"], reverse=True)[:TOP_PRODUCTS_LIMIT]
    order_count = len(orders)
    return {
        "group_by": group_by,
        "start_date": start,
        "end_date": end,
        "summary": {
            "total_sales": _money(total_sales),
            "order_count": order_count,
            "total_items": total_items,
            "avg_order_value": _money(total_sales / order_count) if order_count else 0.0,
        },
        "trend": trend,
        "top_products": [{**p, "revenue": _money(p["revenue"])} for p in top],
    }
