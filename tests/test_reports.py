import datetime as dt

from storefront import orders
from storefront.reports import build_sales_report
from storefront.schemas import ReportGroupBy

from conftest import ADMIN, ALICE, BOB, T0


def _sell(db, place_order, user, *lines, picked_at):
    order = place_order(user, *lines)
    return orders.transition(db, order.id, "pickedUp", actor=ADMIN, now=picked_at)


def test_daily_report_counts_only_picked_up_orders(db, make_product, place_order):
    gown = make_product(title="Lab Gown", stock=20, price="250.00")
    lace = make_product(title="ID Lace", stock=20, price="30.00")

    _sell(db, place_order, ALICE, (gown.id, 2), picked_at=T0)
    _sell(db, place_order, BOB, (lace.id, 3), (gown.id, 1), picked_at=T0 + dt.timedelta(hours=2))
    _sell(db, place_order, BOB, (lace.id, 1), picked_at=T0 + dt.timedelta(days=1))
    place_order(ALICE, (gown.id, 5))  # still pending

    report = build_sales_report(db, ReportGroupBy.DAY, now=T0 + dt.timedelta(days=2))

    assert report["summary"] == {
        "total_sales": 870.0,
        "order_count": 3,
        "total_items": 7,
        "avg_order_value": 290.0,
    }
    assert [b["label"] for b in report["trend"]] == ["Mar 2", "Mar 3"]
    assert [b["order_count"] for b in report["trend"]] == [2, 1]
    assert report["trend"][0]["total_sales"] == 840.0
    assert report["top_products"][0] == {"product_id": gown.id, "title": "Lab Gown", "quantity": 3, "revenue": 750.0}


def test_weekly_and_monthly_buckets(db, make_product, place_order):
    product = make_product(stock=20, price="100.00")
    _sell(db, place_order, ALICE, (product.id, 1), picked_at=T0)
    _sell(db, place_order, ALICE, (product.id, 1), picked_at=T0 + dt.timedelta(days=7))

    weekly = build_sales_report(db, ReportGroupBy.WEEK, now=T0 + dt.timedelta(days=8))
    monthly = build_sales_report(db, ReportGroupBy.MONTH, now=T0 + dt.timedelta(days=8))

    assert [b["label"] for b in weekly["trend"]] == ["Week of Mar 2", "Week of Mar 9"]
    assert [b["label"] for b in monthly["trend"]] == ["Mar 2026"]
    assert monthly["trend"][0]["order_count"] == 2


def test_empty_range(db):
    report = build_sales_report(db, ReportGroupBy.DAY, now=T0)

    assert report["summary"]["order_count"] == 0
    assert report["summary"]["avg_order_value"] == 0.0
    assert report["trend"] == []
    assert report["top_products"] == []
