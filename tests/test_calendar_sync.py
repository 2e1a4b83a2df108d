import datetime as dt

import pytest
import requests

from storefront import orders
from storefront.calendar_sync import CALENDAR_API, TOKEN_URL, CalendarSyncNotifier, build_event
from storefront.models import CalendarCredential

from conftest import ADMIN, ALICE, T0


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload or {}
        self.status_code = status_code

    def json(self):
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeGoogle:
    """Minimal in-memory Google Calendar."""

    def __init__(self):
        self.events = []
        self.calls = []
        self.fail_insert = False

    def post(self, url, json=None, data=None, headers=None, timeout=None):
        self.calls.append(("POST", url))
        if url == TOKEN_URL:
            return FakeResponse({"access_token": "fresh-token"})
        if url == f"{CALENDAR_API}/calendars":
            return FakeResponse({"id": "deadlines@group.calendar.google.com"})
        if url.endswith("/acl"):
            return FakeResponse(status_code=403)
        if url.endswith("/events"):
            if self.fail_insert:
                return FakeResponse(status_code=500)
            self.events.append(json)
            return FakeResponse({"id": f"evt-{len(self.events)}"})
        raise AssertionError(url)

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(("GET", url))
        q = params["q"]
        return FakeResponse({"items": [e for e in self.events if q in e["description"]]})


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def notifier(session_factory, google):
    return CalendarSyncNotifier(session_factory, http=google, client_id="cid", client_secret="secret")


@pytest.fixture
def linked(db):
    db.add(CalendarCredential(user_id=ALICE["id"], access_token="old-token", refresh_token="refresh"))
    db.commit()


@pytest.fixture
def confirmed(db, make_product, place_order):
    product = make_product(title="Lab Gown")
    order = place_order(ALICE, (product.id, 1))
    order = orders.transition(db, order.id, "confirmed", actor=ADMIN, now=T0)
    return orders.order_snapshot(order)


def test_sync_creates_calendar_and_single_event(db, notifier, google, linked, confirmed):
    assert notifier.sync_deadline(ALICE["id"], confirmed) is True
    assert notifier.sync_deadline(ALICE["id"], confirmed) is True

    assert len(google.events) == 1
    event = google.events[0]
    assert event["summary"] == "Payment Due: Lab Gown"
    assert f"Order ID: {confirmed['id']}" in event["description"]
    assert event["start"]["dateTime"] == "2026-03-05T09:00:00Z"

    cred = db.get(CalendarCredential, ALICE["id"])
    db.refresh(cred)
    assert cred.access_token == "fresh-token"
    assert cred.calendar_id == "deadlines@group.calendar.google.com"


def test_no_credentials_or_deadline_returns_false(notifier, google, confirmed):
    assert notifier.sync_deadline(ALICE["id"], confirmed) is False
    assert notifier.sync_deadline(ALICE["id"], {**confirmed, "paymentDeadline": None}) is False
    assert google.calls == []


def test_api_errors_are_swallowed(notifier, google, linked, confirmed):
    google.fail_insert = True

    assert notifier.sync_deadline(ALICE["id"], confirmed) is False


def test_dispatch_runs_in_background(notifier, google, linked, confirmed):
    thread = notifier.dispatch(ALICE["id"], confirmed)
    thread.join(timeout=5)

    assert len(google.events) == 1


def test_sync_all_counts(db, notifier, google, linked, make_product, place_order):
    product = make_product()
    for _ in range(2):
        order = place_order(ALICE, (product.id, 1))
        orders.transition(db, order.id, "confirmed", actor=ADMIN, now=T0)
    place_order(ALICE, (product.id, 1))

    counts = notifier.sync_all(ALICE["id"])

    assert counts == {"total_orders": 2, "success_count": 2, "fail_count": 0}
    assert len(google.events) == 2


def test_sync_all_without_credentials(notifier):
    assert notifier.sync_all("stranger") is None


def test_build_event_end_is_one_hour_later():
    event = build_event(
        {"id": 7, "paymentDeadline": "2026-03-05T09:00:00Z", "cartItems": [], "totalAmount": 10, "orderStatus": "confirmed"},
        timezone="UTC",
    )
    start = dt.datetime.fromisoformat(event["start"]["dateTime"].replace("Z", "+00:00"))
    end = dt.datetime.fromisoformat(event["end"]["dateTime"].replace("Z", "+00:00"))
    assert end - start == dt.timedelta(hours=1)
    assert event["summary"] == "Payment Due: Order 7"
