"""Pushes payment deadlines into the customer's Google Calendar.

Everything here is a side effect of an order transition: failures are logged
and reported as ``False``, never raised, so a calendar outage cannot block or
roll back a status change. Events are looked up by the ``Order ID: <id>``
marker in their description before inserting, which makes re-syncing an order
a no-op.
"""
from __future__ import annotations

import datetime as dt
import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from sqlalchemy.orm import Session

from .clock import as_utc, isoformat_z
from .config import (
    CALENDAR_SUMMARY,
    CALENDAR_TIMEZONE,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
)
from .models import CalendarCredential, Order
from .orders import order_snapshot

logger = logging.getLogger(__name__)

CALENDAR_API = "https://www.googleapis.com/calendar/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"
EVENT_DURATION = dt.timedelta(hours=1)
REQUEST_TIMEOUT = 10


def _parse_deadline(value: Any) -> Optional[dt.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return as_utc(value)
    v = str(value).strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    return as_utc(dt.datetime.fromisoformat(v))


def order_marker(order_id: Any) -> str:
    return f"Order ID: {order_id}"


def build_event(order: Dict[str, Any], timezone: str = CALENDAR_TIMEZONE) -> Dict[str, Any]:
    deadline = _parse_deadline(order.get("paymentDeadline"))
    items = order.get("cartItems") or []
    title = items[0].get("title") if items else None
    title = title or f"Order {order.get('id')}"
    return {
        "summary": f"Payment Due: {title}",
        "description": (
            "Payment Deadline Reminder\n\n"
            f"{order_marker(order.get('id'))}\n"
            f"Total Amount: {order.get('totalAmount') or 0}\n"
            f"Status: {order.get('orderStatus')}\n\n"
            "Please submit your payment proof before the deadline."
        ),
        "start": {"dateTime": isoformat_z(deadline), "timeZone": timezone},
        "end": {"dateTime": isoformat_z(deadline + EVENT_DURATION), "timeZone": timezone},
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 1440},
                {"method": "popup", "minutes": 60},
                {"method": "popup", "minutes": 10},
            ],
        },
        "colorId": "11",
    }


class CalendarSyncNotifier:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        http: Optional[requests.Session] = None,
        client_id: str = GOOGLE_CLIENT_ID,
        client_secret: str = GOOGLE_CLIENT_SECRET,
        timezone: str = CALENDAR_TIMEZONE,
    ) -> None:
        self.session_factory = session_factory
        self.http = http or requests.Session()
        self.client_id = client_id
        self.client_secret = client_secret
        self.timezone = timezone

    # -- Google API calls -------------------------------------------------

    def _headers(self, access_token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _calendar_url(self, calendar_id: str, suffix: str = "") -> str:
        return f"{CALENDAR_API}/calendars/{requests.utils.quote(calendar_id, safe='')}{suffix}"

    def _refresh_access_token(self, cred: CalendarCredential) -> Optional[str]:
        if not (cred.refresh_token and self.client_id and self.client_secret):
            return None
        response = self.http.post(
            TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": cred.refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        return response.json().get("access_token")

    def _create_calendar(self, access_token: str) -> str:
        response = self.http.post(
            f"{CALENDAR_API}/calendars",
            json={
                "summary": CALENDAR_SUMMARY,
                "description": "Payment deadlines for your orders",
                "timeZone": self.timezone,
            },
            headers=self._headers(access_token),
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        calendar_id = response.json()["id"]

        # public read access so the calendar can be embedded; optional
        try:
            acl = self.http.post(
                self._calendar_url(calendar_id, "/acl"),
                json={"role": "reader", "scope": {"type": "default"}},
                headers=self._headers(access_token),
                timeout=REQUEST_TIMEOUT,
            )
            acl.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Could not set calendar ACL on %s: %s", calendar_id, e)
        return calendar_id

    def _event_exists(self, access_token: str, calendar_id: str, order_id: Any) -> bool:
        marker = order_marker(order_id)
        response = self.http.get(
            self._calendar_url(calendar_id, "/events"),
            params={"q": marker, "maxResults": 2500},
            headers=self._headers(access_token),
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        items = response.json().get("items") or []
        return any(marker in (e.get("description") or "") for e in items)

    def _insert_event(self, access_token: str, calendar_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        response = self.http.post(
            self._calendar_url(calendar_id, "/events"),
            json=event,
            headers=self._headers(access_token),
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()

    # -- Public API -------------------------------------------------------

    def _credentials(self, db: Session, user_id: str) -> Optional[CalendarCredential]:
        cred = db.query(CalendarCredential).filter(CalendarCredential.user_id == str(user_id)).first()
        if cred is None or not (cred.access_token or cred.refresh_token):
            return None
        return cred

    def _prepare(self, db: Session, cred: CalendarCredential) -> Tuple[str, str]:
        """Return a usable (access token, calendar id), persisting anything new."""
        try:
            token = self._refresh_access_token(cred)
            if token:
                cred.access_token = token
                db.commit()
        except requests.RequestException as e:
            db.rollback()
            logger.warning("Could not refresh calendar access token for user %s: %s", cred.user_id, e)

        if not cred.calendar_id:
            logger.info("Creating deadline calendar for user %s", cred.user_id)
            cred.calendar_id = self._create_calendar(cred.access_token)
            db.commit()
        return cred.access_token, cred.calendar_id

    def _sync_with(self, access_token: str, calendar_id: str, order: Dict[str, Any]) -> bool:
        order_id = order.get("id")
        if self._event_exists(access_token, calendar_id, order_id):
            logger.info("Calendar event for order %s already exists", order_id)
            return True
        self._insert_event(access_token, calendar_id, build_event(order, self.timezone))
        logger.info("Created calendar event for order %s", order_id)
        return True

    def sync_deadline(self, user_id: str, order: Dict[str, Any]) -> bool:
        """Create the deadline event for one order. True if it exists afterwards."""
        order_id = order.get("id")
        if not order.get("paymentDeadline"):
            logger.debug("Order %s has no payment deadline; skipping calendar sync", order_id)
            return False

        db = self.session_factory()
        try:
            cred = self._credentials(db, user_id)
            if cred is None:
                logger.info("User %s has no calendar connected; skipping order %s", user_id, order_id)
                return False
            access_token, calendar_id = self._prepare(db, cred)
            return self._sync_with(access_token, calendar_id, order)
        except Exception:
            logger.exception("Failed to sync payment deadline for order %s", order_id)
            return False
        finally:
            db.close()

    def dispatch(self, user_id: str, order: Dict[str, Any]) -> threading.Thread:
        """Run ``sync_deadline`` in the background."""
        t = threading.Thread(
            target=self.sync_deadline,
            args=(user_id, order),
            name=f"calendar-sync-{order.get('id')}",
            daemon=True,
        )
        t.start()
        return t

    def sync_all(self, user_id: str) -> Optional[Dict[str, int]]:
        """Sync every open deadline of the user. None when no calendar is connected."""
        db = self.session_factory()
        try:
            cred = self._credentials(db, user_id)
            if cred is None:
                return None
            orders = (
                db.query(Order)
                .filter(
                    Order.user_id == str(user_id),
                    Order.is_archived.is_(False),
                    Order.payment_deadline.isnot(None),
                    Order.order_status.in_(("pending", "confirmed", "readyForPickup")),
                )
                .order_by(Order.payment_deadline.asc())
                .all()
            )
            snapshots = [order_snapshot(o) for o in orders]
            counts = {"total_orders": len(snapshots), "success_count": 0, "fail_count": 0}
            if not snapshots:
                return counts

            try:
                access_token, calendar_id = self._prepare(db, cred)
            except Exception:
                logger.exception("Could not prepare calendar for user %s", user_id)
                counts["fail_count"] = len(snapshots)
                return counts

            for snap in snapshots:
                try:
                    self._sync_with(access_token, calendar_id, snap)
                    counts["success_count"] += 1
                except Exception:
                    logger.exception("Failed to sync payment deadline for order %s", snap.get("id"))
                    counts["fail_count"] += 1
            return counts
        finally:
            db.close()
