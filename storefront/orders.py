"""Order lifecycle: creation, the status state machine, cancellation and the
archive/recycle flows.

Status changes are applied with a compare-and-set UPDATE on the status the
caller observed, so two admins confirming the same order, or a confirmation
racing a user cancel or the deadline sweep, cannot both succeed. Stock moves
happen in the same transaction as the status change they belong to.
"""
from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from . import inventory
from .activity import SYSTEM_ACTOR, log_activity
from .clock import isoformat_z, utcnow
from .config import PAYMENT_DEADLINE_DAYS
from .errors import (
    AlreadyArchived,
    AlreadyCancelled,
    AlreadyTerminal,
    BackwardTransition,
    ConcurrentUpdate,
    NoOpTransition,
    NotArchivable,
    NotArchived,
    NotCancellable,
    NotCancelled,
    NotFound,
    NotRestorable,
    StockRestoreError,
    Unauthorized,
    UnknownStatus,
)
from .messaging import (
    ADMIN_AUDIENCE,
    ALL_AUDIENCE,
    NEW_ORDER,
    ORDER_CANCELLED,
    ORDER_UPDATED,
    PRODUCT_UPDATED,
    EventPublisher,
    user_audience,
)
from .models import Order, OrderItem, Product
from .products import product_snapshot
from .restorers import BestEffortRestorer, RestoreResult, StockRestorer
from .schemas import (
    LINEAR_STATUSES,
    STATUS_LABELS,
    TERMINAL_STATUSES,
    OrderOut,
    OrderStatus,
    PaymentStatus,
)

logger = logging.getLogger(__name__)

PENDING = OrderStatus.PENDING.value
CONFIRMED = OrderStatus.CONFIRMED.value
PICKED_UP = OrderStatus.PICKED_UP.value
CANCELLED = OrderStatus.CANCELLED.value

FAILURE_TO_PAY_REASON = "Cancelled due to failure to pay"
PAYMENT_GRACE_PERIOD = dt.timedelta(days=PAYMENT_DEADLINE_DAYS)
MAX_TRANSITION_ATTEMPTS = 3


# -----------------------------
# Helpers
# -----------------------------

def order_snapshot(order: Order) -> Dict[str, Any]:
    return OrderOut.model_validate(order).model_dump(mode="json", by_alias=True)


def _lines(order: Order) -> List[Tuple[int, int]]:
    return [(item.product_id, item.quantity) for item in (order.items or [])]


def _load_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).populate_existing().filter(Order.id == order_id).first()
    if not order:
        raise NotFound("Order not found!")
    return order


def _compare_and_set(db: Session, order_id: int, expected_status: str, values: Dict) -> bool:
    updated = (
        db.query(Order)
        .filter(Order.id == order_id, Order.order_status == expected_status)
        .update(values, synchronize_session=False)
    )
    return bool(updated)


def _check_owner(order: Order, requester_id: str, is_admin: bool, verb: str) -> None:
    if not is_admin and order.user_id != str(requester_id):
        raise Unauthorized(f"You are not authorized to {verb} this order!")


def _publish(publisher: Optional[EventPublisher], event: str, payload: Dict[str, Any], audience: str) -> None:
    if publisher is None:
        return
    try:
        publisher.publish(event, payload, audience=audience)
    except Exception:
        logger.exception("Failed to publish %s for %s", event, audience)


def _publish_stock_changes(
    db: Session,
    publisher: Optional[EventPublisher],
    product_ids: Iterable[int],
    *,
    action: str,
    reason: str,
    order_id: int,
) -> None:
    if publisher is None:
        return
    ids = list(product_ids)
    if not ids:
        return
    for product in db.query(Product).populate_existing().filter(Product.id.in_(ids)).all():
        payload = {
            "action": action,
            "product": product_snapshot(product),
            "reason": reason,
            "orderId": order_id,
        }
        _publish(publisher, PRODUCT_UPDATED, payload, ADMIN_AUDIENCE)
        _publish(publisher, PRODUCT_UPDATED, payload, ALL_AUDIENCE)


def _status_event(order: Order, now: dt.datetime) -> Dict[str, Any]:
    label = STATUS_LABELS.get(order.order_status, order.order_status)
    return {
        "action": "status",
        "orderId": order.id,
        "userId": order.user_id,
        "userName": order.user_name,
        "newStatus": order.order_status,
        "newStatusLabel": label,
        "timestamp": isoformat_z(now),
        "message": f"Your order {order.id} is now {label}.",
        "order": order_snapshot(order),
    }


# -----------------------------
# Queries
# -----------------------------

def get_order(db: Session, order_id: int) -> Order:
    return _load_order(db, order_id)


def get_order_for(db: Session, order_id: int, requester_id: str, *, is_admin: bool = False) -> Order:
    order = _load_order(db, order_id)
    _check_owner(order, requester_id, is_admin, "view")
    return order


def list_orders(
    db: Session,
    *,
    user_id: Optional[str] = None,
    archived: bool = False,
    status: Optional[str] = None,
) -> List[Order]:
    """Orders newest first; ``user_id=None`` lists every user's orders."""
    query = db.query(Order).filter(Order.is_archived.is_(archived))
    if user_id is not None:
        query = query.filter(Order.user_id == str(user_id))
    if status:
        query = query.filter(Order.order_status == status)
    orders = query.order_by(Order.order_date.desc(), Order.id.desc()).all()
    if not orders:
        raise NotFound("No orders found!")
    return orders


def list_deadlines(db: Session, user_id: str) -> List[Dict[str, Any]]:
    orders = (
        db.query(Order)
        .filter(
            Order.user_id == str(user_id),
            Order.is_archived.is_(False),
            Order.order_status != PICKED_UP,
            Order.payment_deadline.isnot(None),
        )
        .order_by(Order.payment_deadline.asc())
        .all()
    )
    deadlines = []
    for order in orders:
        items = order.items or []
        deadlines.append(
            {
                "order_id": order.id,
                "title": items[0].title if items else f"Order {order.id}",
                "deadline": order.payment_deadline,
                "status": order.order_status,
                "total_amount": order.total_amount,
                "cart_items": [
                    {
                        "product_id": i.product_id,
                        "title": i.title,
                        "unit_price": i.unit_price,
                        "quantity": i.quantity,
                    }
                    for i in items
                ],
            }
        )
    return deadlines


# -----------------------------
# Creation
# -----------------------------

def create_order(
    db: Session,
    *,
    user: Dict[str, Any],
    items_data: List[Dict[str, Any]],
    payment_method: Optional[str] = None,
    address: Optional[str] = None,
    notes: Optional[str] = None,
    publisher: Optional[EventPublisher] = None,
    now: Optional[dt.datetime] = None,
) -> Order:
    """Create a pending order and reserve stock for every line.

    Prices and titles come from the catalogue, not the client. Either every
    line is reserved and the order is stored, or nothing changes.
    """
    now = now or utcnow()
    lines = inventory.merge_items((i["product_id"], i["quantity"]) for i in items_data)

    try:
        inventory.reserve_items(db, lines)

        catalogue = {
            p.id: p for p in db.query(Product).filter(Product.id.in_([pid for pid, _ in lines])).all()
        }
        db_order = Order(
            user_id=str(user["id"]),
            user_name=user.get("userName"),
            order_status=PENDING,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=payment_method,
            address=address,
            notes=notes,
            order_date=now,
            order_update_date=now,
            is_archived=False,
            total_amount=Decimal("0"),
        )
        total = Decimal("0")
        for product_id, quantity in lines:
            product = catalogue[product_id]
            unit_price = Decimal(str(product.price or 0))
            total += unit_price * quantity
            db_order.items.append(
                OrderItem(
                    product_id=product_id,
                    title=product.title,
                    unit_price=unit_price,
                    quantity=quantity,
                )
            )
        db_order.total_amount = total
        db.add(db_order)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db_order = _load_order(db, db_order.id)
    logger.info("Order %s created for user %s (%s line(s))", db_order.id, db_order.user_id, len(lines))

    _publish(
        publisher,
        NEW_ORDER,
        {"action": "create", "orderId": db_order.id, "order": order_snapshot(db_order)},
        ADMIN_AUDIENCE,
    )
    _publish_stock_changes(
        db, publisher, [pid for pid, _ in lines],
        action="stock-reserved", reason="order-created", order_id=db_order.id,
    )
    return db_order


# -----------------------------
# State machine
# -----------------------------

def validate_transition(current: str, target: str) -> None:
    if current in TERMINAL_STATUSES:
        raise AlreadyTerminal(f"Orders marked as {current} can no longer be updated.")
    if target == current:
        raise NoOpTransition("Order is already in the selected status.")
    if target not in LINEAR_STATUSES:
        raise UnknownStatus("Invalid order status supplied.")
    if LINEAR_STATUSES.index(target) < LINEAR_STATUSES.index(current):
        raise BackwardTransition("Order status cannot move backwards.")


def transition(
    db: Session,
    order_id: int,
    target: str,
    *,
    actor: Dict[str, Any],
    publisher: Optional[EventPublisher] = None,
    calendar=None,
    now: Optional[dt.datetime] = None,
) -> Order:
    """Move an order forward along pending -> confirmed -> readyForPickup -> pickedUp."""
    now = now or utcnow()

    for _ in range(MAX_TRANSITION_ATTEMPTS):
        order = _load_order(db, order_id)
        current = order.order_status
        validate_transition(current, target)

        values = {Order.order_status: target, Order.order_update_date: now}
        if target == CONFIRMED:
            values[Order.confirmation_date] = now
            values[Order.payment_deadline] = now + PAYMENT_GRACE_PERIOD
        if target == PICKED_UP:
            values[Order.payment_status] = PaymentStatus.PAID.value

        if _compare_and_set(db, order_id, current, values):
            break
        # lost the race; re-read and validate against the winner's status
        db.rollback()
    else:
        raise ConcurrentUpdate("Order was modified concurrently, please retry.")

    try:
        log_activity(
            db,
            entity_type="order",
            entity_id=order_id,
            entity_title=f"Order {order_id}",
            actor=actor,
            action="status",
            changes={"old": {"orderStatus": current}, "new": {"orderStatus": target}},
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    order = _load_order(db, order_id)
    logger.info("Order %s moved %s -> %s", order_id, current, target)

    _publish(publisher, ORDER_UPDATED, _status_event(order, now), user_audience(order.user_id))
    _publish(publisher, ORDER_UPDATED, _status_event(order, now), ADMIN_AUDIENCE)

    if target == CONFIRMED and calendar is not None:
        calendar.dispatch(order.user_id, order_snapshot(order))

    return order


def cancel(
    db: Session,
    order_id: int,
    requester_id: str,
    *,
    publisher: Optional[EventPublisher] = None,
    now: Optional[dt.datetime] = None,
) -> Order:
    """User self-cancellation, allowed only while the order is pending."""
    now = now or utcnow()
    order = _load_order(db, order_id)
    _check_owner(order, requester_id, False, "cancel")
    if order.order_status == CANCELLED:
        raise AlreadyCancelled("Order is already cancelled!")
    if order.order_status != PENDING:
        raise NotCancellable(f"Order cannot be cancelled. Current status: {order.order_status}")

    lines = _lines(order)
    try:
        claimed = _compare_and_set(
            db, order_id, PENDING,
            {Order.order_status: CANCELLED, Order.order_update_date: now},
        )
        if not claimed:
            current = _load_order(db, order_id).order_status
            if current == CANCELLED:
                raise AlreadyCancelled("Order is already cancelled!")
            raise NotCancellable(f"Order cannot be cancelled. Current status: {current}")

        inventory.restore_items(db, lines)
        log_activity(
            db,
            entity_type="order",
            entity_id=order_id,
            entity_title=f"Order {order_id}",
            actor={"id": requester_id, "userName": order.user_name},
            action="cancel",
            changes={"old": {"orderStatus": PENDING}, "new": {"orderStatus": CANCELLED}},
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    order = _load_order(db, order_id)
    logger.info("Order %s cancelled by its owner", order_id)

    _publish(
        publisher,
        ORDER_CANCELLED,
        {"action": "cancel", "orderId": order.id, "order": order_snapshot(order)},
        ADMIN_AUDIENCE,
    )
    _publish_stock_changes(
        db, publisher, [pid for pid, _ in lines],
        action="stock-restored", reason="order-cancelled", order_id=order_id,
    )
    return order


# -----------------------------
# Payment deadline expiry
# -----------------------------

def _expired_criteria(now: dt.datetime) -> list:
    return [
        Order.payment_deadline.isnot(None),
        Order.payment_deadline < now,
        Order.payment_status == PaymentStatus.PENDING.value,
        or_(Order.payment_proof.is_(None), Order.payment_proof == ""),
        Order.order_status != CANCELLED,
        Order.is_archived.is_(False),
    ]


def find_expired_order_ids(db: Session, now: Optional[dt.datetime] = None) -> List[int]:
    now = now or utcnow()
    rows = (
        db.query(Order.id)
        .filter(*_expired_criteria(now))
        .order_by(Order.payment_deadline.asc(), Order.id.asc())
        .all()
    )
    return [row.id for row in rows]


def _claim_expired(db: Session, order_id: int, now: dt.datetime) -> bool:
    updated = (
        db.query(Order)
        .filter(Order.id == order_id, *_expired_criteria(now))
        .update(
            {
                Order.order_status: CANCELLED,
                Order.cancellation_reason: FAILURE_TO_PAY_REASON,
                Order.order_update_date: now,
            },
            synchronize_session=False,
        )
    )
    return bool(updated)


def _log_forced_cancel(db: Session, order_id: int, previous_status: str, now: dt.datetime) -> None:
    log_activity(
        db,
        entity_type="order",
        entity_id=order_id,
        entity_title=f"Order {order_id}",
        actor=SYSTEM_ACTOR,
        action="force-cancel",
        changes={
            "old": {"orderStatus": previous_status},
            "new": {"orderStatus": CANCELLED, "cancellationReason": FAILURE_TO_PAY_REASON},
        },
        now=now,
    )


def force_cancel_expired(
    db: Session,
    order_id: int,
    *,
    restorer: StockRestorer,
    publisher: Optional[EventPublisher] = None,
    now: Optional[dt.datetime] = None,
) -> Optional[RestoreResult]:
    """Cancel an order whose payment deadline passed without proof.

    Returns None when the order no longer qualifies (already cancelled, paid,
    proof submitted, ...). Stock is restored for every line regardless of how
    far the order progressed, because it was reserved at creation. If the
    transactional restore fails, the cancellation is re-applied and stock is
    restored line by line so the order never stays uncancelled.
    """
    now = now or utcnow()
    order = db.query(Order).populate_existing().filter(Order.id == order_id).first()
    if order is None:
        return None
    previous_status = order.order_status
    lines = _lines(order)

    if not _claim_expired(db, order_id, now):
        db.rollback()
        return None
    _log_forced_cancel(db, order_id, previous_status, now)

    try:
        result = restorer.restore(db, lines)
    except StockRestoreError:
        logger.warning(
            "Transactional stock restore failed for order %s; retrying line by line", order_id,
            exc_info=True,
        )
        if not _claim_expired(db, order_id, now):
            db.rollback()
            return None
        _log_forced_cancel(db, order_id, previous_status, now)
        result = BestEffortRestorer().restore(db, lines)

    if result.failed:
        logger.error(
            "Order %s cancelled but %s line(s) could not be restocked: %s",
            order_id, len(result.failed), result.failed,
        )

    order = _load_order(db, order_id)
    logger.info(
        "Order %s cancelled for missing payment (deadline %s)", order_id, isoformat_z(order.payment_deadline)
    )
    _publish(
        publisher,
        ORDER_CANCELLED,
        {
            "action": "force-cancel",
            "orderId": order.id,
            "cancellationReason": FAILURE_TO_PAY_REASON,
            "order": order_snapshot(order),
        },
        ADMIN_AUDIENCE,
    )
    _publish(publisher, ORDER_UPDATED, _status_event(order, now), user_audience(order.user_id))
    _publish_stock_changes(
        db, publisher, list(result.restored),
        action="stock-restored", reason="payment-deadline-expired", order_id=order_id,
    )
    return result


# -----------------------------
# Payment proof
# -----------------------------

def submit_payment_proof(
    db: Session,
    order_id: int,
    requester_id: str,
    reference: str,
    *,
    publisher: Optional[EventPublisher] = None,
    now: Optional[dt.datetime] = None,
) -> Order:
    now = now or utcnow()
    order = _load_order(db, order_id)
    _check_owner(order, requester_id, False, "submit payment proof for")
    if order.order_status == CANCELLED:
        raise AlreadyCancelled("Cannot submit payment proof for a cancelled order!")

    try:
        updated = (
            db.query(Order)
            .filter(Order.id == order_id, Order.order_status != CANCELLED)
            .update(
                {Order.payment_proof: reference, Order.order_update_date: now},
                synchronize_session=False,
            )
        )
        if not updated:
            raise AlreadyCancelled("Cannot submit payment proof for a cancelled order!")
        db.commit()
    except Exception:
        db.rollback()
        raise

    order = _load_order(db, order_id)
    _publish(
        publisher,
        ORDER_UPDATED,
        {"action": "payment-proof", "orderId": order.id, "order": order_snapshot(order)},
        ADMIN_AUDIENCE,
    )
    return order


# -----------------------------
# Archive / recycle bin
# -----------------------------

def is_archivable(order: Order) -> bool:
    if order.order_status == PICKED_UP:
        return True
    return (
        order.payment_status == PaymentStatus.PAID.value
        and order.order_status not in (PENDING, CONFIRMED)
    )


def _set_archived(
    db: Session, order_id: int, requester_id: str, is_admin: bool, archived: bool, now: Optional[dt.datetime]
) -> Order:
    order = _load_order(db, order_id)
    _check_owner(order, requester_id, is_admin, "archive" if archived else "unarchive")

    if archived:
        if order.is_archived:
            raise AlreadyArchived("Order is already archived!")
        if not is_archivable(order):
            raise NotArchivable("Only picked-up or paid orders can be archived!")
    elif not order.is_archived:
        raise NotArchived("Order is not archived!")

    try:
        updated = (
            db.query(Order)
            .filter(Order.id == order_id, Order.is_archived.is_(not archived))
            .update({Order.is_archived: archived}, synchronize_session=False)
        )
        if not updated:
            if archived:
                raise AlreadyArchived("Order is already archived!")
            raise NotArchived("Order is not archived!")
        log_activity(
            db,
            entity_type="order",
            entity_id=order_id,
            entity_title=f"Order {order_id}",
            actor={"id": requester_id},
            action="archive" if archived else "unarchive",
            changes={"isArchived": archived},
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return _load_order(db, order_id)


def archive(db: Session, order_id: int, requester_id: str, *, is_admin: bool = False, now=None) -> Order:
    return _set_archived(db, order_id, requester_id, is_admin, True, now)


def unarchive(db: Session, order_id: int, requester_id: str, *, is_admin: bool = False, now=None) -> Order:
    return _set_archived(db, order_id, requester_id, is_admin, False, now)


def restore_cancelled(
    db: Session,
    order_id: int,
    requester_id: str,
    *,
    is_admin: bool = False,
    publisher: Optional[EventPublisher] = None,
    now: Optional[dt.datetime] = None,
) -> Order:
    """Bring a cancelled order back to pending, re-reserving its stock.

    InsufficientStock (or NotFound for a product archived since) propagates
    and leaves the order cancelled with stock untouched.
    """
    now = now or utcnow()
    order = _load_order(db, order_id)
    _check_owner(order, requester_id, is_admin, "restore")
    if order.order_status != CANCELLED:
        raise NotCancelled("Only cancelled orders can be restored.")
    if order.cancellation_reason == FAILURE_TO_PAY_REASON:
        raise NotRestorable("Orders cancelled due to failure to pay cannot be restored.")

    lines = _lines(order)
    try:
        claimed = _compare_and_set(
            db, order_id, CANCELLED,
            {
                Order.order_status: PENDING,
                Order.order_update_date: now,
                Order.cancellation_reason: None,
            },
        )
        if not claimed:
            raise NotCancelled("Only cancelled orders can be restored.")
        inventory.reserve_items(db, lines)
        log_activity(
            db,
            entity_type="order",
            entity_id=order_id,
            entity_title=f"Order {order_id}",
            actor={"id": requester_id, "userName": order.user_name},
            action="restore",
            changes={"old": {"orderStatus": CANCELLED}, "new": {"orderStatus": PENDING}},
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    order = _load_order(db, order_id)
    _publish(
        publisher,
        ORDER_UPDATED,
        {"action": "restore", "orderId": order.id, "order": order_snapshot(order)},
        ADMIN_AUDIENCE,
    )
    _publish_stock_changes(
        db, publisher, [pid for pid, _ in lines],
        action="stock-reserved", reason="order-restored", order_id=order_id,
    )
    return order


def delete_cancelled(
    db: Session,
    order_id: int,
    requester_id: str,
    *,
    is_admin: bool = False,
    now: Optional[dt.datetime] = None,
) -> None:
    """Hard-delete a cancelled order. Its stock was already restored on cancellation."""
    order = _load_order(db, order_id)
    _check_owner(order, requester_id, is_admin, "delete")
    if order.order_status != CANCELLED:
        raise NotCancelled("Only cancelled orders can be deleted.")

    try:
        # children first; the conditional delete below decides the outcome
        db.query(OrderItem).filter(OrderItem.order_id == order_id).delete(synchronize_session=False)
        deleted = (
            db.query(Order)
            .filter(Order.id == order_id, Order.order_status == CANCELLED)
            .delete(synchronize_session=False)
        )
        if not deleted:
            raise NotCancelled("Only cancelled orders can be deleted.")
        log_activity(
            db,
            entity_type="order",
            entity_id=order_id,
            entity_title=f"Order {order_id}",
            actor={"id": requester_id},
            action="delete",
            changes={},
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.expunge_all()
    logger.info("Cancelled order %s deleted", order_id)
