import logging
import os
import uuid
from typing import Dict, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from sqlalchemy.orm import Session

from .. import orders, schemas
from ..auth import get_current_admin, get_current_user, is_admin
from ..calendar_sync import CalendarSyncNotifier
from ..config import MAX_PAYMENT_PROOF_BYTES
from ..database import get_db
from ..dependencies import get_calendar, get_publisher, get_upload_dir
from ..errors import AlreadyCancelled
from ..messaging import EventPublisher

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)

ALLOWED_PROOF_TYPES = {"image/jpeg", "image/png", "image/webp", "application/pdf"}
PROOF_CHUNK_SIZE = 64 * 1024


def _store_payment_proof(upload: UploadFile, order_id: int, upload_dir: str) -> str:
    """Write the uploaded file and return the stored reference (its file name)."""
    if upload.content_type not in ALLOWED_PROOF_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment proof must be an image or a PDF.",
        )
    ext = os.path.splitext(upload.filename or "")[1].lower()
    reference = f"order-{order_id}-{uuid.uuid4().hex}{ext}"
    os.makedirs(upload_dir, exist_ok=True)
    path = os.path.join(upload_dir, reference)
    written = 0
    with open(path, "wb") as f:
        while True:
            chunk = upload.file.read(PROOF_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > MAX_PAYMENT_PROOF_BYTES:
                break
            f.write(chunk)
    if written > MAX_PAYMENT_PROOF_BYTES:
        os.remove(path)
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="Payment proof is too large.",
        )
    return reference


@router.post("", response_model=schemas.OrderResponse, status_code=status.HTTP_201_CREATED)
def create_order(
    order_in: schemas.OrderCreate,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Place an order; stock for every line is reserved immediately."""
    db_order = orders.create_order(
        db,
        user=current_user,
        items_data=[item.model_dump() for item in order_in.cart_items],
        payment_method=order_in.payment_method,
        address=order_in.address,
        notes=order_in.notes,
        publisher=publisher,
    )
    return {"success": True, "message": "Order created successfully!", "data": db_order}


@router.get("", response_model=schemas.OrderListResponse)
def list_orders(
    archived: bool = False,
    order_status: Optional[str] = Query(None, alias="status"),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    # admins see every user's orders
    user_id = None if is_admin(current_user) else current_user["id"]
    data = orders.list_orders(db, user_id=user_id, archived=archived, status=order_status)
    return {"success": True, "data": data}


@router.get("/deadlines", response_model=schemas.DeadlineListResponse)
def list_deadlines(
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": True, "data": orders.list_deadlines(db, current_user["id"])}


@router.get("/{order_id:int}", response_model=schemas.OrderResponse)
def get_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    db_order = orders.get_order_for(db, order_id, current_user["id"], is_admin=is_admin(current_user))
    return {"success": True, "data": db_order}


@router.put("/{order_id:int}/status", response_model=schemas.OrderResponse)
def update_order_status(
    order_id: int,
    status_update: schemas.OrderStatusUpdate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
    calendar: CalendarSyncNotifier = Depends(get_calendar),
):
    db_order = orders.transition(
        db,
        order_id,
        status_update.order_status,
        actor=current_admin,
        publisher=publisher,
        calendar=calendar,
    )
    return {"success": True, "message": "Order status is updated successfully!", "data": db_order}


@router.post("/{order_id:int}/cancel", response_model=schemas.OrderResponse)
def cancel_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    db_order = orders.cancel(db, order_id, current_user["id"], publisher=publisher)
    return {"success": True, "message": "Order cancelled successfully!", "data": db_order}


@router.post("/{order_id:int}/archive", response_model=schemas.OrderResponse)
def archive_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    db_order = orders.archive(db, order_id, current_user["id"], is_admin=is_admin(current_user))
    return {"success": True, "message": "Order archived successfully!", "data": db_order}


@router.post("/{order_id:int}/unarchive", response_model=schemas.OrderResponse)
def unarchive_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    db_order = orders.unarchive(db, order_id, current_user["id"], is_admin=is_admin(current_user))
    return {"success": True, "message": "Order unarchived successfully!", "data": db_order}


@router.post("/{order_id:int}/restore", response_model=schemas.OrderResponse)
def restore_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    db_order = orders.restore_cancelled(
        db, order_id, current_user["id"], is_admin=is_admin(current_user), publisher=publisher
    )
    return {"success": True, "message": "Order restored successfully!", "data": db_order}


@router.post("/{order_id:int}/delete", response_model=schemas.MessageResponse)
def delete_order(
    order_id: int,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    orders.delete_cancelled(db, order_id, current_user["id"], is_admin=is_admin(current_user))
    return {"success": True, "message": "Order deleted permanently!"}


@router.post("/{order_id:int}/payment-proof", response_model=schemas.OrderResponse)
def upload_payment_proof(
    order_id: int,
    file: UploadFile = File(..., description="Receipt image or PDF"),
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
    upload_dir: str = Depends(get_upload_dir),
):
    # validate ownership and status before writing anything to disk
    db_order = orders.get_order_for(db, order_id, current_user["id"])
    if db_order.order_status == orders.CANCELLED:
        raise AlreadyCancelled("Cannot submit payment proof for a cancelled order!")

    reference = _store_payment_proof(file, order_id, upload_dir)
    try:
        db_order = orders.submit_payment_proof(db, order_id, current_user["id"], reference, publisher=publisher)
    except Exception:
        os.remove(os.path.join(upload_dir, reference))
        raise
    logger.info("Payment proof %s stored for order %s", reference, order_id)
    return {"success": True, "message": "Payment proof uploaded successfully!", "data": db_order}
