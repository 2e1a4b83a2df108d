import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import locking, products, schemas
from ..auth import get_current_admin
from ..database import get_db
from ..dependencies import get_publisher
from ..messaging import ADMIN_AUDIENCE, ALL_AUDIENCE, PRODUCT_UPDATED, EventPublisher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["Products"])


def _announce(publisher: EventPublisher, action: str, product) -> None:
    payload = {"action": action, "product": products.product_snapshot(product)}
    for audience in (ADMIN_AUDIENCE, ALL_AUDIENCE):
        try:
            publisher.publish(PRODUCT_UPDATED, payload, audience=audience)
        except Exception:
            logger.exception("Failed to publish product %s for product %s", action, product.id)


@router.post("", response_model=schemas.ProductResponse, status_code=201)
def add_product(
    product_in: schemas.ProductCreate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    product = products.add_product(db, product_in.model_dump(), current_admin)
    _announce(publisher, "add", product)
    return {"success": True, "message": "Product added successfully!", "data": product}


@router.get("", response_model=schemas.ProductListResponse)
def list_products(
    archived: Optional[bool] = Query(None, description="Filter by archive state; omit for all"),
    db: Session = Depends(get_db),
):
    return {"success": True, "data": products.list_products(db, archived=archived)}


@router.get("/{product_id:int}", response_model=schemas.ProductResponse)
def get_product(product_id: int, db: Session = Depends(get_db)):
    return {"success": True, "data": products.get_product(db, product_id)}


@router.put("/{product_id:int}", response_model=schemas.ProductResponse)
def edit_product(
    product_id: int,
    update: schemas.ProductUpdate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Edit under the product's lock; 423 while another admin holds it."""
    changes = update.model_dump(exclude={"holder_id", "holder_name"}, exclude_none=True)
    product = products.edit_product(
        db,
        product_id,
        changes,
        holder_id=update.holder_id or current_admin["id"],
        holder_name=update.holder_name or current_admin.get("userName"),
        actor=current_admin,
    )
    _announce(publisher, "edit", product)
    return {"success": True, "message": "Product updated successfully!", "data": product}


@router.post("/{product_id:int}/archive", response_model=schemas.ProductResponse)
def archive_product(
    product_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    product = products.archive_product(db, product_id, current_admin)
    _announce(publisher, "archive", product)
    return {"success": True, "message": "Product archived successfully!", "data": product}


@router.post("/{product_id:int}/unarchive", response_model=schemas.ProductResponse)
def unarchive_product(
    product_id: int,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    product = products.unarchive_product(db, product_id, current_admin)
    _announce(publisher, "unarchive", product)
    return {"success": True, "message": "Product unarchived successfully!", "data": product}


@router.post("/{product_id:int}/lock", response_model=schemas.ProductResponse)
def lock_product(
    product_id: int,
    lock_in: Optional[schemas.LockRequest] = None,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    lock_in = lock_in or schemas.LockRequest()
    product = locking.lock_product(
        db,
        product_id,
        lock_in.holder_id or current_admin["id"],
        lock_in.holder_name or current_admin.get("userName"),
        current_admin,
    )
    _announce(publisher, "lock", product)
    return {"success": True, "message": "Product locked for editing", "data": product}


@router.post("/{product_id:int}/unlock", response_model=schemas.ProductResponse)
def unlock_product(
    product_id: int,
    unlock_in: Optional[schemas.UnlockRequest] = None,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    unlock_in = unlock_in or schemas.UnlockRequest()
    product = locking.unlock_product(
        db, product_id, unlock_in.holder_id or current_admin["id"], current_admin
    )
    _announce(publisher, "unlock", product)
    return {"success": True, "message": "Product unlocked", "data": product}
