from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .activity import log_activity
from .clock import utcnow
from .errors import AlreadyArchived, NotArchived, NotFound
from .locking import acquire, clear_lock_fields
from .models import Product
from .schemas import ProductOut

EDITABLE_FIELDS = ("title", "description", "category", "image", "price", "total_stock")


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


def product_snapshot(product: Product) -> Dict[str, Any]:
    return ProductOut.model_validate(product).model_dump(mode="json", by_alias=True)


def get_product(db: Session, product_id: int) -> Product:
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFound("Product not found")
    return product


def list_products(db: Session, archived: Optional[bool] = None) -> List[Product]:
    query = db.query(Product)
    # no filter shows both archived and active products
    if archived is not None:
        query = query.filter(Product.is_archived.is_(archived))
    return query.order_by(Product.id).all()


def add_product(db: Session, product_data: Dict[str, Any], actor: Dict[str, Any]) -> Product:
    db_product = Product(**product_data)
    db.add(db_product)
    try:
        db.flush()
        log_activity(
            db,
            entity_type="product",
            entity_id=db_product.id,
            entity_title=db_product.title,
            actor=actor,
            action="add",
            changes={k: _plain(v) for k, v in product_data.items()},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(db_product)
    return db_product


def edit_product(
    db: Session,
    product_id: int,
    changes: Dict[str, Any],
    *,
    holder_id: str,
    holder_name: Optional[str],
    actor: Dict[str, Any],
    now: Optional[dt.datetime] = None,
) -> Product:
    """Apply an edit under the product's lease.

    Growing phase: (re)acquire the lease, which fails with LockConflict while
    another holder's lease is live. Shrinking phase: the lease is cleared in
    the same commit that saves the edit, so it is only released once the
    mutation is durable. Any failure rolls back both.
    """
    now = now or utcnow()
    try:
        acquire(db, product_id, holder_id, holder_name, now=now)
        product = (
            db.query(Product)
            .populate_existing()
            .with_for_update()
            .filter(Product.id == product_id)
            .one()
        )

        diff: Dict[str, Dict[str, Any]] = {"old": {}, "new": {}}
        for field in EDITABLE_FIELDS:
            if field not in changes or changes[field] is None:
                continue
            old_value = getattr(product, field)
            new_value = changes[field]
            if _plain(old_value) != _plain(new_value):
                diff["old"][field] = _plain(old_value)
                diff["new"][field] = _plain(new_value)
            setattr(product, field, new_value)

        clear_lock_fields(product)
        log_activity(
            db,
            entity_type="product",
            entity_id=product.id,
            entity_title=product.title,
            actor=actor,
            action="edit",
            changes=diff,
            now=now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(product)
    return product


def _set_archived(db: Session, product_id: int, archived: bool, actor: Dict[str, Any]) -> Product:
    product = get_product(db, product_id)
    if archived and product.is_archived:
        raise AlreadyArchived("Product is already archived!")
    if not archived and not product.is_archived:
        raise NotArchived("Product is not archived!")

    product.is_archived = archived
    log_activity(
        db,
        entity_type="product",
        entity_id=product.id,
        entity_title=product.title,
        actor=actor,
        action="archive" if archived else "unarchive",
        changes={"status": "archived" if archived else "active"},
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(product)
    return product


def archive_product(db: Session, product_id: int, actor: Dict[str, Any]) -> Product:
    return _set_archived(db, product_id, True, actor)


def unarchive_product(db: Session, product_id: int, actor: Dict[str, Any]) -> Product:
    return _set_archived(db, product_id, False, actor)
