"""Inventory ledger: the only place that mutates ``products.total_stock``.

Every mutation is a single conditional UPDATE so concurrent reserve/restore
calls on the same product are serialized by the row lock the database takes
for the statement; nothing reads the stock level into Python and writes it
back. Callers own the transaction and decide when to commit.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from .errors import InsufficientStock, NotFound
from .models import Product

logger = logging.getLogger(__name__)


def _stock_level(db: Session, product_id: int) -> Optional[int]:
    return db.query(Product.total_stock).filter(Product.id == product_id).scalar()


def reserve(db: Session, product_id: int, quantity: int) -> int:
    """Atomically take ``quantity`` units; return the new stock level."""
    if quantity <= 0:
        raise ValueError("quantity must be > 0")

    updated = (
        db.query(Product)
        .filter(
            Product.id == product_id,
            Product.is_archived.is_(False),
            Product.total_stock >= quantity,
        )
        .update({Product.total_stock: Product.total_stock - quantity}, synchronize_session=False)
    )
    if not updated:
        row = (
            db.query(Product.title, Product.total_stock, Product.is_archived)
            .filter(Product.id == product_id)
            .first()
        )
        if row is None or row.is_archived:
            raise NotFound(f"Product not found: {product_id}")
        raise InsufficientStock(product_id, row.title, row.total_stock, quantity)

    return _stock_level(db, product_id)


def restore(db: Session, product_id: int, quantity: int) -> Optional[int]:
    """Give ``quantity`` units back. A missing product is logged and skipped."""
    if quantity <= 0:
        raise ValueError("quantity must be > 0")

    updated = (
        db.query(Product)
        .filter(Product.id == product_id)
        .update({Product.total_stock: Product.total_stock + quantity}, synchronize_session=False)
    )
    if not updated:
        logger.warning(
            "Product %s not found while restoring %s unit(s); skipping", product_id, quantity
        )
        return None
    return _stock_level(db, product_id)


def merge_items(items: Iterable[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Merge duplicate product ids and sort them so rows are locked in a stable order."""
    merged: Dict[int, int] = {}
    for product_id, quantity in items:
        pid = int(product_id)
        qty = int(quantity)
        if qty <= 0:
            raise ValueError("quantity must be > 0")
        merged[pid] = merged.get(pid, 0) + qty
    return sorted(merged.items())


def reserve_items(db: Session, items: Iterable[Tuple[int, int]]) -> Dict[int, int]:
    """Reserve every line or raise; the caller rolls back on error."""
    levels: Dict[int, int] = {}
    for product_id, quantity in merge_items(items):
        levels[product_id] = reserve(db, product_id, quantity)
    return levels


def restore_items(db: Session, items: Iterable[Tuple[int, int]]) -> Dict[int, Optional[int]]:
    levels: Dict[int, Optional[int]] = {}
    for product_id, quantity in merge_items(items):
        levels[product_id] = restore(db, product_id, quantity)
    return levels
