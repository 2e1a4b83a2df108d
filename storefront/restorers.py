"""Stock restoration strategies for scheduler-forced cancellations.

Both strategies receive a session in which the order's cancellation has
already been written (but not committed) and are responsible for committing.
Each line is restored at most once per cancellation: the caller only invokes a
restorer after winning the conditional update that cancels the order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import inventory
from .errors import StockRestoreError

logger = logging.getLogger(__name__)

Line = Tuple[int, int]


@dataclass
class RestoreResult:
    restored: Dict[int, Optional[int]] = field(default_factory=dict)
    failed: List[Line] = field(default_factory=list)
    transactional: bool = False


class StockRestorer:
    def restore(self, db: Session, lines: Sequence[Line]) -> RestoreResult:
        raise NotImplementedError


class TransactionalRestorer(StockRestorer):
    """All lines and the cancellation commit together, or nothing does."""

    def restore(self, db: Session, lines: Sequence[Line]) -> RestoreResult:
        result = RestoreResult(transactional=True)
        try:
            for product_id, quantity in inventory.merge_items(lines):
                result.restored[product_id] = inventory.restore(db, product_id, quantity)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StockRestoreError(str(exc)) from exc
        return result


class BestEffortRestorer(StockRestorer):
    """Commit the cancellation first, then each line on its own.

    A line that fails is rolled back, logged and reported in ``failed``; the
    remaining lines are still attempted.
    """

    def restore(self, db: Session, lines: Sequence[Line]) -> RestoreResult:
        db.commit()
        result = RestoreResult()
        for product_id, quantity in inventory.merge_items(lines):
            try:
                result.restored[product_id] = inventory.restore(db, product_id, quantity)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception(
                    "Failed to restore %s unit(s) of product %s", quantity, product_id
                )
                result.failed.append((product_id, quantity))
        return result


def select_stock_restorer(engine, mode: str = "auto") -> StockRestorer:
    if mode == "transactional":
        return TransactionalRestorer()
    if mode == "best_effort":
        return BestEffortRestorer()
    if mode != "auto":
        raise ValueError(f"unknown stock restore mode: {mode}")

    # an AUTOCOMMIT engine cannot group statements into one transaction
    isolation = engine.get_execution_options().get("isolation_level") or getattr(
        engine.dialect, "isolation_level", None
    )
    if isolation == "AUTOCOMMIT":
        return BestEffortRestorer()
    return TransactionalRestorer()
