"""Domain errors raised by the ledger, lock manager and order state machine.

Every error carries the HTTP status it maps to and optional extra fields that
are merged into the ``{"success": false, "message": ...}`` response body.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from .clock import isoformat_z


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, **self.extra}


class NotFound(StoreError):
    status_code = 404


class InsufficientStock(StoreError):
    def __init__(self, product_id: int, title: str, available: int, requested: int) -> None:
        super().__init__(
            f'Insufficient stock for "{title}". Available: {available}, Requested: {requested}',
            productId=product_id,
            available=available,
            requested=requested,
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class LockConflict(StoreError):
    status_code = 423

    def __init__(self, holder_id: Optional[str], holder_name: Optional[str], expiry) -> None:
        name = holder_name or "another user"
        expires = isoformat_z(expiry)
        super().__init__(
            f"Product is currently locked by {name}. Lock expires at {expires}",
            lockedBy=holder_id,
            lockedByName=holder_name,
            lockExpiry=expires,
        )
        self.holder_id = holder_id
        self.holder_name = holder_name
        self.expiry = expiry


class NotLockHolder(StoreError):
    status_code = 403


class NotLocked(StoreError):
    pass


class Unauthorized(StoreError):
    status_code = 403


class AlreadyTerminal(StoreError):
    pass


class NoOpTransition(StoreError):
    pass


class BackwardTransition(StoreError):
    pass


class UnknownStatus(StoreError):
    pass


class NotArchivable(StoreError):
    pass


class AlreadyArchived(StoreError):
    pass


class NotArchived(StoreError):
    pass


class NotCancellable(StoreError):
    pass


class AlreadyCancelled(StoreError):
    pass


class NotCancelled(StoreError):
    pass


class NotRestorable(StoreError):
    pass


class ConcurrentUpdate(StoreError):
    status_code = 409


class StockRestoreError(Exception):
    """A transactional stock restore failed and was rolled back."""
