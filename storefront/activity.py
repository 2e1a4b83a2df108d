from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .clock import utcnow
from .models import ActivityLog

# Stand-in actor for mutations nobody requested
SYSTEM_ACTOR = {"id": "system", "userName": "Payment deadline scheduler"}


def log_activity(
    db: Session,
    *,
    entity_type: str,
    entity_id: int,
    entity_title: str,
    actor: Dict[str, Any],
    action: str,
    changes: Optional[Dict[str, Any]] = None,
    now: Optional[dt.datetime] = None,
) -> ActivityLog:
    """Add an audit entry to the current transaction; it commits with the mutation."""
    entry = ActivityLog(
        entity_type=entity_type,
        entity_id=entity_id,
        entity_title=entity_title or f"{entity_type} {entity_id}",
        actor_id=str(actor.get("id") or "unknown"),
        actor_name=actor.get("userName") or actor.get("username") or "Unknown User",
        action=action,
        changes=changes or {},
        timestamp=now or utcnow(),
    )
    db.add(entry)
    return entry


def list_activity(
    db: Session,
    *,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[ActivityLog], int]:
    query = db.query(ActivityLog)
    if entity_type:
        query = query.filter(ActivityLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(ActivityLog.entity_id == entity_id)
    if actor_id:
        query = query.filter(ActivityLog.actor_id == actor_id)
    if action:
        query = query.filter(ActivityLog.action == action)
    if start:
        query = query.filter(ActivityLog.timestamp >= start)
    if end:
        query = query.filter(ActivityLog.timestamp <= end)

    total = query.count()
    rows = (
        query.order_by(ActivityLog.timestamp.desc(), ActivityLog.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )
    return rows, total
