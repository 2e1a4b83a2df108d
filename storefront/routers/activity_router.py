from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..activity import list_activity
from ..auth import get_current_superadmin
from ..clock import as_utc
from ..database import get_db

router = APIRouter(prefix="/activity-logs", tags=["Activity Logs"])


@router.get("", response_model=schemas.ActivityLogListResponse)
def get_activity_logs(
    entity_type: Optional[str] = Query(None, alias="entityType"),
    entity_id: Optional[int] = Query(None, alias="entityId"),
    actor_id: Optional[str] = Query(None, alias="actorId"),
    action: Optional[str] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    current_superadmin: Dict = Depends(get_current_superadmin),
    db: Session = Depends(get_db),
):
    rows, total = list_activity(
        db,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        action=action,
        start=as_utc(start_date),
        end=as_utc(end_date),
        skip=skip,
        limit=limit,
    )
    return {"success": True, "data": rows, "total": total, "skip": skip, "limit": limit}
