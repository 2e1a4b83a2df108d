from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_current_user
from ..calendar_sync import CalendarSyncNotifier
from ..database import get_db
from ..dependencies import get_calendar
from ..models import CalendarCredential

router = APIRouter(prefix="/calendar", tags=["Calendar"])


@router.put("/credentials", response_model=schemas.MessageResponse)
def link_calendar(
    credentials: schemas.CalendarCredentialsIn,
    current_user: Dict = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Store the Google tokens obtained by the OAuth callback for the current user."""
    if not (credentials.access_token or credentials.refresh_token):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An access token or a refresh token is required",
        )

    cred = db.get(CalendarCredential, current_user["id"])
    if cred is None:
        cred = CalendarCredential(user_id=current_user["id"])
        db.add(cred)
    for field, value in credentials.model_dump(exclude_none=True).items():
        setattr(cred, field, value)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return {"success": True, "message": "Google Calendar connected"}


@router.post("/sync", response_model=schemas.CalendarSyncResponse)
def sync_deadlines(
    current_user: Dict = Depends(get_current_user),
    calendar: CalendarSyncNotifier = Depends(get_calendar),
):
    counts = calendar.sync_all(current_user["id"])
    if counts is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Google Calendar credentials found. Please connect your Google Calendar first.",
        )
    return {
        "success": True,
        "message": f"Synced {counts['success_count']} of {counts['total_orders']} deadline(s)",
        "data": counts,
    }
