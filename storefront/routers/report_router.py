from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..auth import get_current_superadmin
from ..database import get_db
from ..reports import build_sales_report

router = APIRouter(prefix="/reports", tags=["Reports"])


@router.get("/sales", response_model=schemas.SalesReportResponse)
def sales_report(
    group_by: schemas.ReportGroupBy = Query(schemas.ReportGroupBy.DAY, alias="groupBy"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_superadmin: Dict = Depends(get_current_superadmin),
    db: Session = Depends(get_db),
):
    """Completed (picked up) sales grouped by day, week or month."""
    report = build_sales_report(db, group_by=group_by, start=start_date, end=end_date)
    return {"success": True, "data": report}
