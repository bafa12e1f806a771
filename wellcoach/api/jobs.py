from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from wellcoach.api.auth import require_scheduler_key
from wellcoach.core.clock import utc_now
from wellcoach.core.daily_summary import calculate_daily_summary
from wellcoach.core.nudges import NudgeConfigurationError, nudge_inactive_clients
from wellcoach.core.scheduled_events import process_scheduled_events
from wellcoach.db.session import get_db
from wellcoach.services.notifications import PopupSender, get_popup_sender

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_scheduler_key)])


class LifecycleReportResponse(BaseModel):
    processed_plans: int
    activated_plans: int
    completed_plans: int
    processed_popups: int
    activated_popups: int
    completed_popups: int
    dry_run: bool


class NudgedClientItem(BaseModel):
    chat_id: str
    client_name: str
    message: str


class NudgeReportResponse(BaseModel):
    nudged_clients: list[NudgedClientItem]
    total_nudged: int
    dry_run: bool


class DailySummaryResponse(BaseModel):
    success: bool = True
    message: str
    summary: Optional[dict[str, Any]] = None


@router.post("/scheduled-events", response_model=LifecycleReportResponse)
def run_scheduled_events(
    dry_run: bool = Query(default=False),
    db: Session = Depends(get_db),
    sender: PopupSender = Depends(get_popup_sender),
) -> LifecycleReportResponse:
    report = process_scheduled_events(db, now=utc_now(), dry_run=dry_run, sender=sender)
    return LifecycleReportResponse(**report.as_dict())


@router.post("/client-nudges", response_model=NudgeReportResponse)
def run_client_nudges(
    dry_run: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> NudgeReportResponse:
    try:
        report = nudge_inactive_clients(db, now=utc_now(), dry_run=dry_run)
    except NudgeConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return NudgeReportResponse(
        nudged_clients=[
            NudgedClientItem(chat_id=item.chat_id, client_name=item.client_name, message=item.message)
            for item in report.nudged_clients
        ],
        total_nudged=report.total_nudged,
        dry_run=report.dry_run,
    )


@router.post("/daily-summaries/{client_id}", response_model=DailySummaryResponse)
def run_daily_summary(
    client_id: str = Path(..., min_length=1, max_length=36),
    dry_run: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> DailySummaryResponse:
    try:
        result = calculate_daily_summary(db, client_id, now=utc_now(), dry_run=dry_run)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found") from exc
    suffix = " [DRY RUN]" if dry_run else ""
    return DailySummaryResponse(
        message=f"Summary calculated for client {client_id}.{suffix}",
        summary=result.summary,
    )
