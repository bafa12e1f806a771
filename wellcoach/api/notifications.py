import json
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from wellcoach.api.auth import get_current_user
from wellcoach.db.models import Notification, User
from wellcoach.db.session import get_db
from wellcoach.services.notifications import (
    dismiss_notification,
    mark_notification_seen,
    next_notification,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationItem(BaseModel):
    id: str
    type: str
    title: str
    message: str
    pillar_id: str
    data: Optional[dict[str, Any]] = None
    seen: bool = False
    created_at: datetime


class NextNotificationResponse(BaseModel):
    notification: Optional[NotificationItem] = None


class DismissResponse(BaseModel):
    success: bool = True


def _to_item(row: Notification, seen: bool) -> NotificationItem:
    parsed_data: Optional[dict[str, Any]] = None
    if row.data_json:
        try:
            loaded = json.loads(row.data_json)
            if isinstance(loaded, dict):
                parsed_data = loaded
        except json.JSONDecodeError:
            parsed_data = None
    return NotificationItem(
        id=row.id,
        type=row.kind,
        title=row.title,
        message=row.message,
        pillar_id=row.pillar_id,
        data=parsed_data,
        seen=seen,
        created_at=row.created_at,
    )


@router.get("/next", response_model=NextNotificationResponse)
def get_next_notification(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NextNotificationResponse:
    row = next_notification(db, user.id)
    if not row:
        return NextNotificationResponse()
    # Reports whether an earlier request already served this row.
    was_seen = mark_notification_seen(db, row)
    return NextNotificationResponse(notification=_to_item(row, seen=was_seen))


@router.delete("/{notification_id}", response_model=DismissResponse)
def delete_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> DismissResponse:
    try:
        dismiss_notification(db, user.id, notification_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found") from exc
    return DismissResponse()
