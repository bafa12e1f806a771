import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wellcoach.db.models import Notification, Popup, User
from wellcoach.db.session import SessionLocal

logger = logging.getLogger(__name__)

POPUP_NOTIFICATION_KIND = "custom-popup"
POPUP_PILLAR_ID = "megaphone"


class NotificationDeliveryError(RuntimeError):
    def __init__(self, popup_id: str, message: str):
        super().__init__(message)
        self.popup_id = popup_id


@dataclass(frozen=True)
class PopupPayload:
    id: str
    name: str
    title: str
    message: str
    target_type: str
    target_value: Optional[str] = None
    image_url: Optional[str] = None
    cta_text: Optional[str] = None
    cta_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: Popup) -> "PopupPayload":
        return cls(
            id=row.id,
            name=row.name,
            title=row.title,
            message=row.message,
            target_type=row.target_type,
            target_value=row.target_value,
            image_url=row.image_url,
            cta_text=row.cta_text,
            cta_url=row.cta_url,
        )


class PopupSender(Protocol):
    def send_scheduled_popup(self, payload: PopupPayload) -> int:
        ...


def resolve_audience(db: Session, target_type: str, target_value: Optional[str]) -> list[str]:
    clients = db.query(User.id).filter(User.role == "client")
    if target_type == "all":
        user_ids = [row.id for row in clients.all()]
    elif target_type == "tier" and target_value:
        user_ids = [row.id for row in clients.filter(User.tier == target_value).all()]
    elif target_type == "user" and target_value:
        user_ids = [target_value]
    else:
        user_ids = []
    # Keep first-seen order while dropping duplicates.
    return list(dict.fromkeys(user_ids))


class MailboxPopupSender:
    """Delivers a pop-up by dropping a notification into each recipient's mailbox.

    Uses its own session so delivery commits independently of the caller's
    transaction. Recipients already holding this pop-up are skipped.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.session_factory = session_factory

    def send_scheduled_popup(self, payload: PopupPayload) -> int:
        db = self.session_factory()
        try:
            recipients = resolve_audience(db, payload.target_type, payload.target_value)
            if not recipients:
                logger.info("Pop-up %s has no recipients", payload.id, extra={"target_type": payload.target_type})
                return 0
            already = {
                row.user_id
                for row in db.query(Notification.user_id).filter(
                    Notification.kind == POPUP_NOTIFICATION_KIND,
                    Notification.source_id == payload.id,
                    Notification.user_id.in_(recipients),
                )
            }
            data_json = json.dumps(
                {
                    "id": payload.id,
                    "image_url": payload.image_url or "",
                    "cta_text": payload.cta_text or "",
                    "cta_url": payload.cta_url or "",
                },
                separators=(",", ":"),
            )
            pending = [user_id for user_id in recipients if user_id not in already]
            for user_id in pending:
                db.add(
                    Notification(
                        user_id=user_id,
                        kind=POPUP_NOTIFICATION_KIND,
                        title=payload.title,
                        message=payload.message,
                        pillar_id=POPUP_PILLAR_ID,
                        source_id=payload.id,
                        data_json=data_json,
                    )
                )
            db.commit()
            logger.info(
                'Delivered pop-up "%s" to %d mailboxes',
                payload.title,
                len(pending),
                extra={"popup_id": payload.id, "skipped": len(already)},
            )
            return len(pending)
        except SQLAlchemyError as exc:
            db.rollback()
            raise NotificationDeliveryError(payload.id, f"Pop-up delivery failed: {str(exc)[:220]}") from exc
        finally:
            db.close()


def get_popup_sender() -> PopupSender:
    return MailboxPopupSender()


def next_notification(db: Session, user_id: str) -> Optional[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id)
        .order_by(Notification.created_at.asc(), Notification.id.asc())
        .first()
    )


def mark_notification_seen(db: Session, row: Notification) -> bool:
    """Flag a served notification as seen. Returns whether it had been seen before."""
    was_seen = row.seen
    if not was_seen:
        row.seen = True
        db.commit()
    return was_seen


def dismiss_notification(db: Session, user_id: str, notification_id: str) -> None:
    row = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if not row:
        raise LookupError("Notification not found")
    db.delete(row)
    db.commit()
