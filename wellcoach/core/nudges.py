import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from wellcoach.core.clock import to_storage_utc
from wellcoach.db.models import Chat, ChatMessage, User

logger = logging.getLogger(__name__)

INACTIVITY_WINDOW = timedelta(hours=48)
RENUDGE_INTERVAL = timedelta(hours=24)

NUDGE_TEMPLATES = [
    "Hi {client_name}, it's {coach_name}. Haven't heard from you in a couple of days. How are things going?",
    "Hey {client_name}! {coach_name} here. Checking in: what's one small win from this week?",
    "{client_name}, just a quick nudge from {coach_name}. Logging even one meal today keeps your momentum going.",
    "Hi {client_name}, {coach_name} here. Anything getting in the way lately? Reply when you have a minute.",
    "Thinking of you, {client_name}! A short check-in from {coach_name}: how did you sleep last night?",
]


class NudgeConfigurationError(RuntimeError):
    pass


@dataclass
class NudgedClient:
    chat_id: str
    client_name: str
    message: str


@dataclass
class NudgeReport:
    nudged_clients: list[NudgedClient] = field(default_factory=list)
    dry_run: bool = False

    @property
    def total_nudged(self) -> int:
        return len(self.nudged_clients)


def is_nudge_due(chat: Chat, now: datetime) -> bool:
    last_client = chat.last_client_message_at
    if last_client is None or last_client > now - INACTIVITY_WINDOW:
        return False
    last_nudge = chat.last_automated_message_at
    if last_nudge is None:
        return True
    if last_client > last_nudge:
        # Replied after the last nudge, then went quiet again.
        return True
    return now - last_nudge >= RENUDGE_INTERVAL


def compose_nudge(template: str, client_name: str, coach_name: str) -> str:
    first_name = (coach_name or "").split(" ")[0] or coach_name
    return template.replace("{client_name}", client_name).replace("{coach_name}", first_name)


def nudge_inactive_clients(
    db: Session,
    now: datetime,
    dry_run: bool = False,
    rng: Optional[random.Random] = None,
) -> NudgeReport:
    now = to_storage_utc(now)
    rng = rng or random.Random()
    logger.info("Starting automated client nudge run%s", " [DRY RUN]" if dry_run else "")

    candidates = (
        db.query(Chat)
        .filter(Chat.chat_type == "coaching", Chat.last_client_message_at <= now - INACTIVITY_WINDOW)
        .order_by(Chat.last_client_message_at.asc())
        .all()
    )
    report = NudgeReport(dry_run=dry_run)
    if not candidates:
        logger.info("No clients need nudging.")
        return report

    coaches = db.query(User).filter(User.role == "coach").order_by(User.email.asc()).all()
    if not coaches:
        raise NudgeConfigurationError("No coach accounts available to send nudges")

    for chat in candidates:
        if not is_nudge_due(chat, now):
            hours = (now - chat.last_automated_message_at).total_seconds() / 3600
            logger.info("Skipping %s, recently nudged %.1f hours ago.", chat.name, hours)
            continue
        if not chat.client_id:
            logger.warning("Could not find client in chat %s", chat.id)
            continue

        coach = rng.choice(coaches)
        template = rng.choice(NUDGE_TEMPLATES)
        text = compose_nudge(template, chat.name, coach.full_name)
        report.nudged_clients.append(NudgedClient(chat_id=chat.id, client_name=chat.name, message=text))

        if dry_run:
            continue
        logger.info("Sending nudge to %s in chat %s", chat.name, chat.id)
        db.add(
            ChatMessage(
                chat_id=chat.id,
                sender_id=coach.id,
                sender_name=coach.full_name,
                text=text,
                is_coach=True,
                is_automated=True,
                created_at=now,
            )
        )
        chat.last_automated_message_at = now
        chat.last_message_at = now

    if report.nudged_clients and not dry_run:
        db.commit()
    logger.info(
        "Nudge run complete. Nudged %d clients.",
        report.total_nudged,
        extra={"dry_run": dry_run, "total_nudged": report.total_nudged},
    )
    return report
