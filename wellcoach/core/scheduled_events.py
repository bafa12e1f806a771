"""
Lifecycle processor for indulgence plans and pop-up campaigns.

Each run selects the rows whose status is stale relative to ``now`` and
advances them one step:

    indulgence plans: planned -> active -> completed
    pop-ups:          scheduled -> active -> ended

Activation happens at the scheduled instant; the terminal step happens once
the row is at least ``COMPLETION_GRACE`` past it. A pop-up is only marked
active after its notification went out. All status changes of a run are
committed together; notification delivery is not part of that transaction.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy.orm import Session

from wellcoach.core.clock import to_storage_utc
from wellcoach.db.models import IndulgencePlan, Popup
from wellcoach.services.notifications import PopupPayload, PopupSender, get_popup_sender

logger = logging.getLogger(__name__)

COMPLETION_GRACE = timedelta(hours=24)

PLAN_TRANSITIONS = {"planned": "active", "active": "completed"}
POPUP_TRANSITIONS = {"scheduled": "active", "active": "ended"}


class InvalidTransitionError(ValueError):
    pass


@dataclass
class LifecycleReport:
    activated_plans: int = 0
    completed_plans: int = 0
    activated_popups: int = 0
    completed_popups: int = 0
    dry_run: bool = False

    @property
    def processed_plans(self) -> int:
        return self.activated_plans + self.completed_plans

    @property
    def processed_popups(self) -> int:
        return self.activated_popups + self.completed_popups

    def as_dict(self) -> dict[str, Union[int, bool]]:
        data = asdict(self)
        data["processed_plans"] = self.processed_plans
        data["processed_popups"] = self.processed_popups
        return data


@dataclass
class StagedTransition:
    entity: Union[IndulgencePlan, Popup]
    from_status: str
    to_status: str
    delivered_at: Optional[datetime] = None


def stage_transition(
    entity: Union[IndulgencePlan, Popup], to_status: str, delivered_at: Optional[datetime] = None
) -> StagedTransition:
    transitions = PLAN_TRANSITIONS if isinstance(entity, IndulgencePlan) else POPUP_TRANSITIONS
    if transitions.get(entity.status) != to_status:
        raise InvalidTransitionError(
            f"{type(entity).__name__} {entity.id} cannot move from {entity.status} to {to_status}"
        )
    return StagedTransition(entity=entity, from_status=entity.status, to_status=to_status, delivered_at=delivered_at)


def _due_plans(db: Session, status: str, cutoff: datetime) -> list[IndulgencePlan]:
    return (
        db.query(IndulgencePlan)
        .filter(IndulgencePlan.status == status, IndulgencePlan.indulgence_date <= cutoff)
        .all()
    )


def _due_popups(db: Session, status: str, cutoff: datetime) -> list[Popup]:
    return db.query(Popup).filter(Popup.status == status, Popup.scheduled_at <= cutoff).all()


def _activate_popups(
    popups: list[Popup], now: datetime, dry_run: bool, sender: PopupSender
) -> list[StagedTransition]:
    staged: list[StagedTransition] = []
    for popup in popups:
        if dry_run:
            staged.append(stage_transition(popup, "active"))
            continue
        logger.info("Delivering scheduled pop-up: %s (ID: %s)", popup.name, popup.id)
        try:
            sender.send_scheduled_popup(PopupPayload.from_row(popup))
        except Exception:
            # The pop-up stays scheduled; the next run retries it.
            logger.exception("Pop-up delivery failed, leaving it scheduled", extra={"popup_id": popup.id})
            continue
        staged.append(stage_transition(popup, "active", delivered_at=now))
    return staged


def _commit(db: Session, staged: list[StagedTransition]) -> None:
    for item in staged:
        item.entity.status = item.to_status
        if item.delivered_at is not None:
            item.entity.delivered_at = item.delivered_at
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


def process_scheduled_events(
    db: Session,
    now: datetime,
    dry_run: bool = False,
    sender: Optional[PopupSender] = None,
) -> LifecycleReport:
    now = to_storage_utc(now)
    grace_cutoff = now - COMPLETION_GRACE
    sender = sender or get_popup_sender()
    logger.info("Running scheduled event processing%s", " [DRY RUN]" if dry_run else "")

    planned = _due_plans(db, "planned", now)
    active_plans = _due_plans(db, "active", grace_cutoff)
    scheduled_popups = _due_popups(db, "scheduled", now)
    active_popups = _due_popups(db, "active", grace_cutoff)

    report = LifecycleReport(dry_run=dry_run)
    staged: list[StagedTransition] = []

    for plan in planned:
        logger.info("Activating indulgence plan %s", plan.id)
        staged.append(stage_transition(plan, "active"))
    report.activated_plans = len(planned)

    for plan in active_plans:
        logger.info("Completing indulgence plan %s", plan.id)
        staged.append(stage_transition(plan, "completed"))
    report.completed_plans = len(active_plans)

    activated = _activate_popups(scheduled_popups, now, dry_run, sender)
    staged.extend(activated)
    report.activated_popups = len(activated)

    for popup in active_popups:
        logger.info("Ending active pop-up %s", popup.id)
        staged.append(stage_transition(popup, "ended"))
    report.completed_popups = len(active_popups)

    if staged and not dry_run:
        _commit(db, staged)

    logger.info(
        "Processed %d indulgence plans and %d pop-ups.",
        report.processed_plans,
        report.processed_popups,
        extra=report.as_dict(),
    )
    return report
