import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from wellcoach.core.clock import to_storage_utc
from wellcoach.db.models import DailySummary, LogEntry, Measurement, User

logger = logging.getLogger(__name__)

SUMMARY_WINDOW_DAYS = 7
RECENT_BINGE_WINDOW = timedelta(hours=24)
TRACKED_NUTRIENTS = ["Energy", "Protein", "Total lipid (fat)", "Carbohydrate, by difference"]


@dataclass
class DailySummaryResult:
    client_id: str
    summary: dict[str, Any]
    dry_run: bool = False


def _age_years(birthdate: Optional[date], today: date) -> int:
    if not birthdate:
        return 0
    return int((today - birthdate).days / 365.25)


def _nutrients(entry: LogEntry) -> dict[str, float]:
    if not entry.nutrients_json:
        return {}
    try:
        loaded = json.loads(entry.nutrients_json)
    except json.JSONDecodeError:
        return {}
    if not isinstance(loaded, dict):
        return {}
    totals: dict[str, float] = {}
    for key, value in loaded.items():
        # Accept both {"Protein": 12.0} and {"Protein": {"value": 12.0, "unit": "g"}}.
        if isinstance(value, dict):
            value = value.get("value")
        if isinstance(value, (int, float)):
            totals[key] = float(value)
    return totals


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def build_summary(
    client: User, entries: list[LogEntry], measurements: list[Measurement], now: datetime
) -> dict[str, Any]:
    recent_cutoff = now - RECENT_BINGE_WINDOW
    total_sleep = 0.0
    sleep_entries = 0
    total_activity = 0.0
    total_hydration = 0.0
    hydration_entries = 0
    total_upf = 0.0
    upf_meals = 0
    cravings = 0
    binges = 0
    stress_events = 0
    recent_binge_at: Optional[datetime] = None
    nutrient_totals: dict[str, float] = {}

    for entry in entries:
        if entry.pillar == "cravings":
            if entry.entry_type == "binge":
                binges += 1
                if recent_cutoff <= entry.entry_date <= now:
                    if recent_binge_at is None or entry.entry_date > recent_binge_at:
                        recent_binge_at = entry.entry_date
            elif entry.entry_type == "craving":
                cravings += 1
        elif entry.pillar == "stress" and entry.entry_type == "event":
            stress_events += 1
        elif entry.pillar == "sleep" and not entry.is_nap:
            total_sleep += entry.duration or 0.0
            sleep_entries += 1
        elif entry.pillar == "activity":
            total_activity += entry.duration or 0.0
        elif entry.pillar == "hydration":
            total_hydration += entry.amount or 0.0
            hydration_entries += 1
        elif entry.pillar == "nutrition" and entry.upf_score is not None:
            total_upf += entry.upf_score
            upf_meals += 1
            for key, value in _nutrients(entry).items():
                nutrient_totals[key] = nutrient_totals.get(key, 0.0) + value

    weights = [m for m in measurements if m.weight]
    waists = [m for m in measurements if m.waist]

    return {
        "last_updated": now.isoformat(),
        "age": _age_years(client.birthdate, now.date()),
        "sex": client.sex or "unspecified",
        "unit": "kg" if client.units == "metric" else "lbs",
        "start_weight": weights[0].weight if weights else None,
        "current_weight": weights[-1].weight if weights else None,
        "last_weight_date": _iso(weights[-1].entry_date) if weights else None,
        "wthr": client.wthr,
        "last_waist_date": _iso(waists[-1].entry_date) if waists else None,
        "avg_sleep": round(total_sleep / sleep_entries, 2) if sleep_entries else 0.0,
        "avg_activity": round(total_activity / SUMMARY_WINDOW_DAYS, 2),
        "avg_hydration": round(total_hydration / hydration_entries, 2) if hydration_entries else 0.0,
        "cravings": cravings,
        "binges": binges,
        "stress_events": stress_events,
        "recent_binge_at": _iso(recent_binge_at),
        "avg_upf": round(total_upf / upf_meals, 2) if upf_meals else 0.0,
        "avg_nutrients": {
            name: round(nutrient_totals.get(name, 0.0) / SUMMARY_WINDOW_DAYS, 2) for name in TRACKED_NUTRIENTS
        },
    }


def calculate_daily_summary(db: Session, client_id: str, now: datetime, dry_run: bool = False) -> DailySummaryResult:
    now = to_storage_utc(now)
    client = db.query(User).filter(User.id == client_id).first()
    if not client:
        raise LookupError(f"Client {client_id} not found")

    since = now - timedelta(days=SUMMARY_WINDOW_DAYS)
    entries = (
        db.query(LogEntry)
        .filter(LogEntry.client_id == client_id, LogEntry.entry_date >= since, LogEntry.entry_date <= now)
        .order_by(LogEntry.entry_date.asc())
        .all()
    )
    measurements = (
        db.query(Measurement)
        .filter(Measurement.client_id == client_id)
        .order_by(Measurement.entry_date.asc())
        .all()
    )
    summary = build_summary(client, entries, measurements, now)

    if not dry_run:
        row = db.query(DailySummary).filter(DailySummary.client_id == client_id).first()
        if not row:
            row = DailySummary(client_id=client_id)
            db.add(row)
        row.summary_json = json.dumps(summary, separators=(",", ":"))
        db.commit()
        logger.info("Updated daily summary for client %s", client_id)

    return DailySummaryResult(client_id=client_id, summary=summary, dry_run=dry_run)
