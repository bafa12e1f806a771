import json
import logging
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session

from wellcoach.core.security import ALGORITHM, SECRET_KEY
from wellcoach.db.models import Base, Chat, IndulgencePlan, LogEntry, Measurement, Popup, User
from wellcoach.db.session import SessionLocal, configure_database, create_tables
from wellcoach.services.notifications import PopupPayload, get_popup_sender

SCHEDULER_KEY = "sched-test-key-123"


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    # Tokens are issued by the identity provider; tests mint their own.
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=60))
    return jwt.encode({"sub": subject, "exp": expire}, SECRET_KEY, algorithm=ALGORITHM)


class RecordingSender:
    def __init__(self, fail_ids: Optional[set[str]] = None) -> None:
        self.fail_ids = fail_ids or set()
        self.sent: list[PopupPayload] = []

    def send_scheduled_popup(self, payload: PopupPayload) -> int:
        if payload.id in self.fail_ids:
            raise RuntimeError(f"simulated delivery failure for {payload.id}")
        self.sent.append(payload)
        return 1


def utc_naive_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "wellcoach_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(autouse=True)
def clean_tables(test_db_path: Path):
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from wellcoach.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}
    # Startup binds a handler to the captured stdout of this test.
    logging.getLogger("wellcoach").handlers = []


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def scheduler_headers(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    monkeypatch.setenv("SCHEDULER_API_KEY", SCHEDULER_KEY)
    return {"X-Scheduler-Key": SCHEDULER_KEY}


@pytest.fixture
def override_sender(app):
    def _override(sender) -> None:
        app.dependency_overrides[get_popup_sender] = lambda: sender

    return _override


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(
        role: str = "client",
        tier: str = "free",
        full_name: str = "Test Client",
        birthdate: Optional[date] = None,
        sex: Optional[str] = None,
        units: Optional[str] = None,
        wthr: Optional[float] = None,
    ) -> User:
        user = User(
            email=f"user_{uuid4().hex[:10]}@test.com",
            full_name=full_name,
            role=role,
            tier=tier,
            birthdate=birthdate,
            sex=sex,
            units=units,
            wthr=wthr,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers


@pytest.fixture
def seed_plan(db_session: Session, create_user):
    def _seed(indulgence_date: datetime, status: str = "planned", user: Optional[User] = None) -> IndulgencePlan:
        owner = user or create_user()
        row = IndulgencePlan(
            user_id=owner.id,
            planned_indulgence="Birthday cake",
            indulgence_date=indulgence_date,
            status=status,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def seed_popup(db_session: Session):
    def _seed(
        scheduled_at: datetime,
        status: str = "scheduled",
        target_type: str = "all",
        target_value: Optional[str] = None,
        name: str = "Spring reset",
    ) -> Popup:
        row = Popup(
            name=name,
            title="New: 7-day spring reset",
            message="Join the challenge starting Monday.",
            image_url="https://cdn.example.com/spring.png",
            cta_text="Join now",
            cta_url="/challenges/spring",
            target_type=target_type,
            target_value=target_value,
            scheduled_at=scheduled_at,
            status=status,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def seed_chat(db_session: Session):
    def _seed(
        client: Optional[User],
        last_client_message_at: Optional[datetime],
        last_automated_message_at: Optional[datetime] = None,
        name: str = "Jordan",
    ) -> Chat:
        row = Chat(
            chat_type="coaching",
            name=name,
            client_id=client.id if client else None,
            last_client_message_at=last_client_message_at,
            last_automated_message_at=last_automated_message_at,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def seed_log(db_session: Session):
    def _seed(client: User, pillar: str, entry_date: datetime, **fields) -> LogEntry:
        nutrients = fields.pop("nutrients", None)
        row = LogEntry(client_id=client.id, pillar=pillar, entry_date=entry_date, **fields)
        if nutrients is not None:
            row.nutrients_json = json.dumps(nutrients)
        db_session.add(row)
        db_session.commit()
        return row

    return _seed


@pytest.fixture
def seed_measurement(db_session: Session):
    def _seed(
        client: User, entry_date: datetime, weight: Optional[float] = None, waist: Optional[float] = None
    ) -> Measurement:
        row = Measurement(client_id=client.id, entry_date=entry_date, weight=weight, waist=waist)
        db_session.add(row)
        db_session.commit()
        return row

    return _seed


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def hours_ago(now: datetime) -> Callable[..., datetime]:
    def _ago(hours: float = 0, minutes: float = 0, seconds: float = 0) -> datetime:
        return now - timedelta(hours=hours, minutes=minutes, seconds=seconds)

    return _ago
