import random

import pytest

from wellcoach.core.nudges import (
    NUDGE_TEMPLATES,
    NudgeConfigurationError,
    compose_nudge,
    nudge_inactive_clients,
)
from wellcoach.db.models import Chat, ChatMessage


def test_compose_nudge_uses_coach_first_name() -> None:
    text = compose_nudge("Hi {client_name}, it's {coach_name}.", "Jordan", "Alex Rivera")
    assert text == "Hi Jordan, it's Alex."


def test_inactive_client_gets_automated_message(db_session, create_user, seed_chat, hours_ago, now) -> None:
    coach = create_user(role="coach", full_name="Alex Rivera")
    client = create_user()
    chat = seed_chat(client, last_client_message_at=hours_ago(hours=49), name="Jordan")

    report = nudge_inactive_clients(db_session, now=now, rng=random.Random(7))

    assert report.total_nudged == 1
    nudged = report.nudged_clients[0]
    assert nudged.chat_id == chat.id
    assert nudged.client_name == "Jordan"
    assert "Jordan" in nudged.message
    assert "Alex" in nudged.message
    assert "{" not in nudged.message

    db_session.expire_all()
    messages = db_session.query(ChatMessage).filter(ChatMessage.chat_id == chat.id).all()
    assert len(messages) == 1
    assert messages[0].is_automated is True
    assert messages[0].is_coach is True
    assert messages[0].sender_id == coach.id
    assert db_session.query(Chat).filter(Chat.id == chat.id).one().last_automated_message_at == now


def test_recently_active_client_is_not_nudged(db_session, create_user, seed_chat, hours_ago, now) -> None:
    create_user(role="coach", full_name="Alex Rivera")
    seed_chat(create_user(), last_client_message_at=hours_ago(hours=47))

    report = nudge_inactive_clients(db_session, now=now)
    assert report.total_nudged == 0


def test_renudge_waits_a_day_unless_client_replied(db_session, create_user, seed_chat, hours_ago, now) -> None:
    create_user(role="coach", full_name="Alex Rivera")
    waiting = seed_chat(
        create_user(), last_client_message_at=hours_ago(hours=72), last_automated_message_at=hours_ago(hours=10)
    )
    overdue = seed_chat(
        create_user(), last_client_message_at=hours_ago(hours=96), last_automated_message_at=hours_ago(hours=25)
    )
    replied = seed_chat(
        create_user(), last_client_message_at=hours_ago(hours=50), last_automated_message_at=hours_ago(hours=60)
    )

    report = nudge_inactive_clients(db_session, now=now)

    nudged_ids = {item.chat_id for item in report.nudged_clients}
    assert nudged_ids == {overdue.id, replied.id}
    assert waiting.id not in nudged_ids


def test_dry_run_writes_nothing(db_session, create_user, seed_chat, hours_ago, now) -> None:
    create_user(role="coach", full_name="Alex Rivera")
    chat = seed_chat(create_user(), last_client_message_at=hours_ago(hours=60))

    report = nudge_inactive_clients(db_session, now=now, dry_run=True)

    assert report.total_nudged == 1
    assert report.nudged_clients[0].message
    db_session.expire_all()
    assert db_session.query(ChatMessage).count() == 0
    assert db_session.query(Chat).filter(Chat.id == chat.id).one().last_automated_message_at is None


def test_chat_without_client_is_skipped(db_session, create_user, seed_chat, hours_ago, now) -> None:
    create_user(role="coach", full_name="Alex Rivera")
    seed_chat(None, last_client_message_at=hours_ago(hours=60))

    report = nudge_inactive_clients(db_session, now=now)
    assert report.total_nudged == 0


def test_missing_coaches_is_a_configuration_error(db_session, create_user, seed_chat, hours_ago, now) -> None:
    seed_chat(create_user(), last_client_message_at=hours_ago(hours=60))

    with pytest.raises(NudgeConfigurationError):
        nudge_inactive_clients(db_session, now=now)


def test_templates_reference_both_names() -> None:
    for template in NUDGE_TEMPLATES:
        assert "{client_name}" in template
        assert "{coach_name}" in template
