from datetime import timedelta

from sqlalchemy.orm import sessionmaker

from safetrack import tasks
from safetrack.models import (
    EMERGENCY_CONTACT_ROLE,
    ContactStatus,
    EmergencyContact,
    User,
    utcnow,
)


def test_beat_schedules_cleanup():
    entry = tasks.celery_app.conf.beat_schedule["cleanup-expired-emergency-contacts"]
    assert entry["task"] == "cleanup_expired_emergency_contacts"
    assert entry["schedule"] == tasks.settings.CLEANUP_INTERVAL_MINUTES * 60


def test_cleanup_task_expires_stale_invitations(db_session, make_user, monkeypatch):
    owner = make_user("owner@example.com")
    now = utcnow()
    db_session.add_all(
        [
            EmergencyContact(
                owner_id=owner.id,
                name="Stale",
                email="stale@example.com",
                status=ContactStatus.PENDING,
                verification_token="stale-token",
                token_created_at=now - timedelta(days=8),
            ),
            EmergencyContact(
                owner_id=owner.id,
                name="Fresh",
                email="fresh@example.com",
                status=ContactStatus.PENDING,
                verification_token="fresh-token",
                token_created_at=now - timedelta(days=1),
            ),
        ]
    )
    db_session.commit()
    monkeypatch.setattr(tasks, "SessionLocal", sessionmaker(bind=db_session.get_bind()))

    assert tasks.cleanup_expired_emergency_contacts() == 1
    assert tasks.cleanup_expired_emergency_contacts() == 0

    db_session.expire_all()
    statuses = {c.name: c.status for c in db_session.query(EmergencyContact).all()}
    assert statuses == {"Stale": ContactStatus.EXPIRED, "Fresh": ContactStatus.PENDING}


def test_role_repair_task_grants_missing_roles(db_session, make_user, monkeypatch):
    owner = make_user("owner@example.com")
    helper = make_user("helper@example.com")
    db_session.add(
        EmergencyContact(
            owner_id=owner.id,
            contact_user_id=helper.id,
            name="Helper",
            email="helper@example.com",
            status=ContactStatus.ACTIVE,
            accepted_at=utcnow(),
        )
    )
    db_session.commit()
    monkeypatch.setattr(tasks, "SessionLocal", sessionmaker(bind=db_session.get_bind()))

    assert "repair-emergency-contact-roles" in tasks.celery_app.conf.beat_schedule
    assert tasks.repair_emergency_contact_roles() == 1
    assert tasks.repair_emergency_contact_roles() == 0

    db_session.expire_all()
    assert EMERGENCY_CONTACT_ROLE in db_session.get(User, helper.id).roles
