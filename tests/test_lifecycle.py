from datetime import timedelta

import pytest
import structlog
from sqlalchemy.exc import SQLAlchemyError
from structlog.testing import CapturingLogger

from safetrack import crud, lifecycle
from safetrack.access import Caller
from safetrack.domain import ExternalContact, NotificationPreferences, PlatformContact
from safetrack.errors import Forbidden, InvalidToken, NotFound, ValidationFailed
from safetrack.lifecycle import EmergencyContactManager
from safetrack.models import EMERGENCY_CONTACT_ROLE, ContactStatus, User
from safetrack.notifier import AlertKind


def external(n=1, **kwargs):
    data = {"name": f"Contact {n}", "email": f"contact{n}@example.com"}
    data.update(kwargs)
    return ExternalContact(**data)


def activate(manager, notifier, contact):
    return manager.verify(notifier.last_token(contact.id))


@pytest.fixture()
def owner(make_user):
    return make_user("owner@example.com")


@pytest.fixture()
def me(owner):
    return Caller.from_user(owner)


# Create


def test_create_starts_pending_with_token(manager, notifier, owner, me, clock):
    contact = manager.create(owner.id, external(), me, relationship=" Sister ")

    assert contact.status == ContactStatus.PENDING
    assert contact.verification_token
    assert contact.token_created_at == clock.now
    assert contact.accepted_at is None
    assert contact.relationship == "Sister"
    assert contact.notify_sos and not contact.notify_geofence
    assert notifier.last_token(contact.id) == contact.verification_token


def test_create_stores_preferences_and_lowercases_email(manager, owner, me):
    contact = manager.create(
        owner.id,
        external(email="Mixed.Case@Example.com"),
        me,
        preferences=NotificationPreferences(sos=False, geofence=True),
    )
    assert contact.email == "mixed.case@example.com"
    assert not contact.notify_sos
    assert contact.notify_geofence


def test_create_requires_name(manager, owner, me):
    with pytest.raises(ValidationFailed):
        manager.create(owner.id, ExternalContact(name="  ", email="x@example.com"), me)


def test_create_external_requires_email(manager, owner, me):
    with pytest.raises(ValidationFailed) as exc:
        manager.create(owner.id, ExternalContact(name="No Mail", phone="555"), me)
    assert exc.value.status_code == 400


def test_create_for_unknown_owner(manager, me):
    with pytest.raises(NotFound):
        manager.create(9999, external(), me)


def test_create_for_someone_else_is_forbidden(manager, make_user, owner):
    other = make_user("other@example.com")
    with pytest.raises(Forbidden):
        manager.create(owner.id, external(), Caller.from_user(other))


def test_admin_may_create_for_anyone(manager, make_user, owner):
    admin = make_user("admin@example.com", role="admin")
    contact = manager.create(owner.id, external(), Caller.from_user(admin))
    assert contact.owner_id == owner.id


def test_duplicate_email_is_case_insensitive(manager, owner, me):
    manager.create(owner.id, external(1), me)
    with pytest.raises(ValidationFailed):
        manager.create(owner.id, external(2, email="CONTACT1@example.com"), me)


def test_duplicate_phone_is_rejected(manager, owner, me):
    manager.create(owner.id, external(1, phone="+15550001"), me)
    with pytest.raises(ValidationFailed):
        manager.create(owner.id, external(2, phone="+15550001"), me)


def test_same_email_for_different_owners(manager, make_user, owner, me):
    other = make_user("other@example.com")
    manager.create(owner.id, external(1), me)
    contact = manager.create(other.id, external(1), Caller.from_user(other))
    assert contact.owner_id == other.id


def test_store_rejects_duplicate_past_the_precheck(manager, owner, me, monkeypatch):
    manager.create(owner.id, external(1), me)
    monkeypatch.setattr(crud, "contact_exists_for_email", lambda *a, **k: False)

    with pytest.raises(ValidationFailed):
        manager.create(owner.id, external(1), me)
    assert crud.count_contacts(manager.db, owner.id, list(ContactStatus)) == 1


def test_platform_contact_defaults_to_account_email(manager, notifier, make_user, owner, me):
    helper = make_user("helper@example.com")
    contact = manager.create(owner.id, PlatformContact(user_id=helper.id, name="Helper"), me)

    assert contact.contact_user_id == helper.id
    assert contact.email == "helper@example.com"
    assert contact.status == ContactStatus.PENDING
    assert notifier.events("verification_requested")


def test_platform_contact_must_exist(manager, owner, me):
    with pytest.raises(NotFound):
        manager.create(owner.id, PlatformContact(user_id=4242, name="Ghost"), me)


def test_owner_cannot_designate_themselves(manager, owner, me):
    with pytest.raises(ValidationFailed):
        manager.create(owner.id, PlatformContact(user_id=owner.id, name="Me"), me)


def test_platform_contact_designated_once(manager, make_user, owner, me):
    helper = make_user("helper@example.com")
    manager.create(owner.id, PlatformContact(user_id=helper.id, name="Helper"), me)
    with pytest.raises(ValidationFailed):
        manager.create(
            owner.id,
            PlatformContact(user_id=helper.id, name="Helper", email="alt@example.com"),
            me,
        )


def test_notification_failure_keeps_the_contact(manager, notifier, owner, me):
    notifier.failing.add("verification_requested")
    contact = manager.create(owner.id, external(), me)

    assert contact.status == ContactStatus.PENDING
    assert crud.get_contact_by_id(manager.db, contact.id) is not None


def test_notification_failure_is_logged(manager, notifier, owner, me, monkeypatch):
    captured = CapturingLogger()
    monkeypatch.setattr(
        lifecycle,
        "logger",
        structlog.wrap_logger(
            captured, processors=[], wrapper_class=structlog.stdlib.BoundLogger
        ),
    )
    notifier.failing.add("verification_requested")

    contact = manager.create(owner.id, external(), me)

    errors = [call.kwargs for call in captured.calls if call.method_name == "error"]
    assert errors == [
        {
            "event": "notification failed",
            "notification": "verification_requested",
            "contact_id": contact.id,
            "error": "simulated delivery failure",
        }
    ]


# Limit

# These tests run on one SQLite session. SQLite ignores FOR UPDATE, so two
# creations racing past the count for the same owner are not exercised here;
# the owner row lock only serialises them on a server database.


def test_limit_counts_active_and_pending(manager, notifier, owner, me):
    contacts = [manager.create(owner.id, external(n), me) for n in range(1, 6)]
    activate(manager, notifier, contacts[0])

    with pytest.raises(ValidationFailed) as exc:
        manager.create(owner.id, external(6), me)
    assert "Maximum number of emergency contacts (5)" in exc.value.message


def test_declined_contact_frees_a_slot(manager, notifier, owner, me):
    contacts = [manager.create(owner.id, external(n), me) for n in range(1, 6)]
    manager.decline(notifier.last_token(contacts[0].id))

    contact = manager.create(owner.id, external(6), me)
    assert contact.status == ContactStatus.PENDING


def test_removed_contact_frees_a_slot(manager, owner, me):
    contacts = [manager.create(owner.id, external(n), me) for n in range(1, 6)]
    manager.remove(contacts[0].id, me)
    manager.create(owner.id, external(6), me)


def test_limit_on_verify_when_pending_is_not_counted(db_session, notifier, clock, owner, me):
    manager = EmergencyContactManager(
        db_session, notifier, max_contacts=1, limit_counts_pending=False, clock=clock
    )
    first = manager.create(owner.id, external(1), me)
    second = manager.create(owner.id, external(2), me)

    activate(manager, notifier, first)
    with pytest.raises(ValidationFailed):
        activate(manager, notifier, second)
    assert crud.get_contact_by_id(db_session, second.id).status == ContactStatus.PENDING


def test_expired_token_at_the_limit_is_invalid(db_session, notifier, clock, owner, me):
    manager = EmergencyContactManager(
        db_session, notifier, max_contacts=1, limit_counts_pending=False, clock=clock
    )
    first = manager.create(owner.id, external(1), me)
    second = manager.create(owner.id, external(2), me)
    activate(manager, notifier, first)
    clock.advance(days=8)

    with pytest.raises(InvalidToken):
        activate(manager, notifier, second)
    assert crud.get_contact_by_id(db_session, second.id).status == ContactStatus.PENDING


# Verify and decline


def test_verify_activates(manager, notifier, owner, me, clock):
    contact = manager.create(owner.id, external(), me)
    clock.advance(hours=1)

    verified = activate(manager, notifier, contact)

    assert verified.status == ContactStatus.ACTIVE
    assert verified.accepted_at == clock.now
    assert verified.verification_token is None
    assert verified.token_created_at is None
    assert notifier.events("verified")


def test_token_is_single_use(manager, notifier, owner, me):
    contact = manager.create(owner.id, external(), me)
    token = notifier.last_token(contact.id)
    manager.verify(token)

    with pytest.raises(InvalidToken):
        manager.verify(token)
    with pytest.raises(InvalidToken):
        manager.decline(token)


def test_unknown_and_empty_tokens(manager):
    with pytest.raises(InvalidToken):
        manager.verify("no-such-token")
    with pytest.raises(InvalidToken):
        manager.decline("")


def test_invalid_token_message_does_not_leak_the_reason(manager, notifier, owner, me, clock):
    contact = manager.create(owner.id, external(), me)
    clock.advance(days=30)

    with pytest.raises(InvalidToken) as expired:
        activate(manager, notifier, contact)
    with pytest.raises(InvalidToken) as unknown:
        manager.verify("bogus")
    assert expired.value.message == unknown.value.message


def test_token_window_boundary(manager, notifier, owner, me, clock):
    early = manager.create(owner.id, external(1), me)
    late = manager.create(owner.id, external(2), me)

    clock.advance(days=7, seconds=-1)
    assert activate(manager, notifier, early).status == ContactStatus.ACTIVE

    clock.advance(seconds=1)
    with pytest.raises(InvalidToken):
        activate(manager, notifier, late)


def test_decline(manager, notifier, owner, me):
    contact = manager.create(owner.id, external(), me)
    declined = manager.decline(notifier.last_token(contact.id))

    assert declined.status == ContactStatus.DECLINED
    assert declined.verification_token is None
    assert declined.accepted_at is None
    assert notifier.events("declined")


def test_verify_grants_role_to_platform_contact(manager, notifier, make_user, owner, me, db_session):
    helper = make_user("helper@example.com")
    second_owner = make_user("second@example.com")

    first = manager.create(owner.id, PlatformContact(user_id=helper.id, name="Helper"), me)
    second = manager.create(
        second_owner.id,
        PlatformContact(user_id=helper.id, name="Helper"),
        Caller.from_user(second_owner),
    )
    activate(manager, notifier, first)
    activate(manager, notifier, second)

    db_session.expire_all()
    user = db_session.get(User, helper.id)
    assert EMERGENCY_CONTACT_ROLE in user.roles
    assert [r.role for r in user.granted_roles] == [EMERGENCY_CONTACT_ROLE]


def test_role_grant_failure_keeps_contact_active(manager, notifier, make_user, owner, me, monkeypatch):
    helper = make_user("helper@example.com")
    contact = manager.create(owner.id, PlatformContact(user_id=helper.id, name="Helper"), me)

    def broken(*args, **kwargs):
        raise SQLAlchemyError("role table unavailable")

    monkeypatch.setattr(crud, "grant_role", broken)
    verified = activate(manager, notifier, contact)
    assert verified.status == ContactStatus.ACTIVE


def test_repair_grants_missing_contact_roles(manager, notifier, make_user, owner, me, db_session, monkeypatch):
    helper = make_user("helper@example.com")
    outsider = make_user("outsider@example.com")
    contact = manager.create(owner.id, PlatformContact(user_id=helper.id, name="Helper"), me)
    manager.create(owner.id, PlatformContact(user_id=outsider.id, name="Outsider"), me)

    def broken(*args, **kwargs):
        raise SQLAlchemyError("role table unavailable")

    with monkeypatch.context() as patched:
        patched.setattr(crud, "grant_role", broken)
        activate(manager, notifier, contact)

    assert manager.repair_contact_roles() == 1
    assert manager.repair_contact_roles() == 0

    db_session.expire_all()
    assert EMERGENCY_CONTACT_ROLE in db_session.get(User, helper.id).roles
    # a pending designation grants nothing
    assert EMERGENCY_CONTACT_ROLE not in db_session.get(User, outsider.id).roles


def test_verify_loses_race_against_cleanup(manager, notifier, owner, me, clock, db_session, monkeypatch):
    contact = manager.create(owner.id, external(), me)
    token = notifier.last_token(contact.id)
    real = crud.transition_with_token

    def cleanup_first(*args, **kwargs):
        later = EmergencyContactManager(
            db_session, notifier, clock=lambda: clock.now + timedelta(days=8)
        )
        assert later.cleanup_expired_tokens() == 1
        return real(*args, **kwargs)

    monkeypatch.setattr(crud, "transition_with_token", cleanup_first)
    with pytest.raises(InvalidToken):
        manager.verify(token)

    stored = crud.get_contact_by_id(db_session, contact.id)
    assert stored.status == ContactStatus.EXPIRED
    assert stored.verification_token is None


def test_concurrent_verify_has_one_winner(manager, notifier, owner, me, monkeypatch):
    contact = manager.create(owner.id, external(), me)
    token = notifier.last_token(contact.id)
    real = crud.transition_with_token

    def other_request_wins(*args, **kwargs):
        assert real(*args, **kwargs) == 1
        return real(*args, **kwargs)

    monkeypatch.setattr(crud, "transition_with_token", other_request_wins)
    with pytest.raises(InvalidToken):
        manager.verify(token)
    assert crud.get_contact_by_id(manager.db, contact.id).status == ContactStatus.ACTIVE


# Resend


def test_resend_replaces_token(manager, notifier, owner, me, clock):
    contact = manager.create(owner.id, external(), me)
    old = notifier.last_token(contact.id)
    clock.advance(days=6)

    manager.resend_verification(contact.id, me)
    new = notifier.last_token(contact.id)
    assert new != old

    with pytest.raises(InvalidToken):
        manager.verify(old)

    # the window restarts with the new token
    clock.advance(days=6)
    assert manager.verify(new).status == ContactStatus.ACTIVE


def test_resend_requires_pending(manager, notifier, owner, me):
    contact = manager.create(owner.id, external(), me)
    activate(manager, notifier, contact)
    with pytest.raises(ValidationFailed):
        manager.resend_verification(contact.id, me)


def test_resend_access(manager, make_user, owner, me):
    contact = manager.create(owner.id, external(), me)
    other = make_user("other@example.com")
    with pytest.raises(Forbidden):
        manager.resend_verification(contact.id, Caller.from_user(other))
    with pytest.raises(NotFound):
        manager.resend_verification("missing", me)


# Cleanup


def test_cleanup_is_idempotent(manager, notifier, owner, me, clock):
    stale = manager.create(owner.id, external(1), me)
    clock.advance(days=3)
    fresh = manager.create(owner.id, external(2), me)
    clock.advance(days=4)

    assert manager.cleanup_expired_tokens() == 1
    assert manager.cleanup_expired_tokens() == 0

    expired = crud.get_contact_by_id(manager.db, stale.id)
    assert expired.status == ContactStatus.EXPIRED
    assert expired.verification_token is None
    assert expired.token_created_at is None
    assert crud.get_contact_by_id(manager.db, fresh.id).status == ContactStatus.PENDING

    with pytest.raises(InvalidToken):
        activate(manager, notifier, stale)


def test_cleanup_leaves_answered_contacts_alone(manager, notifier, owner, me, clock):
    accepted = manager.create(owner.id, external(1), me)
    activate(manager, notifier, accepted)
    clock.advance(days=10)

    assert manager.cleanup_expired_tokens() == 0
    assert crud.get_contact_by_id(manager.db, accepted.id).status == ContactStatus.ACTIVE


# Update


def test_update_active_contact(manager, notifier, owner, me, clock):
    contact = activate(manager, notifier, manager.create(owner.id, external(phone="111"), me))
    clock.advance(minutes=5)

    updated = manager.update(
        contact.id,
        {"name": "Renamed", "notify_geofence": True, "relationship": None},
        me,
    )
    assert updated.name == "Renamed"
    assert updated.notify_geofence
    assert updated.phone == "111"
    assert updated.updated_at == clock.now
    assert updated.status == ContactStatus.ACTIVE


def test_update_clears_optional_fields(manager, notifier, owner, me):
    contact = activate(
        manager, notifier, manager.create(owner.id, external(phone="111"), me)
    )
    updated = manager.update(contact.id, {"phone": "", "name": ""}, me)
    assert updated.phone is None
    assert updated.name == "Contact 1"


def test_update_pending_contact_only_notes(manager, owner, me):
    contact = manager.create(owner.id, external(), me)

    with pytest.raises(ValidationFailed):
        manager.update(contact.id, {"name": "Renamed"}, me)

    updated = manager.update(contact.id, {"notes": "call after 6pm"}, me)
    assert updated.notes == "call after 6pm"
    assert updated.status == ContactStatus.PENDING
    assert updated.verification_token is not None


def test_update_phone_collision(manager, notifier, owner, me):
    activate(manager, notifier, manager.create(owner.id, external(1, phone="111"), me))
    second = activate(
        manager, notifier, manager.create(owner.id, external(2, phone="222"), me)
    )

    with pytest.raises(ValidationFailed):
        manager.update(second.id, {"phone": "111"}, me)
    # keeping its own number is not a collision
    assert manager.update(second.id, {"phone": "222"}, me).phone == "222"


def test_update_access(manager, make_user, owner, me):
    contact = manager.create(owner.id, external(), me)
    other = make_user("other@example.com")
    with pytest.raises(Forbidden):
        manager.update(contact.id, {"notes": "x"}, Caller.from_user(other))
    with pytest.raises(NotFound):
        manager.update("missing", {"notes": "x"}, me)


# Remove


def test_remove_active_contact_notifies(manager, notifier, owner, me):
    contact = activate(manager, notifier, manager.create(owner.id, external(), me))
    manager.remove(contact.id, me)

    assert crud.get_contact_by_id(manager.db, contact.id) is None
    assert [cid for _, cid, _ in notifier.events("removed")] == [contact.id]


def test_remove_pending_contact_is_silent(manager, notifier, owner, me):
    contact = manager.create(owner.id, external(), me)
    manager.remove(contact.id, me)
    assert not notifier.events("removed")
    with pytest.raises(NotFound):
        manager.remove(contact.id, me)


def test_remove_access(manager, make_user, owner, me):
    contact = manager.create(owner.id, external(), me)
    other = make_user("other@example.com")
    with pytest.raises(Forbidden):
        manager.remove(contact.id, Caller.from_user(other))


# Alerts


def test_sos_goes_to_active_opted_in_contacts(manager, notifier, owner, me):
    sos = activate(manager, notifier, manager.create(owner.id, external(1), me))
    activate(
        manager,
        notifier,
        manager.create(
            owner.id, external(2), me, preferences=NotificationPreferences(sos=False)
        ),
    )
    manager.create(owner.id, external(3), me)

    report = manager.send_emergency_notifications(owner.id, 50.45, 30.52, "help")

    assert (report.notified, report.attempted) == (1, 1)
    alerts = notifier.events("alert")
    assert [cid for _, cid, _ in alerts] == [sos.id]
    payload = alerts[0][2]["payload"]
    assert payload["latitude"] == 50.45
    assert payload["message"] == "help"
    assert "50.45,30.52" in payload["map"]


def test_failed_alert_is_counted_not_raised(manager, notifier, owner, me):
    first = activate(manager, notifier, manager.create(owner.id, external(1), me))
    activate(manager, notifier, manager.create(owner.id, external(2), me))
    notifier.failing.add(first.id)

    report = manager.send_emergency_notifications(owner.id, 0.0, 0.0)
    assert (report.notified, report.attempted) == (1, 2)


def test_alert_leaves_records_untouched(manager, notifier, owner, me):
    contact = activate(manager, notifier, manager.create(owner.id, external(), me))
    before = crud.get_contact_by_id(manager.db, contact.id).updated_at

    manager.send_alert(owner.id, AlertKind.SOS, {"message": "test"})
    assert crud.get_contact_by_id(manager.db, contact.id).updated_at == before


def test_geofence_alert_respects_preference(manager, notifier, owner, me):
    activate(manager, notifier, manager.create(owner.id, external(1), me))
    report = manager.send_alert(owner.id, AlertKind.GEOFENCE, {})
    assert (report.notified, report.attempted) == (0, 0)


def test_alert_for_unknown_owner(manager):
    with pytest.raises(NotFound):
        manager.send_emergency_notifications(9999, 0.0, 0.0)


# Reads


def test_check_pending_contacts(manager, notifier, make_user, owner, me):
    helper = make_user("helper@example.com")
    manager.create(owner.id, external(1), me)
    accepted = manager.create(owner.id, external(2), me)
    activate(manager, notifier, accepted)
    manager.create(
        helper.id,
        PlatformContact(user_id=owner.id, name="Owner"),
        Caller.from_user(helper),
    )

    assert manager.check_pending_contacts(owner.id, me) == {
        "pending_sent": 1,
        "pending_received": 1,
    }


def test_get_contact_visibility(manager, make_user, owner, me):
    helper = make_user("helper@example.com")
    stranger = make_user("stranger@example.com")
    contact = manager.create(owner.id, PlatformContact(user_id=helper.id, name="Helper"), me)

    assert manager.get_contact(contact.id, me).id == contact.id
    assert manager.get_contact(contact.id, Caller.from_user(helper)).id == contact.id
    with pytest.raises(Forbidden):
        manager.get_contact(contact.id, Caller.from_user(stranger))


def test_list_contacts_pages_and_filters(manager, notifier, owner, me, clock):
    created = []
    for n in range(1, 5):
        created.append(manager.create(owner.id, external(n), me))
        clock.advance(minutes=1)
    activate(manager, notifier, created[1])

    page = manager.list_contacts(owner.id, me, skip=1, limit=2)
    assert [c.id for c in page] == [created[1].id, created[2].id]
    assert [c.id for c in manager.list_active_contacts(owner.id, me)] == [created[1].id]
