"""Emergency contact lifecycle.

:class:`EmergencyContactManager` owns every state change of an emergency
contact relationship::

    create ──> PENDING ──verify──> ACTIVE
                  │ ├───decline──> DECLINED
                  │ └───cleanup──> EXPIRED
                  └─resend─> PENDING (new token)

Each transition is one conditional ``UPDATE`` in :mod:`safetrack.crud`, so
two requests racing on the same record (two verifies, a verify and the
cleanup sweep) cannot both win. Notifications and role grants run after
the transition is committed and never undo it.
"""

import secrets
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .access import Caller, authorize, ensure_access
from .domain import (
    ContactRef,
    NotificationPreferences,
    NotificationReport,
    PlatformContact,
)
from .errors import Forbidden, InvalidToken, NotFound, ValidationFailed
from .logger import get_logger
from .models import (
    EMERGENCY_CONTACT_ROLE,
    ContactStatus,
    EmergencyContact,
    utcnow,
)
from .notifier import AlertKind, Notifier

logger = get_logger(__name__)

DEFAULT_MAX_CONTACTS = 5
DEFAULT_TOKEN_EXPIRY = timedelta(days=7)

PREFERENCE_FIELDS = (
    "notify_sos",
    "notify_geofence",
    "notify_inactivity",
    "notify_low_battery",
)
#: Fields that may only change while the relationship is active
SUBSTANTIVE_FIELDS = ("name", "phone", "relationship") + PREFERENCE_FIELDS
UPDATABLE_FIELDS = SUBSTANTIVE_FIELDS + ("notes",)


def new_token() -> str:
    """Opaque single-use verification token."""
    return secrets.token_urlsafe(32)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _clean_email(value: str | None) -> str | None:
    value = _clean(value)
    return value.lower() if value else None


class EmergencyContactManager:
    """Creates, verifies, updates and removes emergency contacts.

    Args:
        db (Session): Database session, one per request.
        notifier (Notifier): Receives lifecycle and alert notifications.
        max_contacts (int): Per-owner contact limit.
        token_expiry (timedelta): Lifetime of a verification token.
        limit_counts_pending (bool): Count pending invitations toward the
            limit. When off, the limit is enforced again on verify.
        clock (Callable[[], datetime]): Source of naive UTC timestamps.
        token_factory (Callable[[], str]): Produces verification tokens.
    """

    def __init__(
        self,
        db: Session,
        notifier: Notifier,
        max_contacts: int = DEFAULT_MAX_CONTACTS,
        token_expiry: timedelta = DEFAULT_TOKEN_EXPIRY,
        limit_counts_pending: bool = True,
        clock: Callable[[], datetime] = utcnow,
        token_factory: Callable[[], str] = new_token,
    ):
        self.db = db
        self.notifier = notifier
        self.max_contacts = max_contacts
        self.token_expiry = token_expiry
        self.limit_counts_pending = limit_counts_pending
        self.clock = clock
        self.token_factory = token_factory

    @property
    def limited_statuses(self) -> tuple[ContactStatus, ...]:
        if self.limit_counts_pending:
            return (ContactStatus.ACTIVE, ContactStatus.PENDING)
        return (ContactStatus.ACTIVE,)

    # Creation

    def create(
        self,
        owner_id: int,
        contact: ContactRef,
        caller: Caller,
        preferences: NotificationPreferences | None = None,
        relationship: str | None = None,
        notes: str | None = None,
    ) -> EmergencyContact:
        """
        Designate a new emergency contact for ``owner_id``.

        The relationship starts ``PENDING`` with a fresh token, and an
        invitation is sent to the contact.

        Raises:
            NotFound: If the owner or the referenced platform user is unknown.
            Forbidden: If ``caller`` may not manage the owner's contacts.
            ValidationFailed: If a field is missing, the limit is reached or
                the contact duplicates an existing one.
        """
        preferences = preferences or NotificationPreferences()
        try:
            record = self._build_contact(owner_id, contact, caller)
        except Exception:
            self.db.rollback()
            raise

        now = self.clock()
        token = self.token_factory()
        record.status = ContactStatus.PENDING
        record.verification_token = token
        record.token_created_at = now
        record.relationship = _clean(relationship)
        record.notes = _clean(notes)
        record.created_at = now
        record.updated_at = now
        for column, value in preferences.as_columns().items():
            setattr(record, column, value)

        try:
            record = crud.add_contact(self.db, record)
        except IntegrityError:
            self.db.rollback()
            raise ValidationFailed("Emergency contact already exists")

        logger.info(
            "emergency contact created",
            contact_id=record.id,
            owner_id=owner_id,
            contact_user_id=record.contact_user_id,
        )
        self._notify(
            "verification_requested",
            record,
            self.notifier.notify_verification_requested,
            record,
            token,
        )
        return record

    def _build_contact(
        self, owner_id: int, contact: ContactRef, caller: Caller
    ) -> EmergencyContact:
        owner = crud.lock_owner(self.db, owner_id)
        if owner is None:
            raise NotFound(f"User not found with ID: {owner_id}")
        ensure_access(caller, owner_id)

        name = _clean(contact.name)
        if not name:
            raise ValidationFailed("Contact name is required")
        email = _clean_email(contact.email)
        phone = _clean(contact.phone)
        contact_user = None

        if isinstance(contact, PlatformContact):
            contact_user = crud.get_user_by_id(self.db, contact.user_id)
            if contact_user is None:
                raise NotFound(f"Contact user not found with ID: {contact.user_id}")
            if contact_user.id == owner_id:
                raise ValidationFailed("You cannot be your own emergency contact")
            email = email or _clean_email(contact_user.email)
        elif not email:
            raise ValidationFailed(
                "Email is required when contact is not a registered user"
            )

        existing = crud.count_contacts(self.db, owner_id, self.limited_statuses)
        if existing >= self.max_contacts:
            raise ValidationFailed(
                f"Maximum number of emergency contacts ({self.max_contacts}) reached"
            )
        if contact_user is not None and crud.contact_exists_for_user(
            self.db, owner_id, contact_user.id
        ):
            raise ValidationFailed(
                "Emergency contact relationship already exists with this user"
            )
        if email and crud.contact_exists_for_email(self.db, owner_id, email):
            raise ValidationFailed("Emergency contact with this email already exists")
        if phone and crud.contact_exists_for_phone(self.db, owner_id, phone):
            raise ValidationFailed(
                "Emergency contact with this phone number already exists"
            )

        return EmergencyContact(
            owner_id=owner_id,
            contact_user_id=contact_user.id if contact_user else None,
            name=name,
            email=email,
            phone=phone,
        )

    # Token operations

    def verify(self, token: str) -> EmergencyContact:
        """
        Accept an invitation with its emailed token.

        Reached from a mailed link, so no caller is required. A platform
        contact is granted the emergency contact role once the relationship
        is active.

        Raises:
            InvalidToken: If no live pending invitation holds ``token``.
            ValidationFailed: If pending invitations do not count toward the
                limit and the owner is already at the limit.
        """
        contact = self._consume_token(token, ContactStatus.ACTIVE)
        logger.info("emergency contact verified", contact_id=contact.id)

        if contact.contact_user_id is not None:
            self._grant_contact_role(contact)

        self._notify("verified", contact, self.notifier.notify_verified, contact)
        return contact

    def decline(self, token: str) -> EmergencyContact:
        """
        Decline an invitation with its emailed token.

        Raises:
            InvalidToken: If no live pending invitation holds ``token``.
        """
        contact = self._consume_token(token, ContactStatus.DECLINED)
        logger.info("emergency contact declined", contact_id=contact.id)
        self._notify("declined", contact, self.notifier.notify_declined, contact)
        return contact

    def _consume_token(self, token: str, target: ContactStatus) -> EmergencyContact:
        if not token:
            raise InvalidToken()
        candidate = crud.get_contact_by_token(self.db, token)
        if candidate is None or not candidate.status.can_become(target):
            raise InvalidToken()
        contact_id = candidate.id
        now = self.clock()
        issued_after = now - self.token_expiry
        if (
            candidate.token_created_at is None
            or candidate.token_created_at <= issued_after
        ):
            raise InvalidToken()

        if target == ContactStatus.ACTIVE and not self.limit_counts_pending:
            crud.lock_owner(self.db, candidate.owner_id)
            active = crud.count_contacts(
                self.db, candidate.owner_id, (ContactStatus.ACTIVE,)
            )
            if active >= self.max_contacts:
                self.db.rollback()
                raise ValidationFailed(
                    f"Maximum number of emergency contacts ({self.max_contacts}) reached"
                )

        changed = crud.transition_with_token(
            self.db,
            contact_id,
            token,
            target,
            issued_after=issued_after,
            now=now,
        )
        if changed != 1:
            raise InvalidToken()
        return crud.get_contact_by_id(self.db, contact_id)

    def _grant_contact_role(self, contact: EmergencyContact) -> None:
        try:
            granted = crud.grant_role(
                self.db, contact.contact_user_id, EMERGENCY_CONTACT_ROLE
            )
        except SQLAlchemyError as exc:
            # the relationship stays active; granting again later is safe
            self.db.rollback()
            logger.error(
                "emergency contact role grant failed",
                contact_id=contact.id,
                user_id=contact.contact_user_id,
                error=str(exc),
            )
            return
        if granted:
            logger.info(
                "emergency contact role granted", user_id=contact.contact_user_id
            )

    def resend_verification(self, contact_id: str, caller: Caller) -> EmergencyContact:
        """
        Issue a new token for a pending contact, invalidating the old one.

        Raises:
            NotFound: If the contact does not exist.
            Forbidden: If ``caller`` may not manage the owner's contacts.
            ValidationFailed: If the contact is not pending or has no email.
        """
        contact = self._get(contact_id)
        ensure_access(caller, contact.owner_id)
        if not contact.status.can_become(ContactStatus.PENDING):
            raise ValidationFailed("Can only resend verification for pending contacts")
        if not _clean(contact.email):
            raise ValidationFailed(
                "Contact must have an email to resend verification"
            )

        token = self.token_factory()
        if crud.regenerate_token(self.db, contact_id, token, self.clock()) != 1:
            raise ValidationFailed("Can only resend verification for pending contacts")

        contact = crud.get_contact_by_id(self.db, contact_id)
        logger.info("verification token regenerated", contact_id=contact_id)
        self._notify(
            "verification_requested",
            contact,
            self.notifier.notify_verification_requested,
            contact,
            token,
        )
        return contact

    def cleanup_expired_tokens(self) -> int:
        """
        Expire every pending invitation whose token outlived its window.

        Safe to run repeatedly and alongside verify/decline: a record that
        changed state in the meantime is skipped.

        Returns:
            int: Number of contacts moved to ``EXPIRED``.
        """
        now = self.clock()
        cutoff = now - self.token_expiry
        count = 0
        for contact_id in crud.find_expired_pending(self.db, cutoff):
            try:
                count += crud.expire_contact(self.db, contact_id, cutoff, now)
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.warning(
                    "could not expire emergency contact",
                    contact_id=contact_id,
                    error=str(exc),
                )
        if count:
            logger.info("cleaned up expired verification tokens", count=count)
        return count

    def repair_contact_roles(self) -> int:
        """
        Grant the emergency contact role to active platform contacts lacking it.

        Picks up grants that failed after a successful verify.

        Returns:
            int: Number of roles granted.
        """
        repaired = 0
        for user_id in crud.find_contact_users_missing_role(
            self.db, EMERGENCY_CONTACT_ROLE
        ):
            try:
                repaired += crud.grant_role(self.db, user_id, EMERGENCY_CONTACT_ROLE)
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.warning(
                    "could not grant emergency contact role",
                    user_id=user_id,
                    error=str(exc),
                )
        if repaired:
            logger.info("emergency contact roles repaired", count=repaired)
        return repaired

    # Maintenance by the owner

    def update(
        self, contact_id: str, changes: dict[str, Any], caller: Caller
    ) -> EmergencyContact:
        """
        Apply a partial update.

        Keys missing from ``changes`` (or mapped to ``None``) are left alone;
        an empty string clears phone, relationship or notes. Only notes may
        change while the contact is not active.

        Raises:
            NotFound: If the contact does not exist.
            Forbidden: If ``caller`` may not manage the owner's contacts.
            ValidationFailed: If the contact is not active or the new phone
                number belongs to another contact of the owner.
        """
        contact = self._get(contact_id)
        ensure_access(caller, contact.owner_id)

        changes = {
            key: value
            for key, value in changes.items()
            if key in UPDATABLE_FIELDS and value is not None
        }
        substantive = any(key in SUBSTANTIVE_FIELDS for key in changes)
        if substantive and contact.status != ContactStatus.ACTIVE:
            raise ValidationFailed("Can only update active emergency contacts")

        values: dict[str, Any] = {}
        if "name" in changes and _clean(changes["name"]):
            values["name"] = _clean(changes["name"])
        if "phone" in changes:
            phone = _clean(changes["phone"])
            if (
                phone
                and phone != contact.phone
                and crud.contact_exists_for_phone(
                    self.db, contact.owner_id, phone, exclude_id=contact.id
                )
            ):
                raise ValidationFailed(
                    "Emergency contact with this phone number already exists"
                )
            values["phone"] = phone
        for key in ("relationship", "notes"):
            if key in changes:
                values[key] = _clean(changes[key])
        for key in PREFERENCE_FIELDS:
            if key in changes:
                values[key] = bool(changes[key])

        if not values:
            return contact

        try:
            changed = crud.update_contact_fields(
                self.db,
                contact_id,
                values,
                now=self.clock(),
                required_status=ContactStatus.ACTIVE if substantive else None,
            )
        except IntegrityError:
            self.db.rollback()
            raise ValidationFailed(
                "Emergency contact with this phone number already exists"
            )
        if changed != 1:
            if crud.get_contact_by_id(self.db, contact_id) is None:
                raise NotFound(f"Emergency contact not found with ID: {contact_id}")
            raise ValidationFailed("Can only update active emergency contacts")

        logger.info(
            "emergency contact updated", contact_id=contact_id, fields=sorted(values)
        )
        return crud.get_contact_by_id(self.db, contact_id)

    def remove(self, contact_id: str, caller: Caller) -> None:
        """
        Delete a contact. An active contact is told it was removed.

        Raises:
            NotFound: If the contact does not exist.
            Forbidden: If ``caller`` may not manage the owner's contacts.
        """
        contact = self._get(contact_id)
        ensure_access(caller, contact.owner_id)

        was_active = contact.status == ContactStatus.ACTIVE
        # the removal notice reads these after the row is gone
        owner, contact_user = contact.owner, contact.contact_user
        self.db.expunge(contact)
        logger.debug(
            "removing emergency contact",
            contact_id=contact_id,
            owner_id=owner.id if owner else None,
            contact_user_id=contact_user.id if contact_user else None,
        )

        if crud.delete_contact(self.db, contact_id) != 1:
            raise NotFound(f"Emergency contact not found with ID: {contact_id}")
        logger.info("emergency contact removed", contact_id=contact_id)

        if was_active and contact.email:
            self._notify("removed", contact, self.notifier.notify_removed, contact)

    # Alerts

    def send_alert(
        self, owner_id: int, kind: AlertKind, payload: dict[str, Any]
    ) -> NotificationReport:
        """
        Notify every active contact of ``owner_id`` that opted in to ``kind``.

        A failed notification is logged and skipped. Nothing is written.

        Raises:
            NotFound: If the owner does not exist.
        """
        owner = crud.get_user_by_id(self.db, owner_id)
        if owner is None:
            raise NotFound(f"User not found with ID: {owner_id}")

        contacts = crud.list_contacts_by_owner(
            self.db, owner_id, limit=None, status=ContactStatus.ACTIVE
        )
        recipients = [c for c in contacts if c.wants(kind.preference)]
        notified = 0
        for contact in recipients:
            if self._notify(
                kind.value, contact, self.notifier.notify_alert, kind, contact, payload
            ):
                notified += 1

        logger.info(
            "alert notifications sent",
            kind=kind.value,
            owner_id=owner_id,
            notified=notified,
            attempted=len(recipients),
        )
        return NotificationReport(notified=notified, attempted=len(recipients))

    def send_emergency_notifications(
        self,
        owner_id: int,
        latitude: float,
        longitude: float,
        message: str | None = None,
    ) -> NotificationReport:
        """Send an SOS with the owner's position to their SOS contacts."""
        payload = {
            "latitude": latitude,
            "longitude": longitude,
            "map": f"https://maps.google.com/?q={latitude},{longitude}",
            "message": message,
            "sent_at": self.clock().isoformat(timespec="seconds"),
        }
        return self.send_alert(owner_id, AlertKind.SOS, payload)

    # Reads

    def check_pending_contacts(self, owner_id: int, caller: Caller) -> dict[str, int]:
        """
        Count invitations the user sent and received that are still pending.

        Raises:
            NotFound: If the user does not exist.
            Forbidden: If ``caller`` is neither the user nor an admin.
        """
        self._require_user(owner_id)
        ensure_access(caller, owner_id)
        return {
            "pending_sent": crud.count_contacts(
                self.db, owner_id, (ContactStatus.PENDING,)
            ),
            "pending_received": crud.count_contacts_by_contact_user(
                self.db, owner_id, ContactStatus.PENDING
            ),
        }

    def get_contact(self, contact_id: str, caller: Caller) -> EmergencyContact:
        """Fetch one contact for its owner, the designated user or an admin."""
        contact = self._get(contact_id)
        if not (
            authorize(caller, contact.owner_id)
            or caller.user_id == contact.contact_user_id
        ):
            raise Forbidden("Not authorized to access this emergency contact")
        return contact

    def list_contacts(
        self, owner_id: int, caller: Caller, skip: int = 0, limit: int = 20
    ) -> list[EmergencyContact]:
        self._require_user(owner_id)
        ensure_access(caller, owner_id)
        return crud.list_contacts_by_owner(self.db, owner_id, skip=skip, limit=limit)

    def list_active_contacts(
        self, owner_id: int, caller: Caller
    ) -> list[EmergencyContact]:
        self._require_user(owner_id)
        ensure_access(caller, owner_id)
        return crud.list_contacts_by_owner(
            self.db, owner_id, limit=None, status=ContactStatus.ACTIVE
        )

    def list_designations(
        self, user_id: int, caller: Caller, skip: int = 0, limit: int = 20
    ) -> list[EmergencyContact]:
        """Relationships in which ``user_id`` is the designated contact."""
        self._require_user(user_id)
        ensure_access(caller, user_id)
        return crud.list_contacts_by_contact_user(
            self.db, user_id, skip=skip, limit=limit
        )

    # Helpers

    def _get(self, contact_id: str) -> EmergencyContact:
        contact = crud.get_contact_by_id(self.db, contact_id)
        if contact is None:
            raise NotFound(f"Emergency contact not found with ID: {contact_id}")
        return contact

    def _require_user(self, user_id: int) -> None:
        if crud.get_user_by_id(self.db, user_id) is None:
            raise NotFound(f"User not found with ID: {user_id}")

    def _notify(self, event: str, contact: EmergencyContact, send, *args) -> bool:
        try:
            send(*args)
        except Exception as exc:
            logger.error(
                "notification failed",
                notification=event,
                contact_id=contact.id,
                error=str(exc),
            )
            return False
        return True
