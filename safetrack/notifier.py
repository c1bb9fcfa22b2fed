"""Outgoing notifications for emergency contacts.

The lifecycle manager talks to a :class:`Notifier`. The production
implementation, :class:`MailNotifier`, renders an email and hands it to
FastAPI ``BackgroundTasks``; delivery runs after the response has been
sent, so after the state change that triggered it has been committed.
"""

import asyncio
import enum
from typing import Any

from fastapi import BackgroundTasks
from fastapi_mail import FastMail, MessageSchema

from .core import get_mail_config, get_settings
from .errors import NotificationError
from .logger import get_logger
from .models import EmergencyContact

logger = get_logger(__name__)


class AlertKind(str, enum.Enum):
    """Alert classes a contact can opt in to."""

    SOS = "sos"
    GEOFENCE = "geofence"
    INACTIVITY = "inactivity"
    LOW_BATTERY = "low_battery"

    @property
    def preference(self) -> str:
        """Name of the contact flag that gates this alert."""
        return f"notify_{self.value}"


ALERT_SUBJECTS = {
    AlertKind.SOS: "EMERGENCY: {owner} needs help",
    AlertKind.GEOFENCE: "{owner} left a safe area",
    AlertKind.INACTIVITY: "{owner} has been inactive",
    AlertKind.LOW_BATTERY: "{owner}'s phone battery is low",
}


class Notifier:
    """Interface of the notification collaborator.

    Every method either accepts the message for delivery or raises
    :class:`NotificationError`.
    """

    def notify_verification_requested(
        self, contact: EmergencyContact, token: str
    ) -> None:
        raise NotImplementedError

    def notify_verified(self, contact: EmergencyContact) -> None:
        raise NotImplementedError

    def notify_declined(self, contact: EmergencyContact) -> None:
        raise NotImplementedError

    def notify_removed(self, contact: EmergencyContact) -> None:
        raise NotImplementedError

    def notify_alert(
        self, kind: AlertKind, contact: EmergencyContact, payload: dict[str, Any]
    ) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    """Drops every message. Used by maintenance jobs that must stay silent."""

    def notify_verification_requested(self, contact, token):
        logger.debug("notification dropped", kind="verification", contact_id=contact.id)

    def notify_verified(self, contact):
        logger.debug("notification dropped", kind="verified", contact_id=contact.id)

    def notify_declined(self, contact):
        logger.debug("notification dropped", kind="declined", contact_id=contact.id)

    def notify_removed(self, contact):
        logger.debug("notification dropped", kind="removed", contact_id=contact.id)

    def notify_alert(self, kind, contact, payload):
        logger.debug("notification dropped", kind=kind.value, contact_id=contact.id)


def contact_address(contact: EmergencyContact) -> str | None:
    """Email address a contact is reached at, preferring the stored one."""
    if contact.email:
        return contact.email
    if contact.contact_user is not None:
        return contact.contact_user.email
    return None


def owner_name(contact: EmergencyContact) -> str:
    owner = contact.owner
    return owner.display_name if owner is not None else "A SafeTrack user"


class MailNotifier(Notifier):
    """Email notifier scheduling delivery on FastAPI background tasks."""

    def __init__(self, background_tasks: BackgroundTasks):
        self.background_tasks = background_tasks
        self.settings = get_settings()

    def _schedule(self, recipient: str | None, subject: str, body: str) -> None:
        if not recipient:
            raise NotificationError("Recipient has no email address")
        schedule_mail(self.background_tasks, recipient, subject, body)

    def notify_verification_requested(self, contact, token):
        base = self.settings.BASE_URL
        verify_link = f"{base}/emergency-contacts/verify/{token}"
        decline_link = f"{base}/emergency-contacts/decline/{token}"
        self._schedule(
            contact_address(contact),
            "You have been added as an emergency contact",
            f"""
        <html>
          <body>
            <h2>Hello {contact.name},</h2>
            <p>{owner_name(contact)} would like you to be their emergency contact.</p>
            <p>The invitation is valid for {self.settings.EMERGENCY_TOKEN_EXPIRY_DAYS} days.</p>
            <a href="{verify_link}">Accept</a> | <a href="{decline_link}">Decline</a>
          </body>
        </html>
        """,
        )

    def notify_verified(self, contact):
        self._schedule(
            contact.owner.email if contact.owner else None,
            "Your emergency contact accepted",
            f"""
        <html>
          <body>
            <p>{contact.name} is now one of your emergency contacts.</p>
          </body>
        </html>
        """,
        )

    def notify_declined(self, contact):
        self._schedule(
            contact.owner.email if contact.owner else None,
            "Your emergency contact declined",
            f"""
        <html>
          <body>
            <p>{contact.name} declined to be your emergency contact.</p>
          </body>
        </html>
        """,
        )

    def notify_removed(self, contact):
        self._schedule(
            contact_address(contact),
            "You are no longer an emergency contact",
            f"""
        <html>
          <body>
            <p>{owner_name(contact)} removed you from their emergency contacts.</p>
          </body>
        </html>
        """,
        )

    def notify_alert(self, kind, contact, payload):
        owner = owner_name(contact)
        details = "".join(
            f"<li>{key.replace('_', ' ')}: {value}</li>"
            for key, value in payload.items()
            if value is not None
        )
        self._schedule(
            contact_address(contact),
            ALERT_SUBJECTS[kind].format(owner=owner),
            f"""
        <html>
          <body>
            <h2>{ALERT_SUBJECTS[kind].format(owner=owner)}</h2>
            <ul>{details}</ul>
          </body>
        </html>
        """,
        )


def schedule_mail(
    background_tasks: BackgroundTasks, recipient: str, subject: str, body: str
) -> None:
    """Queue an HTML email for delivery after the response is sent."""
    message = MessageSchema(
        subject=subject,
        recipients=[recipient],
        body=body,
        subtype="html",
    )
    background_tasks.add_task(deliver_message, message)


async def deliver_message(message: MessageSchema) -> bool:
    """
    Send an email, retrying a bounded number of times.

    Args:
        message (MessageSchema): Message to send.

    Returns:
        bool: ``True`` once the SMTP server accepted the message, ``False``
        after the last attempt failed.
    """
    settings = get_settings()
    attempts = max(1, settings.NOTIFY_MAX_ATTEMPTS)
    fm = FastMail(get_mail_config())
    for attempt in range(1, attempts + 1):
        try:
            await fm.send_message(message)
        except Exception as exc:
            logger.warning(
                "email delivery failed",
                subject=message.subject,
                attempt=attempt,
                attempts=attempts,
                error=str(exc),
            )
            if attempt < attempts:
                await asyncio.sleep(settings.NOTIFY_RETRY_DELAY_SECONDS)
            continue
        logger.info("email delivered", subject=message.subject, attempt=attempt)
        return True
    logger.error("email dropped after retries", subject=message.subject)
    return False
