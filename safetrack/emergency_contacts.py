"""Emergency contact routes for the SafeTrack API.

Lifecycle errors raised by the manager are turned into responses by the
handler in :mod:`safetrack.errors`.
"""

from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from . import schemas
from .access import Caller, ensure_access
from .auth import get_current_caller, invalidate_cached_user
from .core import get_settings
from .database import get_db
from .lifecycle import EmergencyContactManager
from .models import EmergencyContact, utcnow
from .notifier import MailNotifier, Notifier

router = APIRouter(prefix="/emergency-contacts", tags=["emergency contacts"])
settings = get_settings()

token_rate_limit = RateLimiter(times=settings.TOKEN_RATE_LIMIT_PER_MINUTE, seconds=60)


def get_notifier(background_tasks: BackgroundTasks) -> Notifier:
    """Notifier delivering emails after the response is sent."""
    return MailNotifier(background_tasks)


def get_manager(
    db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)
) -> EmergencyContactManager:
    """Lifecycle manager configured from application settings."""
    settings = get_settings()
    return EmergencyContactManager(
        db,
        notifier,
        max_contacts=settings.EMERGENCY_MAX_CONTACTS,
        token_expiry=settings.token_expiry,
        limit_counts_pending=settings.EMERGENCY_LIMIT_COUNTS_PENDING,
    )


def _verification_out(contact: EmergencyContact, message: str) -> schemas.VerificationOut:
    return schemas.VerificationOut(
        contact_id=contact.id,
        owner=contact.owner.display_name,
        contact_name=contact.name,
        status=contact.status,
        timestamp=utcnow(),
        message=message,
    )


@router.post(
    "/users/{user_id}",
    response_model=schemas.EmergencyContactOut,
    status_code=status.HTTP_201_CREATED,
)
def create_emergency_contact(
    user_id: int,
    contact_in: schemas.EmergencyContactCreate,
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """
    Designate a new emergency contact for a user.

    The contact starts pending and receives an invitation email.

    Args:
        user_id (int): Owner of the new contact.
        contact_in (EmergencyContactCreate): Contact data.
        manager (EmergencyContactManager): Lifecycle manager.
        caller (Caller): Authenticated caller.

    Returns:
        EmergencyContactOut: Created contact.
    """
    return manager.create(
        user_id,
        contact_in.to_ref(),
        caller,
        preferences=contact_in.preferences(),
        relationship=contact_in.relationship,
        notes=contact_in.notes,
    )


@router.get("/users/{user_id}", response_model=List[schemas.EmergencyContactOut])
def list_emergency_contacts(
    user_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """
    Retrieve a page of a user's emergency contacts in any status.

    Args:
        user_id (int): Owner of the contacts.
        skip (int): Number of records to skip.
        limit (int): Maximum number of records to return.

    Returns:
        list[EmergencyContactOut]: Contacts ordered by creation time.
    """
    return manager.list_contacts(user_id, caller, skip=skip, limit=limit)


@router.get("/users/{user_id}/active", response_model=List[schemas.EmergencyContactOut])
def list_active_emergency_contacts(
    user_id: int,
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """Retrieve a user's active emergency contacts."""
    return manager.list_active_contacts(user_id, caller)


@router.get("/users/{user_id}/pending", response_model=schemas.PendingContactsOut)
def pending_emergency_contacts(
    user_id: int,
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """Count pending invitations the user sent and received."""
    return manager.check_pending_contacts(user_id, caller)


@router.post(
    "/users/{user_id}/notify-emergency",
    response_model=schemas.EmergencyNotificationOut,
)
def notify_emergency(
    user_id: int,
    request: schemas.EmergencyNotificationRequest,
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """
    Send an SOS alert with the user's position to their SOS contacts.

    Args:
        user_id (int): User in distress.
        request (EmergencyNotificationRequest): Position and message.

    Returns:
        EmergencyNotificationOut: How many contacts were notified.
    """
    ensure_access(caller, user_id)
    report = manager.send_emergency_notifications(
        user_id, request.latitude, request.longitude, request.message
    )
    return schemas.EmergencyNotificationOut(
        notified_count=report.notified,
        attempted_count=report.attempted,
        timestamp=utcnow(),
        message=f"Emergency notifications sent to {report.notified} contacts",
    )


@router.post(
    "/verify/{token}",
    response_model=schemas.VerificationOut,
    dependencies=[Depends(token_rate_limit)],
)
async def verify_emergency_contact(
    token: str, manager: EmergencyContactManager = Depends(get_manager)
):
    """
    Accept an emergency contact invitation.

    Public: the token in the emailed link is the only credential.

    Raises:
        InvalidToken: If the token is unknown, expired or already used.

    Returns:
        VerificationOut: The activated relationship.
    """
    contact = manager.verify(token)
    if contact.contact_user is not None:
        # the contact user's cached roles are stale now
        await invalidate_cached_user(contact.contact_user.email)
    return _verification_out(
        contact, "Emergency contact verified and activated successfully"
    )


@router.post(
    "/decline/{token}",
    response_model=schemas.VerificationOut,
    dependencies=[Depends(token_rate_limit)],
)
def decline_emergency_contact(
    token: str, manager: EmergencyContactManager = Depends(get_manager)
):
    """Decline an emergency contact invitation. Public, like verify."""
    contact = manager.decline(token)
    return _verification_out(
        contact, "Emergency contact invitation declined successfully"
    )


@router.get("/{contact_id}", response_model=schemas.EmergencyContactOut)
def get_emergency_contact(
    contact_id: str,
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """
    Retrieve a single emergency contact.

    Visible to its owner, to the registered user it designates and to
    administrators.
    """
    return manager.get_contact(contact_id, caller)


@router.patch("/{contact_id}", response_model=schemas.EmergencyContactOut)
def patch_emergency_contact(
    contact_id: str,
    changes: schemas.EmergencyContactUpdate,
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """
    Partially update an emergency contact.

    Only fields provided in the request will be updated. Notes can change
    in any status, everything else only while the contact is active.

    Returns:
        EmergencyContactOut: Updated contact.
    """
    return manager.update(contact_id, changes.model_dump(exclude_unset=True), caller)


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_emergency_contact(
    contact_id: str,
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """Delete an emergency contact owned by the caller."""
    manager.remove(contact_id, caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{contact_id}/resend", response_model=schemas.MessageOut)
def resend_emergency_contact_verification(
    contact_id: str,
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """Send a pending contact a new invitation, invalidating the previous link."""
    contact = manager.resend_verification(contact_id, caller)
    return schemas.MessageOut(
        message=f"Verification email resent successfully to {contact.email}"
    )
