"""Periodic maintenance jobs run by Celery beat."""

from celery import Celery

from .core import get_settings
from .database import SessionLocal
from .lifecycle import EmergencyContactManager
from .logger import get_logger, setup_logging
from .notifier import NullNotifier

settings = get_settings()
setup_logging()
logger = get_logger(__name__)

celery_app = Celery(
    "safetrack",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "cleanup-expired-emergency-contacts": {
            "task": "cleanup_expired_emergency_contacts",
            "schedule": settings.CLEANUP_INTERVAL_MINUTES * 60,
        },
        "repair-emergency-contact-roles": {
            "task": "repair_emergency_contact_roles",
            "schedule": settings.CLEANUP_INTERVAL_MINUTES * 60,
        },
    },
)


def _manager(db) -> EmergencyContactManager:
    return EmergencyContactManager(
        db,
        NullNotifier(),
        max_contacts=settings.EMERGENCY_MAX_CONTACTS,
        token_expiry=settings.token_expiry,
        limit_counts_pending=settings.EMERGENCY_LIMIT_COUNTS_PENDING,
    )


@celery_app.task(name="cleanup_expired_emergency_contacts")
def cleanup_expired_emergency_contacts() -> int:
    """Expire pending emergency contact invitations whose token ran out."""
    with SessionLocal() as db:
        count = _manager(db).cleanup_expired_tokens()
    logger.info("cleanup task finished", expired=count)
    return count


@celery_app.task(name="repair_emergency_contact_roles")
def repair_emergency_contact_roles() -> int:
    """Re-grant the emergency contact role where a grant after verify failed."""
    with SessionLocal() as db:
        count = _manager(db).repair_contact_roles()
    logger.info("role repair task finished", granted=count)
    return count
