"""CRUD operations for users, emergency contacts and locations.

This module contains database interaction logic for user, emergency contact
and location entities, isolated from FastAPI route handlers and from the
lifecycle rules in :mod:`safetrack.lifecycle`.

Status transitions are single conditional ``UPDATE`` statements: the row
changes only if it is still in the expected state when the statement runs,
and the caller learns the outcome from the affected row count.
"""

from datetime import datetime
from typing import Iterable

from fastapi import HTTPException, status
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas
from .models import ContactStatus, EmergencyContact, Location


def create_user(
    db: Session, user_in: schemas.UserCreate, hashed_password: str
) -> models.User:
    """
    Create and persist a new user.

    Args:
        db (Session): SQLAlchemy database session.
        user_in (UserCreate): Incoming user data.
        hashed_password (str): Securely hashed password.

    Raises:
        HTTPException: If a user with the same email or username already exists.

    Returns:
        User: Newly created user instance.
    """
    clauses = [models.User.email == user_in.email]
    if user_in.username:
        clauses.append(models.User.username == user_in.username)
    existing = db.execute(select(models.User).where(or_(*clauses))).scalars().first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already exists",
        )

    user = models.User(
        email=user_in.email,
        username=user_in.username,
        hashed_password=hashed_password,
        role=models.USER_ROLE,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user_by_email(db: Session, email: str) -> models.User | None:
    """
    Retrieve a user by email address.

    Args:
        db (Session): Database session.
        email (str): User email.

    Returns:
        User | None: User if found, otherwise ``None``.
    """
    return db.execute(
        select(models.User).where(models.User.email == email)
    ).scalar_one_or_none()


def get_user_by_username(db: Session, username: str) -> models.User | None:
    """Retrieve a user by username, or ``None``."""
    return db.execute(
        select(models.User).where(models.User.username == username)
    ).scalar_one_or_none()


def get_user_by_id(db: Session, user_id: int) -> models.User | None:
    """
    Retrieve a user by primary key.

    Args:
        db (Session): Database session.
        user_id (int): User identifier.

    Returns:
        User | None: User if found, otherwise ``None``.
    """
    return db.execute(
        select(models.User).where(models.User.id == user_id)
    ).scalar_one_or_none()


def lock_owner(db: Session, owner_id: int) -> models.User | None:
    """
    Load a user with a row lock held until the current transaction ends.

    Concurrent contact creations for the same owner queue on this lock, so
    the contact count they read cannot be stale. Backends without row locks
    (SQLite) serialize writers on their own.
    """
    return db.execute(
        select(models.User).where(models.User.id == owner_id).with_for_update()
    ).scalar_one_or_none()


def verify_user(db: Session, user: models.User) -> models.User:
    """
    Mark a user account as verified.

    Args:
        db (Session): Database session.
        user (User): User to verify.

    Returns:
        User: Updated user instance.
    """
    user.is_verified = True
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def update_user_password(
    db: Session, user: models.User, hashed_password: str
) -> models.User:
    """
    Update user's hashed password.

    Args:
        db (Session): Database session.
        user (User): Target user.
        hashed_password (str): New hashed password.

    Returns:
        User: Updated user instance.
    """
    target = get_user_by_id(db, user.id) or user
    target.hashed_password = hashed_password
    db.add(target)
    db.commit()
    db.refresh(target)
    return target


def grant_role(db: Session, user_id: int, role: str) -> bool:
    """
    Grant ``role`` to a user unless it is already granted.

    Args:
        db (Session): Database session.
        user_id (int): Target user.
        role (str): Capability name.

    Returns:
        bool: ``True`` if a new grant was stored, ``False`` if it existed.
    """
    exists = db.execute(
        select(models.UserRole.id).where(
            models.UserRole.user_id == user_id, models.UserRole.role == role
        )
    ).first()
    if exists:
        return False
    db.add(models.UserRole(user_id=user_id, role=role))
    try:
        db.commit()
    except IntegrityError:
        # granted by a concurrent request
        db.rollback()
        return False
    return True


# Emergency contacts


def add_contact(db: Session, contact: EmergencyContact) -> EmergencyContact:
    """
    Persist a new emergency contact.

    Args:
        db (Session): Database session.
        contact (EmergencyContact): Unsaved contact.

    Raises:
        IntegrityError: If a uniqueness constraint rejects the row.

    Returns:
        EmergencyContact: Saved contact.
    """
    db.add(contact)
    db.commit()
    db.refresh(contact)
    return contact


def get_contact_by_id(db: Session, contact_id: str) -> EmergencyContact | None:
    """Retrieve an emergency contact by id, bypassing stale session state."""
    return db.execute(
        select(EmergencyContact)
        .where(EmergencyContact.id == contact_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_contact_by_token(db: Session, token: str) -> EmergencyContact | None:
    """Retrieve the contact currently holding ``token``, whatever its state."""
    return db.execute(
        select(EmergencyContact).where(EmergencyContact.verification_token == token)
    ).scalar_one_or_none()


def list_contacts_by_owner(
    db: Session,
    owner_id: int,
    skip: int = 0,
    limit: int = 100,
    status: ContactStatus | None = None,
) -> list[EmergencyContact]:
    """
    Retrieve a page of contacts owned by a user.

    Args:
        db (Session): Database session.
        owner_id (int): Owning user.
        skip (int): Number of records to skip.
        limit (int): Maximum number of records to return.
        status (ContactStatus | None): Optional status filter.

    Returns:
        list[EmergencyContact]: Contacts ordered by creation time.
    """
    stmt = select(EmergencyContact).where(EmergencyContact.owner_id == owner_id)
    if status is not None:
        stmt = stmt.where(EmergencyContact.status == status)
    stmt = (
        stmt.order_by(EmergencyContact.created_at, EmergencyContact.id)
        .offset(skip)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(db.scalars(stmt).all())


def list_contacts_by_contact_user(
    db: Session,
    contact_user_id: int,
    status: ContactStatus | None = None,
    skip: int = 0,
    limit: int = 100,
) -> list[EmergencyContact]:
    """Retrieve relationships in which ``contact_user_id`` is the contact."""
    stmt = select(EmergencyContact).where(
        EmergencyContact.contact_user_id == contact_user_id
    )
    if status is not None:
        stmt = stmt.where(EmergencyContact.status == status)
    stmt = stmt.order_by(EmergencyContact.created_at).offset(skip).limit(limit)
    return list(db.scalars(stmt).all())


def count_contacts(
    db: Session, owner_id: int, statuses: Iterable[ContactStatus]
) -> int:
    """Count an owner's contacts whose status is one of ``statuses``."""
    return db.execute(
        select(func.count(EmergencyContact.id)).where(
            EmergencyContact.owner_id == owner_id,
            EmergencyContact.status.in_(list(statuses)),
        )
    ).scalar_one()


def count_contacts_by_contact_user(
    db: Session, contact_user_id: int, status: ContactStatus
) -> int:
    """Count relationships naming ``contact_user_id`` that are in ``status``."""
    return db.execute(
        select(func.count(EmergencyContact.id)).where(
            EmergencyContact.contact_user_id == contact_user_id,
            EmergencyContact.status == status,
        )
    ).scalar_one()


def _contact_exists(db: Session, owner_id: int, column, value, exclude_id=None) -> bool:
    stmt = select(EmergencyContact.id).where(
        EmergencyContact.owner_id == owner_id, column == value
    )
    if exclude_id is not None:
        stmt = stmt.where(EmergencyContact.id != exclude_id)
    return db.execute(stmt.limit(1)).first() is not None


def contact_exists_for_email(
    db: Session, owner_id: int, email: str, exclude_id: str | None = None
) -> bool:
    """Whether the owner already has a contact with ``email``."""
    return _contact_exists(db, owner_id, EmergencyContact.email, email, exclude_id)


def contact_exists_for_phone(
    db: Session, owner_id: int, phone: str, exclude_id: str | None = None
) -> bool:
    """Whether the owner already has a contact with ``phone``."""
    return _contact_exists(db, owner_id, EmergencyContact.phone, phone, exclude_id)


def contact_exists_for_user(
    db: Session, owner_id: int, contact_user_id: int, exclude_id: str | None = None
) -> bool:
    """Whether the owner already designated ``contact_user_id``."""
    return _contact_exists(
        db, owner_id, EmergencyContact.contact_user_id, contact_user_id, exclude_id
    )


def transition_with_token(
    db: Session,
    contact_id: str,
    token: str,
    target: ContactStatus,
    issued_after: datetime,
    now: datetime,
) -> int:
    """
    Move a pending contact holding a live ``token`` into ``target``.

    Token fields are cleared in the same statement; entering ``ACTIVE``
    also stamps ``accepted_at``.

    Args:
        db (Session): Database session.
        contact_id (str): Contact expected to hold the token.
        token (str): Verification token presented by the contact.
        target (ContactStatus): ``ACTIVE`` or ``DECLINED``.
        issued_after (datetime): Tokens issued at or before this are expired.
        now (datetime): Transition timestamp.

    Returns:
        int: Number of rows changed, ``1`` on success and ``0`` otherwise.
    """
    values = {
        "status": target,
        "verification_token": None,
        "token_created_at": None,
        "updated_at": now,
    }
    if target == ContactStatus.ACTIVE:
        values["accepted_at"] = now
    result = db.execute(
        update(EmergencyContact)
        .where(
            EmergencyContact.id == contact_id,
            EmergencyContact.verification_token == token,
            EmergencyContact.status == ContactStatus.PENDING,
            EmergencyContact.token_created_at > issued_after,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def regenerate_token(db: Session, contact_id: str, token: str, now: datetime) -> int:
    """Replace the token of a still-pending contact; returns rows changed."""
    result = db.execute(
        update(EmergencyContact)
        .where(
            EmergencyContact.id == contact_id,
            EmergencyContact.status == ContactStatus.PENDING,
        )
        .values(verification_token=token, token_created_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def find_expired_pending(db: Session, issued_before: datetime) -> list[str]:
    """Ids of pending contacts whose token was issued at or before ``issued_before``."""
    return list(
        db.scalars(
            select(EmergencyContact.id).where(
                EmergencyContact.status == ContactStatus.PENDING,
                EmergencyContact.token_created_at <= issued_before,
            )
        ).all()
    )


def expire_contact(
    db: Session, contact_id: str, issued_before: datetime, now: datetime
) -> int:
    """Mark one pending contact as expired if its token is still stale."""
    result = db.execute(
        update(EmergencyContact)
        .where(
            EmergencyContact.id == contact_id,
            EmergencyContact.status == ContactStatus.PENDING,
            EmergencyContact.token_created_at <= issued_before,
        )
        .values(
            status=ContactStatus.EXPIRED,
            verification_token=None,
            token_created_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def find_contact_users_missing_role(db: Session, role: str) -> list[int]:
    """Users designated by an active contact who do not hold ``role``."""
    granted = select(models.UserRole.user_id).where(models.UserRole.role == role)
    return list(
        db.scalars(
            select(EmergencyContact.contact_user_id)
            .where(
                EmergencyContact.status == ContactStatus.ACTIVE,
                EmergencyContact.contact_user_id.is_not(None),
                EmergencyContact.contact_user_id.not_in(granted),
            )
            .distinct()
        ).all()
    )


def update_contact_fields(
    db: Session,
    contact_id: str,
    changes: dict,
    now: datetime,
    required_status: ContactStatus | None = None,
) -> int:
    """
    Apply field changes to a contact.

    Args:
        db (Session): Database session.
        contact_id (str): Contact identifier.
        changes (dict): Column values to write.
        now (datetime): New ``updated_at`` value.
        required_status (ContactStatus | None): Only write if the contact is
            still in this status.

    Raises:
        IntegrityError: If a uniqueness constraint rejects the change.

    Returns:
        int: Number of rows changed.
    """
    stmt = update(EmergencyContact).where(EmergencyContact.id == contact_id)
    if required_status is not None:
        stmt = stmt.where(EmergencyContact.status == required_status)
    result = db.execute(
        stmt.values(**changes, updated_at=now).execution_options(
            synchronize_session=False
        )
    )
    db.commit()
    return result.rowcount


def delete_contact(db: Session, contact_id: str) -> int:
    """
    Delete an emergency contact from the database.

    Args:
        db (Session): Database session.
        contact_id (str): Contact to delete.

    Returns:
        int: Number of rows deleted.
    """
    result = db.execute(
        delete(EmergencyContact)
        .where(EmergencyContact.id == contact_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def is_active_contact_of(db: Session, owner_id: int, contact_user_id: int) -> bool:
    """Whether ``contact_user_id`` is an active emergency contact of ``owner_id``."""
    stmt = select(EmergencyContact.id).where(
        EmergencyContact.owner_id == owner_id,
        EmergencyContact.contact_user_id == contact_user_id,
        EmergencyContact.status == ContactStatus.ACTIVE,
    )
    return db.execute(stmt.limit(1)).first() is not None


# Locations


def add_locations(db: Session, locations: list[Location]) -> list[Location]:
    """
    Persist location records in one transaction.

    Args:
        db (Session): Database session.
        locations (list[Location]): Unsaved locations.

    Returns:
        list[Location]: Saved locations, in the given order.
    """
    db.add_all(locations)
    db.commit()
    for location in locations:
        db.refresh(location)
    return locations


def get_latest_location(db: Session, user_id: int) -> Location | None:
    """Most recent position of a user by device timestamp, or ``None``."""
    return db.execute(
        select(Location)
        .where(Location.user_id == user_id)
        .order_by(Location.timestamp.desc(), Location.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def list_locations(
    db: Session,
    user_id: int,
    skip: int = 0,
    limit: int = 20,
    emergency_only: bool = False,
) -> list[Location]:
    """
    Retrieve a page of a user's locations, newest first.

    Args:
        db (Session): Database session.
        user_id (int): Tracked user.
        skip (int): Number of records to skip.
        limit (int): Maximum number of records to return.
        emergency_only (bool): Only positions flagged as emergencies.

    Returns:
        list[Location]: Locations ordered by descending timestamp.
    """
    stmt = select(Location).where(Location.user_id == user_id)
    if emergency_only:
        stmt = stmt.where(Location.is_emergency.is_(True))
    stmt = (
        stmt.order_by(Location.timestamp.desc(), Location.created_at.desc())
        .offset(skip)
        .limit(limit)
    )
    return list(db.scalars(stmt).all())


def list_locations_between(
    db: Session, user_id: int, start: datetime, end: datetime
) -> list[Location]:
    """A user's locations with ``start <= timestamp <= end``, newest first."""
    return list(
        db.scalars(
            select(Location)
            .where(
                Location.user_id == user_id,
                Location.timestamp >= start,
                Location.timestamp <= end,
            )
            .order_by(Location.timestamp.desc())
        ).all()
    )
