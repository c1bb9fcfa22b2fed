"""Database models for the SafeTrack API.

This module defines SQLAlchemy ORM models used by the application and the
status enumeration that drives the emergency contact lifecycle.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy import orm

from .database import Base


ADMIN_ROLE = "admin"
USER_ROLE = "user"
EMERGENCY_CONTACT_ROLE = "emergency_contact"


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class ContactStatus(str, enum.Enum):
    """Lifecycle status of an emergency contact relationship.

    ``PENDING`` is the only state that carries a verification token and the
    only state with outgoing transitions; every other state is terminal.
    """

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DECLINED = "DECLINED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"

    def can_become(self, target: "ContactStatus") -> bool:
        """Return whether ``target`` is reachable from this status."""
        return target in TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self]


#: Allowed transitions. ``PENDING -> PENDING`` is a token resend.
TRANSITIONS: dict[ContactStatus, frozenset[ContactStatus]] = {
    ContactStatus.PENDING: frozenset(
        {
            ContactStatus.PENDING,
            ContactStatus.ACTIVE,
            ContactStatus.DECLINED,
            ContactStatus.EXPIRED,
        }
    ),
    ContactStatus.ACTIVE: frozenset(),
    ContactStatus.DECLINED: frozenset(),
    ContactStatus.REVOKED: frozenset(),
    ContactStatus.EXPIRED: frozenset(),
}


class User(Base):
    """
    SQLAlchemy model representing an application user.

    A user owns emergency contact relationships, may itself be designated
    as somebody's emergency contact, and has a primary role (regular user
    or administrator) plus any granted capabilities.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(50), unique=True, index=True, nullable=True)
    hashed_password = Column(String(255), nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    role = Column(String(20), default=USER_ROLE, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    #: Capabilities granted on top of the primary role
    granted_roles = orm.relationship(
        "UserRole",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    #: Relationships this user created
    emergency_contacts = orm.relationship(
        "EmergencyContact",
        back_populates="owner",
        cascade="all, delete",
        foreign_keys="EmergencyContact.owner_id",
    )

    @property
    def roles(self) -> set[str]:
        """Primary role together with every granted capability."""
        return {self.role or USER_ROLE} | {r.role for r in self.granted_roles or []}

    @property
    def display_name(self) -> str:
        return self.username or self.email


class UserRole(Base):
    """A capability granted to a user, such as ``emergency_contact``."""

    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role = Column(String(50), nullable=False)
    granted_at = Column(DateTime, default=utcnow, nullable=False)

    user = orm.relationship("User", back_populates="granted_roles")


class EmergencyContact(Base):
    """
    SQLAlchemy model representing an emergency contact relationship.

    The table carries the guards that concurrent requests cannot race past:
    per-owner uniqueness of email, phone and contact user, uniqueness of the
    verification token, and the rule that token fields exist only while the
    relationship is pending.
    """

    __tablename__ = "emergency_contacts"
    __table_args__ = (
        UniqueConstraint("owner_id", "email", name="uq_contact_owner_email"),
        UniqueConstraint("owner_id", "phone", name="uq_contact_owner_phone"),
        UniqueConstraint(
            "owner_id", "contact_user_id", name="uq_contact_owner_contact_user"
        ),
        CheckConstraint(
            "status = 'PENDING' OR "
            "(verification_token IS NULL AND token_created_at IS NULL)",
            name="ck_contact_token_only_pending",
        ),
        CheckConstraint(
            "(verification_token IS NULL AND token_created_at IS NULL) OR "
            "(verification_token IS NOT NULL AND token_created_at IS NOT NULL)",
            name="ck_contact_token_with_timestamp",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    contact_user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    name = Column(String(100), nullable=False)
    email = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    relationship = Column(String(50), nullable=True)

    status = Column(
        Enum(ContactStatus, name="contact_status", native_enum=False, length=16),
        default=ContactStatus.PENDING,
        nullable=False,
        index=True,
    )
    verification_token = Column(String(64), nullable=True, unique=True)
    token_created_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)

    notify_sos = Column(Boolean, default=True, nullable=False)
    notify_geofence = Column(Boolean, default=False, nullable=False)
    notify_inactivity = Column(Boolean, default=False, nullable=False)
    notify_low_battery = Column(Boolean, default=False, nullable=False)

    notes = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    #: Reference to the owning User object
    owner = orm.relationship(
        "User", back_populates="emergency_contacts", foreign_keys=[owner_id]
    )
    #: Registered user behind the contact, if any
    contact_user = orm.relationship("User", foreign_keys=[contact_user_id])

    def wants(self, flag: str) -> bool:
        """Whether this contact receives alerts gated by preference ``flag``."""
        return self.status == ContactStatus.ACTIVE and bool(getattr(self, flag))


class LocationType(str, enum.Enum):
    """How a recorded position was obtained."""

    GPS = "GPS"
    NETWORK = "NETWORK"
    MANUAL = "MANUAL"
    EMERGENCY = "EMERGENCY"
    GEOFENCE = "GEOFENCE"
    OTHER = "OTHER"
    HOME = "HOME"
    WORK = "WORK"
    SCHOOL = "SCHOOL"


class Location(Base):
    """
    A user's position at a point in time.

    ``timestamp`` is when the device took the fix; ``created_at`` is when
    the row was stored. Emergency positions are flagged so that contacts can
    be shown only those.
    """

    __tablename__ = "locations"
    __table_args__ = (
        CheckConstraint("latitude BETWEEN -90 AND 90", name="ck_location_latitude"),
        CheckConstraint(
            "longitude BETWEEN -180 AND 180", name="ck_location_longitude"
        ),
        Index("ix_locations_user_timestamp", "user_id", "timestamp"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    accuracy = Column(Float, nullable=True)
    altitude = Column(Float, nullable=True)
    location_type = Column(
        Enum(LocationType, name="location_type", native_enum=False, length=16),
        default=LocationType.OTHER,
        nullable=False,
    )
    is_emergency = Column(Boolean, default=False, nullable=False)
    notes = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
