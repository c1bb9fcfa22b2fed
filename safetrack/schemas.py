from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .domain import (
    ContactRef,
    ExternalContact,
    NotificationPreferences,
    PlatformContact,
)
from .models import ContactStatus, LocationType, as_naive_utc


class EmergencyContactCreate(BaseModel):
    """Payload for designating a new emergency contact.

    Either ``contact_user_id`` names a registered user, or ``email`` is
    required.
    """

    name: str = Field(min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=20)
    relationship: Optional[str] = Field(default=None, max_length=50)
    contact_user_id: Optional[int] = None
    notify_sos: bool = True
    notify_geofence: bool = False
    notify_inactivity: bool = False
    notify_low_battery: bool = False
    notes: Optional[str] = Field(default=None, max_length=500)

    def to_ref(self) -> ContactRef:
        """Return the tagged contact reference described by this payload."""
        if self.contact_user_id is not None:
            return PlatformContact(
                user_id=self.contact_user_id,
                name=self.name,
                email=self.email,
                phone=self.phone,
            )
        return ExternalContact(name=self.name, email=self.email, phone=self.phone)

    def preferences(self) -> NotificationPreferences:
        return NotificationPreferences(
            sos=self.notify_sos,
            geofence=self.notify_geofence,
            inactivity=self.notify_inactivity,
            low_battery=self.notify_low_battery,
        )


class EmergencyContactUpdate(BaseModel):
    """Schema for updating an emergency contact (all fields optional)."""

    name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)
    relationship: Optional[str] = Field(default=None, max_length=50)
    notify_sos: Optional[bool] = None
    notify_geofence: Optional[bool] = None
    notify_inactivity: Optional[bool] = None
    notify_low_battery: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class EmergencyContactOut(BaseModel):
    """Schema for returning an emergency contact."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: int
    contact_user_id: Optional[int] = None
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None
    status: ContactStatus
    notify_sos: bool
    notify_geofence: bool
    notify_inactivity: bool
    notify_low_battery: bool
    notes: Optional[str] = None
    accepted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class VerificationOut(BaseModel):
    """Response to an accepted or declined invitation."""

    contact_id: str
    owner: str
    contact_name: str
    status: ContactStatus
    timestamp: datetime
    message: str


class PendingContactsOut(BaseModel):
    """Pending invitations sent and received by a user."""

    pending_sent: int
    pending_received: int


class EmergencyNotificationRequest(BaseModel):
    """Position and optional message broadcast to SOS contacts."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    message: Optional[str] = Field(default=None, max_length=500)


class EmergencyNotificationOut(BaseModel):
    notified_count: int
    attempted_count: int
    timestamp: datetime
    message: str


class MessageOut(BaseModel):
    message: str


class UserBase(BaseModel):
    """Shared fields for user schemas."""

    email: EmailStr


class UserCreate(UserBase):
    """Payload for creating a new user."""

    password: str = Field(min_length=6)
    username: Optional[str] = Field(default=None, min_length=3, max_length=50)


class UserOut(UserBase):
    """Response schema for user data."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: Optional[str] = None
    is_verified: bool
    role: str = "user"
    roles: list[str] = []

    @field_validator("roles", mode="before")
    @classmethod
    def sort_roles(cls, value):
        return sorted(value or [])


class Token(BaseModel):
    """JWT token response schema."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenRefresh(BaseModel):
    """Schema for requesting a new access token from a refresh token."""

    refresh_token: str


class TokenData(BaseModel):
    """Payload stored inside JWT token."""

    sub: str | None = None
    exp: Optional[datetime] = None
    scope: Optional[str] = None


class EmailRequest(BaseModel):
    """Schema for verification email requests."""

    email: EmailStr


class PasswordResetRequest(BaseModel):
    """Request schema for initiating password reset."""

    email: EmailStr


class PasswordResetConfirm(BaseModel):
    """Payload for completing password reset using token."""

    token: str
    new_password: str = Field(min_length=6)


class LocationCreate(BaseModel):
    """A position reported by the user's device."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    timestamp: Optional[datetime] = None
    accuracy: Optional[float] = Field(default=None, ge=0)
    altitude: Optional[float] = None
    location_type: LocationType = LocationType.OTHER
    is_emergency: bool = False
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("timestamp")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)


class LocationBatchCreate(BaseModel):
    locations: list[LocationCreate] = Field(min_length=1, max_length=100)


class EmergencyLocationCreate(BaseModel):
    """Position sent with an SOS; always stored as an emergency."""

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    message: Optional[str] = Field(default=None, max_length=500)


class LocationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: int
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    location_type: LocationType
    is_emergency: bool
    notes: Optional[str] = None
    created_at: datetime


class LocationBatchOut(BaseModel):
    count: int
    message: str
    locations: list[LocationOut]
