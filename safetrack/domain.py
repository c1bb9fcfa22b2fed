"""Value types shared by the lifecycle manager and the API schemas."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ExternalContact:
    """A person outside the platform, reached by email."""

    name: str
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class PlatformContact:
    """A registered user designated as emergency contact.

    ``email`` defaults to the user's account address.
    """

    user_id: int
    name: str
    email: str | None = None
    phone: str | None = None


ContactRef = ExternalContact | PlatformContact


@dataclass(frozen=True)
class NotificationPreferences:
    """Alert classes a contact receives."""

    sos: bool = True
    geofence: bool = False
    inactivity: bool = False
    low_battery: bool = False

    def as_columns(self) -> dict[str, bool]:
        return {
            "notify_sos": self.sos,
            "notify_geofence": self.geofence,
            "notify_inactivity": self.inactivity,
            "notify_low_battery": self.low_battery,
        }


@dataclass(frozen=True)
class NotificationReport:
    """Outcome of an alert fan-out."""

    notified: int
    attempted: int
