"""Authorization checks for owner-scoped resources."""

from dataclasses import dataclass, field

from .errors import Forbidden
from .models import ADMIN_ROLE, User


@dataclass(frozen=True)
class Caller:
    """Identity and roles of whoever invokes a lifecycle operation."""

    user_id: int
    roles: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_user(cls, user: User) -> "Caller":
        """
        Build a caller from an authenticated user.

        Args:
            user (User): SQLAlchemy User model.

        Returns:
            Caller: Caller carrying the user's id and every role it holds.
        """
        return cls(user_id=user.id, roles=frozenset(user.roles))

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def authorize(caller: Caller, owner_id: int) -> bool:
    """Allow iff ``caller`` owns the resource or is an administrator."""
    return caller.user_id == owner_id or caller.is_admin


def ensure_access(caller: Caller, owner_id: int) -> None:
    """Raise :class:`Forbidden` unless ``caller`` may act on ``owner_id``'s data."""
    if not authorize(caller, owner_id):
        raise Forbidden()
