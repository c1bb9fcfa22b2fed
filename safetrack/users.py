"""User-related routes for the SafeTrack API."""

from typing import List

from fastapi import APIRouter, Depends, Query
from fastapi_limiter.depends import RateLimiter

from .access import Caller
from .auth import get_current_caller, get_current_user
from . import schemas
from .core import get_settings
from .emergency_contacts import get_manager
from .lifecycle import EmergencyContactManager

router = APIRouter(prefix="/users", tags=["users"])
settings = get_settings()


@router.get(
    "/me",
    response_model=schemas.UserOut,
    dependencies=[Depends(RateLimiter(times=settings.RATE_LIMIT_PER_MINUTE, seconds=60))],
)
def read_me(current_user=Depends(get_current_user)):
    """
    Retrieve details of the currently authenticated user.

    Args:
        current_user (User): Authenticated user obtained from JWT token.

    Returns:
        UserOut: User profile information, including granted roles.
    """
    return current_user


@router.get(
    "/{user_id}/designations",
    response_model=List[schemas.EmergencyContactOut],
)
def list_designations(
    user_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    manager: EmergencyContactManager = Depends(get_manager),
    caller: Caller = Depends(get_current_caller),
):
    """
    Retrieve relationships in which the user is somebody's emergency contact.

    Args:
        user_id (int): Designated user.
        skip (int): Number of records to skip.
        limit (int): Maximum number of records to return.
        manager (EmergencyContactManager): Lifecycle manager.
        caller (Caller): Authenticated caller; must be the user or an admin.

    Returns:
        list[EmergencyContactOut]: Relationships naming the user.
    """
    return manager.list_designations(user_id, caller, skip=skip, limit=limit)
