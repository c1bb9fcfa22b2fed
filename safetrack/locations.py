"""Location tracking routes for the SafeTrack API.

Users record positions for themselves. Reading a user's history is open to
that user and to admins; emergency positions are also visible to the
user's active emergency contacts.
"""

from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from . import crud, schemas
from .access import Caller, authorize, ensure_access
from .auth import get_current_caller
from .database import get_db
from .errors import Forbidden, NotFound, ValidationFailed
from .logger import get_logger
from .models import Location, LocationType, as_naive_utc, utcnow

router = APIRouter(prefix="/locations", tags=["locations"])
logger = get_logger(__name__)


def _require_user(db: Session, user_id: int) -> None:
    if crud.get_user_by_id(db, user_id) is None:
        raise NotFound(f"User not found with ID: {user_id}")


def _build(user_id: int, data: schemas.LocationCreate) -> Location:
    return Location(
        user_id=user_id,
        latitude=data.latitude,
        longitude=data.longitude,
        timestamp=data.timestamp or utcnow(),
        accuracy=data.accuracy,
        altitude=data.altitude,
        location_type=data.location_type,
        is_emergency=data.is_emergency,
        notes=data.notes,
    )


@router.post(
    "", response_model=schemas.LocationOut, status_code=status.HTTP_201_CREATED
)
def record_location(
    location_in: schemas.LocationCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    """
    Record a position for the current user.

    Args:
        location_in (LocationCreate): Coordinates and fix details; the
            timestamp defaults to now.
        db (Session): Database session.
        caller (Caller): Authenticated caller.

    Returns:
        LocationOut: Stored location.
    """
    (location,) = crud.add_locations(db, [_build(caller.user_id, location_in)])
    if location.is_emergency:
        logger.warning(
            "emergency location recorded",
            user_id=caller.user_id,
            latitude=location.latitude,
            longitude=location.longitude,
        )
    return location


@router.post(
    "/batch",
    response_model=schemas.LocationBatchOut,
    status_code=status.HTTP_201_CREATED,
)
def record_location_batch(
    batch: schemas.LocationBatchCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    """Record up to 100 positions for the current user in one request."""
    saved = crud.add_locations(
        db, [_build(caller.user_id, item) for item in batch.locations]
    )
    logger.info("location batch recorded", user_id=caller.user_id, count=len(saved))
    return schemas.LocationBatchOut(
        count=len(saved),
        message=f"{len(saved)} locations recorded successfully",
        locations=[schemas.LocationOut.model_validate(loc) for loc in saved],
    )


@router.post(
    "/emergency",
    response_model=schemas.LocationOut,
    status_code=status.HTTP_201_CREATED,
)
def record_emergency_location(
    location_in: schemas.EmergencyLocationCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    """Record the current user's position during an emergency."""
    location = Location(
        user_id=caller.user_id,
        latitude=location_in.latitude,
        longitude=location_in.longitude,
        timestamp=utcnow(),
        accuracy=location_in.accuracy,
        location_type=LocationType.EMERGENCY,
        is_emergency=True,
        notes=location_in.message,
    )
    (location,) = crud.add_locations(db, [location])
    logger.warning(
        "emergency location recorded",
        user_id=caller.user_id,
        latitude=location.latitude,
        longitude=location.longitude,
    )
    return location


@router.get("/users/{user_id}/current", response_model=schemas.LocationOut)
def read_current_location(
    user_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    """
    Retrieve a user's most recent position.

    Raises:
        NotFound: If the user is unknown or has no recorded position.
        Forbidden: If the caller is neither the user nor an admin.
    """
    _require_user(db, user_id)
    ensure_access(caller, user_id)
    location = crud.get_latest_location(db, user_id)
    if location is None:
        raise NotFound(f"No location found for user {user_id}")
    return location


@router.get("/users/{user_id}/history", response_model=List[schemas.LocationOut])
def read_location_history_range(
    user_id: int,
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    """
    Retrieve a user's positions recorded between two instants, inclusive.

    Raises:
        ValidationFailed: If ``end_time`` precedes ``start_time``.
    """
    start, end = as_naive_utc(start_time), as_naive_utc(end_time)
    if end < start:
        raise ValidationFailed("End time must be after start time")
    _require_user(db, user_id)
    ensure_access(caller, user_id)
    return crud.list_locations_between(db, user_id, start, end)


@router.get("/users/{user_id}/emergency", response_model=List[schemas.LocationOut])
def read_emergency_locations(
    user_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    """
    Retrieve a user's emergency positions, newest first.

    Open to the user, admins and the user's active emergency contacts.
    """
    _require_user(db, user_id)
    if not (
        authorize(caller, user_id)
        or crud.is_active_contact_of(db, user_id, caller.user_id)
    ):
        raise Forbidden("Not authorized to access emergency locations for this user")
    return crud.list_locations(
        db, user_id, skip=skip, limit=limit, emergency_only=True
    )


@router.get("/users/{user_id}", response_model=List[schemas.LocationOut])
def read_location_history(
    user_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_current_caller),
):
    """
    Retrieve a page of a user's positions, newest first.

    Args:
        user_id (int): Tracked user.
        skip (int): Number of records to skip.
        limit (int): Maximum number of records to return.
        db (Session): Database session.
        caller (Caller): Authenticated caller; must be the user or an admin.

    Returns:
        list[LocationOut]: Locations ordered by descending timestamp.
    """
    _require_user(db, user_id)
    ensure_access(caller, user_id)
    return crud.list_locations(db, user_id, skip=skip, limit=limit)
