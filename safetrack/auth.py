"""Authentication and authorization related routes and helpers.

Authenticated users are cached by email (in redis, or in process memory
when redis is down) together with every role they hold, so a role grant
must drop the cached entry with :func:`invalidate_cached_user`.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
import redis.asyncio as redis
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from . import schemas, crud
from .access import Caller
from .database import get_db
from .logger import get_logger
from .models import User, UserRole, utcnow
from .core import get_settings
from .notifier import schedule_mail

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
router = APIRouter(prefix="/auth", tags=["auth"])
logger = get_logger(__name__)

CACHE_KEY = "user:{email}"


@dataclass
class CachedUser:
    """Snapshot of a user, its roles included, as stored in the cache."""

    id: int
    email: str
    is_verified: bool
    role: str
    username: str | None = None
    granted: list[str] = field(default_factory=list)
    hashed_password: str | None = None

    @classmethod
    def from_model(cls, user: User) -> "CachedUser":
        return cls(
            id=user.id,
            email=user.email,
            is_verified=user.is_verified,
            role=user.role,
            username=user.username,
            granted=sorted(r.role for r in user.granted_roles or []),
            hashed_password=user.hashed_password,
        )

    def to_model(self) -> User:
        """
        Rebuild a detached User from the snapshot.

        Returns:
            User: Transient user; ``granted_roles`` holds transient
            :class:`UserRole` rows so that ``User.roles`` works as usual.
        """
        return User(
            id=self.id,
            email=self.email,
            username=self.username,
            hashed_password=self.hashed_password or "",
            is_verified=self.is_verified,
            role=self.role,
            granted_roles=[UserRole(role=role) for role in self.granted],
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CachedUser":
        return cls(**json.loads(raw))


class MemoryCache:
    """Process-local stand-in for the redis commands the cache uses.

    Expiry is not tracked; entries live until deleted or the process ends.
    """

    def __init__(self):
        self.store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None):
        self.store[key] = value

    async def delete(self, key: str):
        self.store.pop(key, None)


_cache_client: Any | None = None


async def get_cache_client():
    """
    Return the shared cache backend, connecting on first use.

    Returns:
        Redis | MemoryCache: redis when it answers a ping, otherwise an
        in-memory cache for the rest of the process lifetime.
    """
    global _cache_client
    if _cache_client is None:
        settings = get_settings()
        client = redis.from_url(
            settings.REDIS_URL, encoding="utf-8", decode_responses=True
        )
        try:
            await client.ping()
        except Exception as exc:
            logger.warning(
                "redis unavailable, using in-memory user cache", error=str(exc)
            )
            client = MemoryCache()
        _cache_client = client
    return _cache_client


async def cache_user(user: User, expire_minutes: int | None = None):
    """Store a user snapshot for the lifetime of an access token."""
    client = await get_cache_client()
    minutes = expire_minutes or get_settings().ACCESS_TOKEN_EXPIRE_MINUTES
    await client.set(
        CACHE_KEY.format(email=user.email),
        CachedUser.from_model(user).to_json(),
        ex=minutes * 60,
    )


async def get_cached_user(email: str) -> User | None:
    client = await get_cache_client()
    cached = await client.get(CACHE_KEY.format(email=email))
    return CachedUser.from_json(cached).to_model() if cached else None


async def invalidate_cached_user(email: str):
    """Drop a cached user, e.g. after its roles changed."""
    client = await get_cache_client()
    await client.delete(CACHE_KEY.format(email=email))


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Compare a plain password with its hashed value."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Generate a password hash using the configured context."""
    return pwd_context.hash(password)


def create_access_token(
    data: dict, expires_delta: timedelta | None = None, scope: str = "access"
) -> str:
    """
    Create a signed JWT.

    Args:
        data (dict): Claims to encode, normally ``{"sub": email}``.
        expires_delta (timedelta | None): Lifetime; defaults to the access
            token lifetime from settings.
        scope (str): Purpose of the token, checked by :func:`decode_token`.

    Returns:
        str: Encoded token.
    """
    settings = get_settings()
    lifetime = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {**data, "exp": utcnow() + lifetime, "scope": scope}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_refresh_token(data: dict) -> str:
    settings = get_settings()
    return create_access_token(
        data,
        expires_delta=timedelta(minutes=settings.REFRESH_TOKEN_EXPIRE_MINUTES),
        scope="refresh",
    )


def create_password_reset_token(user: User) -> str:
    return create_access_token(
        {"sub": user.email}, expires_delta=timedelta(hours=1), scope="reset"
    )


def create_verification_token(user: User) -> str:
    return create_access_token(
        {"sub": user.email}, expires_delta=timedelta(hours=24), scope="verification"
    )


def send_verification_email(background_tasks: BackgroundTasks, email: str, token: str):
    """Schedule the account confirmation email."""
    link = f"{get_settings().BASE_URL}/auth/verify?token={token}"
    schedule_mail(
        background_tasks,
        email,
        "Confirm your SafeTrack account",
        f"""
        <html>
          <body>
            <h2>Welcome to SafeTrack!</h2>
            <p>Confirm your email address to start adding emergency contacts:</p>
            <a href="{link}">Confirm email</a>
          </body>
        </html>
        """,
    )


def send_password_reset_email(
    background_tasks: BackgroundTasks, email: str, token: str
):
    """Schedule password reset instructions; the link is valid for one hour."""
    link = f"{get_settings().BASE_URL}/auth/password/reset/confirm?token={token}"
    schedule_mail(
        background_tasks,
        email,
        "Reset your SafeTrack password",
        f"""
        <html>
          <body>
            <h2>Password reset</h2>
            <p>Follow the link within an hour to choose a new password:</p>
            <a href="{link}">Reset password</a>
          </body>
        </html>
        """,
    )


def decode_token(token: str, expected_scope: str) -> str | None:
    """
    Decode a JWT and return its subject if the scope matches.

    Args:
        token (str): Encoded JWT.
        expected_scope (str): Required ``scope`` claim.

    Returns:
        str | None: The ``sub`` claim, or ``None`` for a bad token.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    if payload.get("scope", "access") != expected_scope:
        return None
    return payload.get("sub")


async def get_current_user(
    token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)
) -> User:
    """Dependency that returns authenticated user from JWT token with caching."""

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    email = decode_token(token, "access")
    if email is None:
        raise credentials_exception
    token_data = schemas.TokenData(sub=email, scope="access")
    cached_user = await get_cached_user(token_data.sub)
    if cached_user:
        return cached_user
    user = crud.get_user_by_email(db, email=token_data.sub)
    if user is None:
        raise credentials_exception
    await cache_user(user)
    return user


async def get_current_caller(user: User = Depends(get_current_user)) -> Caller:
    """Dependency that returns the authenticated user as a lifecycle caller."""
    return Caller.from_user(user)


def _user_or_404(db: Session, email: str) -> User:
    user = crud.get_user_by_email(db, email)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        )
    return user


def _email_from(token: str, scope: str, error_status: int) -> str:
    email = decode_token(token, scope)
    if email is None:
        raise HTTPException(status_code=error_status, detail="Invalid token")
    return email


async def _issue_tokens(user: User) -> schemas.Token:
    """New access/refresh pair; also refreshes the cached user."""
    await cache_user(user)
    return schemas.Token(
        access_token=create_access_token({"sub": user.email}),
        refresh_token=create_refresh_token({"sub": user.email}),
    )


@router.post(
    "/signup", response_model=schemas.UserOut, status_code=status.HTTP_201_CREATED
)
def signup(
    user_in: schemas.UserCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Register a new account and email a confirmation link.

    Raises:
        HTTPException: 409 if the email or username is taken.
    """
    user = crud.create_user(db, user_in, get_password_hash(user_in.password))
    send_verification_email(background_tasks, user.email, create_verification_token(user))
    logger.info("user registered", user_id=user.id)
    return user


@router.post("/login", response_model=schemas.Token)
async def login_for_access_token(
    form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)
):
    """
    Authenticate with a password.

    The ``username`` form field accepts either the email address or the
    username of the account.
    """
    user = crud.get_user_by_email(db, form_data.username) or crud.get_user_by_username(
        db, form_data.username
    )
    if not user or not verify_password(form_data.password, user.hashed_password):
        logger.info("login rejected", username=form_data.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials"
        )
    if not user.is_verified:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Email is not verified"
        )
    return await _issue_tokens(user)


@router.post("/refresh", response_model=schemas.Token)
async def refresh_tokens(payload: schemas.TokenRefresh, db: Session = Depends(get_db)):
    """Trade a refresh token for a new token pair."""
    email = _email_from(payload.refresh_token, "refresh", status.HTTP_401_UNAUTHORIZED)
    return await _issue_tokens(_user_or_404(db, email))


@router.get("/verify")
def verify_email(token: str, db: Session = Depends(get_db)):
    """Confirm an account from the emailed link."""
    user = _user_or_404(
        db, _email_from(token, "verification", status.HTTP_400_BAD_REQUEST)
    )
    if user.is_verified:
        return {"message": "Email already verified"}
    crud.verify_user(db, user)
    logger.info("account email verified", user_id=user.id)
    return {"message": "Email verified successfully"}


@router.post("/verify", status_code=status.HTTP_200_OK)
def resend_verification(
    request: schemas.EmailRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Email a fresh account confirmation link."""
    user = _user_or_404(db, request.email)
    send_verification_email(background_tasks, user.email, create_verification_token(user))
    return {"message": "Verification email sent"}


@router.post("/password/reset", status_code=status.HTTP_200_OK)
def request_password_reset(
    request: schemas.PasswordResetRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Email a password reset link."""
    user = _user_or_404(db, request.email)
    send_password_reset_email(
        background_tasks, user.email, create_password_reset_token(user)
    )
    return {"message": "Password reset email sent"}


@router.post("/password/reset/confirm", status_code=status.HTTP_200_OK)
async def confirm_password_reset(
    payload: schemas.PasswordResetConfirm,
    db: Session = Depends(get_db),
):
    """Set a new password using the token from the reset email."""
    email = _email_from(payload.token, "reset", status.HTTP_400_BAD_REQUEST)
    user = _user_or_404(db, email)
    crud.update_user_password(db, user, get_password_hash(payload.new_password))
    await cache_user(user)
    logger.info("password reset", user_id=user.id)
    return {"message": "Password updated"}
