"""
Main application entry point for the SafeTrack API.

This module initializes the FastAPI application, sets up logging and
middleware, configures CORS, initializes the rate limiter with Redis
backend, installs the lifecycle error handler, and includes routers for
authentication, users, emergency contacts and locations.

Modules:
- FastAPI: Web framework
- CORSMiddleware: Middleware for handling CORS
- FastAPILimiter: Rate limiting
- redis.asyncio: Async Redis client
- fakeredis: In-process Redis used when the server is unreachable
- safetrack.database: Database engine
- safetrack.models: SQLAlchemy models
- safetrack.emergency_contacts: Emergency contacts router
- safetrack.locations: Location tracking router
- safetrack.auth: Authentication router
- safetrack.users: Users router
- safetrack.core: Application settings
"""

from fakeredis import FakeAsyncRedis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi_limiter import FastAPILimiter
import redis.asyncio as redis

from safetrack.database import engine
from safetrack import models, emergency_contacts, locations
from safetrack.auth import router as auth_router
from safetrack.users import router as users_router
from safetrack.core import get_settings
from safetrack.errors import register_exception_handlers
from safetrack.logger import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

# Create tables (for development only)
models.Base.metadata.create_all(bind=engine)

settings = get_settings()

# Initialize FastAPI application
app = FastAPI(title="SafeTrack API")

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.on_event("startup")
async def startup_event():
    """
    FastAPI startup event handler.

    Initializes the rate limiter with Redis backend. Falls back to an
    in-process fake Redis if the server is unavailable (e.g., during tests
    or offline).
    """
    redis_client = redis.from_url(
        settings.REDIS_URL, encoding="utf-8", decode_responses=True
    )
    try:
        await FastAPILimiter.init(redis_client)
    except Exception as exc:
        logger.warning("redis unavailable, rate limiting in memory", error=str(exc))
        await FastAPILimiter.init(FakeAsyncRedis(decode_responses=True))


# Include routers for application areas
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(emergency_contacts.router)
app.include_router(locations.router)


@app.get("/")
def root():
    """
    Root endpoint for the API.

    Returns a simple JSON message directing users to the Swagger UI.

    Returns:
        dict: JSON message with information about the API
    """
    return {"msg": "SafeTrack API. Visit /docs for Swagger UI"}
