import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis import Redis
from sqlalchemy.orm import sessionmaker

from .config import Settings, settings as default_settings
from .database import build_engine, build_session_factory, init_db
from .notifications import Mailer, NotificationContext
from .notifications.consumer import p2p_consumer_loop, retry_consumer_loop
from .redis_client import build_redis
from .routers import appointments, availability, internal
from .services.errors import BookingError, ErrorCode
from .services.events import redis_emitter
from .services.rate_limit import RateLimiter
from .services.slots import BookingConfig, BookingCoordinator, lock_sweeper_loop

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    session_factory: sessionmaker | None = None,
    redis: Redis | None = None,
    booking_config: BookingConfig | None = None,
    mailer: Mailer | None = None,
) -> FastAPI:
    """
    Build the API.

    Run with: uvicorn slotbooking.main:create_app --factory

    Storage, Redis and the booking core are created once, here or in the
    lifespan, and shared through app.state. Tests inject their own
    session_factory / redis and disable background_jobs.
    """
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level)

    if session_factory is None:
        engine = build_engine(settings.resolved_database_url)
        session_factory = build_session_factory(engine)
    init_db(session_factory.kw["bind"])

    booking_config = booking_config or BookingConfig(default_timezone=settings.default_timezone)
    redis = redis if redis is not None else build_redis(settings.redis_url)
    mailer = mailer or Mailer(settings.sendgrid_api_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        tasks: list[asyncio.Task] = []
        if settings.background_jobs:
            ctx = NotificationContext(
                session_factory=session_factory,
                mailer=mailer,
                email_from=settings.email_from,
                dashboard_url=settings.dashboard_url,
                default_timezone=settings.default_timezone,
            )
            tasks = [
                asyncio.create_task(lock_sweeper_loop(session_factory, booking_config)),
                asyncio.create_task(p2p_consumer_loop(settings.redis_url, ctx)),
                asyncio.create_task(retry_consumer_loop(settings.redis_url)),
            ]
            logger.info(f"Background jobs started: {len(tasks)}")

        yield

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    app = FastAPI(title="Slot Booking API", lifespan=lifespan)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.booking_config = booking_config
    app.state.rate_limiter = RateLimiter()
    app.state.coordinator = BookingCoordinator(
        session_factory,
        config=booking_config,
        emit=redis_emitter(redis),
    )

    # ===== Error mapping =====
    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        headers = None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            headers = {"Retry-After": str(retry_after)}
        return JSONResponse(
            status_code=exc.http_status,
            content={"code": exc.code, "detail": exc.message},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"code": ErrorCode.INVALID_ARGUMENT, "detail": detail},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"code": ErrorCode.INTERNAL, "detail": str(exc)},
        )

    app.include_router(appointments.router)
    app.include_router(availability.router)
    app.include_router(internal.router)

    @app.get("/health")
    def health():
        try:
            redis_ok = bool(app.state.redis.ping())
        except Exception:
            redis_ok = False
        return {"status": "ok", "redis": redis_ok}

    return app

