import logging
import sys
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.errors import register_exception_handlers
from app.api.v1 import auth, users
from app.config import settings
from app.core.rate_limit import auth_limiter
from app.db.session import async_session_maker, init_db
from app.services.email import SmtpEmailSender
from app.services.notifications import NotificationDispatcher
from app.services.token_ledger import purge_expired_tokens

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logging.getLogger("app").setLevel(logging.DEBUG)
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_token_cleanup() -> int:
    """Delete expired refresh and reset tokens. Rate windows expire inside the limiter storage."""
    async with async_session_maker() as session:
        removed = await purge_expired_tokens(session)
        await session.commit()
    logger.info("Cleanup: removed %s expired tokens", removed)
    return removed


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_security_config()
    await init_db()
    app.state.notifications.start()
    scheduler.add_job(
        scheduled_token_cleanup,
        "interval",
        minutes=settings.token_cleanup_interval_minutes,
        id="token_cleanup",
        replace_existing=True,
    )
    scheduler.start()
    yield
    scheduler.shutdown()
    await app.state.notifications.stop()
    app.state.auth_limiter.reset()


limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.global_rate_limit],
    enabled=settings.global_rate_limit_enabled,
)

app = FastAPI(
    title="Account Guard API",
    description="Registration, email verification, JWT sessions with refresh rotation, password reset",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.state.auth_limiter = auth_limiter
app.state.notifications = NotificationDispatcher(
    SmtpEmailSender.from_settings(settings).send,
    workers=settings.notification_workers,
    queue_size=settings.notification_queue_size,
)
register_exception_handlers(app)
app.add_middleware(SlowAPIMiddleware)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        if getattr(settings, "enable_hsts", False):
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] if settings.cors_origins else ["*"]
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth.router, prefix="/api/v1")
app.include_router(users.router, prefix="/api/v1")

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    return {"status": "ok"}
