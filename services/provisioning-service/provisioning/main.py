"""FastAPI application wiring for the provisioning service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router
from .config import Settings, get_settings
from .domain.service import AccountService
from .domain.signup import SignupOrchestrator
from .integrations.email import SmtpEmailSender
from .integrations.payments import StripeCheckoutProvider
from .repository import AccountRepository
from .security.rate_limiter import RateLimiter, SlidingWindowRateLimiter, UnthrottledRateLimiter
from .security.redis_rate_limiter import RedisSlidingWindowRateLimiter
from .security.session import SessionManager
from .security.tokens import TokenCodec

logger = logging.getLogger(__name__)

settings = get_settings()


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Instantiate the configured limiter backend; an unreachable Redis fails open."""
    if settings.rate_limit_backend == "redis":
        if not settings.redis_url:
            logger.warning("redis rate limiter selected without REDIS_URL; login throttling disabled")
            return UnthrottledRateLimiter()
        try:
            client = redis.from_url(
                settings.redis_url,
                socket_timeout=settings.rate_limit_timeout_seconds,
                socket_connect_timeout=settings.rate_limit_timeout_seconds,
            )
            client.ping()
            logger.info("rate limiter configured for redis backend")
            return RedisSlidingWindowRateLimiter(client)
        except redis.RedisError as exc:
            logger.warning("redis rate limiter unavailable, throttling disabled: %s", exc)
            return UnthrottledRateLimiter()

    if settings.rate_limit_backend == "none":
        logger.info("rate limiting disabled by configuration")
        return UnthrottledRateLimiter()

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter()


def build_services(app: FastAPI, store: AccountRepository, settings: Settings) -> None:
    """Attach the session manager, limiter and workflow services to ``app.state``."""
    sessions = SessionManager(
        settings.session_secret,
        issuer=settings.session_issuer,
        ttl_seconds=settings.session_ttl_seconds,
        cookie_name=settings.session_cookie_name,
        secure=settings.is_production,
    )
    rate_limiter = build_rate_limiter(settings)
    app.state.session_manager = sessions
    app.state.rate_limiter = rate_limiter
    app.state.account_service = AccountService(store, sessions, rate_limiter)
    app.state.signup_orchestrator = SignupOrchestrator(
        store,
        TokenCodec(settings.signup_secret),
        SmtpEmailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_email=settings.smtp_from_email,
            from_name=settings.smtp_from_name,
            timeout=settings.smtp_timeout_seconds,
        ),
        StripeCheckoutProvider(
            secret_key=settings.stripe_secret_key,
            base_url=settings.public_base_url,
            timeout=settings.stripe_timeout_seconds,
        ),
        plan_prices=settings.plan_prices,
        base_url=settings.public_base_url,
        token_ttl_seconds=settings.signup_token_ttl_seconds,
        bcrypt_rounds=settings.bcrypt_rounds,
        webhook_secret=settings.stripe_webhook_secret,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False, timeout=settings.db_pool_timeout_seconds)
    pool.open()
    app.state.pool = pool
    build_services(
        app,
        AccountRepository(pool, timeout=settings.db_pool_timeout_seconds),
        settings,
    )
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(router)


@app.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus metrics for scrapes."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
