from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
# NOTE: DB schema should be managed by Alembic in production.

from .db import Base, SessionLocal, engine
from .routers import auth, devices, encryption, mfa, security
from .services.errors import TwoFactorError

logger = logging.getLogger(__name__)


def _startup() -> None:
    from .config import settings

    if not (settings.crypto_encryption_key or "").strip() and not (settings.encryption_oracle_url or "").strip():
        logger.warning(
            "Neither CRYPTO_ENCRYPTION_KEY nor ENCRYPTION_ORACLE_URL is set; "
            "2FA enrollment and verification will fail until one is configured."
        )

    if bool(settings.db_auto_create_tables):
        Base.metadata.create_all(bind=engine)
        logger.info("DB auto-create enabled: ensured database tables exist")
    else:
        logger.info("DB auto-create disabled: expecting schema to be managed by Alembic")
        if bool(settings.db_require_migrations_up_to_date):
            from .services.migrations_check import assert_db_up_to_date

            # Fail fast to avoid confusing runtime errors.
            assert_db_up_to_date(engine)
            logger.info("Alembic migration status OK (DB is at head)")

    # Seed initial UI user (configurable via env)
    from passlib.context import CryptContext
    from sqlalchemy import select
    from sqlalchemy.exc import SQLAlchemyError

    from .models import AppUser

    pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
    username = settings.bootstrap_username or "admin"
    password = settings.bootstrap_password
    if not password:
        logger.warning(
            "BOOTSTRAP_PASSWORD not set; not seeding initial UI user. "
            "Set BOOTSTRAP_PASSWORD to enable initial user creation."
        )
        return

    db = SessionLocal()
    try:
        existing = db.execute(select(AppUser).where(AppUser.username == username)).scalar_one_or_none()
        if not existing:
            db.add(AppUser(username=username, password_hash=pwd_context.hash(password), is_active=True))
            db.commit()
            logger.info("Seeded initial UI user '%s'", username)
    except SQLAlchemyError:
        logger.exception("Failed to seed initial UI user")
        db.rollback()
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    _startup()
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="CashSnap Auth", lifespan=lifespan)

    # CORS for separate-origin frontend. Off by default.
    from .config import settings

    if settings.cors_allow_origins or settings.cors_allow_origin_regex:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_origin_regex=settings.cors_allow_origin_regex,
            allow_methods=settings.cors_allow_methods,
            allow_headers=settings.cors_allow_headers,
            allow_credentials=bool(settings.cors_allow_credentials),
        )

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    @app.exception_handler(TwoFactorError)
    async def two_factor_error_handler(request: Request, exc: TwoFactorError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "code": exc.code})

    @app.middleware("http")
    async def csrf_middleware(request: Request, call_next):
        """CSRF protection for cookie-authenticated requests.

        Double-submit cookie: require X-CSRF-Token to match the csrf cookie
        on state-changing requests.
        """

        from .deps import CSRF_COOKIE, SESSION_COOKIE

        path = request.url.path or ""
        method = (request.method or "GET").upper()

        # Exemptions: health, the oracle (token auth), login (no session yet), logout.
        if path == "/health" or path.startswith("/functions/") or path in ("/auth/login", "/auth/logout"):
            return await call_next(request)

        if method in ("GET", "HEAD", "OPTIONS"):
            return await call_next(request)

        # Only enforce if a session cookie is present (UI auth uses cookies).
        if request.cookies.get(SESSION_COOKIE):
            csrf_cookie = request.cookies.get(CSRF_COOKIE)
            csrf_header = request.headers.get("X-CSRF-Token")
            if not csrf_cookie or not csrf_header or csrf_cookie != csrf_header:
                return JSONResponse(status_code=403, content={"detail": "CSRF token missing or invalid"})

        return await call_next(request)

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        from .config import settings

        resp = await call_next(request)
        if not bool(settings.security_headers_enabled):
            return resp

        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "same-origin")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        # Backup codes and provisioning secrets must never be cached.
        if request.url.path.startswith("/auth/") or request.url.path.startswith("/functions/"):
            resp.headers.setdefault("Cache-Control", "no-store")

        xfp = (request.headers.get("x-forwarded-proto") or "").lower()
        is_https = (request.url.scheme == "https") or (xfp == "https")
        if is_https and bool(settings.ui_cookie_secure):
            resp.headers.setdefault("Strict-Transport-Security", "max-age=15552000")
        return resp

    # Routers
    app.include_router(auth.router)
    app.include_router(mfa.router)
    app.include_router(devices.router)
    app.include_router(security.router)
    app.include_router(encryption.router)

    @app.get("/health")
    def health():
        return {"ok": True, "service": "cashsnap-auth", "ts": datetime.now(timezone.utc).isoformat()}

    return app
