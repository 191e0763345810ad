import logging
import os
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from issuance import models
from issuance.api.router import api_router
from issuance.config import settings
from issuance.core.exceptions import IssuanceError
from issuance.core.observability import (
    global_exception_handler,
    issuance_exception_handler,
    request_logging_middleware,
    uptime_seconds,
    utc_now_iso,
)
from issuance.core.security import get_password_hash
from issuance.database import POOL_CONFIG, SessionLocal, engine
from issuance.services.scheduler import runner as daily_runner

api_prefix = (
    settings.api_prefix
    if settings.api_prefix.startswith("/")
    else f"/{settings.api_prefix}"
    if settings.api_prefix
    else ""
)

logger = logging.getLogger("issuance")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.enable_docs else None,
    redoc_url="/redoc" if settings.enable_docs else None,
    openapi_url=(f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
    if settings.enable_docs
    else None,
)

# Expose logger for middleware without creating circular imports.
app.state.logger = logger
app.state.settings_cors_origins = list(settings.cors_origins or [])

app.add_exception_handler(IssuanceError, issuance_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Request-level logging + request correlation id.
app.middleware("http")(request_logging_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=api_prefix)


def _run_migrations_if_configured() -> None:
    if not settings.run_migrations_on_start:
        return

    # Avoid running migrations during tests.
    if (settings.environment or "").lower() == "test":
        return

    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))

    try:
        command.upgrade(alembic_cfg, "head")
        logger.info("migrations_applied")
    except SQLAlchemyError as e:
        # Don't crash the API if migrations fail; surface the issue via logs.
        logger.error("migrations_failed", extra={"error": str(e)})


def _seed_dev_users() -> None:
    env = str(settings.environment or "dev").lower()
    if env in {"prod", "production", "test"}:
        return

    db = SessionLocal()
    try:

        def ensure_user(email: str, name: str, role: models.RoleName) -> None:
            existing = db.query(models.User).filter(models.User.email == email).first()
            if existing:
                return
            db.add(
                models.User(
                    email=email,
                    name=name,
                    hashed_password=get_password_hash("123"),
                    role=role,
                    active=True,
                )
            )

        ensure_user("admin@issuance.local", "Admin", models.RoleName.admin)
        ensure_user("comercial@issuance.local", "Comercial", models.RoleName.comercial)
        ensure_user("financeiro@issuance.local", "Financeiro", models.RoleName.financeiro)
        ensure_user("operacional@issuance.local", "Operacional", models.RoleName.operacional)

        db.commit()
    except SQLAlchemyError as e:
        # Database not ready yet (e.g., missing tables) - don't block startup.
        logger.warning("dev_user_seed_failed", extra={"error": str(e)})
        db.rollback()
    finally:
        db.close()


@app.on_event("startup")
def _startup():
    logger.info(
        "runtime_config",
        extra={
            "pid": os.getpid(),
            "web_concurrency": os.getenv("WEB_CONCURRENCY"),
            "db_pool": POOL_CONFIG,
            "db_pool_status": engine.pool.status(),
        },
    )
    _run_migrations_if_configured()
    _seed_dev_users()
    # Avoid running background threads in test context by default.
    if (settings.environment or "").lower() == "test":
        return
    if not settings.scheduler_enabled:
        return
    daily_runner.start()
    logger.info("scheduler_started", extra={"daily_utc_hour": daily_runner.hour_utc})


@app.on_event("shutdown")
def _shutdown():
    daily_runner.stop()
    logger.info("scheduler_stopped")


@app.get("/health", tags=["meta"])
@app.get("/healthz", tags=["meta"])
def healthcheck():
    """Institutional healthcheck (liveness).

    Keep payload stable for monitoring systems.
    """

    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "time": utc_now_iso(),
        "uptime_seconds": round(uptime_seconds(), 2),
        "version": settings.build_version,
    }
