import os

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import NullPool

from issuance.config import settings

db_url = str(settings.database_url)
is_postgres = db_url.startswith("postgresql")


def _env_bool(key: str, default: str = "false") -> bool:
    v = os.getenv(key, default)
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def build_engine(url: str) -> tuple[Engine, dict]:
    """Create the engine for ``url`` and report the pool settings it was given."""

    pool: dict[str, int | str | None] = {
        "pool_size": None,
        "max_overflow": None,
        "pool_timeout": None,
        "pool_recycle": None,
        "use_null_pool": None,
    }
    kwargs: dict = {"future": True}

    if url.startswith("postgresql"):
        # psycopg3 takes connect_timeout in seconds; fail fast on outages.
        kwargs["connect_args"] = {"connect_timeout": _env_int("DB_CONNECT_TIMEOUT_SECONDS", 10)}
        kwargs["pool_pre_ping"] = True
        if _env_bool("DB_USE_NULL_POOL"):
            # Transaction poolers hand out their own connections.
            kwargs["poolclass"] = NullPool
            pool["use_null_pool"] = "true"
        else:
            pool.update(
                pool_size=_env_int("DB_POOL_SIZE", 5),
                max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
                pool_timeout=_env_int("DB_POOL_TIMEOUT_SECONDS", 30),
                pool_recycle=_env_int("DB_POOL_RECYCLE_SECONDS", 1800),
                use_null_pool="false",
            )
            kwargs.update({k: v for k, v in pool.items() if k != "use_null_pool"})
    elif url.startswith("sqlite"):
        # Request handlers, the daily runner and threaded tests share one file.
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}

    return create_engine(url, **kwargs), pool


engine, POOL_CONFIG = build_engine(db_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def dialect_name(db: Session) -> str:
    bind = getattr(db, "bind", None) or db.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", "") or "").lower()


def get_db():
    db = SessionLocal()
    try:
        if is_postgres:
            timeout_ms = _env_int("DB_STATEMENT_TIMEOUT_MS", 5000)
            if timeout_ms > 0:
                db.execute(text(f"SET statement_timeout = {timeout_ms}"))
        yield db
    finally:
        db.close()
