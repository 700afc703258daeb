"""Workflow store: engine, tenant-guarded sessions and the schema health check."""

from __future__ import annotations

from functools import lru_cache
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from src.core.config import get_settings
from src.storage.tenant import install_tenant_guards


Base = declarative_base()

# Tables the workflow services cannot run without; a missing one means the
# Alembic revision has not been applied.
REQUIRED_TABLES = (
    "approval_requests",
    "approval_events",
    "distribution_jobs",
    "workflow_notifications",
)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    settings = get_settings()
    kwargs: dict[str, object] = {"pool_pre_ping": True, "future": True}

    if settings.database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}

    return create_engine(settings.database_url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Sessions for workflow services.

    Rows stay readable after commit because services hand ORM objects back to
    routers once their tenant transaction has closed. Every session from the
    factory refuses workspace data unless a ``TenantContext`` is bound.
    """

    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return install_tenant_guards(factory)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return create_session_factory(get_engine())


def get_session() -> Generator[Session, None, None]:
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def check_database(engine: Optional[Engine] = None) -> Tuple[bool, Optional[str]]:
    """Connectivity plus a check that the workflow tables exist."""

    engine = engine or get_engine()
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            inspector = inspect(connection)
            missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
    except SQLAlchemyError as exc:
        return False, str(exc)

    if missing:
        return False, f"missing tables: {', '.join(missing)}"
    return True, None


def load_models() -> None:
    """Import ORM models so Base metadata contains all mapped tables."""

    import src.storage.models  # noqa: F401
