from typing import Any

from sqlalchemy import update
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine, SQLModel

from parley.core.config import settings


def _engine_options(url: str) -> dict[str, Any]:
    """SQLite needs cross-thread access, and in-memory SQLite one shared connection."""
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        options["poolclass"] = StaticPool
    return options


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))


def get_session():
    """FastAPI dependency to get database session."""
    with Session(engine) as session:
        yield session


def init_db(bind=None):
    # Registers every table on SQLModel.metadata
    from parley.models import contacts, drafts, jobs, messages, scheduling, work_items  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def conditional_update(session: Session, model: type[SQLModel], where: list, values: dict[str, Any]) -> bool:
    """Apply a single-row UPDATE guarded by ``where``.

    Returns True only when exactly one row matched. Callers treat False as a
    lost race (someone else changed the row first), never as an error.
    """
    session.flush()
    statement = (
        update(model)
        .where(*where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.exec(statement)  # type: ignore[call-overload]
    return result.rowcount == 1
