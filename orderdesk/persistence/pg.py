from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from orderdesk.core.config import get_settings
from orderdesk.persistence.models import Base

logger = logging.getLogger(__name__)


def engine_options(url: str) -> dict[str, Any]:
    """Per-backend engine options.

    Webhook and bulk-label routes run their session work on the threadpool,
    so a SQLite connection must be usable from a thread other than the one
    that opened it.
    """
    if make_url(url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def create_engine_from_url(url: str) -> Engine:
    return create_engine(url, future=True, **engine_options(url))


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


settings = get_settings()
engine = create_engine_from_url(settings.database_url)
SessionLocal = make_session_factory(engine)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)
    logger.debug("schema ensured: dialect=%s tables=%s", engine.dialect.name, sorted(Base.metadata.tables))


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    with session_scope() as session:
        yield session
