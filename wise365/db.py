from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from wise365.config import get_settings
from wise365.models import Base, FormTemplate, Funnel

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None
_current_db_path: Path | None = None


def _sqlite_engine(db_path: Path) -> Engine:
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def init_db(db_path: str | Path | None = None) -> None:
    """Open (or create) the database, then seed the default catalog into empty tables.

    Calling it again swaps the engine, so tests and scripts can point the
    process at another file.
    """
    global _engine, _SessionLocal, _current_db_path
    db_path = Path(db_path) if db_path is not None else get_settings().database_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = _sqlite_engine(db_path)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine, _SessionLocal, _current_db_path = engine, factory, db_path
    with factory() as session:
        seed_defaults(session)
    log.info("Database ready at %s", db_path)


def seed_defaults(session: Session) -> None:
    """Seed the built-in funnel catalog and form templates into empty tables."""
    from wise365.catalog import DEFAULT_FORM_TEMPLATES, default_catalog, funnel_to_orm

    if session.execute(select(Funnel.id).limit(1)).first() is None:
        for defn in default_catalog():
            session.add(funnel_to_orm(defn))
        log.info("Seeded default funnel catalog")
    if session.execute(select(FormTemplate.id).limit(1)).first() is None:
        for tpl in DEFAULT_FORM_TEMPLATES:
            session.add(FormTemplate(
                name=tpl["name"], description=tpl["description"],
                sections_json=json.dumps(tpl["sections"]),
            ))
        log.info("Seeded default form templates")
    session.commit()


def get_session() -> Session:
    with _lock:
        factory = _SessionLocal
    if factory is None:
        raise RuntimeError("init_db() has not been called")
    return factory()


def session_generator() -> Generator[Session, None, None]:
    """Session that rolls back on error and always closes; usable with FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Same session lifecycle as a ``with`` block, for the MCP server and scripts."""
    yield from session_generator()


def current_db_name() -> str:
    """Stem of the active database file, or the configured name before ``init_db``."""
    if _current_db_path is None:
        return get_settings().db_name
    return _current_db_path.stem
