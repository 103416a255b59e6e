from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rdtrack.models import Base, RDGroup

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"

DEFAULT_RD_GROUPS = (
    ("System Architecture", "Core"),
    ("Embedded Firmware", "Core"),
    ("Electronics Hardware", "Core"),
    ("Mechanical Design", "Core"),
    ("Imaging / Algorithms", "Platform"),
    ("AI / Deep Learning", "Platform"),
    ("Software Platform", "Platform"),
    ("UI/UX", "Platform"),
    ("Cloud / Integration", "Platform"),
    ("Certification / Regulatory", "Compliance"),
    ("Quality / Verification (QA)", "Quality"),
)


def database_url() -> str:
    url = os.environ.get("RDTRACK_DATABASE_URL", "").strip()
    if url:
        return url
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{DATA_DIR / 'rdtrack.db'}"


def init_db(url: str | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = url or database_url()
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        _engine = create_engine(url, connect_args=connect_args)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        seed_rd_groups(_engine)


def seed_rd_groups(engine: Engine) -> None:
    """Insert the default RD groups if the table is empty."""
    with Session(engine) as session:
        if session.execute(select(RDGroup.id).limit(1)).first() is not None:
            return
        session.add_all(RDGroup(name=name, category=category) for name, category in DEFAULT_RD_GROUPS)
        session.commit()
    log.info("Seeded %d RD groups", len(DEFAULT_RD_GROUPS))


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

