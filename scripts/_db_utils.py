from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.docflow.db import create_db_engine, make_sessionmaker


def resolve_db_url(explicit: str | None = None) -> str:
    return (explicit or os.environ.get("DATABASE_URL") or "sqlite:///docflow.db").strip()


@contextmanager
def script_session(db_url: str) -> Generator[Session, None, None]:
    """Same engine settings as the app (incl. SQLite FK enforcement), without building the Flask app."""
    engine = create_db_engine(db_url)
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
