from collections.abc import Generator, Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import DateTime, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from salesdesk.core.config import get_settings


class Base(DeclarativeBase):
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


_settings = get_settings()
_connect_args: dict[str, object] = {}
if make_url(_settings.database_url).get_backend_name().startswith("postgresql"):
    _connect_args["options"] = "-c timezone=utc"

engine = create_engine(_settings.database_url, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """Commit everything done in the block, or roll all of it back."""

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
