import datetime as dt
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import make_url
from sqlmodel import SQLModel, Field, Session, create_engine

from config import DATABASE_URL

logger = logging.getLogger(__name__)


# Database models
class Face(SQLModel, table=True):
    __tablename__ = "faces"

    face_id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    details: str = ""
    descriptor: str  # JSON list of floats


class Attendance(SQLModel, table=True):
    __tablename__ = "attendance"

    id: Optional[int] = Field(default=None, primary_key=True)
    face_id: int = Field(foreign_key="faces.face_id", index=True)
    date: dt.date = Field(index=True)


def build_engine(url: str = DATABASE_URL):
    """Create an engine, making sure the parent directory of a SQLite file exists."""
    connect_args = {}
    if url.startswith("sqlite"):
        database = make_url(url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        # Requests may be served from worker threads
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=False, connect_args=connect_args)


engine = build_engine()


def init_db(bind=None):
    """Create tables if they do not exist."""
    bind = bind if bind is not None else engine
    SQLModel.metadata.create_all(bind)
    logger.info("Database tables ready (%s)", bind.url.render_as_string(hide_password=True))


def get_session():
    """Yield one session per request; it is closed when the request ends."""
    with Session(engine) as session:
        yield session


def today() -> dt.date:
    return dt.datetime.now(dt.timezone.utc).date()
