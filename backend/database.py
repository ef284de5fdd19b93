"""
Preference storage for hemocount.

A single SQLite file, hemocount.db, lives in the directory named by
HEMOCOUNT_DATA_DIR (./data when unset). Only the Settings table is kept
there; counts and recipes are computed per request and never stored.
"""

import os
from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

DATA_DIR_ENV = "HEMOCOUNT_DATA_DIR"
DATABASE_FILENAME = "hemocount.db"


class Base(DeclarativeBase):
    """Declarative base for the preference tables."""
    pass


def get_database_path() -> Path:
    """Resolve hemocount.db inside the data directory, creating the directory."""
    data_dir = Path(os.environ.get(DATA_DIR_ENV, "./data"))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / DATABASE_FILENAME


DATABASE_URL = f"sqlite:///{get_database_path()}"
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},  # FastAPI serves requests from a threadpool
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency yielding a session that is closed after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create the preference tables if the file is new."""
    import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
