from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

from sqlmodel import Session, SQLModel, create_engine

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR_ENV = "REST_RASTER_DATA_DIR"
DATABASE_URL_ENV = "REST_RASTER_DATABASE_URL"
DB_FILENAME = "rest_raster.db"


def data_dir() -> Path:
    """Folder holding the fetch history database."""

    override = os.getenv(DATA_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return BASE_DIR / "data"


def database_url() -> str:
    """Fetch history lives in SQLite under ``data_dir()`` unless a URL is configured."""

    override = os.getenv(DATABASE_URL_ENV, "").strip()
    if override:
        return override
    folder = data_dir()
    folder.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{folder / DB_FILENAME}"


def engine_options(url: str) -> Dict[str, Any]:
    # FastAPI serves sync endpoints from a thread pool.
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {}


DATABASE_URL = database_url()
engine = create_engine(DATABASE_URL, echo=False, **engine_options(DATABASE_URL))


def init_db() -> None:
    """Create the fetch history and usage tables if they do not exist."""

    from . import models  # noqa: F401 registers FetchRecord and ApiUsageStat

    SQLModel.metadata.create_all(engine)


@contextmanager
def session_scope() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
