from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from paraconnect.storage.models import Base


def create_session_factory(database_url: str) -> tuple[sessionmaker[Session], Engine]:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, future=True)
    return sessionmaker(bind=engine, expire_on_commit=False), engine


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)
