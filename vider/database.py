# vider/database.py
from __future__ import annotations
import os
from typing import Iterator

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

# --- read env ----------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL env var is required")


def _engine_for(url: str):
    if url.startswith("sqlite"):
        # one shared connection so in-memory databases survive across sessions
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    # Railway/Neon give: postgresql://...
    # SQLAlchemy + psycopg = postgresql+psycopg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)

    sslmode = os.getenv("DATABASE_SSLMODE", "require").strip()
    if sslmode and "sslmode=" not in url:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}sslmode={sslmode}"

    return create_engine(
        url,
        pool_pre_ping=True,   # auto-reconnect
        pool_size=5,
        max_overflow=10,
    )


# --- engine ------------------------------
engine = _engine_for(DATABASE_URL)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


def init_db() -> None:
    # Creates tables that don't exist; does not drop/alter
    from . import models  # noqa: F401  (register tables on the metadata)
    SQLModel.metadata.create_all(engine)
