from __future__ import annotations

import logging
import os
from typing import Generator

from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


def _build_database_url() -> str:
    """Prefer explicit DATABASE_URL; otherwise construct one for Cloud SQL."""
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    conn_name = os.getenv("DB_CONNECTION_NAME")
    user = os.getenv("DB_USER")
    password = os.getenv("DB_PASSWORD")
    db_name = os.getenv("DB_NAME", "postgres")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT", "5432")

    if conn_name and user and password:
        if host:
            return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{db_name}"
        socket_host = f"/cloudsql/{conn_name}"
        return f"postgresql+psycopg2://{user}:{password}@/{db_name}?host={socket_host}"

    return "sqlite:///./session_calendar.db"


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {}
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    # A bare in-memory database only lives as long as its connection.
    if url in {"sqlite://", "sqlite:///:memory:"}:
        kwargs["poolclass"] = StaticPool
    return kwargs


DATABASE_URL = _build_database_url()

engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    # Importing here avoids circular imports at module load time.
    from . import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    # Best-effort patch for SQLite dev databases created before the
    # display name column existed.
    try:  # pragma: no cover - exercised against legacy dev databases only
        if str(engine.url).startswith("sqlite"):
            cols = {
                col["name"] for col in inspect(engine).get_columns("provider_profiles")
            }
            if "display_name" not in cols:
                with engine.connect() as conn:
                    conn.exec_driver_sql(
                        "ALTER TABLE provider_profiles ADD COLUMN display_name VARCHAR(255) NULL"
                    )
                    conn.commit()
    except Exception:
        # Schema drift should not prevent the app from starting; any issues
        # will surface when the new fields are actually used.
        logging.getLogger(__name__).exception("db_schema_migration_failed")
