from __future__ import annotations

import os
from pathlib import Path
from typing import Optional
from urllib.parse import quote_plus

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .constants import DEFAULT_RESULT_ROOT

DEFAULT_DATABASE_URL = "sqlite:///./inspector.db"

MYSQL_HOST = os.getenv("MYSQL_HOST")
MYSQL_USER = os.getenv("MYSQL_USER")
MYSQL_PASSWORD = os.getenv("MYSQL_PASSWORD")
MYSQL_DATABASE = os.getenv("MYSQL_DATABASE")
MYSQL_PORT = os.getenv("MYSQL_PORT", "3306")


def resolve_database_url() -> str:
    explicit = os.getenv("INSPECTOR_DATABASE_URL")
    if explicit:
        return explicit
    if all([MYSQL_HOST, MYSQL_USER, MYSQL_PASSWORD, MYSQL_DATABASE]):
        encoded_password = quote_plus(MYSQL_PASSWORD)
        return (
            f"mysql+pymysql://{MYSQL_USER}:{encoded_password}"
            f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DATABASE}?charset=utf8mb4"
        )
    return DEFAULT_DATABASE_URL


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        # In-memory databases only exist on a single connection.
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    mysql_engine = create_engine(
        url,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={
            "charset": "utf8mb4",
            "use_unicode": True,
            "init_command": "SET NAMES utf8mb4 COLLATE utf8mb4_unicode_ci",
        },
    )

    @event.listens_for(mysql_engine, "connect")
    def _set_mysql_charset(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("SET NAMES utf8mb4 COLLATE utf8mb4_unicode_ci")
            cursor.execute("SET CHARACTER SET utf8mb4")
        finally:
            cursor.close()

    return mysql_engine


DATABASE_URL = resolve_database_url()
engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind: Optional[Engine] = None) -> None:
    """Create database tables if they do not exist."""
    # Late import to avoid circular dependency
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def create_session_factory(url: str) -> sessionmaker:
    """Return a session factory bound to ``url`` with every table in place."""
    bind = engine if url == DATABASE_URL else build_engine(url)
    init_db(bind)
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


def ensure_runtime_directories(result_root: Optional[Path] = None) -> None:
    """Ensure the report directory exists."""
    Path(result_root or DEFAULT_RESULT_ROOT).mkdir(parents=True, exist_ok=True)
