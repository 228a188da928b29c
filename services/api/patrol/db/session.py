from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from patrol.core.config import settings

_connect_args: dict = {}
if settings.database_url.startswith("sqlite"):
    # Service calls run in Starlette's threadpool.
    _connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(settings.database_url, future=True, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
