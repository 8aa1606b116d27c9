from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from form_broker.core.config import settings
from form_broker.db import models  # noqa: F401  (registers audit tables)
from form_broker.db.base import Base

_url = make_url(settings.AUDIT_DATABASE_URL)
_is_sqlite = _url.get_backend_name() == "sqlite"
_is_memory = _is_sqlite and (not _url.database or _url.database == ":memory:")

engine_kwargs: dict = {"pool_pre_ping": True}
if _is_sqlite:
    # Sweeps and request logging write from worker threads.
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if _is_memory:
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(settings.AUDIT_DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create audit tables (and the SQLite data directory) if missing."""
    if _is_sqlite and not _is_memory:
        Path(_url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)
