import os
import socket
from contextlib import closing

from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from leadflow.core.config import settings

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Print high-signal diagnostics when the application cannot reach the database."""
    print(f"Warning: Could not connect to database: {exc}")
    print("The application will start but database operations will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        print(f"  Unable to parse DATABASE_URL ({parse_error}); skipping detailed diagnostics.")
        return

    print("  Database connection settings:")
    print(f"    Dialect: {url.get_backend_name()} (driver: {url.get_driver_name() or 'default'})")
    print(f"    Host: {url.host or 'localhost'}")
    print(f"    Database: {url.database}")
    print(f"    SKIP_DB_INIT: {os.getenv('SKIP_DB_INIT')!r}")

    if url.get_backend_name() == "sqlite":
        return

    host = url.host or "localhost"
    port = url.port or 5432
    try:
        with closing(socket.create_connection((host, port), timeout=2)):
            print(f"    Socket check: able to reach {host}:{port}")
    except OSError as socket_err:
        print(f"    Socket check: unable to reach {host}:{port} ({socket_err})")


def _engine_kwargs() -> dict:
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite":
        # Queue worker threads share the engine with request threads.
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def get_engine():
    global _engine
    if _engine is None:
        try:
            _engine = create_engine(settings.database_url, **_engine_kwargs())
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            _engine = create_engine(settings.database_url, **_engine_kwargs())
    return _engine


# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def get_db():
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create every table registered on ``Base``."""
    # Model modules register their tables on import.
    from leadflow.core import security  # noqa: F401
    from leadflow.db import models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
