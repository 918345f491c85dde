from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from app.config.settings import settings


def _validate_postgresql_driver(database_url: str) -> None:
    """Validate PostgreSQL driver is installed when using PostgreSQL.

    Must actually import psycopg2 (not just locate it) because SQLAlchemy
    will try to import it when creating the engine.
    """
    if "postgres" in database_url.lower():
        try:
            import psycopg2  # noqa: F401

            logger.info("PostgreSQL driver (psycopg2) is available")
        except ImportError as e:
            logger.error("⚠️ CRITICAL: PostgreSQL driver (psycopg2) is not installed! Install psycopg2-binary.")
            raise ImportError("PostgreSQL driver required. Install with: pip install psycopg2-binary") from e


def build_engine(database_url: str) -> Engine:
    """Create an engine with dialect-appropriate connection args."""
    is_postgresql = "postgres" in database_url.lower()
    connect_args: dict[str, object] = {}
    if database_url.lower().startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    elif is_postgresql:
        _validate_postgresql_driver(database_url)
        connect_args = {
            "connect_timeout": 10,
            "application_name": "wearable-ingest",
        }

    return create_engine(
        database_url,
        connect_args=connect_args,
        echo=False,
        pool_pre_ping=True,  # Verify connections before using (important for cloud DBs)
        pool_recycle=3600,
    )


# Lazy initialization to avoid import-time database connections
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    """Get or create the process-wide database engine."""
    global _engine
    if _engine is None:
        logger.info(f"Initializing database engine: {settings.database_url}")
        _engine = build_engine(settings.database_url)
        logger.info("Database engine initialized")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Get or create the process-wide session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine(), expire_on_commit=False)
        logger.info("Database session factory initialized")
    return _SessionLocal


def check_database_connection(engine: Engine) -> None:
    """Run a trivial query; raises if the database is unreachable."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        raise


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Transactional session: commit on success, roll back and re-raise on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        logger.error(f"Database session error, rolling back: {type(e).__name__}: {e}")
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Session bound to the process-wide engine."""
    with session_scope(get_session_factory()) as session:
        yield session
