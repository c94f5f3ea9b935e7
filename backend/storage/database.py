"""
Database configuration and session management.
Uses SQLAlchemy with SQLite for development and supports Postgres for production.

Production features:
- Connection pool configuration
- Alembic-first schema upgrades with create_all fallback
"""
import logging
import os
from pathlib import Path
from typing import Generator
from sqlalchemy import create_engine, text, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from config.paths import default_database_url

logger = logging.getLogger(__name__)

# Default to app-data SQLite location for standalone runtime.
DATABASE_URL = os.getenv("DATABASE_URL", default_database_url())

# For SQLite, enable check_same_thread=False for FastAPI compatibility
connect_args = {}
pool_kwargs = {}
if DATABASE_URL.startswith("sqlite"):
    connect_args["check_same_thread"] = False
    pool_kwargs["pool_pre_ping"] = True
else:
    # PostgreSQL connection pool tuning
    pool_kwargs.update({
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    })

engine = create_engine(
    DATABASE_URL,
    connect_args=connect_args,
    echo=os.getenv("SQL_ECHO", "false").lower() == "true",
    **pool_kwargs,
)

if DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function to get database session.

    Yields:
        Database session

    Usage:
        @app.get("/items")
        def get_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """
    Initialize or migrate the database schema.
    Prefer Alembic upgrades; fallback to create_all for local recovery.
    """
    migrated = run_alembic_upgrade_head()
    if migrated:
        return
    logger.warning("Falling back to SQLAlchemy create_all because Alembic upgrade was unavailable")
    from storage import models  # noqa: F401  # Import to register models
    Base.metadata.create_all(bind=engine)


def run_alembic_upgrade_head() -> bool:
    """
    Attempt Alembic `upgrade head`.
    Returns True when migrations were applied successfully.
    """
    backend_dir = Path(__file__).resolve().parent.parent
    alembic_ini = backend_dir / "alembic.ini"
    script_location = backend_dir / "alembic"
    if not alembic_ini.exists() or not script_location.exists():
        logger.warning("Alembic assets not found, skipping migration upgrade")
        return False

    from alembic import command
    from alembic.config import Config
    from alembic.util.exc import CommandError

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", DATABASE_URL)
    try:
        command.upgrade(config, "head")
        logger.info("Applied Alembic migrations to head")
        return True
    except (CommandError, SQLAlchemyError):
        logger.exception("Alembic migration upgrade failed")
        return False


def check_db_connection() -> bool:
    """
    Verify database connectivity with a lightweight query.
    Returns True if the database is reachable.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False
