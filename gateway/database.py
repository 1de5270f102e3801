"""
Database configuration for the event gateway.
Supports both SQLite (default) and PostgreSQL (production).
"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from gateway.config import DATABASE_URL

# Create engine with appropriate settings
if DATABASE_URL.startswith("postgresql"):
    # PostgreSQL settings
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before using
        echo=False
    )
else:
    # SQLite settings
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        echo=False
    )

# Enable WAL mode and foreign keys for SQLite only
if not DATABASE_URL.startswith("postgresql"):
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def init_db():
    """Create all tables."""
    from gateway.models import Base
    Base.metadata.create_all(bind=engine)
