from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .config import settings


def build_engine(url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite needs check_same_thread=False because FastAPI handlers and the
    capacity ledger touch the same database from several threads.
    """
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def enable_sqlite_fk(dbapi_connection, _):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(url, pool_pre_ping=True)


engine = build_engine(settings.resolved_database_url)

# SessionLocal is the main way to talk to the database
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables known to the ORM metadata."""
    from .models.generated import Base

    Base.metadata.create_all(bind=bind or engine)


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
