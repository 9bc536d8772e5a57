"""Database configuration and session management."""
from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """Create an engine for SQLite locally or PostgreSQL in production."""
    if database_url.startswith("sqlite"):
        # SQLite-specific config
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False}
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=10
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request):
    """Dependency for FastAPI endpoints to get a request-scoped session."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
