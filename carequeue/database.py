# carequeue/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for models
Base = declarative_base()


def make_engine(database_url: str):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)
    return create_engine(database_url, pool_pre_ping=True, echo=False)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine):
    """Create all database tables - models must be imported first."""
    from . import models  # noqa: F401  registers the tables on Base.metadata

    Base.metadata.create_all(bind=engine)
