"""Database engine and session factory"""

from sqlalchemy import BigInteger, Integer, create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from devpanel.config.settings import settings


class Base(DeclarativeBase):
    pass


# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer, "sqlite")


def build_engine(url: str):
    """Create an engine; SQLite connections get foreign keys switched on."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    new_engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)

    if new_engine.dialect.name == "sqlite":
        @event.listens_for(new_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(bind=None) -> None:
    """Create all tables that do not exist yet."""
    import devpanel.models  # noqa: F401  registers mappers

    Base.metadata.create_all(bind=bind or engine)
