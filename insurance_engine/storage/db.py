"""
Engine and session handling for the contract store.

PostgreSQL when several engine nodes share one store; SQLite for a single
node and for tests. An in-memory SQLite URL keeps one shared connection so
every session sees the same tables.
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError as SqlOperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

Base = declarative_base()

_POSTGRES_POOL = dict(pool_pre_ping=True, pool_size=10, max_overflow=20, pool_recycle=3600, pool_timeout=30)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return options
    if url.startswith("postgresql"):
        return dict(_POSTGRES_POOL)
    raise ValueError(f"Unsupported database URL scheme: {url.split(':', 1)[0]!r} (expected postgresql or sqlite)")


class Database:
    """Owns the SQLAlchemy engine and hands out transactional sessions."""

    def __init__(self, database_url: str | None, echo: bool = False):
        if not database_url:
            raise ValueError("No database configured: set data.database_url or DATABASE_URL")
        self.database_url = database_url
        self.backend = "sqlite" if database_url.startswith("sqlite") else "postgresql"
        self.engine = create_engine(database_url, echo=echo, **_engine_options(database_url))
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def create_all(self) -> None:
        """Create the contract, state-log, pair and lock tables if missing."""
        import insurance_engine.storage.repository  # noqa: F401  (registers the ORM models)

        try:
            Base.metadata.create_all(bind=self.engine)
        except SqlOperationalError as e:
            # Two nodes racing on first start
            if "already exists" not in str(e).lower():
                raise
            logger.debug("DB_TABLES_ALREADY_EXIST", backend=self.backend)
            return
        logger.info("DB_TABLES_READY", backend=self.backend)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        One unit of work: committed when the block exits cleanly, rolled
        back and re-raised otherwise.

            with db.get_session() as session:
                session.add(row)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_db(database_url: str | None, echo: bool = False) -> Database:
    """Connect and make sure the schema exists."""
    db = Database(database_url, echo=echo)
    db.create_all()
    return db
