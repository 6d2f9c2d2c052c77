"""
Module: revrec_kernel.db.engine
Responsibility: SQLAlchemy engine and session factory construction, and
    schema creation.  Holds no process-wide state: the composition root
    (``revrec_batch.runtime``) owns the engine it builds and disposes it.
Architecture position: Kernel > DB.  May import from db/base.py; imports the
    models package only inside create_tables().

Invariants enforced:
    - PostgreSQL sessions run at READ COMMITTED; reconciliation reads are
      periodic snapshots and do not need stronger isolation.
    - Connection pooling via QueuePool with pre-ping for server backends;
      SQLite (tests, local tooling) uses a single shared StaticPool
      connection so in-memory databases survive across sessions.
    - Sessions never expire loaded rows on commit.
"""

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from revrec_kernel.logging_config import get_logger

logger = get_logger("db.engine")


def create_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 5,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Build an engine for ``database_url``.

    The reconciliation job processes tenants sequentially, so a small pool
    is enough; the defaults reflect that.  No connection is opened here.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    logger.info(
        "engine_created",
        extra={
            "dialect": engine.dialect.name,
            "pool_size": pool_size,
            "echo": echo,
        },
    )
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


def check_connection(engine: Engine) -> None:
    """Open one connection and run a trivial query; SQLAlchemy errors propagate."""
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def create_tables(engine: Engine) -> None:
    """Create every revenue engine table on ``engine``."""
    from revrec_kernel.db.base import Base
    import revrec_kernel.models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(engine)
    logger.info("tables_created", extra={"tables": sorted(Base.metadata.tables)})
