"""
Module: revrec_kernel.store
Responsibility: The ledger store seam.  Every component that reads or
    writes revenue tables receives a ``Store`` at construction and opens
    sessions through it.
Architecture position: Kernel.  May import from db/ and exceptions.

Two implementations, chosen once when the process wires its components:

    SqlStore       -- transactional; ``transaction()`` commits on success
                      and rolls back on any exception.
    DegradedStore  -- the relational store is unreachable or unconfigured.
                      ``available`` is False and ``transaction()`` raises
                      StoreUnavailableError.  Callers check ``available``
                      up front and return a fallback object or an explicit
                      ``skipped`` / ``connection-unavailable`` status.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session, sessionmaker

from revrec_kernel.exceptions import StoreUnavailableError
from revrec_kernel.logging_config import get_logger

logger = get_logger("store")


class Store(ABC):
    """Abstract access to the ledger tables."""

    @property
    @abstractmethod
    def available(self) -> bool:
        """True when sessions can be opened."""

    @abstractmethod
    def transaction(self, operation: str = "write") -> Iterator[Session]:
        """Context manager yielding a session inside one transaction."""

    @abstractmethod
    def reader(self, operation: str = "read") -> Iterator[Session]:
        """Context manager yielding a session for read-only snapshot queries."""


class SqlStore(Store):
    """
    Store backed by a SQLAlchemy session factory.

    Sessions never expire loaded rows on commit: rows returned to callers
    stay readable after their session closes.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @property
    def available(self) -> bool:
        return True

    @contextmanager
    def transaction(self, operation: str = "write") -> Iterator[Session]:
        session = self._session_factory(expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            logger.warning(
                "store_transaction_rolled_back",
                extra={"operation": operation},
                exc_info=True,
            )
            raise
        finally:
            session.close()

    @contextmanager
    def reader(self, operation: str = "read") -> Iterator[Session]:
        session = self._session_factory(expire_on_commit=False)
        try:
            yield session
        finally:
            session.close()


class DegradedStore(Store):
    """Store used when no database connection is available."""

    def __init__(self, reason: str = "database not configured"):
        self.reason = reason
        logger.warning("store_degraded", extra={"reason": reason})

    @property
    def available(self) -> bool:
        return False

    @contextmanager
    def transaction(self, operation: str = "write") -> Iterator[Session]:
        raise StoreUnavailableError(operation)
        yield  # pragma: no cover

    @contextmanager
    def reader(self, operation: str = "read") -> Iterator[Session]:
        raise StoreUnavailableError(operation)
        yield  # pragma: no cover
