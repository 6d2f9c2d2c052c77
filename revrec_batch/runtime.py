"""
Process wiring for the revenue engine.

``build_engine(settings)`` is the single place where a process turns an
``EngineSettings`` into running components: it opens the database (or
falls back to a ``DegradedStore``), builds every service against that
store, and returns a ``RevenueEngine`` that owns them.  ``close()``
releases what was acquired, in reverse order.

Degraded mode:
    A missing ``database_url`` or a failed connection check yields a
    ``DegradedStore``.  Captures then report ``connection-unavailable``
    and reconciliation runs report ``skipped``; nothing raises.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from revrec_batch.job import ReconciliationJob
from revrec_batch.scheduler import ReconciliationScheduler
from revrec_config.settings import EngineSettings
from revrec_kernel.db.engine import (
    check_connection,
    create_engine_from_url,
    create_session_factory,
    create_tables,
)
from revrec_kernel.domain.clock import Clock, SystemClock
from revrec_kernel.logging_config import get_logger
from revrec_kernel.store import DegradedStore, SqlStore, Store
from revrec_modules.revenue import (
    CatalogResolver,
    RefundAllocator,
    RevenueQueries,
    ScheduleLifecycleManager,
    UsageRecorder,
)
from revrec_services.channels import NotificationChannel, build_channels
from revrec_services.notifier import AlertNotifier
from revrec_services.reconciliation_service import ReconciliationService

logger = get_logger("batch.runtime")


@dataclass
class RevenueEngine:
    """Every wired component of one process, plus the resources behind them."""

    settings: EngineSettings
    store: Store
    catalog: CatalogResolver
    lifecycle: ScheduleLifecycleManager
    refunds: RefundAllocator
    usage: UsageRecorder
    queries: RevenueQueries
    reconciliation: ReconciliationService
    notifier: AlertNotifier
    job: ReconciliationJob
    scheduler: ReconciliationScheduler
    channels: list[NotificationChannel] = field(default_factory=list)
    db_engine: Engine | None = None
    closed: bool = False

    def close(self) -> None:
        """Stop the scheduler, close channels that hold connections, dispose the engine."""
        if self.closed:
            return
        self.scheduler.stop()
        for channel in self.channels:
            close = getattr(channel, "close", None)
            if callable(close):
                close()
        if self.db_engine is not None:
            self.db_engine.dispose()
        self.closed = True
        logger.info("engine_closed")

    def __enter__(self) -> RevenueEngine:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def open_store(database_url: str | None, create_schema: bool = False) -> tuple[Store, Engine | None]:
    """
    Connect to ``database_url`` and return the store to use.

    Returns ``(DegradedStore, None)`` when the URL is missing or the
    connection check fails; the half-built engine is disposed first.
    """
    if not database_url:
        return DegradedStore("database_url not configured"), None

    engine = create_engine_from_url(database_url)
    try:
        check_connection(engine)
        if create_schema:
            create_tables(engine)
    except SQLAlchemyError as exc:
        engine.dispose()
        logger.warning(
            "database_unreachable",
            extra={"dialect": engine.dialect.name, "error": str(exc).splitlines()[0]},
        )
        return DegradedStore(f"connection failed: {type(exc).__name__}"), None

    return SqlStore(create_session_factory(engine)), engine


def build_engine(
    settings: EngineSettings,
    clock: Clock | None = None,
    channels: Sequence[NotificationChannel] | None = None,
    create_schema: bool = False,
) -> RevenueEngine:
    """
    Wire a ``RevenueEngine`` from ``settings``.

    ``channels`` replaces the channels implied by the notification
    settings (tests pass fakes).  ``create_schema`` creates missing
    tables once the connection check succeeds.
    """
    clock = clock or SystemClock()
    store, db_engine = open_store(settings.database_url, create_schema)
    recognition = settings.recognition

    catalog = CatalogResolver(store, recognition)
    lifecycle = ScheduleLifecycleManager(store, catalog, clock, recognition)
    refunds = RefundAllocator(store, clock, recognition)
    usage = UsageRecorder(store, clock, recognition)
    queries = RevenueQueries(store, clock, recognition)
    reconciliation = ReconciliationService(store, settings.thresholds, clock, recognition)

    delivery = list(channels) if channels is not None else build_channels(settings.notifications)
    notifier = AlertNotifier(settings.notifications, delivery, reconciliation, clock, recognition)
    job = ReconciliationJob(settings.job, lifecycle, reconciliation, notifier, queries, clock)
    scheduler = ReconciliationScheduler(job, settings.job, clock)

    logger.info(
        "engine_built",
        extra={
            "store_available": store.available,
            "channels": [channel.name for channel in delivery],
            "job_enabled": settings.job.enabled,
        },
    )
    return RevenueEngine(
        settings=settings,
        store=store,
        catalog=catalog,
        lifecycle=lifecycle,
        refunds=refunds,
        usage=usage,
        queries=queries,
        reconciliation=reconciliation,
        notifier=notifier,
        job=job,
        scheduler=scheduler,
        channels=delivery,
        db_engine=db_engine,
    )
