"""
Background jobs for the availability index using APScheduler.

- Sweep: releases speculative reservations whose caller never committed.
- Reconciliation: diffs in-memory occupancy against the appointment store
  to repair drift, e.g. a cancellation whose status write failed after the
  slot was released.

Jobs run on the in-memory job store: they call into a live engine instance,
which cannot be serialized into a shared backend.
"""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from scheduling.engine import SchedulingEngine
from utils.exceptions import DatabaseError, SchedulingError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="scheduler.log")

scheduler = AsyncIOScheduler()

# Engine instance - injected via setup_scheduler
_engine: Optional[SchedulingEngine] = None


def set_engine(engine: SchedulingEngine) -> None:
    """Set the engine the jobs operate on.

    Args:
        engine: Fully wired SchedulingEngine
    """
    global _engine
    _engine = engine
    logger.info("Engine instance set for scheduler")


async def sweep_expired_reservations() -> int:
    """
    Release expired speculative reservations.

    Returns:
        Number of reservations released
    """
    if not _engine:
        logger.error("Engine instance not available - cannot sweep reservations")
        return 0

    try:
        released = _engine.sweep_expired()
        if released:
            logger.info(f"Sweep released {released} expired reservation(s)")
        return released
    except Exception as e:
        logger.error(f"Unexpected error sweeping reservations: {e}", exc_info=True)
        return 0


async def reconcile_availability() -> int:
    """
    Reconcile every known resource against the store.

    A failure on one resource is logged and does not stop the others.

    Returns:
        Number of slot counts corrected
    """
    if not _engine:
        logger.error("Engine instance not available - cannot reconcile")
        return 0

    corrected = 0
    failed = 0

    for resource_id in sorted(_engine.index.known_resources()):
        try:
            corrected += len(await _engine.reconcile(resource_id))
        except (DatabaseError, SchedulingError) as e:
            failed += 1
            logger.error(f"Reconciliation failed for {resource_id}: {e}", exc_info=True)
        except Exception as e:
            failed += 1
            logger.error(
                f"Unexpected error reconciling {resource_id}: {e}", exc_info=True
            )

    logger.info(
        f"Reconciliation complete: {corrected} slot(s) corrected, {failed} resource(s) failed"
    )
    return corrected


def setup_scheduler(engine: Optional[SchedulingEngine] = None) -> None:
    """Register the jobs and start the scheduler.

    Args:
        engine: Optional engine to inject. If None, must be set later via set_engine()
    """
    if engine:
        set_engine(engine)

    scheduler.add_job(
        sweep_expired_reservations,
        trigger=IntervalTrigger(seconds=settings.sweep_interval_seconds),
        id="sweep_reservations",
        name="Release expired reservations",
        replace_existing=True,
    )

    scheduler.add_job(
        reconcile_availability,
        trigger=IntervalTrigger(minutes=settings.reconciliation_interval_minutes),
        id="reconcile_availability",
        name="Reconcile availability with the appointment store",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Scheduler started")


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    if scheduler.running:
        scheduler.shutdown()
    logger.info("Scheduler stopped")
