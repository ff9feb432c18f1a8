"""
Main entry point for the Lux scheduling service.
Wires the scheduling core to Supabase, rebuilds availability from stored
appointments and runs the background jobs until stopped.
"""

import asyncio
import sys
from datetime import timedelta
from typing import Optional

from config import Settings, settings
from db import SupabaseClient
from scheduler import setup_scheduler, shutdown_scheduler
from scheduling import AvailabilityIndex, SchedulingEngine, SlotCalendar, SystemClock
from utils.logging_config import configure_package_loggers, setup_logging

logger = setup_logging(name=__name__, log_file="service.log")


def build_engine(
    config: Settings, db: Optional[SupabaseClient] = None
) -> SchedulingEngine:
    """
    Construct the engine and its collaborators once, at process start.

    Args:
        config: Application settings
        db: Optional pre-built Supabase client (used as store and directory)

    Returns:
        Wired SchedulingEngine
    """
    clock = SystemClock(default_timezone=config.timezone)
    db = db or SupabaseClient(
        config.supabase_url,
        config.supabase_key,
        poll_interval=config.stream_poll_interval_seconds,
    )

    return SchedulingEngine(
        calendar=SlotCalendar(clock),
        index=AvailabilityIndex(
            clock, reservation_ttl=timedelta(seconds=config.reservation_ttl_seconds)
        ),
        store=db,
        directory=db,
        clock=clock,
        cancellation_lead=timedelta(minutes=config.cancellation_lead_minutes),
        admin_user_ids=config.admin_ids,
    )


async def main() -> None:
    """Start the service and keep it running."""
    configure_package_loggers(log_file="service.log")
    logger.info("Starting Lux scheduling service...")

    engine = build_engine(settings)
    replayed = await engine.rebuild()
    logger.info(f"Availability index rebuilt from {replayed} appointment(s)")

    setup_scheduler(engine)

    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Service cancelled")
    finally:
        logger.info("Shutting down...")
        shutdown_scheduler()
        logger.info("Service shutdown complete")


if __name__ == "__main__":
    try:
        settings.validate_all_required()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
