"""Background jobs for reservation expiry and reconciliation."""

from .jobs import (
    reconcile_availability,
    set_engine,
    setup_scheduler,
    shutdown_scheduler,
    sweep_expired_reservations,
)

__all__ = [
    "reconcile_availability",
    "set_engine",
    "setup_scheduler",
    "shutdown_scheduler",
    "sweep_expired_reservations",
]
