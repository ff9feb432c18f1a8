"""
Application-wide constants.
Centralizes magic numbers and configuration values.
"""

# Supabase tables
RESOURCES_TABLE = "resources"
SERVICE_TYPES_TABLE = "service_types"
APPOINTMENTS_TABLE = "appointments"
FAVORITES_TABLE = "favorites"

# Slot grid
DEFAULT_SLOT_MINUTES = 15
DEFAULT_CAPACITY = 1

# Reservations
DEFAULT_RESERVATION_TTL_SECONDS = 30
DEFAULT_CANCELLATION_LEAD_MINUTES = 0
STRIPE_LOCK_COUNT = 64
RELEASE_HISTORY_LIMIT = 10000  # Recent releases remembered for reconciliation

# Validation limits
MAX_SERVICE_NAME_LENGTH = 100
MAX_NOTES_LENGTH = 1000

# Display formatting
RESERVATION_ID_DISPLAY_LENGTH = 8
