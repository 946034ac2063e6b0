"""
Yacht charter booking core: booking numbers, schema mapping and iCalendar export.
"""

from .core.booking_numbers import BookingNumberGenerator, BookingNumberFormat
from .core.schema_mapping import to_storage_schema, from_storage_schema, validate_storage_schema
from .exceptions import BookingNumberError, BookingNumberConfigError, GenerationExhausted

__version__ = "1.0.0"

__all__ = [
    "BookingNumberGenerator",
    "BookingNumberFormat",
    "to_storage_schema",
    "from_storage_schema",
    "validate_storage_schema",
    "BookingNumberError",
    "BookingNumberConfigError",
    "GenerationExhausted",
]
