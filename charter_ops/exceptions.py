"""
Charter core exceptions

Only the booking number generator and the persistence services raise.
Schema mapping and calendar utilities report problems in their result objects.
"""

from typing import Any, Dict, Optional


class BookingNumberError(Exception):
    """Base exception for booking number generation errors"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class BookingNumberConfigError(BookingNumberError):
    """Raised when the generator is used with an incomplete or invalid configuration"""
    pass


class GenerationExhausted(BookingNumberError):
    """Raised when no unique booking number was found within the retry budget"""

    def __init__(self, attempts: int, last_candidate: Optional[str] = None):
        super().__init__(
            f"Unable to generate unique booking number after {attempts} attempts",
            {"attempts": attempts, "last_candidate": last_candidate},
        )
        self.attempts = attempts
        self.last_candidate = last_candidate


class BookingServiceError(Exception):
    """Raised when the persistence collaborator cannot be set up"""
    pass
