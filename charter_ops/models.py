"""
Shared enums and result models for the charter booking core
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BookingStatus(str, Enum):
    TENTATIVE = "tentative"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    DEPOSIT_PAID = "deposit_paid"
    FULL_PAYMENT = "full_payment"
    REFUNDED = "refunded"


class CharterType(str, Enum):
    BAREBOAT = "bareboat"
    SKIPPERED = "skippered charter"


class ICSStatus(str, Enum):
    TENTATIVE = "TENTATIVE"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class ICSClassification(str, Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"
    CONFIDENTIAL = "CONFIDENTIAL"


# Schema validation

class FieldError(BaseModel):
    field: str
    message: str


class SchemaValidationResult(BaseModel):
    is_valid: bool
    errors: List[FieldError] = Field(default_factory=list)

    def fields(self) -> List[str]:
        return [error.field for error in self.errors]


# Booking numbers

class BookingNumberValidation(BaseModel):
    is_valid: bool
    error: Optional[str] = None
    format: Optional[str] = None


class ParsedBookingNumber(BaseModel):
    is_valid: bool
    original: Optional[str] = None
    detected_format: Optional[str] = None
    components: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


# Calendar

class ParsedCalendar(BaseModel):
    events: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ICSValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    event_count: int = 0


class ICSFile(BaseModel):
    content: str
    filename: str
    mime_type: str = "text/calendar"
    size: int
    encoding: str = "utf-8"
