"""
Schema mapping between the booking form and the bookings table

The form side uses camelCase names, a nested crew experience file object,
an optional nested address and a flat bag of status booleans. The storage
side is the flat snake_case bookings row. Only fields listed in
FIELD_MAPPING survive the trip to storage.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Callable, Dict, Optional

from dateutil import parser as date_parser

from ..models import (
    BookingStatus,
    CharterType,
    FieldError,
    PaymentStatus,
    SchemaValidationResult,
)

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY = "United Kingdom"

FIELD_MAPPING = MappingProxyType({
    # Customer information
    "firstName": "customer_first_name",
    "surname": "customer_surname",
    "email": "customer_email",
    "phone": "customer_phone",
    "street": "customer_street",
    "city": "customer_city",
    "postcode": "customer_postcode",
    "country": "customer_country",

    # Booking details
    "yacht": "yacht_id",
    "tripType": "charter_type",
    "startDate": "start_date",
    "endDate": "end_date",
    "portOfDeparture": "port_of_departure",
    "portOfArrival": "port_of_arrival",

    # Status flags
    "bookingConfirmed": "booking_confirmed",
    "depositPaid": "deposit_paid",
    "contractSent": "contract_sent",
    "contractSigned": "contract_signed",
    "depositInvoiceSent": "deposit_invoice_sent",
    "receiptIssued": "receipt_issued",

    # Additional fields
    "specialRequirements": "special_requirements",
    "notes": "notes",
})

REVERSE_FIELD_MAPPING = MappingProxyType({storage: form for form, storage in FIELD_MAPPING.items()})

FILE_FIELD_MAPPING = MappingProxyType({
    "name": "crew_experience_file_name",
    "url": "crew_experience_file_url",
    "size": "crew_experience_file_size",
})

ADDRESS_FIELD_MAPPING = MappingProxyType({
    "street": "customer_street",
    "city": "customer_city",
    "postcode": "customer_postcode",
    "country": "customer_country",
})

DOCUMENT_TIMESTAMP_MAPPING = MappingProxyType({
    "Contract": MappingProxyType({
        "generated": "contract_generated_at",
        "downloaded": "contract_downloaded_at",
        "updated": "contract_updated_at",
    }),
    "Deposit Invoice": MappingProxyType({
        "generated": "deposit_invoice_generated_at",
        "downloaded": "deposit_invoice_downloaded_at",
        "updated": "deposit_invoice_updated_at",
    }),
    "Deposit Receipt": MappingProxyType({
        "generated": "deposit_receipt_generated_at",
        "downloaded": "deposit_receipt_downloaded_at",
        "updated": "deposit_receipt_updated_at",
    }),
    "Remaining Balance Invoice": MappingProxyType({
        "generated": "balance_invoice_generated_at",
        "downloaded": "balance_invoice_downloaded_at",
        "updated": "balance_invoice_updated_at",
    }),
    "Remaining Balance Receipt": MappingProxyType({
        "generated": "balance_receipt_generated_at",
        "downloaded": "balance_receipt_downloaded_at",
        "updated": "balance_receipt_updated_at",
    }),
    "Hand-over Notes": MappingProxyType({
        "generated": "handover_notes_generated_at",
        "downloaded": "handover_notes_downloaded_at",
        "updated": "handover_notes_updated_at",
    }),
})

DOCUMENT_TYPES = tuple(DOCUMENT_TIMESTAMP_MAPPING)

TIMESTAMP_FIELDS = frozenset(
    column for mapping in DOCUMENT_TIMESTAMP_MAPPING.values() for column in mapping.values()
)

# Form fields starting with these go to statusData on the way back
STATUS_FIELD_PREFIXES = ("booking", "deposit", "contract", "receipt")

# Form keys handled outside the flat dictionary
_NESTED_FORM_KEYS = frozenset({"crewExperienceFile", "address"})

FINANCIAL_FIELDS = ("base_rate", "total_amount", "deposit_amount", "balance_due")

REQUIRED_FIELDS = (
    ("customer_first_name", "First name is required"),
    ("customer_surname", "Surname is required"),
    ("customer_email", "Email is required"),
    ("yacht_id", "Yacht selection is required"),
    ("start_date", "Start date is required"),
    ("end_date", "End date is required"),
)


# ----------------------------------------------------------------------
# Derived statuses
# ----------------------------------------------------------------------

def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    # NaN and infinities never compare cleanly
    return amount if amount.is_finite() else None


def determine_booking_status(data: Dict[str, Any]) -> str:
    if data.get("booking_confirmed"):
        return BookingStatus.CONFIRMED.value
    return BookingStatus.TENTATIVE.value


def determine_payment_status(data: Dict[str, Any]) -> str:
    balance_due = _to_decimal(data.get("balance_due"))
    if balance_due == 0 or (data.get("deposit_paid") and data.get("receipt_issued")):
        return PaymentStatus.FULL_PAYMENT.value
    if data.get("deposit_paid"):
        return PaymentStatus.DEPOSIT_PAID.value
    return PaymentStatus.PENDING.value


# ----------------------------------------------------------------------
# Form -> storage
# ----------------------------------------------------------------------

def to_storage_schema(
    form_data: Optional[Dict[str, Any]],
    status_data: Optional[Dict[str, Any]] = None,
    document_states: Optional[Dict[str, Dict[str, bool]]] = None,
    *,
    existing: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    on_dropped_field: Optional[Callable[[str], None]] = None,
) -> Dict[str, Any]:
    """
    Convert form, status and document state bags into a bookings row.

    ``existing`` is the stored row being edited: its document timestamps are
    kept as they are (a timestamp is written once) and its financial fields
    take part in deriving the payment status.
    """
    form_data = form_data or {}
    status_data = status_data or {}
    document_states = document_states or {}
    existing = existing or {}

    storage: Dict[str, Any] = {}

    for source in (form_data, status_data):
        for key, value in source.items():
            column = FIELD_MAPPING.get(key)
            if column:
                storage[column] = value
            elif key not in _NESTED_FORM_KEYS:
                logger.debug(f"Dropping unmapped booking field '{key}'")
                if on_dropped_field is not None:
                    on_dropped_field(key)

    file_info = form_data.get("crewExperienceFile")
    if isinstance(file_info, dict):
        for attr, column in FILE_FIELD_MAPPING.items():
            if file_info.get(attr) is not None:
                storage[column] = file_info[attr]

    address = form_data.get("address")
    if isinstance(address, dict):
        for attr, column in ADDRESS_FIELD_MAPPING.items():
            storage[column] = address.get(attr) or ""
        if not storage["customer_country"]:
            storage["customer_country"] = DEFAULT_COUNTRY

    for column in TIMESTAMP_FIELDS:
        if existing.get(column):
            storage[column] = existing[column]

    stamp = (now or datetime.now(timezone.utc)).isoformat()
    for doc_type, state in document_states.items():
        mapping = DOCUMENT_TIMESTAMP_MAPPING.get(doc_type)
        if mapping is None or not isinstance(state, dict):
            continue
        for flag, column in mapping.items():
            if state.get(flag) and not storage.get(column):
                storage[column] = stamp

    context = {column: existing[column] for column in FINANCIAL_FIELDS if column in existing}
    context.update(storage)
    storage["booking_status"] = determine_booking_status(context)
    storage["payment_status"] = determine_payment_status(context)

    return storage


# ----------------------------------------------------------------------
# Storage -> form
# ----------------------------------------------------------------------

def _form_date(value: Any) -> Any:
    """Render a stored date as YYYY-MM-DD, leaving unparseable values alone"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return value.isoformat()
    else:
        try:
            parsed = date_parser.isoparse(str(value))
        except (ValueError, OverflowError):
            logger.warning(f"Could not parse stored date value {value!r}")
            return value
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date().isoformat()


def from_storage_schema(storage_data: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Convert a bookings row back into formData, statusData and documentStates"""
    storage_data = storage_data or {}
    form_data: Dict[str, Any] = {}
    status_data: Dict[str, Any] = {}

    for column, value in storage_data.items():
        field = REVERSE_FIELD_MAPPING.get(column)
        if not field:
            continue
        if "Date" in field and value:
            form_data[field] = _form_date(value)
        elif field.startswith(STATUS_FIELD_PREFIXES):
            status_data[field] = value
        else:
            form_data[field] = value

    if storage_data.get("crew_experience_file_name"):
        form_data["crewExperienceFile"] = {
            attr: storage_data[column]
            for attr, column in FILE_FIELD_MAPPING.items()
            if storage_data.get(column) is not None
        }

    if any(storage_data.get(column) for column in ADDRESS_FIELD_MAPPING.values()):
        form_data["address"] = {
            attr: storage_data.get(column) or "" for attr, column in ADDRESS_FIELD_MAPPING.items()
        }
        if not form_data["address"]["country"]:
            form_data["address"]["country"] = DEFAULT_COUNTRY

    document_states = {
        doc_type: {flag: bool(storage_data.get(column)) for flag, column in mapping.items()}
        for doc_type, mapping in DOCUMENT_TIMESTAMP_MAPPING.items()
    }

    return {"formData": form_data, "statusData": status_data, "documentStates": document_states}


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def _parse_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        parsed = date_parser.isoparse(str(value))
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def validate_storage_schema(storage_data: Optional[Dict[str, Any]]) -> SchemaValidationResult:
    """Check required fields, date order, enum membership and deposit against total"""
    storage_data = storage_data or {}
    errors = []

    for column, message in REQUIRED_FIELDS:
        value = storage_data.get(column)
        if value is None or not str(value).strip():
            errors.append(FieldError(field=column, message=message))

    start_raw, end_raw = storage_data.get("start_date"), storage_data.get("end_date")
    if start_raw and end_raw and str(start_raw).strip() and str(end_raw).strip():
        start, end = _parse_date(start_raw), _parse_date(end_raw)
        if start is None:
            errors.append(FieldError(field="start_date", message="Start date is not a valid date"))
        if end is None:
            errors.append(FieldError(field="end_date", message="End date is not a valid date"))
        if start is not None and end is not None and start >= end:
            errors.append(FieldError(field="end_date", message="End date must be after start date"))

    enum_checks = (
        ("charter_type", CharterType, "Invalid charter type"),
        ("booking_status", BookingStatus, "Invalid booking status"),
        ("payment_status", PaymentStatus, "Invalid payment status"),
    )
    for column, enum_cls, message in enum_checks:
        value = storage_data.get(column)
        if value and value not in [member.value for member in enum_cls]:
            errors.append(FieldError(field=column, message=message))

    total_raw, deposit_raw = storage_data.get("total_amount"), storage_data.get("deposit_amount")
    if total_raw is not None and deposit_raw is not None:
        total, deposit = _to_decimal(total_raw), _to_decimal(deposit_raw)
        if total is None or deposit is None:
            errors.append(FieldError(field="deposit_amount", message="Deposit and total must be numeric"))
        elif deposit > total:
            errors.append(FieldError(field="deposit_amount", message="Deposit cannot exceed total amount"))

    if errors:
        logger.debug(f"Booking failed validation: {[error.field for error in errors]}")
    return SchemaValidationResult(is_valid=not errors, errors=errors)
