"""
iCalendar (RFC 5545) export and import for charter bookings

Renders bookings as VEVENT blocks inside a VCALENDAR, optionally with a
VALARM reminder, and parses calendar text back into partial booking records.
Calendar text from third-party exports is often imperfect, so nothing here
raises on bad input: parsing degrades to empty results plus warnings.
"""

import logging
import re
import secrets
import string
import time
from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional, Union

from dateutil import parser as date_parser

from ..models import ICSClassification, ICSFile, ICSStatus, ICSValidationResult, ParsedCalendar

logger = logging.getLogger(__name__)

CRLF = "\r\n"
MAX_LINE_LENGTH = 75

DEFAULT_PRODID = "-//Seascape Yachts//Yacht Charter Dashboard//EN"
DEFAULT_UID_DOMAIN = "seascape-yachts.com"
DEFAULT_CALENDAR_NAME = "Yacht Charter Bookings"
DEFAULT_CALENDAR_DESCRIPTION = "Yacht charter booking calendar"
DEFAULT_FILENAME = "yacht-charter-bookings.ics"
CATEGORIES = "Yacht Charter,Booking"

# 1 is highest, 9 lowest
PRIORITY_BY_STATUS = MappingProxyType({
    "confirmed": 5,
    "completed": 5,
    "pending": 7,
    "tentative": 7,
    "cancelled": 9,
    "deposit_pending": 6,
    "final_payment_pending": 6,
    "no_show": 8,
})
DEFAULT_PRIORITY = 5

ICS_STATUS_BY_BOOKING_STATUS = MappingProxyType({
    "confirmed": ICSStatus.CONFIRMED.value,
    "completed": ICSStatus.CONFIRMED.value,
    "cancelled": ICSStatus.CANCELLED.value,
    "canceled": ICSStatus.CANCELLED.value,
})

BOOKING_STATUS_BY_ICS_STATUS = MappingProxyType({
    ICSStatus.TENTATIVE.value: "pending",
    ICSStatus.CONFIRMED.value: "confirmed",
    ICSStatus.CANCELLED.value: "cancelled",
})

DATE_PROPERTIES = frozenset({"DTSTART", "DTEND", "CREATED", "LAST-MODIFIED", "DTSTAMP"})

_BASE36 = string.digits + string.ascii_lowercase
_UNESCAPE_RE = re.compile(r"\\([\\;,nN])")
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ICS_DATETIME_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})(Z?)$")
_ICS_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_BARE_LF_RE = re.compile(r"(?<!\r)\n")

DateInput = Union[date, datetime, str, None]


# ----------------------------------------------------------------------
# Text encoding primitives
# ----------------------------------------------------------------------

def escape_text(text: Any) -> str:
    """Escape TEXT values: backslash, semicolon, comma and newline; drop CR"""
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r", "")
        .replace("\n", "\\n")
    )


def unescape_text(text: Any) -> str:
    """Exact inverse of escape_text for the escaped sequences"""
    if not text or not isinstance(text, str):
        return ""

    def _replace(match):
        char = match.group(1)
        return "\n" if char in "nN" else char

    return _UNESCAPE_RE.sub(_replace, text)


def fold_line(line: str) -> str:
    """
    Fold a content line: the first chunk holds 75 characters, every
    continuation starts with a single space followed by at most 74.
    """
    if not line or len(line) <= MAX_LINE_LENGTH:
        return line or ""

    chunks = [line[:MAX_LINE_LENGTH]]
    remaining = line[MAX_LINE_LENGTH:]
    step = MAX_LINE_LENGTH - 1
    while remaining:
        chunks.append(" " + remaining[:step])
        remaining = remaining[step:]
    return CRLF.join(chunks)


def unfold_lines(text: str) -> List[str]:
    """Split calendar text into logical lines, joining continuation lines"""
    logical: List[str] = []
    for physical in re.split(r"\r?\n", text):
        if physical[:1] in (" ", "\t") and logical:
            logical[-1] += physical[1:]
        else:
            logical.append(physical)
    return logical


# ----------------------------------------------------------------------
# Dates & identifiers
# ----------------------------------------------------------------------

def _coerce_datetime(value: DateInput) -> Optional[Union[date, datetime]]:
    if value is None or value == "":
        return None
    if isinstance(value, (date, datetime)):
        return value
    try:
        if _DATE_ONLY_RE.match(value.strip()):
            return date.fromisoformat(value.strip())
        return date_parser.isoparse(value.strip())
    except (ValueError, OverflowError, AttributeError):
        logger.warning(f"Could not parse date value {value!r} for calendar export")
        return None


def _is_date_only(value: DateInput) -> bool:
    if isinstance(value, datetime):
        return False
    if isinstance(value, date):
        return True
    return isinstance(value, str) and bool(_DATE_ONLY_RE.match(value.strip()))


def format_ics_date(value: DateInput, is_all_day: bool = False) -> str:
    """
    Render a date for iCalendar: YYYYMMDD for all-day values, otherwise
    YYYYMMDDTHHMMSSZ in UTC. Naive datetimes are read as local time.
    """
    parsed = _coerce_datetime(value)
    if parsed is None:
        return ""

    if is_all_day:
        return parsed.strftime("%Y%m%d")

    if not isinstance(parsed, datetime):
        parsed = datetime(parsed.year, parsed.month, parsed.day)
    return parsed.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def parse_ics_date(value: Any) -> Optional[Union[date, datetime]]:
    """
    Parse an iCalendar DATE or DATE-TIME value.

    UTC values (trailing Z) come back timezone aware, floating times naive,
    DATE values as ``date``. Malformed input gives None.
    """
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    try:
        if "T" in value:
            match = _ICS_DATETIME_RE.match(value)
            if not match:
                return None
            year, month, day, hour, minute, second, zulu = match.groups()
            tzinfo = timezone.utc if zulu else None
            return datetime(int(year), int(month), int(day), int(hour), int(minute), int(second), tzinfo=tzinfo)
        match = _ICS_DATE_RE.match(value)
        if not match:
            return None
        return date(*(int(part) for part in match.groups()))
    except ValueError:
        logger.warning(f"Error parsing iCS date {value!r}")
        return None


def generate_uid(prefix: str = "booking", domain: str = DEFAULT_UID_DOMAIN) -> str:
    """
    Build a UID of the form prefix-<epoch millis>-<6 base36 chars>@domain.

    Uniqueness is probabilistic (clock plus randomness). Good enough for
    calendar clients, not for use as a primary key.
    """
    millis = int(time.time() * 1000)
    random_part = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}-{millis}-{random_part}@{domain}"


# ----------------------------------------------------------------------
# Booking -> VEVENT
# ----------------------------------------------------------------------

def _first(booking: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = booking.get(key)
        if value is not None and value != "":
            return value
    return None


def _customer_name(booking: Dict[str, Any]) -> str:
    name = booking.get("customer_name")
    if name:
        return name
    parts = [booking.get("customer_first_name"), booking.get("customer_surname")]
    return " ".join(part for part in parts if part) or "Unknown customer"


def _booking_status(booking: Dict[str, Any]) -> Optional[str]:
    status = _first(booking, "status", "booking_status")
    return str(status).lower() if status else None


def event_status(booking: Dict[str, Any]) -> str:
    return ICS_STATUS_BY_BOOKING_STATUS.get(_booking_status(booking), ICSStatus.TENTATIVE.value)


def event_priority(booking: Dict[str, Any]) -> int:
    return PRIORITY_BY_STATUS.get(_booking_status(booking), DEFAULT_PRIORITY)


def _date_line(name: str, value: DateInput) -> Optional[str]:
    if _is_date_only(value):
        rendered = format_ics_date(value, is_all_day=True)
        return f"{name};VALUE=DATE:{rendered}" if rendered else None
    rendered = format_ics_date(value)
    return f"{name}:{rendered}" if rendered else None


def _quoted_param(value: Any) -> str:
    return '"' + str(value or "").replace('"', "") + '"'


def booking_to_vevent(
    booking: Dict[str, Any],
    *,
    include_description: bool = True,
    include_location: bool = True,
    classification: Union[ICSClassification, str] = ICSClassification.PRIVATE,
    organizer: Optional[Dict[str, str]] = None,
    attendees: Optional[Iterable[Dict[str, str]]] = None,
    now: Optional[datetime] = None,
    uid_domain: str = DEFAULT_UID_DOMAIN,
) -> str:
    """Render one booking as a VEVENT block (CRLF separated, folded)"""
    lines: List[str] = ["BEGIN:VEVENT"]

    lines.append(f"UID:{booking.get('ical_uid') or generate_uid(domain=uid_domain)}")
    lines.append(f"DTSTAMP:{format_ics_date(now or datetime.now(timezone.utc))}")

    for name, keys in (("DTSTART", ("start_datetime", "start_date")), ("DTEND", ("end_datetime", "end_date"))):
        value = _first(booking, *keys)
        line = _date_line(name, value) if value is not None else None
        if line:
            lines.append(line)

    summary = booking.get("summary") or f"Charter - {_customer_name(booking)}"
    lines.append(f"SUMMARY:{escape_text(summary)}")

    description = booking.get("description")
    if include_description and description:
        lines.append(f"DESCRIPTION:{escape_text(description)}")

    location = _first(booking, "location", "port_of_departure")
    if include_location and location:
        lines.append(f"LOCATION:{escape_text(location)}")

    lines.append(f"STATUS:{event_status(booking)}")
    lines.append(f"CLASS:{ICSClassification(classification).value}")

    created = booking.get("created_at")
    if created:
        rendered = format_ics_date(created)
        if rendered:
            lines.append(f"CREATED:{rendered}")

    modified = _first(booking, "modified_at", "updated_at")
    if modified:
        rendered = format_ics_date(modified)
        if rendered:
            lines.append(f"LAST-MODIFIED:{rendered}")

    if organizer:
        lines.append(f"ORGANIZER;CN={_quoted_param(organizer.get('name'))}:mailto:{organizer.get('email', '')}")

    for attendee in attendees or ():
        lines.append(
            f"ATTENDEE;CN={_quoted_param(attendee.get('name'))};RSVP=TRUE:mailto:{attendee.get('email', '')}"
        )

    lines.append(f"CATEGORIES:{CATEGORIES}")
    lines.append(f"PRIORITY:{event_priority(booking)}")

    # Yacht charter extension properties
    lines.append(f"X-YACHT-ID:{escape_text(booking.get('yacht_id'))}")
    lines.append(f"X-BOOKING-NO:{escape_text(_first(booking, 'booking_no', 'booking_number'))}")
    lines.append(f"X-CUSTOMER-EMAIL:{escape_text(booking.get('customer_email'))}")

    total_value = _first(booking, "total_value", "total_amount")
    if total_value is not None:
        lines.append(f"X-TOTAL-VALUE:{total_value}")

    lines.append("END:VEVENT")
    return CRLF.join(fold_line(line) for line in lines)


def generate_valarm(
    trigger: str = "-PT24H",
    action: str = "DISPLAY",
    description: str = "Yacht Charter Reminder",
    repeat: int = 1,
    duration: str = "PT15M",
) -> str:
    """Render a VALARM reminder; REPEAT/DURATION only appear when repeat > 1"""
    lines = [
        "BEGIN:VALARM",
        f"ACTION:{action}",
        f"TRIGGER:{trigger}",
        f"DESCRIPTION:{escape_text(description)}",
    ]
    if repeat > 1:
        lines.append(f"REPEAT:{repeat}")
        lines.append(f"DURATION:{duration}")
    lines.append("END:VALARM")
    return CRLF.join(fold_line(line) for line in lines)


def booking_to_vevent_with_alarm(
    booking: Dict[str, Any],
    alarm_options: Optional[Dict[str, Any]] = None,
    **event_options,
) -> str:
    """VEVENT with a VALARM inserted just before END:VEVENT"""
    event_lines = booking_to_vevent(booking, **event_options).split(CRLF)
    alarm = generate_valarm(**(alarm_options or {}))
    # END:VEVENT is always the last line
    event_lines.insert(len(event_lines) - 1, alarm)
    return CRLF.join(event_lines)


def generate_calendar(
    bookings: Iterable[Dict[str, Any]],
    *,
    calendar_name: Optional[str] = DEFAULT_CALENDAR_NAME,
    description: Optional[str] = DEFAULT_CALENDAR_DESCRIPTION,
    timezone_name: Optional[str] = "UTC",
    prod_id: str = DEFAULT_PRODID,
    include_alarms: bool = False,
    alarm_options: Optional[Dict[str, Any]] = None,
    event_options: Optional[Dict[str, Any]] = None,
) -> str:
    """Wrap one VEVENT per booking in a VCALENDAR envelope"""
    event_options = event_options or {}
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        fold_line(f"PRODID:{prod_id}"),
        "CALSCALE:GREGORIAN",
    ]
    if calendar_name:
        lines.append(fold_line(f"X-WR-CALNAME:{escape_text(calendar_name)}"))
    if description:
        lines.append(fold_line(f"X-WR-CALDESC:{escape_text(description)}"))
    if timezone_name:
        lines.append(fold_line(f"X-WR-TIMEZONE:{timezone_name}"))

    count = 0
    for booking in bookings:
        if include_alarms:
            lines.append(booking_to_vevent_with_alarm(booking, alarm_options, **event_options))
        else:
            lines.append(booking_to_vevent(booking, **event_options))
        count += 1

    lines.append("END:VCALENDAR")
    logger.debug(f"Generated calendar with {count} events")
    return CRLF.join(lines) + CRLF


def generate_ics_file(
    bookings: Iterable[Dict[str, Any]],
    *,
    filename: str = DEFAULT_FILENAME,
    calendar_name: str = DEFAULT_CALENDAR_NAME,
    include_alarms: bool = False,
    alarm_options: Optional[Dict[str, Any]] = None,
    **calendar_info,
) -> ICSFile:
    """Download-ready calendar; size is the UTF-8 byte length"""
    content = generate_calendar(
        bookings,
        calendar_name=calendar_name,
        include_alarms=include_alarms,
        alarm_options=alarm_options,
        **calendar_info,
    )
    return ICSFile(
        content=content,
        filename=filename,
        mime_type="text/calendar",
        size=len(content.encode("utf-8")),
        encoding="utf-8",
    )


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def _parse_parameters(parts: List[str]) -> Dict[str, str]:
    parameters = {}
    for part in parts:
        key, sep, value = part.partition("=")
        if not key or not sep:
            continue
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        parameters[key] = value
    return parameters


def parse_calendar_with_diagnostics(ics_content: Any) -> ParsedCalendar:
    """
    Parse VEVENTs out of calendar text.

    Each event maps property name to ``{"value", "parameters"}`` plus a
    parsed ``"date"`` for date properties. Alarms nested in an event are
    collected as a list under ``"VALARM"``. Lines without a colon and
    unterminated events are skipped and reported as warnings.
    """
    if not ics_content or not isinstance(ics_content, str):
        return ParsedCalendar(warnings=["Calendar content must be a non-empty string"])

    events: List[Dict[str, Any]] = []
    warnings: List[str] = []
    current: Optional[Dict[str, Any]] = None
    nested: List[List[Any]] = []

    for number, line in enumerate(unfold_lines(ics_content), 1):
        if not line.strip():
            continue

        colon = line.find(":")
        if colon == -1:
            warnings.append(f"Line {number}: missing ':' separator, skipped")
            continue

        name_part = line[:colon].strip()
        # TEXT values keep their surrounding spaces
        value = line[colon + 1:].rstrip("\r")
        name, *param_parts = name_part.split(";")
        name = name.upper()

        if name == "BEGIN":
            component = value.strip().upper()
            if component == "VEVENT":
                if current is not None:
                    warnings.append(f"Line {number}: BEGIN:VEVENT inside an open event, previous event discarded")
                current, nested = {}, []
            elif current is not None:
                nested.append([component, {}])
            continue

        if name == "END":
            component = value.strip().upper()
            if component == "VEVENT":
                if current is None:
                    warnings.append(f"Line {number}: END:VEVENT without BEGIN:VEVENT")
                else:
                    events.append(current)
                current, nested = None, []
            elif current is not None and nested and nested[-1][0] == component:
                component_name, properties = nested.pop()
                if not nested:
                    current.setdefault(component_name, []).append(properties)
            continue

        if current is None:
            continue

        prop: Dict[str, Any] = {
            "value": unescape_text(value),
            "parameters": _parse_parameters(param_parts),
        }
        if name in DATE_PROPERTIES:
            prop["date"] = parse_ics_date(value)
            if prop["date"] is None:
                warnings.append(f"Line {number}: could not parse {name} value '{value}'")

        target = nested[-1][1] if nested else current
        target[name] = prop

    if current is not None:
        warnings.append("Unterminated VEVENT at end of input, discarded")

    if warnings:
        logger.warning(f"Calendar parsed with {len(warnings)} warnings")
    return ParsedCalendar(events=events, warnings=warnings)


def parse_calendar(ics_content: Any) -> List[Dict[str, Any]]:
    return parse_calendar_with_diagnostics(ics_content).events


def _prop_value(event: Dict[str, Any], name: str) -> Optional[str]:
    prop = event.get(name)
    return prop.get("value") if isinstance(prop, dict) else None


def _prop_date(event: Dict[str, Any], name: str) -> Any:
    prop = event.get(name)
    return prop.get("date") if isinstance(prop, dict) else None


def event_to_booking(ics_event: Any) -> Dict[str, Any]:
    """Map a parsed event back to a partial booking record"""
    if not isinstance(ics_event, dict):
        return {}

    booking: Dict[str, Any] = {
        "ical_uid": _prop_value(ics_event, "UID"),
        "summary": _prop_value(ics_event, "SUMMARY"),
        "description": _prop_value(ics_event, "DESCRIPTION"),
        "location": _prop_value(ics_event, "LOCATION"),
        "start_datetime": _prop_date(ics_event, "DTSTART"),
        "end_datetime": _prop_date(ics_event, "DTEND"),
        "created_at": _prop_date(ics_event, "CREATED"),
        "modified_at": _prop_date(ics_event, "LAST-MODIFIED"),
        "status": BOOKING_STATUS_BY_ICS_STATUS.get((_prop_value(ics_event, "STATUS") or "").upper(), "pending"),
    }

    if "X-YACHT-ID" in ics_event:
        booking["yacht_id"] = _prop_value(ics_event, "X-YACHT-ID")
    if "X-BOOKING-NO" in ics_event:
        booking["booking_no"] = _prop_value(ics_event, "X-BOOKING-NO")
    if "X-CUSTOMER-EMAIL" in ics_event:
        booking["customer_email"] = _prop_value(ics_event, "X-CUSTOMER-EMAIL")
    if "X-TOTAL-VALUE" in ics_event:
        raw_total = _prop_value(ics_event, "X-TOTAL-VALUE")
        try:
            booking["total_value"] = float(raw_total)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric X-TOTAL-VALUE {raw_total!r}")
            booking["total_value"] = None

    return booking


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def validate_ics(ics_content: Any) -> ICSValidationResult:
    """Structural checks on a calendar plus per-event UID/DTSTART/SUMMARY checks"""
    errors: List[str] = []
    warnings: List[str] = []

    if not ics_content or not isinstance(ics_content, str):
        return ICSValidationResult(is_valid=False, errors=["Invalid iCS content: must be a string"])

    lines = [line.strip() for line in unfold_lines(ics_content)]

    if "BEGIN:VCALENDAR" not in lines:
        errors.append("Missing BEGIN:VCALENDAR")
    if "END:VCALENDAR" not in lines:
        errors.append("Missing END:VCALENDAR")
    if "VERSION:2.0" not in lines:
        errors.append("Missing or invalid VERSION")
    if not any(line.startswith("PRODID:") for line in lines):
        errors.append("Missing PRODID")

    if _BARE_LF_RE.search(ics_content):
        warnings.append("Line endings should be CRLF (\\r\\n) for RFC compliance")

    parsed = parse_calendar_with_diagnostics(ics_content)
    warnings.extend(parsed.warnings)

    for index, event in enumerate(parsed.events, 1):
        if "UID" not in event:
            errors.append(f"Event {index}: Missing UID")
        if "DTSTART" not in event:
            errors.append(f"Event {index}: Missing DTSTART")
        if "SUMMARY" not in event:
            warnings.append(f"Event {index}: Missing SUMMARY")

    return ICSValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        event_count=len(parsed.events),
    )
