import re
import pytest
from datetime import date, datetime, timezone
from charter_ops.adapters.ics_calendar import (
    CRLF,
    MAX_LINE_LENGTH,
    booking_to_vevent,
    booking_to_vevent_with_alarm,
    escape_text,
    event_to_booking,
    fold_line,
    format_ics_date,
    generate_calendar,
    generate_ics_file,
    generate_uid,
    generate_valarm,
    parse_calendar,
    parse_calendar_with_diagnostics,
    parse_ics_date,
    unescape_text,
    unfold_lines,
    validate_ics,
)

NOW = datetime(2024, 6, 24, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def booking():
    """Booking in the calendar shape"""
    return {
        "ical_uid": "booking-1@test",
        "start_datetime": "2024-07-15T10:00:00Z",
        "end_datetime": "2024-07-22T10:00:00Z",
        "customer_name": "John Smith",
        "description": "Week charter; skipper, provisioning\nand fuel",
        "location": "Portsmouth, UK",
        "status": "confirmed",
        "created_at": "2024-06-01T08:00:00Z",
        "modified_at": "2024-06-02T08:00:00Z",
        "yacht_id": "spectre",
        "booking_no": "BK2407001",
        "customer_email": "john@example.com",
        "total_value": 4500.5,
    }


@pytest.fixture
def stored_booking():
    """Booking in the bookings table shape"""
    return {
        "start_date": "2024-07-15",
        "end_date": "2024-07-22",
        "booking_number": "BK2407009",
        "booking_status": "confirmed",
        "customer_first_name": "Jane",
        "customer_surname": "Doe",
        "port_of_departure": "Southampton",
        "total_amount": 3000,
        "yacht_id": "arriva",
    }


class TestTextEncoding:
    """Escaping and line folding"""

    def test_escape_text(self):
        assert escape_text("a\\b;c,d\ne\r") == "a\\\\b\\;c\\,d\\ne"

    def test_escape_none_and_numbers(self):
        assert escape_text(None) == ""
        assert escape_text(42) == "42"

    @pytest.mark.parametrize("text", [
        "plain",
        "semi;colon, comma",
        "back\\slash",
        "literal \\n is not a newline",
        "multi\nline\ntext",
        "ends with backslash \\",
    ])
    def test_unescape_inverts_escape(self, text):
        assert unescape_text(escape_text(text)) == text

    def test_unescape_uppercase_newline(self):
        assert unescape_text("one\\Ntwo") == "one\ntwo"

    def test_unescape_empty(self):
        assert unescape_text("") == ""
        assert unescape_text(None) == ""

    def test_short_lines_are_not_folded(self):
        assert fold_line("SUMMARY:short") == "SUMMARY:short"
        assert fold_line("x" * MAX_LINE_LENGTH) == "x" * MAX_LINE_LENGTH
        assert fold_line("") == ""

    def test_fold_just_over_limit(self):
        assert fold_line("x" * 76) == "x" * 75 + CRLF + " x"

    @pytest.mark.parametrize("length", [76, 149, 150, 300, 1000])
    def test_fold_and_unfold_restore_line(self, length):
        line = "".join(chr(ord("a") + i % 26) for i in range(length))

        physical = fold_line(line).split(CRLF)

        assert len(physical[0]) == MAX_LINE_LENGTH
        assert all(len(part) <= MAX_LINE_LENGTH for part in physical)
        assert all(part.startswith(" ") for part in physical[1:])
        assert unfold_lines(fold_line(line)) == [line]

    def test_unfold_accepts_tabs_and_lf(self):
        assert unfold_lines("A:1\n\tB\r\nC:2") == ["A:1B", "C:2"]


class TestDates:

    def test_format_utc_datetime(self):
        assert format_ics_date(datetime(2024, 7, 15, 10, 0, tzinfo=timezone.utc)) == "20240715T100000Z"
        assert format_ics_date("2024-07-15T10:00:00Z") == "20240715T100000Z"

    def test_format_converts_offsets_to_utc(self):
        assert format_ics_date("2024-07-15T12:00:00+02:00") == "20240715T100000Z"

    def test_format_all_day(self):
        assert format_ics_date(date(2024, 7, 15), is_all_day=True) == "20240715"
        assert format_ics_date("2024-07-15", is_all_day=True) == "20240715"

    @pytest.mark.parametrize("value", [None, "", "garbage"])
    def test_format_invalid(self, value):
        assert format_ics_date(value) == ""

    def test_parse_utc(self):
        assert parse_ics_date("20240715T100000Z") == datetime(2024, 7, 15, 10, 0, tzinfo=timezone.utc)

    def test_parse_floating_time_is_naive(self):
        parsed = parse_ics_date("20240715T100000")

        assert parsed == datetime(2024, 7, 15, 10, 0)
        assert parsed.tzinfo is None

    def test_parse_date_value(self):
        assert parse_ics_date("20240715") == date(2024, 7, 15)

    @pytest.mark.parametrize("value", [None, "", 123, "2024-07-15", "20241315", "20240715T250000Z"])
    def test_parse_malformed(self, value):
        assert parse_ics_date(value) is None

    def test_generate_uid(self):
        uid = generate_uid()

        assert re.match(r"^booking-\d{13}-[0-9a-z]{6}@seascape-yachts\.com$", uid)
        assert generate_uid("charter", "example.com").startswith("charter-")
        assert generate_uid("charter", "example.com").endswith("@example.com")


class TestBookingToVevent:
    """Rendering single events"""

    def test_event_lines(self, booking):
        lines = booking_to_vevent(booking, now=NOW).split(CRLF)

        assert lines[0] == "BEGIN:VEVENT"
        assert lines[-1] == "END:VEVENT"
        for expected in (
            "UID:booking-1@test",
            "DTSTAMP:20240624T120000Z",
            "DTSTART:20240715T100000Z",
            "DTEND:20240722T100000Z",
            "SUMMARY:Charter - John Smith",
            "DESCRIPTION:Week charter\\; skipper\\, provisioning\\nand fuel",
            "LOCATION:Portsmouth\\, UK",
            "STATUS:CONFIRMED",
            "CLASS:PRIVATE",
            "CREATED:20240601T080000Z",
            "LAST-MODIFIED:20240602T080000Z",
            "CATEGORIES:Yacht Charter,Booking",
            "PRIORITY:5",
            "X-YACHT-ID:spectre",
            "X-BOOKING-NO:BK2407001",
            "X-CUSTOMER-EMAIL:john@example.com",
            "X-TOTAL-VALUE:4500.5",
        ):
            assert expected in lines

    def test_long_values_are_folded(self, booking):
        booking["description"] = "x" * 200

        physical = booking_to_vevent(booking, now=NOW).split(CRLF)

        assert all(len(line) <= MAX_LINE_LENGTH for line in physical)
        assert any(line.startswith(" ") for line in physical)

    def test_missing_dates_are_omitted(self, booking):
        del booking["start_datetime"], booking["end_datetime"]

        vevent = booking_to_vevent(booking, now=NOW)

        assert "DTSTART" not in vevent
        assert "DTEND" not in vevent

    def test_uid_generated_when_missing(self, booking):
        del booking["ical_uid"]

        lines = booking_to_vevent(booking, now=NOW, uid_domain="example.com").split(CRLF)

        uid_line = next(line for line in lines if line.startswith("UID:"))
        assert uid_line.startswith("UID:booking-")
        assert uid_line.endswith("@example.com")

    @pytest.mark.parametrize("status, ics_status, priority", [
        ("confirmed", "CONFIRMED", 5),
        ("cancelled", "CANCELLED", 9),
        ("pending", "TENTATIVE", 7),
        ("tentative", "TENTATIVE", 7),
        ("no_show", "TENTATIVE", 8),
        ("something-else", "TENTATIVE", 5),
    ])
    def test_status_and_priority(self, booking, status, ics_status, priority):
        booking["status"] = status

        lines = booking_to_vevent(booking, now=NOW).split(CRLF)

        assert f"STATUS:{ics_status}" in lines
        assert f"PRIORITY:{priority}" in lines

    def test_stored_booking_shape(self, stored_booking):
        lines = booking_to_vevent(stored_booking, now=NOW).split(CRLF)

        assert "DTSTART;VALUE=DATE:20240715" in lines
        assert "DTEND;VALUE=DATE:20240722" in lines
        assert "SUMMARY:Charter - Jane Doe" in lines
        assert "LOCATION:Southampton" in lines
        assert "STATUS:CONFIRMED" in lines
        assert "X-BOOKING-NO:BK2407009" in lines
        assert "X-TOTAL-VALUE:3000" in lines

    def test_optional_sections(self, booking):
        lines = booking_to_vevent(
            booking,
            now=NOW,
            include_description=False,
            include_location=False,
            classification="PUBLIC",
            organizer={"name": "Seascape Office", "email": "office@example.com"},
            attendees=[{"name": "John Smith", "email": "john@example.com"}],
        ).split(CRLF)

        assert not any(line.startswith("DESCRIPTION") for line in lines)
        assert not any(line.startswith("LOCATION") for line in lines)
        assert "CLASS:PUBLIC" in lines
        assert 'ORGANIZER;CN="Seascape Office":mailto:office@example.com' in lines
        assert 'ATTENDEE;CN="John Smith";RSVP=TRUE:mailto:john@example.com' in lines

    def test_alarm_sits_inside_event(self, booking):
        lines = booking_to_vevent_with_alarm(booking, now=NOW).split(CRLF)

        assert lines[-1] == "END:VEVENT"
        assert lines[-2] == "END:VALARM"
        assert "TRIGGER:-PT24H" in lines
        assert "ACTION:DISPLAY" in lines

    def test_valarm_repeat(self):
        assert "REPEAT" not in generate_valarm()

        lines = generate_valarm(trigger="-PT2H", repeat=2).split(CRLF)

        assert "TRIGGER:-PT2H" in lines
        assert "REPEAT:2" in lines
        assert "DURATION:PT15M" in lines


class TestCalendar:
    """Calendar envelope and download file"""

    def test_envelope(self, booking, stored_booking):
        calendar = generate_calendar([booking, stored_booking], event_options={"now": NOW})

        assert calendar.startswith("BEGIN:VCALENDAR\r\nVERSION:2.0\r\n")
        assert calendar.endswith("END:VCALENDAR\r\n")
        lines = calendar.split(CRLF)
        assert "PRODID:-//Seascape Yachts//Yacht Charter Dashboard//EN" in lines
        assert "CALSCALE:GREGORIAN" in lines
        assert "X-WR-CALNAME:Yacht Charter Bookings" in lines
        assert "X-WR-TIMEZONE:UTC" in lines
        assert lines.count("BEGIN:VEVENT") == 2
        assert "\n" not in calendar.replace(CRLF, "")

    def test_calendar_options(self, booking):
        lines = generate_calendar(
            [booking],
            calendar_name="Spectre, 2024",
            description=None,
            timezone_name=None,
            prod_id="-//Test//EN",
        ).split(CRLF)

        assert "X-WR-CALNAME:Spectre\\, 2024" in lines
        assert "PRODID:-//Test//EN" in lines
        assert not any(line.startswith("X-WR-CALDESC") for line in lines)
        assert not any(line.startswith("X-WR-TIMEZONE") for line in lines)

    def test_empty_calendar_is_valid(self):
        result = validate_ics(generate_calendar([]))

        assert result.is_valid
        assert result.event_count == 0

    def test_ics_file(self, booking):
        ics_file = generate_ics_file([booking], event_options={"now": NOW})

        assert ics_file.filename == "yacht-charter-bookings.ics"
        assert ics_file.mime_type == "text/calendar"
        assert ics_file.encoding == "utf-8"
        assert ics_file.size == len(ics_file.content.encode("utf-8"))
        assert "BEGIN:VALARM" not in ics_file.content

    def test_ics_file_size_counts_bytes(self, booking):
        booking["customer_name"] = "Zoë Brontë"

        ics_file = generate_ics_file([booking])

        assert ics_file.size > len(ics_file.content)

    def test_ics_file_with_alarms(self, booking, stored_booking):
        ics_file = generate_ics_file(
            [booking, stored_booking],
            filename="spectre.ics",
            include_alarms=True,
            alarm_options={"trigger": "-PT48H"},
        )

        assert ics_file.filename == "spectre.ics"
        assert ics_file.content.count("BEGIN:VALARM") == 2
        assert "TRIGGER:-PT48H" in ics_file.content


class TestParseCalendar:
    """Parsing calendar text back into events and bookings"""

    def test_round_trip(self, booking):
        events = parse_calendar(generate_calendar([booking], event_options={"now": NOW}))

        assert len(events) == 1
        result = event_to_booking(events[0])
        assert result["ical_uid"] == "booking-1@test"
        assert result["description"] == booking["description"]
        assert result["location"] == "Portsmouth, UK"
        assert result["start_datetime"] == datetime(2024, 7, 15, 10, 0, tzinfo=timezone.utc)
        assert result["end_datetime"] == datetime(2024, 7, 22, 10, 0, tzinfo=timezone.utc)
        assert result["status"] == "confirmed"
        assert result["yacht_id"] == "spectre"
        assert result["booking_no"] == "BK2407001"
        assert result["customer_email"] == "john@example.com"
        assert result["total_value"] == 4500.5

    def test_long_description_round_trip(self, booking):
        booking["description"] = ", ".join(["Sunset cruise; dinner ashore"] * 12)

        events = parse_calendar(booking_to_vevent(booking, now=NOW))

        assert events[0]["DESCRIPTION"]["value"] == booking["description"]

    def test_text_values_keep_surrounding_spaces(self, booking):
        booking["summary"] = "  Charter "

        events = parse_calendar(booking_to_vevent(booking, now=NOW))

        assert events[0]["SUMMARY"]["value"] == "  Charter "

    def test_all_day_dates_parse_as_dates(self, stored_booking):
        events = parse_calendar(booking_to_vevent(stored_booking, now=NOW))

        assert events[0]["DTSTART"]["parameters"] == {"VALUE": "DATE"}
        assert events[0]["DTSTART"]["date"] == date(2024, 7, 15)

    def test_parameters_and_folded_lines(self):
        content = CRLF.join([
            "BEGIN:VCALENDAR",
            "BEGIN:VEVENT",
            "UID:abc",
            "DTSTART;TZID=Europe/London:20240715T100000",
            "SUMMARY:Long",
            "  summary",
            'ATTENDEE;CN="Smith, John";RSVP=TRUE:mailto:j@example.com',
            "END:VEVENT",
            "END:VCALENDAR",
        ])

        event = parse_calendar(content)[0]

        assert event["SUMMARY"]["value"] == "Long summary"
        assert event["DTSTART"]["parameters"] == {"TZID": "Europe/London"}
        assert event["DTSTART"]["date"] == datetime(2024, 7, 15, 10, 0)
        assert event["ATTENDEE"]["parameters"] == {"CN": "Smith, John", "RSVP": "TRUE"}
        assert event["ATTENDEE"]["value"] == "mailto:j@example.com"

    def test_multiple_events_with_lf_endings(self, booking, stored_booking):
        content = generate_calendar([booking, stored_booking]).replace(CRLF, "\n")

        assert len(parse_calendar(content)) == 2

    def test_alarm_does_not_overwrite_event_properties(self, booking):
        calendar = generate_calendar([booking], include_alarms=True)

        event = parse_calendar(calendar)[0]

        assert event["DESCRIPTION"]["value"] == booking["description"]
        assert event["VALARM"][0]["TRIGGER"]["value"] == "-PT24H"
        assert event["VALARM"][0]["DESCRIPTION"]["value"] == "Yacht Charter Reminder"

    def test_malformed_lines_are_skipped(self):
        content = "BEGIN:VEVENT\nUID:x\ngarbage line\nDTSTART:notadate\nEND:VEVENT\n"

        parsed = parse_calendar_with_diagnostics(content)

        assert len(parsed.events) == 1
        assert parsed.events[0]["UID"]["value"] == "x"
        assert parsed.events[0]["DTSTART"]["date"] is None
        assert any("missing ':'" in warning for warning in parsed.warnings)
        assert any("DTSTART" in warning for warning in parsed.warnings)

    def test_unterminated_event(self):
        parsed = parse_calendar_with_diagnostics("BEGIN:VEVENT\nUID:x\n")

        assert parsed.events == []
        assert any("Unterminated" in warning for warning in parsed.warnings)

    def test_stray_end(self):
        parsed = parse_calendar_with_diagnostics("END:VEVENT\n")

        assert parsed.events == []
        assert parsed.warnings

    @pytest.mark.parametrize("value", [None, "", 42])
    def test_non_string_input(self, value):
        assert parse_calendar(value) == []


class TestEventToBooking:

    @pytest.mark.parametrize("ics_status, status", [
        ("TENTATIVE", "pending"),
        ("CONFIRMED", "confirmed"),
        ("CANCELLED", "cancelled"),
        ("WEIRD", "pending"),
    ])
    def test_status_mapping(self, ics_status, status):
        event = {"STATUS": {"value": ics_status, "parameters": {}}}

        assert event_to_booking(event)["status"] == status

    def test_missing_properties(self):
        result = event_to_booking({})

        assert result["status"] == "pending"
        assert result["ical_uid"] is None
        assert "yacht_id" not in result
        assert "total_value" not in result

    def test_non_numeric_total(self):
        result = event_to_booking({"X-TOTAL-VALUE": {"value": "lots", "parameters": {}}})

        assert result["total_value"] is None

    def test_non_dict_input(self):
        assert event_to_booking(None) == {}
        assert event_to_booking("BEGIN:VEVENT") == {}


class TestValidateIcs:

    def test_generated_calendar_is_valid(self, booking, stored_booking):
        result = validate_ics(generate_calendar([booking, stored_booking]))

        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []
        assert result.event_count == 2

    def test_missing_structure(self):
        result = validate_ics("hello")

        assert not result.is_valid
        for error in ("Missing BEGIN:VCALENDAR", "Missing END:VCALENDAR", "Missing or invalid VERSION", "Missing PRODID"):
            assert error in result.errors

    def test_lf_line_endings_warn(self, booking):
        result = validate_ics(generate_calendar([booking]).replace(CRLF, "\n"))

        assert result.is_valid
        assert any("CRLF" in warning for warning in result.warnings)

    def test_event_checks(self):
        content = CRLF.join([
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            "PRODID:-//Test//EN",
            "BEGIN:VEVENT",
            "LOCATION:Cowes",
            "END:VEVENT",
            "END:VCALENDAR",
            "",
        ])

        result = validate_ics(content)

        assert not result.is_valid
        assert "Event 1: Missing UID" in result.errors
        assert "Event 1: Missing DTSTART" in result.errors
        assert "Event 1: Missing SUMMARY" in result.warnings

    def test_non_string(self):
        result = validate_ics(None)

        assert not result.is_valid
        assert result.errors == ["Invalid iCS content: must be a string"]
