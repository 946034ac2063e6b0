"""
Booking persistence over the Supabase bookings table

Ties the pieces together for the dashboard: form data is mapped to the
bookings row, validated, given a booking number and stored; stored rows are
mapped back to the form shape or exported as an iCalendar file.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from supabase import Client, create_client

from ..adapters.ics_calendar import generate_ics_file
from ..config.settings import Settings, get_settings, get_supabase_config
from ..core.booking_numbers import BookingNumberGenerator
from ..core.schema_mapping import from_storage_schema, to_storage_schema, validate_storage_schema
from ..exceptions import BookingNumberError
from ..models import ICSFile, SchemaValidationResult
from .supabase_sequence import SupabaseSequenceProvider

logger = logging.getLogger(__name__)


def _errors_payload(validation: SchemaValidationResult) -> Dict[str, Any]:
    return {
        "success": False,
        "errors": [error.model_dump() for error in validation.errors],
    }


class BookingService:
    """Create, update, read and export bookings stored in Supabase"""

    def __init__(
        self,
        client: Client,
        generator: Optional[BookingNumberGenerator] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.supabase = client
        self.table = self.settings.BOOKINGS_TABLE
        self.generator = generator or BookingNumberGenerator.from_settings(
            self.settings, SupabaseSequenceProvider.from_settings(client, self.settings)
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BookingService":
        settings = settings or get_settings()
        config = get_supabase_config(settings)
        client = create_client(config["url"], config["anon_key"])
        logger.info(f"✅ Booking service connected to Supabase: {config['url']}")
        return cls(client, settings=settings)

    async def load_existing_booking_numbers(self) -> int:
        """Seed the generator's collision set with every stored booking number"""
        result = self.supabase.table(self.table).select("booking_number").execute()
        numbers = [row.get("booking_number") for row in result.data or []]
        return self.generator.register_existing_numbers(numbers)

    async def _fetch(self, booking_id: str) -> Optional[Dict[str, Any]]:
        result = self.supabase.table(self.table).select("*").eq("id", booking_id).limit(1).execute()
        return result.data[0] if result.data else None

    async def create_booking(
        self,
        form_data: Dict[str, Any],
        status_data: Optional[Dict[str, Any]] = None,
        document_states: Optional[Dict[str, Dict[str, bool]]] = None,
        on_dropped_field: Optional[Callable[[str], None]] = None,
    ) -> Dict[str, Any]:
        """Map, validate, number and insert a new booking"""
        record = to_storage_schema(form_data, status_data, document_states, on_dropped_field=on_dropped_field)

        validation = validate_storage_schema(record)
        if not validation.is_valid:
            logger.warning(f"Booking rejected: {validation.fields()}")
            return _errors_payload(validation)

        try:
            record["booking_number"] = await self.generator.generate(yacht_id=record.get("yacht_id"))
        except BookingNumberError as e:
            logger.error(f"❌ Could not assign booking number: {e}")
            return {"success": False, "error": str(e)}

        now = datetime.now(timezone.utc).isoformat()
        record["created_at"] = now
        record["updated_at"] = now

        try:
            result = self.supabase.table(self.table).insert(record).execute()
        except Exception as e:
            logger.error(f"❌ Error creating booking {record['booking_number']}: {e}")
            return {"success": False, "error": str(e)}

        booking = result.data[0] if result.data else record
        logger.info(f"✅ Booking created: {record['booking_number']}")
        return {"success": True, "booking": booking}

    async def update_booking(
        self,
        booking_id: str,
        form_data: Dict[str, Any],
        status_data: Optional[Dict[str, Any]] = None,
        document_states: Optional[Dict[str, Dict[str, bool]]] = None,
    ) -> Dict[str, Any]:
        """Re-map an edited booking; stored document timestamps are kept"""
        try:
            existing = await self._fetch(booking_id)
        except Exception as e:
            logger.error(f"❌ Error loading booking {booking_id}: {e}")
            return {"success": False, "error": str(e)}

        if existing is None:
            return {"success": False, "error": f"Booking {booking_id} not found"}

        record = to_storage_schema(form_data, status_data, document_states, existing=existing)
        validation = validate_storage_schema({**existing, **record})
        if not validation.is_valid:
            logger.warning(f"Booking {booking_id} update rejected: {validation.fields()}")
            return _errors_payload(validation)

        record["updated_at"] = datetime.now(timezone.utc).isoformat()

        try:
            result = self.supabase.table(self.table).update(record).eq("id", booking_id).execute()
        except Exception as e:
            logger.error(f"❌ Error updating booking {booking_id}: {e}")
            return {"success": False, "error": str(e)}

        booking = result.data[0] if result.data else {**existing, **record}
        logger.info(f"✅ Booking updated: {existing.get('booking_number', booking_id)}")
        return {"success": True, "booking": booking}

    async def get_booking_form(self, booking_id: str) -> Optional[Dict[str, Any]]:
        """Stored booking in the form shape, plus its id and booking number"""
        try:
            record = await self._fetch(booking_id)
        except Exception as e:
            logger.error(f"❌ Error getting booking {booking_id}: {e}")
            return None

        if record is None:
            return None

        return {
            "id": record.get("id"),
            "bookingNumber": record.get("booking_number"),
            **from_storage_schema(record),
        }

    async def export_calendar(self, include_alarms: bool = False, yacht_id: Optional[str] = None) -> Optional[ICSFile]:
        """Export stored bookings as an .ics file, optionally for one yacht"""
        try:
            query = self.supabase.table(self.table).select("*")
            if yacht_id:
                query = query.eq("yacht_id", yacht_id)
            result = query.order("start_date").execute()
        except Exception as e:
            logger.error(f"❌ Error loading bookings for calendar export: {e}")
            return None

        bookings = result.data or []
        ics_file = generate_ics_file(
            bookings,
            filename=self.settings.ICS_FILENAME,
            calendar_name=self.settings.ICS_CALENDAR_NAME,
            include_alarms=include_alarms,
            prod_id=self.settings.ICS_PRODID,
            event_options={"uid_domain": self.settings.ICS_UID_DOMAIN},
        )
        logger.info(f"📅 Exported {len(bookings)} bookings to {ics_file.filename}")
        return ics_file


# Global instance
_booking_service = None


def get_booking_service() -> BookingService:
    """Get the global booking service instance"""
    global _booking_service
    if _booking_service is None:
        _booking_service = BookingService.from_settings()
    return _booking_service
