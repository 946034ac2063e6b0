"""
Supabase backed booking number sequences

Increments run through the ``next_booking_sequence`` Postgres function
(see sql/booking_sequences.sql), an INSERT ... ON CONFLICT ... RETURNING,
so generators in different processes never draw the same value.
"""

import logging
from typing import Any

from supabase import Client

from ..core.booking_numbers import SequenceProvider
from ..exceptions import BookingServiceError

logger = logging.getLogger(__name__)


class SupabaseSequenceProvider(SequenceProvider):
    def __init__(self, client: Client, table: str = "booking_sequences", rpc_name: str = "next_booking_sequence"):
        self.client = client
        self.table = table
        self.rpc_name = rpc_name

    @classmethod
    def from_settings(cls, client: Client, settings) -> "SupabaseSequenceProvider":
        return cls(client, table=settings.SEQUENCES_TABLE, rpc_name=settings.SEQUENCE_RPC)

    @staticmethod
    def _scalar(data: Any) -> Any:
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict):
            data = data.get("value", next(iter(data.values()), None))
        return data

    async def next_value(self, key: str) -> int:
        response = self.client.rpc(self.rpc_name, {"sequence_key": key}).execute()
        value = self._scalar(response.data)
        if value is None:
            raise BookingServiceError(f"Sequence function {self.rpc_name} returned no value for '{key}'")
        return int(value)

    async def set_value(self, key: str, value: int) -> int:
        self.client.table(self.table).upsert({"key": key, "value": int(value)}).execute()
        logger.info(f"Sequence '{key}' stored as {value} in {self.table}")
        return int(value)
