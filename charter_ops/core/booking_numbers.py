"""
Booking number generation

Produces unique, human readable booking numbers in one of several formats,
tracks per-scope sequences through a pluggable provider and guards against
collisions with numbers already issued or loaded from storage.

Concurrency: a generator instance is not safe for concurrent ``generate()``
calls from several tasks unless its sequence provider serialises access
itself (e.g. an atomic database increment). Batches run serially.
"""

import inspect
import logging
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date as date_type, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from dateutil import parser as date_parser

from ..exceptions import BookingNumberConfigError, GenerationExhausted
from ..models import BookingNumberValidation, ParsedBookingNumber

logger = logging.getLogger(__name__)


class BookingNumberFormat(str, Enum):
    SEQUENTIAL = "sequential"              # BK001, BK002...
    YEAR_SEQUENTIAL = "year_sequential"    # BK24001
    YEAR_MONTH_SEQ = "year_month_seq"      # BK2407001
    DATE_SEQUENTIAL = "date_sequential"    # BK20240715001
    YACHT_SEQUENTIAL = "yacht_sequential"  # SP001, DD002
    CUSTOM = "custom"


VALIDATION_PATTERNS = MappingProxyType({
    BookingNumberFormat.SEQUENTIAL: re.compile(r"^[A-Z]{2,4}\d{3,6}$"),
    BookingNumberFormat.YEAR_SEQUENTIAL: re.compile(r"^[A-Z]{2,4}\d{2}\d{3,6}$"),
    BookingNumberFormat.YEAR_MONTH_SEQ: re.compile(r"^[A-Z]{2,4}\d{4}\d{3,6}$"),
    BookingNumberFormat.DATE_SEQUENTIAL: re.compile(r"^[A-Z]{2,4}\d{8}\d{3}$"),
    BookingNumberFormat.YACHT_SEQUENTIAL: re.compile(r"^[A-Z]{2,4}\d{3,6}$"),
})

# Most specific pattern first
_DETECTION_ORDER = (
    BookingNumberFormat.DATE_SEQUENTIAL,
    BookingNumberFormat.YEAR_MONTH_SEQ,
    BookingNumberFormat.YEAR_SEQUENTIAL,
    BookingNumberFormat.SEQUENTIAL,
)

YACHT_CODES = MappingProxyType({
    "spectre": "SP",
    "disk-drive": "DD",
    "arriva": "AR",
    "zambada": "ZM",
    "melba-so": "MS",
    "swansea": "SW",
})

_YACHTS_BY_CODE = MappingProxyType({code: yacht for yacht, code in YACHT_CODES.items()})

_PREFIX_RE = re.compile(r"^([A-Z]+)")


def yacht_code_for(yacht_id: Optional[str], fallback: str = "XX") -> str:
    """Two letter code for a yacht, falling back to its first two characters"""
    if not yacht_id:
        return fallback
    return YACHT_CODES.get(yacht_id) or yacht_id[:2].upper()


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ----------------------------------------------------------------------
# Sequence providers
# ----------------------------------------------------------------------

class SequenceProvider(ABC):
    """Source of monotonically increasing sequence values keyed by scope"""

    @abstractmethod
    async def next_value(self, key: str) -> int:
        """Advance the sequence for ``key`` and return the new value"""

    @abstractmethod
    async def set_value(self, key: str, value: int) -> int:
        """Overwrite the sequence for ``key`` unconditionally"""

    def reset(self) -> None:
        raise BookingNumberConfigError(
            f"{type(self).__name__} does not support resetting sequences"
        )


class InMemorySequenceProvider(SequenceProvider):
    """Default provider; state lives for the lifetime of the instance"""

    def __init__(self):
        self._sequences: Dict[str, int] = {}

    async def next_value(self, key: str) -> int:
        next_value = self._sequences.get(key, 0) + 1
        self._sequences[key] = next_value
        return next_value

    async def set_value(self, key: str, value: int) -> int:
        self._sequences[key] = int(value)
        return self._sequences[key]

    def reset(self) -> None:
        self._sequences.clear()

    def current(self, key: str) -> int:
        return self._sequences.get(key, 0)


class CallbackSequenceProvider(SequenceProvider):
    """
    Provider built from a pair of get/set callables (sync or async), e.g. a
    small key-value table. Read-then-write is not atomic; use a provider with
    an atomic increment when several processes share a sequence.
    """

    def __init__(self, get_sequence: Callable[[str], Any], set_sequence: Callable[[str, int], Any]):
        self._get_sequence = get_sequence
        self._set_sequence = set_sequence

    async def next_value(self, key: str) -> int:
        current = await _maybe_await(self._get_sequence(key)) or 0
        next_value = int(current) + 1
        await _maybe_await(self._set_sequence(key, next_value))
        return next_value

    async def set_value(self, key: str, value: int) -> int:
        await _maybe_await(self._set_sequence(key, int(value)))
        return int(value)


# ----------------------------------------------------------------------
# Custom format tokens
# ----------------------------------------------------------------------

class TokenType(str, Enum):
    PREFIX = "prefix"
    YEAR = "year"
    MONTH = "month"
    DAY = "day"
    YACHT_CODE = "yacht_code"
    SEQUENCE = "sequence"
    RANDOM = "random"
    CUSTOM = "custom"


@dataclass(frozen=True)
class FormatToken:
    type: TokenType
    value: Optional[str] = None
    length: Optional[int] = None
    key: Optional[str] = None
    charset: str = "0123456789"
    generator: Optional[Callable[[Dict[str, Any]], Any]] = None

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "FormatToken":
        generator = config.get("generator")
        try:
            token_type = TokenType(config.get("type"))
        except ValueError:
            if not callable(generator):
                raise BookingNumberConfigError(
                    f"Unknown token type '{config.get('type')}' without a generator"
                ) from None
            token_type = TokenType.CUSTOM
        return cls(
            type=token_type,
            value=config.get("value"),
            length=config.get("length"),
            key=config.get("key"),
            charset=config.get("charset") or "0123456789",
            generator=generator,
        )


@dataclass
class CustomFormat:
    template: str
    tokens: Dict[str, FormatToken] = field(default_factory=dict)

    def __post_init__(self):
        self.tokens = {
            name: token if isinstance(token, FormatToken) else FormatToken.from_dict(token)
            for name, token in (self.tokens or {}).items()
        }

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "CustomFormat":
        return cls(template=config.get("template") or "", tokens=config.get("tokens") or {})


# ----------------------------------------------------------------------
# Generator
# ----------------------------------------------------------------------

class BookingNumberGenerator:
    """Generates, validates and parses booking numbers"""

    def __init__(
        self,
        format: Union[BookingNumberFormat, str] = BookingNumberFormat.YEAR_MONTH_SEQ,
        prefix: str = "BK",
        sequence_length: int = 3,
        custom_format: Optional[Union[CustomFormat, Dict[str, Any]]] = None,
        sequence_provider: Optional[SequenceProvider] = None,
    ):
        try:
            self.format = BookingNumberFormat(format)
        except ValueError:
            raise BookingNumberConfigError(f"Unsupported booking number format: {format}") from None

        if isinstance(custom_format, dict):
            custom_format = CustomFormat.from_dict(custom_format)

        self.prefix = prefix or "BK"
        self.sequence_length = sequence_length or 3
        self.custom_format = custom_format
        self.sequence_provider = sequence_provider or InMemorySequenceProvider()

        # Collision set: everything issued or registered by this instance
        self._existing_numbers: Set[str] = set()

    @classmethod
    def from_settings(cls, settings, sequence_provider: Optional[SequenceProvider] = None) -> "BookingNumberGenerator":
        return cls(
            format=settings.BOOKING_NUMBER_FORMAT,
            prefix=settings.BOOKING_NUMBER_PREFIX,
            sequence_length=settings.BOOKING_SEQUENCE_LENGTH,
            sequence_provider=sequence_provider,
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    async def generate(
        self,
        yacht_id: Optional[str] = None,
        date: Optional[Union[date_type, datetime, str]] = None,
        custom_prefix: Optional[str] = None,
        retry_count: int = 10,
    ) -> str:
        """
        Generate a booking number that is unique within this generator.

        Every draw advances the sequence for the format's key, so a collision
        with a registered number moves on to the next value. Raises
        GenerationExhausted after ``retry_count`` draws.
        """
        reference = self._coerce_date(date)
        attempts = max(retry_count, 1)
        candidate = None

        for attempt in range(1, attempts + 1):
            candidate = await self._draw(yacht_id, reference, custom_prefix)
            if candidate not in self._existing_numbers:
                self._existing_numbers.add(candidate)
                if attempt > 1:
                    logger.info(f"Generated booking number {candidate} after {attempt} attempts")
                return candidate
            logger.debug(f"Booking number collision on {candidate} (attempt {attempt}/{attempts})")

        logger.error(f"❌ Booking number generation exhausted after {attempts} attempts, last candidate {candidate}")
        raise GenerationExhausted(attempts, candidate)

    async def generate_batch(self, count: int, **options) -> List[str]:
        """Generate ``count`` numbers one after another"""
        numbers = []
        for _ in range(count):
            numbers.append(await self.generate(**options))
        return numbers

    async def _draw(self, yacht_id: Optional[str], reference: datetime, custom_prefix: Optional[str]) -> str:
        if self.format == BookingNumberFormat.SEQUENTIAL:
            return await self._sequential(custom_prefix)
        if self.format == BookingNumberFormat.YEAR_SEQUENTIAL:
            return await self._year_sequential(reference, custom_prefix)
        if self.format == BookingNumberFormat.YEAR_MONTH_SEQ:
            return await self._year_month_sequential(reference, custom_prefix)
        if self.format == BookingNumberFormat.DATE_SEQUENTIAL:
            return await self._date_sequential(reference, custom_prefix)
        if self.format == BookingNumberFormat.YACHT_SEQUENTIAL:
            return await self._yacht_sequential(yacht_id, custom_prefix)
        return await self._custom({"yacht_id": yacht_id, "date": reference, "custom_prefix": custom_prefix})

    def _pad(self, sequence: int, length: Optional[int] = None) -> str:
        return str(sequence).zfill(length or self.sequence_length)

    async def _sequential(self, custom_prefix: Optional[str]) -> str:
        prefix = custom_prefix or self.prefix
        sequence = await self.sequence_provider.next_value("sequential")
        return f"{prefix}{self._pad(sequence)}"

    async def _year_sequential(self, reference: datetime, custom_prefix: Optional[str]) -> str:
        prefix = custom_prefix or self.prefix
        year = f"{reference.year % 100:02d}"
        sequence = await self.sequence_provider.next_value(f"year_{year}")
        return f"{prefix}{year}{self._pad(sequence)}"

    async def _year_month_sequential(self, reference: datetime, custom_prefix: Optional[str]) -> str:
        prefix = custom_prefix or self.prefix
        year_month = f"{reference.year % 100:02d}{reference.month:02d}"
        sequence = await self.sequence_provider.next_value(f"year_month_{year_month}")
        return f"{prefix}{year_month}{self._pad(sequence)}"

    async def _date_sequential(self, reference: datetime, custom_prefix: Optional[str]) -> str:
        prefix = custom_prefix or self.prefix
        date_str = f"{reference.year:04d}{reference.month:02d}{reference.day:02d}"
        sequence = await self.sequence_provider.next_value(f"date_{date_str}")
        # Date format always uses three sequence digits
        return f"{prefix}{date_str}{self._pad(sequence, 3)}"

    async def _yacht_sequential(self, yacht_id: Optional[str], custom_prefix: Optional[str]) -> str:
        if not yacht_id and not custom_prefix:
            raise BookingNumberConfigError("Yacht ID required for yacht-sequential format")
        prefix = custom_prefix or yacht_code_for(yacht_id)
        sequence = await self.sequence_provider.next_value(f"yacht_{yacht_id or 'unknown'}")
        return f"{prefix}{self._pad(sequence)}"

    async def _custom(self, options: Dict[str, Any]) -> str:
        if not self.custom_format or not self.custom_format.template:
            raise BookingNumberConfigError("Custom format template not configured")

        result = self.custom_format.template
        for name, token in self.custom_format.tokens.items():
            value = await self._resolve_token(token, options)
            result = result.replace(f"{{{name}}}", str(value))
        return result

    async def _resolve_token(self, token: FormatToken, options: Dict[str, Any]) -> str:
        reference: datetime = options["date"]

        if token.type == TokenType.PREFIX:
            return token.value or options.get("custom_prefix") or self.prefix
        if token.type == TokenType.YEAR:
            year = f"{reference.year:04d}"
            return year[-2:] if token.length == 2 else year
        if token.type == TokenType.MONTH:
            return f"{reference.month:02d}"
        if token.type == TokenType.DAY:
            return f"{reference.day:02d}"
        if token.type == TokenType.YACHT_CODE:
            return yacht_code_for(options.get("yacht_id"))
        if token.type == TokenType.SEQUENCE:
            sequence = await self.sequence_provider.next_value(token.key or "custom")
            return self._pad(sequence, token.length)
        if token.type == TokenType.RANDOM:
            return "".join(secrets.choice(token.charset) for _ in range(token.length or 3))
        if token.generator is None:
            raise BookingNumberConfigError("Custom token requires a generator")
        return str(await _maybe_await(token.generator(options)))

    @staticmethod
    def _coerce_date(value: Optional[Union[date_type, datetime, str]]) -> datetime:
        if value is None:
            return datetime.now()
        if isinstance(value, datetime):
            return value
        if isinstance(value, date_type):
            return datetime(value.year, value.month, value.day)
        return date_parser.isoparse(value)

    # ------------------------------------------------------------------
    # Validation & parsing
    # ------------------------------------------------------------------
    def validate(self, booking_number: Any, format: Optional[Union[BookingNumberFormat, str]] = None) -> BookingNumberValidation:
        """Check a number against a format pattern and the collision set"""
        if not booking_number or not isinstance(booking_number, str):
            return BookingNumberValidation(is_valid=False, error="Booking number must be a non-empty string")

        try:
            target = BookingNumberFormat(format) if format else self.format
        except ValueError:
            return BookingNumberValidation(is_valid=False, error=f"Unsupported booking number format: {format}")

        pattern = VALIDATION_PATTERNS.get(target)
        if pattern is not None and not pattern.match(booking_number):
            return BookingNumberValidation(
                is_valid=False,
                error=f"Booking number does not match expected format for {target.value}",
                format=target.value,
            )

        if booking_number in self._existing_numbers:
            return BookingNumberValidation(is_valid=False, error="Booking number already exists", format=target.value)

        return BookingNumberValidation(is_valid=True, format=target.value)

    def parse(self, booking_number: Any) -> ParsedBookingNumber:
        """
        Best effort decomposition of a booking number.

        The generator's own format is tried first, then the known patterns
        from most to least specific. Numbers matching no pattern come back
        with ``is_valid=False``.
        """
        if not booking_number or not isinstance(booking_number, str):
            return ParsedBookingNumber(is_valid=False, error="Invalid booking number")

        detected = self._detect_format(booking_number)
        if detected is None:
            return ParsedBookingNumber(
                is_valid=False,
                original=booking_number,
                error="Booking number does not match any known format",
            )

        prefix = _PREFIX_RE.match(booking_number).group(1)
        remaining = booking_number[len(prefix):]
        components: Dict[str, Any] = {"prefix": prefix}

        if detected == BookingNumberFormat.YEAR_SEQUENTIAL:
            components["year"] = "20" + remaining[:2]
            components["sequence"] = int(remaining[2:])
        elif detected == BookingNumberFormat.YEAR_MONTH_SEQ:
            components["year"] = "20" + remaining[:2]
            components["month"] = int(remaining[2:4])
            components["sequence"] = int(remaining[4:])
        elif detected == BookingNumberFormat.DATE_SEQUENTIAL:
            components["year"] = remaining[:4]
            components["month"] = int(remaining[4:6])
            components["day"] = int(remaining[6:8])
            components["sequence"] = int(remaining[8:])
        else:
            components["sequence"] = int(remaining)
            if detected == BookingNumberFormat.YACHT_SEQUENTIAL and prefix in _YACHTS_BY_CODE:
                components["yacht_id"] = _YACHTS_BY_CODE[prefix]

        return ParsedBookingNumber(
            is_valid=True,
            original=booking_number,
            detected_format=detected.value,
            components=components,
        )

    def _detect_format(self, booking_number: str) -> Optional[BookingNumberFormat]:
        own_pattern = VALIDATION_PATTERNS.get(self.format)
        if own_pattern is not None and own_pattern.match(booking_number):
            return self.format

        for candidate in _DETECTION_ORDER:
            if VALIDATION_PATTERNS[candidate].match(booking_number):
                if candidate == BookingNumberFormat.SEQUENTIAL:
                    prefix = _PREFIX_RE.match(booking_number).group(1)
                    if prefix in _YACHTS_BY_CODE:
                        return BookingNumberFormat.YACHT_SEQUENTIAL
                return candidate
        return None

    # ------------------------------------------------------------------
    # Collision set & sequence management
    # ------------------------------------------------------------------
    def register_existing_numbers(self, booking_numbers: Iterable[Any]) -> int:
        """Seed the collision set, e.g. with numbers loaded from storage"""
        if booking_numbers is None or isinstance(booking_numbers, str):
            return 0
        before = len(self._existing_numbers)
        for number in booking_numbers:
            if number and isinstance(number, str):
                self._existing_numbers.add(number)
        added = len(self._existing_numbers) - before
        logger.info(f"Registered {added} existing booking numbers")
        return added

    def clear_existing_numbers(self) -> None:
        self._existing_numbers.clear()

    def is_registered(self, booking_number: str) -> bool:
        return booking_number in self._existing_numbers

    async def get_next_sequence(self, key: str) -> int:
        return await self.sequence_provider.next_value(key)

    async def set_sequence(self, key: str, value: int) -> int:
        logger.info(f"Sequence '{key}' set to {value}")
        return await self.sequence_provider.set_value(key, value)

    def reset_sequences(self) -> None:
        self.sequence_provider.reset()
        logger.info("Booking number sequences reset")


class PredefinedGenerators:
    """Ready-made generators for common numbering schemes"""

    @staticmethod
    def simple_sequential(prefix: str = "BK") -> BookingNumberGenerator:
        return BookingNumberGenerator(format=BookingNumberFormat.SEQUENTIAL, prefix=prefix, sequence_length=3)

    @staticmethod
    def year_month_sequential(prefix: str = "BK") -> BookingNumberGenerator:
        return BookingNumberGenerator(format=BookingNumberFormat.YEAR_MONTH_SEQ, prefix=prefix, sequence_length=3)

    @staticmethod
    def yacht_specific() -> BookingNumberGenerator:
        return BookingNumberGenerator(format=BookingNumberFormat.YACHT_SEQUENTIAL, sequence_length=3)

    @staticmethod
    def date_based(prefix: str = "BK") -> BookingNumberGenerator:
        return BookingNumberGenerator(format=BookingNumberFormat.DATE_SEQUENTIAL, prefix=prefix)

    @staticmethod
    def yacht_charter_custom() -> BookingNumberGenerator:
        """YC2407-SP-001 style numbers"""
        custom_format = CustomFormat(
            template="{prefix}{year}{month}-{yacht_code}-{sequence}",
            tokens={
                "prefix": FormatToken(TokenType.PREFIX, value="YC"),
                "year": FormatToken(TokenType.YEAR, length=2),
                "month": FormatToken(TokenType.MONTH),
                "yacht_code": FormatToken(TokenType.YACHT_CODE),
                "sequence": FormatToken(TokenType.SEQUENCE, length=3, key="yacht_charter"),
            },
        )
        return BookingNumberGenerator(format=BookingNumberFormat.CUSTOM, custom_format=custom_format)
