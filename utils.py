"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import json
import logging
from dataclasses import dataclass
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(raw: Optional[str]) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 string (``Z`` suffix accepted) into an aware datetime."""
    if not raw:
        return None
    try:
        return as_utc(datetime.datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except (ValueError, TypeError, AttributeError):
        logger.warning("Could not parse datetime: %r", raw)
        return None


def isoformat(value: Optional[datetime.datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def safe_decimal(value, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Convert *value* to a two-place ``Decimal``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Could not convert %r to Decimal, using default %s", value, default)
        return default


# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------

# Currencies the gateways expect in whole units rather than cents
ZERO_DECIMAL_CURRENCIES = {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
                           "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}


def to_minor_units(amount, currency: str) -> int:
    """Convert a major-unit amount to the integer minor units gateways expect."""
    value = Decimal(str(amount))
    if currency.upper() not in ZERO_DECIMAL_CURRENCIES:
        value = value * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount, currency: str) -> Decimal:
    value = Decimal(int(amount or 0))
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return value.quantize(Decimal("0.01"))
    return (value / 100).quantize(Decimal("0.01"))


def format_amount(amount) -> str:
    """Render a Decimal amount as a plain two-place string (PayPal style)."""
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# JSON blobs
# ---------------------------------------------------------------------------

def dump_json(value: Optional[dict]) -> Optional[str]:
    """Serialize a metadata mapping for an opaque text column."""
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def load_json(raw: Optional[str]) -> dict:
    """Parse an opaque metadata column; malformed content yields ``{}``."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (ValueError, TypeError):
        logger.warning("Ignoring malformed JSON metadata: %.80r", raw)
        return {}
    return value if isinstance(value, dict) else {"value": value}


# ---------------------------------------------------------------------------
# Partial updates
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PatchField:
    """One field of a partial update: ``present`` distinguishes clear from skip."""

    present: bool = False
    value: Any = None


ABSENT = PatchField()


class Patch:
    """Explicit partial-update object.

    A JSON ``null`` for a present key means "clear this field", an absent key
    means "leave unchanged"::

        patch = Patch.from_json({"description": None}, ["description", "name"])
        patch.apply(plan)   # clears plan.description, keeps plan.name
    """

    def __init__(self, fields: Optional[dict] = None):
        self._fields: dict[str, PatchField] = dict(fields or {})

    @classmethod
    def from_json(cls, data: Optional[dict], allowed: Iterable[str]) -> "Patch":
        data = data or {}
        return cls({name: PatchField(True, data[name]) for name in allowed if name in data})

    def __contains__(self, name: str) -> bool:
        return self._fields.get(name, ABSENT).present

    def __bool__(self) -> bool:
        return any(f.present for f in self._fields.values())

    def field(self, name: str) -> PatchField:
        return self._fields.get(name, ABSENT)

    def get(self, name: str, default=None):
        f = self.field(name)
        return f.value if f.present else default

    def names(self) -> list[str]:
        return [name for name, f in self._fields.items() if f.present]

    def apply(self, obj, converters: Optional[dict[str, Callable]] = None) -> list[str]:
        """Set every present field on *obj*; returns the names that were applied."""
        converters = converters or {}
        applied = []
        for name in self.names():
            value = self._fields[name].value
            if value is not None and name in converters:
                value = converters[name](value)
            setattr(obj, name, value)
            applied.append(name)
        return applied
