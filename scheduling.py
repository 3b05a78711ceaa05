"""
Conflict and availability engine.

Everything here is pure: callers hand in the candidate bookings (anything
with ``booking_id``, ``window``, ``asset_code``, ``asset_name``,
``driver_id``, ``driver_name`` and ``borrowed_items``) and the catalog
entries they need. Windows are half-open ``[start, end)`` in aware UTC.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import CapacityError, ItemUnavailableError, ValidationError

logger = logging.getLogger(__name__)


def to_utc(value: datetime) -> datetime:
    """Timezone-aware UTC. Naive input is taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Window:
    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))
        if self.start >= self.end:
            raise ValidationError("Start time must be before end time.")

    def overlaps(self, other: "Window") -> bool:
        return overlaps(self, other)


def overlaps(a: Window, b: Window) -> bool:
    # Touching endpoints do not overlap
    return a.start < b.end and b.start < a.end


# --- Business hours ---

def parse_clock(value: str) -> int:
    """'HH:MM' -> minutes since midnight."""
    try:
        hours, minutes = value.strip().split(":")
        total = int(hours) * 60 + int(minutes)
    except ValueError:
        raise ValueError(f"Invalid clock time {value!r}, expected HH:MM")
    if not 0 <= total <= 24 * 60:
        raise ValueError(f"Clock time {value!r} out of range")
    return total


def format_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}.{minutes % 60:02d}"


@dataclass(frozen=True)
class BusinessHours:
    timezone: str
    opens: int  # minutes since midnight, inclusive
    closes: int  # minutes since midnight, inclusive

    @classmethod
    def from_config(cls, tz_name: str, opens: str, closes: str) -> "BusinessHours":
        try:
            ZoneInfo(tz_name)
        except ZoneInfoNotFoundError:
            raise ValueError(f"Unknown timezone {tz_name!r}")
        hours = cls(tz_name, parse_clock(opens), parse_clock(closes))
        if hours.opens > hours.closes:
            raise ValueError("Business hours must open before they close")
        return hours

    def local(self, value: datetime) -> datetime:
        return to_utc(value).astimezone(ZoneInfo(self.timezone))

    def local_date(self, value: datetime) -> date:
        return self.local(value).date()

    def minutes_of_day(self, value: datetime) -> int:
        local = self.local(value)
        return local.hour * 60 + local.minute

    def contains(self, value: datetime) -> bool:
        return self.opens <= self.minutes_of_day(value) <= self.closes

    def describe(self) -> str:
        return f"{format_clock(self.opens)}-{format_clock(self.closes)} ({self.timezone})"


def validate_business_hours(window: Window, hours: BusinessHours) -> None:
    """Both ends of a room window must fall inside the allowed daily range."""
    if not (hours.contains(window.start) and hours.contains(window.end)):
        raise ValidationError(
            f"Room bookings are only allowed between {hours.describe()}."
        )


# --- Exclusive resources ---

@dataclass(frozen=True)
class Conflict:
    resource: str  # "asset" or "driver"
    key: str
    name: str

    @property
    def message(self) -> str:
        if self.resource == "asset":
            return f'Asset "{self.name}" is already booked in that window.'
        return f'Driver "{self.name}" is already assigned in that window.'


def _overlapping(window: Window, bookings: Iterable, exclude: Optional[str]) -> List:
    return [
        b for b in bookings
        if (exclude is None or b.booking_id != exclude) and overlaps(window, b.window)
    ]


def find_conflict(
    window: Window,
    kind: str,
    asset_code: str,
    bookings: Iterable,
    driver_id: Optional[int] = None,
    exclude: Optional[str] = None,
) -> Optional[Conflict]:
    """Return the first collision on the asset, else on the driver, else None."""
    candidates = _overlapping(window, bookings, exclude)

    for b in candidates:
        if b.asset_code == asset_code:
            return Conflict("asset", asset_code, b.asset_name)

    if kind == "vehicle" and driver_id is not None:
        for b in candidates:
            if b.driver_id == driver_id:
                return Conflict("driver", str(driver_id), b.driver_name or str(driver_id))

    return None


# --- Countable items ---

def merge_item_lines(lines: Iterable[Mapping]) -> List[dict]:
    """Sum quantities of repeated codes, keeping first-seen order."""
    merged: Dict[str, dict] = {}
    for line in lines:
        code = str(line["asset_code"])
        if code in merged:
            merged[code]["quantity"] += int(line["quantity"])
        else:
            merged[code] = {
                "asset_code": code,
                "asset_name": line.get("asset_name") or code,
                "quantity": int(line["quantity"]),
            }
    return list(merged.values())


def validate_item_lines(lines: Iterable[Mapping]) -> None:
    seen = set()
    for line in lines:
        code = line.get("asset_code")
        if not code:
            raise ValidationError("Borrowed item is missing its code.")
        if code in seen:
            raise ValidationError(f'Borrowed item "{code}" is listed more than once.')
        seen.add(code)
        if int(line.get("quantity") or 0) < 1:
            raise ValidationError(f'Borrowed item "{code}" needs a quantity of at least 1.')


def committed_usage(window: Window, bookings: Iterable, exclude: Optional[str] = None) -> Counter:
    """Units of each item held by bookings overlapping the window."""
    usage: Counter = Counter()
    for b in _overlapping(window, bookings, exclude):
        for line in b.borrowed_items or []:
            usage[line["asset_code"]] += int(line["quantity"])
    return usage


def check_item_capacity(
    window: Window,
    lines: Iterable[Mapping],
    bookings: Iterable,
    catalog: Mapping,
    exclude: Optional[str] = None,
) -> None:
    """
    Raise unless every proposed line fits in its item's stock.

    ``catalog`` maps item code to an object with ``name`` and ``capacity``.
    Items are checked independently, in proposal order.
    """
    lines = list(lines)
    if not lines:
        return

    usage = committed_usage(window, bookings, exclude)

    for line in lines:
        code = line["asset_code"]
        item = catalog.get(code)
        if item is None or item.capacity <= 0:
            raise ItemUnavailableError(code)

        used = usage[code]
        if used + int(line["quantity"]) > item.capacity:
            remaining = max(0, item.capacity - used)
            logger.debug("Item %s over capacity: used=%s asked=%s cap=%s",
                         code, used, line["quantity"], item.capacity)
            raise CapacityError(code, item.name, remaining)


def item_availability(window: Window, bookings: Iterable, items: Iterable) -> List[dict]:
    """Remaining stock of each countable item over the window, for display."""
    usage = committed_usage(window, bookings)
    return [
        {
            "asset_code": item.code,
            "asset_name": item.name,
            "capacity": item.capacity,
            "committed": usage[item.code],
            "remaining": max(0, item.capacity - usage[item.code]),
        }
        for item in items
    ]
