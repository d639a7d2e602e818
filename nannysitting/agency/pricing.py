"""Tariff resolution and hour-based arithmetic for lines, documents and payouts."""

from __future__ import annotations

import datetime as dt
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from .errors import ValidationError

WEEKDAY = "weekday"
WEEKEND = "weekend"
ANY_DAY = "any"
DAY_TYPES = (WEEKDAY, WEEKEND, ANY_DAY)

# type_jour values as stored in the tarifs table
STORED_DAY_TYPES = {"semaine": WEEKDAY, "weekend": WEEKEND, "tous": ANY_DAY}
DAY_TYPE_STORAGE = {value: key for key, value in STORED_DAY_TYPES.items()}

LINE_FIELDS = ("date", "start_time", "end_time", "description", "hourly_rate")
PRICE_TRIGGERS = ("date", "start_time", "end_time", "hourly_rate")

_SECONDS_SUFFIX = re.compile(r"^(\d{1,2}:\d{2}):\d{2}(?:\.\d+)?$")


def parse_date(value: dt.date | str) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid date: {value!r}") from exc


def is_weekend(value: dt.date | str) -> bool:
    return parse_date(value).weekday() >= 5


def normalize_time(value: Any) -> str:
    """Return ``HH:MM`` from a time or a stored ``HH:MM:SS`` string."""

    if value is None:
        return ""
    if isinstance(value, dt.time):
        return value.strftime("%H:%M")
    text = str(value).strip()
    match = _SECONDS_SUFFIX.match(text)
    return match.group(1) if match else text


def parse_time(value: Any) -> dt.time | None:
    if value is None:
        return None
    try:
        return dt.datetime.strptime(normalize_time(value), "%H:%M").time()
    except ValueError:
        return None


def minutes_of_day(value: Any) -> int | None:
    parsed = parse_time(value)
    if parsed is None:
        return None
    return parsed.hour * 60 + parsed.minute


def hours_between(start: Any, end: Any) -> float:
    """Return the fractional hours from ``start`` to ``end`` on the same day.

    The result is negative when ``end`` is earlier than ``start``; shifts that
    cross midnight are not handled. Unparseable times yield ``0``.
    """

    start_minutes = minutes_of_day(start)
    end_minutes = minutes_of_day(end)
    if start_minutes is None or end_minutes is None:
        return 0.0
    return (end_minutes - start_minutes) / 60


def _as_rate(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid hourly rate: {value!r}") from exc


# ----------------------------------------------------------------------
# Tariffs
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class Tariff:
    name: str
    hourly_rate: float
    day_type: str = ANY_DAY
    active: bool = True
    id: int | None = None

    def __post_init__(self) -> None:
        if self.day_type not in DAY_TYPES:
            raise ValidationError(f"Unknown day type: {self.day_type}")
        if self.hourly_rate < 0:
            raise ValidationError("Hourly rate cannot be negative")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Tariff":
        stored = row.get("type_jour", "tous")
        if stored not in STORED_DAY_TYPES:
            raise ValidationError(f"Unknown day type: {stored}")
        return cls(
            name=row["nom"],
            hourly_rate=_as_rate(row.get("tarif_horaire")),
            day_type=STORED_DAY_TYPES[stored],
            active=bool(row.get("actif", 1)),
            id=row.get("id"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "nom": self.name,
            "tarif_horaire": self.hourly_rate,
            "type_jour": DAY_TYPE_STORAGE[self.day_type],
            "actif": self.active,
        }


def resolve_tariff(date: dt.date | str, catalog: Sequence[Tariff]) -> Tariff | None:
    """Pick the tariff that applies to ``date``.

    A tariff tagged with the date's own day type wins over an ``any`` tariff;
    among equals the first one in catalog order is returned.
    """

    specific = WEEKEND if is_weekend(date) else WEEKDAY
    candidates = [t for t in catalog if t.day_type in (specific, ANY_DAY)]
    for tariff in candidates:
        if tariff.day_type == specific:
            return tariff
    return candidates[0] if candidates else None


# ----------------------------------------------------------------------
# Line items
# ----------------------------------------------------------------------
@dataclass
class LineItem:
    date: dt.date
    start_time: str = "09:00"
    end_time: str = "17:00"
    description: str = ""
    hourly_rate: float = 0.0
    total: float = 0.0

    @property
    def hours(self) -> float:
        return hours_between(self.start_time, self.end_time)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LineItem":
        """Build a line from its stored JSON shape, recomputing the total."""

        if "date" not in data:
            raise ValidationError("Line item is missing its date")
        line = cls(
            date=parse_date(data["date"]),
            start_time=normalize_time(data.get("heure_debut", "09:00")),
            end_time=normalize_time(data.get("heure_fin", "17:00")),
            description=str(data.get("description") or ""),
            hourly_rate=_as_rate(data.get("prix_horaire")),
        )
        line.total = line.hours * line.hourly_rate
        return line

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "heure_debut": self.start_time,
            "heure_fin": self.end_time,
            "description": self.description,
            "prix_horaire": self.hourly_rate,
            "total": self.total,
        }


def recompute_line(
    line: LineItem, trigger: str, catalog: Sequence[Tariff] = ()
) -> LineItem:
    """Refresh the derived parts of ``line`` after ``trigger`` was edited.

    A date edit re-resolves the tariff and, when one applies, replaces the
    description and hourly rate with the tariff's. Any edit to a price field
    recomputes the total. Description edits leave the line untouched.
    """

    if trigger not in LINE_FIELDS:
        raise ValidationError(f"Unknown line field: {trigger}")
    if trigger == "date":
        tariff = resolve_tariff(line.date, catalog)
        if tariff is not None:
            line.description = tariff.name
            line.hourly_rate = tariff.hourly_rate
    if trigger in PRICE_TRIGGERS:
        line.total = line.hours * line.hourly_rate
    return line


def update_line(
    line: LineItem, field: str, value: Any, catalog: Sequence[Tariff] = ()
) -> LineItem:
    if field not in LINE_FIELDS:
        raise ValidationError(f"Unknown line field: {field}")
    if field == "date":
        value = parse_date(value)
    elif field in ("start_time", "end_time"):
        value = normalize_time(value)
    elif field == "hourly_rate":
        value = _as_rate(value)
    else:
        value = str(value or "")
    setattr(line, field, value)
    return recompute_line(line, field, catalog)


def next_line(previous: LineItem) -> LineItem:
    """Return a blank-description line continuing from ``previous``."""

    line = LineItem(
        date=previous.date,
        start_time=previous.start_time,
        end_time=previous.end_time,
        hourly_rate=previous.hourly_rate,
    )
    line.total = line.hours * line.hourly_rate
    return line


# ----------------------------------------------------------------------
# Document totals
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class DocumentTotals:
    subtotal: float
    tax_amount: float
    total: float


def recompute_totals(lines: Iterable[LineItem], tax_percent: float) -> DocumentTotals:
    subtotal = sum((line.total for line in lines), 0.0)
    tax_amount = subtotal * tax_percent / 100
    return DocumentTotals(subtotal=subtotal, tax_amount=tax_amount, total=subtotal + tax_amount)


def format_amount(value: float | None) -> str:
    return f"{(value or 0):.2f}"


# ----------------------------------------------------------------------
# Payouts
# ----------------------------------------------------------------------
def billed_hours(start: Any, end: Any) -> float:
    """Hours rounded up to the next half hour."""

    return math.ceil(hours_between(start, end) * 2) / 2


def compute_payout(start: Any, end: Any, hourly_rate: float | None) -> float:
    if not hourly_rate:
        return 0.0
    return billed_hours(start, end) * float(hourly_rate)


def mission_amount(date: dt.date | str, start: Any, end: Any, catalog: Sequence[Tariff]) -> float | None:
    """Client-side price of a mission, or ``None`` when it would not be positive."""

    tariff = resolve_tariff(date, catalog)
    rate = tariff.hourly_rate if tariff else 0.0
    amount = rate * hours_between(start, end)
    return amount if amount > 0 else None
