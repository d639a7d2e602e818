"""Mission calendar helpers: typed missions, period bounds and color bands."""

from __future__ import annotations

import calendar
import datetime as dt
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Any, Mapping, Sequence

from .errors import ValidationError
from .pricing import billed_hours, compute_payout, hours_between, minutes_of_day, normalize_time, parse_date

MISSION_STATUSES = ("planifie", "a_attribuer", "en_cours", "termine", "annule")
VIEWS = ("day", "week", "month")


@dataclass(frozen=True)
class Mission:
    date: dt.date
    start_time: str
    end_time: str
    status: str = "planifie"
    id: int | None = None
    client_id: int | None = None
    nannysitter_id: int | None = None
    description: str | None = None
    amount: float | None = None
    sitter_hourly_rate: float | None = None
    client_name: str | None = None
    sitter_name: str | None = None
    color_flag: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Mission":
        status = row.get("statut") or "planifie"
        if status not in MISSION_STATUSES:
            raise ValidationError(f"Invalid mission status: {status}")
        return cls(
            id=row.get("id"),
            client_id=row.get("client_id"),
            nannysitter_id=row.get("nannysitter_id"),
            date=parse_date(row["date"]),
            start_time=normalize_time(row["heure_debut"]),
            end_time=normalize_time(row["heure_fin"]),
            status=status,
            description=row.get("description"),
            amount=row.get("montant"),
            sitter_hourly_rate=row.get("tarif_horaire"),
            client_name=row.get("client_name"),
            sitter_name=row.get("sitter_name"),
        )

    @property
    def hours(self) -> float:
        return hours_between(self.start_time, self.end_time)

    @property
    def billed_hours(self) -> float:
        return billed_hours(self.start_time, self.end_time)

    @property
    def payout(self) -> float:
        return compute_payout(self.start_time, self.end_time, self.sitter_hourly_rate)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "nannysitter_id": self.nannysitter_id,
            "date": self.date.isoformat(),
            "heure_debut": self.start_time,
            "heure_fin": self.end_time,
            "statut": self.status,
            "description": self.description,
            "montant": self.amount,
            "client_name": self.client_name,
            "sitter_name": self.sitter_name,
            "use_alt_color": self.color_flag,
        }


def _overlaps_previous(current: Mission, previous: Mission) -> bool:
    if current.date != previous.date:
        return False
    start = minutes_of_day(current.start_time)
    previous_end = minutes_of_day(previous.end_time)
    if start is None or previous_end is None:
        return False
    return start < previous_end


def assign_color_bands(missions: Sequence[Mission]) -> list[Mission]:
    """Alternate the color band of each mission that overlaps its predecessor.

    ``missions`` must already be sorted by date then start time. Only the
    immediately preceding mission is compared, so three or more missions that
    overlap at once may share a band.
    """

    banded: list[Mission] = []
    for index, mission in enumerate(missions):
        flag = False
        if index > 0 and _overlaps_previous(mission, banded[-1]):
            flag = not banded[-1].color_flag
        banded.append(replace(mission, color_flag=flag))
    return banded


def period_bounds(view: str, anchor: dt.date | str) -> tuple[dt.date, dt.date]:
    """Return the first and last day shown by a calendar ``view`` around ``anchor``."""

    day = parse_date(anchor)
    if view == "day":
        return day, day
    if view == "week":
        start = day - dt.timedelta(days=day.weekday())
        return start, start + dt.timedelta(days=6)
    if view == "month":
        last = calendar.monthrange(day.year, day.month)[1]
        return day.replace(day=1), day.replace(day=last)
    raise ValidationError(f"Unknown calendar view: {view}")


def group_by_day(missions: Sequence[Mission]) -> dict[str, list[Mission]]:
    schedule: dict[str, list[Mission]] = defaultdict(list)
    for mission in missions:
        schedule[mission.date.isoformat()].append(mission)
    return dict(schedule)
