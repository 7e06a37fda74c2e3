"""
Calendar Store

Recurring weekly service calendars and single-date calendar exceptions for one
transit agency, plus the narrow read-only interface the service calendar
engine consumes them through.

Records are already materialized in memory by whatever loaded the agency's
schedule data. A store hands them out in load order:
- get_calendars(): every recurring calendar
- get_calendar_exceptions(): every date exception, in insertion order

Exception order matters. When two exceptions touch the same service ID on the
same date, the one enumerated last decides the outcome.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple


WEEKDAY_FIELDS: Tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

_TRUE_TEXT = {"1", "true", "t", "yes", "y"}
_FALSE_TEXT = {"0", "false", "f", "no", "n", ""}


def _parse_date(value: Any) -> date:
    """Accept a date, a datetime, or YYYY-MM-DD / YYYYMMDD text."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) == 8 and text.isdigit():
        return datetime.strptime(text, "%Y%m%d").date()
    return date.fromisoformat(text)


def _parse_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, int):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_TEXT:
        return True
    if text in _FALSE_TEXT:
        return False
    raise ValueError(f"invalid weekday flag {value!r}")


class ExceptionAction(Enum):
    """What a calendar exception does to its service ID on its date."""
    ADD = 1
    REMOVE = 2

    @classmethod
    def from_value(cls, value: Any) -> "ExceptionAction":
        """
        Coerce an action from the enum itself, its name, or a numeric code.

        Numeric codes follow calendar_dates exception_type: 1 adds service,
        2 removes it.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                value = int(text)
            else:
                try:
                    return cls[text.upper()]
                except KeyError:
                    raise ValueError(f"unknown exception action {value!r}") from None
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                raise ValueError(f"unknown exception action {value!r}") from None
        raise ValueError(f"unknown exception action {value!r}")


@dataclass(frozen=True)
class RecurringCalendar:
    """A weekly service pattern valid over an inclusive date range."""
    service_id: str
    start_date: date
    end_date: date
    monday: bool = False
    tuesday: bool = False
    wednesday: bool = False
    thursday: bool = False
    friday: bool = False
    saturday: bool = False
    sunday: bool = False

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ValueError(
                f"calendar {self.service_id!r} starts {self.start_date.isoformat()} "
                f"after it ends {self.end_date.isoformat()}"
            )

    def runs_on(self, weekday: int) -> bool:
        """Flag for a weekday ordinal where Monday is 0 and Sunday is 6."""
        return bool(getattr(self, WEEKDAY_FIELDS[weekday]))

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "service_id": self.service_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
        }
        for name in WEEKDAY_FIELDS:
            result[name] = getattr(self, name)
        return result

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "RecurringCalendar":
        """Build a calendar from a mapping such as a loaded schedule row."""
        flags = {name: _parse_flag(raw.get(name)) for name in WEEKDAY_FIELDS}
        return cls(
            service_id=str(raw["service_id"]).strip(),
            start_date=_parse_date(raw["start_date"]),
            end_date=_parse_date(raw["end_date"]),
            **flags,
        )


@dataclass(frozen=True)
class CalendarException:
    """Adds or removes one service ID on one date."""
    service_id: str
    date: date
    action: ExceptionAction

    @property
    def adds_service(self) -> bool:
        return self.action is ExceptionAction.ADD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_id": self.service_id,
            "date": self.date.isoformat(),
            "action": self.action.name,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CalendarException":
        action = raw.get("action")
        if action is None:
            action = raw.get("exception_type")
        return cls(
            service_id=str(raw["service_id"]).strip(),
            date=_parse_date(raw["date"]),
            action=ExceptionAction.from_value(action),
        )


class CalendarStore(ABC):
    """
    Read-only source of an agency's calendars and calendar exceptions.

    Implementations must return exceptions in a deterministic order (the
    order they were loaded in). The service calendar engine applies them
    in exactly that order.
    """

    @abstractmethod
    def get_calendars(self) -> List[RecurringCalendar]:
        """Return every recurring calendar configured for the agency."""
        pass

    @abstractmethod
    def get_calendar_exceptions(self) -> List[CalendarException]:
        """
        Return the calendar exceptions in load order.

        The list may be pre-filtered to dates around now or may be the full
        set; the engine filters by exact date either way.
        """
        pass


class InMemoryCalendarStore(CalendarStore):
    """Holds records in insertion order and returns a fresh list per read."""

    def __init__(
        self,
        calendars: Iterable[RecurringCalendar] = (),
        exceptions: Iterable[CalendarException] = (),
    ):
        self._calendars: Tuple[RecurringCalendar, ...] = tuple(calendars)
        self._exceptions: Tuple[CalendarException, ...] = tuple(exceptions)

    @classmethod
    def from_records(
        cls,
        calendar_rows: Sequence[Mapping[str, Any]] = (),
        exception_rows: Sequence[Mapping[str, Any]] = (),
    ) -> "InMemoryCalendarStore":
        return cls(
            [RecurringCalendar.from_dict(row) for row in calendar_rows],
            [CalendarException.from_dict(row) for row in exception_rows],
        )

    def get_calendars(self) -> List[RecurringCalendar]:
        return list(self._calendars)

    def get_calendar_exceptions(self) -> List[CalendarException]:
        return list(self._exceptions)

    def __len__(self) -> int:
        return len(self._calendars)

    def __repr__(self) -> str:
        return (
            f"InMemoryCalendarStore(calendars={len(self._calendars)}, "
            f"exceptions={len(self._exceptions)})"
        )


__all__ = [
    "WEEKDAY_FIELDS",
    "ExceptionAction",
    "RecurringCalendar",
    "CalendarException",
    "CalendarStore",
    "InMemoryCalendarStore",
]
