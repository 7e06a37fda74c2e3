"""
Service Calendar Resolution

Determines which service IDs are running at a given instant so that block and
trip assignments can be selected for observed vehicles.

Resolution pipeline (per query, nothing cached):
1. Active calendars: calendars whose date range covers the agency-local date.
   If none do, every calendar sharing the latest end date is used instead so
   the system keeps running on stale data.
2. Weekday match: keep active calendars flagged for the local weekday.
3. Exceptions: apply that date's ADD/REMOVE exceptions in store order.

When the fallback in step 1 kicks in and the calendars have genuinely expired
(not merely started later than a near-midnight lookup of the previous day),
an ERROR is logged so someone refreshes the schedule data. Resolution itself
never fails on degraded calendar data.

Local dates and weekdays are derived with pure functions over ZoneInfo, so a
ServiceCalendar can be shared between threads without locking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo
import json
import logging
import os

from calendar_store import CalendarException, CalendarStore, RecurringCalendar


logger = logging.getLogger(__name__)

# Configuration constants
DEFAULT_SERVICE_CALENDAR_CONFIG_PATH = Path("config/service_calendar.json")
DEFAULT_DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]
DEFAULT_AGENCY_TIMEZONE = os.getenv("AGENCY_TIMEZONE", "America/New_York")


# Time plumbing

def local_datetime(instant: datetime, tz: ZoneInfo) -> datetime:
    """Convert an instant to agency-local time. Naive instants are taken as UTC."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(tz)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    return local_datetime(instant, tz).date()


def day_of_week(instant: datetime, tz: ZoneInfo) -> int:
    """Agency-local weekday of an instant, Monday=0 through Sunday=6."""
    return local_datetime(instant, tz).weekday()


def from_epoch_ms(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=timezone.utc)


# Active-calendar selection

@dataclass
class ActiveCalendarSelection:
    """
    Calendars considered active for an instant.

    fallback_triggered is set when no calendar covered the date and the
    latest-ending calendars were used instead. fallback_is_error_worthy is
    set when that fallback means the calendars really have expired.
    Unpacks as (calendars, fallback_triggered, fallback_is_error_worthy).
    """
    calendars: List[RecurringCalendar] = field(default_factory=list)
    fallback_triggered: bool = False
    fallback_is_error_worthy: bool = False

    def __iter__(self) -> Iterator:
        return iter((self.calendars, self.fallback_triggered, self.fallback_is_error_worthy))


def select_active_calendars(
    calendars: Sequence[RecurringCalendar],
    instant: datetime,
    tz: ZoneInfo,
) -> ActiveCalendarSelection:
    """
    Select the calendars whose inclusive date range covers the local date.

    If none qualify, fall back to every calendar whose end date equals the
    latest end date of all calendars (ties included). The fallback is only
    error-worthy when the earliest start date among the fallback calendars is
    not after the query date; a later start just means the caller is looking
    at the previous service day right before new calendars begin.
    """
    if not calendars:
        return ActiveCalendarSelection()

    query_date = local_date(instant, tz)
    active = [c for c in calendars if c.covers(query_date)]
    if active:
        return ActiveCalendarSelection(calendars=active)

    max_end_date = max(c.end_date for c in calendars)
    fallback = [c for c in calendars if c.end_date == max_end_date]
    earliest_start = min(c.start_date for c in fallback)
    return ActiveCalendarSelection(
        calendars=fallback,
        fallback_triggered=True,
        fallback_is_error_worthy=not earliest_start > query_date,
    )


# Weekday matching

def matches_weekday(calendar: RecurringCalendar, instant: datetime, tz: ZoneInfo) -> bool:
    """True if the calendar runs on the instant's local weekday. Ignores the date range."""
    return calendar.runs_on(day_of_week(instant, tz))


# Exception overlay

def apply_exceptions(
    base_service_ids: Sequence[str],
    exceptions: Sequence[CalendarException],
    instant: datetime,
    tz: ZoneInfo,
) -> List[str]:
    """
    Overlay the instant's date exceptions onto the weekday-matched IDs.

    Exceptions are applied in the order given. ADD appends the service ID
    even if it is already present. REMOVE drops only the first occurrence
    and is a no-op when the ID is absent.
    """
    query_date = local_date(instant, tz)
    service_ids = list(base_service_ids)
    for exception in exceptions:
        if exception.date != query_date:
            continue
        if exception.adds_service:
            service_ids.append(exception.service_id)
        elif exception.service_id in service_ids:
            service_ids.remove(exception.service_id)
    return service_ids


# Diagnostics

def report_expired_calendars(fallback_calendars: Sequence[RecurringCalendar]) -> None:
    """Raise the expired-calendars alarm. Never raises itself."""
    try:
        logger.error("[service_calendar] All calendars were expired. Update them!")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[service_calendar] continuing with the old calendars so the system keeps running: %s",
                [c.to_dict() for c in fallback_calendars],
            )
    except Exception as exc:
        logger.warning(f"[service_calendar] failed to report expired calendars: {exc}")


class ServiceCalendar:
    """
    Resolves the service IDs in effect for an instant.

    Calendars and exceptions come from the injected CalendarStore on every
    call; nothing is cached, so store updates take effect immediately.
    """

    def __init__(
        self,
        store: CalendarStore,
        *,
        tz: Union[ZoneInfo, str, None] = None,
        reporter: Optional[Callable[[Sequence[RecurringCalendar]], None]] = None,
    ):
        self.store = store
        if tz is None:
            tz = DEFAULT_AGENCY_TIMEZONE
        self.tz = tz if isinstance(tz, ZoneInfo) else ZoneInfo(tz)
        self.reporter = reporter or report_expired_calendars

    @classmethod
    def from_config(
        cls,
        store: CalendarStore,
        config: Optional["ServiceCalendarConfig"] = None,
    ) -> "ServiceCalendar":
        if config is None:
            config = load_service_calendar_config()
        return cls(store, tz=config.timezone)

    def day_of_week(self, instant: datetime) -> int:
        return day_of_week(instant, self.tz)

    def active_calendars(self, instant: datetime) -> List[RecurringCalendar]:
        """Active calendars for the instant, alarming once if they have all expired."""
        selection = select_active_calendars(self.store.get_calendars(), instant, self.tz)
        if selection.fallback_is_error_worthy:
            self._report(selection.calendars)
        return selection.calendars

    def _report(self, fallback_calendars: List[RecurringCalendar]) -> None:
        try:
            self.reporter(fallback_calendars)
        except Exception as exc:
            logger.warning(f"[service_calendar] expired calendar reporter failed: {exc}")

    def resolve(self, instant: datetime) -> List[str]:
        """Ordered service IDs active at the instant. May contain duplicates."""
        service_ids = [
            c.service_id for c in self.active_calendars(instant) if matches_weekday(c, instant, self.tz)
        ]
        logger.debug(
            "[service_calendar] for %s services active from calendars are %s",
            instant.isoformat(),
            service_ids,
        )

        logger.info("[service_calendar] start applying calendar exceptions")
        service_ids = apply_exceptions(
            service_ids, self.store.get_calendar_exceptions(), instant, self.tz
        )
        logger.info("[service_calendar] finished applying calendar exceptions")
        return service_ids

    def resolve_calendars(self, instant: datetime) -> List[RecurringCalendar]:
        """
        Calendars backing each resolved service ID, in resolved order.

        Each ID maps to the first calendar with that service ID. IDs with no
        calendar (added purely by an exception) are left out; use resolve()
        when the IDs themselves are needed.
        """
        all_calendars = self.store.get_calendars()
        result: List[RecurringCalendar] = []
        for service_id in self.resolve(instant):
            calendar = next((c for c in all_calendars if c.service_id == service_id), None)
            if calendar is not None:
                result.append(calendar)
        return result

    def resolve_epoch_ms(self, epoch_ms: int) -> List[str]:
        return self.resolve(from_epoch_ms(epoch_ms))

    def resolve_calendars_epoch_ms(self, epoch_ms: int) -> List[RecurringCalendar]:
        return self.resolve_calendars(from_epoch_ms(epoch_ms))

    def resolve_service_date(self, service_date: date) -> List[str]:
        """Service IDs for a whole service date, evaluated at local noon."""
        return self.resolve(datetime.combine(service_date, time(12, 0), tzinfo=self.tz))


# Configuration loading

@dataclass
class ServiceCalendarConfig:
    timezone: str = DEFAULT_AGENCY_TIMEZONE


def _read_data_file(
    path: Path,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> Tuple[Optional[Path], Optional[str]]:
    """Read a data file from one of the configured data directories."""
    if data_dirs is None:
        data_dirs = DEFAULT_DATA_DIRS
    path_obj = Path(path)
    candidates: List[Path]
    if path_obj.is_absolute():
        candidates = [path_obj]
    else:
        candidates = [base / path_obj for base in data_dirs]
        candidates.append(path_obj)
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            return candidate, candidate.read_text()
        except Exception as exc:
            logger.warning(f"[service_calendar] failed to read config file {candidate}: {exc}")
            return candidate, None
    return None, None


def load_service_calendar_config(
    path: Path = DEFAULT_SERVICE_CALENDAR_CONFIG_PATH,
    *,
    data_dirs: Optional[Sequence[Path]] = None,
) -> ServiceCalendarConfig:
    """Load the agency time zone from JSON, falling back to defaults on any problem."""
    config = ServiceCalendarConfig()
    resolved_path, raw_text = _read_data_file(path, data_dirs=data_dirs)
    if not raw_text:
        return config
    try:
        raw = json.loads(raw_text)
    except Exception as exc:
        logger.warning(f"[service_calendar] failed to load config {resolved_path or path}: {exc}")
        return config
    tz_name = raw.get("timezone") if isinstance(raw, dict) else None
    if not isinstance(tz_name, str) or not tz_name.strip():
        return config
    tz_name = tz_name.strip()
    try:
        ZoneInfo(tz_name)
    except Exception as exc:
        logger.warning(f"[service_calendar] unknown timezone {tz_name!r} in {resolved_path}: {exc}")
        return config
    config.timezone = tz_name
    return config


__all__ = [
    "DEFAULT_AGENCY_TIMEZONE",
    "ActiveCalendarSelection",
    "ServiceCalendar",
    "ServiceCalendarConfig",
    "apply_exceptions",
    "day_of_week",
    "from_epoch_ms",
    "load_service_calendar_config",
    "local_date",
    "local_datetime",
    "matches_weekday",
    "report_expired_calendars",
    "select_active_calendars",
]
