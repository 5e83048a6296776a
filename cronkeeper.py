#!/usr/bin/env python3
"""
cronkeeper.py

UNIX crontab-style schedule evaluator with a once-a-minute schedule manager.

Rules use five whitespace-separated fields::

    +---------------- minute (0 - 59)
    |  +------------- hour (0 - 23)
    |  |  +---------- day of month (1 - 31)
    |  |  |  +------- month (1 - 12)
    |  |  |  |  +---- day of week (0 - 6) (Sunday=0)
    |  |  |  |  |
    *  *  *  *  *

Each field is one of ``*``, ``*/n``, ``a-b``, ``a-b/n`` or ``a,b,c``.
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
import threading
import time
from dataclasses import dataclass
from datetime import MAXYEAR, datetime, timedelta, timezone, tzinfo
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


LOG_FILE = "cronkeeper.log"
DEFAULT_CONFIG = "cronkeeper.yaml"
LOCALTIME_PATH = Path("/etc/localtime")
DEFAULT_RULE = "* * * * *"
DEFAULT_MANAGER_NAME = "ScheduleManager"
DEFAULT_PREVIEW_COUNT = 5
STOP_TIMEOUT_SECONDS = 5.0

ANY_RE = re.compile(r"\*")
RANGE_WITH_EVERY_N_RE = re.compile(r"([0-9]+)-([0-9]+)/([0-9]+)")
EVERY_N_RE = re.compile(r"\*/([0-9]+)")
RANGE_RE = re.compile(r"([0-9]+)-([0-9]+)")
SPECIFIC_RE = re.compile(r"[0-9][0-9,]*")


class ScheduleError(Exception):
    """Base error for cronkeeper."""


class ParseError(ScheduleError):
    """Rule or schedule part text is malformed."""


class ConfigError(ScheduleError):
    """Config validation error."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("cronkeeper")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc

# Returned by previous_time_due/next_time_due when no due time exists.
MIN_TIME_DUE = datetime.min.replace(tzinfo=UTC)
MAX_TIME_DUE = datetime.max.replace(tzinfo=UTC)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def local_timezone() -> tzinfo:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz
    tz_name = os.environ.get("TZ")
    zone: Optional[ZoneInfo] = None
    if tz_name:
        try:
            zone = ZoneInfo(tz_name.lstrip(":"))
        except (ZoneInfoNotFoundError, ValueError):
            pass
    else:
        zone = _zone_from_localtime(LOCALTIME_PATH)
    if zone is not None:
        return zone
    # Last resort: today's offset, without DST rules.
    return local_tz or UTC


def _zone_from_localtime(path: Path) -> Optional[ZoneInfo]:
    """Load the system zone that ``/etc/localtime`` links to or contains."""
    if not path.exists():
        return None
    resolved = path.resolve().as_posix()
    if "/zoneinfo/" in resolved:
        key = resolved.split("/zoneinfo/", 1)[1]
        try:
            return ZoneInfo(key)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    try:
        with path.open("rb") as handle:
            return ZoneInfo.from_file(handle, key=path.name)
    except (OSError, ValueError):
        return None


# =============================================================================
# Schedule parts
# =============================================================================


class DateTimePart(Enum):
    """Date/time element a schedule part represents, in crontab field order."""

    MINUTE = "Minute"
    HOUR = "Hour"
    DAY = "Day"
    MONTH = "Month"
    DAY_OF_WEEK = "DayOfWeek"


class ValueTextSyntax(Enum):
    ANY = "any"
    EVERY_N = "every_n"
    RANGE = "range"
    SPECIFIC = "specific"
    RANGE_WITH_EVERY_N = "range_with_every_n"


PART_LIMITS: Dict[DateTimePart, Tuple[int, int]] = {
    DateTimePart.MINUTE: (0, 59),
    DateTimePart.HOUR: (0, 23),
    DateTimePart.DAY: (1, 31),
    DateTimePart.MONTH: (1, 12),
    DateTimePart.DAY_OF_WEEK: (0, 6),
}


@dataclass(frozen=True)
class ParsedField:
    syntax: ValueTextSyntax
    values: Tuple[int, ...]


def _stepped(low: int, high: int, step: int) -> Tuple[int, ...]:
    return tuple(range(low, high + 1, step))


def parse_field(text: str, part: DateTimePart) -> ParsedField:
    """Classify one rule field and expand it into its legal values.

    Patterns are tried in a fixed order. When a pattern matches the text but
    its numeric checks fail, the field is rejected without trying the rest.
    High bounds, ``*/n`` steps and specific values are reduced modulo the
    field maximum before validation.
    """
    min_value, max_value = PART_LIMITS[part]
    invalid = ParseError(f'Text "{text}" is not valid for {part.value} schedule part.')

    if not isinstance(text, str):
        raise invalid

    if ANY_RE.fullmatch(text):
        return ParsedField(ValueTextSyntax.ANY, _stepped(min_value, max_value, 1))

    match = RANGE_WITH_EVERY_N_RE.fullmatch(text)
    if match:
        low = int(match.group(1))
        high = int(match.group(2)) % max_value
        step = int(match.group(3))
        if low < high and low >= min_value and high <= max_value and 0 < step <= max_value:
            return ParsedField(ValueTextSyntax.RANGE_WITH_EVERY_N, _stepped(low, high, step))
        raise invalid

    match = EVERY_N_RE.fullmatch(text)
    if match:
        step = int(match.group(1)) % max_value
        if 0 < step <= max_value:
            return ParsedField(ValueTextSyntax.EVERY_N, _stepped(min_value, max_value, step))
        raise invalid

    match = RANGE_RE.fullmatch(text)
    if match:
        low = int(match.group(1))
        high = int(match.group(2)) % max_value
        if low < high and low >= min_value and high <= max_value:
            return ParsedField(ValueTextSyntax.RANGE, _stepped(low, high, 1))
        raise invalid

    if SPECIFIC_RE.fullmatch(text):
        values: List[int] = []
        for token in text.split(","):
            if not token:
                raise invalid
            value = int(token) % max_value
            if not min_value <= value <= max_value:
                raise invalid
            if value not in values:
                values.append(value)
        return ParsedField(ValueTextSyntax.SPECIFIC, tuple(values))

    raise invalid


def _project(moment: datetime, part: DateTimePart) -> Optional[int]:
    if part is DateTimePart.MINUTE:
        return moment.minute
    if part is DateTimePart.HOUR:
        return moment.hour
    if part is DateTimePart.DAY:
        return moment.day
    if part is DateTimePart.MONTH:
        return moment.month
    if part is DateTimePart.DAY_OF_WEEK:
        # datetime.weekday() is Monday=0; cron is Sunday=0.
        return (moment.weekday() + 1) % 7
    return None


class SchedulePart:
    """One parsed field of a schedule rule."""

    def __init__(self, value_text: str, date_time_part: DateTimePart) -> None:
        parsed = parse_field(value_text, date_time_part)
        self._value_text = value_text
        self._date_time_part = date_time_part
        self._syntax = parsed.syntax
        self._values = parsed.values

    @property
    def value_text(self) -> str:
        return self._value_text

    @property
    def date_time_part(self) -> DateTimePart:
        return self._date_time_part

    @property
    def value_text_syntax(self) -> ValueTextSyntax:
        return self._syntax

    @property
    def values(self) -> Tuple[int, ...]:
        return self._values

    @property
    def description(self) -> str:
        label = self._date_time_part.value
        text = self._value_text
        if self._syntax is ValueTextSyntax.ANY:
            return f"Any {label}"
        if self._syntax is ValueTextSyntax.EVERY_N:
            return f"Every {text.split('/')[1]} {label}(s)"
        if self._syntax is ValueTextSyntax.RANGE:
            low, high = text.split("-")
            return f"{label} {low} to {high}"
        if self._syntax is ValueTextSyntax.SPECIFIC:
            return f"{label} {text}"
        if self._syntax is ValueTextSyntax.RANGE_WITH_EVERY_N:
            low, rest = text.split("-")
            high, step = rest.split("/")
            return f"{low} to {high} every {step} {label}(s)"
        return ""

    def matches(self, moment: datetime) -> bool:
        value = _project(moment, self._date_time_part)
        if value is None:
            return False
        return value in self._values

    def __repr__(self) -> str:
        return f"SchedulePart({self._value_text!r}, {self._date_time_part})"


@dataclass(frozen=True)
class RuleParts:
    minute: SchedulePart
    hour: SchedulePart
    day: SchedulePart
    month: SchedulePart
    day_of_week: SchedulePart

    def __iter__(self) -> Iterator[SchedulePart]:
        return iter((self.minute, self.hour, self.day, self.month, self.day_of_week))

    @property
    def rule(self) -> str:
        return " ".join(part.value_text for part in self)

    @property
    def description(self) -> str:
        return ", ".join(part.description for part in self)


def parse_rule(rule: str) -> RuleParts:
    if not isinstance(rule, str) or not rule.strip():
        raise ParseError("Schedule rule cannot be empty.")
    fields = rule.split()
    if len(fields) != 5:
        raise ParseError("Schedule rule must have exactly 5 parts (Example: * * * * *)")
    return RuleParts(
        minute=SchedulePart(fields[0], DateTimePart.MINUTE),
        hour=SchedulePart(fields[1], DateTimePart.HOUR),
        day=SchedulePart(fields[2], DateTimePart.DAY),
        month=SchedulePart(fields[3], DateTimePart.MONTH),
        day_of_week=SchedulePart(fields[4], DateTimePart.DAY_OF_WEEK),
    )


# =============================================================================
# Wall-clock stepping
# =============================================================================

_ONE_MINUTE = timedelta(minutes=1)
_UNIT_LENGTH = {
    DateTimePart.MINUTE: timedelta(minutes=1),
    DateTimePart.HOUR: timedelta(hours=1),
    DateTimePart.DAY: timedelta(days=1),
}


def _truncate(moment: datetime, unit: DateTimePart) -> datetime:
    moment = moment.replace(second=0, microsecond=0)
    if unit is DateTimePart.MINUTE:
        return moment
    moment = moment.replace(minute=0)
    if unit is DateTimePart.HOUR:
        return moment
    moment = moment.replace(hour=0)
    if unit is DateTimePart.DAY:
        return moment
    return moment.replace(day=1)


def _step_back(moment: datetime, unit: DateTimePart) -> datetime:
    """Last minute before the ``unit`` that contains ``moment``."""
    return _truncate(moment, unit) - _ONE_MINUTE


def _step_forward(moment: datetime, unit: DateTimePart) -> datetime:
    """First minute of the ``unit`` after the one that contains ``moment``."""
    start = _truncate(moment, unit)
    if unit is DateTimePart.MONTH:
        if start.month < 12:
            return start.replace(month=start.month + 1)
        if start.year >= MAXYEAR:
            raise OverflowError("date value out of range")
        return start.replace(year=start.year + 1, month=1)
    return start + _UNIT_LENGTH[unit]


def _is_nonexistent_local(wall_time: datetime, tz: tzinfo) -> bool:
    assumed = wall_time.replace(tzinfo=tz, fold=0)
    roundtrip = assumed.astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return roundtrip != wall_time


def _fold_span(wall_time: datetime, tz: tzinfo) -> timedelta:
    """Length of the repeated hour ``wall_time`` falls in, or zero."""
    first = wall_time.replace(tzinfo=tz, fold=0).utcoffset()
    second = wall_time.replace(tzinfo=tz, fold=1).utcoffset()
    if first is None or second is None or first <= second:
        return timedelta(0)
    return first - second


def _readings(wall_time: datetime, tz: tzinfo) -> Tuple[datetime, ...]:
    """Every instant that shows ``wall_time`` on a clock in ``tz``."""
    first = wall_time.replace(tzinfo=tz, fold=0)
    if _fold_span(wall_time, tz):
        return first, wall_time.replace(tzinfo=tz, fold=1)
    return (first,)


# =============================================================================
# Schedule
# =============================================================================


class Schedule:
    """A named schedule defined using UNIX crontab syntax.

    Schedules compare equal when their names and rules are equal. A schedule
    is not internally synchronized: callers reassigning ``rule`` or calling
    ``is_due`` from several threads must serialize those calls themselves.
    Reads of the parsed rule always see one complete rule because the five
    parts are swapped in a single assignment.
    """

    def __init__(self, name: str, rule: str = DEFAULT_RULE, use_local_time: bool = False) -> None:
        self._name = _validate_name(name)
        self._parts = parse_rule(DEFAULT_RULE)
        self._description = self._parts.description
        self._last_due_at: Optional[datetime] = None
        self.rule = rule
        self.use_local_time = bool(use_local_time)

    @property
    def name(self) -> str:
        return self._name

    @name.setter
    def name(self, value: str) -> None:
        self._name = _validate_name(value)

    @property
    def rule(self) -> str:
        return self._parts.rule

    @rule.setter
    def rule(self, value: str) -> None:
        parts = parse_rule(value)
        self._parts = parts
        self._description = parts.description

    @property
    def parts(self) -> RuleParts:
        return self._parts

    @property
    def minute_part(self) -> SchedulePart:
        return self._parts.minute

    @property
    def hour_part(self) -> SchedulePart:
        return self._parts.hour

    @property
    def day_part(self) -> SchedulePart:
        return self._parts.day

    @property
    def month_part(self) -> SchedulePart:
        return self._parts.month

    @property
    def days_of_week_part(self) -> SchedulePart:
        return self._parts.day_of_week

    @property
    def description(self) -> str:
        return self._description

    @property
    def last_due_at(self) -> Optional[datetime]:
        return self._last_due_at

    @property
    def status(self) -> str:
        last_run = "Never" if self._last_due_at is None else self._last_due_at.strftime("%Y-%m-%d %H:%M.%S")
        return (
            f"             Schedule name: {self.name}\n"
            f"             Schedule rule: {self.rule}\n"
            f"          Rule description: {self.description}\n"
            f"             Last run time: {last_run}\n"
        )

    def evaluation_timezone(self) -> tzinfo:
        return local_timezone() if self.use_local_time else UTC

    def to_schedule_timezone(self, moment: datetime) -> datetime:
        zone = self.evaluation_timezone()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=zone)
        return moment.astimezone(zone)

    def matches(self, moment: datetime) -> bool:
        """Whether every part of the rule matches ``moment`` in the schedule's time zone."""
        current = self.to_schedule_timezone(moment)
        return all([part.matches(current) for part in self._parts])

    def is_due(self, at: Optional[datetime] = None) -> bool:
        """Check whether the schedule is due now, or at ``at`` when given.

        A successful check records the evaluated moment in ``last_due_at``.
        """
        current = self.to_schedule_timezone(at if at is not None else utc_now())
        if not self.matches(current):
            return False
        self._last_due_at = current
        return True

    def previous_time_due(self, target: datetime) -> datetime:
        """Nearest due time strictly before ``target``, or ``MIN_TIME_DUE``."""
        found = self._seek(target, forward=False)
        return MIN_TIME_DUE if found is None else found

    def next_time_due(self, target: datetime) -> datetime:
        """Nearest due time strictly after ``target``, or ``MAX_TIME_DUE``."""
        found = self._seek(target, forward=True)
        return MAX_TIME_DUE if found is None else found

    def _seek(self, target: datetime, forward: bool) -> Optional[datetime]:
        """Walk wall-clock minutes in the evaluation zone, comparing instants in UTC.

        A wall time inside a repeated (fall-back) hour has two readings, so
        the walk starts one repeated hour behind the target and keeps going
        while a reading from the other pass could still be closer.
        """
        if any(not part.values for part in self._parts):
            return None

        zone = self.evaluation_timezone()
        step = _step_forward if forward else _step_back
        best: Optional[datetime] = None
        best_utc: Optional[datetime] = None
        limit: Optional[datetime] = None
        try:
            current = self.to_schedule_timezone(target)
            target_utc = current.astimezone(UTC)
            start = current.replace(tzinfo=None)
            span = _fold_span(start, zone)
            if span:
                start = start - span if forward else start + span
            for wall in self._walls(start, step, zone):
                if limit is not None and (wall > limit if forward else wall < limit):
                    break
                for reading in _readings(wall, zone):
                    instant = reading.astimezone(UTC)
                    if (instant <= target_utc) if forward else (instant >= target_utc):
                        continue
                    if best_utc is None or ((instant < best_utc) if forward else (instant > best_utc)):
                        best, best_utc = reading, instant
                if best is None or limit is not None:
                    continue
                wall_span = _fold_span(wall, zone)
                # The first pass of a repeated hour precedes all of the second.
                if not wall_span or best.fold == (0 if forward else 1):
                    return best
                limit = wall + wall_span if forward else wall - wall_span
        except OverflowError:
            pass
        return best

    def _walls(
        self,
        start: datetime,
        step: Callable[[datetime, DateTimePart], datetime],
        zone: tzinfo,
    ) -> Iterator[datetime]:
        """Matching wall-clock minutes after (or before) ``start``, in walk order."""
        parts = self._parts
        check_gap = zone is not UTC
        cursor = step(start, DateTimePart.MINUTE)
        # Coarse to fine: every step re-enters at the month check so a
        # crossed boundary is re-validated against the coarser fields.
        while True:
            if not parts.month.matches(cursor):
                cursor = step(cursor, DateTimePart.MONTH)
                continue
            if not parts.day.matches(cursor) or not parts.day_of_week.matches(cursor):
                cursor = step(cursor, DateTimePart.DAY)
                continue
            if not parts.hour.matches(cursor):
                cursor = step(cursor, DateTimePart.HOUR)
                continue
            if not parts.minute.matches(cursor):
                cursor = step(cursor, DateTimePart.MINUTE)
                continue
            if not (check_gap and _is_nonexistent_local(cursor, zone)):
                yield cursor
            cursor = step(cursor, DateTimePart.MINUTE)

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, Schedule):
            return NotImplemented
        return self.name == other.name and self.rule == other.rule

    def __hash__(self) -> int:
        return hash(self.rule)

    def __str__(self) -> str:
        return f"{self.name}: {self.description}"

    def __repr__(self) -> str:
        return f"Schedule({self.name!r}, {self.rule!r}, use_local_time={self.use_local_time})"


def _validate_name(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ScheduleError("Schedule name cannot be empty.")
    return value


def next_times_due(schedule: Schedule, count: int, after: Optional[datetime] = None) -> List[datetime]:
    cursor = after or utc_now()
    runs: List[datetime] = []
    while len(runs) < count:
        nxt = schedule.next_time_due(cursor)
        if nxt == MAX_TIME_DUE:
            break
        runs.append(nxt)
        cursor = nxt
    return runs


def previous_times_due(schedule: Schedule, count: int, before: Optional[datetime] = None) -> List[datetime]:
    cursor = before or utc_now()
    runs: List[datetime] = []
    while len(runs) < count:
        prev = schedule.previous_time_due(cursor)
        if prev == MIN_TIME_DUE:
            break
        runs.append(prev)
        cursor = prev
    return runs


# =============================================================================
# Schedule manager
# =============================================================================


def seconds_until_next_minute(now: Optional[datetime] = None) -> float:
    current = now or utc_now()
    elapsed = current.second + current.microsecond / 1_000_000
    return max(60.0 - elapsed, 0.0)


class ScheduleManager:
    """Holds named schedules and checks them at the top of every minute.

    Listeners are plain callables appended to ``starting``/``started``
    (called with the manager) and ``schedule_due``/``schedule_due_check``
    (called with the schedule). A listener that raises is logged and skipped.
    """

    def __init__(self, name: str = DEFAULT_MANAGER_NAME) -> None:
        self._name = _validate_name(name)
        self._schedules: List[Schedule] = []
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._last_checked: Optional[datetime] = None
        self.starting: List[Callable[["ScheduleManager"], None]] = []
        self.started: List[Callable[["ScheduleManager"], None]] = []
        self.schedule_due: List[Callable[[Schedule], None]] = []
        self.schedule_due_check: List[Callable[[Schedule], None]] = []

    @property
    def name(self) -> str:
        return self._name

    @name.setter
    def name(self, value: str) -> None:
        self._name = _validate_name(value)

    @property
    def schedules(self) -> Tuple[Schedule, ...]:
        with self._lock:
            return tuple(self._schedules)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def enabled(self) -> bool:
        return self.is_running

    @enabled.setter
    def enabled(self, value: bool) -> None:
        # start()/stop() key on the worker thread, so disabling also cancels the first-minute wait.
        if value:
            self.start()
        else:
            self.stop()

    @property
    def status(self) -> str:
        schedules = self.schedules
        lines = [f"       Number of schedules: {len(schedules):,}"]
        for idx, schedule in enumerate(schedules, start=1):
            lines.append("")
            lines.append(f"Schedule {idx:,}:")
            lines.append(schedule.status.rstrip("\n"))
        return "\n".join(lines) + "\n"

    def add_schedule(
        self,
        schedule_name: str,
        schedule_rule: str,
        use_local_time: bool = False,
        update_existing: bool = False,
    ) -> bool:
        existing = self.find_schedule(schedule_name)
        if existing is None:
            schedule = Schedule(schedule_name, schedule_rule, use_local_time)
            with self._lock:
                self._schedules.append(schedule)
            logger.info("Added schedule %s (%s)", schedule.name, schedule.rule)
            return True

        if not update_existing:
            return False

        # Parse before touching the existing schedule so a bad rule leaves it intact.
        parse_rule(schedule_rule)
        existing.name = schedule_name
        existing.rule = schedule_rule
        existing.use_local_time = bool(use_local_time)
        logger.info("Updated schedule %s (%s)", existing.name, existing.rule)
        return True

    def remove_schedule(self, schedule_name: str) -> bool:
        schedule = self.find_schedule(schedule_name)
        if schedule is None:
            return False
        with self._lock:
            self._schedules.remove(schedule)
        logger.info("Removed schedule %s", schedule.name)
        return True

    def find_schedule(self, schedule_name: str) -> Optional[Schedule]:
        wanted = schedule_name.casefold() if isinstance(schedule_name, str) else None
        with self._lock:
            return next((s for s in self._schedules if s.name.casefold() == wanted), None)

    def check_all_schedules(self, at: Optional[datetime] = None) -> List[Schedule]:
        due: List[Schedule] = []
        for schedule in self.schedules:
            self._notify(self.schedule_due_check, schedule)
            if schedule.is_due(at):
                logger.info("Schedule %s is due", schedule.name)
                due.append(schedule)
                self._notify(self.schedule_due, schedule)
        return due

    def start(self) -> None:
        if self._thread is not None:
            return
        # Each run owns its stop event so a thread that outlived stop() never resumes.
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop_event,),
            daemon=True,
            name=f"cronkeeper-{self.name}",
        )
        self._thread.start()

    def stop(self, timeout_seconds: float = STOP_TIMEOUT_SECONDS) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=timeout_seconds)
            if thread.is_alive():
                logger.warning("Schedule manager %s did not stop within %.1fs", self.name, timeout_seconds)
        self._thread = None
        self._running = False

    def close(self) -> None:
        self.stop()

    def __enter__(self) -> "ScheduleManager":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _run(self, stop_event: threading.Event) -> None:
        self._notify(self.starting, self)
        # Align the first check with the top of the minute.
        if stop_event.wait(seconds_until_next_minute() + 0.05):
            return
        self._running = True
        logger.info("Schedule manager %s started with %s schedule(s)", self.name, len(self.schedules))
        self._notify(self.started, self)
        while not stop_event.is_set():
            minute = utc_now().replace(second=0, microsecond=0)
            if minute != self._last_checked:
                self._last_checked = minute
                try:
                    self.check_all_schedules()
                except Exception as exc:  # pragma: no cover
                    logger.warning("Schedule check failed: %s", str(exc))
            # Wake just past the boundary; the minute guard absorbs early wakeups.
            stop_event.wait(seconds_until_next_minute() + 0.05)
        if self._thread is threading.current_thread():
            self._running = False
        logger.info("Schedule manager %s stopped", self.name)

    def _notify(self, listeners: List[Callable[..., None]], subject: Any) -> None:
        for listener in list(listeners):
            try:
                listener(subject)
            except Exception as exc:
                logger.warning("Listener %r failed for %s: %s", listener, subject, str(exc))


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class ScheduleSpec:
    name: str
    rule: str
    use_local_time: bool


@dataclass(frozen=True)
class ManagerSpec:
    name: str
    schedules: List[ScheduleSpec]


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_config(config_path: Path) -> ManagerSpec:
    payload = _load_config_payload(config_path)

    unknown_top = set(payload.keys()) - {"version", "manager", "defaults", "schedules"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    manager_raw = payload.get("manager", {}) or {}
    if not isinstance(manager_raw, dict):
        raise ConfigError("Error: manager must be a mapping.")
    unknown_manager = set(manager_raw.keys()) - {"name"}
    if unknown_manager:
        raise ConfigError(f"Error: Unknown keys in manager: {sorted(unknown_manager)}.")
    manager_name = ensure_str(manager_raw.get("name", DEFAULT_MANAGER_NAME), "manager.name")

    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise ConfigError("Error: defaults must be a mapping.")
    unknown_defaults = set(defaults.keys()) - {"use_local_time"}
    if unknown_defaults:
        raise ConfigError(f"Error: Unknown keys in defaults: {sorted(unknown_defaults)}.")
    default_local = ensure_bool(defaults.get("use_local_time"), "defaults.use_local_time", False)

    schedules_raw = payload.get("schedules")
    if not isinstance(schedules_raw, list) or not schedules_raw:
        raise ConfigError("Error: schedules must be a non-empty list.")

    seen_names: Set[str] = set()
    schedules: List[ScheduleSpec] = []
    for idx, schedule_raw in enumerate(schedules_raw):
        path = f"schedules[{idx}]"
        if not isinstance(schedule_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")
        unknown = set(schedule_raw.keys()) - {"name", "rule", "use_local_time"}
        if unknown:
            raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown)}.")

        name = ensure_str(schedule_raw.get("name"), f"{path}.name")
        if name.casefold() in seen_names:
            raise ConfigError(f'Error: Duplicate schedule name "{name}".')
        seen_names.add(name.casefold())

        rule = ensure_str(schedule_raw.get("rule", DEFAULT_RULE), f"{path}.rule")
        try:
            rule = parse_rule(rule).rule
        except ParseError as exc:
            raise ConfigError(f'Error: Invalid rule "{rule}" at {path}.rule: {exc}') from exc

        use_local_time = ensure_bool(schedule_raw.get("use_local_time"), f"{path}.use_local_time", default_local)
        schedules.append(ScheduleSpec(name=name, rule=rule, use_local_time=use_local_time))

    return ManagerSpec(name=manager_name, schedules=schedules)


def build_manager(spec: ManagerSpec) -> ScheduleManager:
    manager = ScheduleManager(spec.name)
    for schedule in spec.schedules:
        manager.add_schedule(schedule.name, schedule.rule, schedule.use_local_time)
    return manager


def load_manager(config_path: Path) -> ScheduleManager:
    return build_manager(parse_config(config_path))


# =============================================================================
# Commands
# =============================================================================


def select_schedules(manager: ScheduleManager, schedule_name: Optional[str]) -> List[Schedule]:
    if not schedule_name:
        return list(manager.schedules)
    schedule = manager.find_schedule(schedule_name)
    if schedule is None:
        raise ScheduleError(f'Unknown schedule "{schedule_name}".')
    return [schedule]


def command_validate(config_path: Path) -> int:
    manager = load_manager(config_path)
    print(f"Config valid: {config_path}")
    print(f"Manager: {manager.name}")
    print(f"Total schedules: {len(manager.schedules)}")
    for schedule in manager.schedules:
        zone = "local" if schedule.use_local_time else "UTC"
        print(f"- {schedule.name}: {schedule.rule} ({zone}) | {schedule.description}")
    return 0


def _print_times(schedules: List[Schedule], count: int, forward: bool) -> None:
    now = utc_now()
    for schedule in schedules:
        print("=" * 80)
        print(str(schedule))
        print(f"Rule: {schedule.rule}")
        if forward:
            print(f"Next {count} due time(s):")
            runs = next_times_due(schedule, count, after=now)
        else:
            print(f"Previous {count} due time(s):")
            runs = previous_times_due(schedule, count, before=now)
        if not runs:
            print("- none")
        for run_dt in runs:
            print(f"- {run_dt.isoformat()}")
    print("=" * 80)


def command_preview(config_path: Path, schedule_name: Optional[str], count: int) -> int:
    manager = load_manager(config_path)
    _print_times(select_schedules(manager, schedule_name), count, forward=True)
    return 0


def command_history(config_path: Path, schedule_name: Optional[str], count: int) -> int:
    manager = load_manager(config_path)
    _print_times(select_schedules(manager, schedule_name), count, forward=False)
    return 0


def command_explain(rule: str, use_local_time: bool, count: int) -> int:
    schedule = Schedule("rule", rule, use_local_time)
    _print_times([schedule], count, forward=True)
    return 0


def command_check(config_path: Path) -> int:
    manager = load_manager(config_path)
    due = manager.check_all_schedules()
    if not due:
        print("No schedules due.")
    for schedule in due:
        print(f"Due: {schedule.name} ({schedule.rule})")
    return 0


def command_status(config_path: Path) -> int:
    manager = load_manager(config_path)
    print(manager.status, end="")
    return 0


def command_daemon(config_path: Path) -> int:
    manager = load_manager(config_path)
    manager.schedule_due.append(lambda schedule: logger.info("Due: %s", schedule))
    logger.info("Starting daemon with %s schedule(s)", len(manager.schedules))
    manager.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        manager.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="cronkeeper crontab-style schedule evaluator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to cronkeeper YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config and list schedules")
    validate_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming due times")
    preview_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    preview_parser.add_argument("--schedule", help="Preview a single schedule by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Due time count")

    history_parser = subparsers.add_parser("history", help="Show past due times")
    history_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    history_parser.add_argument("--schedule", help="Show a single schedule by name")
    history_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Due time count")

    explain_parser = subparsers.add_parser("explain", help="Describe an ad-hoc rule")
    explain_parser.add_argument("rule", help='Rule in crontab syntax, e.g. "*/15 9-17 * * 1-5"')
    explain_parser.add_argument("--local", action="store_true", help="Evaluate in local time instead of UTC")
    explain_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Due time count")

    check_parser = subparsers.add_parser("check", help="Check all schedules once")
    check_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    status_parser = subparsers.add_parser("status", help="Show manager status")
    status_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    daemon_parser = subparsers.add_parser("daemon", help="Run the schedule manager loop")
    daemon_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(getattr(args, "config", None) or DEFAULT_CONFIG).resolve()

    try:
        if args.command in {"preview", "history", "explain"} and args.count <= 0:
            raise ScheduleError("--count must be >= 1")
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            return command_preview(config_path, schedule_name=args.schedule, count=args.count)
        if args.command == "history":
            return command_history(config_path, schedule_name=args.schedule, count=args.count)
        if args.command == "explain":
            return command_explain(args.rule, use_local_time=args.local, count=args.count)
        if args.command == "check":
            return command_check(config_path)
        if args.command == "status":
            return command_status(config_path)
        if args.command == "daemon":
            return command_daemon(config_path)
        raise ScheduleError(f"Unsupported command: {args.command}")
    except ScheduleError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
