"""Cron evaluation for scheduled-task templates.

Expressions are standard 5-field cron (minute, hour, day-of-month, month,
day-of-week) evaluated in the template's own timezone.  APScheduler's
``CronTrigger`` does the field matching; this module adapts two places where
its conventions differ from cron:

- day-of-week numbers: cron counts 0/7 = Sunday, APScheduler 0 = Monday.
  Numeric day-of-week fields are rewritten to weekday names.
- day-of-month *and* day-of-week restricted: cron fires when either matches,
  APScheduler requires both.  Such expressions become an ``OrTrigger`` of two
  single-restriction triggers.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

# Progressively wider look-back spans used to find the latest due minute
# without walking every match of a dense schedule.
_SEARCH_SPANS = (
    timedelta(hours=1),
    timedelta(days=1),
    timedelta(days=32),
    timedelta(days=367),
)


def _weekday_value(token: str) -> int:
    """Parse a weekday name or number; 7 is kept as-is for ranges like 1-7."""
    token = token.strip().lower()
    if token in _WEEKDAYS:
        return _WEEKDAYS.index(token)
    value = int(token)
    if not 0 <= value <= 7:
        msg = f"day-of-week out of range: {token}"
        raise ValueError(msg)
    return value


def _expand_day_of_week(field: str) -> list[int]:
    """Expand a cron day-of-week field into Sunday-based weekday numbers."""
    days: set[int] = set()
    for part in field.split(","):
        step = 1
        if "/" in part:
            part, step_str = part.split("/", 1)
            step = int(step_str)
            if step < 1:
                msg = f"invalid step in day-of-week: {field}"
                raise ValueError(msg)
        if part in ("*", "?"):
            lo, hi = 0, 6
        elif "-" in part:
            lo_str, hi_str = part.split("-", 1)
            lo, hi = _weekday_value(lo_str), _weekday_value(hi_str)
            if hi < lo:
                msg = f"invalid day-of-week range: {part}"
                raise ValueError(msg)
        else:
            lo = _weekday_value(part)
            hi = lo if step == 1 else 6
        days.update(d % 7 for d in range(lo, hi + 1, step))
    return sorted(days)


def _day_of_week_names(field: str) -> str:
    if field in ("*", "?"):
        return "*"
    return ",".join(_WEEKDAYS[d] for d in _expand_day_of_week(field))


@lru_cache(maxsize=256)
def build_trigger(expr: str, timezone: str) -> BaseTrigger:
    """Build an APScheduler trigger with standard cron semantics.

    Raises:
        ValueError: the expression or timezone is invalid.
    """
    fields = expr.split()
    if len(fields) != 5:
        msg = f"Expected 5 cron fields, got {len(fields)}: {expr!r}"
        raise ValueError(msg)
    try:
        tz = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        msg = f"Unknown timezone: {timezone}"
        raise ValueError(msg) from exc

    minute, hour, day, month, dow = fields
    try:
        day_of_week = _day_of_week_names(dow)
        common = {"minute": minute, "hour": hour, "month": month, "timezone": tz}

        # Vixie cron rule: a field starting with '*' is unrestricted.
        if not day.startswith("*") and not dow.startswith("*") and dow != "?":
            return OrTrigger([
                CronTrigger(day=day, **common),
                CronTrigger(day_of_week=day_of_week, **common),
            ])
        return CronTrigger(day=day, day_of_week=day_of_week, **common)
    except ValueError as exc:
        msg = f"Invalid cron expression {expr!r}: {exc}"
        raise ValueError(msg) from exc


def validate(expr: str, timezone: str) -> bool:
    """True if *expr* is a usable cron expression in *timezone*."""
    try:
        build_trigger(expr, timezone)
    except ValueError:
        return False
    return True


def floor_minute(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def _latest_between(trigger: BaseTrigger, start: datetime, now: datetime) -> datetime | None:
    latest = None
    fire = trigger.get_next_fire_time(None, start)
    while fire is not None and fire <= now:
        latest = fire
        fire = trigger.get_next_fire_time(None, fire + timedelta(minutes=1))
    return latest


def due_minute(
    expr: str,
    timezone: str,
    now: datetime,
    last_fired: datetime | None,
    window: timedelta,
) -> datetime | None:
    """Return the matching minute a template should materialise for, if any.

    The search range is everything after the minute of *last_fired* up to
    *now*; a template that never fired looks back one check *window*.  When
    several matches fall in range (the process was down) only the latest is
    returned, so a backlog collapses into a single fire.

    Raises:
        ValueError: the expression or timezone is invalid.
    """
    trigger = build_trigger(expr, timezone)
    tz = ZoneInfo(timezone)
    now_local = now.astimezone(tz)

    if last_fired is None:
        start = now_local - window
    else:
        start = floor_minute(last_fired.astimezone(tz)) + timedelta(minutes=1)
    if start > now_local:
        return None

    first = trigger.get_next_fire_time(None, start)
    if first is None or first > now_local:
        return None

    for span in _SEARCH_SPANS:
        lower = max(start, now_local - span)
        latest = _latest_between(trigger, lower, now_local)
        if latest is not None:
            return latest
    return _latest_between(trigger, start, now_local)


def should_fire(
    expr: str,
    timezone: str,
    now: datetime,
    last_fired: datetime | None,
    window: timedelta,
) -> bool:
    """True if the template has an unmaterialised matching minute at *now*."""
    return due_minute(expr, timezone, now, last_fired, window) is not None
