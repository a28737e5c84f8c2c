"""
Schedule arithmetic: cron expressions, one-off times and job ids.

Cron expressions use the standard five fields
(minute hour day-of-month month day-of-week) and are evaluated on local
wall-clock time. All datetimes handled here are naive local datetimes,
the same form the store keeps them in.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from alfred.errors import InvalidScheduleError, InvalidTimeError, ValidationError

# Cron numbers 0-7 (0 and 7 are Sunday) to APScheduler weekday names.
# APScheduler numbers weekdays from Monday, so numeric fields are translated.
CRON_WEEKDAYS = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun']

HHMM_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
JOB_ID_STRIP_RE = re.compile(r"[^a-z0-9]+")

# Naive datetimes are pinned to a fixed offset before they reach the trigger
# so cron fields match wall-clock values with no DST shifts.
_WALL_CLOCK = timezone.utc


def _translate_day_of_week(field: str) -> str:
    """
    Convert a crontab day-of-week field to APScheduler syntax.

    Numeric items, ranges and steps are expanded to weekday names; named
    items (mon-fri) pass through untouched.
    """
    if field == '*':
        return field

    items = []
    for part in field.split(','):
        body, _, step = part.partition('/')
        if body == '*':
            start, end = 0, 6
        elif body.isdigit():
            start = int(body)
            end = 6 if step else start
        elif re.fullmatch(r"\d+-\d+", body):
            start, end = (int(x) for x in body.split('-'))
        else:
            items.append(part)
            continue

        if start > 7 or end > 7 or start > end:
            raise ValueError(f"Invalid day of week: {part}")
        step_size = int(step) if step else 1
        if step_size <= 0:
            raise ValueError(f"Invalid step: {part}")
        for number in range(start, end + 1, step_size):
            items.append(CRON_WEEKDAYS[number])

    return ','.join(dict.fromkeys(items))


def build_cron_trigger(cron_expr: str) -> BaseTrigger:
    """
    Parse a five-field cron expression into an APScheduler trigger.

    When both day-of-month and day-of-week are restricted, a day matching
    either field fires (crontab semantics), so the result is an OrTrigger
    over one CronTrigger per day field.

    Raises:
        InvalidScheduleError: If the expression cannot be parsed
    """
    parts = (cron_expr or '').split()
    if len(parts) != 5:
        raise InvalidScheduleError(f"Invalid cron expression: {cron_expr!r} (expected 5 fields)")
    minute, hour, day, month, day_of_week = parts

    try:
        day_of_week = _translate_day_of_week(day_of_week)
        if day != '*' and day_of_week != '*':
            return OrTrigger([
                _cron_trigger(minute, hour, day, month, '*'),
                _cron_trigger(minute, hour, '*', month, day_of_week),
            ])
        return _cron_trigger(minute, hour, day, month, day_of_week)
    except (ValueError, TypeError) as e:
        raise InvalidScheduleError(f"Invalid cron expression: {cron_expr!r}: {e}") from e


def _cron_trigger(minute: str, hour: str, day: str, month: str, day_of_week: str) -> CronTrigger:
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
        timezone=_WALL_CLOCK,
    )


def is_valid_cron(cron_expr: str) -> bool:
    try:
        build_cron_trigger(cron_expr)
        return True
    except InvalidScheduleError:
        return False


def get_next_cron_time(cron_expr: str, after: Optional[datetime] = None) -> datetime:
    """
    Next occurrence of a cron schedule strictly after `after`.

    Args:
        cron_expr: Five-field cron expression
        after: Reference time (naive local). Defaults to now.

    Returns:
        Naive local datetime of the next fire

    Raises:
        InvalidScheduleError: If the expression is invalid or never fires
    """
    trigger = build_cron_trigger(cron_expr)
    after = after or datetime.now()
    # One microsecond past the reference makes an exact match roll forward
    start = after.replace(tzinfo=_WALL_CLOCK) + timedelta(microseconds=1)
    next_time = trigger.get_next_fire_time(None, start)
    if next_time is None:
        raise InvalidScheduleError(f"Cron expression never fires: {cron_expr!r}")
    return next_time.replace(tzinfo=None)


def parse_at_time(value: str, now: Optional[datetime] = None) -> datetime:
    """
    Parse a one-off run time.

    Accepts either HH:MM (today, or tomorrow if that time has already
    passed) or an ISO 8601 datetime.

    Raises:
        InvalidTimeError: If the value cannot be parsed
    """
    now = now or datetime.now()
    value = (value or '').strip()

    if 'T' in value or '-' in value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise InvalidTimeError(f"Invalid datetime format: {value}") from e
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone().replace(tzinfo=None)
        return parsed

    match = HHMM_RE.match(value)
    if not match:
        raise InvalidTimeError(f"Invalid time format: {value}. Expected HH:MM or ISO datetime.")

    hours = int(match.group(1))
    minutes = int(match.group(2))
    if hours > 23:
        raise InvalidTimeError(f"Invalid hour: {hours}. Must be 0-23.")
    if minutes > 59:
        raise InvalidTimeError(f"Invalid minute: {minutes}. Must be 0-59.")

    target = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return target


def job_id_from_name(name: str) -> str:
    """
    Derive a stable job id from its name.

    "My Backup Job!" -> "my-backup-job"

    Raises:
        ValidationError: If the name has no letters or digits
    """
    job_id = JOB_ID_STRIP_RE.sub('-', (name or '').lower()).strip('-')
    if not job_id:
        raise ValidationError(f"Job name {name!r} must contain at least one letter or digit")
    return job_id


def format_datetime(value: Optional[datetime]) -> str:
    return value.strftime('%Y-%m-%d %H:%M:%S') if value else '-'
