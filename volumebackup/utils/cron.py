"""
Cron expression parsing on top of APScheduler triggers.

Accepted syntax:
- five fields (minute hour day month day-of-week)
- six fields with a leading seconds field
- descriptors: @yearly, @annually, @monthly, @weekly, @daily, @midnight, @hourly
- @every <duration>, e.g. @every 1h30m

Day-of-week numbers follow cron (0 or 7 is Sunday) and are translated
into names, because APScheduler counts from Monday.
"""

from datetime import datetime
from typing import Optional

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from volumebackup.errors import ConfigValidationError, SchedulingError
from volumebackup.utils.decoders import decode_duration


DESCRIPTORS = {
    '@yearly': '0 0 0 1 1 *',
    '@annually': '0 0 0 1 1 *',
    '@monthly': '0 0 0 1 * *',
    '@weekly': '0 0 0 * * 0',
    '@daily': '0 0 0 * * *',
    '@midnight': '0 0 0 * * *',
    '@hourly': '0 0 * * * *',
}

WEEKDAYS = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun')


def _weekday(value: str) -> int:
    if value.isdigit():
        number = int(value)
        if number > 7:
            raise SchedulingError(f"day of week {value} out of range")
        return number
    name = value.lower()
    if name not in WEEKDAYS:
        raise SchedulingError(f"unknown day of week {value!r}")
    return WEEKDAYS.index(name)


def _expand_weekdays(part: str) -> set:
    expr, slash, step = part.partition('/')
    if expr in ('*', '?'):
        first, last = 0, 6
    else:
        start, dash, end = expr.partition('-')
        first = _weekday(start)
        # a single day with a step runs up to Saturday
        last = _weekday(end) if dash else (max(first, 6) if slash else first)
        if first > last:
            raise SchedulingError(f"day of week range {expr} ends before it starts")

    interval = 1
    if slash:
        if not step.isdigit() or int(step) == 0:
            raise SchedulingError(f"invalid day of week step in {part!r}")
        interval = int(step)
    return {day % 7 for day in range(first, last + 1, interval)}


def translate_day_of_week(field: str) -> str:
    """
    Rewrite a cron day-of-week field into names APScheduler understands.

    Numbers, ranges and steps are expanded with cron numbering first, so
    */2 means Sunday, Tuesday, Thursday and Saturday. APScheduler would
    count the same step from Monday.
    """
    if field in ('*', '?'):
        return '*'
    days = set()
    for part in field.split(','):
        days |= _expand_weekdays(part)
    if len(days) == 7:
        return '*'
    return ','.join(WEEKDAYS[day] for day in sorted(days))


def parse_cron_expression(expression: str, timezone=None):
    """
    Build an APScheduler trigger from a cron expression.

    Args:
        expression: Cron expression, descriptor or @every duration
        timezone: Timezone of the trigger (defaults to local time)

    Returns:
        CronTrigger or IntervalTrigger

    Raises:
        SchedulingError: If the expression cannot be parsed
    """
    text = expression.strip()
    tz_kwargs = {'timezone': timezone} if timezone else {}

    if text.startswith('@every'):
        try:
            interval = decode_duration(text[len('@every'):].strip())
        except ConfigValidationError as e:
            raise SchedulingError(f"invalid interval in {expression!r}: {e}") from e
        if interval.total_seconds() <= 0:
            raise SchedulingError(f"interval in {expression!r} must be positive")
        return IntervalTrigger(seconds=interval.total_seconds(), **tz_kwargs)

    if text.startswith('@'):
        if text not in DESCRIPTORS:
            raise SchedulingError(f"unrecognized descriptor {expression!r}")
        text = DESCRIPTORS[text]

    fields = text.split()
    if len(fields) == 5:
        fields.insert(0, '0')
    if len(fields) != 6:
        raise SchedulingError(f"expected 5 or 6 fields in cron expression {expression!r}, found {len(fields)}")

    second, minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=translate_day_of_week(day_of_week),
            **tz_kwargs
        )
    except ValueError as e:
        raise SchedulingError(f"invalid cron expression {expression!r}: {e}") from e


def will_ever_fire(trigger, now: Optional[datetime] = None) -> bool:
    """Check whether the trigger has at least one future fire time."""
    now = now or datetime.now(trigger.timezone)
    return trigger.get_next_fire_time(None, now) is not None
