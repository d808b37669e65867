"""
Crontab expression handling for the job registry.

Schedules are standard 5-field crontab strings evaluated in UTC:

    minute hour day-of-month month day-of-week

Next fire times are computed with APScheduler's CronTrigger. APScheduler
counts weekdays from Monday, crontab from Sunday (0 and 7 are Sunday), so
the day-of-week field is expanded in crontab numbering into an explicit
list of day names before it reaches CronTrigger.
"""

from datetime import datetime, timedelta

from apscheduler.triggers.cron import CronTrigger

from postpilot.core.datetime_utils import to_aware_utc, to_naive_utc

CRON_FIELDS = ("minute", "hour", "day", "month", "day_of_week")

WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_WEEKDAY_NUMBERS = {name: number for number, name in enumerate(WEEKDAY_NAMES)}
_MAX_WEEKDAY = 7  # crontab accepts 7 as a second Sunday


def _weekday_number(token: str) -> int:
    token = token.strip().lower()
    if token in _WEEKDAY_NUMBERS:
        return _WEEKDAY_NUMBERS[token]
    if not token.isdigit() or int(token) > _MAX_WEEKDAY:
        raise ValueError(f"Invalid day of week: {token!r}")
    return int(token)


def expand_day_of_week(value: str) -> str:
    """
    Expand a crontab day-of-week field into CronTrigger's syntax.

    Handles `*`, single days, ranges, lists and `/step` in crontab
    numbering. Returns `*` when every day is selected, otherwise a comma
    list of day names ("0-4" -> "sun,mon,tue,wed,thu").

    Raises:
        ValueError: If the field is malformed
    """
    days: set[int] = set()

    for part in value.split(","):
        base, has_step, step_text = part.partition("/")
        step = 1
        if has_step:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"Invalid day of week step: {part!r}")
            step = int(step_text)

        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            first, last = base.split("-", 1)
            start, end = _weekday_number(first), _weekday_number(last)
        else:
            start = _weekday_number(base)
            end = _MAX_WEEKDAY if has_step else start

        if start > end:
            raise ValueError(f"Invalid day of week range: {part!r}")

        days.update(day % 7 for day in range(start, end + 1, step))

    if len(days) == len(WEEKDAY_NAMES):
        return "*"
    return ",".join(WEEKDAY_NAMES[day] for day in sorted(days))


def parse_schedule(expression: str) -> dict[str, str]:
    """
    Split a crontab expression into CronTrigger keyword arguments.

    Raises:
        ValueError: If the expression does not have exactly five fields
            or its day-of-week field is malformed
    """
    parts = expression.split()
    if len(parts) != len(CRON_FIELDS):
        raise ValueError(f"Invalid cron expression: {expression!r}")

    fields = dict(zip(CRON_FIELDS, parts, strict=True))
    fields["day_of_week"] = expand_day_of_week(fields["day_of_week"])
    return fields


def next_fire_time(expression: str, after: datetime) -> datetime:
    """
    Get the first fire time of `expression` strictly after `after`.

    Args:
        expression: 5-field crontab expression (UTC)
        after: Reference instant (naive UTC or aware)

    Returns:
        Naive UTC datetime of the next fire time

    Raises:
        ValueError: If the expression is invalid or never fires again
    """
    fields = parse_schedule(expression)

    # Crontab has minute resolution: start at the next whole minute
    start = to_aware_utc(after).replace(second=0, microsecond=0) + timedelta(minutes=1)

    try:
        trigger = CronTrigger(**fields, start_time=start, timezone="UTC")
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid cron expression: {expression!r} ({e})") from e

    fire_time = trigger.next()
    if fire_time is None:
        raise ValueError(f"Cron expression never fires: {expression!r}")

    return to_naive_utc(fire_time)
