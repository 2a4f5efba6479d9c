# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_orchestrator

"""Schedule expressions understood by the task scheduler.

Supported forms:

* 5-field crontab (``minute hour day month day_of_week``). Day-of-week uses
  standard cron numbering, 0 and 7 are Sunday.
* Aliases: ``@hourly``, ``@daily``, ``@weekly``, ``@monthly``, ``@yearly``.
* ``@every <n><unit>`` with unit ``s``, ``m``, ``h`` or ``d``.
* ``@at <ISO-8601 datetime>`` for one-shot work.
"""

import re
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from coreason_orchestrator.errors import ValidationError

ALIASES = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}

DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

_EVERY_RE = re.compile(r"^@every\s+(\d+)\s*([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def _expand_dow_part(part: str) -> list[int]:
    base, _, step_text = part.partition("/")
    step = int(step_text) if step_text else 1
    if base == "*":
        start, end = 0, 6
    elif "-" in base:
        low, high = base.split("-", 1)
        start, end = int(low), int(high)
    else:
        start = int(base)
        end = 6 if step_text else start
    if not (0 <= start <= 7 and 0 <= end <= 7) or step < 1 or start > end:
        raise ValueError(f"invalid day-of-week field {part!r}")
    return list(range(start, end + 1, step))


def normalize_day_of_week(field: str) -> str:
    """Translate a cron day-of-week field into APScheduler day names.

    APScheduler counts days from Monday, standard cron from Sunday, so numeric
    values are spelled out as names to keep the crontab meaning.
    """
    if field == "*" or not any(char.isdigit() for char in field):
        return field
    days: list[int] = []
    for part in field.split(","):
        for day in _expand_dow_part(part):
            if day % 7 not in days:
                days.append(day % 7)
    return ",".join(DAY_NAMES[day] for day in sorted(days))


def parse_schedule(expression: str, tz: str = "UTC") -> BaseTrigger:
    """Build an APScheduler trigger from a schedule expression.

    Args:
        expression: The schedule expression.
        tz: Timezone name used for cron fields and naive ``@at`` datetimes.

    Returns:
        BaseTrigger: A cron, interval or date trigger.

    Raises:
        ValidationError: If the expression cannot be parsed.
    """
    text = expression.strip()
    try:
        if text.startswith("@at "):
            run_date = datetime.fromisoformat(text[4:].strip())
            return DateTrigger(run_date=run_date, timezone=tz)

        every = _EVERY_RE.match(text)
        if every:
            seconds = int(every.group(1)) * _UNIT_SECONDS[every.group(2)]
            if seconds <= 0:
                raise ValueError("interval must be positive")
            return IntervalTrigger(seconds=seconds, timezone=tz)

        text = ALIASES.get(text, text)
        fields = text.split()
        if len(fields) != 5:
            raise ValueError(f"expected 5 cron fields, got {len(fields)}")
        minute, hour, day, month, day_of_week = fields
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=normalize_day_of_week(day_of_week),
            timezone=tz,
        )
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid schedule expression {expression!r}: {e}") from e


def next_fire_time(trigger: BaseTrigger, now: datetime | None = None) -> datetime | None:
    """Compute the next time ``trigger`` fires strictly after ``now``."""
    now = now or datetime.now(timezone.utc)
    return trigger.get_next_fire_time(None, now + timedelta(microseconds=1))


def one_shot_expression(delay_seconds: float, now: datetime | None = None) -> str:
    """Return an ``@at`` expression firing ``delay_seconds`` from ``now``."""
    now = now or datetime.now(timezone.utc)
    return f"@at {(now + timedelta(seconds=delay_seconds)).isoformat()}"
