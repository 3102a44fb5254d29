import re
from datetime import datetime, timedelta
from typing import Optional

from croniter import croniter

from jobrunner.domain.errors import InvalidCronSyntaxError

ONE_SECOND = timedelta(seconds=1)

# Anything else is read as an English phrase such as "every 15 minutes"
CRON_SYNTAX = re.compile(r"^[*\d]")

WEEKDAYS = {
    "sunday": "0", "monday": "1", "tuesday": "2", "wednesday": "3",
    "thursday": "4", "friday": "5", "saturday": "6",
}
UNIT_FIELDS = {"second": 0, "minute": 1, "hour": 2}

EVERY_UNIT = re.compile(r"^every (?:(\d+) )?(second|minute|hour)s?$")
AT_TIME = re.compile(r"^(.*?)(?: at (.+))?$")
CLOCK_TIME = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*(am|pm)?$")

def _parse_time(text: Optional[str], phrase: str) -> tuple[int, int]:
    if text is None or text == "midnight":
        return 0, 0
    if text == "noon":
        return 12, 0
    match = CLOCK_TIME.match(text)
    if not match:
        raise InvalidCronSyntaxError(phrase, f"cannot read time '{text}'")
    hour, minute, meridiem = int(match.group(1)), int(match.group(2) or 0), match.group(3)
    if meridiem:
        if not 1 <= hour <= 12:
            raise InvalidCronSyntaxError(phrase, f"cannot read time '{text}'")
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    if hour > 23 or minute > 59:
        raise InvalidCronSyntaxError(phrase, f"cannot read time '{text}'")
    return hour, minute

def english_to_cron(phrase: str) -> str:
    """
    Translates a schedule phrase into a six field expression:

        every second / every 15 seconds / every 5 minutes / every hour
        every day at 4:30 pm / daily / every monday at 09:00
        every weekday at noon / every weekend / every month

    A leading "run" is ignored. Unknown phrases raise InvalidCronSyntaxError.
    """
    text = " ".join(phrase.lower().split())
    text = re.sub(r"^run ", "", text)

    match = EVERY_UNIT.match(text)
    if match:
        step = int(match.group(1) or 1)
        if step < 1:
            raise InvalidCronSyntaxError(phrase, "interval must be positive")
        fields = ["*"] * 6
        position = UNIT_FIELDS[match.group(2)]
        fields[position] = "*" if step == 1 else f"*/{step}"
        for smaller in range(position):
            fields[smaller] = "0"
        return " ".join(fields)

    period, at = AT_TIME.match(text).groups()
    if period in ("every day", "daily", "every night", "nightly"):
        day_of_month, day_of_week = "*", "*"
    elif period == "every weekday":
        day_of_month, day_of_week = "*", "1-5"
    elif period == "every weekend":
        day_of_month, day_of_week = "*", "0,6"
    elif period in ("every month", "monthly"):
        day_of_month, day_of_week = "1", "*"
    elif period.startswith("every ") and period[len("every "):] in WEEKDAYS:
        day_of_month, day_of_week = "*", WEEKDAYS[period[len("every "):]]
    else:
        raise InvalidCronSyntaxError(phrase, "unrecognized schedule phrase")

    hour, minute = _parse_time(at, phrase)
    return f"0 {minute} {hour} {day_of_month} * {day_of_week}"

def to_croniter_expression(expression: str) -> str:
    """
    Converts `sec min hour dom month dow` into croniter's layout, which
    carries seconds as a trailing sixth field. Five field expressions fire at
    second 0; `@daily` style aliases pass through and English phrases are
    translated first.
    """
    expression = expression.strip()
    if expression.startswith("@"):
        return expression
    if not CRON_SYNTAX.match(expression):
        expression = english_to_cron(expression)

    fields = expression.split()
    if len(fields) == 6:
        seconds, rest = fields[0], fields[1:]
        return " ".join(rest + [seconds])
    if len(fields) == 5:
        return " ".join(fields + ["0"])
    raise InvalidCronSyntaxError(expression, f"expected 5 or 6 fields, got {len(fields)}")

def floor_to_second(moment: datetime) -> datetime:
    return moment.replace(microsecond=0)

class CronSchedule:
    def __init__(self, expression: str):
        self.expression = expression
        self._expression = to_croniter_expression(expression)
        try:
            # Build once so syntax errors surface at load time
            croniter(self._expression, datetime(2000, 1, 1))
        except (ValueError, KeyError) as e:
            raise InvalidCronSyntaxError(expression, e) from e

    def matches(self, tick: datetime) -> bool:
        """True when `tick` (truncated to the second) is a firing time."""
        tick = floor_to_second(tick)
        return self.next_after(tick - ONE_SECOND) == tick

    def next_after(self, moment: datetime) -> datetime:
        return croniter(self._expression, moment).get_next(datetime)

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r})"

def next_tick(now: datetime) -> datetime:
    """First whole second strictly after `now`."""
    return floor_to_second(now) + ONE_SECOND
