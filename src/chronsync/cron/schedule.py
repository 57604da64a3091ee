"""Schedule expression parsing and next-fire computation.

Expressions have six fields (second, minute, hour, day of month, month,
day of week) and an optional seventh year field. Each field accepts ``*``,
single values, comma separated lists, ``start-end`` ranges and ``/step``
strides. Month and weekday names (``JAN``, ``MON``) are accepted too.

The search for the next matching instant is delegated to croniter, which
is fed a normalized expression built from the parsed field sets.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter, CroniterError

from chronsync.cron.errors import ScheduleParseError, SchedulingError

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD_YEARS = 5


@lru_cache(maxsize=1)
def local_timezone() -> tzinfo:
    """The host's time zone, with its DST rules.

    Resolved from ``TZ``, then ``/etc/localtime``. Falls back to the current
    fixed UTC offset when neither names a usable zone.
    """
    tz_name = os.environ.get("TZ", "").lstrip(":")
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown time zone TZ={tz_name}, using /etc/localtime")

    try:
        with open("/etc/localtime", "rb") as f:
            return ZoneInfo.from_file(f, key="localtime")
    except (OSError, ValueError):
        pass

    return datetime.now().astimezone().tzinfo


def local_now() -> datetime:
    """Current local time, aware of the host zone's DST rules."""
    return datetime.now(tz=local_timezone())


MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ["JAN", "FEB", "MAR", "APR", "MAY", "JUN",
         "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"],
        start=1,
    )
}
WEEKDAY_NAMES = {
    name: index
    for index, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])
}

# (label, minimum, maximum, name aliases)
FIELD_SPECS = (
    ("second", 0, 59, {}),
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day of month", 1, 31, {}),
    ("month", 1, 12, MONTH_NAMES),
    ("day of week", 0, 6, WEEKDAY_NAMES),
    ("year", 1970, 2099, {}),
)


@dataclass(frozen=True)
class ScheduleExpression:
    """A parsed cron expression.

    Each field holds the complete set of values allowed for that time
    component. ``years`` is None when the expression has no year field.
    """

    text: str
    seconds: frozenset[int]
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    years: frozenset[int] | None = None

    def __str__(self) -> str:
        return self.text

    def matches(self, moment: datetime) -> bool:
        """Check whether an instant satisfies every field."""
        return (
            moment.second in self.seconds
            and moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.day in self.days_of_month
            and moment.month in self.months
            and moment.isoweekday() % 7 in self.days_of_week
            and (self.years is None or moment.year in self.years)
        )

    @property
    def croniter_expression(self) -> str:
        """Six-field croniter expression (seconds last), without the year."""
        fields = [
            _format_field(self.minutes, FIELD_SPECS[1]),
            _format_field(self.hours, FIELD_SPECS[2]),
            _format_field(self.days_of_month, FIELD_SPECS[3]),
            _format_field(self.months, FIELD_SPECS[4]),
            _format_field(self.days_of_week, FIELD_SPECS[5]),
            _format_field(self.seconds, FIELD_SPECS[0]),
        ]
        return " ".join(fields)


def _format_field(values: frozenset[int], spec: tuple) -> str:
    _, low, high, _ = spec
    if len(values) == high - low + 1:
        return "*"
    return ",".join(str(v) for v in sorted(values))


def _parse_value(token: str, spec: tuple, text: str) -> int:
    label, low, high, aliases = spec
    upper = token.upper()
    if upper in aliases:
        return aliases[upper]
    if not token.isdigit():
        raise ScheduleParseError(
            f"Invalid {label} value '{token}' in '{text}'", expression=text
        )
    value = int(token)
    if not low <= value <= high:
        raise ScheduleParseError(
            f"{label.capitalize()} value {value} out of range {low}-{high} in '{text}'",
            expression=text,
        )
    return value


def _parse_field(token: str, spec: tuple, text: str) -> frozenset[int]:
    """Expand one field into the set of values it allows."""
    label, low, high, _ = spec
    values: set[int] = set()

    for part in token.split(","):
        if not part:
            raise ScheduleParseError(
                f"Empty list element in {label} field of '{text}'", expression=text
            )

        step = 1
        has_step = "/" in part
        if has_step:
            base, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ScheduleParseError(
                    f"Invalid step '{step_text}' in {label} field of '{text}'",
                    expression=text,
                )
            step = int(step_text)
        else:
            base = part

        if base == "*":
            start, end = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start = _parse_value(first, spec, text)
            end = _parse_value(last, spec, text)
            if start > end:
                raise ScheduleParseError(
                    f"Range {base} is reversed in {label} field of '{text}'",
                    expression=text,
                )
        else:
            start = _parse_value(base, spec, text)
            end = high if has_step else start

        values.update(range(start, end + 1, step))

    return frozenset(values)


def parse_schedule(text: str) -> ScheduleExpression:
    """Parse a six or seven field cron expression.

    Args:
        text: Expression such as ``"*/5 * * * * *"`` or ``"0 30 9 * * MON-FRI"``.

    Returns:
        The parsed expression.

    Raises:
        ScheduleParseError: If the field count is wrong or a field is
            malformed or out of range.
    """
    if not isinstance(text, str):
        raise ScheduleParseError(f"Cron expression must be a string, got {type(text).__name__}")

    parts = text.split()
    if len(parts) not in (6, 7):
        raise ScheduleParseError(
            f"Expected 6 or 7 fields (second minute hour day month weekday [year]), "
            f"got {len(parts)} in '{text}'",
            expression=text,
        )

    fields = [_parse_field(token, spec, text) for token, spec in zip(parts, FIELD_SPECS)]
    years = fields[6] if len(fields) == 7 else None

    return ScheduleExpression(
        text=" ".join(parts),
        seconds=fields[0],
        minutes=fields[1],
        hours=fields[2],
        days_of_month=fields[3],
        months=fields[4],
        days_of_week=fields[5],
        years=years,
    )


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


def _croniter_next(expr: ScheduleExpression, after: datetime, lookahead_years: int) -> datetime:
    try:
        itr = croniter(
            expr.croniter_expression,
            after,
            day_or=False,
            max_years_between_matches=lookahead_years,
        )
        return itr.get_next(datetime)
    except CroniterError as e:
        raise SchedulingError(
            f"No fire time for '{expr.text}' within {lookahead_years} years: {e}"
        ) from e


def to_utc(moment: datetime) -> datetime:
    """Normalize an aware instant to UTC so it can be compared or subtracted.

    Aware datetimes sharing one tzinfo compare and subtract by wall time,
    which is wrong across a DST change. Naive datetimes are returned as is.
    """
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc)


def _localize(wall: datetime, tz: tzinfo | None) -> datetime | None:
    """Attach ``tz`` to a wall-clock time, or None if that time does not exist.

    Wall times skipped by a spring-forward change do not survive a round
    trip through UTC. Repeated wall times resolve to their first occurrence.
    """
    if tz is None:
        return wall
    moment = wall.replace(tzinfo=tz, fold=0)
    if moment.astimezone(timezone.utc).astimezone(tz).replace(tzinfo=None) != wall:
        return None
    return moment


def next_fire_after(
    expr: ScheduleExpression,
    from_: datetime,
    lookahead_years: int = DEFAULT_LOOKAHEAD_YEARS,
) -> datetime:
    """Compute the first instant strictly after ``from_`` matching ``expr``.

    Fields are matched against wall-clock time in ``from_``'s time zone.
    Wall times that a DST change skips never fire, and wall times it
    repeats fire once.

    Args:
        expr: Parsed schedule.
        from_: Reference instant. Its tzinfo decides the calendar used.
        lookahead_years: Size of the search window.

    Returns:
        The next fire instant, at whole-second resolution, in ``from_``'s zone.

    Raises:
        SchedulingError: If nothing matches within the lookahead window.
    """
    tz = from_.tzinfo
    reference = to_utc(from_)
    cursor = from_.replace(microsecond=0, tzinfo=None, fold=0)
    horizon = _add_years(cursor, lookahead_years)

    if expr.years is not None and cursor.year not in expr.years:
        cursor = _jump_to_next_year(expr, cursor, horizon)

    while True:
        wall = _croniter_next(expr, cursor, lookahead_years)
        if wall > horizon:
            raise SchedulingError(
                f"No fire time for '{expr.text}' within {lookahead_years} years "
                f"after {from_.isoformat()}"
            )
        if expr.years is not None and wall.year not in expr.years:
            cursor = _jump_to_next_year(expr, wall, horizon)
            continue

        candidate = _localize(wall, tz)
        if candidate is not None and to_utc(candidate) > reference:
            break
        cursor = wall

    if not expr.matches(candidate):
        raise SchedulingError(
            f"Computed fire time {candidate.isoformat()} does not satisfy '{expr.text}'"
        )
    return candidate


def _jump_to_next_year(
    expr: ScheduleExpression, cursor: datetime, horizon: datetime
) -> datetime:
    """Move the cursor to just before the next allowed year."""
    upcoming = [year for year in expr.years or () if year > cursor.year]
    if not upcoming or min(upcoming) > horizon.year:
        raise SchedulingError(
            f"No allowed year of '{expr.text}' falls between "
            f"{cursor.year} and {horizon.year}"
        )
    new_year = cursor.replace(
        year=min(upcoming), month=1, day=1, hour=0, minute=0, second=0, microsecond=0
    )
    return new_year - timedelta(seconds=1)


def validate_cron_expression(text: str) -> bool:
    """Validate a cron expression.

    Args:
        text: The expression to validate.

    Returns:
        True if the expression parses.
    """
    try:
        parse_schedule(text)
        return True
    except ScheduleParseError:
        return False


def time_until_next_fire(
    expr: ScheduleExpression,
    now: datetime | None = None,
) -> timedelta:
    """Get the time remaining until the next fire of ``expr``."""
    now = now or local_now()
    return to_utc(next_fire_after(expr, now)) - to_utc(now)


def get_cron_description(text: str) -> str:
    """Get a human-readable description of a cron expression.

    Args:
        text: The cron expression.

    Returns:
        Human-readable description or a fallback message.
    """
    parts = text.split()
    if len(parts) not in (6, 7):
        return "Invalid cron expression"

    second, minute, hour, day, month, dow = parts[:6]
    descriptions = []

    if second == "*":
        descriptions.append("every second")
    elif second.startswith("*/"):
        descriptions.append(f"every {second[2:]} seconds")
    else:
        descriptions.append(f"at second {second}")

    if minute == "*":
        descriptions.append("of every minute")
    elif minute.startswith("*/"):
        descriptions.append(f"every {minute[2:]} minutes")
    else:
        descriptions.append(f"past minute {minute}")

    if hour != "*":
        descriptions.append(f"of hour {hour}")

    if day != "*":
        descriptions.append(f"on day {day}")

    if month != "*":
        descriptions.append(f"in month {month}")

    dow_names = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
    if dow != "*":
        if dow.isdigit() and int(dow) < len(dow_names):
            descriptions.append(f"on {dow_names[int(dow)]}")
        else:
            descriptions.append(f"on {dow}")

    if len(parts) == 7 and parts[6] != "*":
        descriptions.append(f"in {parts[6]}")

    return " ".join(descriptions)
