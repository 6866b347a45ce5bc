import calendar
from datetime import datetime, timedelta, timezone

FIXED_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Treats naive datetimes as local time and converts them to UTC."""
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(timezone.utc)


def parse_time_string(time_str: str, now: datetime | None = None) -> datetime:
    """Parses time strings like '8pm', '8:30pm', '20:00', '20:30' as today, local time."""
    formats = ["%I%p", "%I:%M%p", "%H:%M", "%H:%M:%S"]
    time_str = time_str.lower().replace(" ", "")
    now = now or datetime.now()
    for fmt in formats:
        try:
            parsed_time = datetime.strptime(time_str, fmt).time()
            return datetime.combine(now.date(), parsed_time)
        except ValueError:
            continue
    raise ValueError(f"Could not parse time: {time_str}")


def parse_timestamp(text: str, now: datetime | None = None) -> datetime:
    """
    Parses an ISO 8601 timestamp or a time of day ('8pm', '20:30') into an
    aware UTC datetime. Times of day resolve against today's local date.
    """
    try:
        return ensure_aware(datetime.fromisoformat(text.strip()))
    except ValueError:
        return ensure_aware(parse_time_string(text, now))


def to_epoch_ms(dt: datetime | None) -> int:
    if dt is None:
        return 0
    return int(dt.timestamp() * 1000)


def format_remaining(seconds: int) -> str:
    """Formats a countdown the way the lock screen shows it ('1d 2h 3m', '3m 4s')."""
    seconds = max(0, int(seconds))
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def add_months(dt: datetime, months: int) -> datetime:
    """Adds calendar months, clamping the day to the length of the target month."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def shift(dt: datetime, unit: str, amount: int) -> datetime:
    """Moves a timestamp by `amount` repeat units."""
    if unit == "months":
        return add_months(dt, amount)
    try:
        return dt + FIXED_UNITS[unit] * amount
    except KeyError:
        raise ValueError(f"Unknown repeat unit: {unit}") from None


def next_occurrence(
    start: datetime,
    end: datetime,
    unit: str,
    interval: int,
    now: datetime,
) -> tuple[datetime, datetime]:
    """
    Returns the first window after (start, end) in steps of interval x unit
    whose start lies strictly after now. Both bounds move by the same amount,
    so the window length is kept (months clamp to the month's last day).
    """
    if interval < 1:
        raise ValueError("Repeat interval must be at least 1")
    if end <= start:
        raise ValueError("Window end must be after its start")

    # Jump close to now first so long gaps do not loop step by step.
    if unit == "months":
        months_between = (now.year - start.year) * 12 + (now.month - start.month)
        steps = max(1, months_between // interval)
    else:
        if unit not in FIXED_UNITS:
            raise ValueError(f"Unknown repeat unit: {unit}")
        period = FIXED_UNITS[unit] * interval
        steps = max(1, int((now - start) // period))

    while shift(start, unit, steps * interval) <= now:
        steps += 1
    # The estimate may overshoot by one period for months.
    while steps > 1 and shift(start, unit, (steps - 1) * interval) > now:
        steps -= 1

    amount = steps * interval
    return shift(start, unit, amount), shift(end, unit, amount)
