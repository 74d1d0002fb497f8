"""Week identity for tour plans.

Every plan is keyed by the Monday that starts its week, computed in a fixed
+05:30 calendar. The same routine must be used by anything that builds a
week id, since the id is the join key between the local cache and the remote
store.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

WEEK_OFFSET = timezone(timedelta(hours=5, minutes=30))

MONTH_NAMES = [
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
]

DAYS_PER_WEEK = 7


@dataclass(frozen=True)
class WeekInfo:
    """A planning week: its id plus per-day display and ISO strings."""

    week_id: str
    headers: list[str]
    day_dates: list[str]

    @property
    def monday(self) -> date:
        return date.fromisoformat(self.day_dates[0])


def format_header(day: date) -> str:
    """Format a date as DD/Mon/YY (e.g. 11/Aug/25)."""
    return f"{day.day:02d}/{MONTH_NAMES[day.month - 1]}/{day.year % 100:02d}"


def compute_week(
    now: datetime | None = None,
    override_iso: str | None = None,
) -> WeekInfo:
    """Compute the planning week containing an instant.

    Args:
        now: Instant to locate. Defaults to the current time. Naive
            datetimes are taken as UTC.
        override_iso: Optional YYYY-MM-DD date; when given, midnight UTC of
            that date is used instead of ``now``.

    Returns:
        WeekInfo for the Monday-to-Sunday week in the +05:30 calendar.
    """
    if override_iso:
        instant = datetime.combine(
            date.fromisoformat(override_iso), datetime.min.time(), tzinfo=timezone.utc
        )
    elif now is None:
        instant = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        instant = now.replace(tzinfo=timezone.utc)
    else:
        instant = now

    local_day = instant.astimezone(WEEK_OFFSET).date()

    # isoweekday(): Monday=1 .. Sunday=7
    monday = local_day - timedelta(days=local_day.isoweekday() - 1)

    days = [monday + timedelta(days=i) for i in range(DAYS_PER_WEEK)]
    return WeekInfo(
        week_id=monday.strftime("%Y%m%d"),
        headers=[format_header(d) for d in days],
        day_dates=[d.isoformat() for d in days],
    )


def week_start_date(week_id: str) -> date:
    """Parse a YYYYMMDD week id back to its Monday.

    Raises:
        ValueError: If the id is malformed or not a Monday.
    """
    if len(week_id) != 8 or not week_id.isdigit():
        raise ValueError(f"Invalid week id: {week_id!r}")
    monday = datetime.strptime(week_id, "%Y%m%d").date()
    if monday.weekday() != 0:
        raise ValueError(f"Week id {week_id} is not a Monday")
    return monday
