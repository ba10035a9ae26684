from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def resolve_projection_window(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: date,
    default_days: int = 30,
) -> Period:
    """Forward-looking window for a projection; it never starts before ``today``."""
    if period == "this_month":
        first = today.replace(day=1)
        if first.month == 12:
            next_month = first.replace(year=first.year + 1, month=1)
        else:
            next_month = first.replace(month=first.month + 1)
        return Period("this_month", today, next_month - date.resolution)
    if period == "custom":
        if not end:
            raise ValueError("Custom period requires an end date")
        start_date = date.fromisoformat(start) if start else today
        end_date = date.fromisoformat(end)
        if start_date < today:
            raise ValueError("Projection cannot start in the past")
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", start_date, end_date)

    return Period(f"next_{default_days}_days", today, today + timedelta(days=default_days))
