"""Counting window arithmetic for question presentation budgets."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from src.lib.exceptions import ConfigurationError
from src.models.question_logic import FrequencyWindow


@dataclass(frozen=True)
class WindowBounds:
    window_start: datetime
    window_end: datetime
    next_reset: datetime


def _add_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1)
    return moment.replace(month=moment.month + 1)


def compute_window_bounds(anchor: datetime, window_kind: str) -> WindowBounds:
    """Compute the window containing ``anchor``.

    Bounds are derived from the stored reset (or creation) timestamp, never
    from the wall clock, and keep the anchor's timezone:

    - hourly: top of the hour, 1 hour long
    - daily: midnight, 1 day long
    - weekly: most recent Sunday midnight, 7 days long
    - monthly: first day of the month at midnight, 1 calendar month long

    Raises:
        ConfigurationError: If ``window_kind`` is not a supported window
    """
    try:
        kind = FrequencyWindow(window_kind)
    except ValueError:
        raise ConfigurationError(
            f"Unsupported frequency window: {window_kind}",
            details={"window": window_kind},
        )

    if kind is FrequencyWindow.HOURLY:
        start = anchor.replace(minute=0, second=0, microsecond=0)
        end = start + timedelta(hours=1)
    elif kind is FrequencyWindow.DAILY:
        start = anchor.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + timedelta(days=1)
    elif kind is FrequencyWindow.WEEKLY:
        midnight = anchor.replace(hour=0, minute=0, second=0, microsecond=0)
        # weekday(): Monday = 0, so days since Sunday is (weekday + 1) % 7
        start = midnight - timedelta(days=(anchor.weekday() + 1) % 7)
        end = start + timedelta(days=7)
    else:
        start = anchor.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        end = _add_month(start)

    return WindowBounds(window_start=start, window_end=end, next_reset=end)
