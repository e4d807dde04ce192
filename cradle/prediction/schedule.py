"""Day plan built by chaining awake windows and naps."""
from datetime import datetime, timedelta
from typing import Literal

from pydantic import BaseModel

from ..clock import ensure_aware
from .engine import awake_window_minutes


class ScheduleSlot(BaseModel):
    start: datetime
    end: datetime
    activity: str
    type: Literal["SLEEP"] = "SLEEP"


def generate_daily_schedule(
    first_wake_time: datetime,
    age_in_months: int,
    naps: int = 4,
    nap_minutes: int = 60,
) -> list[ScheduleSlot]:
    """
    Lay out the day's naps from the first wake-up.

    Each nap starts one awake window after the previous wake-up and lasts
    nap_minutes.
    """
    if naps < 0 or nap_minutes <= 0:
        raise ValueError("naps must be >= 0 and nap_minutes > 0")

    window = timedelta(minutes=awake_window_minutes(age_in_months))
    nap = timedelta(minutes=nap_minutes)

    slots: list[ScheduleSlot] = []
    awake_since = ensure_aware(first_wake_time)
    for i in range(naps):
        start = awake_since + window
        slots.append(ScheduleSlot(start=start, end=start + nap, activity=f"Nap {i + 1}"))
        awake_since = start + nap
    return slots
