"""
SweetSpot prediction module

Age-based awake windows, sleep pressure, and day schedules derived from
care event history.
"""

from .engine import (
    PressureStatus,
    SleepPrediction,
    SleepPredictor,
    age_in_months,
    awake_window_minutes,
    classify_pressure,
    last_wake_time,
    predict_next_sleep,
)
from .schedule import ScheduleSlot, generate_daily_schedule

__all__ = [
    "PressureStatus",
    "SleepPrediction",
    "SleepPredictor",
    "age_in_months",
    "awake_window_minutes",
    "classify_pressure",
    "last_wake_time",
    "predict_next_sleep",
    "ScheduleSlot",
    "generate_daily_schedule",
]
