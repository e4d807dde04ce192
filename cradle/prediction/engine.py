"""
SweetSpot sleep-window prediction.

Pure functions from (birth date, last wake time, now) to a forecast of the
next optimal sleep window. Nothing here touches the network, storage or the
wall clock; "now" is always passed in (see SleepPredictor for the clock-bound
variant).
"""
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Iterable
import math

from pydantic import BaseModel, ConfigDict, TypeAdapter, computed_field
from pydantic import ValidationError as PydanticValidationError
import structlog

from ..clock import Clock, SystemClock, ensure_aware
from ..errors import InvalidInputError
from ..event_models import CareEvent, EventType, SleepMetadata

log = structlog.get_logger()

_DATE = TypeAdapter(date)
_DATETIME = TypeAdapter(datetime)

# (max age in months, inclusive) -> minutes awake before sleep pressure peaks
AWAKE_WINDOWS: tuple[tuple[int, int], ...] = (
    (1, 45),     # newborns
    (3, 90),
    (6, 120),
    (9, 150),
    (12, 180),
)
TODDLER_AWAKE_WINDOW = 240


class PressureStatus(str, Enum):
    """Display classification of sleep pressure."""
    CALM = "CALM"
    BUILDING = "BUILDING"
    SWEETSPOT = "SWEETSPOT"
    OVERTIRED = "OVERTIRED"


class SleepPrediction(BaseModel):
    """Forecast of the next sleep window. Derived on demand, never persisted."""
    model_config = ConfigDict(frozen=True)

    predicted_time: datetime
    remaining_minutes: int
    pressure_percentage: int
    awake_window_minutes: int
    elapsed_minutes: int
    age_in_months: int
    overtired: bool
    status: PressureStatus

    @computed_field
    @property
    def predicted_time_label(self) -> str:
        """Clock-face rendering, e.g. "2:05 PM"."""
        t = self.predicted_time
        return f"{t.hour % 12 or 12}:{t.minute:02d} {'AM' if t.hour < 12 else 'PM'}"


def parse_birth_date(value: date | datetime | str) -> date:
    """
    Parse a birth date from a date, datetime or ISO string.

    Raises:
        InvalidInputError: if the value cannot be read as a date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        for adapter in (_DATE, _DATETIME):
            try:
                parsed = adapter.validate_python(value)
            except PydanticValidationError:
                continue
            return parsed.date() if isinstance(parsed, datetime) else parsed
    raise InvalidInputError(f"birth date is not parseable: {value!r}")


def parse_timestamp(value: datetime | str, name: str = "timestamp") -> datetime:
    if isinstance(value, datetime):
        return ensure_aware(value)
    try:
        return ensure_aware(_DATETIME.validate_python(value))
    except PydanticValidationError as e:
        raise InvalidInputError(f"{name} is not parseable: {value!r}") from e


def age_in_months(birth_date: date | datetime | str, now: datetime) -> int:
    """
    Whole calendar months between birth and now.

    Only year and month take part; the day of month is ignored, so a baby born
    on the 31st is "1 month" old on the 1st of the next month.
    """
    birth = parse_birth_date(birth_date)
    now = ensure_aware(now)
    if birth > now.date():
        raise InvalidInputError(f"birth date {birth.isoformat()} is in the future")
    return (now.year - birth.year) * 12 + (now.month - birth.month)


def awake_window_minutes(months: int) -> int:
    """Minutes of awake time before sleep pressure peaks, by age in months."""
    for max_age, minutes in AWAKE_WINDOWS:
        if months <= max_age:
            return minutes
    return TODDLER_AWAKE_WINDOW


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, truncated toward zero."""
    return int((end - start).total_seconds() / 60)


def classify_pressure(percentage: int) -> PressureStatus:
    if percentage >= 100:
        return PressureStatus.OVERTIRED
    if percentage >= 90:
        return PressureStatus.SWEETSPOT
    if percentage >= 70:
        return PressureStatus.BUILDING
    return PressureStatus.CALM


def predict_next_sleep(
    birth_date: date | datetime | str,
    last_wake_time: datetime | str,
    now: datetime,
) -> SleepPrediction:
    """
    Forecast the next sleep window.

    Args:
        birth_date: Child's date of birth
        last_wake_time: When the child last woke up
        now: Current time

    Returns:
        SleepPrediction with remaining minutes (never negative) and a
        pressure percentage clamped to [0, 100]

    Raises:
        InvalidInputError: birth date unparseable or in the future, or the
            wake time is after now
    """
    now = ensure_aware(now)
    woke = parse_timestamp(last_wake_time, "last_wake_time")
    if woke > now:
        raise InvalidInputError(
            f"last_wake_time {woke.isoformat()} is after now {now.isoformat()}"
        )

    months = age_in_months(birth_date, now)
    window = awake_window_minutes(months)

    window_end = woke + timedelta(minutes=window)
    remaining = max(0, minutes_between(now, window_end))
    elapsed = minutes_between(woke, now)
    # Half-up rounding; elapsed is never negative here.
    pressure = min(100, math.floor(elapsed / window * 100 + 0.5))

    return SleepPrediction(
        predicted_time=window_end,
        remaining_minutes=remaining,
        pressure_percentage=pressure,
        awake_window_minutes=window,
        elapsed_minutes=elapsed,
        age_in_months=months,
        overtired=pressure >= 100,
        status=classify_pressure(pressure),
    )


def last_wake_time(events: Iterable[CareEvent]) -> datetime | None:
    """
    Wake time implied by the latest SLEEP event in a snapshot.

    A sleep event's wake time is its metadata end_time when recorded,
    otherwise the event timestamp.
    """
    latest: datetime | None = None
    for event in events:
        if event.event_type != EventType.SLEEP:
            continue
        woke = event.timestamp
        if isinstance(event.metadata, SleepMetadata) and event.metadata.end_time:
            woke = event.metadata.end_time
        if latest is None or woke > latest:
            latest = woke
    return latest


class SleepPredictor:
    """Prediction engine bound to a clock."""

    def __init__(self, clock: Clock | None = None, metrics: Any = None):
        self.clock = clock or SystemClock()
        self.metrics = metrics

    def predict(self, birth_date: date | datetime | str, last_wake: datetime | str) -> SleepPrediction:
        prediction = predict_next_sleep(birth_date, last_wake, self.clock.now())
        if self.metrics is not None:
            self.metrics.record_prediction(prediction.status.value)
        log.debug(
            "prediction.computed",
            remaining_minutes=prediction.remaining_minutes,
            pressure=prediction.pressure_percentage,
            status=prediction.status.value,
        )
        return prediction

    def predict_from_events(
        self, birth_date: date | datetime | str, events: Iterable[CareEvent]
    ) -> SleepPrediction | None:
        """Predict from a ledger snapshot; None when it holds no sleep history."""
        woke = last_wake_time(events)
        if woke is None:
            return None
        return self.predict(birth_date, woke)
