"""Care event records and their per-type metadata variants."""
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Union
import uuid

from .clock import ensure_aware
from .errors import ValidationError


class EventType(str, Enum):
    """Closed set of care event kinds."""
    FEED = "FEED"
    SLEEP = "SLEEP"
    DIAPER = "DIAPER"
    MEDICATION = "MEDICATION"
    SOLIDS = "SOLIDS"
    HEALTH_LOG = "HEALTH_LOG"


class EventStatus(str, Enum):
    """Lifecycle of a submitted event: pending -> confirmed, or failed (removed)."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class _Metadata(BaseModel):
    """Fields legal on every event type. Anything not declared by a variant is rejected."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    notes: str | None = None
    logged_by: str | None = None


class FeedMetadata(_Metadata):
    amount_ml: float | None = Field(default=None, ge=0)
    side: Literal["LEFT", "RIGHT", "BOTH"] | None = None
    feed_kind: Literal["BOTTLE", "BREAST"] | None = None
    left_duration_s: int | None = Field(default=None, ge=0)
    right_duration_s: int | None = Field(default=None, ge=0)


class SleepMetadata(_Metadata):
    start_time: datetime | None = None
    end_time: datetime | None = None
    sleep_quality: int | None = Field(default=None, ge=1, le=5)
    location: str | None = None
    is_nap: bool | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _aware(cls, v: datetime | None) -> datetime | None:
        return ensure_aware(v) if v is not None else None

    @model_validator(mode="after")
    def _ordered(self) -> "SleepMetadata":
        if self.start_time and self.end_time and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class DiaperMetadata(_Metadata):
    diaper_type: Literal["WET", "DIRTY", "BOTH"] | None = None


class MedicationMetadata(_Metadata):
    medication: str = Field(..., min_length=1)
    dosage: str | None = None
    scheduled_time: datetime | None = None

    @field_validator("scheduled_time")
    @classmethod
    def _aware(cls, v: datetime | None) -> datetime | None:
        return ensure_aware(v) if v is not None else None


class SolidsMetadata(_Metadata):
    food_item: str | None = None
    amount_g: float | None = Field(default=None, ge=0)


class HealthLogMetadata(_Metadata):
    temperature: float
    unit: Literal["C", "F"] = "C"


CareEventMetadata = Union[
    FeedMetadata,
    SleepMetadata,
    DiaperMetadata,
    MedicationMetadata,
    SolidsMetadata,
    HealthLogMetadata,
]

METADATA_MODELS: dict[EventType, type[_Metadata]] = {
    EventType.FEED: FeedMetadata,
    EventType.SLEEP: SleepMetadata,
    EventType.DIAPER: DiaperMetadata,
    EventType.MEDICATION: MedicationMetadata,
    EventType.SOLIDS: SolidsMetadata,
    EventType.HEALTH_LOG: HealthLogMetadata,
}


class CareEventDraft(BaseModel):
    """A care event as submitted by a caller, before the remote store has seen it."""
    model_config = ConfigDict(frozen=True)

    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    owner_id: str = Field(..., min_length=1, description="Caregiver the event belongs to")
    event_type: EventType
    timestamp: datetime = Field(..., description="When the event happened (not when it was submitted)")
    metadata: CareEventMetadata

    @model_validator(mode="before")
    @classmethod
    def _select_metadata_variant(cls, data: Any) -> Any:
        # The event type picks the variant; a raw dict is parsed against it only.
        if not isinstance(data, dict):
            return data
        raw = data.get("metadata")
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            return data
        try:
            event_type = EventType(data.get("event_type"))
        except ValueError:
            return data
        return {**data, "metadata": METADATA_MODELS[event_type].model_validate(raw)}

    @field_validator("timestamp")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    @model_validator(mode="after")
    def _metadata_matches_type(self):
        expected = METADATA_MODELS[self.event_type]
        if type(self.metadata) is not expected:
            raise ValueError(
                f"{type(self.metadata).__name__} is not valid metadata for {self.event_type.value}"
            )
        return self

    def as_draft(self) -> "CareEventDraft":
        return CareEventDraft(
            correlation_id=self.correlation_id,
            owner_id=self.owner_id,
            event_type=self.event_type,
            timestamp=self.timestamp,
            metadata=self.metadata,
        )

    def to_record(self) -> dict[str, Any]:
        """JSON-ready dict with unset metadata fields dropped."""
        record = self.model_dump(mode="json", exclude={"metadata"})
        record["metadata"] = self.metadata.model_dump(mode="json", exclude_none=True)
        return record


class CareEvent(CareEventDraft):
    """A care event in a ledger snapshot: provisional (pending) or confirmed by the remote store."""
    id: str | None = Field(default=None, description="Server-assigned identifier")
    created_at: datetime | None = Field(default=None, description="Server persistence time")
    status: EventStatus = EventStatus.CONFIRMED

    @classmethod
    def provisional(cls, draft: CareEventDraft) -> "CareEvent":
        return cls(**dict(draft.as_draft()), status=EventStatus.PENDING)

    @classmethod
    def confirmed(cls, draft: CareEventDraft, id: str, created_at: datetime) -> "CareEvent":
        return cls(
            **dict(draft.as_draft()),
            id=id,
            created_at=ensure_aware(created_at),
            status=EventStatus.CONFIRMED,
        )

    @property
    def is_pending(self) -> bool:
        return self.status == EventStatus.PENDING


def validate_draft(data: CareEventDraft | dict[str, Any]) -> CareEventDraft:
    """
    Coerce caller input into a validated draft.

    Raises:
        ValidationError: unknown event type, bad timestamp, or metadata fields
            that are illegal for the event type
    """
    if isinstance(data, CareEventDraft):
        return data.as_draft()
    try:
        return CareEventDraft.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"invalid care event: {e.error_count()} error(s)",
            errors=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e


def build_draft(
    owner_id: str,
    event_type: EventType | str,
    timestamp: datetime | str,
    metadata: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> CareEventDraft:
    """Build and validate a draft from loose arguments."""
    payload: dict[str, Any] = {
        "owner_id": owner_id,
        "event_type": event_type,
        "timestamp": timestamp,
        "metadata": metadata or {},
    }
    if correlation_id is not None:
        payload["correlation_id"] = correlation_id
    return validate_draft(payload)
