from pydantic import BaseModel, Field
from typing import Any, Dict, List
from datetime import datetime
from ..event_models import CareEventDraft, EventType, validate_draft
from ..prediction import ScheduleSlot

class AppendRequest(BaseModel):
    correlation_id: str | None = Field(default=None, description="Client token; generated when omitted")
    event_type: EventType
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_draft(self, owner_id: str) -> CareEventDraft:
        data = self.model_dump(exclude_none=True)
        data["owner_id"] = owner_id
        return validate_draft(data)

class AppendResponse(BaseModel):
    status: str
    event: Dict[str, Any]

class SnapshotResponse(BaseModel):
    owner_id: str
    version: int
    total: int
    pending: int
    events: List[Dict[str, Any]]

class InvalidateResponse(BaseModel):
    owner_id: str
    status: str
    version: int

class ScheduleResponse(BaseModel):
    age_in_months: int
    awake_window_minutes: int
    slots: List[ScheduleSlot]
