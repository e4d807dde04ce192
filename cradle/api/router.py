from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException
import structlog
from .schemas import AppendRequest, AppendResponse, SnapshotResponse, InvalidateResponse, ScheduleResponse
from ..prediction import SleepPrediction, age_in_months, awake_window_minutes, generate_daily_schedule
from ..prediction.engine import parse_timestamp
from ..services.care_service import CareService, get_care_service

router = APIRouter(prefix="/v1")
log = structlog.get_logger()


@router.post("/owners/{owner_id}/events", response_model=AppendResponse, status_code=201)
async def append_event(
    owner_id: str,
    req: AppendRequest,
    care: CareService = Depends(get_care_service),
):
    draft = req.to_draft(owner_id)
    confirmed = await care.append(owner_id, draft)
    return AppendResponse(status="confirmed", event=confirmed.to_record())


@router.get("/owners/{owner_id}/events", response_model=SnapshotResponse)
async def list_events(owner_id: str, care: CareService = Depends(get_care_service)):
    version, snapshot = await care.snapshot(owner_id)
    return SnapshotResponse(
        owner_id=owner_id,
        version=version,
        total=len(snapshot),
        pending=sum(1 for e in snapshot if e.is_pending),
        events=[e.to_record() for e in snapshot],
    )


@router.post("/owners/{owner_id}/invalidate", response_model=InvalidateResponse, status_code=202)
async def invalidate_ledger(owner_id: str, care: CareService = Depends(get_care_service)):
    try:
        await care.invalidate(owner_id)
    except Exception as e:
        log.warning("api.invalidate_failed", owner_id=owner_id, error=str(e))
        raise HTTPException(503, detail="Event store unavailable; serving last known snapshot") from e
    version, _ = await care.snapshot(owner_id)
    return InvalidateResponse(owner_id=owner_id, status="refetched", version=version)


@router.get("/owners/{owner_id}/prediction", response_model=SleepPrediction)
async def predict_sleep(
    owner_id: str,
    birth_date: str,
    last_wake_time: str | None = None,
    care: CareService = Depends(get_care_service),
):
    prediction = await care.predict(owner_id, birth_date, last_wake_time)
    if prediction is None:
        raise HTTPException(404, detail=f"No sleep history for owner {owner_id}")
    return prediction


@router.get("/schedule", response_model=ScheduleResponse)
async def daily_schedule(
    birth_date: str,
    first_wake_time: str,
    naps: int = 4,
    nap_minutes: int = 60,
    care: CareService = Depends(get_care_service),
):
    woke: datetime = parse_timestamp(first_wake_time, "first_wake_time")
    months = age_in_months(birth_date, care.predictor.clock.now())
    try:
        slots = generate_daily_schedule(woke, months, naps=naps, nap_minutes=nap_minutes)
    except ValueError as e:
        raise HTTPException(400, detail=str(e)) from e
    return ScheduleResponse(
        age_in_months=months,
        awake_window_minutes=awake_window_minutes(months),
        slots=slots,
    )
