import json

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from kubevirt_actuator.db import SessionLocal
from kubevirt_actuator.metrics import metrics
from kubevirt_actuator.repositories import list_events
from kubevirt_actuator.schemas import EventRead


router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.get("/v1/events", response_model=list[EventRead])
def get_events(
    machine: str | None = None,
    event_type: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[EventRead]:
    return [
        EventRead(
            id=event.id,
            timestamp=event.timestamp,
            machine=event.machine,
            event_type=event.event_type,
            payload=json.loads(event.payload_json),
        )
        for event in list_events(db, machine=machine, event_type=event_type, limit=limit)
    ]
