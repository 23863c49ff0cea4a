import json
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from kubevirt_actuator.models import Event


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session, event_type: str, payload: dict, machine: str | None = None
) -> None:
    session.add(
        Event(
            machine=machine,
            timestamp=now_utc(),
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True),
        )
    )


def list_events(
    session: Session,
    machine: str | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> list[Event]:
    query = select(Event)
    if machine:
        query = query.where(Event.machine == machine)
    if event_type:
        query = query.where(Event.event_type == event_type)
    return list(session.scalars(query.order_by(Event.id.desc()).limit(limit)))
