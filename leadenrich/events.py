"""
Domain events and the activity log.

Every emitted event is recorded as an Activity and handed to the publisher
(normally the WebhookDeliveryService). Events carrying a natural key, such as
a call summary keyed by call SID, are emitted at most once per key unless the
producer forces re-emission.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .database import Activity, session_scope
from .logger import get_logger

ENRICHMENT_COMPLETED = "enrichment.completed"
ENRICHMENT_FAILED = "enrichment.failed"
CALL_SUMMARY = "call.summary"
TEST_EVENT = "test.event"


@dataclass
class Event:
    type: str
    subject_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=datetime.now)

    def to_payload(self) -> Dict[str, Any]:
        """Webhook wire body."""
        return {
            "id": self.id,
            "type": self.type,
            "subjectId": self.subject_id,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class EmitOutcome:
    event: Event
    emitted: bool
    attempt_ids: List[str] = field(default_factory=list)


class EventEmitter:
    def __init__(
        self,
        session_factory: sessionmaker,
        publisher=None,
        clock: Callable[[], datetime] = datetime.now,
        logger=None,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.clock = clock
        self.logger = logger or get_logger()

    def emit(
        self,
        event_type: str,
        subject_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        natural_key: Optional[str] = None,
        force: bool = False,
    ) -> EmitOutcome:
        """
        Record and publish an event.

        With a natural_key, an existing activity of the same type and key
        suppresses the emission (no new activity, nothing published) unless
        force is True. Concurrent emitters of one key are arbitrated by the
        unique emission key: exactly one insert wins.
        """
        metadata = dict(metadata or {})
        dedupe = natural_key is not None and not force
        event = Event(type=event_type, subject_id=subject_id, metadata=metadata, created_at=self.clock())
        try:
            with session_scope(self.session_factory) as session:
                if dedupe:
                    existing = _find_activity(session, event_type, natural_key)
                    if existing is not None:
                        return self._suppressed(existing)
                session.add(
                    Activity(
                        id=event.id,
                        type=event.type,
                        subject_id=subject_id,
                        natural_key=natural_key,
                        emission_key=natural_key if dedupe else None,
                        meta=metadata,
                        created_at=event.created_at,
                    )
                )
        except IntegrityError:
            if not dedupe:
                raise
            with session_scope(self.session_factory) as session:
                existing = _find_activity(session, event_type, natural_key)
            if existing is None:
                raise
            return self._suppressed(existing)

        attempt_ids: List[str] = []
        if self.publisher is not None:
            attempt_ids = self.publisher.publish(event)
        self.logger.debug(
            "Event emitted",
            event_id=event.id,
            event_type=event_type,
            subject_id=subject_id,
            deliveries=len(attempt_ids),
            forced=force,
        )
        return EmitOutcome(event=event, emitted=True, attempt_ids=attempt_ids)

    def _suppressed(self, existing: Activity) -> EmitOutcome:
        self.logger.info(
            "Event already emitted for natural key",
            event_type=existing.type,
            natural_key=existing.natural_key,
            activity_id=existing.id,
        )
        return EmitOutcome(event=_event_from_activity(existing), emitted=False)

    def emit_call_summary(
        self,
        call_sid: str,
        summary: str,
        subject_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> EmitOutcome:
        if not call_sid:
            raise ValueError("call_sid is required")
        metadata = {"callSid": call_sid, "summary": summary}
        metadata.update(extra or {})
        return self.emit(CALL_SUMMARY, subject_id=subject_id, metadata=metadata, natural_key=call_sid, force=force)

    def activities(self, event_type: Optional[str] = None, natural_key: Optional[str] = None) -> List[Activity]:
        with session_scope(self.session_factory) as session:
            q = session.query(Activity)
            if event_type:
                q = q.filter(Activity.type == event_type)
            if natural_key:
                q = q.filter(Activity.natural_key == natural_key)
            return q.order_by(Activity.created_at.desc()).all()


def _event_from_activity(row: Activity) -> Event:
    return Event(
        type=row.type,
        subject_id=row.subject_id,
        metadata=dict(row.meta or {}),
        id=row.id,
        created_at=row.created_at,
    )


def _find_activity(session, event_type: str, natural_key: str) -> Optional[Activity]:
    return (
        session.query(Activity)
        .filter(Activity.type == event_type, Activity.natural_key == natural_key)
        .order_by(Activity.created_at.desc())
        .first()
    )
