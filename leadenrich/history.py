"""Read-only query surface over delivery attempts, for operators."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from .database import DeliveryAttempt, session_scope

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


@dataclass
class DeliveryPage:
    items: List[dict] = field(default_factory=list)
    total: int = 0
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    next_offset: Optional[int] = None
    filters_applied: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "data": self.items,
            "meta": {
                "totalCount": self.total,
                "filtersApplied": self.filters_applied,
                "pagination": {"limit": self.limit, "offset": self.offset, "nextOffset": self.next_offset},
            },
        }


class DeliveryHistoryStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def query(
        self,
        subscription_id: Optional[str] = None,
        event_type: Optional[str] = None,
        status: Optional[str] = None,
        target_url: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> DeliveryPage:
        """
        Filter delivery attempts, newest first.

        Args:
            limit: Page size, clamped to 1..200
            offset: Rows to skip

        Returns:
            DeliveryPage whose next_offset is None on the last page
        """
        limit = max(1, min(int(limit or DEFAULT_LIMIT), MAX_LIMIT))
        offset = max(0, int(offset or 0))
        applied: List[str] = []

        with session_scope(self.session_factory) as session:
            q = session.query(DeliveryAttempt)
            if subscription_id:
                q = q.filter(DeliveryAttempt.subscription_id == subscription_id)
                applied.append("subscriptionId")
            if event_type:
                q = q.filter(DeliveryAttempt.event_type == event_type)
                applied.append("eventType")
            if status:
                q = q.filter(DeliveryAttempt.status == status)
                applied.append("status")
            if target_url:
                q = q.filter(DeliveryAttempt.target_url == target_url)
                applied.append("targetUrl")
            if created_after:
                q = q.filter(DeliveryAttempt.created_at >= created_after)
                applied.append("createdAfter")
            if created_before:
                q = q.filter(DeliveryAttempt.created_at <= created_before)
                applied.append("createdBefore")

            total = q.count()
            rows = (
                q.order_by(DeliveryAttempt.created_at.desc(), DeliveryAttempt.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            items = [r.to_dict() for r in rows]

        next_offset = offset + len(items) if offset + len(items) < total else None
        return DeliveryPage(
            items=items,
            total=total,
            limit=limit,
            offset=offset,
            next_offset=next_offset,
            filters_applied=applied,
        )

    def get(self, attempt_id: str) -> Optional[dict]:
        with session_scope(self.session_factory) as session:
            row = session.get(DeliveryAttempt, attempt_id)
            return row.to_dict() if row is not None else None

    def stuck(self, limit: int = DEFAULT_LIMIT, offset: int = 0) -> DeliveryPage:
        """Attempts still pending or awaiting retry, for operator action."""
        limit = max(1, min(int(limit or DEFAULT_LIMIT), MAX_LIMIT))
        with session_scope(self.session_factory) as session:
            q = session.query(DeliveryAttempt).filter(DeliveryAttempt.status.in_(["pending", "failed"]))
            total = q.count()
            rows = q.order_by(DeliveryAttempt.created_at.desc()).offset(offset).limit(limit).all()
            items = [r.to_dict() for r in rows]
        next_offset = offset + len(items) if offset + len(items) < total else None
        return DeliveryPage(items=items, total=total, limit=limit, offset=offset, next_offset=next_offset,
                            filters_applied=["status"])

    def summary(self) -> Dict[str, int]:
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(DeliveryAttempt.status, func.count(DeliveryAttempt.id))
                .group_by(DeliveryAttempt.status)
                .all()
            )
        return {status: count for status, count in rows}
