from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from sessionguard.logging import get_logger
from sessionguard.service.errors import ValidationError
from sessionguard.service.outcomes import WriteResult
from sessionguard.storage.models import SecurityEvent, SecurityEventType, Severity

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20


class SecurityEventStore(Protocol):
    async def insert_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    async def list_security_events(
        self,
        user_id: str,
        *,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> Tuple[List[SecurityEvent], int]: ...


@dataclass
class SecurityEventPage:
    events: List[SecurityEvent] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE
    total_pages: int = 0


class SecurityEventLog:
    """Append-only audit trail of authentication activity.

    Writes are best effort: a failed insert is logged and reported through
    the returned ``WriteResult`` so the request that triggered it still
    completes.
    """

    def __init__(
        self, store: SecurityEventStore, *, max_page_size: int = 100
    ) -> None:
        self.store = store
        self.max_page_size = max_page_size

    async def record(
        self,
        user_id: str,
        event_type: SecurityEventType | str,
        description: str,
        *,
        ip_address: str,
        user_agent: str,
        severity: Severity | str,
        location: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> WriteResult[SecurityEvent]:
        try:
            event = SecurityEvent.new(
                user_id,
                event_type,
                description,
                ip_address=ip_address,
                user_agent=user_agent,
                severity=severity,
                location=location,
                metadata=metadata,
            )
            stored = await self.store.insert_security_event(event)
        except Exception as exc:
            logger.error(
                "security_event_write_failed",
                user_id=user_id,
                event_type=str(getattr(event_type, "value", event_type)),
                error=str(exc),
            )
            return WriteResult.failed(str(exc))
        logger.info(
            "security_event_recorded",
            user_id=user_id,
            event_type=stored.event_type,
            severity=stored.severity,
        )
        return WriteResult.succeeded(stored)

    async def query(
        self,
        user_id: str,
        *,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> SecurityEventPage:
        if page < 1:
            raise ValidationError("page must be at least 1", detail={"field": "page"})
        if limit < 1 or limit > self.max_page_size:
            raise ValidationError(
                f"limit must be between 1 and {self.max_page_size}",
                detail={"field": "limit"},
            )
        if event_type is not None:
            try:
                event_type = SecurityEventType(event_type).value
            except ValueError:
                raise ValidationError(
                    "unknown event type", detail={"field": "event_type"}
                )
        if severity is not None:
            try:
                severity = Severity(severity).value
            except ValueError:
                raise ValidationError("unknown severity", detail={"field": "severity"})

        events, total = await self.store.list_security_events(
            user_id,
            event_type=event_type,
            severity=severity,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return SecurityEventPage(
            events=events,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )
