"""
Party notification port.

Notifications are fire-and-forget: the escrow state machine never waits on
delivery and never fails because of it. The outbox implementation persists an
OutboxEvent row that a delivery worker (SMS, push, email) picks up later.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import EscrowEvent, OutboxEvent

logger = logging.getLogger(__name__)


class NotificationPort(ABC):

    @abstractmethod
    async def notify(self, party_id: str, event: EscrowEvent, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationService(NotificationPort):
    """Writes notifications to the log only (development and dry runs)"""

    async def notify(self, party_id: str, event: EscrowEvent, payload: Dict[str, Any]) -> None:
        logger.info(f"📣 NOTIFY: {event.value} -> {party_id} {payload}")


class OutboxNotificationService(NotificationPort):
    """Persists notifications to the outbox_events table"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def notify(self, party_id: str, event: EscrowEvent, payload: Dict[str, Any]) -> None:
        async with async_managed_session(self.session_factory) as session:
            session.add(
                OutboxEvent(
                    event_type=event.value,
                    aggregate_id=payload.get("escrow_id"),
                    party_id=party_id,
                    event_data=payload,
                )
            )
        logger.debug(f"📬 OUTBOX_QUEUED: {event.value} -> {party_id}")
