"""Owner-facing push notifications with idempotent dispatch."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from .store import Store
from .models import NotificationRecord


logger = logging.getLogger(__name__)

STEP_UP_NOTIFICATION = "agent.step_up"
ACCESS_REQUEST_NOTIFICATION = "agent.access_request"
OAUTH_AUTHORIZATION_NOTIFICATION = "oauth.authorization"

_DELIVERED_STATUSES = ("sent", "delivered")


class PushSender(Protocol):
    """Transport to the owner's devices. Raises on delivery failure."""

    def send(self, user_id: str, type: str, payload: dict[str, Any]) -> None: ...


class LoggingPushSender:
    """Default transport: records the notification in the log only."""

    def send(self, user_id: str, type: str, payload: dict[str, Any]) -> None:
        logger.info("Notification %s for user %s", type, user_id)


@dataclass
class NotificationResult:
    success: bool
    notification_id: Optional[str] = None
    duplicate: bool = False
    error: Optional[str] = None


class NotificationService:
    def __init__(
        self,
        store: Store,
        sender: Optional[PushSender] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.sender = sender or LoggingPushSender()
        self._clock = clock

    def notify(
        self,
        user_id: str,
        type: str,
        payload: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> NotificationResult:
        """
        Send a notification unless one with the same key already went out.

        A replayed key whose earlier attempt succeeded is a no-op. Failed
        attempts are logged and returned, never raised, so the caller's own
        state change is not affected by the push transport.
        """
        if idempotency_key:
            previous = self.store.find_notification(idempotency_key, type, _DELIVERED_STATUSES)
            if previous is not None:
                logger.debug("Skipping duplicate %s notification for %s", type, idempotency_key)
                return NotificationResult(
                    success=True, notification_id=previous.id, duplicate=True
                )

        record = NotificationRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=type,
            source_id=idempotency_key,
            status="sent",
            created_at=int(self._clock()),
        )
        try:
            self.sender.send(user_id, type, payload)
        except Exception as exc:
            logger.warning("Notification %s to user %s failed: %s", type, user_id, exc)
            record.status = "failed"
            record.error = str(exc)
        self.store.insert_notification(record)
        return NotificationResult(
            success=record.status == "sent",
            notification_id=record.id,
            error=record.error,
        )
