"""
Signed webhook fan-out for agent lifecycle events.

Each delivery is a POST with ``X-Webhook-Timestamp`` and
``X-Webhook-Signature: sha256=<hex>`` headers, where the signature is an
HMAC-SHA256 over ``f"{timestamp}.{body}"`` with the subscriber's secret.
Deliveries are not retried. Every attempt is logged, and no delivery failure
reaches the operation that triggered the event.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import sqlite3
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

import httpx

from .config import Settings
from .errors import NotFoundError, ValidationError
from .models import (
    Agent,
    DeliveryLog,
    VALID_WEBHOOK_EVENTS,
    WebhookEvent,
    WebhookSubscription,
)
from .store import Store


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
RESPONSE_BODY_LIMIT = 500
DELIVERY_LOG_LIMIT = 50


def sign_payload(secret: str, timestamp: int | str, body: str) -> str:
    """Return the ``sha256=<hex>`` signature header value."""
    message = f"{timestamp}.{body}".encode()
    digest = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(
    secret: str,
    timestamp: int | str,
    body: str,
    signature: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """Subscriber-side check: recompute the HMAC and reject stale timestamps."""
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance_seconds:
        return False
    expected = sign_payload(secret, ts, body)
    return hmac.compare_digest(expected, signature)


@dataclass
class DeliveryResult:
    webhook_id: str
    merchant_id: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: int = 0


class WebhookDispatcher:
    """
    Registers subscribers and fans events out to them in parallel.

    ``emit()`` hands the fan-out to a bounded worker pool and returns a
    Future; ``drain()`` waits for outstanding deliveries. ``dispatch()`` runs
    the fan-out in the caller's thread and returns the per-subscriber results.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings,
        http_client: Optional[httpx.Client] = None,
        max_workers: int = 8,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self.timeout = settings.webhook_timeout_seconds
        self._http = http_client or httpx.Client(timeout=self.timeout)
        self._clock = clock
        self._delivery_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")
        self._event_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="webhook-event")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    def close(self) -> None:
        self.drain()
        self._event_pool.shutdown(wait=True)
        self._delivery_pool.shutdown(wait=True)
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # Registration

    def register(
        self,
        merchant_id: str,
        url: str,
        events: Iterable[str],
        secret: Optional[str] = None,
    ) -> tuple[WebhookSubscription, str]:
        """Create or replace the merchant's registration. Returns (subscription, secret)."""
        if not merchant_id:
            raise ValidationError("merchant_id is required")
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as exc:
            raise ValidationError(f"Invalid webhook URL: {url!r}") from exc
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ValidationError("Webhook URL must be an absolute http(s) URL")

        event_set = frozenset(events)
        if not event_set:
            raise ValidationError("At least one event type is required")
        unknown = event_set - VALID_WEBHOOK_EVENTS
        if unknown:
            raise ValidationError(f"Unsupported webhook events: {', '.join(sorted(unknown))}")

        signing_secret = secret or f"whsec_{secrets.token_hex(32)}"
        now = int(self._clock())
        subscription = self.store.upsert_subscription(
            WebhookSubscription(
                id=str(uuid.uuid4()),
                merchant_id=merchant_id,
                url=str(parsed),
                secret=signing_secret,
                events=event_set,
                enabled=True,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("Registered webhook for merchant %s (%s)", merchant_id, ", ".join(sorted(event_set)))
        return subscription, signing_secret

    def unregister(self, merchant_id: str) -> bool:
        removed = self.store.delete_subscription(merchant_id)
        if removed:
            logger.info("Unregistered webhook for merchant %s", merchant_id)
        return removed

    def get_registration(self, merchant_id: str) -> Optional[WebhookSubscription]:
        return self.store.get_subscription(merchant_id)

    def delivery_logs(self, merchant_id: str, limit: int = DELIVERY_LOG_LIMIT) -> list[DeliveryLog]:
        subscription = self.store.get_subscription(merchant_id)
        if subscription is None:
            raise NotFoundError("Webhook registration", merchant_id)
        return self.store.list_delivery_logs(subscription.id, limit=min(limit, DELIVERY_LOG_LIMIT))

    # Dispatch

    def _build_body(self, event_type: str, data: dict[str, Any]) -> str:
        envelope = {
            "event": event_type,
            "timestamp": datetime.fromtimestamp(self._clock(), timezone.utc).isoformat().replace("+00:00", "Z"),
            "data": data,
        }
        return json.dumps(envelope, separators=(",", ":"), sort_keys=True)

    def _deliver(self, subscription: WebhookSubscription, event_type: str, body: str) -> DeliveryResult:
        timestamp = int(self._clock())
        headers = {
            "Content-Type": "application/json",
            TIMESTAMP_HEADER: str(timestamp),
            SIGNATURE_HEADER: sign_payload(subscription.secret, timestamp, body),
        }
        status_code: Optional[int] = None
        response_body: Optional[str] = None
        error: Optional[str] = None

        started = time.monotonic()
        try:
            response = self._http.post(
                subscription.url, content=body.encode(), headers=headers, timeout=self.timeout
            )
            status_code = response.status_code
            response_body = response.text[:RESPONSE_BODY_LIMIT]
            if not response.is_success:
                error = f"HTTP {status_code}"
        except httpx.TimeoutException:
            error = f"Timed out after {self.timeout:g}s"
        except httpx.HTTPError as exc:
            error = str(exc) or exc.__class__.__name__
        except Exception as exc:
            # Non-httpx transport failures still get a delivery log entry
            logger.exception("Unexpected error delivering %s to merchant %s", event_type, subscription.merchant_id)
            error = str(exc) or exc.__class__.__name__
        duration_ms = int((time.monotonic() - started) * 1000)

        try:
            self.store.insert_delivery_log(
                DeliveryLog(
                    id=str(uuid.uuid4()),
                    webhook_id=subscription.id,
                    event_type=event_type,
                    payload=body,
                    status_code=status_code,
                    response_body=response_body,
                    error=error,
                    duration_ms=duration_ms,
                    attempted_at=timestamp,
                )
            )
        except sqlite3.Error:
            logger.exception("Failed to record webhook delivery for %s", subscription.merchant_id)

        if error:
            logger.warning(
                "Webhook %s to merchant %s failed: %s", event_type, subscription.merchant_id, error
            )
        return DeliveryResult(
            webhook_id=subscription.id,
            merchant_id=subscription.merchant_id,
            success=error is None,
            status_code=status_code,
            error=error,
            duration_ms=duration_ms,
        )

    def dispatch(self, event_type: str, data: dict[str, Any]) -> list[DeliveryResult]:
        """Deliver to every enabled subscriber of the event, in parallel."""
        if event_type not in VALID_WEBHOOK_EVENTS:
            raise ValidationError(f"Unsupported webhook event: {event_type}")
        subscribers = [
            sub for sub in self.store.list_enabled_subscriptions() if event_type in sub.events
        ]
        if not subscribers:
            return []

        body = self._build_body(event_type, data)
        futures = [
            (sub, self._delivery_pool.submit(self._deliver, sub, event_type, body))
            for sub in subscribers
        ]
        results = []
        for sub, future in futures:
            try:
                results.append(future.result())
            except Exception as exc:
                logger.exception("Webhook delivery to merchant %s crashed", sub.merchant_id)
                results.append(
                    DeliveryResult(webhook_id=sub.id, merchant_id=sub.merchant_id, success=False, error=str(exc))
                )
        return results

    def emit(self, event_type: str, data: dict[str, Any]) -> Future:
        """Dispatch without blocking the caller; failures are logged on completion."""
        try:
            future = self._event_pool.submit(self.dispatch, event_type, data)
        except RuntimeError as exc:
            # Pool already shut down; the triggering operation has committed
            logger.error("Dropped %s webhook event after shutdown: %s", event_type, exc)
            future = Future()
            future.set_result([])
            return future
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._on_emitted)
        return future

    def _on_emitted(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.error("Webhook dispatch failed: %s", exc, exc_info=exc)
            return
        failed = [r for r in future.result() if not r.success]
        if failed:
            logger.warning("%d webhook deliveries failed", len(failed))

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until all emitted events have been delivered (or failed)."""
        with self._pending_lock:
            pending = list(self._pending)
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception:
                # Already reported by _on_emitted
                continue

    # Lifecycle events

    def token_revoked(self, agent: Agent, token_hash: str, reason: str) -> Future:
        return self.emit(
            WebhookEvent.TOKEN_REVOKED.value,
            {
                "token_hash": token_hash,
                "agent_id": agent.id,
                "client_id": agent.client_id,
                "reason": reason,
            },
        )

    def agent_deactivated(self, agent: Agent, reason: Optional[str] = None) -> Future:
        data = {"agent_id": agent.id, "client_id": agent.client_id, "status": agent.status.value}
        if reason:
            data["reason"] = reason
        return self.emit(WebhookEvent.AGENT_DEACTIVATED.value, data)

    def agent_secret_rotated(self, agent: Agent) -> Future:
        return self.emit(
            WebhookEvent.AGENT_SECRET_ROTATED.value,
            {"agent_id": agent.id, "client_id": agent.client_id},
        )
