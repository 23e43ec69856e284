from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Set

import httpx

from accountcore.logging import get_logger, sanitize_error_message
from accountcore.service.email import EmailService
from accountcore.storage.models import utcnow

logger = get_logger(__name__)


class NotificationEvent(str, Enum):
    VERIFICATION_EMAIL = "verification_email"
    PASSWORD_RESET = "password_reset"
    WELCOME = "welcome"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    ACCOUNT_LOCKED = "account_locked"


# names understood by the marketplace event bus
WEBHOOK_EVENT_NAMES = {
    NotificationEvent.VERIFICATION_EMAIL: "auth/email.verification.requested",
    NotificationEvent.PASSWORD_RESET: "auth/password.reset.requested",
    NotificationEvent.WELCOME: "auth/user.registered",
    NotificationEvent.TWO_FACTOR_ENABLED: "auth/2fa.enabled",
    NotificationEvent.ACCOUNT_LOCKED: "auth/account.locked",
}


class NotificationDispatcher(Protocol):
    async def dispatch(self, event: NotificationEvent, payload: Dict[str, Any]) -> None: ...


class EmailNotificationDispatcher:
    """Deliver notifications as mail through :class:`EmailService`."""

    def __init__(self, email: EmailService, *, verification_ttl_hours: int = 24, reset_ttl_minutes: int = 60) -> None:
        self.email = email
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    async def dispatch(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        to = payload["email"]
        # smtplib blocks; keep it off the event loop
        if event == NotificationEvent.VERIFICATION_EMAIL:
            await asyncio.to_thread(
                self.email.send_email_verification, to, payload["token"], ttl_hours=self.verification_ttl_hours
            )
        elif event == NotificationEvent.PASSWORD_RESET:
            await asyncio.to_thread(
                self.email.send_password_reset, to, payload["token"], ttl_minutes=self.reset_ttl_minutes
            )
        elif event == NotificationEvent.WELCOME:
            await asyncio.to_thread(self.email.send_welcome, to, payload.get("first_name"))
        elif event == NotificationEvent.TWO_FACTOR_ENABLED:
            await asyncio.to_thread(self.email.send_two_factor_enabled, to)
        elif event == NotificationEvent.ACCOUNT_LOCKED:
            await asyncio.to_thread(
                self.email.send_account_locked,
                to,
                retry_after_seconds=int(payload.get("retry_after_seconds", 0)),
            )
        else:
            logger.warning("notification_event_unhandled", event=str(event))


class WebhookNotificationDispatcher:
    """POST notification envelopes to an event endpoint.

    The body is signed with HMAC-SHA256 over the raw JSON when a secret is
    configured; the hex digest travels in ``X-Accountcore-Signature``.
    """

    def __init__(
        self,
        url: str,
        *,
        secret: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self._client = client

    def _headers(self, body: bytes) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            digest = hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()
            headers["X-Accountcore-Signature"] = f"sha256={digest}"
        return headers

    async def dispatch(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        envelope = {
            "name": WEBHOOK_EVENT_NAMES.get(event, f"auth/{event.value}"),
            "data": payload,
            "ts": utcnow().isoformat(),
        }
        body = json.dumps(envelope, separators=(",", ":")).encode()
        if self._client is not None:
            response = await self._client.post(self.url, content=body, headers=self._headers(body))
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, content=body, headers=self._headers(body))
        response.raise_for_status()


class Notifier:
    """Schedules dispatches in the background and never lets them fail the caller."""

    def __init__(self, dispatcher: Optional[NotificationDispatcher]) -> None:
        self.dispatcher = dispatcher
        self._pending: Set[asyncio.Task] = set()

    def notify(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        if self.dispatcher is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("notification_dropped_no_loop", notification=event.value)
            return
        task = loop.create_task(self._dispatch(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _dispatch(self, event: NotificationEvent, payload: Dict[str, Any]) -> None:
        try:
            await self.dispatcher.dispatch(event, payload)
        except Exception as exc:
            logger.warning(
                "notification_dispatch_failed",
                notification=event.value,
                account_id=payload.get("account_id"),
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    async def drain(self) -> None:
        """Wait for every scheduled dispatch to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
