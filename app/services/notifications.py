"""
Background notification dispatch: a bounded queue drained by a small fixed pool of worker tasks.
Requests submit and return immediately; delivery failures are logged, never retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from html import escape
from urllib.parse import quote

from app.config import settings
from app.services.email import redact_email

logger = logging.getLogger(__name__)

NotificationSink = Callable[[str, str, str], Awaitable[None]]

VERIFICATION_SUBJECT = "Kindly verify your account"
PASSWORD_RESET_SUBJECT = "Password reset request"

_VERIFICATION_TEMPLATE = """\
<html>
  <body>
    <h2>Welcome!</h2>
    <p>Please confirm your email address to activate your account.</p>
    <p><a href="{url}">Verify my email</a></p>
    <p>This link expires in {hours} hours.</p>
  </body>
</html>
"""

_PASSWORD_RESET_TEMPLATE = """\
<html>
  <body>
    <h2>Password reset</h2>
    <p>We received a request to reset your password.</p>
    <p><a href="{url}">Choose a new password</a></p>
    <p>This link expires in {minutes} minutes. If you did not ask for a reset, ignore this email.</p>
  </body>
</html>
"""


@dataclass(frozen=True)
class Notification:
    recipient: str
    subject: str
    body: str


def _frontend_link(path: str, token: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}{path}?token={quote(token)}"


def render_verification_email(recipient: str, token: str) -> Notification:
    url = _frontend_link("/auth/verify", token)
    body = _VERIFICATION_TEMPLATE.format(
        url=escape(url), hours=settings.email_verification_expire_hours
    )
    return Notification(recipient, VERIFICATION_SUBJECT, body)


def render_password_reset_email(recipient: str, token: str) -> Notification:
    url = _frontend_link("/auth/reset-password", token)
    body = _PASSWORD_RESET_TEMPLATE.format(
        url=escape(url), minutes=settings.password_reset_expire_minutes
    )
    return Notification(recipient, PASSWORD_RESET_SUBJECT, body)


class NotificationDispatcher:
    """Fire-and-forget delivery through `sink` on `workers` asyncio tasks.

    The queue is created in start() so it belongs to the running event loop.
    No ordering between queued notifications is guaranteed.
    """

    def __init__(self, sink: NotificationSink, *, workers: int = 2, queue_size: int = 100) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._sink = sink
        self._workers = workers
        self._queue_size = queue_size
        self._queue: asyncio.Queue[Notification] | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._tasks = [
            asyncio.create_task(self._worker(self._queue), name=f"notification-worker-{i}")
            for i in range(self._workers)
        ]
        logger.info("Notification dispatcher started with %s workers", self._workers)

    def submit(self, notification: Notification) -> bool:
        """Queue a notification without waiting. Returns False if it was dropped."""
        if self._queue is None:
            logger.warning(
                "Notification dispatcher not running; dropping email to %s",
                redact_email(notification.recipient),
            )
            return False
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            logger.warning(
                "Notification queue full; dropping email to %s",
                redact_email(notification.recipient),
            )
            return False
        return True

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, timeout: float = 10.0) -> None:
        if not self.running:
            return
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Notification queue not drained within %ss; cancelling workers", timeout)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None

    async def _worker(self, queue: asyncio.Queue[Notification]) -> None:
        while True:
            notification = await queue.get()
            try:
                await self._sink(notification.recipient, notification.subject, notification.body)
            except Exception:
                logger.exception(
                    "Failed to send '%s' to %s",
                    notification.subject,
                    redact_email(notification.recipient),
                )
            finally:
                queue.task_done()
