# Copyright (C) 2024 Shortlink Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Email sending service and background delivery queue. Logs to console when SMTP not configured."""

import asyncio
import html
import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from urllib.parse import urlencode

from shortlink_server.config import Settings
from shortlink_server.errors import MailDeliveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailMessage:
    to: str
    subject: str
    html: str


def render_email_html(title: str, paragraphs: list[str], link: str | None = None) -> str:
    """Minimal HTML body; paragraphs are escaped, the link is rendered as a button."""
    body = "\n".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    if link:
        href = html.escape(link, quote=True)
        body += (
            f'\n<p><a href="{href}" style="display: inline-block; padding: 10px 16px; '
            f'background: #2563eb; color: #fff; text-decoration: none;">{html.escape(title)}</a></p>'
            f'\n<p style="font-size: 12px; color: #666;">{href}</p>'
        )
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: system-ui, sans-serif; color: #333; max-width: 560px;">
<h2>{html.escape(title)}</h2>
{body}
</body>
</html>"""


def verify_email_link(settings: Settings, email: str, token: str) -> str:
    base = settings.frontend_url.rstrip("/")
    return f"{base}/verify-email-token?{urlencode({'token': token, 'email': email})}"


def reset_password_link(settings: Settings, token: str) -> str:
    return f"{settings.frontend_url.rstrip('/')}/reset-password/{token}"


def verification_message(settings: Settings, email: str, token: str) -> MailMessage:
    return MailMessage(
        to=email,
        subject="Verify your email",
        html=render_email_html(
            "Verify your email",
            [
                f"Your verification code is: {token}",
                "Click the button below or enter the code on the verification page. "
                "The code expires in 24 hours.",
            ],
            verify_email_link(settings, email, token),
        ),
    )


def reset_password_message(settings: Settings, name: str, email: str, token: str) -> MailMessage:
    return MailMessage(
        to=email,
        subject="Reset Your Password",
        html=render_email_html(
            "Reset your password",
            [
                f"Hi {name},",
                "We received a request to reset your password. The link expires in 1 hour. "
                "If you did not ask for this, you can ignore this email.",
            ],
            reset_password_link(settings, token),
        ),
    )


class Mailer:
    """Sends messages over SMTP, or logs them when SMTP is not configured."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.smtp_host and self.settings.smtp_user)

    def _send_sync(self, message: MailMessage) -> None:
        s = self.settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = s.smtp_from
        msg["To"] = message.to
        msg.attach(MIMEText(message.html, "html"))
        with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=30) as server:
            server.starttls()
            server.login(s.smtp_user, s.smtp_password or "")
            server.sendmail(s.smtp_from, [message.to], msg.as_string())

    async def send(self, message: MailMessage) -> None:
        """Deliver one message. Raises MailDeliveryError on failure."""
        if not self.configured:
            logger.info("Email (SMTP not configured): To=%s Subject=%s", message.to, message.subject)
            return
        try:
            await asyncio.to_thread(self._send_sync, message)
        except Exception as e:
            # smtplib also raises UnicodeError and ValueError for bad addresses or headers
            raise MailDeliveryError() from e


class MailQueue:
    """Background delivery with retry and exponential backoff.

    Requests enqueue and return immediately; a worker task started with the
    application drains the queue.
    """

    def __init__(self, mailer: Mailer, max_attempts: int = 3, backoff: float = 2.0):
        self.mailer = mailer
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self._queue: asyncio.Queue[MailMessage] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, mailer: Mailer, settings: Settings) -> "MailQueue":
        return cls(mailer, settings.mail_max_attempts, settings.mail_retry_backoff)

    def enqueue(self, message: MailMessage) -> None:
        self._queue.put_nowait(message)

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="mail-queue")

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def join(self) -> None:
        """Wait until every queued message was delivered or given up on."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.deliver(message)
            except Exception:
                logger.exception(
                    "Dropping email to %s (%s) after an unexpected error", message.to, message.subject
                )
            finally:
                self._queue.task_done()

    async def deliver(self, message: MailMessage) -> bool:
        """Try to send with retries. Returns False when all attempts failed."""
        delay = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.mailer.send(message)
                return True
            except MailDeliveryError as e:
                if attempt == self.max_attempts:
                    logger.error(
                        "Giving up on email to %s (%s) after %d attempts: %s",
                        message.to, message.subject, attempt, e.__cause__ or e,
                    )
                    return False
                logger.warning(
                    "Email to %s failed (attempt %d/%d), retrying in %.1fs",
                    message.to, attempt, self.max_attempts, delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
        return False
