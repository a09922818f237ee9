"""Outbound email for help requests and chat.

Every ``notify_*`` call schedules its send on the running event loop and
returns immediately; a failed send is logged and never reaches the caller.
"""
from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Awaitable, Optional, Set
from urllib.parse import urlencode

from helpdesk.config import Settings
from helpdesk.models_sqlalchemy.models import ChatMessage, HelpRequest
from helpdesk.utils.logger import logger


class Mailer:
    """SMTP transport; a no-op that logs when credentials are missing."""

    def __init__(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        from_addr: Optional[str],
        from_name: str,
        timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mailer":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASS,
            from_addr=settings.email_from,
            from_name=settings.FROM_NAME,
        )

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)

    def _send_sync(self, to: str, subject: str, html: str) -> None:
        msg = EmailMessage()
        msg["From"] = f"{self.from_name} <{self.from_addr}>"
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            smtp.login(self.user, self.password)
            smtp.send_message(msg)

    async def send(self, to: str, subject: str, html: str) -> None:
        if not self.configured:
            logger.info("SMTP not configured. Would notify %s: %s", to, subject)
            return
        await asyncio.to_thread(self._send_sync, to, subject, html)
        logger.info("Email sent to=%s subject=%s", to, subject)


def _excerpt(body: Optional[str], limit: int = 500) -> str:
    text = (body or "").strip()
    if len(text) > limit:
        text = text[:limit] + "..."
    return escape(text).replace("\n", "<br>")


def _customer_query(help_request: HelpRequest) -> str:
    return urlencode({"id": help_request.id, "email": help_request.customer_email})


class Notifier:
    def __init__(
        self,
        mailer: Mailer,
        *,
        admin_email: Optional[str],
        admin_url: str,
        customer_url: str,
    ):
        self.mailer = mailer
        self.admin_email = admin_email
        self.admin_url = admin_url.rstrip("/")
        self.customer_url = customer_url.rstrip("/")
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, mailer: Optional[Mailer] = None) -> "Notifier":
        return cls(
            mailer or Mailer.from_settings(settings),
            admin_email=settings.ADMIN_NOTIFICATION_EMAIL,
            admin_url=settings.ADMIN_URL,
            customer_url=settings.CUSTOMER_URL,
        )

    def _spawn(self, label: str, send: Awaitable[None]) -> None:
        async def runner() -> None:
            try:
                await send
            except Exception as exc:
                logger.error("Notification failed (%s): %s", label, exc, exc_info=True)

        task = asyncio.get_running_loop().create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every in-flight notification; used on shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def notify_request_created(self, help_request: HelpRequest, reference: str) -> None:
        status_link = f"{self.customer_url}/help/success?{_customer_query(help_request)}"
        self._spawn(
            "customer confirmation",
            self.mailer.send(
                help_request.customer_email,
                f"We received your {help_request.type} request ({reference})",
                (
                    f"<p>Hi {escape(help_request.customer_name)},</p>"
                    f"<p>Your request for order #{escape(help_request.order_number)} has been received. "
                    f"Your reference is <strong>{reference}</strong>.</p>"
                    f'<p><a href="{escape(status_link)}">View your request</a></p>'
                ),
            ),
        )

        if not self.admin_email:
            return
        self._spawn(
            "admin new request",
            self.mailer.send(
                self.admin_email,
                f"New {help_request.type} request for order #{help_request.order_number}",
                (
                    f"<p>{escape(help_request.customer_name)} ({escape(help_request.customer_email)}) "
                    f"opened a {help_request.type} request.</p>"
                    f"<p>{_excerpt(help_request.reason)}</p>"
                    f'<p><a href="{self.admin_url}/admin/{help_request.id}">Open in admin</a></p>'
                ),
            ),
        )

    def notify_new_message(self, help_request: HelpRequest, message: ChatMessage, reference: str) -> None:
        """Email the other party about a chat message with a body."""
        if not (message.body or "").strip():
            return

        if message.sender == "customer":
            if not self.admin_email:
                logger.info("ADMIN_NOTIFICATION_EMAIL not set; skipping admin chat alert request_id=%s", help_request.id)
                return
            self._spawn(
                "admin chat alert",
                self.mailer.send(
                    self.admin_email,
                    f"New message on request {reference}",
                    (
                        f"<p>{escape(help_request.customer_name)} wrote:</p>"
                        f"<blockquote>{_excerpt(message.body)}</blockquote>"
                        f'<p><a href="{self.admin_url}/admin/{help_request.id}">Reply in admin</a></p>'
                    ),
                ),
            )
            return

        chat_link = f"{self.customer_url}/help/chat?{_customer_query(help_request)}"
        self._spawn(
            "customer chat alert",
            self.mailer.send(
                help_request.customer_email,
                f"Support replied to your request {reference}",
                (
                    f"<p>Hi {escape(help_request.customer_name)},</p>"
                    f"<blockquote>{_excerpt(message.body)}</blockquote>"
                    f'<p><a href="{escape(chat_link)}">Continue the conversation</a></p>'
                ),
            ),
        )
