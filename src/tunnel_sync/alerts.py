"""Tunnel-down email alerts.

Alerts are a side effect of a run, never part of its outcome: dispatch is
scheduled in the background and a failed send is logged, not raised.
"""

from __future__ import annotations

import asyncio
import logging
from email.message import EmailMessage
from email.utils import formataddr
from typing import Protocol

import aiosmtplib

from .config import DEFAULT_ALERT_SENDER_NAME, SmtpConfig
from .models import TunnelConfig

logger = logging.getLogger(__name__)

ALERT_SUBJECT = "Cloudflared Tunnel Down Alert"


class MailSender(Protocol):
    async def send(self, message: EmailMessage) -> None: ...


class SmtpMailSender:
    """Sends mail through an SMTP relay."""

    def __init__(self, smtp: SmtpConfig) -> None:
        self._smtp = smtp

    async def send(self, message: EmailMessage) -> None:
        await aiosmtplib.send(
            message,
            hostname=self._smtp.host,
            port=self._smtp.port,
            username=self._smtp.username,
            password=self._smtp.password,
            start_tls=self._smtp.start_tls,
        )


def describe_tunnel_down(tunnel: TunnelConfig) -> str:
    """Human-readable down notice naming the sections left untouched."""
    sections = ",".join(tunnel.declared_sections)
    return (
        f"The Cloudflared tunnel with ID {tunnel.tunnel_id} is currently down. "
        f"{sections} are not being updated."
    )


def compose_tunnel_down_message(
    tunnel: TunnelConfig, sender_name: str = DEFAULT_ALERT_SENDER_NAME
) -> EmailMessage:
    if not tunnel.failure_email:
        raise ValueError(f"Tunnel {tunnel.tunnel_id} has no failure_email configured")

    message = EmailMessage()
    message["From"] = formataddr((sender_name, tunnel.failure_email))
    message["To"] = tunnel.failure_email
    message["Subject"] = ALERT_SUBJECT
    message.set_content(describe_tunnel_down(tunnel))
    return message


class AlertNotifier:
    """Fire-and-forget alert dispatch with a way for the host to flush."""

    def __init__(self, sender: MailSender, sender_name: str = DEFAULT_ALERT_SENDER_NAME) -> None:
        self._sender = sender
        self._sender_name = sender_name
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def notify_tunnel_down(self, tunnel: TunnelConfig) -> asyncio.Task[None]:
        """Schedule the down alert for a tunnel and return immediately."""
        message = compose_tunnel_down_message(tunnel, self._sender_name)
        task = asyncio.create_task(self._dispatch(message, tunnel.tunnel_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _dispatch(self, message: EmailMessage, tunnel_id: str) -> None:
        try:
            await self._sender.send(message)
        except Exception:
            logger.exception(
                "Failed to send tunnel down alert",
                extra={"tunnel_id": tunnel_id, "recipient": message["To"]},
            )
            return
        logger.info(
            "Sent tunnel down alert",
            extra={"tunnel_id": tunnel_id, "recipient": message["To"]},
        )

    async def drain(self) -> None:
        """Wait for every scheduled alert to finish sending."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
