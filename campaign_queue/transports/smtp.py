"""Plain SMTP delivery through pooled aiosmtplib connections."""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from typing import Any, Dict, Optional

import aiosmtplib

from ..smtp_pool import SMTPPool
from .base import DeliveryTransport, OutboundMessage, TransportError, sender_identity


DEFAULT_MESSAGE_ID_DOMAIN = "campaign-queue.local"


def message_id_header(message_id: str, from_email: str) -> str:
    """Return ``<message_id@domain>`` using the sender's domain."""
    _, at, domain = from_email.rpartition("@")
    domain = domain.strip() if at else ""
    return f"<{message_id}@{domain or DEFAULT_MESSAGE_ID_DOMAIN}>"


class SMTPTransport(DeliveryTransport):
    """Send HTML messages over an SMTP conversation."""

    def __init__(self, pool: Optional[SMTPPool] = None):
        self.pool = pool or SMTPPool()

    @staticmethod
    def build_message(message: OutboundMessage, server: Dict[str, Any]) -> EmailMessage:
        """Translate an outbound message into an :class:`EmailMessage`."""
        msg = EmailMessage()
        msg["From"] = sender_identity(server)
        msg["To"] = message.to
        msg["Subject"] = message.subject
        msg["Message-ID"] = message_id_header(message.message_id, server["from_email"])
        msg["X-Mailer"] = "campaign-queue"
        msg.set_content(message.html, subtype="html")
        return msg

    @staticmethod
    def security_flags(server: Dict[str, Any]) -> tuple[bool, bool]:
        """Return ``(use_tls, start_tls)`` for the server configuration."""
        encryption = (server.get("encryption") or "").lower()
        if encryption == "ssl":
            return True, False
        if encryption == "tls":
            return False, True
        if encryption == "none":
            return False, False
        return int(server.get("port") or 0) == 465, False

    async def _deliver(self, message: OutboundMessage, server: Dict[str, Any]) -> Optional[str]:
        host = server.get("host")
        port = server.get("port")
        if not host or not port:
            raise TransportError("Incomplete SMTP configuration")
        use_tls, start_tls = self.security_flags(server)
        email_msg = self.build_message(message, server)
        try:
            smtp = await self.pool.get_connection(
                host,
                int(port),
                server.get("username"),
                server.get("password"),
                use_tls=use_tls,
                start_tls=start_tls,
            )
            await smtp.send_message(email_msg, sender=server["from_email"])
        except asyncio.CancelledError:
            # the conversation may be mid-DATA, never hand it to the next send
            self.pool.evict()
            raise
        except aiosmtplib.SMTPException as exc:
            await self.pool.discard()
            code = getattr(exc, "code", None)
            detail = f"{exc} (SMTP {code})" if code else str(exc)
            raise TransportError(detail) from exc
        except (ConnectionError, OSError) as exc:
            await self.pool.discard()
            raise TransportError(f"SMTP connection failed: {exc}") from exc
        return message.message_id

    async def release(self) -> None:
        """Close the connection pooled for the calling task."""
        await self.pool.discard()

    async def cleanup(self) -> None:
        await self.pool.cleanup()
