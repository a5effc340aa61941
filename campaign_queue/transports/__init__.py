"""Delivery transports keyed by outbound server type."""

from typing import Any, Dict, Optional

from ..models import ServerType
from .base import DeliveryResult, DeliveryTransport, OutboundMessage, TransportError
from .mailgun import MailgunTransport
from .sendgrid import SendGridTransport
from .smtp import SMTPTransport

__all__ = [
    "DeliveryResult",
    "DeliveryTransport",
    "MailgunTransport",
    "OutboundMessage",
    "SMTPTransport",
    "SendGridTransport",
    "TransportError",
    "TransportRouter",
]


class TransportRouter(DeliveryTransport):
    """Dispatch each message to the transport matching ``server["type"]``."""

    def __init__(self, transports: Optional[Dict[str, DeliveryTransport]] = None):
        self.transports: Dict[str, DeliveryTransport] = transports or {
            ServerType.SMTP.value: SMTPTransport(),
            ServerType.SENDGRID.value: SendGridTransport(),
            ServerType.MAILGUN.value: MailgunTransport(),
        }

    def transport_for(self, server: Dict[str, Any]) -> DeliveryTransport:
        server_type = (server.get("type") or ServerType.SMTP.value).lower()
        transport = self.transports.get(server_type)
        if transport is None:
            raise TransportError(f"Unsupported server type '{server_type}'")
        return transport

    async def send(self, message: OutboundMessage, server: Dict[str, Any]) -> DeliveryResult:
        try:
            transport = self.transport_for(server)
        except TransportError as exc:
            return DeliveryResult.failure(str(exc), exc.code)
        return await transport.send(message, server)

    async def release(self) -> None:
        for transport in self.transports.values():
            await transport.release()

    async def cleanup(self) -> None:
        """Release idle pooled connections held by the transports."""
        for transport in self.transports.values():
            await transport.cleanup()
