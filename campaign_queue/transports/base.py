"""Base protocol for delivery transports."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..models import SEND_ERROR


@dataclass(frozen=True)
class OutboundMessage:
    """Fully resolved message handed to a transport."""

    to: str
    subject: str
    html: str
    message_id: str
    to_name: Optional[str] = None


@dataclass
class DeliveryResult:
    """Outcome of a single delivery attempt."""

    success: bool
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, provider_message_id: Optional[str] = None) -> "DeliveryResult":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failure(cls, message: str, code: str = SEND_ERROR) -> "DeliveryResult":
        return cls(success=False, error_code=code, error_message=message)


class TransportError(RuntimeError):
    """Raised when a provider rejects or cannot accept a message."""

    def __init__(self, message: str, code: str = SEND_ERROR):
        super().__init__(message)
        self.code = code


def sender_identity(server: Dict[str, Any]) -> str:
    """Return the ``Name <address>`` sender of an outbound server."""
    name = (server.get("from_name") or "").strip()
    address = server["from_email"]
    return f"{name} <{address}>" if name else address


class DeliveryTransport:
    """Interface implemented by concrete delivery transports."""

    async def send(self, message: OutboundMessage, server: Dict[str, Any]) -> DeliveryResult:
        """Attempt one delivery and report the outcome."""
        try:
            provider_id = await self._deliver(message, server)
        except TransportError as exc:
            return DeliveryResult.failure(str(exc), exc.code)
        return DeliveryResult.ok(provider_id)

    async def _deliver(self, message: OutboundMessage, server: Dict[str, Any]) -> Optional[str]:
        """Deliver ``message`` and return the provider message id."""
        raise NotImplementedError

    async def release(self) -> None:
        """Give back resources held on behalf of the calling task."""

    async def cleanup(self) -> None:
        """Close idle resources shared across tasks."""
