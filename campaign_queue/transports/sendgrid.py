"""SendGrid v3 HTTP API transport."""

from __future__ import annotations

from typing import Any, Dict, Optional

import aiohttp

from .base import DeliveryTransport, OutboundMessage, TransportError

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class SendGridTransport(DeliveryTransport):
    """Deliver through SendGrid's ``mail/send`` endpoint."""

    def __init__(self, endpoint: str = SENDGRID_URL):
        self.endpoint = endpoint

    @staticmethod
    def build_payload(message: OutboundMessage, server: Dict[str, Any]) -> Dict[str, Any]:
        recipient: Dict[str, str] = {"email": message.to}
        if message.to_name:
            recipient["name"] = message.to_name
        return {
            "personalizations": [{"to": [recipient]}],
            "from": {"email": server["from_email"], "name": server.get("from_name")},
            "subject": message.subject,
            "content": [{"type": "text/html", "value": message.html}],
            "custom_args": {"campaign_message_id": message.message_id},
        }

    async def _deliver(self, message: OutboundMessage, server: Dict[str, Any]) -> Optional[str]:
        api_key = server.get("api_key")
        if not api_key:
            raise TransportError("SendGrid API key is not configured")
        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.endpoint,
                    json=self.build_payload(message, server),
                    headers=headers,
                ) as resp:
                    if resp.status >= 400:
                        detail = await resp.text()
                        raise TransportError(f"SendGrid error ({resp.status}): {detail}")
                    return resp.headers.get("X-Message-Id") or message.message_id
        except aiohttp.ClientError as exc:
            raise TransportError(f"SendGrid request failed: {exc}") from exc
