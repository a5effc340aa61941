"""Pydantic models and enumerations shared by the campaign queue.

Models:
    - QueueStatus: lifecycle states of a queue item
    - ServerType: supported outbound providers
    - OutboundServerCreate: outbound server registration payload
    - CampaignCreate / ContactCreate / ContactListCreate: collaborator rows
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, model_validator


class QueueStatus(str, Enum):
    """Lifecycle states of a queue item.

    ``pending`` items are eligible once ``scheduled_for`` has passed,
    ``processing`` items are owned by a worker, ``sent`` and ``failed`` are
    terminal. ``bounced`` is set by out-of-band bounce handling.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    BOUNCED = "bounced"


# Error codes recorded on queue items
SMTP_TIMEOUT = "SMTP_TIMEOUT"
SEND_ERROR = "SEND_ERROR"


class ServerType(str, Enum):
    """Outbound delivery providers."""

    SMTP = "smtp"
    SENDGRID = "sendgrid"
    MAILGUN = "mailgun"


class Encryption(str, Enum):
    """Transport security for plain SMTP servers."""

    NONE = "none"
    TLS = "tls"
    SSL = "ssl"


class OutboundServerCreate(BaseModel):
    """Outbound server definition.

    SMTP servers need ``host`` and ``port``; HTTP providers need ``api_key``
    and Mailgun additionally needs ``domain``.
    """

    model_config = ConfigDict(extra="forbid", use_enum_values=True, validate_default=True)

    id: str
    tenant_id: Annotated[str, Field(default="default", description="Owning tenant")]
    name: Annotated[str | None, Field(default=None, description="Display name")]
    type: Annotated[ServerType, Field(default=ServerType.SMTP)]
    host: str | None = None
    port: int | None = None
    username: str | None = None
    password: str | None = None
    api_key: str | None = None
    domain: str | None = None
    encryption: Encryption | None = None
    from_name: Annotated[str, Field(min_length=1)]
    from_email: Annotated[str, Field(min_length=3)]
    is_active: bool = True
    limit_per_minute: Annotated[int | None, Field(default=None, ge=0)]
    limit_per_hour: Annotated[int | None, Field(default=None, ge=0)]
    limit_per_day: Annotated[int | None, Field(default=None, ge=0)]

    @model_validator(mode="after")
    def check_provider_fields(self) -> "OutboundServerCreate":
        """Validate that the fields required by the provider are present."""
        if self.type == ServerType.SMTP.value:
            if not self.host or not self.port:
                raise ValueError("host and port are required for smtp servers")
        else:
            if not self.api_key:
                raise ValueError(f"api_key is required for {self.type} servers")
            if self.type == ServerType.MAILGUN.value and not self.domain:
                raise ValueError("domain is required for mailgun servers")
        return self


class CampaignCreate(BaseModel):
    """Campaign row as far as the queue is concerned."""

    model_config = ConfigDict(extra="ignore")

    id: str
    tenant_id: str = "default"
    name: str | None = None
    subject: str
    html_content: str
    scheduled_at: Annotated[int | None, Field(default=None, description="Epoch seconds")]


class ContactCreate(BaseModel):
    """Contact row used to resolve recipients."""

    model_config = ConfigDict(extra="ignore")

    id: str
    tenant_id: str = "default"
    email: Annotated[str, Field(min_length=3)]
    first_name: str | None = None
    last_name: str | None = None
    status: str = "active"


class ContactListCreate(BaseModel):
    """Named group of contacts."""

    model_config = ConfigDict(extra="ignore")

    id: str
    tenant_id: str = "default"
    name: str
