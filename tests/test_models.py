import pytest
from pydantic import ValidationError

from campaign_queue.models import (
    CampaignCreate,
    ContactCreate,
    OutboundServerCreate,
)


def test_smtp_server_defaults():
    server = OutboundServerCreate(
        id="s1", host="smtp.local", port=25, from_name="ACME", from_email="news@acme.test"
    )
    assert server.type == "smtp"
    assert server.tenant_id == "default"
    assert server.is_active is True
    assert server.limit_per_hour is None


def test_smtp_server_requires_host_and_port():
    with pytest.raises(ValidationError, match="host and port"):
        OutboundServerCreate(id="s1", from_name="ACME", from_email="news@acme.test")


def test_http_providers_require_api_key_and_domain():
    with pytest.raises(ValidationError, match="api_key is required for sendgrid"):
        OutboundServerCreate(id="sg", type="sendgrid", from_name="ACME", from_email="news@acme.test")
    with pytest.raises(ValidationError, match="domain is required"):
        OutboundServerCreate(
            id="mg", type="mailgun", api_key="key", from_name="ACME", from_email="news@acme.test"
        )


def test_server_rejects_unknown_fields_and_negative_limits():
    base = dict(id="s1", host="smtp.local", port=25, from_name="ACME", from_email="news@acme.test")
    with pytest.raises(ValidationError):
        OutboundServerCreate(**base, priority=1)
    with pytest.raises(ValidationError):
        OutboundServerCreate(**base, limit_per_minute=-1)


def test_collaborator_models_ignore_extra_fields():
    campaign = CampaignCreate(id="c", subject="Hi", html_content="<p/>", status="draft")
    assert campaign.tenant_id == "default"
    contact = ContactCreate(id="k", email="a@x.test", phone="123")
    assert contact.status == "active"
