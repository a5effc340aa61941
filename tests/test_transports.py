import asyncio

import aiohttp
import aiosmtplib
import pytest

from campaign_queue.transports import (
    DeliveryResult,
    MailgunTransport,
    OutboundMessage,
    SendGridTransport,
    SMTPTransport,
    TransportRouter,
)
from campaign_queue.transports.smtp import message_id_header

MESSAGE = OutboundMessage(
    to="ann@x.test",
    subject="Spring sale",
    html="<p>Hello</p>",
    message_id="camp-c1-1700000000000-abcd1234",
    to_name="Ann",
)

SMTP_SERVER = {
    "id": "s1",
    "type": "smtp",
    "host": "smtp.local",
    "port": 587,
    "username": "user",
    "password": "pass",
    "encryption": "tls",
    "from_name": "ACME",
    "from_email": "news@acme.test",
}


class DummySMTP:
    def __init__(self, error=None, hang=False):
        self.sent = []
        self.error = error
        self.hang = hang

    async def send_message(self, msg, sender=None):
        if self.hang:
            await asyncio.sleep(3600)
        if self.error:
            raise self.error
        self.sent.append((msg, sender))


class DummyPool:
    def __init__(self, smtp):
        self.smtp = smtp
        self.requests = []
        self.discarded = 0
        self.evicted = 0
        self.cleaned = False

    async def get_connection(self, host, port, user, password, *, use_tls, start_tls=False):
        self.requests.append((host, port, user, password, use_tls, start_tls))
        return self.smtp

    async def discard(self):
        self.discarded += 1

    def evict(self):
        self.evicted += 1

    async def cleanup(self):
        self.cleaned = True


class FakeResponse:
    def __init__(self, status=200, body=None, headers=None, text=""):
        self.status = status
        self._body = body
        self.headers = headers or {}
        self._text = text

    async def json(self, content_type=None):
        return self._body

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def patch_session(monkeypatch):
    def install(session):
        monkeypatch.setattr(aiohttp, "ClientSession", lambda *args, **kwargs: session)
        return session

    return install


def test_security_flags():
    flags = SMTPTransport.security_flags
    assert flags({"encryption": "ssl", "port": 25}) == (True, False)
    assert flags({"encryption": "tls", "port": 587}) == (False, True)
    assert flags({"encryption": "none", "port": 465}) == (False, False)
    assert flags({"port": 465}) == (True, False)
    assert flags({"port": 25}) == (False, False)


def test_build_message_headers():
    msg = SMTPTransport.build_message(MESSAGE, SMTP_SERVER)
    assert msg["From"] == "ACME <news@acme.test>"
    assert msg["To"] == "ann@x.test"
    assert msg["Message-ID"] == "<camp-c1-1700000000000-abcd1234@acme.test>"
    assert msg.get_content_subtype() == "html"


@pytest.mark.asyncio
async def test_smtp_send_uses_pool():
    smtp = DummySMTP()
    pool = DummyPool(smtp)
    result = await SMTPTransport(pool).send(MESSAGE, SMTP_SERVER)

    assert result == DeliveryResult.ok(MESSAGE.message_id)
    assert pool.requests == [("smtp.local", 587, "user", "pass", False, True)]
    assert smtp.sent[0][1] == "news@acme.test"


@pytest.mark.asyncio
async def test_smtp_rejection_becomes_failure_and_discards_connection():
    smtp = DummySMTP(error=aiosmtplib.SMTPRecipientRefused(550, "mailbox unavailable", "ann@x.test"))
    pool = DummyPool(smtp)
    result = await SMTPTransport(pool).send(MESSAGE, SMTP_SERVER)

    assert result.success is False
    assert result.error_code == "SEND_ERROR"
    assert "550" in result.error_message
    assert pool.discarded == 1


@pytest.mark.asyncio
async def test_smtp_connection_error_becomes_failure():
    pool = DummyPool(DummySMTP(error=ConnectionRefusedError("refused")))
    result = await SMTPTransport(pool).send(MESSAGE, SMTP_SERVER)
    assert result.success is False
    assert "SMTP connection failed" in result.error_message


@pytest.mark.asyncio
async def test_smtp_incomplete_configuration():
    pool = DummyPool(DummySMTP())
    result = await SMTPTransport(pool).send(MESSAGE, {**SMTP_SERVER, "host": None})
    assert result.success is False
    assert pool.requests == []


def test_sendgrid_payload():
    payload = SendGridTransport.build_payload(MESSAGE, SMTP_SERVER)
    assert payload["personalizations"] == [{"to": [{"email": "ann@x.test", "name": "Ann"}]}]
    assert payload["from"] == {"email": "news@acme.test", "name": "ACME"}
    assert payload["content"][0]["type"] == "text/html"


@pytest.mark.asyncio
async def test_sendgrid_send(patch_session):
    session = patch_session(FakeSession(FakeResponse(202, headers={"X-Message-Id": "sg-1"})))
    server = {"type": "sendgrid", "api_key": "key", "from_name": "ACME", "from_email": "news@acme.test"}

    result = await SendGridTransport("https://sendgrid.test/send").send(MESSAGE, server)

    assert result == DeliveryResult.ok("sg-1")
    url, kwargs = session.posts[0]
    assert url == "https://sendgrid.test/send"
    assert kwargs["headers"]["Authorization"] == "Bearer key"


@pytest.mark.asyncio
async def test_sendgrid_error_status(patch_session):
    patch_session(FakeSession(FakeResponse(401, text="bad key")))
    server = {"type": "sendgrid", "api_key": "key", "from_email": "news@acme.test"}

    result = await SendGridTransport().send(MESSAGE, server)

    assert result.success is False
    assert result.error_message == "SendGrid error (401): bad key"


@pytest.mark.asyncio
async def test_sendgrid_requires_api_key():
    result = await SendGridTransport().send(MESSAGE, {"type": "sendgrid", "from_email": "news@acme.test"})
    assert result.success is False
    assert "API key" in result.error_message


@pytest.mark.asyncio
async def test_mailgun_send(patch_session):
    session = patch_session(FakeSession(FakeResponse(200, body={"id": "<mg-1@acme>", "message": "Queued"})))
    server = {
        "type": "mailgun",
        "api_key": "key",
        "domain": "mg.acme.test",
        "from_name": "ACME",
        "from_email": "news@acme.test",
    }

    result = await MailgunTransport("https://mailgun.test/v3/").send(MESSAGE, server)

    assert result == DeliveryResult.ok("<mg-1@acme>")
    url, kwargs = session.posts[0]
    assert url == "https://mailgun.test/v3/mg.acme.test/messages"
    assert kwargs["data"]["v:campaign_message_id"] == MESSAGE.message_id
    assert kwargs["auth"].login == "api"


@pytest.mark.asyncio
async def test_mailgun_client_error(patch_session):
    patch_session(FakeSession(error=aiohttp.ClientConnectionError("unreachable")))
    server = {"type": "mailgun", "api_key": "key", "domain": "mg.acme.test", "from_email": "news@acme.test"}

    result = await MailgunTransport().send(MESSAGE, server)

    assert result.success is False
    assert "Mailgun request failed" in result.error_message


@pytest.mark.asyncio
async def test_router_dispatches_by_type():
    calls = []

    class Recorder(SendGridTransport):
        async def _deliver(self, message, server):
            calls.append(server["type"])
            return "rec"

    router = TransportRouter({"sendgrid": Recorder()})
    assert (await router.send(MESSAGE, {"type": "SendGrid"})).provider_message_id == "rec"
    assert calls == ["sendgrid"]

    unsupported = await router.send(MESSAGE, {"type": "pigeon"})
    assert unsupported.success is False
    assert "Unsupported server type" in unsupported.error_message


@pytest.mark.asyncio
async def test_router_cleanup_releases_smtp_pool():
    pool = DummyPool(DummySMTP())
    router = TransportRouter({"smtp": SMTPTransport(pool)})
    await router.cleanup()
    assert pool.cleaned is True


def test_message_id_header_falls_back_to_default_domain():
    assert message_id_header("abc", "news@acme.test") == "<abc@acme.test>"
    assert message_id_header("abc", "postmaster") == "<abc@campaign-queue.local>"


@pytest.mark.asyncio
async def test_cancelled_smtp_send_evicts_connection():
    pool = DummyPool(DummySMTP(hang=True))
    transport = SMTPTransport(pool)

    with pytest.raises(TimeoutError):
        async with asyncio.timeout(0.01):
            await transport.send(MESSAGE, SMTP_SERVER)

    assert pool.evicted == 1
    assert pool.discarded == 0


@pytest.mark.asyncio
async def test_router_release_discards_task_connection():
    pool = DummyPool(DummySMTP())
    router = TransportRouter({"smtp": SMTPTransport(pool), "sendgrid": SendGridTransport()})
    await router.release()
    assert pool.discarded == 1
