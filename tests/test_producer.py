import re
import types

import aiosqlite
import pytest

from campaign_queue.persistence import Persistence
from campaign_queue.producer import QueueProducer, build_message_id, display_name

NOW = 1_700_000_000.5


async def make_store(tmp_path, scheduled_at=None) -> Persistence:
    p = Persistence(str(tmp_path / "producer.db"))
    await p.init_db()
    await p.add_campaign(
        {
            "id": "spring",
            "tenant_id": "t1",
            "subject": "Spring sale",
            "html_content": "<h1>Sale</h1>",
            "scheduled_at": scheduled_at,
        }
    )
    await p.add_contact_list({"id": "news", "tenant_id": "t1", "name": "News"})
    await p.add_contact_list({"id": "vip", "tenant_id": "t1", "name": "VIP"})
    contacts = [
        {"id": "c1", "email": "ann@x.test", "first_name": "Ann", "last_name": "Lee"},
        {"id": "c2", "email": "bob@x.test", "first_name": "Bob"},
        {"id": "c3", "email": "ANN@x.test", "first_name": "Ann", "last_name": "Again"},
        {"id": "c4", "email": "gone@x.test", "status": "unsubscribed"},
    ]
    for contact in contacts:
        await p.add_contact({"tenant_id": "t1", **contact})
        await p.add_list_member("news", contact["id"])
    await p.add_list_member("vip", "c1")
    return p


def test_display_name_falls_back_to_email():
    assert display_name({"first_name": "Ann", "last_name": "Lee", "email": "a@x.test"}) == "Ann Lee"
    assert display_name({"first_name": "Ann", "last_name": None, "email": "a@x.test"}) == "a@x.test"
    assert display_name({"email": "a@x.test"}) == "a@x.test"


def test_message_id_shape():
    message_id = build_message_id("spring", "c1", 1700000000123)
    assert re.fullmatch(r"spring-c1-1700000000123-[0-9a-f]{10}", message_id)
    assert message_id != build_message_id("spring", "c1", 1700000000123)


@pytest.mark.asyncio
async def test_enqueue_dedupes_recipients(tmp_path):
    p = await make_store(tmp_path)
    producer = QueueProducer(p, clock=lambda: NOW)

    result = await producer.enqueue("spring", ["news", "vip"])

    assert result.queued_count == 2
    assert result.duplicates_skipped == 0
    items = await p.list_queue_items(campaign_id="spring")
    by_email = {item["contact_email"]: item for item in items}
    assert set(by_email) == {"ann@x.test", "bob@x.test"}
    ann = by_email["ann@x.test"]
    assert ann["status"] == "pending"
    assert ann["retry_count"] == 0
    assert ann["contact_name"] == "Ann Lee"
    assert ann["subject"] == "Spring sale"
    assert ann["html_content"] == "<h1>Sale</h1>"
    assert ann["scheduled_for"] == int(NOW)
    assert ann["message_id"].startswith("spring-c1-1700000000500-")
    assert by_email["bob@x.test"]["contact_name"] == "bob@x.test"
    assert (await p.get_campaign("spring"))["status"] == "sending"


@pytest.mark.asyncio
async def test_enqueue_twice_is_idempotent(tmp_path):
    p = await make_store(tmp_path)
    producer = QueueProducer(p, clock=lambda: NOW)
    await producer.enqueue("spring", ["news"])

    second = await producer.enqueue("spring", ["news"])

    assert second.queued_count == 0
    assert second.duplicates_skipped == 2
    assert (await p.count_by_status("spring"))["total"] == 2


@pytest.mark.asyncio
async def test_enqueue_uses_campaign_schedule(tmp_path):
    p = await make_store(tmp_path, scheduled_at=1_800_000_000)
    producer = QueueProducer(p, clock=lambda: NOW)
    await producer.enqueue("spring", ["vip"])
    items = await p.list_queue_items()
    assert [item["scheduled_for"] for item in items] == [1_800_000_000]


@pytest.mark.asyncio
async def test_empty_selection_means_whole_tenant(tmp_path):
    p = await make_store(tmp_path)
    await p.add_contact({"id": "c9", "tenant_id": "t1", "email": "solo@x.test"})
    await p.add_contact({"id": "c10", "tenant_id": "other", "email": "foreign@x.test"})
    result = await QueueProducer(p, clock=lambda: NOW).enqueue("spring", [])
    assert result.queued_count == 3
    emails = {item["contact_email"] for item in await p.list_queue_items()}
    assert emails == {"ann@x.test", "bob@x.test", "solo@x.test"}


@pytest.mark.asyncio
async def test_callback_runs_only_when_something_was_queued(tmp_path):
    p = await make_store(tmp_path)
    calls = []

    async def on_enqueued():
        calls.append(True)

    producer = QueueProducer(p, on_enqueued=on_enqueued, clock=lambda: NOW)
    await producer.enqueue("spring", ["news"])
    await producer.enqueue("spring", ["news"])
    assert calls == [True]


@pytest.mark.asyncio
async def test_failed_insert_does_not_abort_the_run(tmp_path):
    p = await make_store(tmp_path)
    original = p.insert_queue_item

    async def flaky_insert(item, now_ts):
        if item["contact_email"] == "ann@x.test":
            raise aiosqlite.OperationalError("database is locked")
        return await original(item, now_ts)

    p.insert_queue_item = flaky_insert
    producer = QueueProducer(
        p,
        clock=lambda: NOW,
        logger=types.SimpleNamespace(warning=lambda *a, **k: None, info=lambda *a, **k: None),
    )
    result = await producer.enqueue("spring", ["news"])

    assert result.as_dict() == {"queued_count": 1, "duplicates_skipped": 0, "failed": 1}
    assert [item["contact_email"] for item in await p.list_queue_items()] == ["bob@x.test"]


@pytest.mark.asyncio
async def test_unknown_campaign_raises(tmp_path):
    p = await make_store(tmp_path)
    with pytest.raises(ValueError):
        await QueueProducer(p).enqueue("missing", ["news"])


@pytest.mark.asyncio
async def test_list_of_another_tenant_is_never_mailed(tmp_path):
    p = await make_store(tmp_path)
    await p.add_contact_list({"id": "rival", "tenant_id": "t2", "name": "Rival customers"})
    await p.add_contact({"id": "r1", "tenant_id": "t2", "email": "rival@y.test"})
    await p.add_list_member("rival", "r1")
    producer = QueueProducer(p, clock=lambda: NOW)

    result = await producer.enqueue("spring", ["rival"])

    assert result.queued_count == 0
    assert await p.list_queue_items(campaign_id="spring") == []
