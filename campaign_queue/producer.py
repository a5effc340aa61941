"""Expand a campaign and its recipient lists into queue items."""

from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiosqlite

from .logger import get_logger
from .persistence import Persistence

EnqueuedCallback = Callable[[], Awaitable[None]]


@dataclass
class EnqueueResult:
    """Outcome of a producer run."""

    queued_count: int = 0
    duplicates_skipped: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def display_name(contact: Dict[str, Any]) -> str:
    """Return "first last" when both names are known, the email otherwise."""
    first = (contact.get("first_name") or "").strip()
    last = (contact.get("last_name") or "").strip()
    if first and last:
        return f"{first} {last}"
    return contact["email"]


def build_message_id(campaign_id: str, contact_id: str, now_ms: int) -> str:
    """Return an idempotency key unique to campaign, recipient and enqueue time."""
    return f"{campaign_id}-{contact_id}-{now_ms}-{secrets.token_hex(5)}"


class QueueProducer:
    """Create one pending item per unique (campaign, recipient email) pair.

    Items are inserted one by one: a store failure on one recipient is logged
    and counted, the items already inserted stay queued.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        on_enqueued: Optional[EnqueuedCallback] = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.persistence = persistence
        self.on_enqueued = on_enqueued
        self.clock = clock
        self.logger = logger or get_logger("producer")

    async def resolve_recipients(self, campaign: Dict[str, Any], list_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Return active contacts of the lists, deduplicated by email."""
        contacts = await self.persistence.list_active_contacts_for_lists(
            list_ids, tenant_id=campaign.get("tenant_id")
        )
        seen: set[str] = set()
        unique: List[Dict[str, Any]] = []
        for contact in contacts:
            key = (contact.get("email") or "").strip().lower()
            if not key or key in seen:
                continue
            seen.add(key)
            unique.append(contact)
        return unique

    async def enqueue(self, campaign_id: str, list_ids: Sequence[str]) -> EnqueueResult:
        """Queue the campaign for every active recipient of ``list_ids``."""
        campaign = await self.persistence.get_campaign(campaign_id)
        recipients = await self.resolve_recipients(campaign, list_ids)
        result = EnqueueResult()

        for contact in recipients:
            email = contact["email"].strip()
            if await self.persistence.queue_item_exists(campaign_id, email):
                result.duplicates_skipped += 1
                continue
            now = self.clock()
            now_ts = int(now)
            item = {
                "campaign_id": campaign_id,
                "contact_email": email,
                "contact_name": display_name(contact),
                "subject": campaign["subject"],
                "html_content": campaign["html_content"],
                "message_id": build_message_id(campaign_id, contact["id"], int(now * 1000)),
                "scheduled_for": campaign.get("scheduled_at") or now_ts,
            }
            try:
                await self.persistence.insert_queue_item(item, now_ts)
            except aiosqlite.Error as exc:
                result.failed += 1
                self.logger.warning("Failed to queue %s for campaign %s: %s", email, campaign_id, exc)
                continue
            result.queued_count += 1

        if result.queued_count:
            await self.persistence.set_campaign_status(campaign_id, "sending")
        self.logger.info(
            "Campaign %s queued: %d new, %d duplicates skipped, %d failed",
            campaign_id,
            result.queued_count,
            result.duplicates_skipped,
            result.failed,
        )
        if result.queued_count and self.on_enqueued is not None:
            await self.on_enqueued()
        return result
