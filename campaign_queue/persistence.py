"""SQLite backed persistence used by the campaign queue."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import QueueStatus

QUEUE_COLUMNS = (
    "id, campaign_id, contact_email, contact_name, subject, html_content, message_id, "
    "status, retry_count, scheduled_for, sent_at, error_message, error_code, "
    "provider_message_id, created_at, updated_at"
)


def _plain(value: Any) -> Any:
    """Return the raw value of enum members, leaving other values untouched."""
    if isinstance(value, Enum):
        return value.value
    return value


class Persistence:
    """Helper class responsible for reading and writing queue state.

    Every method opens its own connection, so a single instance can be shared
    by the producer, the worker loop, the reclaimer and the API handlers.
    """

    def __init__(self, db_path: str = "/data/campaign_queue.db"):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS campaigns (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL DEFAULT 'default',
                    name TEXT,
                    subject TEXT NOT NULL,
                    html_content TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'draft',
                    scheduled_at INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS contacts (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL DEFAULT 'default',
                    email TEXT NOT NULL,
                    first_name TEXT,
                    last_name TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS contact_lists (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL DEFAULT 'default',
                    name TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS contact_list_memberships (
                    list_id TEXT NOT NULL,
                    contact_id TEXT NOT NULL,
                    PRIMARY KEY (list_id, contact_id)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS smtp_servers (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL DEFAULT 'default',
                    name TEXT,
                    type TEXT NOT NULL DEFAULT 'smtp',
                    host TEXT,
                    port INTEGER,
                    username TEXT,
                    password TEXT,
                    api_key TEXT,
                    domain TEXT,
                    encryption TEXT,
                    from_name TEXT NOT NULL,
                    from_email TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    limit_per_minute INTEGER,
                    limit_per_hour INTEGER,
                    limit_per_day INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_queue (
                    id TEXT PRIMARY KEY,
                    campaign_id TEXT NOT NULL,
                    contact_email TEXT NOT NULL,
                    contact_name TEXT,
                    subject TEXT NOT NULL,
                    html_content TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    scheduled_for INTEGER NOT NULL,
                    sent_at INTEGER,
                    error_message TEXT,
                    error_code TEXT,
                    provider_message_id TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_queue_due ON email_queue(status, scheduled_for)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_queue_recipient ON email_queue(campaign_id, contact_email)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email_queue_id TEXT,
                    status TEXT NOT NULL,
                    message TEXT,
                    server_id TEXT,
                    timestamp INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS send_log (
                    server_id TEXT,
                    timestamp INTEGER
                )
                """
            )
            await db.commit()

    @staticmethod
    def _rows(cur: aiosqlite.Cursor, rows: Iterable[Sequence[Any]]) -> List[Dict[str, Any]]:
        cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    # Campaigns ----------------------------------------------------------------
    async def add_campaign(self, campaign: Dict[str, Any]) -> None:
        """Insert or overwrite a campaign definition."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO campaigns
                (id, tenant_id, name, subject, html_content, status, scheduled_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    campaign["id"],
                    campaign.get("tenant_id") or "default",
                    campaign.get("name"),
                    campaign["subject"],
                    campaign["html_content"],
                    campaign.get("status", "draft"),
                    campaign.get("scheduled_at"),
                ),
            )
            await db.commit()

    async def get_campaign(self, campaign_id: str) -> Dict[str, Any]:
        """Fetch a single campaign or raise if it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM campaigns WHERE id=?", (campaign_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    raise ValueError(f"Campaign '{campaign_id}' not found")
                return self._rows(cur, [row])[0]

    async def set_campaign_status(self, campaign_id: str, status: str) -> None:
        """Update the campaign status column."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("UPDATE campaigns SET status=? WHERE id=?", (status, campaign_id))
            await db.commit()

    # Contacts -----------------------------------------------------------------
    async def add_contact(self, contact: Dict[str, Any]) -> None:
        """Insert or overwrite a contact."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO contacts (id, tenant_id, email, first_name, last_name, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    contact["id"],
                    contact.get("tenant_id") or "default",
                    contact["email"],
                    contact.get("first_name"),
                    contact.get("last_name"),
                    contact.get("status", "active"),
                ),
            )
            await db.commit()

    async def add_contact_list(self, contact_list: Dict[str, Any]) -> None:
        """Insert or overwrite a contact list."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO contact_lists (id, tenant_id, name) VALUES (?, ?, ?)",
                (contact_list["id"], contact_list.get("tenant_id") or "default", contact_list["name"]),
            )
            await db.commit()

    async def add_list_member(self, list_id: str, contact_id: str) -> None:
        """Attach a contact to a list (idempotent)."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR IGNORE INTO contact_list_memberships (list_id, contact_id) VALUES (?, ?)",
                (list_id, contact_id),
            )
            await db.commit()

    async def list_active_contacts_for_lists(
        self, list_ids: Sequence[str], tenant_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Return active contacts of ``tenant_id`` belonging to any of ``list_ids``.

        Lists and contacts of other tenants are never returned. A contact
        appearing in several lists is returned once. With no list ids every
        active contact of the tenant is returned.
        """
        ids = [lid for lid in list_ids if lid]
        tenant = tenant_id or "default"
        if ids:
            placeholders = ",".join("?" for _ in ids)
            query = f"""
                SELECT DISTINCT c.id, c.tenant_id, c.email, c.first_name, c.last_name, c.status, c.created_at
                FROM contacts c
                JOIN contact_list_memberships m ON m.contact_id = c.id
                JOIN contact_lists l ON l.id = m.list_id AND l.tenant_id = c.tenant_id
                WHERE m.list_id IN ({placeholders}) AND c.status = 'active' AND c.tenant_id = ?
                ORDER BY c.created_at ASC, c.id ASC
            """
            params: Tuple[Any, ...] = (*ids, tenant)
        else:
            query = """
                SELECT id, tenant_id, email, first_name, last_name, status, created_at
                FROM contacts
                WHERE status = 'active' AND tenant_id = ?
                ORDER BY created_at ASC, id ASC
            """
            params = (tenant,)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                return self._rows(cur, rows)

    # Outbound servers ---------------------------------------------------------
    @staticmethod
    def _decode_server(server: Dict[str, Any]) -> Dict[str, Any]:
        server["is_active"] = bool(server.get("is_active"))
        return server

    async def add_server(self, server: Dict[str, Any]) -> None:
        """Insert or overwrite an outbound server definition."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO smtp_servers
                (id, tenant_id, name, type, host, port, username, password, api_key, domain,
                 encryption, from_name, from_email, is_active, limit_per_minute, limit_per_hour, limit_per_day)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    server["id"],
                    server.get("tenant_id") or "default",
                    server.get("name"),
                    _plain(server.get("type")) or "smtp",
                    server.get("host"),
                    None if server.get("port") is None else int(server["port"]),
                    server.get("username"),
                    server.get("password"),
                    server.get("api_key"),
                    server.get("domain"),
                    _plain(server.get("encryption")),
                    server["from_name"],
                    server["from_email"],
                    1 if server.get("is_active", True) else 0,
                    server.get("limit_per_minute"),
                    server.get("limit_per_hour"),
                    server.get("limit_per_day"),
                ),
            )
            await db.commit()

    async def list_active_servers(self, tenant_id: Optional[str]) -> List[Dict[str, Any]]:
        """Return the active servers of a tenant with credentials, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT * FROM smtp_servers
                WHERE tenant_id = ? AND is_active = 1
                ORDER BY created_at DESC, rowid DESC
                """,
                (tenant_id or "default",),
            ) as cur:
                rows = await cur.fetchall()
                return [self._decode_server(server) for server in self._rows(cur, rows)]

    async def list_servers(self, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return outbound servers without their secrets."""
        query = """
            SELECT id, tenant_id, name, type, host, port, username, domain, encryption,
                   from_name, from_email, is_active, limit_per_minute, limit_per_hour,
                   limit_per_day, created_at
            FROM smtp_servers
        """
        params: Tuple[Any, ...] = ()
        if tenant_id is not None:
            query += " WHERE tenant_id = ?"
            params = (tenant_id,)
        query += " ORDER BY created_at ASC, id ASC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                return [self._decode_server(server) for server in self._rows(cur, rows)]

    async def delete_server(self, server_id: str) -> bool:
        """Remove an outbound server and its rate-limit history."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM smtp_servers WHERE id=?", (server_id,))
            await db.execute("DELETE FROM send_log WHERE server_id=?", (server_id,))
            await db.commit()
            return cursor.rowcount > 0

    # Queue items --------------------------------------------------------------
    async def insert_queue_item(self, item: Dict[str, Any], now_ts: int) -> str:
        """Insert a new pending queue item and return its id."""
        item_id = item.get("id") or uuid.uuid4().hex
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO email_queue
                (id, campaign_id, contact_email, contact_name, subject, html_content, message_id,
                 status, retry_count, scheduled_for, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    item_id,
                    item["campaign_id"],
                    item["contact_email"],
                    item.get("contact_name"),
                    item["subject"],
                    item["html_content"],
                    item["message_id"],
                    QueueStatus.PENDING.value,
                    int(item.get("scheduled_for") or now_ts),
                    now_ts,
                    now_ts,
                ),
            )
            await db.commit()
        return item_id

    async def queue_item_exists(self, campaign_id: str, contact_email: str) -> bool:
        """Return ``True`` when the recipient already has an item for the campaign."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT 1 FROM email_queue
                WHERE campaign_id = ? AND lower(contact_email) = lower(?)
                LIMIT 1
                """,
                (campaign_id, contact_email),
            ) as cur:
                row = await cur.fetchone()
        return row is not None

    async def fetch_due_items(self, *, limit: int, now_ts: int) -> List[Dict[str, Any]]:
        """Return pending items whose schedule has come, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT {QUEUE_COLUMNS}
                FROM email_queue
                WHERE status = ? AND scheduled_for <= ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (QueueStatus.PENDING.value, now_ts, limit),
            ) as cur:
                rows = await cur.fetchall()
                return self._rows(cur, rows)

    async def claim_item(self, item_id: str, now_ts: int) -> bool:
        """Move an item from pending to processing.

        The update only applies while the row is still pending, so of two
        workers racing on the same row exactly one sees ``True``.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE email_queue SET status=?, updated_at=? WHERE id=? AND status=?",
                (QueueStatus.PROCESSING.value, now_ts, item_id, QueueStatus.PENDING.value),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def get_queue_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Return a queue item by id, or ``None``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"SELECT {QUEUE_COLUMNS} FROM email_queue WHERE id=?", (item_id,)
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                return self._rows(cur, [row])[0]

    async def _update_processing(self, item_id: str, assignments: str, params: Tuple[Any, ...]) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE email_queue SET {assignments} WHERE id=? AND status=?",
                (*params, item_id, QueueStatus.PROCESSING.value),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def mark_sent(
        self, item_id: str, sent_ts: int, provider_message_id: Optional[str] = None
    ) -> bool:
        """Mark a processing item as sent and clear its error fields."""
        return await self._update_processing(
            item_id,
            "status=?, sent_at=?, error_message=NULL, error_code=NULL, provider_message_id=?, updated_at=?",
            (QueueStatus.SENT.value, sent_ts, provider_message_id, sent_ts),
        )

    async def schedule_retry(
        self,
        item_id: str,
        *,
        retry_count: int,
        scheduled_for: int,
        error_code: str,
        error_message: str,
        now_ts: int,
    ) -> bool:
        """Return a processing item to pending after a failed attempt."""
        return await self._update_processing(
            item_id,
            "status=?, retry_count=?, scheduled_for=?, error_code=?, error_message=?, updated_at=?",
            (QueueStatus.PENDING.value, retry_count, scheduled_for, error_code, error_message, now_ts),
        )

    async def mark_failed(
        self,
        item_id: str,
        *,
        retry_count: int,
        error_code: str,
        error_message: str,
        now_ts: int,
    ) -> bool:
        """Mark a processing item as permanently failed."""
        return await self._update_processing(
            item_id,
            "status=?, retry_count=?, error_code=?, error_message=?, updated_at=?",
            (QueueStatus.FAILED.value, retry_count, error_code, error_message, now_ts),
        )

    async def defer_item(self, item_id: str, *, scheduled_for: int, now_ts: int) -> bool:
        """Return a processing item to pending without touching ``retry_count``."""
        return await self._update_processing(
            item_id,
            "status=?, scheduled_for=?, updated_at=?",
            (QueueStatus.PENDING.value, scheduled_for, now_ts),
        )

    async def reclaim_stuck(self, *, older_than_ts: int, now_ts: int) -> List[str]:
        """Return processing items not updated since ``older_than_ts`` to pending.

        ``retry_count`` is left untouched. Returns only the ids this single
        statement updated, so rows finished by a worker meanwhile are not
        reported.
        """
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                UPDATE email_queue
                SET status=?, scheduled_for=?, updated_at=?
                WHERE status=? AND updated_at < ?
                RETURNING id
                """,
                (
                    QueueStatus.PENDING.value,
                    now_ts,
                    now_ts,
                    QueueStatus.PROCESSING.value,
                    older_than_ts,
                ),
            ) as cur:
                ids = [row[0] for row in await cur.fetchall()]
            await db.commit()
        return ids

    async def retry_failed(self, campaign_id: str, now_ts: int) -> int:
        """Reset every failed item of a campaign to a fresh pending state."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE email_queue
                SET status=?, retry_count=0, scheduled_for=?, error_message=NULL,
                    error_code=NULL, updated_at=?
                WHERE campaign_id=? AND status=?
                """,
                (QueueStatus.PENDING.value, now_ts, now_ts, campaign_id, QueueStatus.FAILED.value),
            )
            await db.commit()
            return cursor.rowcount

    async def list_queue_items(
        self,
        *,
        campaign_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return queue items for inspection, newest first."""
        query = f"SELECT {QUEUE_COLUMNS} FROM email_queue"
        clauses: List[str] = []
        params: List[Any] = []
        if campaign_id is not None:
            clauses.append("campaign_id = ?")
            params.append(campaign_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(_plain(status))
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                return self._rows(cur, rows)

    @staticmethod
    def _scope(campaign_id: Optional[str], tenant_id: Optional[str]) -> Tuple[List[str], List[Any]]:
        """Return WHERE clauses restricting queue rows to a campaign and/or tenant."""
        clauses: List[str] = []
        params: List[Any] = []
        if campaign_id is not None:
            clauses.append("campaign_id = ?")
            params.append(campaign_id)
        if tenant_id is not None:
            clauses.append("campaign_id IN (SELECT id FROM campaigns WHERE tenant_id = ?)")
            params.append(tenant_id)
        return clauses, params

    async def count_by_status(
        self, campaign_id: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> Dict[str, int]:
        """Return the number of items per status plus a ``total`` key."""
        clauses, params = self._scope(campaign_id, tenant_id)
        query = "SELECT status, COUNT(*) FROM email_queue"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " GROUP BY status"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        counts = {status.value: 0 for status in QueueStatus}
        for status, count in rows:
            counts[status] = int(count)
        counts["total"] = sum(int(count) for _, count in rows)
        return counts

    async def count_sent_since(
        self, since_ts: int, campaign_id: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> int:
        """Count items sent after ``since_ts``."""
        clauses, params = self._scope(campaign_id, tenant_id)
        query = "SELECT COUNT(*) FROM email_queue WHERE " + " AND ".join(["status = ?", "sent_at > ?", *clauses])
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, [QueueStatus.SENT.value, since_ts, *params]) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def last_sent_at(
        self, campaign_id: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> Optional[int]:
        """Return the most recent ``sent_at`` timestamp, if any."""
        clauses, params = self._scope(campaign_id, tenant_id)
        query = "SELECT MAX(sent_at) FROM email_queue WHERE " + " AND ".join(["sent_at IS NOT NULL", *clauses])
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        return None if not row or row[0] is None else int(row[0])

    # Delivery log -------------------------------------------------------------
    async def log_event(
        self,
        queue_id: Optional[str],
        status: str,
        message: str,
        *,
        server_id: Optional[str] = None,
        timestamp: int,
    ) -> None:
        """Append an entry to the delivery audit trail."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO email_logs (email_queue_id, status, message, server_id, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (queue_id, status, message, server_id, timestamp),
            )
            await db.commit()

    async def list_events(self, queue_id: str) -> List[Dict[str, Any]]:
        """Return the audit trail of a queue item in chronological order."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, email_queue_id, status, message, server_id, timestamp
                FROM email_logs WHERE email_queue_id = ?
                ORDER BY id ASC
                """,
                (queue_id,),
            ) as cur:
                rows = await cur.fetchall()
                return self._rows(cur, rows)

    async def server_delivery_stats(
        self, since_ts: int, tenant_id: Optional[str] = None
    ) -> Dict[str, Dict[str, Any]]:
        """Aggregate delivery outcomes logged per server after ``since_ts``.

        ``sent`` counts successful attempts, ``failed`` counts attempts that
        ended in a retry or a permanent failure. With ``tenant_id`` only items
        of that tenant's campaigns are considered.
        """
        query = """
            SELECT l.server_id,
                   SUM(CASE WHEN l.status = 'sent' THEN 1 ELSE 0 END),
                   SUM(CASE WHEN l.status IN ('retry', 'failed') THEN 1 ELSE 0 END),
                   MAX(l.timestamp)
            FROM email_logs l
            JOIN email_queue q ON q.id = l.email_queue_id
            JOIN campaigns c ON c.id = q.campaign_id
            WHERE l.server_id IS NOT NULL AND l.timestamp > ?
              AND l.status IN ('sent', 'retry', 'failed')
        """
        params: List[Any] = [since_ts]
        if tenant_id is not None:
            query += " AND c.tenant_id = ?"
            params.append(tenant_id)
        query += " GROUP BY l.server_id"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return {
            server_id: {"sent": int(sent or 0), "failed": int(failed or 0), "last_used": last_used}
            for server_id, sent, failed, last_used in rows
        }

    # Send log -----------------------------------------------------------------
    async def log_send(self, server_id: str, timestamp: int) -> None:
        """Record a delivery attempt for rate limiting purposes."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO send_log (server_id, timestamp) VALUES (?, ?)", (server_id, timestamp)
            )
            await db.commit()

    async def count_sends_since(self, server_id: str, since_ts: int) -> int:
        """Count attempts recorded after ``since_ts`` for the given server."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM send_log WHERE server_id=? AND timestamp > ?",
                (server_id, since_ts),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)
