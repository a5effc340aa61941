"""Lightweight asyncio-friendly SMTP connection pool."""

import asyncio
import time
from typing import Dict, Optional, Tuple

import aiosmtplib

ConnectionParams = Tuple[str, int, Optional[str], Optional[str], bool, bool]


class SMTPPool:
    """Reuse SMTP connections per task to reduce connection overhead.

    Entries are keyed by the id of the owning task. The task object is kept
    alongside so :meth:`cleanup` can close connections whose owner already
    finished.
    """

    def __init__(self, ttl: int = 300, connect_timeout: float = 15.0):
        """Create a pool with the given time-to-live, in seconds."""
        self.ttl = ttl
        self.connect_timeout = connect_timeout
        self.pool: Dict[int, Tuple[aiosmtplib.SMTP, float, ConnectionParams]] = {}
        self.owners: Dict[int, asyncio.Task] = {}
        self.lock = asyncio.Lock()

    async def _connect(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        use_tls: bool,
        start_tls: bool,
    ) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        # implicit TLS (port 465) and STARTTLS are mutually exclusive
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            use_tls=use_tls,
            start_tls=start_tls and not use_tls,
            timeout=10.0,
        )

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError):
            smtp.close()

    def _pop(self, task_id: int) -> Optional[aiosmtplib.SMTP]:
        self.owners.pop(task_id, None)
        entry = self.pool.pop(task_id, None)
        return entry[0] if entry else None

    async def get_connection(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        *,
        use_tls: bool,
        start_tls: bool = False,
    ) -> aiosmtplib.SMTP:
        """Return a pooled connection bound to the calling task."""
        task = asyncio.current_task()
        task_id = id(task)
        params: ConnectionParams = (host, port, user, password, use_tls, start_tls)

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry:
            smtp, last_used, entry_params = entry
            fresh_enough = (time.time() - last_used) < self.ttl
            if entry_params == params and fresh_enough and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time(), params)
                return smtp
            async with self.lock:
                self._pop(task_id)
            await self._close(smtp)

        smtp = await self._connect(host, port, user, password, use_tls, start_tls)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time(), params)
            self.owners[task_id] = task
        return smtp

    async def discard(self) -> None:
        """Close and drop the connection of the calling task."""
        async with self.lock:
            smtp = self._pop(id(asyncio.current_task()))
        if smtp is not None:
            await self._close(smtp)

    def evict(self) -> None:
        """Drop the calling task's connection and close its socket without QUIT.

        Safe to call from a cancelled task: nothing is awaited.
        """
        smtp = self._pop(id(asyncio.current_task()))
        if smtp is not None:
            smtp.close()

    async def cleanup(self) -> None:
        """Close idle, broken or orphaned connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())
            owners = dict(self.owners)

        expired: list[int] = []
        for task_id, (smtp, last_used, _params) in items:
            owner = owners.get(task_id)
            if owner is None or owner.done():
                expired.append(task_id)
            elif (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append(task_id)

        for task_id in expired:
            async with self.lock:
                smtp = self._pop(task_id)
            if smtp is not None:
                await self._close(smtp)
