from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict

from .daemon_client import DaemonClient, DaemonError
from .dates import now_ms, to_client_time, to_upstream_time
from .relay import Relay
from .serializers import MESSAGE_FIELDS, pick, to_bool

logger = logging.getLogger(__name__)


class UpdatePoller:
    """Pulls ``/messages/updates`` on a fixed period and publishes what it finds.

    A single task runs the loop and awaits every poll before sleeping again,
    so ticks never overlap.  The cursor is kept in client milliseconds.
    """

    def __init__(
        self,
        daemon: DaemonClient,
        relay: Relay,
        *,
        interval_s: float = 1.0,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.daemon = daemon
        self.relay = relay
        self.interval_s = interval_s
        self._now = now_func
        self.cursor_ms = now_func()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_s <= 0 or self._task is not None:
            return
        self.cursor_ms = self._now()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_s)
                if not self.daemon.supports_updates:
                    logger.info("daemon does not support update polling; poller stopped")
                    return
                await self.poll_once()
        except asyncio.CancelledError:
            return

    async def poll_once(self) -> int:
        """Run one poll; returns the number of messages newly broadcast."""

        try:
            updates = await self.daemon.get_updates(to_upstream_time(self.cursor_ms))
        except DaemonError as exc:
            logger.warning("update poll failed: %s", exc)
            return 0
        return self.apply(updates)

    def apply(self, updates: Dict[str, Any]) -> int:
        delivered = 0
        for raw in updates.get("messages") or []:
            message = self.relay.publish_upstream_message(raw)
            if message is not None:
                delivered += 1
            created = to_client_time(pick(raw, MESSAGE_FIELDS["dateCreated"])) if isinstance(raw, dict) else None
            if created and created > self.cursor_ms:
                self.cursor_ms = created

        for entry in updates.get("typing") or []:
            if not isinstance(entry, dict):
                continue
            chat_guid = pick(entry, ("chat_guid", "chatGuid"))
            if chat_guid:
                self.relay.publish_typing(chat_guid, to_bool(pick(entry, ("is_typing", "isTyping"), False)))

        for entry in updates.get("receipts") or []:
            if not isinstance(entry, dict):
                continue
            chat_guid = pick(entry, ("chat_guid", "chatGuid"))
            if not chat_guid:
                continue
            guids = pick(entry, ("message_guids", "messageGuids"))
            if not isinstance(guids, list):
                single = pick(entry, ("message_guid", "messageGuid", "guid"))
                guids = [single] if single else []
            date_read = to_client_time(pick(entry, ("date_read", "dateRead")))
            self.relay.publish_read_receipt(chat_guid, guids, date_read)

        if delivered:
            logger.debug("poller broadcast %d new messages", delivered)
        return delivered
