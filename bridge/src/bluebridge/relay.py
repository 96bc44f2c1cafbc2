from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, Sequence

import aiohttp

from .dates import now_ms
from .rooms import RoomHub
from .serializers import shape_message
from .tasks import DetachedTasks

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message.created"
TYPING_STARTED = "typing.indicator.started"
TYPING_STOPPED = "typing.indicator.stopped"
READ_RECEIPT = "read_receipt"
CHAT_READ_STATUS_CHANGED = "chat-read-status-changed"
CONTACTS_UPDATED = "contacts_updated"


class DeliveredMessages:
    """Message guids already broadcast, remembered for ``ttl_ms`` (bounded)."""

    def __init__(
        self,
        ttl_ms: int = 10 * 60 * 1000,
        *,
        max_entries: int = 10_000,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self._ttl_ms = ttl_ms
        self._max_entries = max_entries
        self._now = now_func
        self._seen: "OrderedDict[str, int]" = OrderedDict()

    def mark(self, guid: str) -> bool:
        """Record ``guid``; ``False`` when it was already delivered inside the window."""

        self._expire()
        if guid in self._seen:
            return False
        self._seen[guid] = self._now()
        while len(self._seen) > self._max_entries:
            self._seen.popitem(last=False)
        return True

    def __contains__(self, guid: object) -> bool:
        self._expire()
        return guid in self._seen

    def _expire(self) -> None:
        if self._ttl_ms <= 0:
            return
        cutoff = self._now() - self._ttl_ms
        while self._seen:
            guid, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff:
                break
            self._seen.popitem(last=False)


class WebhookNotifier:
    """POSTs ``{"type", "data"}`` to each configured URL without blocking the caller."""

    def __init__(
        self,
        urls: Sequence[str],
        tasks: DetachedTasks,
        *,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
        timeout_s: float = 10.0,
    ) -> None:
        self.urls = list(urls)
        self._tasks = tasks
        self._session_factory = session_factory
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: aiohttp.ClientSession | None = None

    def notify(self, event_type: str, data: Any) -> None:
        for url in self.urls:
            self._tasks.spawn(self._post(url, {"type": event_type, "data": data}), f"webhook {url}")

    async def _post(self, url: str, payload: Dict[str, Any]) -> None:
        if self._session is None or self._session.closed:
            self._session = self._session_factory()
        async with self._session.post(url, json=payload, timeout=self._timeout) as response:
            if response.status >= 400:
                logger.debug("webhook %s answered %s", url, response.status)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class Relay:
    """Single broadcast path for events bound for realtime subscribers.

    Send replies, the update poller and the daemon event stream all publish
    here, so a message reaching the bridge by more than one route is only
    broadcast once.
    """

    def __init__(
        self,
        hub: RoomHub,
        delivered: DeliveredMessages,
        notifier: WebhookNotifier | None = None,
        *,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.hub = hub
        self.delivered = delivered
        self.notifier = notifier
        self._now = now_func

    def publish_message(self, message: Dict[str, Any]) -> bool:
        guid = message.get("guid")
        if guid and not self.delivered.mark(guid):
            logger.debug("skipping duplicate delivery of %s", guid)
            return False
        chat_guid = message.get("chatGuid")
        if chat_guid:
            self.hub.broadcast(chat_guid, MESSAGE_CREATED, message)
        self._notify("new-message", message)
        return True

    def publish_upstream_message(self, raw: Any) -> Dict[str, Any] | None:
        """Shape a daemon message and publish it; ``None`` when it was a duplicate.

        An undated message is stamped with the time it reached the bridge.
        """

        message = shape_message(raw)
        if not message["dateCreated"]:
            message["dateCreated"] = self._now()
        return message if self.publish_message(message) else None

    def publish_typing(self, chat_guid: str, is_typing: bool, body: Dict[str, Any] | None = None) -> None:
        event = TYPING_STARTED if is_typing else TYPING_STOPPED
        payload = {"chatGuid": chat_guid, "isTyping": bool(is_typing), "timestamp": now_ms()}
        if body:
            payload.update(body)
        self.hub.broadcast(chat_guid, event, payload)
        self._notify("typing-indicator", payload)

    def publish_read_receipt(self, chat_guid: str, message_guids: Iterable[str], date_read: int | None = None) -> None:
        payload: Dict[str, Any] = {
            "chatGuid": chat_guid,
            "messageGuids": list(message_guids),
            "dateRead": date_read or now_ms(),
        }
        self.hub.broadcast(chat_guid, READ_RECEIPT, payload)
        self._notify("read-receipt", payload)

    def publish_read_status(self, chat_guid: str, status: Any) -> None:
        self.hub.broadcast(chat_guid, CHAT_READ_STATUS_CHANGED, {"chatGuid": chat_guid, "status": status})

    def publish_contacts_updated(self, payload: Dict[str, Any] | None = None) -> None:
        logger.info("daemon reported contacts_updated")
        self.hub.broadcast_global(CONTACTS_UPDATED, payload or {"type": CONTACTS_UPDATED})

    def _notify(self, event_type: str, data: Any) -> None:
        if self.notifier is not None and self.notifier.urls:
            self.notifier.notify(event_type, data)
