from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Tuple

import aiohttp

from .contacts import ContactsCache
from .daemon_client import UNSUPPORTED_STATUSES, DaemonClient, DaemonError
from .relay import CONTACTS_UPDATED, Relay
from .serializers import pick, to_bool

logger = logging.getLogger(__name__)

RECONNECT_DELAY_S = 5.0
CONTACTS_POLL_INTERVAL_S = 5.0

MESSAGE_EVENTS = {"new_message", "new-message", "message"}
TYPING_EVENTS = {"typing", "typing_indicator", "typing-indicator"}


async def iter_sse(content: aiohttp.StreamReader) -> AsyncIterator[Tuple[str, str]]:
    """Yield ``(event, data)`` pairs from a server-sent-events body."""

    event = ""
    data_lines = []
    async for raw in content:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if line == "":
            if event or data_lines:
                yield event or "message", "\n".join(data_lines)
            event = ""
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[len("event:") :].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:") :].strip())
    if event or data_lines:
        yield event or "message", "\n".join(data_lines)


def _parse_data(data: str) -> Any:
    if not data:
        return None
    try:
        return json.loads(data)
    except ValueError:
        return data


class DaemonEvents:
    """Follows the daemon ``/events`` stream and republishes what it reports.

    The stream is reopened after ``reconnect_delay_s`` whenever it ends or
    fails.  A 404/501 means the daemon has no stream and the subscriber
    stops; any other 5xx switches to polling ``/contacts/changed``.
    """

    def __init__(
        self,
        daemon: DaemonClient,
        relay: Relay,
        contacts: ContactsCache,
        *,
        reconnect_delay_s: float = RECONNECT_DELAY_S,
        contacts_poll_interval_s: float = CONTACTS_POLL_INTERVAL_S,
    ) -> None:
        self.daemon = daemon
        self.relay = relay
        self.contacts = contacts
        self.reconnect_delay_s = reconnect_delay_s
        self.contacts_poll_interval_s = contacts_poll_interval_s
        self.polling_contacts = False
        self._last_changed: Any = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
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
                try:
                    async with self.daemon.open_events() as response:
                        logger.info("subscribed to daemon events")
                        async for event, data in iter_sse(response.content):
                            self.handle_event(event, data)
                    logger.debug("daemon event stream ended; reconnecting")
                except DaemonError as exc:
                    if exc.status in UNSUPPORTED_STATUSES:
                        logger.debug("daemon /events not available; contacts rely on cache TTL")
                        return
                    if exc.status is not None and exc.status >= 500:
                        logger.info("daemon /events returned %s; polling /contacts/changed", exc.status)
                        await self._poll_contacts_changed()
                        return
                    logger.warning(
                        "daemon events connection failed: %s; reconnecting in %ss", exc, self.reconnect_delay_s
                    )
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    logger.warning(
                        "daemon events stream failed: %s; reconnecting in %ss", exc, self.reconnect_delay_s
                    )
                await asyncio.sleep(self.reconnect_delay_s)
        except asyncio.CancelledError:
            return

    def handle_event(self, event: str, data: str) -> None:
        payload = _parse_data(data)
        if event == "message" and isinstance(payload, dict) and isinstance(payload.get("type"), str):
            event = payload["type"]

        if event == CONTACTS_UPDATED:
            self.contacts_changed(payload if isinstance(payload, dict) else None)
        elif event in MESSAGE_EVENTS:
            if not isinstance(payload, dict):
                return
            raw = payload.get("message") if isinstance(payload.get("message"), dict) else payload
            self.relay.publish_upstream_message(raw)
        elif event in TYPING_EVENTS:
            if not isinstance(payload, dict):
                return
            chat_guid = pick(payload, ("chat_guid", "chatGuid"))
            if chat_guid:
                self.relay.publish_typing(chat_guid, to_bool(pick(payload, ("is_typing", "isTyping"), False)))
        else:
            logger.debug("ignoring daemon event %s", event)

    def contacts_changed(self, payload: Dict[str, Any] | None = None) -> None:
        self.contacts.invalidate()
        self.relay.publish_contacts_updated(payload or {"type": CONTACTS_UPDATED})

    async def poll_contacts_once(self) -> bool:
        """Check ``/contacts/changed``; ``True`` when a change was broadcast."""

        try:
            changed = await self.daemon.get_contacts_changed()
        except DaemonError as exc:
            logger.debug("daemon /contacts/changed poll failed: %s", exc)
            return False
        value = changed.get("lastChanged")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value == self._last_changed:
            return False
        first = self._last_changed is None
        self._last_changed = value
        if first:
            return False
        self.contacts_changed({"type": CONTACTS_UPDATED, "timestamp": value})
        return True

    async def _poll_contacts_changed(self) -> None:
        self.polling_contacts = True
        while True:
            await self.poll_contacts_once()
            await asyncio.sleep(self.contacts_poll_interval_s)
