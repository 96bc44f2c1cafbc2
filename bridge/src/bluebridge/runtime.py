from __future__ import annotations

import logging

from aiohttp import web

from .config import BridgeConfig
from .contacts import ContactsCache
from .daemon_client import DaemonClient
from .relay import DeliveredMessages, Relay, WebhookNotifier
from .rooms import RoomHub
from .send_cache import SendCache
from .service import BridgeService
from .tasks import DetachedTasks
from .uploads import ChunkedUploads

logger = logging.getLogger(__name__)


class Runtime:
    """Per-process state shared by the REST routes, the websocket and the background loops."""

    def __init__(self, config: BridgeConfig, daemon: DaemonClient | None = None) -> None:
        self.config = config
        self.daemon = daemon or DaemonClient(
            config.daemon_url,
            timeout_s=config.daemon_timeout_s,
            attachment_timeout_s=config.attachment_timeout_s,
        )
        self.tasks = DetachedTasks()
        self.hub = RoomHub()
        self.send_cache = SendCache(config.send_cache_ttl_s * 1000)
        self.delivered = DeliveredMessages(config.delivered_ttl_s * 1000)
        self.notifier = WebhookNotifier(config.webhook_urls, self.tasks)
        self.relay = Relay(self.hub, self.delivered, self.notifier)
        self.contacts = ContactsCache(self.daemon, config.contacts_cache_ttl_s * 1000)
        self.uploads = ChunkedUploads(config.staging_dir)
        self.service = BridgeService(
            config=config,
            daemon=self.daemon,
            send_cache=self.send_cache,
            relay=self.relay,
            contacts=self.contacts,
            uploads=self.uploads,
            tasks=self.tasks,
        )

    async def close(self) -> None:
        await self.tasks.close()
        await self.notifier.close()
        await self.daemon.close()
        logger.info("bridge runtime closed")


RUNTIME_KEY = web.AppKey("runtime", Runtime)
