import asyncio
import json
import os
import tempfile
import unittest
from typing import Any, Callable

from aiohttp import WSMessage, WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from bluebridge.config import BridgeConfig
from bluebridge.runtime import RUNTIME_KEY
from bluebridge.server import create_app

from .fake_daemon import FakeDaemon

PASSWORD = "s3cret"


class BridgeTestCase(unittest.IsolatedAsyncioTestCase):
    """Runs the bridge against a :class:`FakeDaemon`, with background loops off."""

    config_overrides: dict = {}

    async def asyncSetUp(self):
        self.staging = tempfile.TemporaryDirectory()
        self.data_dir = tempfile.TemporaryDirectory()
        self.fake = FakeDaemon()
        self.daemon_server = TestServer(self.fake.make_app())
        await self.daemon_server.start_server()

        self.config = BridgeConfig(
            password=PASSWORD,
            daemon_url=str(self.daemon_server.make_url("/")),
            daemon_timeout_s=5,
            poll_interval_s=0,
            daemon_events=False,
            staging_dir=self.staging.name,
            vcf_path=os.path.join(self.data_dir.name, "AddressBook.vcf"),
            ws_ping_interval_s=3600,
        ).with_overrides(**self.config_overrides)
        self.app = create_app(self.config, start_background=False)
        self.runtime = self.app[RUNTIME_KEY]
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.fake.events.put(None)
        await self.client.close()
        await self.server.close()
        await self.daemon_server.close()
        self.staging.cleanup()
        self.data_dir.cleanup()

    def params(self, **extra):
        return {"password": PASSWORD, **extra}

    async def get_json(self, path: str, *, status: int = 200, **params):
        resp = await self.client.get(path, params=self.params(**params))
        self.assertEqual(resp.status, status, await resp.text())
        return await resp.json()

    async def post_json(self, path: str, body: Any = None, *, status: int = 200):
        resp = await self.client.post(path, params=self.params(), json=body if body is not None else {})
        self.assertEqual(resp.status, status, await resp.text())
        return await resp.json()

    async def connect_ws(self):
        ws = await self.client.ws_connect("/api/v1/ws", params=self.params())
        confirmed = await recv_json_until(ws, timeout=2.0, predicate=lambda f: f.get("t") == "connection.confirmed")
        return ws, confirmed

    async def join(self, ws, chat_guid: str):
        await ws.send_json({"v": 1, "t": "join_chat", "id": f"join-{chat_guid}", "body": {"chatGuid": chat_guid}})
        return await recv_json_until(ws, timeout=2.0, predicate=lambda f: f.get("id") == f"join-{chat_guid}")


async def _receive_with_deadline(ws, deadline: float) -> WSMessage:
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise asyncio.TimeoutError("Timed out waiting for websocket message")
    return await ws.receive(timeout=remaining)


async def _parse_frame(ws, msg: WSMessage) -> Any | None:
    if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
        raise AssertionError("WebSocket closed while waiting for message")
    if msg.type == WSMsgType.ERROR:
        raise AssertionError(f"WebSocket error while waiting for message: {ws.exception()}")
    if msg.type != WSMsgType.TEXT:
        return None
    try:
        frame = json.loads(msg.data)
    except ValueError:
        return None
    if isinstance(frame, dict) and frame.get("t") == "ping":
        await ws.send_json({"v": 1, "t": "pong"})
        return None
    return frame


async def recv_json_until(ws, *, timeout: float, predicate: Callable[[Any], bool]) -> Any:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        msg = await _receive_with_deadline(ws, deadline)
        frame = await _parse_frame(ws, msg)
        if frame is not None and predicate(frame):
            return frame


async def collect_frames(ws, *, timeout: float, predicate: Callable[[Any], bool]) -> list:
    """Gather every matching frame that arrives within ``timeout``."""

    frames = []
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            msg = await _receive_with_deadline(ws, deadline)
        except asyncio.TimeoutError:
            return frames
        frame = await _parse_frame(ws, msg)
        if frame is not None and predicate(frame):
            frames.append(frame)
