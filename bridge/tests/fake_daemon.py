"""In-process stand-in for the Messages daemon HTTP API."""

import asyncio
import json
from typing import Any, Dict, List

from aiohttp import web

from bluebridge.dates import to_upstream_time

CHAT_GUID = "SMS;-;+15551234567"
GROUP_GUID = "iMessage;+;chat123456"


def upstream_ms(millis: int) -> int:
    return to_upstream_time(millis)


class FakeDaemon:
    def __init__(self) -> None:
        self.chats: List[Dict[str, Any]] = [
            {
                "guid": CHAT_GUID,
                "display_name": CHAT_GUID,
                "participants": [{"address": "+15551234567", "service": "SMS"}],
                "last_message_text": "see you",
                "last_message_date": upstream_ms(1_700_000_500_000),
            },
            {
                "guid": GROUP_GUID,
                "display_name": "Climbing",
                "participants": ["+15550000001", "friend@example.com"],
                "is_archived": True,
            },
        ]
        self.messages: Dict[str, List[Dict[str, Any]]] = {
            CHAT_GUID: [
                {"guid": "m1", "text": "one", "date": upstream_ms(1_699_999_998_000), "is_from_me": False},
                {"guid": "m2", "text": "two", "date": upstream_ms(1_699_999_999_000), "is_from_me": True},
                {"guid": "m3", "text": "three", "date": upstream_ms(1_700_000_000_000)},
                {"guid": "m4", "text": "four", "date": upstream_ms(1_700_000_001_000)},
            ],
            GROUP_GUID: [],
        }
        self.contacts: List[Dict[str, Any]] = [
            {
                "id": "c1",
                "first_name": "Ada",
                "last_name": "Lovelace",
                "phones": ["+15551234567"],
                "emails": [{"address": "ada@example.com"}],
                "avatar": "aGk=",
            },
            {"id": "c2", "phoneNumbers": [{"address": "+15550000001"}]},
        ]
        self.attachments: Dict[str, Dict[str, Any]] = {
            "att-1": {
                "info": {"guid": "att-1", "mime_type": "image/png", "transfer_name": "a.png", "total_bytes": 10},
                "data": b"0123456789",
            }
        }
        self.updates: Dict[str, Any] = {"messages": [], "typing": [], "receipts": []}
        self.updates_status = 200
        self.events_status = 200
        self.events: asyncio.Queue = asyncio.Queue()
        self.last_changed = 100
        self.contacts_changed_requests = 0
        self.send_status = 200
        self.send_gate: asyncio.Event | None = None

        self.sent: List[Dict[str, Any]] = []
        self.message_requests: List[Dict[str, str]] = []
        self.update_requests: List[int] = []
        self.typing: List[Dict[str, Any]] = []
        self.read_receipts: List[Dict[str, Any]] = []
        self.contacts_requests: List[Dict[str, str]] = []
        self.attachment_requests: List[Dict[str, Any]] = []

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ping", self.handle_ping)
        app.router.add_get("/chats", self.handle_chats)
        app.router.add_get("/chats/{guid}", self.handle_chat)
        app.router.add_get("/chats/{guid}/messages", self.handle_messages)
        app.router.add_post("/send", self.handle_send)
        app.router.add_get("/messages/updates", self.handle_updates)
        app.router.add_post("/typing", self.handle_typing)
        app.router.add_post("/read_receipt", self.handle_read_receipt)
        app.router.add_get("/contacts", self.handle_contacts)
        app.router.add_get("/contacts/vcf", self.handle_vcf)
        app.router.add_get("/contacts/changed", self.handle_contacts_changed)
        app.router.add_get("/attachments/{guid}/info", self.handle_attachment_info)
        app.router.add_get("/attachments/{guid}", self.handle_attachment)
        app.router.add_get("/statistics/totals", self.handle_totals)
        app.router.add_get("/events", self.handle_events)
        return app

    def _chat(self, guid: str) -> Dict[str, Any] | None:
        for chat in self.chats:
            if chat["guid"] == guid:
                return chat
        return None

    async def handle_ping(self, _: web.Request) -> web.Response:
        return web.Response(text="pong")

    async def handle_chats(self, _: web.Request) -> web.Response:
        return web.json_response(self.chats)

    async def handle_chat(self, request: web.Request) -> web.Response:
        chat = self._chat(request.match_info["guid"])
        if chat is None:
            return web.json_response({"error": "chat not found"}, status=404)
        return web.json_response(chat)

    async def handle_messages(self, request: web.Request) -> web.Response:
        guid = request.match_info["guid"]
        self.message_requests.append(dict(request.query))
        if guid not in self.messages:
            return web.json_response({"error": "chat not found"}, status=404)
        limit = int(request.query.get("limit", "50"))
        before = request.query.get("before")
        rows = sorted(self.messages[guid], key=lambda row: row["date"], reverse=True)
        if before is not None:
            rows = [row for row in rows if row["date"] < int(before)]
        return web.json_response(rows[:limit])

    async def handle_send(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.sent.append(body)
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_status != 200:
            return web.json_response({"error": "send failed"}, status=self.send_status)
        return web.json_response(
            {"guid": f"sent-{len(self.sent)}", "date_created": upstream_ms(1_700_000_100_000)}
        )

    async def handle_updates(self, request: web.Request) -> web.Response:
        self.update_requests.append(int(request.query["since"]))
        if self.updates_status != 200:
            return web.json_response({"error": "unsupported"}, status=self.updates_status)
        return web.json_response(self.updates)

    async def handle_typing(self, request: web.Request) -> web.Response:
        self.typing.append(await request.json())
        return web.json_response({"ok": True})

    async def handle_read_receipt(self, request: web.Request) -> web.Response:
        self.read_receipts.append(await request.json())
        return web.json_response({"ok": True})

    async def handle_contacts(self, request: web.Request) -> web.Response:
        self.contacts_requests.append(dict(request.query))
        rows = self.contacts
        if "offset" in request.query:
            rows = rows[int(request.query["offset"]) :]
        if "limit" in request.query:
            rows = rows[: int(request.query["limit"])]
        return web.json_response(rows)

    async def handle_vcf(self, _: web.Request) -> web.Response:
        return web.Response(text="BEGIN:VCARD\nFN:Ada Lovelace\nEND:VCARD\n")

    async def handle_contacts_changed(self, _: web.Request) -> web.Response:
        self.contacts_changed_requests += 1
        return web.json_response({"lastChanged": self.last_changed})

    async def handle_attachment_info(self, request: web.Request) -> web.Response:
        attachment = self.attachments.get(request.match_info["guid"])
        if attachment is None:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response(attachment["info"])

    async def handle_attachment(self, request: web.Request) -> web.Response:
        attachment = self.attachments.get(request.match_info["guid"])
        self.attachment_requests.append({"query": dict(request.query), "range": request.headers.get("Range")})
        if attachment is None:
            return web.json_response({"error": "not found"}, status=404)
        data = attachment["data"]
        content_type = attachment["info"]["mime_type"]
        range_header = request.headers.get("Range")
        if range_header and range_header.startswith("bytes="):
            start_text, _, end_text = range_header[len("bytes=") :].partition("-")
            start = int(start_text)
            end = min(int(end_text) if end_text else len(data) - 1, len(data) - 1)
            return web.Response(
                body=data[start : end + 1],
                status=206,
                content_type=content_type,
                headers={"Content-Range": f"bytes {start}-{end}/{len(data)}", "Accept-Ranges": "bytes"},
            )
        return web.Response(body=data, content_type=content_type, headers={"Accept-Ranges": "bytes"})

    async def handle_totals(self, _: web.Request) -> web.Response:
        return web.json_response({"messages": 42, "chats": len(self.chats)})

    async def handle_events(self, request: web.Request) -> web.StreamResponse:
        if self.events_status != 200:
            return web.json_response({"error": "no events"}, status=self.events_status)
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        while True:
            item = await self.events.get()
            if item is None:
                break
            event, payload = item
            await response.write(f"event: {event}\ndata: {json.dumps(payload)}\n\n".encode("utf-8"))
        await response.write_eof()
        return response
