from __future__ import annotations

import asyncio
import base64
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from aiohttp import WSMsgType, web

from .encryption import encrypt_text
from .envelope import BadRequest, BridgeError, InternalError, failure, no_data, success
from .logs import recent_log_lines
from .rooms import event_frame
from .runtime import RUNTIME_KEY, Runtime
from .serializers import to_int

logger = logging.getLogger(__name__)

OUTBOUND_QUEUE_SIZE = 1000
PING_MISS_LIMIT = 2
DEFAULT_LOG_LINES = 100

UNENCRYPTED_CHANNELS = frozenset({"attachment-chunk"})

Handler = Callable[["WsSession", Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class WsEvent:
    channel: str
    handler: Handler
    error_channel: str = "error"


EVENTS: Dict[str, WsEvent] = {}


def ws_event(name: str, channel: str, *, error_channel: str = "error") -> Callable[[Handler], Handler]:
    def register(handler: Handler) -> Handler:
        EVENTS[name] = WsEvent(channel=channel, handler=handler, error_channel=error_channel)
        return handler

    return register


class WsSession:
    """One websocket connection: its identity, room membership and outbound queue."""

    def __init__(self, runtime: Runtime, conn_id: str, enqueue: Callable[[Dict[str, Any]], None]) -> None:
        self.runtime = runtime
        self.conn_id = conn_id
        self.device_id = conn_id
        self._enqueue = enqueue

    @property
    def service(self):
        return self.runtime.service

    def emit(self, event: str, body: Any) -> None:
        self._enqueue(event_frame(event, body))

    def respond(self, request_id: Any, channel: str, envelope: Dict[str, Any]) -> None:
        """Answer a frame: a ``response`` to its ``id`` when given, else an emit on ``channel``."""

        body = self.seal(channel, envelope)
        if request_id is not None:
            self._enqueue({"v": 1, "t": "response", "id": request_id, "body": body})
        else:
            self.emit(channel, body)

    def seal(self, channel: str, envelope: Dict[str, Any]) -> Dict[str, Any]:
        """Mark the envelope's ``encrypted`` flag, encrypting ``data`` when ENCRYPT_COMS is on."""

        body = dict(envelope, encrypted=False)
        config = self.runtime.config
        if not config.encrypt_coms or not config.encryption_passphrase:
            return body
        if channel in UNENCRYPTED_CHANNELS or "data" not in body:
            return body
        data = body["data"]
        plaintext = data if isinstance(data, str) else json.dumps(data, separators=(",", ":"), ensure_ascii=False)
        body["data"] = encrypt_text(plaintext, config.encryption_passphrase)
        body["encrypted"] = True
        return body


async def dispatch(session: WsSession, frame: Dict[str, Any]) -> None:
    name = frame.get("t")
    request_id = frame.get("id")
    event = EVENTS.get(name) if isinstance(name, str) else None
    if event is None:
        session.respond(request_id, "error", failure(BadRequest(f"Unknown event: {name}")))
        return
    body = frame.get("body")
    if body is None:
        body = {}
    try:
        if not isinstance(body, dict):
            raise BadRequest("body must be an object")
        envelope = await event.handler(session, body)
    except BridgeError as exc:
        channel = event.error_channel if exc.status >= 500 else "error"
        session.respond(request_id, channel, failure(exc))
    except Exception as exc:
        logger.exception("websocket handler %s failed", name)
        session.respond(request_id, event.error_channel, failure(InternalError(str(exc))))
    else:
        session.respond(request_id, event.channel, envelope)


def _chat_guid(body: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    raise BadRequest("No chat GUID provided")


@ws_event("join_chat", "chat.joined")
async def handle_join_chat(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    chat_guid = _chat_guid(body, "chatGuid")
    session.runtime.hub.join(session.conn_id, chat_guid)
    return success({"chatGuid": chat_guid})


@ws_event("leave_chat", "chat.left")
async def handle_leave_chat(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    chat_guid = _chat_guid(body, "chatGuid")
    session.runtime.hub.leave(session.conn_id, chat_guid)
    return success({"chatGuid": chat_guid})


@ws_event("get-server-metadata", "server-metadata")
async def handle_server_metadata(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(await session.service.server_metadata(), "Successfully fetched metadata")


@ws_event("get-chats", "chats")
async def handle_get_chats(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(await session.service.list_chats(with_archived=bool(body.get("withArchived"))))


@ws_event("get-chat", "chat")
async def handle_get_chat(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(await session.service.get_chat(_chat_guid(body, "chatGuid", "identifier")))


@ws_event("get-chat-messages", "chat-messages")
async def handle_get_chat_messages(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    messages, metadata = await session.service.list_messages(
        _chat_guid(body, "identifier", "chatGuid"),
        limit=body.get("limit"),
        offset=body.get("offset"),
        before=body.get("before"),
        after=body.get("after"),
        sort=body.get("sort"),
    )
    return success(messages, metadata=metadata)


@ws_event("get-messages", "messages")
async def handle_get_messages(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    if not body.get("after") and not body.get("limit"):
        raise BadRequest("No `after` date or `limit` provided!")
    chat_guid = body.get("chatGuid")
    if not chat_guid:
        return success([])
    messages, metadata = await session.service.list_messages(
        chat_guid,
        limit=body.get("limit"),
        offset=body.get("offset"),
        before=body.get("before"),
        after=body.get("after"),
        sort=body.get("sort"),
        with_chats=True,
    )
    return success(messages, metadata=metadata)


@ws_event("get-last-chat-message", "last-chat-message")
async def handle_last_chat_message(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    message = await session.service.last_message(_chat_guid(body, "identifier", "chatGuid"))
    return success(message) if message else no_data()


@ws_event("get-participants", "participants")
async def handle_participants(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(await session.service.get_participants(_chat_guid(body, "identifier", "chatGuid")))


@ws_event("send-message", "message-sent", error_channel="message-send-error")
async def handle_send_message(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    if body.get("attachment"):
        raise BadRequest("Use attachmentPaths (array of server file paths) for attachments")
    message = await session.service.send_text(
        _chat_guid(body, "guid", "chatGuid"),
        body.get("tempGuid") or "",
        body.get("message") if body.get("message") is not None else body.get("text"),
        body.get("attachmentPaths"),
    )
    return success(message)


@ws_event("send-message-chunk", "message-chunk", error_channel="message-send-error")
async def handle_send_message_chunk(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    result = await session.service.upload_chunk(
        str(body.get("uploadId") or body.get("attachmentGuid") or body.get("tempGuid") or ""),
        start=body.get("start"),
        data=body.get("data") or body.get("attachmentData"),
        name=body.get("name") or body.get("attachmentName"),
        has_more=bool(body.get("hasMore")),
        chat_guid=body.get("guid") or body.get("chatGuid"),
        temp_guid=body.get("tempGuid"),
        text=body.get("message"),
    )
    return success(result)


@ws_event("get-attachment", "attachment")
async def handle_get_attachment(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    guid = body.get("identifier") or ""
    attachment = await session.service.attachment_info(guid)
    if body.get("withData"):
        data = await session.service.attachment_data(guid)
        attachment = dict(attachment, data=base64.b64encode(data).decode("ascii"))
    return success(attachment)


@ws_event("get-attachment-chunk", "attachment-chunk")
async def handle_get_attachment_chunk(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    chunk = await session.service.attachment_chunk(
        body.get("identifier") or "", body.get("start"), body.get("chunkSize")
    )
    if not chunk:
        return no_data()
    return success(base64.b64encode(chunk).decode("ascii"))


@ws_event("get-contacts", "contacts")
@ws_event("getContacts", "contacts")
@ws_event("get-contacts-full", "contacts")
async def handle_get_contacts(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    contacts = await session.service.list_contacts(
        limit=body.get("limit"),
        offset=body.get("offset"),
        extra_properties=body.get("extraProperties"),
    )
    return success(contacts)


@ws_event("get-contacts-from-vcf", "contacts-from-vcf")
async def handle_contacts_vcf(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(await session.service.contacts_vcf())


@ws_event("started-typing", "started-typing-sent", error_channel="started-typing-error")
async def handle_started_typing(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    session.service.typing(body.get("chatGuid") or "", True)
    return success(None)


@ws_event("stopped-typing", "stopped-typing-sent", error_channel="stopped-typing-error")
async def handle_stopped_typing(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    session.service.typing(body.get("chatGuid") or "", False)
    return success(None)


@ws_event("toggle-chat-read-status", "chat-read-status-changed")
async def handle_toggle_read_status(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    session.service.toggle_read_status(body.get("chatGuid") or "", body.get("status"))
    return success(None)


@ws_event("update-typing-status", "update-typing-status-sent")
async def handle_update_typing_status(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    _chat_guid(body, "chatGuid")
    return success(None)


@ws_event("open-chat", "open-chat")
async def handle_open_chat(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(None)


@ws_event("start-chat", "start-chat", error_channel="start-chat-failed")
async def handle_start_chat(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    addresses = body.get("participants") if body.get("participants") is not None else body.get("addresses")
    chat = await session.service.create_chat(addresses or [], body.get("service"))
    return success(chat, "Successfully created chat!")


@ws_event("save-vcf", "save-vcf", error_channel="save-vcf")
async def handle_save_vcf(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    session.service.save_vcf(body.get("vcf"))
    return success(None, "Successfully saved VCF")


@ws_event("get-vcf", "save-vcf", error_channel="save-vcf")
async def handle_get_vcf(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    vcf = session.service.load_vcf()
    return success(vcf, "Successfully retrieved VCF") if vcf else success("")


@ws_event("get-server-config", "server-config")
async def handle_server_config(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(session.service.server_config(), "Successfully fetched server config")


@ws_event("change-proxy-service", "change-proxy-service")
async def handle_change_proxy_service(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    if not body.get("service"):
        raise BadRequest("No service name provided!")
    return success(None, "Successfully set new proxy service!")


@ws_event("add-fcm-device", "fcm-device-id-added")
async def handle_add_fcm_device(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    session.service.register_device(body.get("deviceName"), body.get("deviceId"), required=True)
    return success(None, "Successfully added device ID")


@ws_event("get-fcm-client", "fcm-client")
async def handle_get_fcm_client(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(session.service.fcm_client_config(), "Successfully got FCM data")


@ws_event("get-logs", "logs")
async def handle_get_logs(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    count = to_int(body.get("count"), None) if body.get("count") is not None else DEFAULT_LOG_LINES
    if count is None or count < 0:
        raise BadRequest("count must be a non-negative integer")
    return success(recent_log_lines(count))


@ws_event("check-for-server-update", "server-update")
async def handle_check_for_update(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(session.service.update_status())


@ws_event("restart-messages-app", "restart-messages-app")
async def handle_restart_messages_app(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(None)


@ws_event("restart-private-api", "restart-private-api-success")
async def handle_restart_private_api(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
    return success(None)


UNSUPPORTED_EVENTS = (
    ("rename-group", "rename-group-error", "Group rename not supported"),
    ("add-participant", "add-participant-error", "Add participant not supported"),
    ("remove-participant", "remove-participant-error", "Remove participant not supported"),
    ("send-reaction", "send-tapback-error", "Reactions not supported"),
)


def _register_unsupported(name: str, error_channel: str, message: str) -> None:
    async def handler(session: WsSession, body: Dict[str, Any]) -> Dict[str, Any]:
        raise InternalError(message)

    ws_event(name, error_channel, error_channel=error_channel)(handler)


for _name, _error_channel, _message in UNSUPPORTED_EVENTS:
    _register_unsupported(_name, _error_channel, _message)


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    config = runtime.config

    ws = web.WebSocketResponse(max_msg_size=config.ws_max_msg_size)
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Dict[str, Any] | None] = asyncio.Queue(maxsize=OUTBOUND_QUEUE_SIZE)
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: Dict[str, Any]) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("closing websocket %s: outbound queue full", conn_id)
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            logger.debug("websocket %s went away while writing", conn_id)

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ws_ping_interval_s)
                if ws.closed:
                    return
                if loop.time() - last_activity >= config.ws_ping_interval_s:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > PING_MISS_LIMIT:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    conn_id = uuid.uuid4().hex
    session = WsSession(runtime, conn_id, enqueue)
    runtime.hub.connect(conn_id, enqueue)
    logger.info("client connected: %s", conn_id)
    session.emit("connection.confirmed", {"deviceId": session.device_id})

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                mark_activity()
                try:
                    frame = msg.json()
                except ValueError:
                    session.respond(None, "error", failure(BadRequest("malformed json")))
                    continue
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    session.respond(request_id, "error", failure(BadRequest("unsupported version")))
                    continue

                frame_type = frame.get("t")
                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": frame.get("id")})
                elif frame_type == "pong":
                    continue
                else:
                    runtime.tasks.spawn(dispatch(session, frame), f"websocket event {frame_type}")
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        runtime.hub.disconnect(conn_id)
        heartbeat_task.cancel()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)
        logger.info("client disconnected: %s", conn_id)

    return ws
