"""REST surface under ``/api/v1`` plus the auth, CORS and error middlewares."""

from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Any, Dict

import aiohttp
from aiohttp import web

from .config import BridgeConfig
from .envelope import (
    BadRequest,
    BridgeError,
    InternalError,
    NotFound,
    Unauthorized,
    VALIDATION_ERROR,
    failure,
    success,
)
from .runtime import RUNTIME_KEY
from .serializers import to_bool
from .service import daemon_errors
from .uploads import sanitize_filename

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
PUBLIC_PATHS = {"/healthz"}
PASSWORD_PARAMS = ("guid", "password", "token")
DOWNLOAD_PARAMS = ("original", "width", "height", "quality", "force")
PASSTHROUGH_HEADERS = ("Content-Type", "Content-Length", "Content-Range", "Accept-Ranges", "Content-Disposition")
STREAM_CHUNK_SIZE = 64 * 1024

CORS_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
CORS_HEADERS = "Authorization, Content-Type, Range"


def envelope_response(payload: Dict[str, Any], status: int = 200) -> web.Response:
    return web.json_response(payload, status=status)


def error_response(error: BridgeError) -> web.Response:
    return envelope_response(failure(error), error.status)


def extract_password(request: web.Request) -> str | None:
    for key in PASSWORD_PARAMS:
        value = request.query.get(key)
        if value is not None:
            return value
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer ") :]
    return None


def check_password(config: BridgeConfig, supplied: str | None) -> None:
    if supplied is None or not supplied.strip():
        raise Unauthorized("Missing server password!")
    if not config.password:
        logger.error("server password not configured")
        raise InternalError("Failed to retrieve password from the server configuration")
    if not hmac.compare_digest(supplied.strip().encode("utf-8"), config.password.strip().encode("utf-8")):
        logger.debug("client tried to authenticate with an incorrect password")
        raise Unauthorized("Unauthorized")


@web.middleware
async def preflight_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=204)
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except BridgeError as exc:
        return error_response(exc)
    except web.HTTPException as exc:
        if exc.status == 404:
            return error_response(NotFound(f"Route not found: {request.method} {request.path}"))
        if exc.status < 400:
            raise
        error_type = VALIDATION_ERROR if exc.status < 500 else None
        return error_response(BridgeError(exc.reason, status=exc.status, error_type=error_type))
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception("unhandled error on %s %s", request.method, request.path)
        return error_response(InternalError(str(exc)))


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.path not in PUBLIC_PATHS:
        check_password(request.app[RUNTIME_KEY].config, extract_password(request))
    return await handler(request)


async def add_cors_headers(request: web.Request, response: web.StreamResponse) -> None:
    config = request.app[RUNTIME_KEY].config
    response.headers["Access-Control-Allow-Origin"] = config.cors_origin
    response.headers["Access-Control-Allow-Methods"] = CORS_METHODS
    response.headers["Access-Control-Allow-Headers"] = CORS_HEADERS


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.body_exists:
        return {}
    try:
        body = await request.json()
    except ValueError as exc:
        raise BadRequest("malformed json") from exc
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _service(request: web.Request):
    return request.app[RUNTIME_KEY].service


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_ping(_: web.Request) -> web.Response:
    return envelope_response(success("pong", "Ping received!"))


async def handle_server_info(request: web.Request) -> web.Response:
    return envelope_response(success(await _service(request).server_metadata(), "Successfully fetched metadata"))


async def handle_chat_list(request: web.Request) -> web.Response:
    chats, metadata = await _service(request).query_chats(
        None,
        limit=request.query.get("limit"),
        offset=request.query.get("offset"),
        with_archived=to_bool(request.query.get("withArchived", "false")),
    )
    return envelope_response(success(chats, metadata=metadata))


async def handle_chat_get(request: web.Request) -> web.Response:
    return envelope_response(success(await _service(request).get_chat(request.match_info["guid"])))


async def handle_chat_new(request: web.Request) -> web.Response:
    body = await _json_body(request)
    chat = await _service(request).create_chat(body.get("addresses") or [], body.get("service"))
    return envelope_response(success(chat, "Successfully created chat!"))


async def handle_chat_query(request: web.Request) -> web.Response:
    body = await _json_body(request)
    chats, metadata = await _service(request).query_chats(
        body.get("query"),
        limit=body.get("limit"),
        offset=body.get("offset"),
        with_archived=to_bool(body.get("withArchived", False)),
    )
    return envelope_response(success(chats, metadata=metadata))


async def handle_chat_participants(request: web.Request) -> web.Response:
    return envelope_response(success(await _service(request).get_participants(request.match_info["guid"])))


async def handle_chat_messages(request: web.Request) -> web.Response:
    query = request.query
    messages, metadata = await _service(request).list_messages(
        request.match_info["guid"],
        limit=query.get("limit"),
        offset=query.get("offset"),
        before=query.get("before"),
        after=query.get("after"),
        sort=query.get("sort"),
        with_chats="chat" in query.get("with", "").split(","),
    )
    return envelope_response(success(messages, metadata=metadata))


async def handle_message_query(request: web.Request) -> web.Response:
    body = await _json_body(request)
    chat_guid = body.get("chatGuid")
    if not isinstance(chat_guid, str) or not chat_guid:
        raise BadRequest("chatGuid is required")
    messages, metadata = await _service(request).list_messages(
        chat_guid,
        limit=body.get("limit"),
        offset=body.get("offset"),
        before=body.get("before"),
        after=body.get("after"),
        sort=body.get("sort"),
        with_chats="chat" in (body.get("with") or []),
    )
    return envelope_response(success(messages, metadata=metadata))


async def handle_message_count(request: web.Request) -> web.Response:
    return envelope_response(success(await _service(request).message_count()))


async def handle_message_text(request: web.Request) -> web.Response:
    body = await _json_body(request)
    text = body.get("message") if body.get("message") is not None else body.get("text")
    message = await _service(request).send_text(
        body.get("chatGuid") or "",
        body.get("tempGuid") or "",
        text,
        body.get("attachmentPaths"),
    )
    return envelope_response(success(message, "Message sent!"))


async def _stage_part(part, path) -> None:
    loop = asyncio.get_running_loop()
    with path.open("wb") as handle:
        while True:
            chunk = await part.read_chunk()
            if not chunk:
                break
            await loop.run_in_executor(None, handle.write, chunk)


async def handle_message_attachment(request: web.Request) -> web.Response:
    if request.content_type != "multipart/form-data":
        raise BadRequest("attachment uploads must be multipart/form-data")
    runtime = request.app[RUNTIME_KEY]
    fields: Dict[str, str] = {}
    path = None
    try:
        reader = await request.multipart()
        async for part in reader:
            if part.name == "attachment" and path is None:
                path = runtime.uploads.new_path(part.filename or fields.get("name"))
                await _stage_part(part, path)
            elif part.name and part.name != "attachment":
                fields[part.name] = await part.text()
        if path is None:
            raise BadRequest("No attachment provided")
        if fields.get("name") and sanitize_filename(fields["name"]) != path.name:
            path = path.rename(path.with_name(sanitize_filename(fields["name"])))
    except BaseException:
        if path is not None:
            runtime.uploads.discard_path(path)
        raise
    message = await runtime.service.send_staged_attachment(
        fields.get("chatGuid") or "", fields.get("tempGuid") or "", path, fields.get("message")
    )
    return envelope_response(success(message, "Attachment sent!"))


async def handle_attachment_upload(request: web.Request) -> web.Response:
    body = await _json_body(request)
    result = await _service(request).upload_chunk(
        str(body.get("uploadId") or ""),
        start=body.get("start"),
        data=body.get("data"),
        name=body.get("name"),
        has_more=to_bool(body.get("hasMore", False)),
        chat_guid=body.get("chatGuid"),
        temp_guid=body.get("tempGuid"),
        text=body.get("message"),
    )
    return envelope_response(success(result))


async def _typing(request: web.Request, chat_guid: str, is_typing: bool) -> web.Response:
    _service(request).typing(chat_guid, is_typing, broadcast=True)
    return envelope_response(success(True))


async def handle_chat_typing_start(request: web.Request) -> web.Response:
    return await _typing(request, request.match_info["guid"], True)


async def handle_chat_typing_stop(request: web.Request) -> web.Response:
    return await _typing(request, request.match_info["guid"], False)


async def handle_typing_indicator(request: web.Request) -> web.Response:
    body = await _json_body(request)
    return await _typing(request, body.get("chatGuid") or "", to_bool(body.get("isTyping", False)))


async def handle_chat_read(request: web.Request) -> web.Response:
    body = await _json_body(request)
    _service(request).mark_read(request.match_info["guid"], body.get("messageGuids"))
    return envelope_response(success(True))


async def handle_read_receipt(request: web.Request) -> web.Response:
    body = await _json_body(request)
    if not isinstance(body.get("messageGuids"), list):
        raise BadRequest("chatGuid and messageGuids (array) are required")
    _service(request).mark_read(body.get("chatGuid") or "", body["messageGuids"])
    return envelope_response(success(True))


async def handle_contacts(request: web.Request) -> web.Response:
    query = request.query
    extras = query.getall("extraProperties", [])
    contacts = await _service(request).list_contacts(
        limit=query.get("limit"),
        offset=query.get("offset"),
        extra_properties=",".join(extras),
    )
    return envelope_response(success(contacts))


async def handle_contact_vcf(request: web.Request) -> web.Response:
    vcf = await _service(request).contacts_vcf()
    return web.Response(text=vcf, content_type="text/vcard")


async def handle_contact_query(request: web.Request) -> web.Response:
    body = await _json_body(request)
    contacts = await _service(request).query_contacts(body.get("addresses"), body.get("extraProperties"))
    return envelope_response(success(contacts))


async def handle_attachment_info(request: web.Request) -> web.Response:
    return envelope_response(success(await _service(request).attachment_info(request.match_info["guid"])))


async def handle_attachment_download(request: web.Request) -> web.StreamResponse:
    runtime = request.app[RUNTIME_KEY]
    guid = request.match_info["guid"]
    params = {key: request.query[key] for key in DOWNLOAD_PARAMS if key in request.query}
    with daemon_errors(f"Attachment does not exist: {guid}"):
        async with runtime.daemon.open_attachment(
            guid, params=params, range_header=request.headers.get("Range")
        ) as upstream:
            response = web.StreamResponse(status=upstream.status)
            for header in PASSTHROUGH_HEADERS:
                if header in upstream.headers:
                    response.headers[header] = upstream.headers[header]
            await response.prepare(request)
            try:
                async for chunk in upstream.content.iter_chunked(STREAM_CHUNK_SIZE):
                    await response.write(chunk)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning("attachment %s stream interrupted: %s", guid, exc)
                return response
            await response.write_eof()
            return response


async def handle_imessage_availability(request: web.Request) -> web.Response:
    address = request.query.get("address", "").strip()
    if not address:
        raise BadRequest("address query parameter is required")
    return envelope_response(success({"online": True, "available": True}))


async def handle_focus(request: web.Request) -> web.Response:
    address = request.match_info["address"].replace("\r", "").replace("\n", "").strip()
    if not address:
        raise BadRequest("address missing")
    return envelope_response(success({"address": address, "focused": True}))


async def handle_fcm_client(request: web.Request) -> web.Response:
    return envelope_response(success(_service(request).fcm_client_config()))


async def handle_fcm_device(request: web.Request) -> web.Response:
    body = await _json_body(request)
    _service(request).register_device(body.get("name"), body.get("identifier"))
    return envelope_response(success({"message": "Successfully added device!"}))


def setup_routes(app: web.Application) -> None:
    prefix = API_PREFIX
    router = app.router
    router.add_get("/healthz", handle_health)
    router.add_get(f"{prefix}/ping", handle_ping)
    router.add_get(f"{prefix}/server/ping", handle_ping)
    router.add_get(f"{prefix}/server/info", handle_server_info)

    router.add_get(f"{prefix}/chat", handle_chat_list)
    router.add_post(f"{prefix}/chat/new", handle_chat_new)
    router.add_post(f"{prefix}/chat/query", handle_chat_query)
    router.add_get(f"{prefix}/chat/{{guid}}", handle_chat_get)
    router.add_get(f"{prefix}/chat/{{guid}}/participants", handle_chat_participants)
    router.add_get(f"{prefix}/chat/{{guid}}/message", handle_chat_messages)
    router.add_get(f"{prefix}/chats", handle_chat_list)
    router.add_get(f"{prefix}/chats/{{guid}}", handle_chat_get)
    router.add_get(f"{prefix}/chats/{{guid}}/messages", handle_chat_messages)
    router.add_post(f"{prefix}/chat/{{guid}}/typing", handle_chat_typing_start)
    router.add_delete(f"{prefix}/chat/{{guid}}/typing", handle_chat_typing_stop)
    router.add_post(f"{prefix}/chat/{{guid}}/read", handle_chat_read)

    router.add_post(f"{prefix}/message/query", handle_message_query)
    router.add_get(f"{prefix}/message/count", handle_message_count)
    router.add_post(f"{prefix}/message/text", handle_message_text)
    router.add_post(f"{prefix}/message/attachment", handle_message_attachment)
    router.add_post(f"{prefix}/typing-indicator", handle_typing_indicator)
    router.add_post(f"{prefix}/read_receipt", handle_read_receipt)

    router.add_get(f"{prefix}/contact", handle_contacts)
    router.add_get(f"{prefix}/contacts", handle_contacts)
    router.add_get(f"{prefix}/contact/vcf", handle_contact_vcf)
    router.add_get(f"{prefix}/contacts/vcf", handle_contact_vcf)
    router.add_post(f"{prefix}/contact/query", handle_contact_query)
    router.add_post(f"{prefix}/contacts/query", handle_contact_query)

    router.add_post(f"{prefix}/attachment/upload", handle_attachment_upload)
    router.add_get(f"{prefix}/attachment/{{guid}}", handle_attachment_info)
    router.add_get(f"{prefix}/attachment/{{guid}}/download", handle_attachment_download)

    router.add_get(f"{prefix}/handle/availability/imessage", handle_imessage_availability)
    router.add_get(f"{prefix}/handle/{{address}}/focus", handle_focus)

    router.add_get(f"{prefix}/fcm/client", handle_fcm_client)
    router.add_post(f"{prefix}/fcm/device", handle_fcm_device)
