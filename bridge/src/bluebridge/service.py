"""Transport-agnostic bridge operations.

Both the REST routes and the realtime dispatcher call into
:class:`BridgeService`.  Input problems raise :class:`BadRequest` before any
daemon call is made; daemon failures are translated into the client error
taxonomy by :func:`daemon_errors`.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import getpass
import logging
import platform
import socket
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Tuple, TypeVar

from .config import BridgeConfig
from .contacts import ContactsCache, filter_by_addresses, normalize_extra_properties
from .daemon_client import DaemonClient, DaemonError, DaemonNotFound, DaemonUnavailable
from .dates import now_ms, to_upstream_time
from .envelope import BadRequest, BridgeError, Conflict, InternalError, NotFound, SendFailed, UpstreamUnavailable
from .fcm import load_fcm_client_config
from .relay import Relay
from .send_cache import SendCache
from .serializers import (
    display_identifier,
    failed_send_message,
    shape_attachment,
    shape_chat,
    shape_contact,
    shape_message,
    to_int,
    wants_avatar,
)
from .tasks import DetachedTasks
from .uploads import ChunkedUploads

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 1000
SORT_ORDERS = {"ASC", "DESC"}
SEND_FAILED_SUMMARY = "Failed to send message! See attached message error code."


def parse_limit(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    limit = to_int(value, None)
    if limit is None or not 1 <= limit <= MAX_PAGE_SIZE:
        raise BadRequest(f"limit must be an integer between 1 and {MAX_PAGE_SIZE}")
    return limit


def parse_offset(value: Any) -> int:
    if value is None or value == "":
        return 0
    offset = to_int(value, None)
    if offset is None or offset < 0:
        raise BadRequest("offset must be a non-negative integer")
    return offset


def parse_millis(value: Any, name: str) -> int | None:
    if value is None or value == "":
        return None
    millis = to_int(value, None)
    if millis is None or millis < 0:
        raise BadRequest(f"{name} must be a timestamp in milliseconds")
    return millis


def parse_sort(value: Any, default: str = "DESC") -> str:
    if value is None or value == "":
        return default
    sort = str(value).upper()
    if sort not in SORT_ORDERS:
        raise BadRequest("sort must be ASC or DESC")
    return sort


def require_text_id(value: Any, missing: str, name: str) -> str:
    if value is None or value == "":
        raise BadRequest(missing)
    if not isinstance(value, str) or not value.strip():
        raise BadRequest(f"{name} must be a non-empty string")
    return value


def page_metadata(offset: int, limit: int, total: int, count: int) -> Dict[str, int]:
    return {"offset": offset, "limit": limit, "total": total, "count": count}


def _local_addresses() -> Tuple[List[str], List[str]]:
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None)
    except (socket.gaierror, OSError):
        return [], []
    ipv4: List[str] = []
    ipv6: List[str] = []
    for family, _, _, _, sockaddr in infos:
        address = sockaddr[0]
        if address.startswith("127.") or address == "::1":
            continue
        target = ipv4 if family == socket.AF_INET else ipv6
        if address not in target:
            target.append(address)
    return ipv4, ipv6


def _computer_id() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname() or 'unknown'}"


@contextlib.contextmanager
def daemon_errors(not_found: str | None = None) -> Iterator[None]:
    """Translate daemon failures raised inside the block into client errors."""

    try:
        yield
    except DaemonNotFound as exc:
        raise NotFound(not_found or str(exc)) from exc
    except DaemonUnavailable as exc:
        raise UpstreamUnavailable(str(exc)) from exc
    except DaemonError as exc:
        logger.error("daemon call failed: %s", exc)
        raise InternalError(str(exc)) from exc


class BridgeService:
    def __init__(
        self,
        *,
        config: BridgeConfig,
        daemon: DaemonClient,
        send_cache: SendCache,
        relay: Relay,
        contacts: ContactsCache,
        uploads: ChunkedUploads,
        tasks: DetachedTasks,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config
        self.daemon = daemon
        self.send_cache = send_cache
        self.relay = relay
        self.contacts = contacts
        self.uploads = uploads
        self.tasks = tasks
        self._now = now_func

    async def _call(self, awaitable: Awaitable[T], *, not_found: str | None = None) -> T:
        with daemon_errors(not_found):
            return await awaitable

    # -- server -----------------------------------------------------------

    async def server_metadata(self) -> Dict[str, Any]:
        helper_connected = await self.daemon.ping()
        ipv4, ipv6 = _local_addresses()
        return {
            "computer_id": _computer_id(),
            "os_version": f"{platform.system()} {platform.release()}",
            "server_version": self.config.server_version,
            "private_api": False,
            "helper_connected": helper_connected,
            "detected_icloud": "",
            "detected_imessage": "",
            "macos_time_sync": None,
            "local_ipv4s": ipv4,
            "local_ipv6s": ipv6,
        }

    def server_config(self) -> Dict[str, Any]:
        return {
            "server_version": self.config.server_version,
            "encrypt_coms": self.config.encrypt_coms,
            "poll_interval_s": self.config.poll_interval_s,
            "daemon_events": self.config.daemon_events,
        }

    def update_status(self) -> Dict[str, Any]:
        return {"available": False, "current": self.config.server_version, "metadata": None}

    # -- push devices -----------------------------------------------------

    def fcm_client_config(self) -> Dict[str, Any]:
        return load_fcm_client_config(self.config.fcm_google_services_path)

    def register_device(self, name: Any, identifier: Any, *, required: bool = False) -> None:
        """Acknowledge a push registration; the bridge never pushes, so nothing is stored."""

        if required and (not name or not identifier):
            raise BadRequest("No device name or ID specified")
        logger.info("FCM device registered: %s (%s)", name or "unknown", identifier or "n/a")

    # -- chats ------------------------------------------------------------

    async def list_chats(self, *, with_archived: bool = False) -> List[Dict[str, Any]]:
        chats = [shape_chat(chat) for chat in await self._call(self.daemon.get_chats())]
        if not with_archived:
            chats = [chat for chat in chats if not chat["isArchived"]]
        return chats

    async def get_chat(self, chat_guid: str) -> Dict[str, Any]:
        if not chat_guid:
            raise BadRequest("No chat GUID provided")
        chat = await self._call(self.daemon.get_chat(chat_guid))
        if chat is None:
            raise NotFound(f"Chat does not exist: {chat_guid}")
        return shape_chat(chat)

    async def get_participants(self, chat_guid: str) -> List[Dict[str, Any]]:
        return (await self.get_chat(chat_guid))["participants"]

    async def create_chat(self, addresses: Iterable[Any], service: str | None = None) -> Dict[str, Any]:
        """Return the existing chat for ``addresses`` or a new one-to-one chat."""

        if isinstance(addresses, str) or not isinstance(addresses, (list, tuple)):
            raise BadRequest("addresses must be a list")
        wanted = [str(address).strip() for address in addresses if str(address).strip()]
        if not wanted:
            raise BadRequest("No addresses provided")
        service = service or "iMessage"
        chats = [shape_chat(chat) for chat in await self._call(self.daemon.get_chats())]

        if len(wanted) == 1:
            exact_guid = f"{service};-;{wanted[0]}"
            for chat in chats:
                if chat["guid"] == exact_guid:
                    return chat
            for chat in chats:
                if display_identifier(chat["guid"]) == wanted[0] and ";-;" in chat["guid"]:
                    return chat
            return shape_chat({"guid": exact_guid, "participants": wanted})

        wanted_set = set(wanted)
        for chat in chats:
            if {participant["address"] for participant in chat["participants"]} == wanted_set:
                return chat
        raise BadRequest("Group chat creation is not supported")

    async def query_chats(
        self,
        query: str | None = None,
        *,
        limit: Any = None,
        offset: Any = None,
        with_archived: bool = False,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
        limit = parse_limit(limit, MAX_PAGE_SIZE)
        offset = parse_offset(offset)
        chats = await self.list_chats(with_archived=with_archived)
        needle = (query or "").strip().lower()
        if needle:
            chats = [chat for chat in chats if needle in _chat_search_text(chat)]
        chats.sort(key=lambda chat: (chat["lastMessage"] or {}).get("dateCreated") or 0, reverse=True)
        page = chats[offset : offset + limit]
        return page, page_metadata(offset, limit, len(chats), len(page))

    # -- messages ---------------------------------------------------------

    async def list_messages(
        self,
        chat_guid: str,
        *,
        limit: Any = None,
        offset: Any = None,
        before: Any = None,
        after: Any = None,
        sort: Any = None,
        with_chats: bool = False,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
        """Page through a chat's messages; ``before`` is exclusive and ``after`` inclusive."""

        if not chat_guid:
            raise BadRequest("No chat GUID provided")
        limit = parse_limit(limit, 100)
        offset = parse_offset(offset)
        before_ms = parse_millis(before, "before")
        after_ms = parse_millis(after, "after")
        sort = parse_sort(sort)

        cursor = to_upstream_time(before_ms) if before_ms else None
        raw = await self._call(
            self.daemon.get_messages(chat_guid, limit + offset, cursor),
            not_found=f"Chat does not exist: {chat_guid}",
        )
        chats = [shape_chat({"guid": chat_guid})] if with_chats else None
        messages = [shape_message(message, chat_guid, chats=chats) for message in raw]
        if before_ms is not None:
            messages = [message for message in messages if message["dateCreated"] < before_ms]
        if after_ms is not None:
            messages = [message for message in messages if message["dateCreated"] >= after_ms]
        messages.sort(key=lambda message: message["dateCreated"], reverse=sort == "DESC")
        page = messages[offset : offset + limit]
        logger.debug("returning %d messages for chat %s", len(page), chat_guid)
        return page, page_metadata(offset, limit, len(messages), len(page))

    async def last_message(self, chat_guid: str) -> Dict[str, Any] | None:
        messages, _ = await self.list_messages(chat_guid, limit=1)
        return messages[0] if messages else None

    async def message_count(self) -> Dict[str, int]:
        totals = await self._call(self.daemon.get_statistics_totals(only="message"))
        return {"total": to_int(totals.get("messages"), 0)}

    async def send_text(
        self,
        chat_guid: str,
        temp_guid: str,
        text: str | None,
        attachment_paths: Iterable[str] | None = None,
    ) -> Dict[str, Any]:
        chat_guid = require_text_id(chat_guid, "No chat GUID provided", "chatGuid")
        temp_guid = require_text_id(temp_guid, "No temporary GUID provided with message", "tempGuid")
        if attachment_paths is not None and not isinstance(attachment_paths, (list, tuple)):
            raise BadRequest("attachmentPaths must be a list of server file paths")
        paths = [str(path) for path in attachment_paths or [] if path]
        text = text if isinstance(text, str) else ""
        if not text.strip() and not paths:
            raise BadRequest("Message text or attachmentPaths required")
        return await self._send(chat_guid, temp_guid, text, paths)

    async def send_attachment(self, chat_guid: str, temp_guid: str, path: str | Path, text: str | None = None) -> Dict[str, Any]:
        chat_guid = require_text_id(chat_guid, "No chat GUID provided", "chatGuid")
        temp_guid = require_text_id(temp_guid, "No temporary GUID provided with message", "tempGuid")
        return await self._send(chat_guid, temp_guid, text or "", [str(path)])

    async def send_staged_attachment(
        self, chat_guid: str, temp_guid: str, path: Path, text: str | None = None
    ) -> Dict[str, Any]:
        """Send a file staged by :attr:`uploads`, removing it again when the send is rejected."""

        try:
            return await self.send_attachment(chat_guid, temp_guid, path, text)
        except BridgeError as exc:
            # A send that timed out may still be reading the file.
            if exc.status != 504:
                self.uploads.discard_path(path)
            raise

    async def _send(self, chat_guid: str, temp_guid: str, text: str, paths: List[str]) -> Dict[str, Any]:
        if not self.send_cache.add(temp_guid):
            raise Conflict(f"Message is already queued to be sent (Temp GUID: {temp_guid})!")
        try:
            result = await self.daemon.send_message(
                chat_guid, text, attachment_paths=paths or None, temp_guid=temp_guid
            )
        except DaemonError as exc:
            logger.error("failed to send message to %s: %s", chat_guid, exc)
            raise SendFailed(
                str(exc),
                status=504 if isinstance(exc, DaemonUnavailable) else 500,
                summary=SEND_FAILED_SUMMARY,
                data=failed_send_message(chat_guid, temp_guid, text, self._now()),
            ) from exc
        finally:
            self.send_cache.remove(temp_guid)

        record = dict(result)
        record["guid"] = record.get("guid") or temp_guid
        record.setdefault("text", text)
        record["isFromMe"] = True
        message = shape_message(record, chat_guid, temp_guid=temp_guid)
        message["error"] = 0
        if not message["dateCreated"]:
            message["dateCreated"] = self._now()
        self.relay.publish_message(message)
        logger.info("message %s sent to chat %s", message["guid"], chat_guid)
        return message

    def typing(self, chat_guid: str, is_typing: bool, *, broadcast: bool = False) -> None:
        """Relay a typing state to the daemon; ``broadcast`` also tells the chat room."""

        if not chat_guid:
            raise BadRequest("No chat GUID provided!")
        if broadcast:
            self.relay.publish_typing(chat_guid, bool(is_typing))
        self.tasks.spawn(
            self.daemon.send_typing_indicator(chat_guid, bool(is_typing)),
            f"typing indicator for {chat_guid}",
        )

    def mark_read(self, chat_guid: str, message_guids: Any = None) -> None:
        if not chat_guid:
            raise BadRequest("No chat GUID provided")
        if message_guids is None:
            message_guids = []
        if not isinstance(message_guids, list):
            raise BadRequest("messageGuids must be an array")
        guids = [str(guid) for guid in message_guids if guid]
        self.relay.publish_read_receipt(chat_guid, guids, self._now())
        self.tasks.spawn(self.daemon.send_read_receipt(chat_guid, guids), f"read receipt for {chat_guid}")

    def toggle_read_status(self, chat_guid: str, status: Any) -> None:
        if not chat_guid or status is None:
            raise BadRequest("chatGuid and status are required")
        self.relay.publish_read_status(chat_guid, status)

    # -- contacts ---------------------------------------------------------

    async def list_contacts(
        self,
        *,
        limit: Any = None,
        offset: Any = None,
        extra_properties: Any = None,
    ) -> List[Dict[str, Any]]:
        extras = normalize_extra_properties(extra_properties)
        limit_value = to_int(limit, None) if limit not in (None, "") else None
        offset_value = to_int(offset, None) if offset not in (None, "") else None
        contacts = await self._call(
            self.contacts.get(limit=limit_value, offset=offset_value, extra_properties=extras)
        )
        include_avatar = wants_avatar(extras)
        return [shape_contact(contact, include_avatar=include_avatar) for contact in contacts]

    async def query_contacts(self, addresses: Any = None, extra_properties: Any = None) -> List[Dict[str, Any]]:
        contacts = await self.list_contacts(extra_properties=extra_properties)
        if not isinstance(addresses, list) or not addresses:
            return contacts
        return filter_by_addresses(contacts, addresses)

    async def contacts_vcf(self) -> str:
        return await self._call(self.daemon.get_contacts_vcf())

    def save_vcf(self, vcf: Any) -> None:
        if not isinstance(vcf, str) or not vcf:
            raise BadRequest("No VCF data provided!")
        path = Path(self.config.vcf_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(vcf, encoding="utf-8")
        except OSError as exc:
            logger.error("failed to save VCF to %s: %s", path, exc)
            raise InternalError(str(exc)) from exc

    def load_vcf(self) -> str:
        path = Path(self.config.vcf_path)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as exc:
            logger.error("failed to read VCF from %s: %s", path, exc)
            raise InternalError(str(exc)) from exc

    # -- attachments ------------------------------------------------------

    async def attachment_info(self, guid: str) -> Dict[str, Any]:
        if not guid:
            raise BadRequest("No attachment identifier provided")
        info = await self._call(self.daemon.get_attachment_info(guid))
        attachment = shape_attachment(info) if info is not None else None
        if attachment is None:
            raise NotFound(f"Attachment does not exist: {guid}")
        return attachment

    async def attachment_data(self, guid: str) -> bytes:
        return await self._call(
            self.daemon.get_attachment_bytes(guid), not_found=f"Attachment does not exist: {guid}"
        )

    async def attachment_chunk(self, guid: str, start: Any, chunk_size: Any) -> bytes:
        if not guid:
            raise BadRequest("No attachment identifier provided")
        start_value = to_int(start, None) if start not in (None, "") else 0
        size_value = to_int(chunk_size, None) if chunk_size not in (None, "") else 512 * 1024
        if start_value is None or start_value < 0 or size_value is None or size_value <= 0:
            raise BadRequest("start must be >= 0 and chunkSize > 0")
        return await self._call(
            self.daemon.get_attachment_chunk(guid, start_value, size_value),
            not_found=f"Attachment does not exist: {guid}",
        )

    async def upload_chunk(
        self,
        upload_id: str,
        *,
        start: Any,
        data: Any,
        name: str | None = None,
        has_more: bool = False,
        chat_guid: str | None = None,
        temp_guid: str | None = None,
        text: str | None = None,
    ) -> Dict[str, Any]:
        """Append a base64 chunk; the final chunk sends the file when a chat is given."""

        start_value = to_int(start, None) if start not in (None, "") else 0
        if start_value is None or start_value < 0:
            raise BadRequest("start must be a non-negative integer")
        if not isinstance(data, str):
            raise BadRequest("data must be a base64 string")
        try:
            chunk = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise BadRequest("data is not valid base64") from exc

        size = self.uploads.append(upload_id, start_value, chunk, name)
        result: Dict[str, Any] = {"uploadId": upload_id, "size": size, "complete": not has_more}
        if has_more:
            return result
        path = self.uploads.finish(upload_id)
        result["path"] = str(path)
        if chat_guid:
            result["message"] = await self.send_staged_attachment(chat_guid, temp_guid or "", path, text)
        return result


def _chat_search_text(chat: Dict[str, Any]) -> str:
    parts = [chat["displayName"], chat["chatIdentifier"], chat["guid"]]
    if chat["lastMessage"]:
        parts.append(chat["lastMessage"]["text"])
    return " ".join(part for part in parts if part).lower()
