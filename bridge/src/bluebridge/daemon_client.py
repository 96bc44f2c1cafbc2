from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping
from urllib.parse import quote

import aiohttp

logger = logging.getLogger(__name__)

UNSUPPORTED_STATUSES = {404, 501}


class DaemonError(Exception):
    """A daemon call failed; ``status`` is the upstream HTTP status when there was one."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class DaemonNotFound(DaemonError):
    pass


class DaemonUnavailable(DaemonError):
    """The daemon could not be reached or did not answer in time."""


def _quote(segment: str) -> str:
    return quote(segment, safe="")


def _clean_params(params: Mapping[str, Any] | None) -> Dict[str, str] | None:
    if not params:
        return None
    cleaned: Dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            cleaned[key] = "true" if value else "false"
        elif isinstance(value, (list, tuple)):
            cleaned[key] = ",".join(str(item) for item in value)
        else:
            cleaned[key] = str(value)
    return cleaned or None


def resolve_attachment_paths(paths: Iterable[str]) -> List[str]:
    return [os.path.abspath(os.path.expanduser(path)) for path in paths if path]


class DaemonClient:
    """Async HTTP client for the local Messages daemon.

    Every call is bounded by ``timeout_s`` (attachment transfers by
    ``attachment_timeout_s``); timeouts and refused connections surface as
    :class:`DaemonUnavailable`, a 404 as :class:`DaemonNotFound`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 30.0,
        attachment_timeout_s: float = 60.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        if timeout_s <= 0 or attachment_timeout_s <= 0:
            raise ValueError("daemon timeouts must be greater than zero")
        self.base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._attachment_timeout_s = attachment_timeout_s
        self._session = session
        self._owns_session = session is None
        self.supports_updates = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"Content-Type": "application/json"})
            self._owns_session = True
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _error_for(status: int, body: str, path: str) -> DaemonError:
        detail = body.strip()[:200] or f"HTTP {status}"
        message = f"daemon {path} returned {status}: {detail}"
        if status == 404:
            return DaemonNotFound(message, status=status)
        if status in {502, 503, 504}:
            return DaemonUnavailable(message, status=status)
        return DaemonError(message, status=status)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        expect: str = "json",
        timeout_s: float | None = None,
    ) -> Any:
        session = self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=timeout_s or self._timeout_s)
        try:
            async with session.request(
                method,
                self._url(path),
                params=_clean_params(params),
                json=json,
                headers=headers,
                timeout=timeout,
            ) as response:
                if response.status >= 400:
                    raise self._error_for(response.status, await response.text(), path)
                if expect == "bytes":
                    return await response.read()
                if expect == "text":
                    return await response.text()
                raw = await response.read()
                if not raw.strip():
                    return None
                return await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise DaemonUnavailable(f"daemon {path} timed out after {timeout.total}s") from exc
        except aiohttp.ClientConnectionError as exc:
            raise DaemonUnavailable(f"daemon {path} unreachable: {exc}") from exc
        except aiohttp.ClientError as exc:
            raise DaemonError(f"daemon {path} failed: {exc}") from exc
        except ValueError as exc:
            raise DaemonError(f"daemon {path} returned malformed json") from exc

    async def ping(self) -> bool:
        try:
            await self._request("GET", "/ping", expect="text")
        except DaemonError as exc:
            logger.error("daemon unreachable: %s", exc)
            return False
        return True

    async def get_chats(self) -> List[Dict[str, Any]]:
        chats = await self._request("GET", "/chats")
        chats = chats if isinstance(chats, list) else []
        logger.debug("fetched %d chats from daemon", len(chats))
        return chats

    async def get_chat(self, chat_guid: str) -> Dict[str, Any] | None:
        try:
            chat = await self._request("GET", f"/chats/{_quote(chat_guid)}")
        except DaemonNotFound:
            return None
        return chat if isinstance(chat, dict) else None

    async def get_messages(self, chat_guid: str, limit: int = 50, before: int | None = None) -> List[Dict[str, Any]]:
        """``before`` is a daemon timestamp (nanoseconds since 2001), exclusive."""

        params: Dict[str, Any] = {"limit": limit}
        if before:
            params["before"] = before
        messages = await self._request("GET", f"/chats/{_quote(chat_guid)}/messages", params=params)
        messages = messages if isinstance(messages, list) else []
        logger.debug("fetched %d messages for chat %s", len(messages), chat_guid)
        return messages

    async def send_message(
        self,
        chat_guid: str,
        text: str,
        *,
        attachment_paths: Iterable[str] | None = None,
        temp_guid: str | None = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"chat_guid": chat_guid, "text": text or ""}
        paths = resolve_attachment_paths(attachment_paths or [])
        if paths:
            body["attachment_paths"] = paths
            logger.info("sending to daemon with attachment_paths: %s", ", ".join(paths))
        if temp_guid:
            body["temp_guid"] = temp_guid
        result = await self._request("POST", "/send", json=body)
        logger.info("message sent to chat %s", chat_guid)
        return result if isinstance(result, dict) else {}

    async def get_updates(self, since: int) -> Dict[str, Any]:
        empty: Dict[str, Any] = {"messages": [], "typing": [], "receipts": []}
        if not self.supports_updates:
            return empty
        try:
            updates = await self._request("GET", "/messages/updates", params={"since": since})
        except DaemonError as exc:
            if exc.status in UNSUPPORTED_STATUSES:
                logger.debug("daemon has no /messages/updates; polling disabled")
                self.supports_updates = False
                return empty
            raise
        return updates if isinstance(updates, dict) else empty

    async def send_typing_indicator(self, chat_guid: str, is_typing: bool) -> None:
        await self._request("POST", "/typing", json={"chat_guid": chat_guid, "is_typing": bool(is_typing)})

    async def send_read_receipt(self, chat_guid: str, message_guids: List[str]) -> None:
        await self._request(
            "POST", "/read_receipt", json={"chat_guid": chat_guid, "message_guids": list(message_guids)}
        )

    async def get_contacts(
        self,
        *,
        limit: int | None = None,
        offset: int | None = None,
        extra_properties: Iterable[str] | None = None,
    ) -> List[Dict[str, Any]]:
        params = {"limit": limit, "offset": offset, "extraProperties": list(extra_properties or []) or None}
        contacts = await self._request("GET", "/contacts", params=params)
        contacts = contacts if isinstance(contacts, list) else []
        logger.debug("fetched %d contacts from daemon", len(contacts))
        return contacts

    async def get_contacts_vcf(self) -> str:
        return await self._request("GET", "/contacts/vcf", expect="text") or ""

    async def get_contacts_changed(self) -> Dict[str, Any]:
        changed = await self._request("GET", "/contacts/changed")
        return changed if isinstance(changed, dict) else {}

    async def get_attachment_info(self, guid: str) -> Dict[str, Any] | None:
        try:
            info = await self._request("GET", f"/attachments/{_quote(guid)}/info")
        except DaemonNotFound:
            return None
        return info if isinstance(info, dict) else None

    async def get_attachment_bytes(self, guid: str) -> bytes:
        return await self._request(
            "GET", f"/attachments/{_quote(guid)}", expect="bytes", timeout_s=self._attachment_timeout_s
        )

    async def get_attachment_chunk(self, guid: str, start: int, chunk_size: int) -> bytes:
        end = start + chunk_size - 1
        return await self._request(
            "GET",
            f"/attachments/{_quote(guid)}",
            headers={"Range": f"bytes={start}-{end}"},
            expect="bytes",
            timeout_s=self._attachment_timeout_s,
        )

    @contextlib.asynccontextmanager
    async def open_attachment(
        self,
        guid: str,
        *,
        params: Mapping[str, Any] | None = None,
        range_header: str | None = None,
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """Yield the raw daemon response for streaming; honours ``Range``."""

        path = f"/attachments/{_quote(guid)}"
        response = await self._open(
            path,
            params=params,
            headers={"Range": range_header} if range_header else None,
            timeout=aiohttp.ClientTimeout(total=self._attachment_timeout_s),
        )
        try:
            yield response
        finally:
            response.release()

    @contextlib.asynccontextmanager
    async def open_events(self) -> AsyncIterator[aiohttp.ClientResponse]:
        """Yield the daemon's server-sent-events response; the stream has no total timeout."""

        response = await self._open(
            "/events",
            headers={"Accept": "text/event-stream"},
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=self._timeout_s),
        )
        try:
            yield response
        finally:
            response.release()

    async def _open(
        self,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: aiohttp.ClientTimeout,
    ) -> aiohttp.ClientResponse:
        session = self._ensure_session()
        try:
            response = await session.get(
                self._url(path), params=_clean_params(params), headers=headers, timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise DaemonUnavailable(f"daemon {path} timed out") from exc
        except aiohttp.ClientConnectionError as exc:
            raise DaemonUnavailable(f"daemon {path} unreachable: {exc}") from exc
        except aiohttp.ClientError as exc:
            raise DaemonError(f"daemon {path} failed: {exc}") from exc
        if response.status >= 400:
            body = await response.text()
            response.release()
            raise self._error_for(response.status, body, path)
        return response

    async def get_statistics_totals(self, only: str | None = None) -> Dict[str, Any]:
        totals = await self._request("GET", "/statistics/totals", params={"only": only})
        return totals if isinstance(totals, dict) else {}
