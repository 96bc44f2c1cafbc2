"""Map daemon records onto the fixed client schema.

Daemon builds have renamed fields over time, so every canonical field lists
the keys it may arrive under, in priority order.  :func:`pick` returns the
first candidate whose value is not ``None``.  All shapers are pure and
total: every canonical key is present in the output, holding a typed
default when the daemon sent nothing usable.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from .dates import to_client_time
from .envelope import SEND_ERROR_CODE

ADDRESS_SEPARATOR = ";-;"

CHAT_FIELDS: Dict[str, Sequence[str]] = {
    "guid": ("guid", "chatGuid", "chat_guid"),
    "originalROWID": ("originalROWID", "original_rowid", "ROWID"),
    "displayName": ("displayName", "display_name", "name"),
    "lastMessageText": ("lastMessageText", "last_message_text", "lastMessage"),
    "lastMessageDate": ("lastMessageDate", "last_message_date", "lastMessageTime", "last_message_time"),
    "participants": ("participants", "handles"),
    "isArchived": ("isArchived", "is_archived"),
    "properties": ("properties",),
    "style": ("style",),
    "groupId": ("groupId", "group_id"),
}

MESSAGE_FIELDS: Dict[str, Sequence[str]] = {
    "guid": ("guid", "GUID"),
    "tempGuid": ("tempGuid", "temp_guid"),
    "originalROWID": ("originalROWID", "original_rowid", "ROWID"),
    "text": ("text", "body"),
    "handle": ("handle", "sender"),
    "handleId": ("handleId", "handle_id"),
    "otherHandle": ("otherHandle", "other_handle"),
    "attachments": ("attachments",),
    "subject": ("subject",),
    "error": ("error",),
    "dateCreated": ("dateCreated", "date_created", "date"),
    "dateRead": ("dateRead", "date_read"),
    "dateDelivered": ("dateDelivered", "date_delivered"),
    "isFromMe": ("isFromMe", "is_from_me"),
    "isArchived": ("isArchived", "is_archived"),
    "itemType": ("itemType", "item_type"),
    "groupTitle": ("groupTitle", "group_title"),
    "groupActionType": ("groupActionType", "group_action_type"),
    "balloonBundleId": ("balloonBundleId", "balloon_bundle_id"),
    "associatedMessageGuid": ("associatedMessageGuid", "associated_message_guid"),
    "associatedMessageType": ("associatedMessageType", "associated_message_type"),
    "chatGuid": ("chatGuid", "chat_guid"),
}

ATTACHMENT_FIELDS: Dict[str, Sequence[str]] = {
    "guid": ("guid", "GUID"),
    "originalROWID": ("originalROWID", "original_rowid"),
    "uti": ("uti",),
    "mimeType": ("mimeType", "mime_type"),
    "transferName": ("transferName", "transfer_name"),
    "totalBytes": ("totalBytes", "total_bytes"),
}

HANDLE_FIELDS: Dict[str, Sequence[str]] = {
    "address": ("address", "id", "handle"),
    "originalROWID": ("originalROWID", "original_rowid", "ROWID"),
    "service": ("service",),
    "country": ("country",),
    "uncanonicalizedId": ("uncanonicalizedId", "uncanonicalized_id"),
}

CONTACT_FIELDS: Dict[str, Sequence[str]] = {
    "id": ("id", "identifier"),
    "firstName": ("firstName", "first_name"),
    "lastName": ("lastName", "last_name"),
    "displayName": ("displayName", "display_name"),
    "nickname": ("nickname",),
    "birthday": ("birthday",),
    "avatar": ("avatar",),
    "sourceType": ("sourceType", "source_type"),
    "phones": ("phones", "phoneNumbers", "addresses"),
    "emails": ("emails", "emailAddresses", "addresses"),
}

AVATAR_PROPERTIES = {"avatar", "contactimage", "contactthumbnailimage"}


def pick(record: Mapping[str, Any], keys: Iterable[str], default: Any = None) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return default


def to_number(value: Any, default: Any = 0) -> Any:
    """Coerce numbers and numeric strings; anything else yields ``default``."""

    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return default
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            parsed = float(text)
        except ValueError:
            return default
        if not math.isfinite(parsed):
            return default
        return int(parsed) if parsed.is_integer() else parsed
    return default


def to_int(value: Any, default: Any = 0) -> Any:
    number = to_number(value, None)
    if number is None:
        return default
    return int(number)


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def to_str(value: Any, default: Any = "") -> Any:
    if value is None:
        return default
    return value if isinstance(value, str) else str(value)


def chat_identifier(guid: str | None) -> str:
    if not guid:
        return ""
    return guid.rsplit(";", 1)[-1]


def display_identifier(guid: str | None) -> str:
    """The address part of a chat guid; ``;-;`` is never shown to clients."""

    if not guid:
        return ""
    index = guid.find(ADDRESS_SEPARATOR)
    if index >= 0:
        return guid[index + len(ADDRESS_SEPARATOR) :].strip()
    return chat_identifier(guid)


def shape_attachment(raw: Any) -> Dict[str, Any] | None:
    if not isinstance(raw, Mapping):
        return None
    guid = pick(raw, ATTACHMENT_FIELDS["guid"])
    if guid is None or guid == "":
        return None
    return {
        "originalROWID": to_int(pick(raw, ATTACHMENT_FIELDS["originalROWID"]), None),
        "guid": to_str(guid),
        "uti": to_str(pick(raw, ATTACHMENT_FIELDS["uti"])),
        "mimeType": to_str(pick(raw, ATTACHMENT_FIELDS["mimeType"]), "application/octet-stream"),
        "transferName": to_str(pick(raw, ATTACHMENT_FIELDS["transferName"])),
        "totalBytes": to_int(pick(raw, ATTACHMENT_FIELDS["totalBytes"]), 0),
    }


def shape_attachments(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, (list, tuple)):
        return []
    shaped = (shape_attachment(item) for item in raw)
    return [item for item in shaped if item is not None]


def shape_handle(raw: Any) -> Dict[str, Any] | None:
    if isinstance(raw, str):
        raw = {"address": raw}
    if not isinstance(raw, Mapping):
        return None
    address = to_str(pick(raw, HANDLE_FIELDS["address"]))
    if not address:
        return None
    return {
        "originalROWID": to_int(pick(raw, HANDLE_FIELDS["originalROWID"]), 0),
        "address": address,
        "service": to_str(pick(raw, HANDLE_FIELDS["service"]), "iMessage"),
        "country": pick(raw, HANDLE_FIELDS["country"]),
        "uncanonicalizedId": pick(raw, HANDLE_FIELDS["uncanonicalizedId"]),
    }


def shape_handles(raw: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw, (list, tuple)):
        return []
    shaped = (shape_handle(item) for item in raw)
    return [item for item in shaped if item is not None]


def shape_chat(raw: Any) -> Dict[str, Any]:
    record: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    guid = to_str(pick(record, CHAT_FIELDS["guid"]))
    last_text = pick(record, CHAT_FIELDS["lastMessageText"])
    if not isinstance(last_text, str):
        last_text = ""
    last_date = to_client_time(pick(record, CHAT_FIELDS["lastMessageDate"])) or 0
    last_message = None
    if last_text or last_date:
        last_message = {
            "text": last_text,
            "dateCreated": last_date,
            "guid": None,
            "isFromMe": False,
            "handle": None,
        }
    display_name = to_str(pick(record, CHAT_FIELDS["displayName"]))
    if ADDRESS_SEPARATOR in display_name:
        display_name = display_identifier(display_name)
    properties = pick(record, CHAT_FIELDS["properties"])
    return {
        "originalROWID": to_int(pick(record, CHAT_FIELDS["originalROWID"]), 0),
        "guid": guid,
        "participants": shape_handles(pick(record, CHAT_FIELDS["participants"])),
        "messages": None,
        "lastMessage": last_message,
        "properties": properties if isinstance(properties, (dict, list)) else None,
        "style": to_int(pick(record, CHAT_FIELDS["style"]), 0),
        "chatIdentifier": chat_identifier(guid),
        "isArchived": to_bool(pick(record, CHAT_FIELDS["isArchived"], False)),
        "displayName": display_name or display_identifier(guid),
        "groupId": to_str(pick(record, CHAT_FIELDS["groupId"])),
    }


def shape_message(
    raw: Any,
    chat_guid: str | None = None,
    *,
    chats: List[Dict[str, Any]] | None = None,
    temp_guid: str | None = None,
) -> Dict[str, Any]:
    """Shape one daemon message.  ``tempGuid`` is only emitted when known."""

    record: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    handle = pick(record, MESSAGE_FIELDS["handle"])
    guid = pick(record, MESSAGE_FIELDS["guid"])
    output: Dict[str, Any] = {
        "originalROWID": to_int(pick(record, MESSAGE_FIELDS["originalROWID"]), 0),
        "guid": to_str(guid, None),
        "text": to_str(pick(record, MESSAGE_FIELDS["text"])),
        "handle": shape_handle(handle) if handle is not None else None,
        "handleId": to_int(pick(record, MESSAGE_FIELDS["handleId"]), 0),
        "otherHandle": to_int(pick(record, MESSAGE_FIELDS["otherHandle"]), 0),
        "chats": list(chats) if chats else [],
        "attachments": shape_attachments(pick(record, MESSAGE_FIELDS["attachments"])),
        "subject": to_str(pick(record, MESSAGE_FIELDS["subject"])),
        "error": to_int(pick(record, MESSAGE_FIELDS["error"]), 0),
        "dateCreated": to_client_time(pick(record, MESSAGE_FIELDS["dateCreated"])) or 0,
        "dateRead": to_client_time(pick(record, MESSAGE_FIELDS["dateRead"])),
        "dateDelivered": to_client_time(pick(record, MESSAGE_FIELDS["dateDelivered"])),
        "isFromMe": to_bool(pick(record, MESSAGE_FIELDS["isFromMe"], False)),
        "isArchived": to_bool(pick(record, MESSAGE_FIELDS["isArchived"], False)),
        "itemType": to_int(pick(record, MESSAGE_FIELDS["itemType"]), 0),
        "groupTitle": pick(record, MESSAGE_FIELDS["groupTitle"]),
        "groupActionType": to_int(pick(record, MESSAGE_FIELDS["groupActionType"]), 0),
        "balloonBundleId": pick(record, MESSAGE_FIELDS["balloonBundleId"]),
        "associatedMessageGuid": pick(record, MESSAGE_FIELDS["associatedMessageGuid"]) or None,
        "associatedMessageType": pick(record, MESSAGE_FIELDS["associatedMessageType"]) or None,
        "chatGuid": chat_guid or to_str(pick(record, MESSAGE_FIELDS["chatGuid"]), None),
    }
    temp = temp_guid or pick(record, MESSAGE_FIELDS["tempGuid"])
    if temp:
        output["tempGuid"] = to_str(temp)
    return output


def failed_send_message(chat_guid: str, temp_guid: str, text: str, created_ms: int) -> Dict[str, Any]:
    return shape_message(
        {"text": text, "isFromMe": True, "dateCreated": created_ms, "error": SEND_ERROR_CODE},
        chat_guid,
        temp_guid=temp_guid,
    )


def _contact_addresses(values: Any, keys: Sequence[str]) -> List[Dict[str, Any]]:
    if values is None:
        return []
    if not isinstance(values, (list, tuple)):
        values = [values]
    entries: List[Dict[str, Any]] = []
    for value in values:
        if isinstance(value, str):
            address, entry_id = value, None
        elif isinstance(value, Mapping):
            address = pick(value, keys)
            entry_id = pick(value, ("id", "identifier"))
        else:
            continue
        if address is None or address == "":
            continue
        entries.append({"address": to_str(address), "id": entry_id})
    return entries


def _dedupe_by_address(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen: set[str] = set()
    unique: List[Dict[str, Any]] = []
    for entry in entries:
        if entry["address"] in seen:
            continue
        seen.add(entry["address"])
        unique.append(entry)
    return unique


def wants_avatar(extra_properties: Iterable[str]) -> bool:
    return any(str(prop).lower() in AVATAR_PROPERTIES for prop in extra_properties)


def shape_contact(raw: Any, *, include_avatar: bool = False) -> Dict[str, Any]:
    record: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    phone_keys = ("address", "value", "phone", "number")
    email_keys = ("address", "value", "email")
    phones: List[Dict[str, Any]] = []
    emails: List[Dict[str, Any]] = []
    for key in CONTACT_FIELDS["phones"]:
        phones.extend(e for e in _contact_addresses(record.get(key), phone_keys) if "@" not in e["address"])
    for key in CONTACT_FIELDS["emails"]:
        emails.extend(e for e in _contact_addresses(record.get(key), email_keys) if "@" in e["address"])
    phones = _dedupe_by_address(phones)
    emails = _dedupe_by_address(emails)

    first_name = pick(record, CONTACT_FIELDS["firstName"])
    last_name = pick(record, CONTACT_FIELDS["lastName"])
    display_name = (
        to_str(pick(record, CONTACT_FIELDS["displayName"]))
        or " ".join(part for part in (first_name, last_name) if part).strip()
        or (phones[0]["address"] if phones else "")
        or "Unknown"
    )
    return {
        "phoneNumbers": phones,
        "emails": emails,
        "firstName": first_name,
        "lastName": last_name,
        "displayName": display_name,
        "nickname": pick(record, CONTACT_FIELDS["nickname"]),
        "birthday": pick(record, CONTACT_FIELDS["birthday"]),
        "avatar": to_str(pick(record, CONTACT_FIELDS["avatar"])) if include_avatar else "",
        "sourceType": to_str(pick(record, CONTACT_FIELDS["sourceType"]), "api"),
        "id": pick(record, CONTACT_FIELDS["id"]),
    }
