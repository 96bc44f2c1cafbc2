import copy
import unittest

from bluebridge.dates import APPLE_EPOCH_OFFSET_MS, NS_PER_MS
from bluebridge.envelope import SEND_ERROR_CODE
from bluebridge.serializers import (
    display_identifier,
    failed_send_message,
    shape_chat,
    shape_contact,
    shape_message,
    to_number,
    wants_avatar,
)

CHAT_KEYS = {
    "originalROWID", "guid", "participants", "messages", "lastMessage", "properties",
    "style", "chatIdentifier", "isArchived", "displayName", "groupId",
}
MESSAGE_KEYS = {
    "originalROWID", "guid", "text", "handle", "handleId", "otherHandle", "chats",
    "attachments", "subject", "error", "dateCreated", "dateRead", "dateDelivered",
    "isFromMe", "isArchived", "itemType", "groupTitle", "groupActionType",
    "balloonBundleId", "associatedMessageGuid", "associatedMessageType", "chatGuid",
}


def upstream(millis):
    return (millis - APPLE_EPOCH_OFFSET_MS) * NS_PER_MS


class ShapeChatTests(unittest.TestCase):
    def test_total_on_garbage_input(self):
        for raw in ({}, None, [], "chat", 7):
            with self.subTest(raw=raw):
                chat = shape_chat(raw)
                self.assertEqual(set(chat), CHAT_KEYS)
                self.assertEqual(chat["participants"], [])
                self.assertIsNone(chat["lastMessage"])
                self.assertFalse(chat["isArchived"])

    def test_display_name_never_contains_address_separator(self):
        chat = shape_chat({"guid": "SMS;-;+15551234567"})
        self.assertEqual(chat["displayName"], "+15551234567")
        self.assertEqual(chat["chatIdentifier"], "+15551234567")
        named = shape_chat({"guid": "SMS;-;+1555", "display_name": "iMessage;-;foo@example.com"})
        self.assertEqual(named["displayName"], "foo@example.com")

    def test_renamed_fields_and_last_message(self):
        chat = shape_chat({
            "chat_guid": "iMessage;+;chat1",
            "display_name": "Climbing",
            "handles": ["+15550000001", {"id": "a@example.com", "service": "iMessage"}, {}],
            "last_message_text": "see you",
            "last_message_date": upstream(1_700_000_000_000),
            "is_archived": 1,
            "ROWID": "12",
        })
        self.assertEqual(chat["guid"], "iMessage;+;chat1")
        self.assertEqual(chat["displayName"], "Climbing")
        self.assertEqual([h["address"] for h in chat["participants"]], ["+15550000001", "a@example.com"])
        self.assertEqual(chat["lastMessage"]["text"], "see you")
        self.assertEqual(chat["lastMessage"]["dateCreated"], 1_700_000_000_000)
        self.assertTrue(chat["isArchived"])
        self.assertEqual(chat["originalROWID"], 12)

    def test_separator_helper(self):
        self.assertEqual(display_identifier("SMS;-; +1555 "), "+1555")
        self.assertEqual(display_identifier("iMessage;+;chat99"), "chat99")
        self.assertEqual(display_identifier(None), "")


class ShapeMessageTests(unittest.TestCase):
    def test_total_and_pure(self):
        raw = {
            "guid": "m1",
            "text": "hi",
            "date": upstream(1_700_000_000_000),
            "is_from_me": 0,
            "attachments": [{"guid": "a1", "mime_type": "image/png", "total_bytes": "12"}, {"mime_type": "x"}],
        }
        before = copy.deepcopy(raw)
        first = shape_message(raw, "SMS;-;+1555")
        second = shape_message(raw, "SMS;-;+1555")
        self.assertEqual(first, second)
        self.assertEqual(raw, before)
        self.assertEqual(set(first), MESSAGE_KEYS)
        self.assertEqual(first["dateCreated"], 1_700_000_000_000)
        self.assertEqual(first["chatGuid"], "SMS;-;+1555")
        self.assertNotIn("tempGuid", first)
        self.assertEqual(len(first["attachments"]), 1)
        self.assertEqual(first["attachments"][0]["totalBytes"], 12)

    def test_missing_dates_have_typed_defaults(self):
        message = shape_message({})
        self.assertEqual(message["dateCreated"], 0)
        self.assertIsNone(message["dateRead"])
        self.assertIsNone(message["dateDelivered"])
        self.assertIsNone(message["guid"])
        self.assertEqual(message["error"], 0)

    def test_numeric_strings_coerce(self):
        message = shape_message({"ROWID": "7", "error": "3", "item_type": "1.0"})
        self.assertEqual(message["originalROWID"], 7)
        self.assertEqual(message["error"], 3)
        self.assertEqual(message["itemType"], 1)

    def test_temp_guid_is_echoed_when_known(self):
        self.assertEqual(shape_message({"guid": "m1"}, temp_guid="t1")["tempGuid"], "t1")
        self.assertEqual(shape_message({"guid": "m1", "temp_guid": "t2"})["tempGuid"], "t2")

    def test_failed_send_record(self):
        message = failed_send_message("SMS;-;+1555", "t1", "hello", 1_700_000_000_000)
        self.assertEqual(message["error"], SEND_ERROR_CODE)
        self.assertTrue(message["isFromMe"])
        self.assertEqual(message["tempGuid"], "t1")
        self.assertEqual(message["chatGuid"], "SMS;-;+1555")
        self.assertEqual(message["dateCreated"], 1_700_000_000_000)


class ShapeContactTests(unittest.TestCase):
    def test_display_name_fallbacks(self):
        self.assertEqual(shape_contact({"displayName": "Ada"})["displayName"], "Ada")
        self.assertEqual(shape_contact({"first_name": "Ada", "last_name": "L"})["displayName"], "Ada L")
        self.assertEqual(shape_contact({"phones": ["+1555"]})["displayName"], "+1555")
        self.assertEqual(shape_contact({})["displayName"], "Unknown")

    def test_addresses_split_and_dedupe(self):
        contact = shape_contact({
            "identifier": "c1",
            "addresses": ["+1555", "ada@example.com"],
            "phones": [{"value": "+1555", "id": "p1"}],
        })
        self.assertEqual([p["address"] for p in contact["phoneNumbers"]], ["+1555"])
        self.assertEqual(contact["phoneNumbers"][0]["id"], "p1")
        self.assertEqual([e["address"] for e in contact["emails"]], ["ada@example.com"])
        self.assertEqual(contact["id"], "c1")
        self.assertEqual(contact["sourceType"], "api")

    def test_avatar_only_on_request(self):
        raw = {"displayName": "Ada", "avatar": "b64"}
        self.assertEqual(shape_contact(raw)["avatar"], "")
        self.assertEqual(shape_contact(raw, include_avatar=True)["avatar"], "b64")
        self.assertTrue(wants_avatar(["contactImage"]))
        self.assertFalse(wants_avatar(["nickname"]))


class ToNumberTests(unittest.TestCase):
    def test_coercion(self):
        self.assertEqual(to_number("42"), 42)
        self.assertEqual(to_number("2.5"), 2.5)
        self.assertEqual(to_number("nope", None), None)
        self.assertEqual(to_number(True, -1), -1)
        self.assertEqual(to_number(float("nan"), -1), -1)


if __name__ == "__main__":
    unittest.main()
