"""
Meeting side-channel wire schemas.

The meeting client's side channels carry protobuf-encoded messages whose
definitions are not published. The tables below are reverse engineered:
field numbers that are not listed are skipped by the decoder, so new
fields can be described here without touching decode logic.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional


class FieldType(str, Enum):
    """Semantic type of a schema field."""

    STRING = "string"
    VARINT = "varint"  # unsigned 32-bit
    INT64 = "int64"  # signed 64-bit
    MESSAGE = "message"


# Protobuf wire type each semantic type is expected to arrive with
WIRE_TYPES = {
    FieldType.STRING: 2,
    FieldType.VARINT: 0,
    FieldType.INT64: 0,
    FieldType.MESSAGE: 2,
}


@dataclass(frozen=True)
class FieldSchema:
    """One field of a message schema."""

    name: str
    number: int
    type: FieldType
    message_type: Optional[str] = None
    repeated: bool = False

    def __post_init__(self):
        if self.type is FieldType.MESSAGE and not self.message_type:
            raise ValueError(f"Field '{self.name}' is a nested message but names no message type")


@dataclass(frozen=True)
class MessageSchema:
    """An immutable, ordered set of fields with unique field numbers."""

    name: str
    fields: tuple[FieldSchema, ...]
    _by_number: dict[int, FieldSchema] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        by_number: dict[int, FieldSchema] = {}
        for f in self.fields:
            if f.number in by_number:
                raise ValueError(f"Duplicate field number {f.number} in message '{self.name}'")
            by_number[f.number] = f
        object.__setattr__(self, "_by_number", by_number)

    def field_for(self, number: int) -> Optional[FieldSchema]:
        return self._by_number.get(number)


def message(name: str, *fields: FieldSchema) -> MessageSchema:
    return MessageSchema(name=name, fields=tuple(fields))


def string(name: str, number: int) -> FieldSchema:
    return FieldSchema(name, number, FieldType.STRING)


def varint(name: str, number: int) -> FieldSchema:
    return FieldSchema(name, number, FieldType.VARINT)


def int64(name: str, number: int) -> FieldSchema:
    return FieldSchema(name, number, FieldType.INT64)


def nested(name: str, number: int, message_type: str, repeated: bool = False) -> FieldSchema:
    return FieldSchema(name, number, FieldType.MESSAGE, message_type=message_type, repeated=repeated)


def build_schema_table(schemas: Iterable[MessageSchema]) -> dict[str, MessageSchema]:
    """Index schemas by name and check that nested references resolve.

    Raises:
        ValueError: on duplicate message names or dangling nested message types
    """
    table: dict[str, MessageSchema] = {}
    for schema in schemas:
        if schema.name in table:
            raise ValueError(f"Duplicate message schema '{schema.name}'")
        table[schema.name] = schema

    for schema in table.values():
        for f in schema.fields:
            if f.type is FieldType.MESSAGE and f.message_type not in table:
                raise ValueError(f"Field '{schema.name}.{f.name}' references unknown message '{f.message_type}'")
    return table


# ==================== Meeting message definitions ====================

MESSAGE_SCHEMAS: dict[str, MessageSchema] = build_schema_table(
    [
        # Collection side-channel events (zlib compressed on the wire)
        message("CollectionEvent", nested("body", 1, "CollectionEventBody")),
        message(
            "CollectionEventBody",
            nested("userInfoListWrapperAndChatWrapperWrapper", 2, "UserInfoListWrapperAndChatWrapperWrapper"),
        ),
        message(
            "UserInfoListWrapperAndChatWrapperWrapper",
            nested("deviceInfoWrapper", 3, "DeviceInfoWrapper"),
            nested("userInfoListWrapperAndChatWrapper", 13, "UserInfoListWrapperAndChatWrapper"),
        ),
        message(
            "UserInfoListWrapperAndChatWrapper",
            nested("userInfoListWrapper", 1, "UserInfoListWrapper"),
            nested("chatMessageWrapper", 4, "ChatMessageWrapper", repeated=True),
        ),
        message(
            "DeviceInfoWrapper",
            nested("deviceOutputInfoList", 2, "DeviceOutputInfoList", repeated=True),
        ),
        message(
            "DeviceOutputInfoList",
            varint("deviceOutputType", 2),  # 1 = audio, 2 = video
            string("streamId", 4),
            string("deviceId", 6),
            nested("deviceOutputStatus", 10, "DeviceOutputStatus"),
        ),
        message("DeviceOutputStatus", varint("disabled", 1)),
        # Bulk roster response from the collections sync endpoint (base64 body)
        message("UserInfoListResponse", nested("userInfoListWrapperWrapper", 2, "UserInfoListWrapperWrapper")),
        message("UserInfoListWrapperWrapper", nested("userInfoListWrapper", 2, "UserInfoListWrapper")),
        message("UserEventInfo", varint("eventNumber", 1)),
        message(
            "UserInfoListWrapper",
            nested("userEventInfo", 1, "UserEventInfo"),
            nested("userInfoList", 2, "UserInfoList", repeated=True),
        ),
        message(
            "UserInfoList",
            string("deviceId", 1),
            string("fullName", 2),
            string("profilePicture", 3),
            varint("status", 4),
            string("displayName", 29),
            # Present only on screen-share sub-devices; names the sharing device
            string("parentDeviceId", 21),
        ),
        # Caption side channel
        message("CaptionWrapper", nested("caption", 1, "Caption")),
        message(
            "Caption",
            string("deviceId", 1),
            int64("captionId", 2),
            int64("version", 3),
            string("text", 6),
            int64("languageId", 8),
        ),
        # Chat messages ride along in collection events
        message("ChatMessageWrapper", nested("chatMessage", 2, "ChatMessage")),
        message(
            "ChatMessage",
            string("messageId", 1),
            string("deviceId", 2),
            int64("timestamp", 3),
            nested("chatMessageContent", 5, "ChatMessageContent"),
        ),
        message("ChatMessageContent", string("text", 1)),
    ]
)
