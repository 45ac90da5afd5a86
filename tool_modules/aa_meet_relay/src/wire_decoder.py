"""
Schema-driven decoder for the meeting side-channel wire format.

Decodes tagged, length-delimited protobuf records into plain dicts using
the schema table in wire_schema. Unknown field numbers are skipped by
consuming exactly the length their wire type implies, so the decoder keeps
working as the meeting client adds fields.
"""

import logging
from typing import Any, Optional, Union

from tool_modules.aa_meet_relay.src.wire_schema import (
    MESSAGE_SCHEMAS,
    WIRE_TYPES,
    FieldType,
    MessageSchema,
)

logger = logging.getLogger(__name__)

DecodedRecord = dict[str, Any]

# Protobuf wire types
WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH_DELIMITED = 2
WIRE_START_GROUP = 3
WIRE_END_GROUP = 4
WIRE_FIXED32 = 5

MAX_VARINT_BYTES = 10


class WireFormatError(ValueError):
    """Raised when the byte cursor cannot satisfy a read."""


class ByteReader:
    """Forward-only cursor over a protobuf-encoded buffer."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        self.buf = bytes(data)
        self.pos = 0
        self.len = len(self.buf)

    def _need(self, count: int) -> None:
        if self.pos + count > self.len:
            raise WireFormatError(f"Read of {count} bytes at offset {self.pos} overruns buffer of {self.len}")

    def varint(self) -> int:
        """Read a raw unsigned varint (up to 64 bits)."""
        result = 0
        shift = 0
        for _ in range(MAX_VARINT_BYTES):
            self._need(1)
            byte = self.buf[self.pos]
            self.pos += 1
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result & 0xFFFFFFFFFFFFFFFF
            shift += 7
        raise WireFormatError(f"Varint longer than {MAX_VARINT_BYTES} bytes at offset {self.pos}")

    def uint32(self) -> int:
        return self.varint() & 0xFFFFFFFF

    def int64(self) -> int:
        value = self.varint()
        if value & (1 << 63):
            value -= 1 << 64
        return value

    def read_bytes(self) -> bytes:
        length = self.uint32()
        self._need(length)
        start = self.pos
        self.pos += length
        return self.buf[start : self.pos]

    def string(self) -> str:
        return self.read_bytes().decode("utf-8", errors="replace")

    def skip(self, count: int) -> None:
        self._need(count)
        self.pos += count

    def skip_type(self, wire_type: int) -> None:
        """Skip one value of the given wire type."""
        if wire_type == WIRE_VARINT:
            self.varint()
        elif wire_type == WIRE_FIXED64:
            self.skip(8)
        elif wire_type == WIRE_LENGTH_DELIMITED:
            self.skip(self.uint32())
        elif wire_type == WIRE_START_GROUP:
            while True:
                tag = self.uint32()
                inner = tag & 7
                if inner == WIRE_END_GROUP:
                    break
                self.skip_type(inner)
        elif wire_type == WIRE_FIXED32:
            self.skip(4)
        else:
            raise WireFormatError(f"Invalid wire type {wire_type} at offset {self.pos}")


class WireDecoder:
    """Decodes named messages against a schema table.

    Decoding is a pure function of the table and the input bytes. Nested
    messages recurse through the decoder registered for the nested name.
    """

    def __init__(self, schemas: Optional[dict[str, MessageSchema]] = None):
        self._schemas = schemas if schemas is not None else MESSAGE_SCHEMAS

    def has_schema(self, name: str) -> bool:
        return name in self._schemas

    def decode(
        self,
        schema_name: str,
        data: Union[bytes, bytearray, memoryview, ByteReader],
        length: Optional[int] = None,
    ) -> DecodedRecord:
        """
        Decode one message.

        Args:
            schema_name: Registered message name (e.g. "CollectionEvent")
            data: Raw bytes, or a ByteReader positioned at the message start
            length: Number of bytes belonging to this message (default: rest of buffer)

        Returns:
            Mapping of field name to value. Absent fields are missing keys.

        Raises:
            KeyError: if schema_name is not registered
            WireFormatError: if the buffer is truncated
        """
        schema = self._schemas[schema_name]
        reader = data if isinstance(data, ByteReader) else ByteReader(data)
        end = reader.len if length is None else reader.pos + length
        if end > reader.len:
            raise WireFormatError(f"Message '{schema_name}' of {length} bytes overruns buffer")
        return self._decode_message(schema, reader, end)

    def _decode_message(self, schema: MessageSchema, reader: ByteReader, end: int) -> DecodedRecord:
        record: DecodedRecord = {}

        while reader.pos < end:
            tag = reader.uint32()
            number = tag >> 3
            wire_type = tag & 7

            field = schema.field_for(number)
            if field is None or WIRE_TYPES[field.type] != wire_type:
                reader.skip_type(wire_type)
                continue

            if field.type is FieldType.STRING:
                value: Any = reader.string()
            elif field.type is FieldType.VARINT:
                value = reader.uint32()
            elif field.type is FieldType.INT64:
                value = reader.int64()
            else:
                value = self.decode(field.message_type, reader, reader.uint32())

            if field.repeated:
                record.setdefault(field.name, []).append(value)
            else:
                record[field.name] = value

        if reader.pos > end:
            raise WireFormatError(f"Field in '{schema.name}' runs past the end of the message")
        return record


# Global decoder instance
_decoder: Optional[WireDecoder] = None


def get_decoder() -> WireDecoder:
    """Get the decoder for the built-in meeting schemas."""
    global _decoder
    if _decoder is None:
        _decoder = WireDecoder()
    return _decoder
