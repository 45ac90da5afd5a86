"""
Collector wire frames.

Every frame starts with a little-endian int32 message type:

    1 CONTROL        type + UTF-8 JSON
    2 VIDEO          type + int64 ts + int32 len + stream id + int32 w + int32 h + pixels
    3 AUDIO          type + int64 ts + int32 stream id + samples
    4 ENCODED_CHUNK  type + encoded media bytes
"""

import json
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Union

import numpy as np

BytesLike = Union[bytes, bytearray, memoryview, np.ndarray]

_TYPE = struct.Struct("<i")
_AUDIO_HEADER = struct.Struct("<iqi")
_VIDEO_PREFIX = struct.Struct("<iqi")
_VIDEO_SIZE = struct.Struct("<ii")


class MessageType(IntEnum):
    CONTROL = 1
    VIDEO = 2
    AUDIO = 3
    ENCODED_CHUNK = 4


class FrameFormatError(ValueError):
    """Raised when an inbound frame is too short to carry its envelope."""


@dataclass
class InboundFrame:
    """A frame received from the collector."""

    type: int
    payload: bytes

    def json(self) -> Any:
        return json.loads(self.payload.decode("utf-8"))


def _raw(data: BytesLike) -> bytes:
    if isinstance(data, np.ndarray):
        return np.ascontiguousarray(data).tobytes()
    return bytes(data)


def encode_control(payload: Any) -> bytes:
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return _TYPE.pack(MessageType.CONTROL) + body


def encode_video(timestamp: int, stream_id: str, width: int, height: int, pixels: BytesLike) -> bytes:
    stream_bytes = stream_id.encode("utf-8")
    return b"".join(
        (
            _VIDEO_PREFIX.pack(MessageType.VIDEO, timestamp, len(stream_bytes)),
            stream_bytes,
            _VIDEO_SIZE.pack(width, height),
            _raw(pixels),
        )
    )


def encode_audio(timestamp: int, stream_id: int, samples: BytesLike) -> bytes:
    return _AUDIO_HEADER.pack(MessageType.AUDIO, timestamp, stream_id) + _raw(samples)


def encode_encoded_chunk(data: BytesLike) -> bytes:
    return _TYPE.pack(MessageType.ENCODED_CHUNK) + _raw(data)


def decode_frame(data: Union[bytes, bytearray, memoryview]) -> InboundFrame:
    """Split an inbound frame into its type and payload."""
    if len(data) < _TYPE.size:
        raise FrameFormatError(f"Frame of {len(data)} bytes is shorter than its type header")
    (message_type,) = _TYPE.unpack_from(data, 0)
    return InboundFrame(type=message_type, payload=bytes(data[_TYPE.size :]))


def make_black_i420(width: int, height: int) -> bytes:
    """An all-black I420 frame: Y plane 0, chroma planes 128."""
    luma = width * height
    frame = np.full(luma + 2 * (luma // 4), 128, dtype=np.uint8)
    frame[:luma] = 0
    return frame.tobytes()
