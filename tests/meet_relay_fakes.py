"""Fakes and payload builders shared by the meet relay tests."""

import asyncio
import struct
from typing import Optional

import numpy as np
from websockets.protocol import State

from tool_modules.aa_meet_relay.src.capabilities import Rect


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWebSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, send_delay: float = 0.0):
        self.state = State.OPEN
        self.sent: list[bytes] = []
        self.send_delay = send_delay
        self._inbound: asyncio.Queue = asyncio.Queue()

    async def send(self, data: bytes) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append(data)

    async def close(self) -> None:
        self.state = State.CLOSED
        self._inbound.put_nowait(None)

    def feed(self, message) -> None:
        self._inbound.put_nowait(message)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            message = await self._inbound.get()
            if message is None:
                return
            yield message


class FakeVideoElement:
    def __init__(self, rect: Rect, color: int = 255, paused: bool = False, size: tuple[int, int] = (4, 4)):
        self.rect = rect
        self.paused = paused
        self.video_width, self.video_height = size
        self.color = color
        self.reads = 0

    def read_frame(self) -> Optional[np.ndarray]:
        self.reads += 1
        return np.full((self.video_height, self.video_width, 3), self.color, dtype=np.uint8)


class FakeViewport:
    def __init__(self, rect: Rect):
        self.rect = rect


class FakeMutationWatch:
    def __init__(self):
        self.disconnects = 0

    def disconnect(self) -> None:
        self.disconnects += 1


class FakeHost:
    """Page surface with one viewport and a mutable list of video elements."""

    def __init__(self, viewport: Optional[FakeViewport] = None):
        self.viewport = viewport
        self.elements: list[FakeVideoElement] = []
        self.watches: list[FakeMutationWatch] = []
        self.mutation_callbacks = []
        self.selectors: list[str] = []

    def find_viewport(self, selector: str) -> Optional[FakeViewport]:
        self.selectors.append(selector)
        return self.viewport

    def list_video_elements(self, root) -> list[FakeVideoElement]:
        return list(self.elements)

    def observe_mutations(self, root, callback) -> FakeMutationWatch:
        watch = FakeMutationWatch()
        self.watches.append(watch)
        self.mutation_callbacks.append(callback)
        return watch

    def mutate(self) -> None:
        for callback in self.mutation_callbacks:
            callback()


class FakeEncoder:
    """Records what it is fed; every flush after new input yields one chunk."""

    def __init__(self, width: int, height: int, fps: int, sample_rate: int):
        self.size = (width, height)
        self.fps = fps
        self.sample_rate = sample_rate
        self.started = False
        self.stops = 0
        self.video: list[tuple[np.ndarray, int]] = []
        self.audio: list[tuple[np.ndarray, int]] = []
        self._pending = 0
        self._chunks = 0

    def start(self) -> None:
        self.started = True

    def write_video(self, frame: np.ndarray, timestamp_us: int) -> None:
        self.video.append((frame, timestamp_us))
        self._pending += 1

    def write_audio(self, samples: np.ndarray, timestamp_us: int) -> None:
        self.audio.append((samples, timestamp_us))
        self._pending += 1

    def flush(self) -> bytes:
        if not self._pending:
            return b""
        self._pending = 0
        self._chunks += 1
        return f"chunk-{self._chunks}".encode()

    def stop(self) -> bytes:
        self.stops += 1
        return b"final"


class FakeEncoderFactory:
    def __init__(self):
        self.encoders: list[FakeEncoder] = []

    def __call__(self, width: int, height: int, fps: int, sample_rate: int) -> FakeEncoder:
        encoder = FakeEncoder(width, height, fps, sample_rate)
        self.encoders.append(encoder)
        return encoder


class FakeAudioSource:
    def __init__(self, source_id: str, value: float = 0.25):
        self.source_id = source_id
        self.value = value

    def read_samples(self, count: int) -> Optional[np.ndarray]:
        return np.full(count, self.value, dtype=np.float32)



# ============================================================================
# Protobuf builders for side-channel payloads
# ============================================================================


def enc_varint(value: int) -> bytes:
    value &= (1 << 64) - 1
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def tag(number: int, wire_type: int) -> bytes:
    return enc_varint((number << 3) | wire_type)


def f_varint(number: int, value: int) -> bytes:
    return tag(number, 0) + enc_varint(value)


def f_bytes(number: int, value: bytes) -> bytes:
    return tag(number, 2) + enc_varint(len(value)) + value


def f_string(number: int, value: str) -> bytes:
    return f_bytes(number, value.encode("utf-8"))


def f_fixed64(number: int, value: int) -> bytes:
    return tag(number, 1) + struct.pack("<q", value)


def f_fixed32(number: int, value: int) -> bytes:
    return tag(number, 5) + struct.pack("<i", value)


def user_info(device_id: str, name: str, status: int = 1, parent: Optional[str] = None) -> bytes:
    data = f_string(1, device_id) + f_string(29, name) + f_varint(4, status)
    if parent:
        data += f_string(21, parent)
    return data

