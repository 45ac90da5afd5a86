"""
Collector transport.

One websocket connection to the collector process carries every outbound
frame (see frames.py). Send operations are synchronous: they encode the
frame and queue it; a writer task drains the queue in order. Media frames
are dropped when the queue is backed up; control frames never are.

Media (raw video, raw audio, encoded chunks, captions) only flows while
media sending is enabled. While enabled, a filler timer keeps the raw
video stream continuous: when no real frame has been sent for a while it
repeats the last real frame, or sends a black placeholder if the active
feed's device output is disabled.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

import websockets
from websockets.protocol import State

from tool_modules.aa_meet_relay.src.config import TransportConfig
from tool_modules.aa_meet_relay.src.frames import (
    BytesLike,
    FrameFormatError,
    MessageType,
    decode_frame,
    encode_audio,
    encode_control,
    encode_encoded_chunk,
    encode_video,
    make_black_i420,
)

if TYPE_CHECKING:
    from tool_modules.aa_meet_relay.src.composition import CompositionPipeline

logger = logging.getLogger(__name__)


@dataclass
class VideoFrame:
    """A raw frame kept around for filler repeats."""

    width: int
    height: int
    data: BytesLike


class TransportChannel:
    """Duplex frame channel to the collector.

    Attributes:
        pipeline: Composition pipeline started/stopped with media sending
        active_feed_probe: Returns whether the selected feed's device output is enabled
        on_control: Receives parsed inbound control messages
    """

    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        pipeline: Optional["CompositionPipeline"] = None,
        active_feed_probe: Optional[Callable[[], bool]] = None,
        on_control: Optional[Callable[[Any], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or TransportConfig()
        self.pipeline = pipeline
        self.active_feed_probe = active_feed_probe
        self.on_control = on_control
        self._clock = clock

        self._ws = None
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self.dropped_media_frames = 0
        self.closed_drops = 0

        self.media_sending_enabled = False
        self._filler_task: Optional[asyncio.Task] = None
        self._black_frame = VideoFrame(
            self.config.filler_width,
            self.config.filler_height,
            make_black_i420(self.config.filler_width, self.config.filler_height),
        )
        self._last_video_frame = self._black_frame
        self._last_video_frame_time = self._clock()

    # ==================== Connection ====================

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def connect(self) -> bool:
        """Open the collector connection. Returns True if open afterwards."""
        if self.is_open:
            return True
        url = self.config.url
        try:
            ws = await websockets.connect(url, max_size=None)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.error(f"Failed to connect to collector at {url}: {e}")
            return False
        self.attach(ws)
        logger.info(f"Connected to collector at {url}")
        return True

    def attach(self, ws) -> None:
        """Adopt an already-open websocket and start the reader/writer tasks."""
        self._ws = ws
        loop = asyncio.get_running_loop()
        if self._writer_task is None or self._writer_task.done():
            self._writer_task = loop.create_task(self._writer_loop())
        if self._reader_task is None or self._reader_task.done():
            self._reader_task = loop.create_task(self._reader_loop())

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to the socket."""
        if self._writer_task is None or self._writer_task.done():
            return
        await self._queue.join()

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Flush queued frames, giving up after timeout seconds. Returns True if drained."""
        if timeout is None:
            timeout = self.config.drain_timeout_ms / 1000
        try:
            await asyncio.wait_for(self.flush(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out draining collector queue, {self._queue.qsize()} frame(s) unsent")
            return False
        return True

    async def close(self) -> None:
        """Close the connection. Safe to call repeatedly."""
        for task in (self._reader_task, self._writer_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._writer_task = None

        # Frames never written are discarded with the connection
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Suppressed error closing collector connection: {e}")
            logger.info("Collector connection closed")

    async def _writer_loop(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                if self.is_open:
                    await self._ws.send(frame)
                else:
                    logger.debug(f"Collector connection gone, dropping {len(frame)}-byte frame")
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning(f"Collector connection closed while sending: {e}")
            except Exception as e:
                logger.error(f"Error sending frame to collector: {e}")
            finally:
                self._queue.task_done()

    async def _reader_loop(self) -> None:
        try:
            async for message in self._ws:
                self.handle_message(message)
        except websockets.exceptions.ConnectionClosed:
            pass
        logger.info("Collector disconnected")

    def handle_message(self, message: Any) -> None:
        """Interpret one inbound frame; only control frames are understood."""
        if isinstance(message, str):
            logger.warning("Ignoring text message from collector")
            return
        try:
            frame = decode_frame(message)
        except FrameFormatError as e:
            logger.warning(f"Malformed frame from collector: {e}")
            return

        if frame.type != MessageType.CONTROL:
            logger.warning(f"Unknown message type from collector: {frame.type}")
            return

        try:
            payload = frame.json()
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Invalid JSON in control frame from collector: {e}")
            return

        logger.info(f"Received control message: {payload}")
        if self.on_control:
            self.on_control(payload)

    # ==================== Outbound ====================

    def _enqueue(self, frame: bytes, media: bool) -> bool:
        if media and self._queue.qsize() >= self.config.max_pending_media_frames:
            self.dropped_media_frames += 1
            if self.dropped_media_frames % 100 == 1:
                logger.warning(
                    f"Collector backed up ({self._queue.qsize()} frames queued), "
                    f"{self.dropped_media_frames} media frame(s) dropped so far"
                )
            return False
        self._queue.put_nowait(frame)
        return True

    def _media_allowed(self, what: str) -> bool:
        if not self.is_open:
            self.closed_drops += 1
            if self.closed_drops % 100 == 1:
                logger.warning(
                    f"Collector connection not open, dropping {what} "
                    f"({self.closed_drops} media frame(s) dropped while closed)"
                )
            return False
        return self.media_sending_enabled

    def send_control(self, payload: Any) -> bool:
        """Queue a JSON control message. Not subject to the media gate."""
        if not self.is_open:
            logger.warning(f"Collector connection not open, dropping control message {self._describe(payload)}")
            return False
        try:
            frame = encode_control(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"Error encoding control message {self._describe(payload)}: {e}")
            return False
        return self._enqueue(frame, media=False)

    def send_caption_update(self, caption: dict[str, Any]) -> bool:
        if not self.media_sending_enabled:
            return False
        return self.send_control({"type": "CaptionUpdate", "caption": caption})

    def send_encoded_chunk(self, data: BytesLike) -> bool:
        if not self._media_allowed("encoded chunk"):
            return False
        return self._enqueue(encode_encoded_chunk(data), media=True)

    def send_audio_sample(self, timestamp: int, stream_id: int, samples: BytesLike) -> bool:
        if not self._media_allowed("audio samples"):
            return False
        return self._enqueue(encode_audio(timestamp, stream_id, samples), media=True)

    def send_video_frame(self, timestamp: int, stream_id: str, width: int, height: int, pixels: BytesLike) -> bool:
        if not self._media_allowed("video frame"):
            return False
        self._last_video_frame_time = self._clock()
        self._last_video_frame = VideoFrame(width, height, pixels)
        return self._enqueue(encode_video(timestamp, stream_id, width, height, pixels), media=True)

    @staticmethod
    def _describe(payload: Any) -> str:
        if isinstance(payload, dict) and "type" in payload:
            return f"'{payload['type']}'"
        return f"({type(payload).__name__})"

    # ==================== Media gate and filler frames ====================

    def enable_media_sending(self) -> None:
        self.media_sending_enabled = True
        self.start_filler_timer()
        if self.pipeline is not None:
            self.pipeline.start()
        logger.info("Media sending enabled")

    def disable_media_sending(self) -> None:
        """Reverse enable_media_sending(). Safe to call in any state."""
        # Stop capture first so the encoder's final chunk still passes the gate
        if self.pipeline is not None:
            self.pipeline.stop()
        self.stop_filler_timer()
        if self.media_sending_enabled:
            logger.info("Media sending disabled")
        self.media_sending_enabled = False

    def start_filler_timer(self) -> None:
        if self._filler_task is not None and not self._filler_task.done():
            return
        self._filler_task = asyncio.get_running_loop().create_task(self._filler_loop())

    def stop_filler_timer(self) -> None:
        if self._filler_task is not None:
            self._filler_task.cancel()
            self._filler_task = None

    def current_video_stream_is_active(self) -> bool:
        """Whether the selected feed's device output is enabled.

        When it is not, the cached last frame is reset to black so a later
        feed never starts with a stale frame from a previous one.
        """
        active = bool(self.active_feed_probe()) if self.active_feed_probe else False
        if not active:
            self._last_video_frame = self._black_frame
        return active

    def filler_tick(self) -> bool:
        """Send a filler frame if one is due. Returns True if one was queued."""
        if not self.media_sending_enabled:
            return False
        now = self._clock()
        if (now - self._last_video_frame_time) * 1000 < self.config.filler_gap_ms:
            return False

        frame = self._last_video_frame if self.current_video_stream_is_active() else self._black_frame
        if not self._media_allowed("filler frame"):
            return False
        timestamp_us = int(now * 1000) * 1000
        return self._enqueue(
            encode_video(timestamp_us, self.config.filler_stream_id, frame.width, frame.height, frame.data),
            media=True,
        )

    async def _filler_loop(self) -> None:
        interval = self.config.filler_tick_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                self.filler_tick()
            except Exception as e:
                logger.error(f"Error in filler frame timer: {e}")
