"""
Meeting session context.

One MeetingSession is created per meeting attachment. It owns one of each
relay component and is the only place inbound host events are interpreted:

- Side-channel messages by label: collections (zlib-compressed
  CollectionEvent), captions (CaptionWrapper), media-director (logged only)
- Network responses from the collections sync endpoint (base64
  UserInfoListResponse, a full roster snapshot)
- Remote tracks being added and ending
- Raw video frames and audio samples produced by the host's capture

Host callbacks can post events onto the session queue; run() consumes them
one at a time in arrival order so no two updates to the same map overlap.
"""

import asyncio
import base64
import logging
import time
import zlib
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from tool_modules.aa_meet_relay.src.capabilities import AudioSource, EncoderFactory, HostSurface
from tool_modules.aa_meet_relay.src.captions import Caption, CaptionRelay
from tool_modules.aa_meet_relay.src.composition import AudioSourceRegistry, CompositionPipeline
from tool_modules.aa_meet_relay.src.config import MeetRelayConfig, get_config
from tool_modules.aa_meet_relay.src.device_outputs import DeviceOutput, DeviceOutputTracker, OutputKind
from tool_modules.aa_meet_relay.src.frames import BytesLike
from tool_modules.aa_meet_relay.src.roster import RosterDelta, RosterSynchronizer, UserRecord
from tool_modules.aa_meet_relay.src.transport import TransportChannel
from tool_modules.aa_meet_relay.src.video_feeds import VideoFeedSelector
from tool_modules.aa_meet_relay.src.wire_decoder import DecodedRecord, WireDecoder, get_decoder

logger = logging.getLogger(__name__)

# Payload problems that mean "this one message is garbage", never fatal.
# Bad base64, WireFormatError and UnicodeDecodeError are all ValueErrors.
MALFORMED_PAYLOAD_ERRORS = (zlib.error, ValueError)


# ==================== Events ====================


@dataclass
class DataChannelMessage:
    label: str
    data: bytes


@dataclass
class NetworkResponse:
    url: str
    body: Union[str, bytes]


@dataclass
class TrackAdded:
    kind: str  # "audio" or "video"
    track_id: str
    track: Any
    stream_ids: tuple[str, ...] = ()


@dataclass
class TrackEnded:
    track_id: str


SessionEvent = Union[DataChannelMessage, NetworkResponse, TrackAdded, TrackEnded]


class MeetingSession:
    """Wires the relay components together for one meeting.

    Args:
        host: Page rendering surface used by the composition pipeline
        encoder_factory: Builds the media encoder for each capture
        config: Relay configuration (default: global config)
        transport: Pre-built transport (default: one built from config)
        decoder: Wire decoder (default: the built-in meeting schemas)
        clock: Monotonic time source for track recency and media timestamps
    """

    def __init__(
        self,
        host: HostSurface,
        encoder_factory: EncoderFactory,
        config: Optional[MeetRelayConfig] = None,
        transport: Optional[TransportChannel] = None,
        decoder: Optional[WireDecoder] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self.decoder = decoder or get_decoder()

        self.transport = transport or TransportChannel(self.config.transport)
        self.device_outputs = DeviceOutputTracker(on_snapshot=self._send_device_outputs)
        self.roster = RosterSynchronizer(on_delta=self._send_roster_delta)
        self.video_feeds = VideoFeedSelector(clock=clock)
        self.captions = CaptionRelay(self.transport)
        self.audio_sources = AudioSourceRegistry()
        self.pipeline = CompositionPipeline(
            host,
            encoder_factory,
            self.audio_sources,
            chunk_sink=self.transport.send_encoded_chunk,
            config=self.config.composition,
            clock=clock,
        )

        self.transport.pipeline = self.pipeline
        self.transport.active_feed_probe = self.current_video_stream_is_active
        self.transport.on_control = self.on_control

        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._started = False

    # ==================== Lifecycle ====================

    async def start(self) -> bool:
        """Connect to the collector and start consuming events. Idempotent."""
        if self._started:
            return True
        connected = await self.transport.connect()
        if not connected:
            return False
        self._consumer = asyncio.get_running_loop().create_task(self.run())
        self._started = True
        logger.info("Meeting session started")
        return True

    async def stop(self) -> None:
        """Disable media, close the collector connection and stop consuming. Idempotent."""
        self.transport.disable_media_sending()
        # The encoder's final chunk is still queued
        await self.transport.drain()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        await self.transport.close()
        if self._started:
            logger.info("Meeting session stopped")
        self._started = False

    def enable_media_sending(self) -> None:
        self.transport.enable_media_sending()

    def disable_media_sending(self) -> None:
        self.transport.disable_media_sending()

    def on_control(self, payload: Any) -> None:
        # The collector sends nothing actionable yet; transport already logs it
        logger.debug(f"Control message from collector not handled: {payload}")

    # ==================== Event queue ====================

    def post(self, event: SessionEvent) -> None:
        """Queue an event for run(). Safe to call from any host callback."""
        self._events.put_nowait(event)

    async def run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                self.dispatch(event)
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}")
            finally:
                self._events.task_done()

    async def drain(self) -> None:
        """Wait until every posted event has been handled."""
        await self._events.join()

    def dispatch(self, event: SessionEvent) -> None:
        if isinstance(event, DataChannelMessage):
            self.on_data_channel_message(event.label, event.data)
        elif isinstance(event, NetworkResponse):
            self.on_network_response(event.url, event.body)
        elif isinstance(event, TrackAdded):
            self.on_track(event.kind, event.track_id, event.track, event.stream_ids)
        elif isinstance(event, TrackEnded):
            self.on_track_ended(event.track_id)
        else:
            logger.warning(f"Unknown session event: {type(event).__name__}")

    # ==================== Side channels ====================

    def on_data_channel_message(self, label: str, data: bytes) -> None:
        capture = self.config.capture
        if label == capture.collections_channel:
            self._handle_collection_event(data)
        elif label == capture.captions_channel:
            self._handle_caption_event(data)
        elif label == capture.media_director_channel:
            logger.debug(f"Media director message: {base64.b64encode(data).decode('ascii')}")
        else:
            logger.debug(f"Ignoring message on data channel '{label}'")

    def _handle_collection_event(self, data: bytes) -> None:
        try:
            event = self.decoder.decode("CollectionEvent", zlib.decompress(data))
        except MALFORMED_PAYLOAD_ERRORS as e:
            logger.warning(f"Malformed collection event ({len(data)} bytes): {e}")
            return

        wrapper = event.get("body", {}).get("userInfoListWrapperAndChatWrapperWrapper", {})

        device_outputs = wrapper.get("deviceInfoWrapper", {}).get("deviceOutputInfoList")
        if device_outputs:
            self.device_outputs.update_device_outputs(device_outputs)

        user_and_chat = wrapper.get("userInfoListWrapperAndChatWrapper", {})
        for chat in user_and_chat.get("chatMessageWrapper", []):
            self._log_chat_message(chat.get("chatMessage", {}))

        users = user_and_chat.get("userInfoListWrapper", {}).get("userInfoList")
        if users:
            self.roster.sync_incremental(users)

        if device_outputs or users:
            self._refresh_screen_share_flags()

    @staticmethod
    def _log_chat_message(chat: DecodedRecord) -> None:
        text = chat.get("chatMessageContent", {}).get("text", "")
        logger.debug(f"Chat message {chat.get('messageId')} from {chat.get('deviceId')}: {text[:60]}")

    def _handle_caption_event(self, data: bytes) -> None:
        try:
            wrapper = self.decoder.decode("CaptionWrapper", data)
        except MALFORMED_PAYLOAD_ERRORS as e:
            logger.warning(f"Malformed caption event ({len(data)} bytes): {e}")
            return
        raw = wrapper.get("caption")
        if raw is None:
            logger.debug("Caption event without a caption")
            return
        self.captions.sync(Caption.from_wire(raw))

    # ==================== Network responses ====================

    def on_network_response(self, url: str, body: Union[str, bytes]) -> None:
        if not url.startswith(self.config.capture.sync_collections_url):
            return
        try:
            response = self.decoder.decode("UserInfoListResponse", base64.b64decode(body))
        except MALFORMED_PAYLOAD_ERRORS as e:
            logger.warning(f"Malformed roster sync response: {e}")
            return

        users = (
            response.get("userInfoListWrapperWrapper", {}).get("userInfoListWrapper", {}).get("userInfoList", [])
        )
        if not users:
            return
        self.roster.sync_full(users)
        self._refresh_screen_share_flags()

    # ==================== Tracks ====================

    def on_track(self, kind: str, track_id: str, track: Any, stream_ids: tuple[str, ...] = ()) -> None:
        if kind == "audio":
            if not isinstance(track, AudioSource):
                logger.warning(f"Audio track {track_id} cannot produce samples, not mixed")
                return
            self.audio_sources.add(track)
        elif kind == "video":
            stream_id = stream_ids[0] if stream_ids else None
            self.video_feeds.upsert(track_id, stream_id, self._is_screen_share_stream(stream_id), track=track)
        else:
            logger.debug(f"Ignoring {kind} track {track_id}")

    def on_track_ended(self, track_id: str) -> None:
        self.video_feeds.remove(track_id)

    def _is_screen_share_stream(self, stream_id: Optional[str]) -> bool:
        output = self.device_outputs.find_by_stream(stream_id)
        if output is None:
            return False
        user = self.roster.get_user_by_device_id(output.device_id)
        return user is not None and user.is_screen_share

    def _refresh_screen_share_flags(self) -> None:
        """Re-classify known video tracks after device or roster changes."""
        for record in self.video_feeds.tracks():
            is_screen_share = self._is_screen_share_stream(record.stream_id)
            if is_screen_share != record.is_screen_share:
                self.video_feeds.upsert(record.track_id, record.stream_id, is_screen_share)

    # ==================== Raw media ====================

    def on_video_frame(self, track_id: str, timestamp: int, width: int, height: int, pixels: BytesLike) -> bool:
        """Forward a raw frame if it belongs to the selected feed."""
        selected = self.video_feeds.selected()
        if selected is None or selected.track_id != track_id:
            return False
        return self.transport.send_video_frame(timestamp, selected.stream_id or "", width, height, pixels)

    def on_audio_samples(self, timestamp: int, stream_id: int, samples: BytesLike) -> bool:
        return self.transport.send_audio_sample(timestamp, stream_id, samples)

    def current_video_stream_is_active(self) -> bool:
        return self.device_outputs.is_stream_active(self.video_feeds.selected_stream_id())

    # ==================== Outbound state ====================

    def _send_device_outputs(self, outputs: list[DeviceOutput]) -> None:
        self.transport.send_control(
            {"type": "DeviceOutputsUpdate", "deviceOutputs": [o.to_dict() for o in outputs]}
        )

    def _send_roster_delta(self, delta: RosterDelta) -> None:
        self.transport.send_control(delta.to_message())

    # ==================== Accessors ====================

    def get_user_by_device_id(self, device_id: str) -> Optional[UserRecord]:
        return self.roster.get_user_by_device_id(device_id)

    def users_in_meeting(self) -> list[UserRecord]:
        return self.roster.users_in_meeting()

    def screen_sharing_users(self) -> list[UserRecord]:
        return self.roster.screen_sharing_users()

    def get_device_output(self, device_id: str, kind: OutputKind) -> Optional[DeviceOutput]:
        return self.device_outputs.get(device_id, kind)

    def get_status(self) -> dict[str, Any]:
        selected = self.video_feeds.selected()
        capture = self.pipeline.session
        return {
            "connected": self.transport.is_open,
            "media_sending_enabled": self.transport.media_sending_enabled,
            "pipeline_state": self.pipeline.state.value,
            "users": len(self.roster),
            "users_in_meeting": len(self.roster.users_in_meeting()),
            "device_outputs": len(self.device_outputs),
            "video_tracks": len(self.video_feeds),
            "selected_track": selected.track_id if selected else None,
            "audio_sources": len(self.audio_sources),
            "captions": len(self.captions),
            "chunks_emitted": capture.chunks_emitted if capture else 0,
            "dropped_media_frames": self.transport.dropped_media_frames,
        }
