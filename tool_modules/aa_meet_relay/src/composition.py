"""
Meeting media composition.

Composites every visible video element of the meeting viewport onto one
canvas, mixes all remote audio tracks into one mono stream, and feeds both
to an encoder whose output is forwarded in fixed-cadence chunks.

Loops while capturing (all on the session's event loop):
- draw loop at the configured frame rate
- audio mix loop, one block per audio_block_ms
- chunk loop, one encoder flush per chunk_interval_ms

The tracked video elements are refreshed when the host reports a subtree
mutation under the viewport, not on every frame.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import cv2
import numpy as np

from tool_modules.aa_meet_relay.src.capabilities import (
    AudioSource,
    EncoderFactory,
    HostSurface,
    MediaEncoder,
    MutationWatch,
    Rect,
    VideoElement,
    Viewport,
)
from tool_modules.aa_meet_relay.src.config import CompositionConfig

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"


class CompositingSurface:
    """A BGR canvas the size of the meeting viewport."""

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.frame: Optional[np.ndarray] = np.zeros((height, width, 3), dtype=np.uint8)

    @property
    def released(self) -> bool:
        return self.frame is None

    def clear(self) -> None:
        if self.frame is not None:
            self.frame[:] = 0

    def draw(self, image: np.ndarray, rect: Rect) -> bool:
        """
        Scale ``image`` into ``rect`` (canvas coordinates), clipping at the edges.

        Returns:
            True if any pixel landed on the canvas
        """
        if self.frame is None:
            return False

        x, y = int(round(rect.x)), int(round(rect.y))
        w, h = int(round(rect.width)), int(round(rect.height))
        if w <= 0 or h <= 0:
            return False

        x0, y0 = max(x, 0), max(y, 0)
        x1, y1 = min(x + w, self.width), min(y + h, self.height)
        if x0 >= x1 or y0 >= y1:
            return False

        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        elif image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        if image.shape[:2] != (h, w):
            image = cv2.resize(image, (w, h), interpolation=cv2.INTER_LINEAR)

        self.frame[y0:y1, x0:x1] = image[y0 - y : y1 - y, x0 - x : x1 - x]
        return True

    def capture(self) -> Optional[np.ndarray]:
        return None if self.frame is None else self.frame.copy()

    def release(self) -> None:
        self.frame = None


class AudioSourceRegistry:
    """Append-only set of remote audio tracks seen during the meeting."""

    def __init__(self):
        self._sources: dict[str, AudioSource] = {}
        self._listeners: list[Callable[[list[AudioSource]], None]] = []

    def add(self, source: AudioSource) -> bool:
        if source.source_id in self._sources:
            return False
        self._sources[source.source_id] = source
        logger.debug(f"Audio source added: {source.source_id} ({len(self._sources)} total)")
        for listener in list(self._listeners):
            try:
                listener(self.sources())
            except Exception as e:
                logger.error(f"Audio source listener failed: {e}")
        return True

    def sources(self) -> list[AudioSource]:
        return list(self._sources.values())

    def subscribe(self, listener: Callable[[list[AudioSource]], None]) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._sources)


class AudioMixer:
    """Sums connected sources into one clipped mono block."""

    def __init__(self, block_samples: int):
        self.block_samples = block_samples
        self._sources: dict[str, AudioSource] = {}

    @property
    def source_count(self) -> int:
        return len(self._sources)

    def connect(self, sources: list[AudioSource]) -> int:
        """Connect any sources not already mixed. Returns how many were new."""
        added = 0
        for source in sources:
            if source.source_id not in self._sources:
                self._sources[source.source_id] = source
                added += 1
        return added

    def mix(self) -> np.ndarray:
        out = np.zeros(self.block_samples, dtype=np.float32)
        for source in self._sources.values():
            samples = source.read_samples(self.block_samples)
            if samples is None or len(samples) == 0:
                continue
            n = min(len(samples), self.block_samples)
            out[:n] += np.asarray(samples[:n], dtype=np.float32)
        np.clip(out, -1.0, 1.0, out=out)
        return out

    def disconnect_all(self) -> None:
        self._sources.clear()


@dataclass
class CompositionSession:
    """Everything allocated for one capture; dropped as a unit on stop."""

    viewport: Viewport
    viewport_rect: Rect
    surface: CompositingSurface
    mixer: AudioMixer
    encoder: MediaEncoder
    started_at: float
    video_elements: list[VideoElement] = field(default_factory=list)
    mutation_watch: Optional[MutationWatch] = None
    unsubscribe_audio: Optional[Callable[[], None]] = None
    tasks: list[asyncio.Task] = field(default_factory=list)
    frames_drawn: int = 0
    chunks_emitted: int = 0
    bytes_emitted: int = 0


class CompositionPipeline:
    """Idle/Capturing state machine around one CompositionSession.

    Args:
        host: Page rendering surface
        encoder_factory: Builds the encoder for a capture
        audio_sources: Registry of remote audio tracks
        chunk_sink: Receives every encoded chunk as it is produced
        config: Composition settings
        clock: Monotonic time source for media timestamps
    """

    def __init__(
        self,
        host: HostSurface,
        encoder_factory: EncoderFactory,
        audio_sources: AudioSourceRegistry,
        chunk_sink: Callable[[bytes], object],
        config: Optional[CompositionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.host = host
        self.config = config or CompositionConfig()
        self._encoder_factory = encoder_factory
        self._audio_sources = audio_sources
        self._chunk_sink = chunk_sink
        self._clock = clock
        self._session: Optional[CompositionSession] = None

    @property
    def state(self) -> PipelineState:
        return PipelineState.CAPTURING if self._session else PipelineState.IDLE

    @property
    def session(self) -> Optional[CompositionSession]:
        return self._session

    # ==================== Lifecycle ====================

    def start(self, run_loops: bool = True) -> bool:
        """
        Begin capturing. No-op if already capturing.

        Args:
            run_loops: Schedule the draw/mix/chunk loops on the running event loop

        Returns:
            True if capturing after the call
        """
        if self._session is not None:
            return True

        viewport = self.host.find_viewport(self.config.viewport_selector)
        if viewport is None:
            logger.error(f"No viewport element matching '{self.config.viewport_selector}', capture not started")
            return False

        rect = viewport.rect
        width, height = int(round(rect.width)), int(round(rect.height))
        if width <= 0 or height <= 0:
            logger.error(f"Viewport has no area ({width}x{height}), capture not started")
            return False

        try:
            encoder = self._encoder_factory(width, height, self.config.fps, self.config.audio_sample_rate)
            encoder.start()
        except Exception as e:
            logger.error(f"Failed to start encoder: {e}")
            return False

        session = CompositionSession(
            viewport=viewport,
            viewport_rect=rect,
            surface=CompositingSurface(width, height),
            mixer=AudioMixer(self.config.audio_block_samples),
            encoder=encoder,
            started_at=self._clock(),
        )
        self._session = session

        try:
            session.video_elements = self.host.list_video_elements(viewport)
            session.mutation_watch = self.host.observe_mutations(viewport, self._on_mutation)
        except Exception as e:
            logger.error(f"Failed to watch viewport for video elements: {e}")
            self.stop()
            return False
        session.mixer.connect(self._audio_sources.sources())
        session.unsubscribe_audio = self._audio_sources.subscribe(self._on_audio_sources)

        if run_loops:
            loop = asyncio.get_running_loop()
            session.tasks = [
                loop.create_task(self._draw_loop()),
                loop.create_task(self._audio_loop()),
                loop.create_task(self._chunk_loop()),
            ]

        logger.info(
            f"Capture started: {width}x{height} @ {self.config.fps}fps, "
            f"{len(session.video_elements)} video element(s), {session.mixer.source_count} audio source(s)"
        )
        return True

    def stop(self) -> None:
        """Stop capturing and release everything. Safe to call in any state."""
        session = self._session
        if session is None:
            return
        self._session = None

        for task in session.tasks:
            task.cancel()

        try:
            final = session.encoder.stop()
        except Exception as e:
            logger.error(f"Error stopping encoder: {e}")
            final = b""
        if final:
            self._emit(session, final)

        if session.mutation_watch is not None:
            try:
                session.mutation_watch.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting mutation watch: {e}")
        if session.unsubscribe_audio is not None:
            session.unsubscribe_audio()

        session.mixer.disconnect_all()
        session.surface.release()

        logger.info(
            f"Capture stopped: {session.frames_drawn} frame(s) drawn, "
            f"{session.chunks_emitted} chunk(s) / {session.bytes_emitted} bytes forwarded"
        )

    # ==================== Per-tick work ====================

    def render_frame(self) -> int:
        """Draw one composited frame and hand it to the encoder.

        Returns:
            Number of video elements drawn
        """
        session = self._session
        if session is None:
            return 0

        try:
            surface = session.surface
            surface.clear()
            drawn = 0
            for element in session.video_elements:
                # Paused or not-yet-decoded elements are skipped, not dropped
                if element.paused or element.video_width <= 0 or element.video_height <= 0:
                    continue
                image = element.read_frame()
                if image is None:
                    continue
                if surface.draw(image, element.rect.relative_to(session.viewport_rect)):
                    drawn += 1

            session.encoder.write_video(surface.capture(), self._timestamp_us(session))
            session.frames_drawn += 1
            return drawn
        except Exception as e:
            logger.error(f"Error drawing composited frame: {e}")
            return 0

    def mix_audio(self) -> Optional[np.ndarray]:
        session = self._session
        if session is None:
            return None
        try:
            block = session.mixer.mix()
            session.encoder.write_audio(block, self._timestamp_us(session))
            return block
        except Exception as e:
            logger.error(f"Error mixing audio: {e}")
            return None

    def flush_chunk(self) -> int:
        """Pull the encoder's output since the last flush and forward it."""
        session = self._session
        if session is None:
            return 0
        try:
            data = session.encoder.flush()
        except Exception as e:
            logger.error(f"Error flushing encoder: {e}")
            return 0
        if not data:
            return 0
        self._emit(session, data)
        return len(data)

    def _emit(self, session: CompositionSession, data: bytes) -> None:
        session.chunks_emitted += 1
        session.bytes_emitted += len(data)
        logger.debug(f"Encoded chunk {session.chunks_emitted}: {len(data)} bytes")
        try:
            self._chunk_sink(data)
        except Exception as e:
            logger.error(f"Error forwarding encoded chunk: {e}")

    def _timestamp_us(self, session: CompositionSession) -> int:
        return int((self._clock() - session.started_at) * 1_000_000)

    # ==================== Host notifications ====================

    def _on_mutation(self) -> None:
        session = self._session
        if session is None:
            return
        try:
            session.video_elements = self.host.list_video_elements(session.viewport)
            logger.debug(f"Viewport changed: {len(session.video_elements)} video element(s)")
        except Exception as e:
            logger.error(f"Error refreshing video elements: {e}")

    def _on_audio_sources(self, sources: list[AudioSource]) -> None:
        session = self._session
        if session is None:
            return
        added = session.mixer.connect(sources)
        if added:
            logger.info(f"Mixing {session.mixer.source_count} audio source(s)")

    # ==================== Loops ====================

    async def _draw_loop(self) -> None:
        interval = 1.0 / self.config.fps
        while self._session is not None:
            self.render_frame()
            await asyncio.sleep(interval)

    async def _audio_loop(self) -> None:
        interval = self.config.audio_block_ms / 1000
        while self._session is not None:
            self.mix_audio()
            await asyncio.sleep(interval)

    async def _chunk_loop(self) -> None:
        interval = self.config.chunk_interval_ms / 1000
        while self._session is not None:
            await asyncio.sleep(interval)
            self.flush_chunk()
