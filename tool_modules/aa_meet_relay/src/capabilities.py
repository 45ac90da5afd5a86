"""Protocol definitions for the host capabilities the relay depends on.

The relay never owns the page, its video elements, the remote media
tracks or the encoder. It is handed objects that satisfy these Protocols
(structural subtyping) and only calls the methods listed here.

Usage:
    from tool_modules.aa_meet_relay.src.capabilities import HostSurface

    def start(host: HostSurface) -> None:
        viewport = host.find_viewport("main")
        if viewport is None:
            return
        for element in host.list_video_elements(viewport):
            ...
"""

from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

import numpy as np


@dataclass(frozen=True)
class Rect:
    """An on-screen rectangle in CSS pixels."""

    x: float
    y: float
    width: float
    height: float

    def relative_to(self, origin: "Rect") -> "Rect":
        return Rect(self.x - origin.x, self.y - origin.y, self.width, self.height)


@runtime_checkable
class VideoElement(Protocol):
    """A video element currently present under the viewport root."""

    @property
    def rect(self) -> Rect:
        """On-screen position and size."""
        ...

    @property
    def paused(self) -> bool:
        ...

    @property
    def video_width(self) -> int:
        """Intrinsic width of the current frame (0 when nothing decoded yet)."""
        ...

    @property
    def video_height(self) -> int:
        ...

    def read_frame(self) -> Optional[np.ndarray]:
        """Current frame as an HxWx3 uint8 array, or None if unavailable."""
        ...


@runtime_checkable
class Viewport(Protocol):
    """The meeting's main viewport element."""

    @property
    def rect(self) -> Rect:
        ...


@runtime_checkable
class MutationWatch(Protocol):
    """Handle returned by HostSurface.observe_mutations()."""

    def disconnect(self) -> None:
        ...


@runtime_checkable
class HostSurface(Protocol):
    """The page's rendering surface."""

    def find_viewport(self, selector: str) -> Optional[Viewport]:
        ...

    def list_video_elements(self, root: Viewport) -> list[VideoElement]:
        ...

    def observe_mutations(self, root: Viewport, callback: Callable[[], None]) -> MutationWatch:
        """Call ``callback`` whenever the subtree under ``root`` changes."""
        ...


@runtime_checkable
class AudioSource(Protocol):
    """A remote audio track producing mono float32 samples."""

    @property
    def source_id(self) -> str:
        ...

    def read_samples(self, count: int) -> Optional[np.ndarray]:
        """Up to ``count`` new samples, or None if the source has nothing buffered."""
        ...


@runtime_checkable
class MediaEncoder(Protocol):
    """Encodes the composited video and mixed audio into a chunked container."""

    def start(self) -> None:
        ...

    def write_video(self, frame: np.ndarray, timestamp_us: int) -> None:
        ...

    def write_audio(self, samples: np.ndarray, timestamp_us: int) -> None:
        ...

    def flush(self) -> bytes:
        """Return the bytes encoded since the previous flush (may be empty)."""
        ...

    def stop(self) -> bytes:
        """Finish encoding and return the final chunk."""
        ...


# Builds an encoder for a (width, height, fps, audio sample rate) output
EncoderFactory = Callable[[int, int, int, int], MediaEncoder]
