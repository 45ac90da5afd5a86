"""
Active video feed selection.

Only one outgoing video feed is forwarded at a time. Screen shares always
win over camera video; within each class the most recently first-seen
track wins. The selection is memoized against a generation counter that
every upsert/remove bumps.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class VideoTrackRecord:
    """A remote video track known to the session.

    ``track`` is the host's handle; the relay never stops or frees it.
    """

    track_id: str
    track: Any
    stream_id: Optional[str]
    is_screen_share: bool
    first_seen_at: float


class VideoFeedSelector:
    """Single writer for the video track map."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._tracks: dict[str, VideoTrackRecord] = {}
        self._clock = clock
        self._generation = 0
        self._cached_generation = -1
        self._cached: Optional[VideoTrackRecord] = None

    def upsert(
        self,
        track_id: str,
        stream_id: Optional[str],
        is_screen_share: bool,
        track: Any = None,
    ) -> VideoTrackRecord:
        """Create or refresh a track, keeping its original first_seen_at."""
        existing = self._tracks.get(track_id)
        record = VideoTrackRecord(
            track_id=track_id,
            track=track if track is not None else (existing.track if existing else None),
            stream_id=stream_id,
            is_screen_share=is_screen_share,
            first_seen_at=existing.first_seen_at if existing else self._clock(),
        )
        self._tracks[track_id] = record
        self._generation += 1
        logger.debug(f"Upserted video track {track_id} (stream={stream_id}, screen_share={is_screen_share})")
        return record

    def remove(self, track_id: str) -> Optional[VideoTrackRecord]:
        record = self._tracks.pop(track_id, None)
        self._generation += 1
        if record:
            logger.debug(f"Removed video track {track_id}")
        return record

    def selected(self) -> Optional[VideoTrackRecord]:
        """The track that should be forwarded, or None if there are none."""
        if self._cached_generation != self._generation:
            self._cached = self._select()
            self._cached_generation = self._generation
        return self._cached

    def selected_stream_id(self) -> Optional[str]:
        record = self.selected()
        return record.stream_id if record else None

    def _select(self) -> Optional[VideoTrackRecord]:
        for screen_share in (True, False):
            best: Optional[VideoTrackRecord] = None
            for record in self._tracks.values():
                if record.is_screen_share != screen_share:
                    continue
                # Strictly newer only: ties keep the earliest inserted track
                if best is None or record.first_seen_at > best.first_seen_at:
                    best = record
            if best is not None:
                return best
        return None

    def get(self, track_id: str) -> Optional[VideoTrackRecord]:
        return self._tracks.get(track_id)

    def tracks(self) -> list[VideoTrackRecord]:
        return list(self._tracks.values())

    def __len__(self) -> int:
        return len(self._tracks)
