"""
Live caption relay.

Caption updates arrive on the captions side channel, one record per
refinement of an utterance. Each is stored by caption id (last write wins,
no version ordering) and forwarded to the collector.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from tool_modules.aa_meet_relay.src.wire_decoder import DecodedRecord

if TYPE_CHECKING:
    from tool_modules.aa_meet_relay.src.transport import TransportChannel

logger = logging.getLogger(__name__)


@dataclass
class Caption:
    """A single caption entry from the meeting."""

    caption_id: int
    device_id: Optional[str] = None
    version: Optional[int] = None
    text: str = ""
    language_id: Optional[int] = None

    @classmethod
    def from_wire(cls, raw: DecodedRecord) -> "Caption":
        return cls(
            caption_id=raw.get("captionId", 0),
            device_id=raw.get("deviceId"),
            version=raw.get("version"),
            text=raw.get("text", ""),
            language_id=raw.get("languageId"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "captionId": self.caption_id,
            "deviceId": self.device_id,
            "version": self.version,
            "text": self.text,
            "languageId": self.language_id,
        }


class CaptionRelay:
    """Stores captions by id and forwards every update."""

    def __init__(self, transport: "TransportChannel"):
        self._transport = transport
        self._captions: dict[int, Caption] = {}

    def sync(self, caption: Caption) -> None:
        # An older version arriving late still overwrites the newer one
        self._captions[caption.caption_id] = caption
        logger.debug(f"Caption {caption.caption_id} v{caption.version}: {caption.text[:60]}")
        self._transport.send_caption_update(caption.to_dict())

    def get(self, caption_id: int) -> Optional[Caption]:
        return self._captions.get(caption_id)

    def captions(self) -> list[Caption]:
        return list(self._captions.values())

    def __len__(self) -> int:
        return len(self._captions)
