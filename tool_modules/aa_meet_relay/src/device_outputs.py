"""
Device output tracking.

Keeps the mapping from (device, output kind) to the stream carrying that
output and whether the participant has it muted/disabled. Collection
events deliver these in batches; each batch produces one consolidated
snapshot for the collector.
"""

import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Iterable, Optional

from tool_modules.aa_meet_relay.src.wire_decoder import DecodedRecord

logger = logging.getLogger(__name__)


class OutputKind(IntEnum):
    """Device output type codes as they appear on the wire."""

    AUDIO = 1
    VIDEO = 2


@dataclass
class DeviceOutput:
    """A single media output belonging to a meeting device."""

    device_id: str
    output_kind: OutputKind
    stream_id: str
    disabled: bool
    last_updated: float  # epoch seconds

    @property
    def key(self) -> tuple[str, OutputKind]:
        return (self.device_id, self.output_kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "outputType": int(self.output_kind),
            "streamId": self.stream_id,
            "disabled": self.disabled,
            "lastUpdated": int(self.last_updated * 1000),
        }


SnapshotCallback = Callable[[list[DeviceOutput]], None]


class DeviceOutputTracker:
    """Single writer for the device output map.

    Args:
        on_snapshot: Called once per applied batch with the full current set
        clock: Wall-clock source used for lastUpdated stamps
    """

    def __init__(
        self,
        on_snapshot: Optional[SnapshotCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._outputs: dict[tuple[str, OutputKind], DeviceOutput] = {}
        self._on_snapshot = on_snapshot
        self._clock = clock

    def update_device_outputs(self, outputs: Iterable[DecodedRecord]) -> list[DeviceOutput]:
        """
        Upsert a batch of raw DeviceOutputInfoList records.

        Each record overwrites any earlier entry for its (deviceId, kind)
        pair. Records with an unknown output type are skipped.

        Returns:
            The full current set of device outputs after the batch
        """
        now = self._clock()
        applied = 0
        for raw in outputs:
            try:
                kind = OutputKind(raw.get("deviceOutputType"))
            except ValueError:
                logger.debug(f"Skipping device output with unknown type: {raw.get('deviceOutputType')}")
                continue

            status = raw.get("deviceOutputStatus") or {}
            output = DeviceOutput(
                device_id=raw.get("deviceId", ""),
                output_kind=kind,
                stream_id=raw.get("streamId", ""),
                disabled=bool(status.get("disabled", 0)),
                last_updated=now,
            )
            self._outputs[output.key] = output
            applied += 1

        snapshot = self.snapshot()
        logger.debug(f"Applied {applied} device output(s), {len(snapshot)} tracked")
        if self._on_snapshot:
            self._on_snapshot(snapshot)
        return snapshot

    def snapshot(self) -> list[DeviceOutput]:
        return list(self._outputs.values())

    def get(self, device_id: str, kind: OutputKind) -> Optional[DeviceOutput]:
        return self._outputs.get((device_id, kind))

    def find_by_stream(self, stream_id: Optional[str]) -> Optional[DeviceOutput]:
        """Return the first output carried on the given stream, if any."""
        if stream_id is None:
            return None
        for output in self._outputs.values():
            if output.stream_id == stream_id:
                return output
        return None

    def is_stream_active(self, stream_id: Optional[str]) -> bool:
        """True iff a known output uses this stream and is not disabled."""
        if stream_id is None:
            return False
        return any(o.stream_id == stream_id and not o.disabled for o in self._outputs.values())

    def __len__(self) -> int:
        return len(self._outputs)
