"""
Meeting roster reconciliation.

Two unsynchronized sources describe who is in the meeting:
- A periodic bulk response from the collections sync endpoint (full roster)
- Collection side-channel events carrying the few users that changed

Both are folded into one authoritative roster keyed by device id. The
incoming list is always treated as the complete current view, so a user
who silently leaves is only noticed on the next bulk sync. Incremental
events cannot tell a join from a leave, so that staleness is expected.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from tool_modules.aa_meet_relay.src.wire_decoder import DecodedRecord

logger = logging.getLogger(__name__)


class MeetingStatus(str, Enum):
    IN_MEETING = "in_meeting"
    NOT_IN_MEETING = "not_in_meeting"
    REMOVED_FROM_MEETING = "removed_from_meeting"
    UNKNOWN = "unknown"

    @classmethod
    def from_code(cls, code: Optional[int]) -> "MeetingStatus":
        return STATUS_CODES.get(code, cls.UNKNOWN)


STATUS_CODES: dict[Optional[int], MeetingStatus] = {
    1: MeetingStatus.IN_MEETING,
    6: MeetingStatus.NOT_IN_MEETING,
    7: MeetingStatus.REMOVED_FROM_MEETING,
}


@dataclass(frozen=True)
class UserRecord:
    """A meeting participant (or screen-share sub-device) as last reported."""

    device_id: str
    display_name: Optional[str] = None
    full_name: Optional[str] = None
    profile_picture: Optional[str] = None
    status: Optional[int] = None
    parent_device_id: Optional[str] = None

    @classmethod
    def from_wire(cls, raw: DecodedRecord) -> "UserRecord":
        return cls(
            device_id=raw.get("deviceId", ""),
            display_name=raw.get("displayName"),
            full_name=raw.get("fullName"),
            profile_picture=raw.get("profilePicture"),
            status=raw.get("status"),
            parent_device_id=raw.get("parentDeviceId"),
        )

    @property
    def meeting_status(self) -> MeetingStatus:
        return MeetingStatus.from_code(self.status)

    @property
    def is_screen_share(self) -> bool:
        return bool(self.parent_device_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "displayName": self.display_name,
            "fullName": self.full_name,
            "profilePicture": self.profile_picture,
            "status": self.status,
            "humanized_status": self.meeting_status.value,
            "parentDeviceId": self.parent_device_id,
        }


@dataclass
class RosterDelta:
    """Result of one reconciliation."""

    new_users: list[UserRecord] = field(default_factory=list)
    removed_users: list[UserRecord] = field(default_factory=list)
    updated_users: list[UserRecord] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.new_users or self.removed_users or self.updated_users)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "UsersUpdate",
            "newUsers": [u.to_dict() for u in self.new_users],
            "removedUsers": [u.to_dict() for u in self.removed_users],
            "updatedUsers": [u.to_dict() for u in self.updated_users],
        }


DeltaCallback = Callable[[RosterDelta], None]


class RosterSynchronizer:
    """Single writer for the roster maps.

    Keeps two views:
    - current: the users present in the latest reconciled list
    - all: every user ever seen, for name lookups after they leave
    """

    def __init__(self, on_delta: Optional[DeltaCallback] = None):
        self._current: dict[str, UserRecord] = {}
        self._all: dict[str, UserRecord] = {}
        self._on_delta = on_delta

    # ==================== Update paths ====================

    def sync_full(self, users: Iterable[UserRecord | DecodedRecord]) -> RosterDelta:
        """Reconcile against a complete roster snapshot."""
        return self._reconcile(self._coerce(users))

    def sync_incremental(self, users: Iterable[UserRecord | DecodedRecord]) -> RosterDelta:
        """Merge a few changed users into the current roster, then reconcile.

        Incremental events never remove anyone: users absent from the event
        are carried over from the current roster.
        """
        merged = list(self._current.values()) + self._coerce(users)
        return self._reconcile(merged)

    def _reconcile(self, users: list[UserRecord]) -> RosterDelta:
        # Last occurrence wins for duplicated device ids
        incoming: dict[str, UserRecord] = {}
        for user in users:
            incoming[user.device_id] = user

        previous = self._current
        delta = RosterDelta(
            new_users=[u for device_id, u in incoming.items() if device_id not in previous],
            removed_users=[u for device_id, u in previous.items() if device_id not in incoming],
            updated_users=[
                u for device_id, u in incoming.items() if device_id in previous and previous[device_id] != u
            ],
        )

        self._all.update(incoming)
        self._current = incoming

        if delta.is_empty:
            return delta

        logger.info(
            f"Roster changed: +{len(delta.new_users)} -{len(delta.removed_users)} "
            f"~{len(delta.updated_users)} ({len(incoming)} current)"
        )
        if self._on_delta:
            self._on_delta(delta)
        return delta

    @staticmethod
    def _coerce(users: Iterable[UserRecord | DecodedRecord]) -> list[UserRecord]:
        return [u if isinstance(u, UserRecord) else UserRecord.from_wire(u) for u in users]

    # ==================== Accessors ====================

    def get_user_by_device_id(self, device_id: str) -> Optional[UserRecord]:
        """Look up any user ever seen, including ones no longer present."""
        return self._all.get(device_id)

    def current_users(self) -> list[UserRecord]:
        return list(self._current.values())

    def users_in_meeting(self) -> list[UserRecord]:
        return [u for u in self._current.values() if u.meeting_status is MeetingStatus.IN_MEETING]

    def screen_sharing_users(self) -> list[UserRecord]:
        return [u for u in self.users_in_meeting() if u.is_screen_share]

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._current

    def __len__(self) -> int:
        return len(self._current)
