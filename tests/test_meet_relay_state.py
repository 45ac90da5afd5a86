"""Tests for device output tracking, roster reconciliation and feed selection."""

from unittest.mock import MagicMock

import pytest

from tool_modules.aa_meet_relay.src.device_outputs import DeviceOutputTracker, OutputKind
from tool_modules.aa_meet_relay.src.roster import (
    MeetingStatus,
    RosterDelta,
    RosterSynchronizer,
    UserRecord,
)
from tool_modules.aa_meet_relay.src.video_feeds import VideoFeedSelector


def raw_output(device_id: str, kind: int, stream_id: str, disabled=None) -> dict:
    raw = {"deviceId": device_id, "deviceOutputType": kind, "streamId": stream_id}
    if disabled is not None:
        raw["deviceOutputStatus"] = {"disabled": disabled}
    return raw


# ---------------------------------------------------------------------------
# DeviceOutputTracker
# ---------------------------------------------------------------------------


class TestDeviceOutputTracker:
    def test_upsert_keyed_by_device_and_kind(self, clock):
        tracker = DeviceOutputTracker(clock=clock)
        tracker.update_device_outputs(
            [
                raw_output("d1", 1, "s-audio", 0),
                raw_output("d1", 2, "s-video", 0),
                raw_output("d1", 2, "s-video-2", 1),
                raw_output("d2", 2, "s-other"),
            ]
        )
        assert len(tracker) == 3
        latest = tracker.get("d1", OutputKind.VIDEO)
        assert latest.stream_id == "s-video-2"
        assert latest.disabled is True
        assert tracker.get("d1", OutputKind.AUDIO).stream_id == "s-audio"

    def test_last_upsert_wins_across_batches(self, clock):
        tracker = DeviceOutputTracker(clock=clock)
        tracker.update_device_outputs([raw_output("d1", 2, "s1", 0)])
        clock.advance(5)
        tracker.update_device_outputs([raw_output("d1", 2, "s2", 1)])
        output = tracker.get("d1", OutputKind.VIDEO)
        assert (output.stream_id, output.disabled, output.last_updated) == ("s2", True, clock.now)
        assert len(tracker) == 1

    def test_one_snapshot_per_batch(self, clock):
        on_snapshot = MagicMock()
        tracker = DeviceOutputTracker(on_snapshot=on_snapshot, clock=clock)
        tracker.update_device_outputs([raw_output("d1", 1, "a"), raw_output("d2", 2, "b")])
        on_snapshot.assert_called_once()
        assert {o.device_id for o in on_snapshot.call_args.args[0]} == {"d1", "d2"}

    def test_snapshot_contains_full_set(self, clock):
        on_snapshot = MagicMock()
        tracker = DeviceOutputTracker(on_snapshot=on_snapshot, clock=clock)
        tracker.update_device_outputs([raw_output("d1", 1, "a")])
        tracker.update_device_outputs([raw_output("d2", 2, "b")])
        assert len(on_snapshot.call_args.args[0]) == 2

    def test_unknown_kind_skipped(self, clock):
        tracker = DeviceOutputTracker(clock=clock)
        tracker.update_device_outputs([raw_output("d1", 9, "x"), {"deviceId": "d2"}])
        assert len(tracker) == 0

    def test_missing_status_means_enabled(self, clock):
        tracker = DeviceOutputTracker(clock=clock)
        tracker.update_device_outputs([raw_output("d1", 2, "s1")])
        assert tracker.is_stream_active("s1") is True

    def test_is_stream_active(self, clock):
        tracker = DeviceOutputTracker(clock=clock)
        tracker.update_device_outputs([raw_output("d1", 2, "on", 0), raw_output("d2", 2, "off", 1)])
        assert tracker.is_stream_active("on") is True
        assert tracker.is_stream_active("off") is False
        assert tracker.is_stream_active("unknown") is False
        assert tracker.is_stream_active(None) is False

    def test_stream_active_if_any_output_enabled(self, clock):
        tracker = DeviceOutputTracker(clock=clock)
        tracker.update_device_outputs([raw_output("d1", 1, "shared", 1), raw_output("d1", 2, "shared", 0)])
        assert tracker.is_stream_active("shared") is True

    def test_to_dict(self, clock):
        tracker = DeviceOutputTracker(clock=clock)
        (output,) = tracker.update_device_outputs([raw_output("d1", 2, "s1", 1)])
        assert output.to_dict() == {
            "deviceId": "d1",
            "outputType": 2,
            "streamId": "s1",
            "disabled": True,
            "lastUpdated": int(clock.now * 1000),
        }

    def test_find_by_stream(self, clock):
        tracker = DeviceOutputTracker(clock=clock)
        tracker.update_device_outputs([raw_output("d1", 2, "s1")])
        assert tracker.find_by_stream("s1").device_id == "d1"
        assert tracker.find_by_stream("nope") is None
        assert tracker.find_by_stream(None) is None


# ---------------------------------------------------------------------------
# RosterSynchronizer
# ---------------------------------------------------------------------------


def user(device_id: str, name: str = "", status: int = 1, parent: str | None = None) -> UserRecord:
    return UserRecord(device_id=device_id, display_name=name or device_id.upper(), status=status, parent_device_id=parent)


class TestMeetingStatus:
    @pytest.mark.parametrize(
        "code,expected",
        [
            (1, MeetingStatus.IN_MEETING),
            (6, MeetingStatus.NOT_IN_MEETING),
            (7, MeetingStatus.REMOVED_FROM_MEETING),
            (3, MeetingStatus.UNKNOWN),
            (None, MeetingStatus.UNKNOWN),
        ],
    )
    def test_from_code(self, code, expected):
        assert MeetingStatus.from_code(code) is expected


class TestRosterSynchronizer:
    def test_first_sync_all_new(self):
        roster = RosterSynchronizer()
        delta = roster.sync_full([user("x"), user("y")])
        assert [u.device_id for u in delta.new_users] == ["x", "y"]
        assert delta.removed_users == [] and delta.updated_users == []

    def test_new_and_removed(self):
        roster = RosterSynchronizer()
        roster.sync_full([user("x"), user("y")])
        delta = roster.sync_full([user("y"), user("z")])
        assert [u.device_id for u in delta.new_users] == ["z"]
        assert [u.device_id for u in delta.removed_users] == ["x"]
        assert delta.updated_users == []

    def test_changed_record_is_updated(self):
        roster = RosterSynchronizer()
        roster.sync_full([user("x"), user("y", "Yan")])
        delta = roster.sync_full([user("y", "Yannick"), user("z")])
        assert [u.display_name for u in delta.updated_users] == ["Yannick"]

    def test_removed_reports_last_known_record(self):
        roster = RosterSynchronizer()
        roster.sync_full([user("x", "Xavier")])
        delta = roster.sync_full([])
        assert delta.removed_users == [user("x", "Xavier")]

    def test_duplicates_last_wins(self):
        roster = RosterSynchronizer()
        delta = roster.sync_full([user("x", "first"), user("x", "second")])
        assert len(delta.new_users) == 1
        assert roster.get_user_by_device_id("x").display_name == "second"

    def test_no_change_emits_nothing(self):
        on_delta = MagicMock()
        roster = RosterSynchronizer(on_delta=on_delta)
        roster.sync_full([user("x")])
        on_delta.reset_mock()
        delta = roster.sync_full([user("x")])
        assert delta.is_empty
        on_delta.assert_not_called()

    def test_change_emits_one_delta(self):
        on_delta = MagicMock()
        roster = RosterSynchronizer(on_delta=on_delta)
        roster.sync_full([user("x"), user("y")])
        on_delta.assert_called_once()

    def test_incremental_merges_without_removing(self):
        roster = RosterSynchronizer()
        roster.sync_full([user("x"), user("y")])
        delta = roster.sync_incremental([user("z")])
        assert [u.device_id for u in delta.new_users] == ["z"]
        assert delta.removed_users == []
        assert len(roster) == 3

    def test_incremental_update_replaces_record(self):
        roster = RosterSynchronizer()
        roster.sync_full([user("x", "Old")])
        delta = roster.sync_incremental([user("x", "New", status=6)])
        assert [u.display_name for u in delta.updated_users] == ["New"]
        assert roster.users_in_meeting() == []

    def test_leave_only_seen_on_bulk_sync(self):
        roster = RosterSynchronizer()
        roster.sync_full([user("x"), user("y")])
        roster.sync_incremental([user("y", "changed")])
        assert "x" in roster
        delta = roster.sync_full([user("y", "changed")])
        assert [u.device_id for u in delta.removed_users] == ["x"]

    def test_accepts_decoded_records(self):
        roster = RosterSynchronizer()
        roster.sync_full([{"deviceId": "d1", "displayName": "Dee", "status": 1, "parentDeviceId": "d0"}])
        record = roster.get_user_by_device_id("d1")
        assert record.display_name == "Dee"
        assert record.is_screen_share

    def test_all_users_kept_after_leave(self):
        roster = RosterSynchronizer()
        roster.sync_full([user("x", "Xavier")])
        roster.sync_full([])
        assert "x" not in roster
        assert roster.get_user_by_device_id("x").display_name == "Xavier"
        assert roster.current_users() == []

    def test_screen_sharing_users(self):
        roster = RosterSynchronizer()
        roster.sync_full([user("x"), user("x-share", parent="x"), user("gone-share", status=6, parent="y")])
        assert [u.device_id for u in roster.screen_sharing_users()] == ["x-share"]

    def test_delta_message_shape(self):
        delta = RosterDelta(new_users=[user("x", "Xavier")])
        message = delta.to_message()
        assert message["type"] == "UsersUpdate"
        assert message["removedUsers"] == [] and message["updatedUsers"] == []
        assert message["newUsers"][0]["deviceId"] == "x"
        assert message["newUsers"][0]["displayName"] == "Xavier"
        assert message["newUsers"][0]["humanized_status"] == "in_meeting"


# ---------------------------------------------------------------------------
# VideoFeedSelector
# ---------------------------------------------------------------------------


class TestVideoFeedSelector:
    def test_empty(self):
        assert VideoFeedSelector().selected() is None

    def test_selection_order(self, clock):
        selector = VideoFeedSelector(clock=clock)
        clock.now = 1
        selector.upsert("A", "sA", is_screen_share=False)
        clock.now = 2
        selector.upsert("B", "sB", is_screen_share=True)
        clock.now = 3
        selector.upsert("C", "sC", is_screen_share=True)

        assert selector.selected().track_id == "C"
        selector.remove("C")
        assert selector.selected().track_id == "B"
        selector.remove("B")
        assert selector.selected().track_id == "A"
        selector.remove("A")
        assert selector.selected() is None

    def test_screen_share_beats_newer_camera(self, clock):
        selector = VideoFeedSelector(clock=clock)
        selector.upsert("share", "s1", is_screen_share=True)
        clock.advance(10)
        selector.upsert("camera", "s2", is_screen_share=False)
        assert selector.selected_stream_id() == "s1"

    def test_reupsert_preserves_first_seen(self, clock):
        selector = VideoFeedSelector(clock=clock)
        selector.upsert("A", "s1", is_screen_share=False)
        clock.advance(1)
        selector.upsert("B", "s2", is_screen_share=False)
        clock.advance(1)
        record = selector.upsert("A", "s1-new", is_screen_share=False)
        assert record.first_seen_at == 1000.0
        assert selector.selected().track_id == "B"
        assert selector.get("A").stream_id == "s1-new"

    def test_reupsert_keeps_track_handle(self, clock):
        handle = object()
        selector = VideoFeedSelector(clock=clock)
        selector.upsert("A", "s1", is_screen_share=False, track=handle)
        selector.upsert("A", "s1", is_screen_share=True)
        assert selector.get("A").track is handle

    def test_tie_keeps_earliest_inserted(self, clock):
        selector = VideoFeedSelector(clock=clock)
        selector.upsert("first", "s1", is_screen_share=False)
        selector.upsert("second", "s2", is_screen_share=False)
        assert selector.selected().track_id == "first"

    def test_selection_memoized_until_change(self, clock):
        selector = VideoFeedSelector(clock=clock)
        selector.upsert("A", "s1", is_screen_share=False)
        first = selector.selected()
        assert selector.selected() is first
        clock.advance(1)
        selector.upsert("B", "s2", is_screen_share=False)
        assert selector.selected().track_id == "B"

    def test_reclassify_to_screen_share_invalidates(self, clock):
        selector = VideoFeedSelector(clock=clock)
        selector.upsert("A", "s1", is_screen_share=False)
        clock.advance(1)
        selector.upsert("B", "s2", is_screen_share=False)
        assert selector.selected().track_id == "B"
        selector.upsert("A", "s1", is_screen_share=True)
        assert selector.selected().track_id == "A"

    def test_remove_unknown_is_harmless(self):
        selector = VideoFeedSelector()
        assert selector.remove("nope") is None
        assert len(selector) == 0

    def test_never_selects_removed_track(self, clock):
        selector = VideoFeedSelector(clock=clock)
        selector.upsert("A", "s1", is_screen_share=True)
        selector.selected()
        selector.remove("A")
        assert selector.selected() is None
