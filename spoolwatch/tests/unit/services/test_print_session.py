"""
Tests for PrintSessionTracker.

Covers session start/end detection, active slot recording and progress
milestones as reports arrive in order.
"""

import json
import logging
from unittest.mock import MagicMock

import pytest

from spoolwatch.app.services.print_session import (
    PrintSessionTracker,
    SessionState,
    SessionSummary,
)
from spoolwatch.tests.factories import make_ams, make_report


@pytest.fixture
def on_end():
    return MagicMock()


@pytest.fixture
def tracker(on_end):
    return PrintSessionTracker("TEST123", on_session_end=on_end)


class TestMessageFiltering:
    """Reports that must leave the state untouched."""

    def test_invalid_json_is_dropped(self, tracker):
        before = SessionState()
        tracker.handle_payload(b"{not json")
        tracker.handle_payload(b"\xff\xfe")
        assert tracker.state == before

    def test_report_without_print_key(self, tracker):
        before = SessionState()
        tracker.handle_payload(json.dumps({"info": {"command": "get_version"}}))
        tracker.process_message({"print": "RUNNING"})
        tracker.process_message(["not", "a", "dict"])
        assert tracker.state == before

    def test_infinite_tray_now_does_not_block_state_change(self, tracker):
        tracker.handle_payload(b'{"print": {"gcode_state": "RUNNING", "ams": {"tray_now": Infinity}}}')

        assert tracker.state.is_print_running is True
        assert tracker.state.active_slots == []
        assert tracker.state.current_slot_index is None

    def test_non_finite_progress_is_ignored(self, tracker, on_end):
        tracker.process_message(make_report(gcode_state="RUNNING", ams={"tray_now": "0"}))
        tracker.process_message(make_report(mc_percent=40))
        tracker.handle_payload(b'{"print": {"gcode_state": "FAILED", "mc_percent": NaN}}')
        tracker.handle_payload(b'{"print": {"mc_percent": Infinity}}')

        assert on_end.call_args[0][0].last_progress_percent == 40
        assert tracker.state.last_progress_percent == 40

    def test_handle_payload_accepts_bytes(self, tracker):
        tracker.handle_payload(json.dumps(make_report(gcode_state="RUNNING")).encode())
        assert tracker.state.is_print_running is True


class TestSessionLifecycle:
    """Tests for print start and end detection."""

    def test_idle_to_running_starts_session(self, tracker, ams_report):
        tracker.state.last_progress_percent = 42
        tracker.state.active_slots = [3]

        tracker.process_message(make_report(gcode_state="RUNNING", ams=ams_report))

        state = tracker.state
        assert state.is_print_running is True
        assert state.gcode_state == "RUNNING"
        assert state.previous_gcode_state == "IDLE"
        assert state.session_start_time is not None
        assert state.last_progress_percent == 0
        assert state.active_slots == [0]
        assert state.current_slot_index == 0
        assert sorted(state.trays_at_session_start) == [0, 1, 2]
        assert state.session_id == 1

    def test_prepare_starts_session(self, tracker):
        tracker.process_message(make_report(gcode_state="PREPARE"))
        assert tracker.state.is_print_running is True

    def test_prepare_then_running_is_one_session(self, tracker):
        tracker.process_message(make_report(gcode_state="PREPARE"))
        tracker.process_message(make_report(gcode_state="RUNNING"))
        assert tracker.state.session_id == 1

    def test_start_without_ams_captures_from_next_report(self, tracker, ams_report):
        tracker.process_message(make_report(gcode_state="RUNNING"))
        assert tracker.state.trays_at_session_start == {}

        tracker.process_message(make_report(ams=ams_report))

        assert sorted(tracker.state.trays_at_session_start) == [0, 1, 2]
        assert tracker.state.active_slots == [0]

    def test_snapshot_is_not_overwritten_mid_print(self, tracker, ams_report, four_trays):
        tracker.process_message(make_report(gcode_state="RUNNING", ams=ams_report))
        four_trays[0]["remain"] = 10
        tracker.process_message(make_report(ams=make_ams(four_trays)))

        assert tracker.state.trays_at_session_start[0].remain_percent == 90
        assert tracker.state.last_ams_data["ams"][0]["tray"][0]["remain"] == 10

    def test_finish_emits_summary(self, tracker, on_end, ams_report):
        tracker.process_message(make_report(gcode_state="RUNNING", ams=ams_report))
        tracker.process_message(make_report(mc_percent=100))
        tracker.process_message(make_report(gcode_state="FINISH"))

        on_end.assert_called_once()
        summary = on_end.call_args[0][0]
        assert isinstance(summary, SessionSummary)
        assert summary.final_state == "FINISH"
        assert summary.failed is False
        assert summary.active_slots == (0,)
        assert summary.last_progress_percent == 100
        assert summary.ams_data_at_end == ams_report
        assert tracker.state.is_print_running is False

    def test_failed_emits_failed_summary(self, tracker, on_end):
        tracker.process_message(make_report(gcode_state="RUNNING"))
        tracker.process_message(make_report(mc_percent=37))
        tracker.process_message(make_report(gcode_state="FAILED"))

        summary = on_end.call_args[0][0]
        assert summary.failed is True
        assert summary.last_progress_percent == 37

    def test_repeated_finish_ends_once(self, tracker, on_end):
        tracker.process_message(make_report(gcode_state="RUNNING"))
        tracker.process_message(make_report(gcode_state="FINISH"))
        tracker.process_message(make_report(gcode_state="FINISH"))
        tracker.process_message(make_report(gcode_state="FAILED"))

        on_end.assert_called_once()

    def test_finish_without_running_is_ignored(self, tracker, on_end):
        tracker.process_message(make_report(gcode_state="FINISH"))
        on_end.assert_not_called()

    def test_summary_is_detached_from_state(self, tracker, on_end, ams_report):
        tracker.process_message(make_report(gcode_state="RUNNING", ams=ams_report))
        tracker.process_message(make_report(gcode_state="FINISH"))
        summary = on_end.call_args[0][0]

        tracker.process_message(make_report(gcode_state="RUNNING", ams=make_ams([], tray_now="2")))

        assert summary.active_slots == (0,)
        assert sorted(summary.trays_at_start) == [0, 1, 2]

    def test_second_session_gets_new_id(self, tracker, on_end):
        for _ in range(2):
            tracker.process_message(make_report(gcode_state="RUNNING"))
            tracker.process_message(make_report(gcode_state="FINISH"))

        ids = [call.args[0].session_id for call in on_end.call_args_list]
        assert ids == [1, 2]

    def test_callback_error_is_logged(self, on_end, caplog):
        on_end.side_effect = RuntimeError("boom")
        tracker = PrintSessionTracker("TEST123", on_session_end=on_end)

        with caplog.at_level(logging.ERROR):
            tracker.process_message(make_report(gcode_state="RUNNING"))
            tracker.process_message(make_report(gcode_state="FINISH"))

        assert "boom" in caplog.text
        assert tracker.state.is_print_running is False


class TestActiveSlots:
    """Tests for active slot recording."""

    def test_slot_changes_are_recorded_in_order(self, tracker, ams_report):
        tracker.process_message(make_report(gcode_state="RUNNING", ams=ams_report))
        tracker.process_message(make_report(ams={"tray_now": "2"}))
        tracker.process_message(make_report(ams={"tray_now": "0"}))
        tracker.process_message(make_report(ams={"tray_now": "1"}))

        assert tracker.state.active_slots == [0, 2, 1]
        assert tracker.state.current_slot_index == 1

    def test_external_spool_is_not_recorded(self, tracker):
        tracker.process_message(make_report(gcode_state="RUNNING"))
        tracker.process_message(make_report(ams={"tray_now": "254"}))

        assert tracker.state.active_slots == []

    def test_slots_not_recorded_while_idle(self, tracker):
        tracker.process_message(make_report(ams={"tray_now": "1"}))

        assert tracker.state.current_slot_index == 1
        assert tracker.state.active_slots == []

    def test_slot_reported_before_state_change(self, tracker, ams_report, on_end):
        """tray_now is read before gcode_state in the same report."""
        tracker.process_message(make_report(gcode_state="RUNNING", ams=ams_report))
        tracker.process_message(make_report(gcode_state="FINISH", ams={"tray_now": "2"}))

        assert on_end.call_args[0][0].active_slots == (0, 2)


class TestProgressMilestones:
    """Tests for 25% progress milestones."""

    def test_each_milestone_once(self, tracker, caplog):
        tracker.process_message(make_report(gcode_state="RUNNING"))
        with caplog.at_level(logging.INFO):
            for pct in (10, 25, 25, 30, 50, 50, 75, 100, 100):
                tracker.process_message(make_report(mc_percent=pct))

        assert tracker.state.progress_milestones_emitted == {25, 50, 75, 100}
        assert caplog.text.count("Print progress: 25%") == 1
        assert caplog.text.count("Print progress: 100%") == 1

    def test_zero_progress_clears_milestones(self, tracker):
        tracker.process_message(make_report(gcode_state="RUNNING"))
        tracker.process_message(make_report(mc_percent=25))
        tracker.process_message(make_report(mc_percent=0))

        assert tracker.state.progress_milestones_emitted == set()

    def test_no_milestones_while_idle(self, tracker):
        tracker.process_message(make_report(mc_percent=50))

        assert tracker.state.progress_milestones_emitted == set()
        assert tracker.state.last_progress_percent == 50

    def test_new_session_clears_milestones(self, tracker):
        tracker.process_message(make_report(gcode_state="RUNNING"))
        tracker.process_message(make_report(mc_percent=50))
        tracker.process_message(make_report(gcode_state="FINISH"))
        tracker.process_message(make_report(gcode_state="RUNNING"))

        assert tracker.state.progress_milestones_emitted == set()
