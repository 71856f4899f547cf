"""Print session tracking from the printer's status reports.

One tracker per printer. Messages must be fed in arrival order: start and end
of a session are detected by comparing each report's gcode_state with the
previous one.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from spoolwatch.app.services.tray_parser import TraySnapshot, parse_tray_now, snapshot_trays

logger = logging.getLogger(__name__)

MILESTONE_STEP = 25


class GcodeState(str, Enum):
    IDLE = "IDLE"
    PREPARE = "PREPARE"
    RUNNING = "RUNNING"
    FINISH = "FINISH"
    FAILED = "FAILED"


START_STATES = {GcodeState.PREPARE.value, GcodeState.RUNNING.value}
TERMINAL_STATES = {GcodeState.FINISH.value, GcodeState.FAILED.value}


@dataclass
class SessionState:
    """Mutable per-printer session state, owned by PrintSessionTracker."""

    gcode_state: str = GcodeState.IDLE.value
    previous_gcode_state: str = GcodeState.IDLE.value
    is_print_running: bool = False
    # Ordered by first use; the first entry is the session's primary slot
    active_slots: list[int] = field(default_factory=list)
    current_slot_index: int | None = None
    session_start_time: datetime | None = None
    trays_at_session_start: dict[int, TraySnapshot] = field(default_factory=dict)
    last_progress_percent: float = 0.0
    progress_milestones_emitted: set[int] = field(default_factory=set)
    session_id: int = 0
    last_ams_data: dict | None = None


@dataclass(frozen=True)
class SessionSummary:
    """Immutable copy of a finished session, handed to the usage reconciler."""

    session_id: int
    final_state: str
    started_at: datetime | None
    ended_at: datetime
    active_slots: tuple[int, ...]
    trays_at_start: dict[int, TraySnapshot]
    last_progress_percent: float
    ams_data_at_end: dict | None

    @property
    def failed(self) -> bool:
        return self.final_state == GcodeState.FAILED.value

    @property
    def duration_minutes(self) -> int:
        if self.started_at is None:
            return 0
        return round((self.ended_at - self.started_at).total_seconds() / 60)


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


class PrintSessionTracker:
    """Detects print start/end and records which AMS slots a print used."""

    def __init__(
        self,
        serial_number: str,
        state: SessionState | None = None,
        on_session_end: Callable[[SessionSummary], None] | None = None,
    ):
        self.serial_number = serial_number
        self.state = state if state is not None else SessionState()
        self.on_session_end = on_session_end

    def handle_payload(self, payload: bytes | str) -> None:
        """Decode a raw MQTT payload and process it; undecodable payloads are dropped."""
        try:
            if isinstance(payload, bytes):
                payload = payload.decode()
            data = json.loads(payload)
        except (UnicodeDecodeError, ValueError):
            return
        self.process_message(data)

    def process_message(self, data) -> None:
        if not isinstance(data, dict):
            return
        print_data = data.get("print")
        if not isinstance(print_data, dict):
            return

        state = self.state
        progress = print_data.get("mc_percent")
        if _is_number(progress):
            state.last_progress_percent = float(progress)

        ams_data = print_data.get("ams")
        if not isinstance(ams_data, dict):
            ams_data = None

        if ams_data is not None:
            slot = parse_tray_now(ams_data)
            if slot is not None:
                if state.current_slot_index != slot:
                    logger.info(
                        "[%s] Active tray changed: %s -> %s", self.serial_number, state.current_slot_index, slot
                    )
                    state.current_slot_index = slot
                if state.is_print_running:
                    self._mark_slot_active(slot)

            if state.is_print_running:
                self._capture_ams(ams_data)

        gcode_state = print_data.get("gcode_state")
        if isinstance(gcode_state, str) and gcode_state and gcode_state != state.gcode_state:
            logger.info("[%s] Print state: %s -> %s", self.serial_number, state.gcode_state, gcode_state)
            state.previous_gcode_state = state.gcode_state
            state.gcode_state = gcode_state

            if gcode_state in START_STATES and not state.is_print_running:
                self._start_session(ams_data)
            elif gcode_state in TERMINAL_STATES and state.is_print_running:
                self._end_session(gcode_state)

        if _is_number(progress) and state.is_print_running:
            self._track_milestone(progress)

    def _mark_slot_active(self, slot: int) -> None:
        if slot not in self.state.active_slots:
            self.state.active_slots.append(slot)

    def _capture_ams(self, ams_data: dict) -> None:
        """Remember the latest AMS report; fill the start snapshot if the session began without one."""
        state = self.state
        snapshot = snapshot_trays(ams_data)
        if not snapshot:
            return
        state.last_ams_data = ams_data
        if not state.trays_at_session_start:
            state.trays_at_session_start = snapshot
            logger.info("[%s] AMS tray snapshot captured: %s", self.serial_number, snapshot)
            slot = parse_tray_now(ams_data)
            if slot is not None:
                self._mark_slot_active(slot)

    def _start_session(self, ams_data: dict | None) -> None:
        state = self.state
        state.is_print_running = True
        state.session_id += 1
        state.session_start_time = datetime.now(timezone.utc)
        state.active_slots = []
        state.last_progress_percent = 0.0
        state.progress_milestones_emitted = set()
        state.trays_at_session_start = {}
        state.last_ams_data = None

        if ams_data is not None:
            self._capture_ams(ams_data)
            slot = parse_tray_now(ams_data)
            if slot is not None:
                self._mark_slot_active(slot)
                state.current_slot_index = slot
            logger.info(
                "[%s] Print started, AMS tray snapshot: %s", self.serial_number, state.trays_at_session_start
            )
        else:
            logger.info("[%s] Print started, AMS data will be captured from next message", self.serial_number)

    def _end_session(self, final_state: str) -> None:
        state = self.state
        state.is_print_running = False
        summary = SessionSummary(
            session_id=state.session_id,
            final_state=final_state,
            started_at=state.session_start_time,
            ended_at=datetime.now(timezone.utc),
            active_slots=tuple(state.active_slots),
            trays_at_start=dict(state.trays_at_session_start),
            last_progress_percent=state.last_progress_percent,
            ams_data_at_end=state.last_ams_data,
        )
        logger.info(
            "[%s] Print %s after ~%d minutes", self.serial_number, final_state.lower(), summary.duration_minutes
        )

        if self.on_session_end is None:
            return
        try:
            self.on_session_end(summary)
        except Exception as e:
            logger.error("[%s] Error handing off print end: %s", self.serial_number, e, exc_info=True)

    def _track_milestone(self, progress: float) -> None:
        emitted = self.state.progress_milestones_emitted
        if progress == 0:
            emitted.clear()
            return
        if progress > 0 and progress % MILESTONE_STEP == 0:
            milestone = int(progress)
            if milestone not in emitted:
                emitted.add(milestone)
                logger.info("[%s] Print progress: %d%%", self.serial_number, milestone)
