"""AMS tray snapshot parsing.

Turns the ``print.ams`` object of a printer status report into per-slot
snapshots. Only the first AMS unit is read; its trays are addressed by list
position (slot 0-3).
"""

import math
from dataclasses import dataclass

MAX_SLOTS = 4
UNKNOWN = "Unknown"

# Tray keys that mean "this slot reports something"
_TRAY_FIELDS = ("tray_type", "tray_sub_brands", "tray_color", "tray_weight", "remain")


@dataclass(frozen=True)
class TraySnapshot:
    slot_index: int
    filament_type: str = UNKNOWN
    sub_brand: str = UNKNOWN
    color_code: str = UNKNOWN
    spool_weight_grams: float | None = None
    remain_percent: float | None = None


def _parse_number(value) -> float | None:
    """Accept finite ints, floats and numeric strings; anything else is unknown."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
    elif not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def _parse_text(value) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return UNKNOWN


def parse_tray(tray, slot_index: int) -> TraySnapshot | None:
    """Build a snapshot for one tray entry, or None when the slot reports nothing."""
    if not isinstance(tray, dict):
        return None
    if not any(key in tray for key in _TRAY_FIELDS):
        return None

    remain = _parse_number(tray.get("remain"))
    if remain is not None and remain < 0:
        # -1 is what the printer sends when it cannot read the spool
        remain = None

    return TraySnapshot(
        slot_index=slot_index,
        filament_type=_parse_text(tray.get("tray_type")),
        sub_brand=_parse_text(tray.get("tray_sub_brands")),
        color_code=_parse_text(tray.get("tray_color")),
        spool_weight_grams=_parse_number(tray.get("tray_weight")),
        remain_percent=remain,
    )


def snapshot_trays(ams_data) -> dict[int, TraySnapshot]:
    """Return slot index -> snapshot for the first AMS unit; {} on malformed input."""
    if not isinstance(ams_data, dict):
        return {}
    units = ams_data.get("ams")
    if not isinstance(units, list) or not units or not isinstance(units[0], dict):
        return {}
    trays = units[0].get("tray")
    if not isinstance(trays, list):
        return {}

    snapshot: dict[int, TraySnapshot] = {}
    for slot_index, tray in enumerate(trays[:MAX_SLOTS]):
        info = parse_tray(tray, slot_index)
        if info is not None:
            snapshot[slot_index] = info
    return snapshot


def parse_tray_now(ams_data) -> int | None:
    """Return the slot currently feeding the extruder, if it is an AMS slot (0-3)."""
    if not isinstance(ams_data, dict) or "tray_now" not in ams_data:
        return None
    value = ams_data["tray_now"]
    if isinstance(value, bool):
        return None
    try:
        slot = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    # 254 = external spool, 255 = nothing loaded
    if 0 <= slot < MAX_SLOTS:
        return slot
    return None
