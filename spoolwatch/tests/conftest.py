"""Shared fixtures."""

import pytest

from spoolwatch.tests.factories import make_ams, make_tray


@pytest.fixture
def four_trays():
    """Slot 0 PLA Matte black, slot 1 PLA Basic red, slot 2 PETG white, slot 3 empty."""
    return [
        make_tray("PLA", "PLA Matte", "000000FF", "1000", 90),
        make_tray("PLA", "PLA Basic", "FF0000FF", "1000", 60),
        make_tray("PETG", "PETG HF", "FFFFFFFF", "1000", 40),
        {"id": "3"},
    ]


@pytest.fixture
def ams_report(four_trays):
    return make_ams(four_trays, tray_now="0")
