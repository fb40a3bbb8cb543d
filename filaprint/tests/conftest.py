"""Shared test fixtures for filaprint-link tests."""

import os

import pytest

# IMPORTANT: Set environment variables BEFORE any app imports
# This must happen before settings/config are loaded
os.environ["LOG_TO_FILE"] = "false"
os.environ["DEBUG"] = "false"

from filaprint.app.core.config import settings  # noqa: E402
from filaprint.app.schemas.link import LinkConfig  # noqa: E402

settings.log_to_file = False

TEST_SERIAL = "01P00A123456789"


@pytest.fixture
def link_config():
    """A valid link configuration for a LAN printer."""
    return LinkConfig(
        host="192.168.1.100",
        serial_number=TEST_SERIAL,
        password="12345678",
        reconnect_period=0.01,
        connect_timeout=1.0,
    )


@pytest.fixture
def report_payload():
    """A push_status report as sent by an H2D mid-print."""
    return {
        "print": {
            "command": "push_status",
            "nozzle_temper": {"nozzle_1": 17694990, "nozzle_2": 74},
            "bed_temper": 60,
            "chamber_temper": 35,
            "mc_percent": 42,
            "mc_remaining_time": 73,
            "layer_num": 120,
            "total_layer_num": 300,
            "gcode_state": "RUNNING",
            "gcode_file": "benchy.gcode.3mf",
            "subtask_name": "benchy",
            "ams": {
                "tray_now": "0",
                "ams": [
                    {
                        "id": "0",
                        "humidity": "4",
                        "humidity_raw": "38",
                        "tray": [
                            {"id": "0", "remain": 61, "total_len": 330000, "tray_type": "PLA", "tray_color": "FF0000FF"},
                            {"id": "1", "remain": 0},
                            {"id": "2", "remain": 200000, "tray_type": "PETG", "tray_color": "000000FF"},
                            {"id": "3"},
                        ],
                    }
                ],
            },
        }
    }
