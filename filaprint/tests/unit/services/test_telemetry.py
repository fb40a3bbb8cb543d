"""Unit tests for telemetry normalization.

Covers fixed-point temperature decoding, nozzle position mapping, status
mapping and topic-class gating.
"""

import json
from dataclasses import replace

import pytest

from filaprint.app.services.payload_utils import dig, to_int, to_number, to_text
from filaprint.app.services.telemetry import (
    FIXED_POINT_RULES,
    TelemetryNormalizer,
    decode_temperature,
    detailed_status,
    humanize_state,
    map_status,
)
from filaprint.app.services.telemetry_models import CompletionRecord, FilamentConsumption, snapshot_to_dict

SERIAL = "01P00A123456789"


class TestDecodeTemperature:
    """Tests for the table-driven fixed-point decoder."""

    def test_fixed_point_nozzle_reading(self):
        """Verify a 16.16 nozzle reading is divided by 65536 and rounded."""
        assert decode_temperature(17694990, "nozzle") == 270

    def test_direct_reading_passes_through(self):
        """Verify readings below the sensor threshold are taken as Celsius."""
        assert decode_temperature(74, "nozzle") == 74
        assert decode_temperature(60.4, "bed") == 60

    def test_threshold_is_per_sensor(self):
        """Verify the same raw value decodes differently per sensor."""
        # 150 is a direct bed reading but above the chamber threshold
        assert decode_temperature(150, "bed") == 150
        assert decode_temperature(150, "chamber") == 0

    def test_fixed_point_chamber(self):
        """Verify chamber fixed-point values decode."""
        assert decode_temperature(35 * 65536, "chamber") == 35

    def test_rules_cover_every_sensor(self):
        """Verify each temperature sensor has a decoding rule."""
        assert set(FIXED_POINT_RULES) == {"nozzle", "bed", "chamber"}
        assert all(rule.divisor == 65536 for rule in FIXED_POINT_RULES.values())


class TestMapStatus:
    """Tests for gcode_state / mc_print_stage status mapping."""

    @pytest.mark.parametrize(
        "gcode_state,expected",
        [
            ("RUNNING", "printing"),
            ("PREPARE", "printing"),
            ("PAUSE", "paused"),
            ("FAILED", "error"),
            ("FINISH", "completed"),
            ("IDLE", "idle"),
            ("HOMING", "homing"),
            ("AUTO_LEVELING", "leveling"),
            ("HEATING", "heating"),
            ("COOLING", "cooling"),
            ("running", "printing"),
        ],
    )
    def test_gcode_state_patterns(self, gcode_state, expected):
        """Verify gcode_state substrings map to the expected status."""
        assert map_status(gcode_state, None) == (expected, "gcode_state")

    def test_stage_fallback(self):
        """Verify mc_print_stage is used when gcode_state is absent."""
        assert map_status(None, 2) == ("paused", "stage")
        assert map_status(None, 4) == ("completed", "stage")

    def test_unrecognized_gcode_state_falls_back_to_stage(self):
        """Verify an unknown gcode_state defers to the stage code."""
        assert map_status("SLICING", 1) == ("printing", "stage")

    def test_no_lifecycle_field_defaults_to_idle(self):
        """Verify the default is idle with no source."""
        assert map_status(None, None) == ("idle", None)
        assert map_status("SLICING", 9) == ("idle", None)


class TestDetailedStatus:
    """Tests for the human-readable status text."""

    def test_stage_name_while_printing(self):
        """Verify stg_cur refines the detail while printing."""
        assert detailed_status("printing", "gcode_state", "RUNNING", None, 2) == "Heatbed preheating"

    def test_stage_name_ignored_when_not_printing(self):
        """Verify stg_cur does not override non-printing states."""
        assert detailed_status("paused", "gcode_state", "PAUSE", None, 2) == "Paused"

    def test_unknown_state_is_humanized(self):
        """Verify unknown states are title-cased from the raw value."""
        assert detailed_status("idle", None, "SOME_NEW_STATE", None) == "Some New State"
        assert humanize_state("RUNNING_SLOW") == "Running Slow"

    def test_nothing_known(self):
        """Verify None is returned when there is nothing to describe."""
        assert detailed_status("idle", None, None, None) is None


class TestTelemetryNormalizer:
    """Tests for TelemetryNormalizer.normalize."""

    @pytest.fixture
    def normalizer(self):
        return TelemetryNormalizer()

    def test_report_nozzle_positions_are_swapped(self, normalizer):
        """Verify raw nozzle_1 becomes the right nozzle and raw nozzle_2 the left."""
        payload = {"print": {"nozzle_temper": {"nozzle_1": 17694990, "nozzle_2": 74}}}

        snapshot = normalizer.normalize(payload, "report", SERIAL)

        assert snapshot.temperatures.nozzle_right == 270
        assert snapshot.temperatures.nozzle_left == 74

    def test_full_report(self, normalizer, report_payload):
        """Verify every block of a full push_status report is populated."""
        snapshot = normalizer.normalize(report_payload, "report", SERIAL, timestamp="2026-01-01T00:00:00+00:00")

        assert snapshot.printer_id == SERIAL
        assert snapshot.timestamp == "2026-01-01T00:00:00+00:00"
        assert snapshot.temperatures.bed == 60
        assert snapshot.temperatures.chamber == 35
        assert snapshot.progress.percentage == 42.0
        assert snapshot.progress.remaining_time == 73
        assert snapshot.progress.current_layer == 120
        assert snapshot.progress.total_layers == 300
        assert snapshot.status.status == "printing"
        assert snapshot.status.detailed_status == "Printing"
        assert snapshot.status.lifecycle_source == "gcode_state"
        assert snapshot.current_print.filename == "benchy.gcode.3mf"
        assert snapshot.current_print.job_name == "benchy"
        assert snapshot.humidity.slot1 == 38.0
        assert [usage.slot for usage in snapshot.ams_usage] == [1, 3]
        assert snapshot.completion is None
        assert snapshot.connection_status == "connected"

    def test_implausible_candidate_falls_through(self, normalizer):
        """Verify a rejected value lets the next candidate path supply the field."""
        payload = {
            "print": {
                "nozzle_temper": {"nozzle_1": 600},
                "device": {"extruder": {"info": [{"id": 0, "temp": 220}]}},
            }
        }

        snapshot = normalizer.normalize(payload, "report", SERIAL)

        assert snapshot.temperatures.nozzle_right == 220

    def test_top_level_fields(self, normalizer):
        """Verify fields outside the print section are found."""
        payload = {"bed_temper": 55, "mc_percent": "12", "gcode_state": "PAUSE"}

        snapshot = normalizer.normalize(payload, "status", SERIAL)

        assert snapshot.temperatures.bed == 55
        assert snapshot.progress.percentage == 12.0
        assert snapshot.status.status == "paused"

    def test_progress_topic_skips_temperatures_and_ams(self, normalizer, report_payload):
        """Verify progress messages only carry progress, status and job fields."""
        snapshot = normalizer.normalize(report_payload, "progress", SERIAL)

        assert snapshot.temperatures.nozzle_right == 0
        assert snapshot.humidity is None
        assert snapshot.ams_usage is None
        assert snapshot.progress.percentage == 42.0

    def test_ams_topic_has_no_lifecycle(self, normalizer):
        """Verify AMS messages never claim a lifecycle status."""
        payload = {"ams": [{"id": "0", "humidity_raw": "20", "tray": [{"id": "0", "remain": 50, "tray_type": "PLA"}]}]}

        snapshot = normalizer.normalize(payload, "ams", SERIAL)

        assert snapshot.status.lifecycle_source is None
        assert snapshot.current_print is None
        assert snapshot.humidity.slot1 == 20.0

    def test_error_code_zero_is_not_an_error(self, normalizer):
        """Verify a zero error code is treated as absent."""
        payload = {"print": {"gcode_state": "RUNNING", "mc_error_code": "0", "print_error": 50348044}}

        snapshot = normalizer.normalize(payload, "report", SERIAL)

        assert snapshot.status.error_code == "50348044"

    @pytest.mark.parametrize("payload", [None, "text", [], {}, {"unrelated": {"field": 1}}])
    def test_unrecognized_payload_returns_none(self, normalizer, payload):
        """Verify payloads with no recognizable field produce no snapshot."""
        assert normalizer.normalize(payload, "report", SERIAL) is None


class TestSnapshotToDict:
    """Tests for JSON-ready snapshot rendering."""

    def test_nested_blocks_become_plain_data(self, report_payload):
        """Verify nested dataclasses and tuples are rendered as dicts and lists."""
        snapshot = TelemetryNormalizer().normalize(report_payload, "report", SERIAL)
        record = CompletionRecord(
            outcome="completed",
            printer_id=SERIAL,
            actual_filament=(FilamentConsumption(slot=1, weight=25.0),),
        )

        data = snapshot_to_dict(replace(snapshot, completion=record))

        assert data["temperatures"]["nozzle_right"] == 270
        assert isinstance(data["ams_usage"], list)
        assert data["ams_usage"][0]["remaining_length"] == 61000
        assert data["completion"]["actual_filament"] == [
            {"slot": 1, "weight": 25.0, "length": None, "material": None, "color": None}
        ]
        json.dumps(data)


class TestPayloadUtils:
    """Tests for loose JSON probing helpers."""

    def test_dig(self):
        """Verify paths through dicts and lists, with None on any miss."""
        data = {"a": {"b": [{"c": 1}]}}

        assert dig(data, ("a", "b", 0, "c")) == 1
        assert dig(data, ("a", "b", 5, "c")) is None
        assert dig(data, ("a", "x")) is None
        assert dig(data, ("a", 0)) is None

    def test_to_number(self):
        """Verify numeric coercion excludes booleans and junk."""
        assert to_number("42.5") == 42.5
        assert to_number(7) == 7.0
        assert to_number(True) is None
        assert to_number("n/a") is None
        assert to_int("nan") is None

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf"), "Infinity", "NaN", 10**400])
    def test_non_finite_numbers_are_absent(self, value):
        """Verify NaN, infinities and overflowing integers are not numbers."""
        assert to_number(value) is None
        assert to_int(value) is None

    def test_to_text(self):
        """Verify blank and structured values are not text."""
        assert to_text("  PLA ") == "PLA"
        assert to_text("") is None
        assert to_text({"x": 1}) is None
        assert to_text(0) == "0"
