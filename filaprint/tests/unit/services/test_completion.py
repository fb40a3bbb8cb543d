"""Unit tests for print completion detection."""

import json

import pytest

from filaprint.app.services.completion import (
    CompletionDetector,
    classify_transition,
    extract_consumption,
)
from filaprint.app.services.telemetry import TelemetryNormalizer
from filaprint.app.services.telemetry_models import (
    CurrentPrint,
    LiveSnapshot,
    ProgressData,
    StatusData,
)

SERIAL = "01P00A123456789"


def make_snapshot(status, percentage=0.0, printer_id=SERIAL, source="gcode_state", filename=None, **status_fields):
    return LiveSnapshot(
        timestamp="2026-01-01T00:00:00+00:00",
        printer_id=printer_id,
        topic_class="report",
        progress=ProgressData(percentage=percentage),
        status=StatusData(status=status, lifecycle_source=source, **status_fields),
        current_print=CurrentPrint(filename=filename) if filename else None,
    )


class TestClassifyTransition:
    """Tests for outcome classification of status edges."""

    def test_printing_to_completed(self):
        """Verify printing -> completed is a completed print."""
        assert classify_transition("printing", "completed", 100) == "completed"

    def test_printing_to_error(self):
        """Verify printing -> error is a failed print."""
        assert classify_transition("printing", "error", 40) == "failed"

    def test_printing_to_idle_below_100(self):
        """Verify dropping to idle before 100% is a cancellation."""
        assert classify_transition("printing", "idle", 55) == "cancelled"

    def test_paused_to_idle_at_100(self):
        """Verify idle reached at 100% counts as completed."""
        assert classify_transition("paused", "idle", 100) == "completed"

    @pytest.mark.parametrize(
        "previous,current",
        [
            (None, "completed"),
            ("idle", "completed"),
            ("completed", "completed"),
            ("printing", "printing"),
            ("printing", "paused"),
            ("printing", "heating"),
        ],
    )
    def test_non_completion_edges(self, previous, current):
        """Verify edges that are not active -> terminal do not classify."""
        assert classify_transition(previous, current, 100) is None


class TestCompletionDetector:
    """Tests for the per-printer completion state machine."""

    @pytest.fixture
    def detector(self):
        return CompletionDetector()

    def test_fires_once_per_edge(self, detector):
        """Verify printing, printing, completed x3 yields exactly one record."""
        statuses = ["printing", "printing", "completed", "completed", "completed"]

        records = [detector.process(make_snapshot(s)) for s in statuses]

        fired = [r for r in records if r is not None]
        assert len(fired) == 1
        assert fired[0].outcome == "completed"
        assert records[2] is fired[0]

    def test_non_finite_print_time_still_fires_once(self, detector):
        """Verify an overflowing print_time leaves duration unset and the edge is recorded."""
        payload = json.loads('{"print": {"gcode_state": "FINISH", "print_time": 1e400, "mc_print_time": NaN}}')
        detector.process(make_snapshot("printing"))

        records = [detector.process(make_snapshot("completed"), payload) for _ in range(3)]

        assert records[0] is not None
        assert records[0].duration is None
        assert records[1:] == [None, None]
        assert detector.previous_status(SERIAL) == "completed"

    def test_first_message_never_fires(self, detector):
        """Verify a terminal status with no history does not fire."""
        assert detector.process(make_snapshot("completed")) is None
        assert detector.previous_status(SERIAL) == "completed"

    def test_failed_record_carries_error(self, detector):
        """Verify the error code and message are copied onto a failed record."""
        detector.process(make_snapshot("printing"))

        record = detector.process(make_snapshot("error", error_code="0300-4000", error_message="Nozzle clog"))

        assert record.outcome == "failed"
        assert record.error_code == "0300-4000"
        assert record.error_message == "Nozzle clog"

    def test_cancelled_uses_remembered_progress(self, detector):
        """Verify progress seen while active decides an idle transition."""
        detector.process(make_snapshot("printing", percentage=30))

        record = detector.process(make_snapshot("idle"))

        assert record.outcome == "cancelled"

    def test_idle_after_full_progress_is_completed(self, detector):
        """Verify idle after 100% progress is a completed print."""
        detector.process(make_snapshot("printing", percentage=100))

        assert detector.process(make_snapshot("idle")).outcome == "completed"

    def test_snapshot_without_lifecycle_is_ignored(self, detector):
        """Verify AMS-only snapshots neither fire nor reset the stored status."""
        detector.process(make_snapshot("printing"))

        assert detector.process(make_snapshot("idle", source=None)) is None
        assert detector.previous_status(SERIAL) == "printing"

    def test_remembers_job_identity(self, detector):
        """Verify filename from earlier reports is carried onto the record."""
        detector.process(make_snapshot("printing", filename="cube.gcode.3mf"))

        record = detector.process(make_snapshot("completed"))

        assert record.filename == "cube.gcode.3mf"

    def test_printers_are_independent(self, detector):
        """Verify one printer's history does not affect another."""
        detector.process(make_snapshot("printing", printer_id="A"))

        assert detector.process(make_snapshot("completed", printer_id="B")) is None
        assert detector.process(make_snapshot("completed", printer_id="A")).printer_id == "A"

    def test_second_job_fires_again(self, detector):
        """Verify a new print after a completion can complete again."""
        for status in ("printing", "completed", "printing"):
            detector.process(make_snapshot(status))

        assert detector.process(make_snapshot("completed")) is not None

    def test_reset(self, detector):
        """Verify reset forgets the stored transition state."""
        detector.process(make_snapshot("printing"))
        detector.reset(SERIAL)

        assert detector.previous_status(SERIAL) is None
        assert detector.process(make_snapshot("completed")) is None

    def test_end_to_end_lifecycle(self, detector):
        """Verify idle->printing->paused->printing->completed yields one record with slot-1 consumption."""
        normalizer = TelemetryNormalizer()
        payloads = [
            {"print": {"gcode_state": "IDLE"}},
            {"print": {"gcode_state": "RUNNING", "gcode_file": "part.3mf", "mc_percent": 10, "total_layer_num": 50}},
            {"print": {"gcode_state": "PAUSE", "mc_percent": 60, "layer_num": 30}},
            {"print": {"gcode_state": "RUNNING", "mc_percent": 90, "layer_num": 45}},
            {"print": {"gcode_state": "FINISH", "mc_percent": 100, "layer_num": 50, "mc_print_time": 95,
                       "actualFilament": [{"slot": 1, "weight": 25}]}},
        ]

        records = []
        for payload in payloads:
            snapshot = normalizer.normalize(payload, "report", SERIAL)
            record = detector.process(snapshot, payload)
            if record is not None:
                records.append(record)

        assert len(records) == 1
        (record,) = records
        assert record.outcome == "completed"
        assert record.filename == "part.3mf"
        assert record.layers_completed == 50
        assert record.total_layers == 50
        assert record.duration == 95 * 60
        assert len(record.actual_filament) == 1
        assert record.actual_filament[0].slot == 1
        assert record.actual_filament[0].weight == 25


class TestExtractConsumption:
    """Tests for actual filament consumption extraction."""

    def test_explicit_list_wins(self):
        """Verify an explicit actual_filament list is used as-is."""
        payload = {
            "print": {"actual_filament": [{"slot": 2, "weight": 10, "length": 3000, "material": "PETG"}]},
            "ams": [{"tray": [{"id": "0", "used_weight": 99}]}],
        }

        (entry,) = extract_consumption(payload)

        assert (entry.slot, entry.weight, entry.length, entry.material) == (2, 10, 3000, "PETG")

    def test_invalid_entries_skipped(self):
        """Verify entries without a valid slot are dropped."""
        payload = {"actualFilament": [{"weight": 5}, "junk", {"slot": 0}, {"slot": "3", "weight": 1}]}

        assert [entry.slot for entry in extract_consumption(payload)] == [3]

    def test_falls_back_to_tray_fields(self):
        """Verify AMS tray usage fields are used without an explicit list."""
        payload = {"print": {"ams": {"ams": [{"tray": [{"id": "1", "used_weight": 7}]}]}}}

        (entry,) = extract_consumption(payload)

        assert entry.slot == 2
        assert entry.weight == 7

    def test_nothing_reported(self):
        """Verify an empty tuple when no consumption data exists."""
        assert extract_consumption({"print": {}}) == ()
        assert extract_consumption(None) == ()
