"""Telemetry normalization for Bambu Lab printer reports.

The same logical value shows up under different keys depending on the
report type and firmware revision, so each field is described by an
ordered table of candidate paths. The first candidate whose decoded value
passes the field's plausibility check wins; if none does, the field keeps
its zero/None default.

Temperatures may arrive as 16.16 fixed-point integers. Decoding is
per-sensor and table-driven (FIXED_POINT_RULES) because the thresholds were
inferred from observed traffic and differ between report types.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from filaprint.app.core.config import settings
from filaprint.app.services.ams_extractor import extract_humidity, extract_usage, locate_ams
from filaprint.app.services.payload_utils import Path, dig, to_int, to_number, to_text
from filaprint.app.services.telemetry_models import (
    CurrentPrint,
    LiveSnapshot,
    PrinterStatus,
    ProgressData,
    StatusData,
    TemperatureData,
    TopicClass,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FixedPointRule:
    """Readings above `threshold` are fixed-point and get divided by `divisor`.

    `threshold` is the highest direct-Celsius value the sensor can plausibly report.
    """
    threshold: float
    divisor: int = 65536


FIXED_POINT_RULES: dict[str, FixedPointRule] = {
    "nozzle": FixedPointRule(threshold=500),
    "bed": FixedPointRule(threshold=200),
    "chamber": FixedPointRule(threshold=100),
}


def decode_temperature(raw: float, sensor: str) -> int:
    """Decode a raw temperature reading to whole degrees."""
    rule = FIXED_POINT_RULES[sensor]
    if raw > rule.threshold:
        return round(raw / rule.divisor)
    return round(raw)


def _plausible_temperature(sensor: str) -> Callable[[float], bool]:
    limit = FIXED_POINT_RULES[sensor].threshold
    return lambda value: 0 < value <= limit


@dataclass(frozen=True)
class Extraction:
    """One candidate location for a logical field."""
    name: str
    path: Path
    sensor: str | None = None  # fixed-point rule to apply, if any


def _candidates(sensor: str | None, *paths: Path) -> tuple[Extraction, ...]:
    return tuple(Extraction(".".join(str(step) for step in path), path, sensor) for path in paths)


# Raw "nozzle_1" is the physical RIGHT nozzle, raw "nozzle_2" the LEFT one.
# device.extruder.info follows the same order (id 0 = right).
RAW_NOZZLE_1 = _candidates(
    "nozzle",
    ("print", "nozzle_temper", "nozzle_1"),
    ("nozzle_temper", "nozzle_1"),
    ("print", "device", "extruder", "info", 0, "temp"),
    ("print", "nozzle_temp_1"),
    ("print", "nozzle_1"),
    ("nozzle_temp_1",),
    ("print", "nozzle_temper"),
    ("nozzle_temper",),
)
RAW_NOZZLE_2 = _candidates(
    "nozzle",
    ("print", "nozzle_temper", "nozzle_2"),
    ("nozzle_temper", "nozzle_2"),
    ("print", "device", "extruder", "info", 1, "temp"),
    ("print", "nozzle_temp_2"),
    ("print", "nozzle_2"),
    ("print", "nozzle_temper_2"),
    ("nozzle_temp_2",),
)
BED = _candidates(
    "bed",
    ("print", "bed_temper"),
    ("bed_temper",),
    ("print", "device", "bed", "info", "temp"),
    ("print", "bed_temp"),
    ("bed_temp",),
)
CHAMBER = _candidates(
    "chamber",
    ("print", "chamber_temper"),
    ("chamber_temper",),
    ("print", "device", "ctc", "info", "temp"),
    ("print", "info", "temp"),
    ("print", "chamber_temp"),
    ("chamber_temp",),
)
PERCENT = _candidates(None, ("print", "mc_percent"), ("mc_percent",), ("print", "percent"), ("percent",))
REMAINING_TIME = _candidates(None, ("print", "mc_remaining_time"), ("mc_remaining_time",))
LAYER = _candidates(None, ("print", "layer_num"), ("layer_num",))
TOTAL_LAYERS = _candidates(None, ("print", "total_layer_num"), ("total_layer_num",))
GCODE_STATE = _candidates(None, ("print", "gcode_state"), ("gcode_state",))
PRINT_STAGE = _candidates(None, ("print", "mc_print_stage"), ("mc_print_stage",))
STAGE_CURRENT = _candidates(None, ("print", "stg_cur"), ("stg_cur",))
ERROR_CODE = _candidates(
    None,
    ("print", "mc_error_code"),
    ("mc_error_code",),
    ("print", "print_error"),
    ("print_error",),
)
ERROR_MESSAGE = _candidates(None, ("print", "mc_error_msg"), ("mc_error_msg",), ("print", "error_message"))
GCODE_FILE = _candidates(None, ("print", "gcode_file"), ("gcode_file",))
SUBTASK_NAME = _candidates(None, ("print", "subtask_name"), ("subtask_name",))

# Substring checks on the upper-cased gcode_state, in priority order
GCODE_STATE_PATTERNS: tuple[tuple[tuple[str, ...], PrinterStatus], ...] = (
    (("HOMING",), "homing"),
    (("LEVEL",), "leveling"),
    (("HEAT",), "heating"),
    (("COOL",), "cooling"),
    (("PAUSE",), "paused"),
    (("ERROR", "FAIL"), "error"),
    (("FINISH", "COMPLET"), "completed"),
    (("PRINT", "RUNNING", "PREPARE"), "printing"),
    (("IDLE",), "idle"),
)

# mc_print_stage fallback when gcode_state is absent or unrecognized
STAGE_STATUS: dict[int, PrinterStatus] = {
    0: "idle",
    1: "printing",
    2: "paused",
    3: "error",
    4: "completed",
}

GCODE_STATE_DETAILS = {
    "IDLE": "Idle",
    "PREPARE": "Preparing print",
    "RUNNING": "Printing",
    "PAUSE": "Paused",
    "FINISH": "Print finished",
    "FAILED": "Print failed",
    "SLICING": "Slicing",
}

STATUS_DETAILS: dict[PrinterStatus, str] = {
    "homing": "Homing toolhead",
    "leveling": "Auto bed leveling",
    "heating": "Heating",
    "cooling": "Cooling",
}

STAGE_DETAILS = {
    0: "Idle",
    1: "Printing",
    2: "Paused",
    3: "Error",
    4: "Completed",
}

# stg_cur values seen while a job is running (BambuStudio DeviceManager naming)
STAGE_NAMES = {
    1: "Auto bed leveling",
    2: "Heatbed preheating",
    3: "Vibration compensation",
    4: "Changing filament",
    5: "M400 pause",
    6: "Paused (filament ran out)",
    7: "Heating nozzle",
    8: "Calibrating dynamic flow",
    9: "Scanning bed surface",
    10: "Inspecting first layer",
    11: "Identifying build plate type",
    12: "Calibrating Micro Lidar",
    13: "Homing toolhead",
    14: "Cleaning nozzle tip",
    15: "Checking extruder temperature",
    16: "Paused by the user",
    17: "Pause (front cover fall off)",
    18: "Calibrating the micro lidar",
    19: "Calibrating flow ratio",
    20: "Pause (nozzle temperature malfunction)",
    21: "Pause (heatbed temperature malfunction)",
    22: "Filament unloading",
    24: "Filament loading",
    29: "Cooling chamber",
}


def map_status(gcode_state: str | None, stage: int | None) -> tuple[PrinterStatus, str | None]:
    """Map raw lifecycle fields to (status, source).

    source is "gcode_state" or "stage" for the field that decided, or None
    when neither field was usable and the idle default applies.
    """
    if gcode_state:
        upper = gcode_state.upper()
        for needles, status in GCODE_STATE_PATTERNS:
            if any(needle in upper for needle in needles):
                return status, "gcode_state"
    if stage is not None and stage in STAGE_STATUS:
        return STAGE_STATUS[stage], "stage"
    return "idle", None


def humanize_state(raw: str) -> str:
    """RUNNING_SLOW -> Running Slow"""
    words = raw.replace("_", " ").replace("-", " ").split()
    return " ".join(word.capitalize() for word in words)


def detailed_status(
    status: PrinterStatus,
    source: str | None,
    gcode_state: str | None,
    stage: int | None,
    stage_current: int | None = None,
) -> str | None:
    if status == "printing" and stage_current in STAGE_NAMES:
        return STAGE_NAMES[stage_current]
    if gcode_state and gcode_state.upper() in GCODE_STATE_DETAILS:
        return GCODE_STATE_DETAILS[gcode_state.upper()]
    if source == "gcode_state" and status in STATUS_DETAILS:
        return STATUS_DETAILS[status]
    if source == "stage" and stage in STAGE_DETAILS:
        return STAGE_DETAILS[stage]
    if gcode_state:
        return humanize_state(gcode_state)
    return None


class _Probe:
    """Runs candidate tables against one payload and remembers if anything matched."""

    def __init__(self, payload: dict):
        self.payload = payload
        self.recognized = False

    def raw(self, candidates: tuple[Extraction, ...]) -> Any:
        for candidate in candidates:
            value = dig(self.payload, candidate.path)
            if value is not None and not isinstance(value, (dict, list)):
                self.recognized = True
                return value
        return None

    def number(
        self,
        candidates: tuple[Extraction, ...],
        accept: Callable[[float], bool] = lambda value: value > 0,
    ) -> float | None:
        for candidate in candidates:
            raw = to_number(dig(self.payload, candidate.path))
            if raw is None:
                continue
            self.recognized = True
            value = decode_temperature(raw, candidate.sensor) if candidate.sensor else raw
            if accept(value):
                return value
            logger.debug(f"{candidate.name}={raw} rejected as implausible")
        return None

    def text(self, candidates: tuple[Extraction, ...], skip: tuple[str, ...] = ()) -> str | None:
        for candidate in candidates:
            value = to_text(dig(self.payload, candidate.path))
            if value is None:
                continue
            self.recognized = True
            if value in skip:
                continue
            return value
        return None


class TelemetryNormalizer:
    """Builds a LiveSnapshot from one parsed MQTT payload."""

    def __init__(self, default_spool_length: float | None = None):
        self.default_spool_length = (
            default_spool_length if default_spool_length is not None else settings.default_spool_length_mm
        )

    def normalize(
        self,
        payload: Any,
        topic_class: TopicClass,
        printer_id: str,
        timestamp: str | None = None,
    ) -> LiveSnapshot | None:
        """Return a snapshot, or None if the payload has no field we recognize."""
        if not isinstance(payload, dict):
            return None

        probe = _Probe(payload)
        temperatures = TemperatureData()
        progress = ProgressData()
        status = StatusData()
        current_print = None
        humidity = None
        ams_usage = None

        if topic_class in ("report", "status"):
            temperatures = self._temperatures(probe)
        if topic_class != "ams":
            progress = self._progress(probe)
            status = self._status(probe)
            current_print = self._current_print(probe)
        if topic_class != "progress":
            view = locate_ams(payload)
            if view is not None:
                probe.recognized = True
                humidity = extract_humidity(view)
                ams_usage = extract_usage(view, self.default_spool_length)

        if not probe.recognized:
            logger.debug(f"[{printer_id}] No recognizable fields in {topic_class} message")
            return None

        return LiveSnapshot(
            timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
            printer_id=printer_id,
            topic_class=topic_class,
            temperatures=temperatures,
            progress=progress,
            status=status,
            humidity=humidity,
            current_print=current_print,
            ams_usage=ams_usage,
        )

    def _temperatures(self, probe: _Probe) -> TemperatureData:
        raw_nozzle_1 = probe.number(RAW_NOZZLE_1, _plausible_temperature("nozzle"))
        raw_nozzle_2 = probe.number(RAW_NOZZLE_2, _plausible_temperature("nozzle"))
        bed = probe.number(BED, _plausible_temperature("bed"))
        chamber = probe.number(CHAMBER, _plausible_temperature("chamber"))
        return TemperatureData(
            nozzle_left=int(raw_nozzle_2 or 0),
            nozzle_right=int(raw_nozzle_1 or 0),
            bed=int(bed or 0),
            chamber=int(chamber or 0),
        )

    def _progress(self, probe: _Probe) -> ProgressData:
        percentage = probe.number(PERCENT, lambda value: 0 < value <= 100)
        remaining = probe.number(REMAINING_TIME)
        layer = probe.number(LAYER)
        total_layers = probe.number(TOTAL_LAYERS)
        return ProgressData(
            percentage=float(percentage or 0.0),
            remaining_time=int(remaining or 0),
            current_layer=int(layer or 0),
            total_layers=int(total_layers or 0),
        )

    def _status(self, probe: _Probe) -> StatusData:
        gcode_state = probe.text(GCODE_STATE)
        stage = to_int(probe.raw(PRINT_STAGE))
        stage_current = to_int(probe.raw(STAGE_CURRENT))
        status, source = map_status(gcode_state, stage)
        return StatusData(
            status=status,
            error_code=probe.text(ERROR_CODE, skip=("0",)),
            error_message=probe.text(ERROR_MESSAGE),
            detailed_status=detailed_status(status, source, gcode_state, stage, stage_current),
            lifecycle_source=source,
        )

    def _current_print(self, probe: _Probe) -> CurrentPrint | None:
        filename = probe.text(GCODE_FILE)
        job_name = probe.text(SUBTASK_NAME)
        gcode_state = probe.text(GCODE_STATE)
        if filename is None and job_name is None and gcode_state is None:
            return None
        return CurrentPrint(filename=filename, job_name=job_name, gcode_state=gcode_state)
