"""Normalized telemetry types produced from printer MQTT reports.

Every type here is frozen: a snapshot is built once per inbound message,
handed to subscribers and never mutated afterwards.
"""

from dataclasses import asdict, dataclass, field
from typing import Literal

PrinterStatus = Literal[
    "idle",
    "printing",
    "paused",
    "error",
    "completed",
    "homing",
    "leveling",
    "heating",
    "cooling",
]
CompletionOutcome = Literal["completed", "failed", "cancelled"]
TopicClass = Literal["report", "status", "progress", "ams"]


@dataclass(frozen=True)
class TemperatureData:
    """Temperatures in whole degrees Celsius.

    nozzle_left/nozzle_right are logical positions; the raw feed labels them
    the other way round (raw nozzle_2 is the left nozzle).
    """
    nozzle_left: int = 0
    nozzle_right: int = 0
    bed: int = 0
    chamber: int = 0


@dataclass(frozen=True)
class HumidityData:
    slot1: float = 0.0
    slot2: float = 0.0
    slot3: float = 0.0
    slot4: float = 0.0
    average: float = 0.0


@dataclass(frozen=True)
class ProgressData:
    percentage: float = 0.0
    remaining_time: int = 0  # minutes
    current_layer: int = 0
    total_layers: int = 0


@dataclass(frozen=True)
class StatusData:
    status: PrinterStatus = "idle"
    error_code: str | None = None
    error_message: str | None = None
    detailed_status: str | None = None
    # Which raw field decided `status`: "gcode_state", "stage", or None when
    # the message carried no lifecycle field at all (status is then a default)
    lifecycle_source: str | None = None


@dataclass(frozen=True)
class CurrentPrint:
    filename: str | None = None
    job_name: str | None = None
    gcode_state: str | None = None


@dataclass(frozen=True)
class FilamentUsage:
    """Per-slot material state derived from a single AMS report."""
    slot: int
    remaining_length: float  # mm
    total_length: float  # mm
    used_length: float  # mm
    used_percentage: float  # 0-100
    material: str | None = None
    color: str | None = None
    active: bool = False


@dataclass(frozen=True)
class FilamentConsumption:
    slot: int
    weight: float | None = None  # grams
    length: float | None = None  # mm
    material: str | None = None
    color: str | None = None


@dataclass(frozen=True)
class CompletionRecord:
    outcome: CompletionOutcome
    printer_id: str
    filename: str | None = None
    job_name: str | None = None
    duration: int | None = None  # seconds
    estimated_filament: float | None = None  # grams, slicer estimate
    actual_filament: tuple[FilamentConsumption, ...] = ()
    layers_completed: int = 0
    total_layers: int = 0
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class LiveSnapshot:
    timestamp: str
    printer_id: str
    topic_class: TopicClass
    temperatures: TemperatureData = field(default_factory=TemperatureData)
    progress: ProgressData = field(default_factory=ProgressData)
    status: StatusData = field(default_factory=StatusData)
    humidity: HumidityData | None = None
    current_print: CurrentPrint | None = None
    ams_usage: tuple[FilamentUsage, ...] | None = None
    completion: CompletionRecord | None = None
    connection_status: str = "connected"


def snapshot_to_dict(snapshot: LiveSnapshot) -> dict:
    """Convert a snapshot (and any nested completion record) to a JSON-ready dict."""
    data = asdict(snapshot)
    if data["ams_usage"] is not None:
        data["ams_usage"] = list(data["ams_usage"])
    if data["completion"] is not None:
        data["completion"]["actual_filament"] = list(data["completion"]["actual_filament"])
    return data
