"""Print completion detection.

A completion fires on the edge from an active status (printing, paused) to a
terminal one (completed, error, idle). The previous status is stored per
printer and overwritten on every lifecycle-bearing snapshot, so a terminal
status that keeps repeating cannot fire again.

Push reports are incremental: the message that carries FINISH often lacks
the file name and progress. The per-printer entry therefore also remembers
the last job identity and progress seen while active.
"""

import logging
import threading
from dataclasses import dataclass

from filaprint.app.services.ams_extractor import extract_tray_consumption, locate_ams
from filaprint.app.services.payload_utils import dig, to_int, to_number, to_text
from filaprint.app.services.telemetry_models import (
    CompletionOutcome,
    CompletionRecord,
    FilamentConsumption,
    LiveSnapshot,
    PrinterStatus,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES: frozenset[str] = frozenset({"printing", "paused"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "error", "idle"})

# Elapsed print time, reported in minutes
ELAPSED_MINUTES_PATHS = (
    ("print", "print_time"),
    ("print", "mc_print_time"),
    ("print", "elapsed_time"),
    ("print_time",),
    ("elapsed_time",),
)
# Slicer estimate of total filament, grams
ESTIMATED_FILAMENT_PATHS = (
    ("print", "estimated_filament"),
    ("print", "estimatedFilament"),
    ("print", "total_filament_weight"),
    ("print", "filament_weight"),
    ("estimated_filament",),
    ("estimatedFilament",),
)
ACTUAL_FILAMENT_PATHS = (
    ("print", "actual_filament"),
    ("print", "actualFilament"),
    ("actual_filament",),
    ("actualFilament",),
)


@dataclass
class _DeviceTransition:
    status: PrinterStatus
    filename: str | None = None
    job_name: str | None = None
    percentage: float = 0.0
    current_layer: int = 0
    total_layers: int = 0


def classify_transition(
    previous: str | None,
    current: str,
    percentage: float,
) -> CompletionOutcome | None:
    """Outcome for a previous -> current status edge, or None if it is not a completion."""
    if previous not in ACTIVE_STATUSES or current not in TERMINAL_STATUSES:
        return None
    if current == "completed":
        return "completed"
    if current == "error":
        return "failed"
    # idle straight from active: aborted unless the job had actually reached 100%
    return "cancelled" if percentage < 100 else "completed"


def _first_number(payload: dict, paths) -> float | None:
    for path in paths:
        value = to_number(dig(payload, path))
        if value is not None and value > 0:
            return value
    return None


def _explicit_consumption(payload: dict) -> tuple[FilamentConsumption, ...] | None:
    for path in ACTUAL_FILAMENT_PATHS:
        entries = dig(payload, path)
        if not isinstance(entries, list):
            continue
        consumption = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            slot = to_int(entry.get("slot"))
            if slot is None or slot < 1:
                continue
            consumption.append(FilamentConsumption(
                slot=slot,
                weight=to_number(entry.get("weight")),
                length=to_number(entry.get("length")),
                material=to_text(entry.get("material")),
                color=to_text(entry.get("color")),
            ))
        return tuple(consumption)
    return None


def extract_consumption(payload: dict | None) -> tuple[FilamentConsumption, ...]:
    """Per-slot consumption: an explicit list if the payload has one, else AMS tray fields."""
    if not isinstance(payload, dict):
        return ()
    explicit = _explicit_consumption(payload)
    if explicit is not None:
        return explicit
    view = locate_ams(payload)
    if view is None:
        return ()
    return extract_tray_consumption(view)


class CompletionDetector:
    """Per-printer state machine emitting one CompletionRecord per active->terminal edge."""

    def __init__(self):
        self._devices: dict[str, _DeviceTransition] = {}
        self._lock = threading.Lock()

    def previous_status(self, printer_id: str) -> PrinterStatus | None:
        with self._lock:
            entry = self._devices.get(printer_id)
            return entry.status if entry else None

    def reset(self, printer_id: str | None = None):
        """Forget transition state for one printer, or all of them."""
        with self._lock:
            if printer_id is None:
                self._devices.clear()
            else:
                self._devices.pop(printer_id, None)

    def process(self, snapshot: LiveSnapshot, payload: dict | None = None) -> CompletionRecord | None:
        """Feed one snapshot; returns a record only on a completion edge.

        Snapshots without a lifecycle field (e.g. AMS-only messages) neither
        fire nor update the stored status.
        """
        if snapshot.status.lifecycle_source is None:
            return None

        printer_id = snapshot.printer_id
        current = snapshot.status.status
        with self._lock:
            entry = self._devices.get(printer_id)
            previous = entry.status if entry else None
            if entry is None:
                entry = _DeviceTransition(status=current)
                self._devices[printer_id] = entry
            self._remember_job(entry, snapshot)
            outcome = classify_transition(
                previous,
                current,
                snapshot.progress.percentage or entry.percentage,
            )
            record = self._build_record(outcome, snapshot, entry, payload) if outcome else None
            entry.status = current
            if record is not None:
                entry.percentage = 0.0
                entry.current_layer = 0
                entry.total_layers = 0

        if record is not None:
            logger.info(
                f"[{printer_id}] PRINT COMPLETE detected - {previous} -> {current}, "
                f"outcome: {record.outcome}, file: {record.filename}, job: {record.job_name}"
            )
        return record

    @staticmethod
    def _remember_job(entry: _DeviceTransition, snapshot: LiveSnapshot):
        current_print = snapshot.current_print
        if current_print is not None:
            if current_print.filename:
                entry.filename = current_print.filename
            if current_print.job_name:
                entry.job_name = current_print.job_name
        progress = snapshot.progress
        if progress.percentage > 0:
            entry.percentage = progress.percentage
        if progress.current_layer > 0:
            entry.current_layer = progress.current_layer
        if progress.total_layers > 0:
            entry.total_layers = progress.total_layers

    @staticmethod
    def _build_record(
        outcome: CompletionOutcome,
        snapshot: LiveSnapshot,
        entry: _DeviceTransition,
        payload: dict | None,
    ) -> CompletionRecord:
        payload = payload if isinstance(payload, dict) else {}
        elapsed_minutes = _first_number(payload, ELAPSED_MINUTES_PATHS)
        status = snapshot.status
        return CompletionRecord(
            outcome=outcome,
            printer_id=snapshot.printer_id,
            filename=entry.filename,
            job_name=entry.job_name,
            duration=round(elapsed_minutes * 60) if elapsed_minutes is not None else None,
            estimated_filament=_first_number(payload, ESTIMATED_FILAMENT_PATHS),
            actual_filament=extract_consumption(payload),
            layers_completed=snapshot.progress.current_layer or entry.current_layer,
            total_layers=snapshot.progress.total_layers or entry.total_layers,
            error_code=status.error_code,
            error_message=status.error_message,
        )
