"""In-memory store of live printer telemetry.

Keeps the latest snapshot per printer plus a bounded history that can be
queried by time range and summarized.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from filaprint.app.core.config import settings
from filaprint.app.services.telemetry_models import LiveSnapshot

logger = logging.getLogger(__name__)


@dataclass
class _PrinterData:
    history: deque
    current: LiveSnapshot | None = None
    last_updated: str | None = None


@dataclass(frozen=True)
class PrinterStatistics:
    total_data_points: int = 0
    first_data_point: str | None = None
    last_data_point: str | None = None
    average_temperature: int = 0  # mean of both nozzles
    average_humidity: int = 0


@dataclass(frozen=True)
class PrinterLiveData:
    printer_id: str
    data: LiveSnapshot | None
    last_updated: str | None


@dataclass(frozen=True)
class StoreStatus:
    total_printers: int
    total_data_points: int
    printers: list[str] = field(default_factory=list)


def _parse_time(value: str | datetime) -> datetime:
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LiveDataStore:
    def __init__(self, max_history: int | None = None):
        self.max_history = max_history or settings.live_history_size
        self._printers: dict[str, _PrinterData] = {}
        self._lock = threading.Lock()

    def store(self, snapshot: LiveSnapshot):
        """Record a snapshot as the printer's current data and append it to history."""
        with self._lock:
            data = self._printers.get(snapshot.printer_id)
            if data is None:
                data = _PrinterData(history=deque(maxlen=self.max_history))
                self._printers[snapshot.printer_id] = data
            data.current = snapshot
            data.last_updated = snapshot.timestamp
            data.history.append(snapshot)
        logger.debug(
            f"[{snapshot.printer_id}] Stored live data: status={snapshot.status.status}, "
            f"nozzle={snapshot.temperatures.nozzle_right}"
        )

    def get_current(self, printer_id: str) -> LiveSnapshot | None:
        with self._lock:
            data = self._printers.get(printer_id)
            return data.current if data else None

    def get_history(
        self,
        printer_id: str,
        limit: int = 100,
        start_time: str | datetime | None = None,
        end_time: str | datetime | None = None,
    ) -> list[LiveSnapshot]:
        """History newest first, optionally bounded to [start_time, end_time]."""
        with self._lock:
            data = self._printers.get(printer_id)
            history = list(data.history) if data else []

        start = _parse_time(start_time) if start_time else None
        end = _parse_time(end_time) if end_time else None
        if start or end:
            filtered = []
            for snapshot in history:
                stamp = _parse_time(snapshot.timestamp)
                if start and stamp < start:
                    continue
                if end and stamp > end:
                    continue
                filtered.append(snapshot)
            history = filtered

        history.sort(key=lambda s: _parse_time(s.timestamp), reverse=True)
        return history[:limit]

    def get_all(self) -> list[PrinterLiveData]:
        with self._lock:
            return [
                PrinterLiveData(printer_id=printer_id, data=data.current, last_updated=data.last_updated)
                for printer_id, data in self._printers.items()
            ]

    def get_statistics(self, printer_id: str) -> PrinterStatistics:
        """Summary of the retained history.

        Temperature is averaged over snapshots that carried temperatures and
        humidity over snapshots that carried an AMS humidity block.
        """
        with self._lock:
            data = self._printers.get(printer_id)
            history = list(data.history) if data else []
        if not history:
            return PrinterStatistics()

        temperatures = [
            (s.temperatures.nozzle_left + s.temperatures.nozzle_right) / 2
            for s in history
            if s.topic_class in ("report", "status")
        ]
        humidities = [s.humidity.average for s in history if s.humidity is not None]

        return PrinterStatistics(
            total_data_points=len(history),
            first_data_point=history[0].timestamp,
            last_data_point=history[-1].timestamp,
            average_temperature=round(sum(temperatures) / len(temperatures)) if temperatures else 0,
            average_humidity=round(sum(humidities) / len(humidities)) if humidities else 0,
        )

    def cleanup_old_data(self, max_age_hours: float = 24) -> int:
        """Drop history older than max_age_hours. Returns the number of points removed."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
        removed = 0
        with self._lock:
            for data in self._printers.values():
                kept = [s for s in data.history if _parse_time(s.timestamp) > cutoff]
                removed += len(data.history) - len(kept)
                data.history = deque(kept, maxlen=self.max_history)
        logger.info(f"Cleaned up {removed} live data points older than {max_age_hours}h")
        return removed

    def clear_printer(self, printer_id: str) -> bool:
        with self._lock:
            removed = self._printers.pop(printer_id, None) is not None
        if removed:
            logger.info(f"[{printer_id}] Cleared live data")
        return removed

    def clear_all(self):
        with self._lock:
            count = len(self._printers)
            self._printers.clear()
        logger.info(f"Cleared live data for {count} printers")

    def get_status(self) -> StoreStatus:
        with self._lock:
            return StoreStatus(
                total_printers=len(self._printers),
                total_data_points=sum(len(d.history) for d in self._printers.values()),
                printers=list(self._printers),
            )
