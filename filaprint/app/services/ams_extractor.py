"""AMS (automatic material system) extraction.

The AMS block turns up in different places depending on the message:
``print.ams`` on push_status reports, top-level ``ams`` on some firmware,
or the whole payload on the dedicated ``/ams`` topic. It may be a dict with
an ``ams`` list of units, a bare list of units, or a single unit carrying a
``tray`` list. Only the first unit is mapped to slots 1-4.
"""

import logging
from dataclasses import dataclass

from filaprint.app.core.config import settings
from filaprint.app.services.payload_utils import to_int, to_number, to_text
from filaprint.app.services.telemetry_models import (
    FilamentConsumption,
    FilamentUsage,
    HumidityData,
)

logger = logging.getLogger(__name__)

SLOT_COUNT = 4

# Raw lengths below this are reported in metres, at or above it in millimetres
LENGTH_METRES_BELOW = 100

# Per-job consumption keys some firmware puts on a tray
_TRAY_WEIGHT_KEYS = ("used_weight", "weight_used", "consumed_weight")
_TRAY_LENGTH_KEYS = ("used_length", "length_used", "consumed_length")


@dataclass(frozen=True)
class AmsView:
    """The located AMS block.

    index_sources are the dicts that may carry ``tray_now``, in lookup order.
    """
    trays: list
    index_sources: list


def _as_units(candidate) -> tuple[list, dict | None] | None:
    if isinstance(candidate, dict) and isinstance(candidate.get("ams"), list):
        return candidate["ams"], candidate
    if isinstance(candidate, list):
        return candidate, None
    if isinstance(candidate, dict) and isinstance(candidate.get("tray"), list):
        return [candidate], candidate
    return None


def locate_ams(payload: dict) -> AmsView | None:
    """Find the AMS block in a payload, or None if the message has none."""
    if not isinstance(payload, dict):
        return None
    print_section = payload.get("print") if isinstance(payload.get("print"), dict) else {}
    print_ams = print_section.get("ams")
    root_ams = payload.get("ams")

    for candidate in (print_ams, root_ams, payload):
        found = _as_units(candidate)
        if found is None:
            continue
        units, container = found
        units = [unit for unit in units if isinstance(unit, dict)]
        if not units:
            continue
        first_unit = units[0]
        trays = [tray for tray in first_unit.get("tray", []) or [] if isinstance(tray, dict)]
        index_sources = [first_unit]
        for source in (container, print_ams, root_ams):
            if isinstance(source, dict) and all(source is not seen for seen in index_sources):
                index_sources.append(source)
        return AmsView(trays=trays, index_sources=index_sources)
    return None


def resolve_active_slot(view: AmsView) -> int | None:
    """Map ``tray_now`` (0-indexed) to a 1-indexed slot.

    254 (external spool), 255 (unloaded) and trays of other AMS units do not
    map onto slots 1-4 and yield None.
    """
    for source in view.index_sources:
        if "tray_now" not in source:
            continue
        tray_now = to_int(source["tray_now"])
        if tray_now is None:
            continue
        if 0 <= tray_now < SLOT_COUNT:
            return tray_now + 1
        logger.debug(f"tray_now={tray_now} does not map to a slot of the first AMS unit")
        return None
    return None


def tray_slot(tray: dict, index: int) -> int | None:
    tray_id = to_int(tray.get("id"))
    if tray_id is None:
        tray_id = index
    slot = tray_id + 1
    if 1 <= slot <= SLOT_COUNT:
        return slot
    return None


def tray_has_filament(tray: dict) -> bool:
    remain = to_number(tray.get("remain"))
    if remain is not None and remain > 0:
        return True
    return to_text(tray.get("tray_type")) is not None


def convert_length(raw: float) -> float:
    """Normalize a raw tray length to millimetres."""
    if raw < LENGTH_METRES_BELOW:
        return raw * 1000.0
    return raw


def _iter_slots(view: AmsView):
    for index, tray in enumerate(view.trays):
        slot = tray_slot(tray, index)
        if slot is not None:
            yield slot, tray


def extract_humidity(view: AmsView) -> HumidityData:
    """Assign humidity readings to slots.

    Trays that report their own humidity keep it. Otherwise the unit's single
    reading goes to the active slot, or, when no active slot is known, to every
    slot that shows loaded filament.
    """
    per_slot: dict[int, float] = {}
    for slot, tray in _iter_slots(view):
        value = to_number(tray.get("humidity"))
        if value is not None and value > 0:
            per_slot[slot] = value

    if not per_slot:
        unit = view.index_sources[0]
        reading = to_number(unit.get("humidity_raw"))
        if reading is None or reading <= 0:
            reading = to_number(unit.get("humidity"))
        if reading is not None and reading > 0:
            active_slot = resolve_active_slot(view)
            if active_slot is not None:
                per_slot[active_slot] = reading
            else:
                for slot, tray in _iter_slots(view):
                    if tray_has_filament(tray):
                        per_slot[slot] = reading

    readings = [value for value in per_slot.values() if value > 0]
    average = sum(readings) / len(readings) if readings else 0.0
    return HumidityData(
        slot1=per_slot.get(1, 0.0),
        slot2=per_slot.get(2, 0.0),
        slot3=per_slot.get(3, 0.0),
        slot4=per_slot.get(4, 0.0),
        average=average,
    )


def build_usage(
    slot: int,
    tray: dict,
    active: bool,
    default_total: float | None = None,
) -> FilamentUsage:
    if default_total is None:
        default_total = settings.default_spool_length_mm

    remain_raw = to_number(tray.get("remain"))
    remaining = convert_length(remain_raw) if remain_raw is not None and remain_raw > 0 else 0.0

    total_raw = to_number(tray.get("total_len"))
    total = convert_length(total_raw) if total_raw is not None and total_raw > 0 else default_total

    used = max(total - remaining, 0.0)
    if total > 0:
        used_percentage = round(min(max(used / total * 100.0, 0.0), 100.0), 1)
    else:
        used_percentage = 0.0

    return FilamentUsage(
        slot=slot,
        remaining_length=remaining,
        total_length=total,
        used_length=used,
        used_percentage=used_percentage,
        material=to_text(tray.get("tray_type")),
        color=to_text(tray.get("tray_color")),
        active=active,
    )


def extract_usage(view: AmsView, default_total: float | None = None) -> tuple[FilamentUsage, ...]:
    """Usage per slot, omitting empty slots that are not the active one."""
    active_slot = resolve_active_slot(view)
    usage = []
    for slot, tray in _iter_slots(view):
        active = slot == active_slot
        if not active and not tray_has_filament(tray):
            continue
        usage.append(build_usage(slot, tray, active, default_total))
    return tuple(sorted(usage, key=lambda item: item.slot))


def extract_tray_consumption(view: AmsView) -> tuple[FilamentConsumption, ...]:
    """Per-job consumption for trays that carry explicit used weight/length fields."""
    consumption = []
    for slot, tray in _iter_slots(view):
        weight = next(
            (to_number(tray[key]) for key in _TRAY_WEIGHT_KEYS if to_number(tray.get(key))),
            None,
        )
        length = next(
            (to_number(tray[key]) for key in _TRAY_LENGTH_KEYS if to_number(tray.get(key))),
            None,
        )
        if (weight is None or weight <= 0) and (length is None or length <= 0):
            continue
        consumption.append(FilamentConsumption(
            slot=slot,
            weight=weight if weight and weight > 0 else None,
            length=length if length and length > 0 else None,
            material=to_text(tray.get("tray_type")),
            color=to_text(tray.get("tray_color")),
        ))
    return tuple(consumption)
