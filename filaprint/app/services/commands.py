"""Translation of operator commands into printer request envelopes.

Always publish these with qos=1: the printer ignores qos=0 requests while it
is busy pushing status reports.
"""

import itertools
import threading
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CommandRoute:
    section: str  # top-level envelope key: "print" or "system"
    command: str


COMMANDS: dict[str, CommandRoute] = {
    "pause": CommandRoute("print", "pause"),
    "resume": CommandRoute("print", "resume"),
    "stop": CommandRoute("print", "stop"),
    "home": CommandRoute("system", "home"),
    "level": CommandRoute("system", "calibration"),
    "gcode": CommandRoute("print", "gcode_line"),
}

ALIASES = {
    "start-leveling": "level",
    "start_leveling": "level",
    "leveling": "level",
    "calibration": "level",
    "home_axes": "home",
    "gcode_line": "gcode",
}


class CommandTranslator:
    """Builds request envelopes with a per-link increasing sequence id."""

    def __init__(self, start: int = 1):
        self._sequence = itertools.count(start)
        self._lock = threading.Lock()

    def next_sequence_id(self) -> str:
        with self._lock:
            return str(next(self._sequence))

    @staticmethod
    def resolve(name: str) -> CommandRoute | None:
        key = name.strip().lower()
        return COMMANDS.get(ALIASES.get(key, key))

    def build(self, name: str, params: dict | None = None) -> dict:
        """Envelope for an abstract command.

        Known names become {"<section>": {"sequence_id", "command", ...params}}.
        Unknown names are forwarded untouched as {name: params} so newer
        firmware commands can be sent without a code change.
        """
        params = dict(params or {})
        if name.strip().lower() == "pushall":
            return self.push_all()
        route = self.resolve(name)
        if route is None:
            return {name: params}

        body: dict[str, Any] = {
            "sequence_id": self.next_sequence_id(),
            "command": route.command,
        }
        if route.command == "gcode_line" and "gcode" in params:
            gcode = params.pop("gcode")
            # Printer expects newline-terminated gcode lines
            params["param"] = gcode if gcode.endswith("\n") else f"{gcode}\n"
        for key, value in params.items():
            if key in ("sequence_id", "command"):
                continue
            body[key] = value
        return {route.section: body}

    @staticmethod
    def push_all() -> dict:
        """Request for a full status report."""
        return {"pushing": {"command": "pushall"}}
