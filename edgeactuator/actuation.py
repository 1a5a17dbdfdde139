"""
Desired-state token -> side effects.

The table is ordered and matched exactly. Tokens not in the table fall back to
an integer target temperature; anything else is an InvalidToken.
"""
import logging
import subprocess
from dataclasses import dataclass
from typing import Sequence, Tuple

from . import metrics
from .errors import InvalidToken

LOG = logging.getLogger(__name__)

LIGHT = "light_control.sh"
TEMPERATURE = "temperature"

HEATER_ON = (TEMPERATURE, "-h", "1")
HEATER_OFF = (TEMPERATURE, "-h", "0")
FAN_ON = (TEMPERATURE, "-c", "1")
FAN_OFF = (TEMPERATURE, "-c", "0")

TEMP_REPORTED = "temp"
TEMP_TELEMETRY = "temperature"
TEMP_WINDOW = 20


@dataclass(frozen=True)
class DispatchEntry:
    token: str
    reported_token: str     # value written to reported.myState
    telemetry_state: str    # value of {"state": ...} on the metering topic
    commands: Tuple[Tuple[str, ...], ...]


def _entry(token, *commands):
    return DispatchEntry(token, token, token, tuple(commands))


DISPATCH_TABLE: Tuple[DispatchEntry, ...] = (
    _entry("red+f", (LIGHT, "red"), HEATER_OFF, FAN_ON),
    _entry("red", (LIGHT, "red")),
    _entry("blue", (LIGHT, "blue")),
    _entry("blue+h", (LIGHT, "blue"), HEATER_ON, FAN_OFF),
    _entry("green", (LIGHT, "green")),
    _entry("on", HEATER_ON, FAN_OFF),
    _entry("off", HEATER_OFF, FAN_ON),
)


def resolve(token: str, table: Sequence[DispatchEntry] = DISPATCH_TABLE) -> DispatchEntry:
    for entry in table:
        if entry.token == token:
            return entry
    try:
        target = int(str(token).strip())
    except ValueError:
        raise InvalidToken(token) from None
    window = (TEMPERATURE, "-w", f"{target + TEMP_WINDOW}:{target - TEMP_WINDOW}")
    return DispatchEntry(token, TEMP_REPORTED, TEMP_TELEMETRY, (window,))


class CommandActuator:
    """Runs the token's commands; command failures are logged, never raised."""

    def __init__(self, timeout=10.0, runner=subprocess.run):
        self.timeout = timeout
        self.runner = runner

    def apply(self, token: str) -> bool:
        plan = resolve(token)
        ok = True
        for cmd in plan.commands:
            try:
                proc = self.runner(list(cmd), check=False, timeout=self.timeout)
            except (OSError, subprocess.SubprocessError) as e:
                LOG.error("actuation %s failed: %s", " ".join(cmd), e)
                ok = False
                continue
            if proc.returncode != 0:
                LOG.error("actuation %s exited %d", " ".join(cmd), proc.returncode)
                ok = False
        metrics.actuations.labels(result="ok" if ok else "failed").inc()
        return ok
