"""Authoritative in-memory ladder state shared by every client."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from amidakuji.ladder import Rung


class Phase(str, Enum):
    DRAWING = "drawing"
    SHOWING_RESULTS = "showing-results"


def rung_to_dict(rung: Rung) -> dict:
    return {
        "id": rung.id,
        "railLeft": rung.rail_left,
        "railRight": rung.rail_right,
        "y": rung.y,
    }


def rung_from_dict(data: dict) -> Rung:
    return Rung(
        id=str(data["id"]),
        rail_left=int(data["railLeft"]),
        rail_right=int(data["railRight"]),
        y=float(data["y"]),
    )


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable copy of the session, safe to hand to other tasks or threads."""

    rungs: tuple[Rung, ...] = ()
    phase: Phase = Phase.DRAWING
    version: int = 0

    def to_dict(self) -> dict:
        return {
            "rungs": [rung_to_dict(r) for r in self.rungs],
            "phase": self.phase.value,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SessionSnapshot:
        if not isinstance(data, dict):
            raise ValueError(f"Expected a session object, got {type(data).__name__}")
        return cls(
            rungs=tuple(rung_from_dict(r) for r in data.get("rungs", [])),
            phase=Phase(data.get("phase", Phase.DRAWING.value)),
            version=int(data.get("version", 0)),
        )


class SessionState:
    """The one mutable ladder.

    Rungs are append-only while drawing. ``finish`` freezes them and only
    ``reset`` unfreezes, clearing the rungs in the same step.
    """

    def __init__(self, snapshot: SessionSnapshot | None = None):
        self._rungs: list[Rung] = []
        self._phase = Phase.DRAWING
        self._version = 0
        if snapshot is not None:
            self.replace(snapshot)

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def version(self) -> int:
        return self._version

    @property
    def rungs(self) -> tuple[Rung, ...]:
        return tuple(self._rungs)

    def append(self, rung: Rung) -> bool:
        """Add *rung*; returns False (and changes nothing) once results are showing."""
        if self._phase is not Phase.DRAWING:
            return False
        self._rungs.append(rung)
        self._version += 1
        return True

    def finish(self) -> bool:
        """Switch to showing results. Returns False if already there."""
        if self._phase is Phase.SHOWING_RESULTS:
            return False
        self._phase = Phase.SHOWING_RESULTS
        self._version += 1
        return True

    def reset(self) -> None:
        self._rungs = []
        self._phase = Phase.DRAWING
        self._version += 1

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            rungs=tuple(self._rungs),
            phase=self._phase,
            version=self._version,
        )

    def replace(self, snapshot: SessionSnapshot) -> None:
        """Adopt *snapshot* wholesale (startup load from the store)."""
        self._rungs = list(snapshot.rungs)
        self._phase = snapshot.phase
        self._version = snapshot.version
