"""Ladder geometry, rung validation and path resolution.

Everything here is a pure function of its arguments so that every client
and the hub reach the same answer from the same rung set.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from enum import Enum

DEFAULT_RAIL_COUNT = 4
CANVAS_WIDTH = 600
CANVAS_HEIGHT = 400
MIN_VERTICAL_GAP = 20
# A click only becomes a rung inside the middle of the gap between two rails
CLICK_BAND = (0.2, 0.8)


class PreconditionViolation(ValueError):
    """A rung set that could never have passed validation reached the resolver."""


@dataclass(frozen=True)
class Rung:
    """A horizontal connector between two adjacent rails."""

    rail_left: int
    rail_right: int
    y: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def rails(self) -> tuple[int, int]:
        return (self.rail_left, self.rail_right)

    def other_rail(self, rail: int) -> int:
        return self.rail_right if rail == self.rail_left else self.rail_left


# ── Geometry ─────────────────────────────────────────────────────────

def rail_positions(n: int = DEFAULT_RAIL_COUNT, width: float = CANVAS_WIDTH) -> list[float]:
    """Evenly spaced x coordinates for *n* rails across *width*.

    The outer margins equal the spacing, so 4 rails on 600 px sit at
    120, 240, 360, 480.
    """
    if n < 1:
        raise ValueError(f"Need at least one rail, got {n}.")
    if width <= 0:
        raise ValueError(f"Canvas width must be positive, got {width}.")
    spacing = width / (n + 1)
    return [(i + 1) * spacing for i in range(n)]


def nearest_rail(x: float, positions: list[float]) -> int:
    """Index of the rail closest to *x* (lowest index wins a tie)."""
    return min(range(len(positions)), key=lambda i: (abs(positions[i] - x), i))


def rung_from_click(
    x: float,
    y: float,
    positions: list[float],
    rung_id: str | None = None,
) -> Rung | None:
    """Snap a click to a rung between the two rails around *x*.

    Returns ``None`` when the click is outside the rails or too close to
    one of them.
    """
    for left in range(len(positions) - 1):
        x_left, x_right = positions[left], positions[left + 1]
        if not (x_left < x < x_right):
            continue
        offset = (x - x_left) / (x_right - x_left)
        if CLICK_BAND[0] < offset < CLICK_BAND[1]:
            if rung_id is None:
                return Rung(rail_left=left, rail_right=left + 1, y=y)
            return Rung(rail_left=left, rail_right=left + 1, y=y, id=rung_id)
        return None
    return None


# ── Validation ───────────────────────────────────────────────────────

class RejectReason(str, Enum):
    NOT_ADJACENT = "not_adjacent"
    OUT_OF_RANGE = "out_of_range"
    TOO_CLOSE_VERTICALLY = "too_close_vertically"
    OVERLAPPING = "overlapping"
    DUPLICATE_ID = "duplicate_id"
    # Raised by the session, not by validate_rung: the ladder is frozen
    DRAWING_CLOSED = "drawing_closed"


@dataclass(frozen=True)
class RungCheck:
    ok: bool = True
    reason: RejectReason | None = None
    message: str = ""


def _reject(reason: RejectReason, message: str) -> RungCheck:
    return RungCheck(ok=False, reason=reason, message=message)


def validate_rung(
    candidate: Rung,
    existing: list[Rung] | tuple[Rung, ...],
    rail_count: int | None = None,
) -> RungCheck:
    """Decide whether *candidate* may join *existing*.

    Never raises; a rejected candidate comes back with a reason.
    """
    if candidate.rail_right != candidate.rail_left + 1:
        return _reject(
            RejectReason.NOT_ADJACENT,
            f"Rung must join adjacent rails, got {candidate.rail_left}-{candidate.rail_right}.",
        )

    if not math.isfinite(candidate.y) or candidate.y < 0:
        return _reject(RejectReason.OUT_OF_RANGE, f"Invalid rung height {candidate.y}.")
    if candidate.rail_left < 0 or (
        rail_count is not None and candidate.rail_right > rail_count - 1
    ):
        return _reject(
            RejectReason.OUT_OF_RANGE,
            f"Rails {candidate.rail_left}-{candidate.rail_right} are outside the ladder.",
        )

    for rung in existing:
        if rung.id == candidate.id:
            return _reject(RejectReason.DUPLICATE_ID, f"Rung {candidate.id} already exists.")
        if abs(rung.y - candidate.y) >= MIN_VERTICAL_GAP:
            continue
        shared = set(rung.rails()) & set(candidate.rails())
        if not shared:
            continue
        if rung.rails() == candidate.rails():
            return _reject(
                RejectReason.TOO_CLOSE_VERTICALLY,
                f"Another rung on rails {rung.rail_left}-{rung.rail_right} "
                f"is within {MIN_VERTICAL_GAP} of y={candidate.y}.",
            )
        return _reject(
            RejectReason.OVERLAPPING,
            f"Rung shares rail {min(shared)} with a rung at y={rung.y}.",
        )

    return RungCheck(ok=True, message="Rung accepted.")


# ── Path resolution ─────────────────────────────────────────────────

@dataclass(frozen=True)
class PathSegment:
    """A straight piece of the token's route, vertical or across a rung."""

    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def is_crossing(self) -> bool:
        return self.y0 == self.y1 and self.x0 != self.x1


@dataclass(frozen=True)
class PathResult:
    start_rail: int
    end_rail: int
    segments: tuple[PathSegment, ...]
    crossed: tuple[str, ...] = ()  # rung ids in the order they were taken


def _check_rungs(rungs: list[Rung] | tuple[Rung, ...], rail_count: int) -> None:
    for rung in rungs:
        if rung.rail_left == rung.rail_right:
            raise PreconditionViolation(f"Rung {rung.id} connects rail {rung.rail_left} to itself.")
        if rung.rail_right != rung.rail_left + 1:
            raise PreconditionViolation(
                f"Rung {rung.id} skips rails ({rung.rail_left}-{rung.rail_right})."
            )
        if rung.rail_left < 0 or rung.rail_right >= rail_count:
            raise PreconditionViolation(
                f"Rung {rung.id} references rails outside 0..{rail_count - 1}."
            )


def resolve_path(
    start_rail: int,
    rungs: list[Rung] | tuple[Rung, ...],
    rail_count: int = DEFAULT_RAIL_COUNT,
    width: float = CANVAS_WIDTH,
    height: float = CANVAS_HEIGHT,
) -> PathResult:
    """Walk a token down from the top of *start_rail*.

    Every rung the token reaches on its current rail is taken, in order of
    height; a rung is used at most once. Ties on height fall back to the
    left rail index and then to submission order, so the result never
    depends on anything but the inputs.
    """
    if not 0 <= start_rail < rail_count:
        raise PreconditionViolation(f"Start rail {start_rail} is outside 0..{rail_count - 1}.")
    _check_rungs(rungs, rail_count)

    positions = rail_positions(rail_count, width)
    ordered = sorted(
        ((rung.y, rung.rail_left, idx, rung) for idx, rung in enumerate(rungs)),
        key=lambda item: item[:3],
    )

    rail = start_rail
    y = 0.0
    segments: list[PathSegment] = []
    crossed: list[str] = []
    used: set[int] = set()

    for rung_y, _, idx, rung in ordered:
        if rung_y > height:
            break
        if idx in used or rail not in rung.rails():
            continue
        used.add(idx)
        x = positions[rail]
        if rung_y > y:
            segments.append(PathSegment(x, y, x, rung_y))
        rail = rung.other_rail(rail)
        segments.append(PathSegment(x, rung_y, positions[rail], rung_y))
        crossed.append(rung.id)
        y = rung_y

    x = positions[rail]
    segments.append(PathSegment(x, y, x, height))
    end_rail = nearest_rail(x, positions)

    return PathResult(
        start_rail=start_rail,
        end_rail=end_rail,
        segments=tuple(segments),
        crossed=tuple(crossed),
    )


def resolve_all(
    rungs: list[Rung] | tuple[Rung, ...],
    rail_count: int = DEFAULT_RAIL_COUNT,
    width: float = CANVAS_WIDTH,
    height: float = CANVAS_HEIGHT,
) -> list[int]:
    """End rail for every start rail, indexed by start rail."""
    return [
        resolve_path(start, rungs, rail_count, width, height).end_rail
        for start in range(rail_count)
    ]
