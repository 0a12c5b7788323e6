"""Export the stored ladder to JSON for a static viewer."""

from __future__ import annotations

import json
from pathlib import Path

from amidakuji.ladder import (
    CANVAS_HEIGHT,
    CANVAS_WIDTH,
    DEFAULT_RAIL_COUNT,
    rail_positions,
    resolve_path,
)
from amidakuji.session import SessionSnapshot


def export_results(
    snapshot: SessionSnapshot,
    rail_count: int = DEFAULT_RAIL_COUNT,
    width: float = CANVAS_WIDTH,
    height: float = CANVAS_HEIGHT,
) -> dict:
    """Resolve every start rail and return the paths as plain data."""
    paths = []
    for start in range(rail_count):
        result = resolve_path(start, snapshot.rungs, rail_count, width, height)
        paths.append({
            "start_rail": result.start_rail,
            "end_rail": result.end_rail,
            "crossed": list(result.crossed),
            "segments": [[s.x0, s.y0, s.x1, s.y1] for s in result.segments],
        })
    return {
        "rails": rail_count,
        "width": width,
        "height": height,
        "rail_x": rail_positions(rail_count, width),
        "phase": snapshot.phase.value,
        "version": snapshot.version,
        "mapping": [p["end_rail"] for p in paths],
        "paths": paths,
    }


def generate_all(
    snapshot: SessionSnapshot,
    output_dir: Path,
    rail_count: int = DEFAULT_RAIL_COUNT,
    width: float = CANVAS_WIDTH,
    height: float = CANVAS_HEIGHT,
) -> list[Path]:
    """Write state.json and results.json. Returns the generated file paths."""
    output_dir.mkdir(parents=True, exist_ok=True)

    state_path = output_dir / "state.json"
    state_path.write_text(json.dumps(snapshot.to_dict(), indent=2))

    results_path = output_dir / "results.json"
    results_path.write_text(
        json.dumps(export_results(snapshot, rail_count, width, height), indent=2)
    )
    return [state_path, results_path]
