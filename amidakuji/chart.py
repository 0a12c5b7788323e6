"""Render a ladder and its resolved paths to a PNG."""

from __future__ import annotations

import matplotlib
matplotlib.use("Agg")  # non-interactive backend

import matplotlib.pyplot as plt

from amidakuji.ladder import (
    CANVAS_HEIGHT,
    CANVAS_WIDTH,
    DEFAULT_RAIL_COUNT,
    Rung,
    rail_positions,
    resolve_path,
)

PATH_COLORS = ["#D94A4A", "#4A90D9", "#4AB866", "#E0A030", "#9B59B6", "#1ABC9C"]


def make_ladder_chart(
    rungs: list[Rung] | tuple[Rung, ...],
    output_path: str = "ladder.png",
    rail_count: int = DEFAULT_RAIL_COUNT,
    width: float = CANVAS_WIDTH,
    height: float = CANVAS_HEIGHT,
    show_paths: bool = True,
    title: str = "Amidakuji",
) -> str:
    """Draw rails, rungs and (optionally) every start rail's path.

    Returns the path to the saved PNG.
    """
    positions = rail_positions(rail_count, width)

    fig, ax = plt.subplots(figsize=(width / 100, height / 100 + 1))

    for x in positions:
        ax.plot([x, x], [0, height], color="black", linewidth=2, zorder=1)
    for rung in rungs:
        ax.plot(
            [positions[rung.rail_left], positions[rung.rail_right]], [rung.y, rung.y],
            color="black", linewidth=2, zorder=1,
        )

    if show_paths:
        for start in range(rail_count):
            color = PATH_COLORS[start % len(PATH_COLORS)]
            result = resolve_path(start, rungs, rail_count, width, height)
            # Offset each path slightly so overlapping stretches stay visible
            shift = (start - (rail_count - 1) / 2) * 2
            for seg in result.segments:
                ax.plot(
                    [seg.x0 + shift, seg.x1 + shift], [seg.y0 + shift, seg.y1 + shift],
                    color=color, linewidth=3, alpha=0.7, zorder=2,
                )
            ax.annotate(
                f"{start + 1} → {result.end_rail + 1}",
                (positions[start], 0), textcoords="offset points", xytext=(0, 8),
                ha="center", fontsize=10, fontweight="bold", color=color,
            )

    ax.set_xlim(0, width)
    ax.set_ylim(height, 0)  # canvas y grows downward
    ax.set_title(title, fontsize=14, fontweight="bold", pad=20)
    ax.axis("off")

    plt.tight_layout()
    fig.savefig(output_path, dpi=150)
    plt.close(fig)
    return output_path
