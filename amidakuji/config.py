"""Runtime settings, read from ``AMIDAKUJI_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from amidakuji.ladder import CANVAS_HEIGHT, CANVAS_WIDTH, DEFAULT_RAIL_COUNT

RESULTS_DIR = Path("results")
DB_PATH = RESULTS_DIR / "amidakuji.db"


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 3000
    db_path: Path = DB_PATH
    rail_count: int = DEFAULT_RAIL_COUNT
    width: float = CANVAS_WIDTH
    height: float = CANVAS_HEIGHT
    flush_interval: float = 5.0  # seconds between periodic store flushes
    outbox_size: int = 256  # queued messages before a slow client is dropped
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        default = cls()
        return cls(
            host=env.get("AMIDAKUJI_HOST", default.host),
            port=int(env.get("AMIDAKUJI_PORT", default.port)),
            db_path=Path(env.get("AMIDAKUJI_DB", default.db_path)),
            rail_count=int(env.get("AMIDAKUJI_RAILS", default.rail_count)),
            width=float(env.get("AMIDAKUJI_WIDTH", default.width)),
            height=float(env.get("AMIDAKUJI_HEIGHT", default.height)),
            flush_interval=float(env.get("AMIDAKUJI_FLUSH_INTERVAL", default.flush_interval)),
            outbox_size=int(env.get("AMIDAKUJI_OUTBOX_SIZE", default.outbox_size)),
            log_level=env.get("AMIDAKUJI_LOG_LEVEL", default.log_level).upper(),
        )
