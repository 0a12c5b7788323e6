"""CLI entry point: python -m amidakuji {serve,results,chart,export,reset}."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from amidakuji.config import Settings
from amidakuji.ladder import PreconditionViolation, resolve_all
from amidakuji.session import SessionSnapshot, SessionState
from amidakuji.store import SqliteStateStore, StoreError


def _settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if getattr(args, "db", None):
        settings.db_path = Path(args.db)
    if getattr(args, "rails", None):
        settings.rail_count = args.rails
    return settings


def _load(settings: Settings) -> SessionSnapshot:
    if not settings.db_path.exists():
        print(f"No database found at {settings.db_path}. Serve a session first.", file=sys.stderr)
        sys.exit(1)
    try:
        store = SqliteStateStore(settings.db_path)
    except StoreError as exc:
        print(f"Could not open session: {exc}", file=sys.stderr)
        sys.exit(1)
    try:
        snapshot = store.load()
    except StoreError as exc:
        print(f"Could not read session: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()
    return snapshot or SessionSnapshot()


# ── serve ────────────────────────────────────────────────────────────

def cmd_serve(args: argparse.Namespace) -> None:
    """Run the hub until interrupted."""
    import uvicorn

    from amidakuji.app import create_app

    settings = _settings(args)
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port

    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


# ── results ──────────────────────────────────────────────────────────

def cmd_results(args: argparse.Namespace) -> None:
    """Print where each start rail ends up on the stored ladder."""
    settings = _settings(args)
    snapshot = _load(settings)
    try:
        mapping = resolve_all(snapshot.rungs, settings.rail_count, settings.width, settings.height)
    except PreconditionViolation as exc:
        print(f"Stored ladder is inconsistent: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"\nLadder: {len(snapshot.rungs)} rungs, phase {snapshot.phase.value}")
    print("=" * 40)
    for start, end in enumerate(mapping):
        print(f"  Start {start + 1}  →  {end + 1}")


# ── chart ────────────────────────────────────────────────────────────

def cmd_chart(args: argparse.Namespace) -> None:
    """Render the stored ladder with every path to a PNG."""
    from amidakuji.chart import make_ladder_chart

    settings = _settings(args)
    snapshot = _load(settings)
    out = args.output or "ladder.png"
    try:
        make_ladder_chart(
            snapshot.rungs, output_path=out, rail_count=settings.rail_count,
            width=settings.width, height=settings.height,
        )
    except PreconditionViolation as exc:
        print(f"Stored ladder is inconsistent: {exc}", file=sys.stderr)
        sys.exit(1)
    print(f"Chart saved to {out}")


# ── export ───────────────────────────────────────────────────────────

def cmd_export(args: argparse.Namespace) -> None:
    """Write state.json and results.json."""
    from amidakuji.export import generate_all

    settings = _settings(args)
    snapshot = _load(settings)
    try:
        generated = generate_all(
            snapshot, Path(args.output_dir), settings.rail_count, settings.width, settings.height,
        )
    except PreconditionViolation as exc:
        print(f"Stored ladder is inconsistent: {exc}", file=sys.stderr)
        sys.exit(1)
    print(f"Generated {len(generated)} JSON files in {args.output_dir}")


# ── reset ────────────────────────────────────────────────────────────

def cmd_reset(args: argparse.Namespace) -> None:
    """Clear the stored ladder. A running hub keeps its in-memory copy until restarted."""
    settings = _settings(args)
    session = SessionState(_load(settings))
    session.reset()
    store = SqliteStateStore(settings.db_path)
    try:
        store.save(session.snapshot())
    except StoreError as exc:
        print(f"Could not save session: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()
    print("Ladder cleared.")


# ── main ─────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        prog="amidakuji",
        description="Shared Amidakuji ladder hub",
    )
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the real-time hub")
    p_serve.add_argument("--host", help="Bind address (default 0.0.0.0)")
    p_serve.add_argument("--port", type=int, help="Port (default 3000)")
    p_serve.add_argument("--db", help="SQLite path for the session")
    p_serve.add_argument("--rails", type=int, help="Number of rails (default 4)")

    for name, help_text in (
        ("results", "Print start → end mapping"),
        ("chart", "Render the ladder to PNG"),
        ("export", "Export state and results as JSON"),
        ("reset", "Clear the stored ladder"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--db", help="SQLite path for the session")
        if name != "reset":
            p.add_argument("--rails", type=int, help="Number of rails (default 4)")
        if name == "chart":
            p.add_argument("--output", "-o", help="Output PNG path")
        if name == "export":
            p.add_argument("--output-dir", default="export", help="Directory for JSON files")

    args = parser.parse_args()
    logging.basicConfig(
        level=Settings.from_env().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "results":
        cmd_results(args)
    elif args.command == "chart":
        cmd_chart(args)
    elif args.command == "export":
        cmd_export(args)
    elif args.command == "reset":
        cmd_reset(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
