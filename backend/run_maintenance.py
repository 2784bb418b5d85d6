#!/usr/bin/env python
"""
Run one full-text catalog maintenance pass from the command line.

Examples:

# Defaults (reorganize >= 10 fragments, rebuild >= 30, three catalogs, no window)
python run_maintenance.py

# Eight hour window, skip catalogs over 50 GB
python run_maintenance.py --window-length 480 --max-size-ftc-in-gb 50
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from catalog_engine import CatalogEngineError, create_catalog_engine
from db import HistoryStore, MaintenanceRunLocked, get_history_store
from maintenance_scheduler import RunConfig, run_catalog_maintenance

EXIT_OK = 0
EXIT_ENGINE_ERROR = 1
EXIT_INVALID_CONFIG = 2
EXIT_LOCKED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--reorg-threshold", type=int, default=None,
                        help="Fragments before any action is taken (default 10).")
    parser.add_argument("--rebuild-threshold", type=int, default=None,
                        help="Fragments before a rebuild is chosen over a reorganize (default 30).")
    parser.add_argument("--stop-after", type=int, default=None,
                        help="Catalogs to reorganize or rebuild in one run (default 3).")
    parser.add_argument("--window-length", type=int, default=None,
                        help="Minutes in the maintenance window; 0 relies on --stop-after alone (default 0).")
    parser.add_argument("--months-for-avg", type=int, default=None,
                        help="Months of history used to estimate runtimes (default 2).")
    parser.add_argument("--max-size-ftc-in-gb", type=int, default=None,
                        help="Skip catalogs larger than this many GB; 0 is unlimited (default 0).")
    parser.add_argument("--database-url", default=None,
                        help="History store URL (defaults to DATABASE_URL).")
    parser.add_argument("--server-url", default=None,
                        help="SQL Server URL (defaults to CATALOG_SERVER_URL).")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--json", action="store_true",
                        help="Print the full run report as JSON.")
    return parser


def _print_summary(report: dict) -> None:
    print(
        f"Run {report['status']}: {report['succeeded']} succeeded, "
        f"{report['failed']} failed, {report['skipped']} skipped "
        f"({len(report['queue'])} queued of {report['scanned']} scanned)."
    )
    for item in report["operations"]:
        outcome = item.get("decision")
        if item.get("ok") is True:
            outcome = f"done in {item.get('duration_minutes')} min"
        elif item.get("ok") is False:
            outcome = f"failed: {item.get('error')}"
        print(f"  {item['database_name']:<30} {item['action']:<10} {outcome}")


async def _run(args: argparse.Namespace, config: RunConfig) -> int:
    engine = None
    history_store = None
    try:
        engine = create_catalog_engine(args.server_url)
        history_store = (
            HistoryStore(args.database_url) if args.database_url else get_history_store()
        )
        report = await run_catalog_maintenance(
            config, engine=engine, history_store=history_store
        )
    except MaintenanceRunLocked as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_LOCKED
    except CatalogEngineError as exc:
        print(f"Catalog engine unavailable ({exc.operation}): {exc}", file=sys.stderr)
        return EXIT_ENGINE_ERROR
    finally:
        if engine is not None:
            await engine.close()
        if history_store is not None:
            await history_store.close()

    if args.json:
        print(json.dumps(report, indent=2, ensure_ascii=False))
    else:
        _print_summary(report)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = RunConfig.from_env(
            reorg_threshold=args.reorg_threshold,
            rebuild_threshold=args.rebuild_threshold,
            stop_after=args.stop_after,
            window_minutes=args.window_length,
            history_months=args.months_for_avg,
            max_size_gb=args.max_size_ftc_in_gb,
        )
    except ValueError as exc:
        parser.print_usage(sys.stderr)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_INVALID_CONFIG

    try:
        return asyncio.run(_run(args, config))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_INVALID_CONFIG


if __name__ == "__main__":
    sys.exit(main())
