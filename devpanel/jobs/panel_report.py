"""
Panel report job.

Prints the monthly productivity panel or the fixed pre/post findings as JSON.
"""

import argparse
import json
import sys
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from devpanel.config.database import SessionLocal, init_db
from devpanel.services.panel_queries import build_findings, build_panel_metrics
from devpanel.services.panel_stats import PanelInputError


def get_panel_metrics(
    start: Optional[str] = None,
    end: Optional[str] = None,
    *,
    session_factory: Callable[[], Any] = SessionLocal,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    db = session_factory()
    try:
        return build_panel_metrics(db, start, end, now=now)
    finally:
        db.close()


def get_findings(
    *,
    session_factory: Callable[[], Any] = SessionLocal,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    db = session_factory()
    try:
        return build_findings(db, now=now)
    finally:
        db.close()


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="DevPanel panel report")
    commands = parser.add_subparsers(dest="command", required=True)
    metrics = commands.add_parser("metrics", help="Monthly panel series")
    metrics.add_argument("--start", help="YYYY-MM-DD, defaults to 2020-01-01")
    metrics.add_argument("--end", help="YYYY-MM-DD, defaults to the end of the last full month")
    commands.add_parser("findings", help="Pre/post comparison")
    args = parser.parse_args(argv)

    init_db()
    try:
        if args.command == "metrics":
            report = get_panel_metrics(args.start, args.end)
        else:
            report = get_findings()
    except PanelInputError as exc:
        print(f"Invalid input: {exc}", file=sys.stderr)
        return 2

    print(json.dumps(report, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
