"""
Cohort sync job.

Triggers an audited user/repository/adoption sync and reports sync status.
Run as ``python -m devpanel.jobs.cohort_sync sync --type users --seed 7``
or ``python -m devpanel.jobs.cohort_sync status``.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Dict, Optional

from devpanel.config.database import SessionLocal, init_db
from devpanel.crawlers.github.rate_limiter import GitHubRateLimiter
from devpanel.models.sync_job import SyncJobType
from devpanel.orchestrator_sync import (
    CohortSyncOrchestrator,
    SyncAlreadyRunningError,
    SyncOptions,
    sync_status,
)
from devpanel.utils.logger import setup_logger

logger = logging.getLogger(__name__)

# One governor per process so status reads see the budgets a sync just observed.
rate_limiter = GitHubRateLimiter()


async def trigger_sync(
    job_type: str = SyncJobType.ALL.value,
    *,
    orchestrator: Optional[CohortSyncOrchestrator] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    """
    Run one sync job with per-invocation overrides of the settings defaults.

    Raises:
        SyncAlreadyRunningError: an overlapping job is still within its lease
        ValueError: unknown job type
    """
    options = SyncOptions.from_settings(**overrides)
    orchestrator = orchestrator or CohortSyncOrchestrator(rate_limiter=rate_limiter)
    return await orchestrator.run(SyncJobType(job_type), options)


def get_sync_status(
    *,
    session_factory: Callable[[], Any] = SessionLocal,
    limiter: Optional[GitHubRateLimiter] = None,
) -> Dict[str, Any]:
    db = session_factory()
    try:
        return sync_status(db, limiter or rate_limiter)
    finally:
        db.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="DevPanel cohort sync")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Run a sync job")
    sync.add_argument("--type", dest="job_type", default="all", choices=[t.value for t in SyncJobType])
    sync.add_argument("--seed", type=int)
    sync.add_argument("--users-per-band", type=int)
    sync.add_argument("--user-per-page", type=int)
    sync.add_argument("--user-pages-per-order", type=int)
    sync.add_argument("--baseline-years", type=int, nargs="+", metavar="YEAR")
    sync.add_argument("--contribution-years", type=int, nargs="+", metavar="YEAR")
    sync.add_argument("--baseline-min-contributions", type=int)
    sync.add_argument("--contribution-chunk-size", type=int)
    sync.add_argument("--repo-language-count", type=int)
    sync.add_argument("--repos-per-language", type=int)
    sync.add_argument("--repo-min-stars", type=int)
    sync.add_argument("--repo-pr-pages", type=int)
    sync.add_argument("--repo-issue-pages", type=int)
    sync.add_argument("--adoption-pr-pages", type=int)
    sync.add_argument("--adoption-pr-per-page", type=int)
    sync.add_argument("--graphql-throttle-ms", type=int)
    sync.add_argument("--request-timeout-seconds", type=float)
    sync.add_argument("--retry-max-attempts", type=int)
    sync.add_argument("--retry-backoff-base-seconds", type=float)
    sync.add_argument("--retry-backoff-max-seconds", type=float)

    commands.add_parser("status", help="Show the last job, cohort sizes and quota budgets")
    return parser


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    args = _build_parser().parse_args(argv)
    setup_logger("devpanel")
    init_db()

    if args.command == "status":
        print(json.dumps(get_sync_status(), indent=2, default=str))
        return 0

    overrides = {
        key: value
        for key, value in vars(args).items()
        if key not in ("command", "job_type") and value is not None
    }
    try:
        result = asyncio.run(trigger_sync(args.job_type, **overrides))
    except SyncAlreadyRunningError as exc:
        print(f"Sync refused: {exc}", file=sys.stderr)
        return 2

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
