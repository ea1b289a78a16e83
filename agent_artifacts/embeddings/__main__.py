"""
Run the embedding worker: ``python -m agent_artifacts.embeddings``.

Unset options fall back to the WORKER_* and EMBEDDING_PROVIDER settings.
``--provider stub --once`` drains one batch offline, which is handy for
seeding a local database.
"""
from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from .worker import run_worker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m agent_artifacts.embeddings",
        description="Embed queued knowledge atoms into artifact chunks.",
    )
    parser.add_argument("--provider", help="openai or stub")
    parser.add_argument("--poll-interval", type=int, metavar="SECONDS")
    parser.add_argument("--batch-size", type=int, metavar="N", help="jobs claimed per cycle")
    parser.add_argument(
        "--stale-after",
        type=int,
        metavar="SECONDS",
        help="requeue jobs left in processing longer than this",
    )
    parser.add_argument("--once", action="store_true", help="process one batch, print a summary and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        report = run_worker(
            embedding_provider=args.provider,
            poll_interval=args.poll_interval,
            batch_size=args.batch_size,
            once=args.once,
            stale_job_seconds=args.stale_after,
        )
    except KeyboardInterrupt:
        return 0
    except ValueError as e:
        # Raised when no embedding provider is configured.
        print(f"embedding worker: {e}", file=sys.stderr)
        return 2

    if report is not None:
        summary = report.to_dict()
        print(
            f"processed={summary['processed']} succeeded={summary['succeeded']} "
            f"failed={summary['failed']} skipped={summary['skipped']}"
        )
        for error in summary["errors"]:
            print(f"  {error}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
