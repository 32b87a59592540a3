"""
Command-line interface.

Usage:
    clipchain run job.yaml
    clipchain run job.yaml --policy best-effort --config config/defaults.yaml -v
    clipchain show lighthouse
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from .core.config import Config, set_config
from .core.exceptions import ClipChainError
from .workflow.jobs import FailurePolicy, JobOutcome, JobStore
from .workflow.orchestrator import JobRequest, PipelineOrchestrator

logger = logging.getLogger(__name__)


EXIT_CODES = {
    JobOutcome.SUCCEEDED: 0,
    JobOutcome.SUCCEEDED_WITH_SKIPS: 2,
    JobOutcome.FAILED: 1,
    JobOutcome.CANCELLED: 130,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clipchain",
        description="Generate chained AI video segments and stitch them into one video",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run jobs/lighthouse.yaml
  %(prog)s run jobs/lighthouse.yaml --policy best-effort -v
  %(prog)s show lighthouse
        """,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        help="Path to config file (default: config/defaults.yaml if present)",
    )
    common.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", parents=[common], help="Run a job described by a YAML file")
    run.add_argument("job_file", help="Job definition (YAML)")
    run.add_argument(
        "--policy",
        choices=[p.value for p in FailurePolicy],
        help="Override the job's failure policy",
    )
    run.add_argument(
        "--enhance",
        action="store_true",
        default=None,
        help="Run the enhancement pass after stitching",
    )

    show = subparsers.add_parser("show", parents=[common], help="Print the manifest of a job")
    show.add_argument("job_id", help="Job identifier")

    return parser


def load_job(path: str) -> JobRequest:
    job_path = Path(path)
    if not job_path.is_file():
        raise ClipChainError(f"Job file not found: {job_path}")
    try:
        with open(job_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ClipChainError(f"Invalid YAML in job file: {e}")

    data.setdefault("job_id", job_path.stem)
    return JobRequest.from_dict(data)


async def run_job(config: Config, job: JobRequest) -> int:
    async with PipelineOrchestrator.from_config(config) as orchestrator:
        result = await orchestrator.run(job)

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return EXIT_CODES[result.outcome]


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = Config.load(args.config)
        set_config(config)

        if args.command == "show":
            store = JobStore(config.output.base_path, manifest_name=config.output.manifest_name)
            manifest = store.load(args.job_id)
            if manifest is None:
                print(f"Error: no manifest for job {args.job_id}", file=sys.stderr)
                return 1
            print(json.dumps(manifest, indent=2))
            return 0

        job = load_job(args.job_file)
        if args.policy:
            job.policy = FailurePolicy(args.policy)
        if args.enhance is not None:
            job.enhance = args.enhance
        return asyncio.run(run_job(config, job))

    except ClipChainError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_CODES[JobOutcome.CANCELLED]


if __name__ == "__main__":
    sys.exit(main())
