"""
Sanctions ingestion pipeline entry point

Runs one ingestion job per enabled source. Jobs run in parallel and share
nothing but the state directory, where each writes only its own source's
files. A job that fails is reported in the summary; the others continue.

Usage:
    python pipeline.py                          # all enabled sources
    python pipeline.py --source ofac_xml --force
    python pipeline.py --check-only
"""

import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from config_manager import ConfigManager, ConfigurationError, get_config, setup_logging
from ingestion_logger import IngestionLogger, get_ingestion_logger
from sources import JOBS
from sources.base import STATUS_ABORTED, JobResult
from state_store import StateStore

logger = logging.getLogger(__name__)


def run_pipeline(
    sources: Optional[Sequence[str]] = None,
    force: bool = False,
    check_only: bool = False,
    config: Optional[ConfigManager] = None,
    store: Optional[StateStore] = None,
    ingestion_logger: Optional[IngestionLogger] = None
) -> List[JobResult]:
    """Run the selected jobs and collect their results

    Args:
        sources: Source identifiers; defaults to the configured enabled list
        force: Treat every source as changed
        check_only: Report change status without ingesting
        config: Configuration (defaults to the global instance)
        store: State store shared by the jobs
        ingestion_logger: Structured event logger

    Returns:
        One JobResult per source, in the requested order
    """
    config = config or get_config()
    selected = list(sources or config.sources.enabled)
    unknown = [s for s in selected if s not in JOBS]
    if unknown:
        raise ConfigurationError(f"Unknown source(s): {', '.join(unknown)} "
                                 f"(known: {', '.join(sorted(JOBS))})")

    store = store or StateStore(config.storage.state_directory)
    events = ingestion_logger or get_ingestion_logger(config.logging.event_log_dir)
    jobs = {name: JOBS[name](config=config, store=store, ingestion_logger=events)
            for name in selected}

    def run_one(name: str) -> JobResult:
        try:
            return jobs[name].run(force=force, check_only=check_only)
        except Exception as e:
            # unexpected failures stay inside their own job
            logger.exception(f"✗ [{name}] unexpected error")
            events.log_run_aborted(name, f"{type(e).__name__}: {e}", error_type=type(e).__name__)
            return JobResult(source=name, status=STATUS_ABORTED, diagnostic=str(e))

    workers = max(1, min(config.pipeline.max_workers, len(selected)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        results: Dict[str, JobResult] = dict(zip(selected, executor.map(run_one, selected)))
    return [results[name] for name in selected]


def print_summary(results: List[JobResult]) -> None:
    print(f"\n=== Ingestion Summary ===")
    for r in results:
        marker = '✗' if r.status == STATUS_ABORTED else '✓'
        line = f"{marker} {r.source:<18} {r.status:<13}"
        if r.total:
            line += f" total={r.total} (+{r.added}/-{r.removed}) updatedAt={r.updated_at}"
            if r.updated_at_source:
                line += f" [{r.updated_at_source}]"
        if r.diagnostic:
            line += f"  {r.diagnostic}"
        print(line)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Ingest and normalize sanctions lists")
    parser.add_argument("--source", action="append", choices=sorted(JOBS),
                        help="Source to run (repeatable); default: all enabled sources")
    parser.add_argument("--force", action="store_true",
                        help="Ingest even if the change signature is unchanged")
    parser.add_argument("--check-only", action="store_true",
                        help="Only report whether each source changed")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args(argv)

    try:
        config = ConfigManager.get_instance(args.config)
    except ConfigurationError as e:
        print(f"✗ Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    results = run_pipeline(args.source, force=args.force, check_only=args.check_only, config=config)
    print_summary(results)
    return 1 if any(r.status == STATUS_ABORTED for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
