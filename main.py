"""
BodaCover scheduler - command line entry point.

Runs the tick loop in the foreground until SIGINT/SIGTERM, or performs a
single operator action (one tick, run one job, list upcoming runs).

Examples:
  # Foreground scheduler with default jobs
  python main.py

  # One scheduling pass, then exit
  python main.py --once

  # Re-run a settlement window for a job
  python main.py --run-job <job_id> --window-id 20240301-B1
"""

import argparse
import logging
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

from bodacover.config import SchedulerSettings
from bodacover.infra.logging_config import setup_logging
from bodacover.scheduler.errors import SchedulerError
from bodacover.scheduler.service import SchedulerService
from bodacover.settlement.handlers import build_scheduler_service


logger = logging.getLogger("bodacover.main")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="BodaCover job scheduler and batch-settlement engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="SQLite job store path (default: SCHEDULER_DB_PATH or data/scheduler.db)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (default: LOG_LEVEL or INFO)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run recovery and a single tick, then exit"
    )
    parser.add_argument(
        "--no-seed",
        action="store_true",
        default=False,
        help="Do not create missing default jobs"
    )
    parser.add_argument(
        "--run-job",
        type=str,
        default=None,
        metavar="JOB_ID",
        help="Run one job immediately and exit"
    )
    parser.add_argument(
        "--window-id",
        type=str,
        default=None,
        help="Batch window to process with --run-job (e.g. 20240301-B1)"
    )
    parser.add_argument(
        "--list-upcoming",
        action="store_true",
        default=False,
        help="Print the next scheduled runs and exit"
    )
    return parser.parse_args(argv)


def install_signal_handlers(service: SchedulerService) -> None:
    """SIGINT / SIGTERM stop the tick loop after the current tick."""

    def handler(signum, frame):
        signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
        logger.info(f"{signal_name} received - stopping scheduler")
        service.stop()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    settings = SchedulerSettings.from_env()
    setup_logging(args.log_level or settings.log_level, settings.log_dir)

    # One-shot actions execute inline so their outcome is known on return
    one_shot = bool(args.run_job or args.once)
    try:
        service = build_scheduler_service(
            settings,
            db_path=args.db_path,
            max_workers=0 if one_shot else None,
        )
    except SchedulerError as e:
        logger.error(f"Cannot start scheduler: {e}")
        return 1

    try:
        if not args.no_seed:
            service.seed_default_jobs()

        if args.list_upcoming:
            for job in service.upcoming_runs():
                next_run = job.next_run_at or job.scheduled_at
                print(f"{next_run.isoformat()}  {job.job_type.value:<18} {job.name}")
            return 0

        if args.run_job:
            service.recovery_manager.recover_on_startup(service.clock())
            job = service.run_now(args.run_job, triggered_by="cli", window_id=args.window_id)
            logger.info(f"Job {job.name} finished in status {job.status.value}")
            return 0

        if args.once:
            service.recovery_manager.recover_on_startup(service.clock())
            report = service.tick()
            logger.info(
                f"Tick complete: started={len(report.started)}, "
                f"deferred={len(report.deferred)}, errors={len(report.errors)}"
            )
            return 0

        if not settings.enabled:
            logger.warning("SCHEDULER_ENABLED=false; nothing to do")
            return 0

        install_signal_handlers(service)
        service.start(run_recovery=True, blocking=True)
        return 0

    except SchedulerError as e:
        logger.error(f"Scheduler error: {e}")
        return 1

    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
