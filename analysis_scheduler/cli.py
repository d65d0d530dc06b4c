"""
Command-line interface for the analysis scheduler.

Provides commands for:
- Starting/stopping the scheduler
- Checking its status
- Running a single poll by hand
- Listing due analyses
- Showing the resolved configuration
"""

import argparse
import json
import logging
import os
import signal
import sys
import time
from pathlib import Path

# Load .env file if python-dotenv is available
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

from analysis_scheduler.config import SchedulerConfig
from analysis_scheduler.errors import SchedulerError
from analysis_scheduler.service import SchedulerService, is_scheduler_running, get_scheduler_info

logger = logging.getLogger(__name__)


def setup_logging(log_file: str = None, verbose: bool = False, level: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level, logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)

    # Root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # APScheduler logs every job run at INFO
    if not verbose:
        logging.getLogger('apscheduler').setLevel(logging.WARNING)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)


def _load_config(args) -> SchedulerConfig:
    config = SchedulerConfig.from_env()
    setup_logging(
        log_file=getattr(args, 'log_file', None) or config.logging.file,
        verbose=args.verbose,
        level=config.logging.level
    )
    return config


def cmd_start(args):
    """Start the scheduler in the foreground."""
    config = _load_config(args)

    try:
        service = SchedulerService(config=config, foreground=True)
        service.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    except SchedulerError as e:
        logger.error(f"Failed to start scheduler: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        sys.exit(1)


def cmd_stop(args):
    """Stop the scheduler."""
    config = _load_config(args)

    running, pid = is_scheduler_running(config.data_dir)
    if not running:
        logger.warning("Scheduler does not appear to be running (no PID file)")
        return

    try:
        logger.info(f"Stopping scheduler (PID: {pid})...")
        os.kill(pid, signal.SIGTERM)

        # Wait for process to stop
        for _ in range(10):
            time.sleep(1)
            if not is_scheduler_running(config.data_dir)[0]:
                logger.info("Scheduler stopped successfully")
                return

        logger.warning("Scheduler did not stop gracefully, sending SIGKILL")
        os.kill(pid, signal.SIGKILL)

    except OSError as e:
        logger.error(f"Failed to stop scheduler: {e}")
        sys.exit(1)


def cmd_status(args):
    """Show scheduler status."""
    config = _load_config(args)

    info = get_scheduler_info(config.data_dir)
    if not info:
        print("  Status:     \033[91m○ Not Running\033[0m")
        print("\n  Start the scheduler with: analysis-scheduler start")
        return

    print("  Status:     \033[92m● Running\033[0m")
    print(f"  PID:        {info['pid']}")
    if info.get('started_at'):
        print(f"  Started:    {info['started_at']}")
    if info.get('queue'):
        print(f"  Queue:      {info['queue']}")
    if info.get('api_base_url'):
        print(f"  API:        {info['api_base_url']}")
    if info.get('log_file'):
        print(f"  Log file:   {info['log_file']}")


def cmd_tick(args):
    """Run one poll immediately."""
    config = _load_config(args)

    try:
        service = SchedulerService(config=config)
    except Exception as e:
        logger.error(f"Failed to initialize scheduler: {e}", exc_info=args.verbose)
        sys.exit(1)

    try:
        summary = service.tick()
    finally:
        service.close()

    if args.json:
        print(json.dumps({
            'started_at': summary.started_at.isoformat(),
            'found': summary.found,
            'dispatched': summary.dispatched,
            'skipped': summary.skipped,
            'failed': summary.failed,
            'error': summary.error,
            'results': [
                {
                    'analysis_id': r.analysis_id,
                    'outcome': r.outcome,
                    'execution_id': r.execution_id,
                    'next_run': r.next_run.isoformat() if r.next_run else None,
                    'error': r.error,
                }
                for r in summary.results
            ],
        }, indent=2))
    else:
        print(summary)

    if summary.error or summary.failed:
        sys.exit(1)


def cmd_due(args):
    """List due analyses without dispatching them."""
    config = _load_config(args)

    service = SchedulerService(config=config)
    try:
        try:
            analyses = service.find_due_analyses()
        except SchedulerError as e:
            logger.error(f"Failed to list due analyses: {e}")
            sys.exit(1)

        if not analyses:
            print("No analyses are due")
            return

        print(f"\n{len(analyses)} due analysis(es):\n")
        for analysis in analyses:
            print(f"  Analysis:  {analysis.id}")
            print(f"  Project:   {analysis.project_id}")
            print(f"  Schedule:  {analysis.schedule_type}")
            print(f"  Due since: {analysis.next_scheduled_run.isoformat()}")
            print(f"  Last run:  {analysis.last_scheduled_run.isoformat() if analysis.last_scheduled_run else 'never'}")
            print()
    finally:
        service.close()


def cmd_show_config(args):
    """Show current configuration."""
    config = _load_config(args)

    print(json.dumps(config.describe(), indent=2))

    errors = config.validate()
    if errors:
        print("\nConfiguration errors:")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='analysis-scheduler',
        description="Analysis Scheduler - Dispatch scheduled analyses when they are due",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Start command
    start_parser = subparsers.add_parser('start', help='Start the scheduler (foreground)')
    start_parser.add_argument(
        '--log-file',
        type=str,
        help='Log file path (default: $SCHEDULER_LOG_FILE)'
    )
    start_parser.set_defaults(func=cmd_start)

    # Stop command
    stop_parser = subparsers.add_parser('stop', help='Stop the scheduler')
    stop_parser.set_defaults(func=cmd_stop)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show scheduler status')
    status_parser.set_defaults(func=cmd_status)

    # Tick command
    tick_parser = subparsers.add_parser('tick', help='Process due analyses once and exit')
    tick_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    tick_parser.set_defaults(func=cmd_tick)

    # Due command
    due_parser = subparsers.add_parser('due', help='List analyses that are due')
    due_parser.set_defaults(func=cmd_due)

    # Show config command
    show_config_parser = subparsers.add_parser('show-config', help='Show configuration')
    show_config_parser.set_defaults(func=cmd_show_config)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == '__main__':
    main()
