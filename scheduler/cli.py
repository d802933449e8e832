"""
Command-line interface for the job scheduler.

Provides commands for:
- Starting the scheduler and checking its status
- Adding/removing jobs
- Running a job now and watching its output
- Viewing run history and configuration
"""

import argparse
import json
import logging
import signal
import sys
import time
from pathlib import Path

from scheduler.config import SchedulerConfig
from scheduler.errors import SchedulerError, SpawnError
from scheduler.events import StatusEvent
from scheduler.models import SUCCESS, FAILED, RUNNING
from scheduler.service import SchedulerService, is_scheduler_running, get_scheduler_info

logger = logging.getLogger(__name__)

STATUS_COLORS = {
    SUCCESS: "\033[92m",
    FAILED: "\033[91m",
    RUNNING: "\033[93m",
}
RESET = "\033[0m"

LIVE_POLL_SECONDS = 0.2


def setup_logging(log_file: str = None, verbose: bool = False, level: str = "INFO"):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

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
    return SchedulerConfig(args.config, data_dir=getattr(args, 'data_dir', None))


def _format_time(value) -> str:
    return value.strftime('%Y-%m-%d %H:%M:%S') if value else '-'


def _format_elapsed(elapsed) -> str:
    if elapsed is None:
        return '-'
    if elapsed >= 3600:
        return f"{elapsed / 3600:.1f}h"
    if elapsed >= 60:
        return f"{elapsed / 60:.1f}m"
    return f"{elapsed:.1f}s"


def _colorize(status: str, width: int, color: bool) -> str:
    if color and status in STATUS_COLORS:
        return f"{STATUS_COLORS[status]}{status}{RESET}" + ' ' * (width - len(status))
    return status.ljust(width)


def _print_table(headers, rows, color_column=None, color=False):
    """Print rows as a box-drawn table."""
    widths = [
        max(len(headers[i]), *(len(row[i]) for row in rows)) if rows else len(headers[i])
        for i in range(len(headers))
    ]

    def make_separator(left, mid, right, fill='─'):
        return left + mid.join(fill * (w + 2) for w in widths) + right

    def make_row(cells):
        rendered = []
        for i, (cell, width) in enumerate(zip(cells, widths)):
            if i == color_column:
                rendered.append(_colorize(cell, width, color))
            else:
                rendered.append(cell.ljust(width))
        return "│ " + " │ ".join(rendered) + " │"

    print()
    print(make_separator('┌', '┬', '┐'))
    print(make_row(headers))
    print(make_separator('├', '┼', '┤'))
    for row in rows:
        print(make_row(row))
    print(make_separator('└', '┴', '┘'))


def cmd_start(args):
    """Start the scheduler in the foreground."""
    config = _load_config(args)
    setup_logging(
        log_file=args.log_file or str(config.log_file),
        verbose=args.verbose,
        level=config.logging.level
    )

    running, pid = is_scheduler_running(config)
    if running:
        logger.error(f"Scheduler is already running (PID: {pid})")
        sys.exit(1)

    service = SchedulerService(config)

    def log_event(event: StatusEvent):
        if event.message:
            logger.warning(f"Job {event.job.id} ('{event.job.name}'): {event.message}")
        elif event.run is not None:
            logger.info(f"Job {event.job.id} ('{event.job.name}') run {event.run.id}: {event.run.status}")

    service.subscribe(log_event)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        service.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        service.start()
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}", exc_info=True)
        sys.exit(1)

    logger.info("Running in foreground mode. Press Ctrl+C to stop.")
    while True:
        time.sleep(1)


def cmd_status(args):
    """Show scheduler status."""
    config = _load_config(args)
    info = get_scheduler_info(config)

    print()
    if info:
        print(f"  Status:     \033[92m● Running\033[0m")
        print(f"  PID:        {info['pid']}")
        print(f"  Started:    {info.get('started_at', 'N/A')}")
        print(f"  Data Dir:   {info.get('data_dir', 'N/A')}")
        print(f"  Database:   {info.get('db_path', 'N/A')}")
        print(f"  Log File:   {info.get('log_file', 'N/A')}")
    else:
        print(f"  Status:     \033[91m○ Not Running\033[0m")
        print("\n  Start the scheduler with: worktree-jobs start")
    print()


def cmd_list(args):
    """List jobs."""
    setup_logging(verbose=args.verbose, level="WARNING")
    service = SchedulerService(_load_config(args))
    try:
        worktree = str(Path(args.worktree).expanduser().resolve()) if args.worktree else None
        jobs = service.list_jobs(worktree)
    finally:
        service.store.close()

    if args.json:
        print(json.dumps([job.to_dict() for job in jobs], indent=2))
        return

    if not jobs:
        print("\nNo jobs defined.")
        return

    rows = [
        [str(job.id), job.name, job.status, job.cron or '-',
         _format_time(job.last_run), _format_time(job.next_run), job.command]
        for job in jobs
    ]
    _print_table(
        ['ID', 'Name', 'Status', 'Cron', 'Last Run', 'Next Run', 'Command'],
        rows, color_column=2, color=args.color
    )
    print(f"\n{len(jobs)} job(s)")


def cmd_add(args):
    """Add a new job."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)
    service = SchedulerService(config)
    worktree = str(Path(args.worktree).expanduser().resolve())

    try:
        if args.cron and not service.registry.validate(args.cron):
            logger.warning(f"Invalid cron expression '{args.cron}': the job will only run manually")
        job = service.create_job(worktree, args.name, args.job_command, args.cron)
    except SchedulerError as e:
        logger.error(f"Failed to add job: {e}")
        sys.exit(1)
    finally:
        service.registry.shutdown()
        service.store.close()

    logger.info(f"Added job {job.id} ('{job.name}')")
    logger.info(f"Command: {job.command}")
    if job.cron and is_scheduler_running(config)[0]:
        logger.info("Restart scheduler for the schedule to take effect")


def cmd_remove(args):
    """Remove a job and its history."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)
    service = SchedulerService(config)
    try:
        service.delete_job(args.job_id)
    except SchedulerError as e:
        logger.error(f"Failed to remove job: {e}")
        sys.exit(1)
    finally:
        service.registry.shutdown()
        service.store.close()
    logger.info(f"Removed job {args.job_id}")
    if is_scheduler_running(config)[0]:
        logger.info("Restart scheduler to drop the job's schedule and stop any run in progress")


def cmd_run(args):
    """Run a job now in this process and stream its output."""
    setup_logging(verbose=args.verbose, level="WARNING")
    service = SchedulerService(_load_config(args))

    try:
        future = service.run_job(args.job_id)
    except SchedulerError as e:
        logger.error(f"Failed to run job: {e}")
        service.stop(wait=False)
        sys.exit(1)

    printed = 0
    try:
        while not future.done():
            output = service.get_live_output(args.job_id)
            if output:
                stdout = output[0]
                sys.stdout.write(stdout[printed:])
                sys.stdout.flush()
                printed = len(stdout)
            time.sleep(LIVE_POLL_SECONDS)
    except KeyboardInterrupt:
        logger.warning("Interrupted, stopping job...")
        try:
            service.stop_job(args.job_id)
        except SchedulerError:
            pass

    try:
        run = future.result()
    except SpawnError as e:
        run = e.run
    finally:
        service.stop()

    sys.stdout.write(run.stdout[printed:])
    if run.stderr:
        sys.stderr.write(run.stderr if run.stderr.endswith('\n') else run.stderr + '\n')
    print(f"\nRun {run.id} finished: {run.status} (exit code {run.exit_code}) "
          f"in {_format_elapsed(run.elapsed_seconds)}")
    sys.exit(0 if run.status == SUCCESS else 1)


def cmd_history(args):
    """Show a job's run history."""
    setup_logging(verbose=args.verbose, level="WARNING")
    service = SchedulerService(_load_config(args))
    try:
        job = service.get_job(args.job_id)
        runs = service.get_job_runs(args.job_id, None if args.show_all else args.limit)
    finally:
        service.store.close()

    if job is None:
        print(f"Job not found: {args.job_id}")
        sys.exit(1)

    if args.json:
        print(json.dumps([run.to_dict() for run in runs], indent=2))
        return

    if not runs:
        print(f"\nNo run history for job {job.id} ('{job.name}').")
        return

    rows = [
        [str(run.id), _format_time(run.started_at),
         _format_time(run.finished_at) if run.finished_at else 'running...',
         _format_elapsed(run.elapsed_seconds),
         '-' if run.exit_code is None else str(run.exit_code),
         run.status]
        for run in runs
    ]
    _print_table(
        ['Run ID', 'Start Time', 'End Time', 'Elapsed', 'Exit', 'Status'],
        rows, color_column=5, color=args.color
    )
    print(f"\nShowing {len(runs)} run(s) of job {job.id} ('{job.name}')")


def cmd_show_config(args):
    """Show current configuration."""
    config = _load_config(args)

    print(f"\nConfiguration file: {config.config_path}")
    print(f"Data dir: {config.data_dir}")
    print(f"Database: {config.db_path}")
    print(f"Logging level: {config.logging.level}")
    print(f"Log file: {config.log_file}")
    print(f"Grace period: {config.execution.grace_period_seconds}s")
    print(f"Output cap: {config.execution.max_output_chars or 'unbounded'}")
    print(f"Tick workers: {config.execution.max_workers}")

    errors = config.validate()
    if errors:
        print("\nConfiguration problems:")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)


def cmd_init(args):
    """Write a configuration file with default settings."""
    setup_logging(verbose=args.verbose)
    config = _load_config(args)
    config.save()
    logger.info(f"Initialized configuration at: {config.config_path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="worktree-jobs",
        description="Run named shell commands against worktrees, on demand or on a cron schedule",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to scheduler configuration file'
    )
    parser.add_argument(
        '-d', '--data-dir',
        type=str,
        help='Directory for the job database, logs and PID file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    start_parser = subparsers.add_parser('start', help='Start the scheduler (foreground)')
    start_parser.add_argument('--log-file', type=str, help='Log file path')
    start_parser.set_defaults(func=cmd_start)

    status_parser = subparsers.add_parser('status', help='Show scheduler status')
    status_parser.set_defaults(func=cmd_status)

    list_parser = subparsers.add_parser('list', help='List jobs')
    list_parser.add_argument('--worktree', '-w', type=str, help='Only jobs of this worktree')
    list_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    list_parser.add_argument('--color', action='store_true', help='Colorize status output')
    list_parser.set_defaults(func=cmd_list)

    add_parser = subparsers.add_parser('add', help='Add a new job')
    add_parser.add_argument('name', help='Job name')
    add_parser.add_argument(
        '--command', '-C',
        dest='job_command',
        required=True,
        help='Shell command to execute (e.g., "npm test")'
    )
    add_parser.add_argument('--worktree', '-w', type=str, default='.',
                            help='Working directory for the command (default: current directory)')
    add_parser.add_argument('--cron', type=str, help='Cron expression (e.g., "0 2 * * *")')
    add_parser.set_defaults(func=cmd_add)

    remove_parser = subparsers.add_parser('remove', help='Remove a job and its history')
    remove_parser.add_argument('job_id', type=int, help='Job ID to remove')
    remove_parser.set_defaults(func=cmd_remove)

    run_parser = subparsers.add_parser('run', help='Run a job now and stream its output')
    run_parser.add_argument('job_id', type=int, help='Job ID to run')
    run_parser.set_defaults(func=cmd_run)

    history_parser = subparsers.add_parser('history', help='View job run history')
    history_parser.add_argument('job_id', type=int, help='Job ID')
    history_parser.add_argument('--limit', '-n', type=int, default=10,
                                help='Maximum number of runs to show (default: 10)')
    history_parser.add_argument('--all', '-a', dest='show_all', action='store_true',
                                help='Show all runs')
    history_parser.add_argument('--json', action='store_true', help='Output in JSON format')
    history_parser.add_argument('--color', action='store_true', help='Colorize status output')
    history_parser.set_defaults(func=cmd_history)

    init_parser = subparsers.add_parser('init', help='Initialize scheduler configuration')
    init_parser.set_defaults(func=cmd_init)

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
