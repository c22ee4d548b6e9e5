##########################################################################################
#
# Script name: main.py
#
# Description: CLI entrypoint that schedules relay cycles for the watched feed.
#
##########################################################################################

import argparse
import logging
import os
import signal
import sys
import time
from datetime import date

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

from .config import DEFAULT_CONFIG_FILE, AppConfig, load_config
from .errors import RelayError
from .feed_source import FeedSource
from .interpreter import FeedInterpreter
from .models import CycleResult, to_legacy_summary
from .relay import RelayOrchestrator
from .sinks import DiscordSink, TelegramSink
from .store import ProcessedPostStore


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(os.path.basename(sys.argv[0]))
log.setLevel(logging.DEBUG)
log.propagate = False
formatter = logging.Formatter(
    '%(asctime)-15s [%(funcName)25s:%(lineno)-5s] %(levelname)-8s %(message)s'
)

root_log = logging.getLogger()
root_log.setLevel(logging.DEBUG)

SHUTDOWN_TIMEOUT = 10.0
MAX_ALERT_ERRORS = 5
JOB_ID = 'social_relay_cycle'


# ****************************************************************************************
# Functions
# ****************************************************************************************


def configure_file_logging(path: str) -> None:
    if any(isinstance(handler, logging.FileHandler) for handler in root_log.handlers):
        return
    fh = logging.FileHandler(path, mode='a')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)
    log.addHandler(fh)
    root_log.addHandler(fh)


def build_orchestrator(config: AppConfig) -> RelayOrchestrator:
    store = ProcessedPostStore(config.database)
    log.info('Processed-post store ready with %d record(s)', store.count())
    return RelayOrchestrator(
        feed_source=FeedSource(config.feed, config.retry),
        interpreter=FeedInterpreter(),
        store=store,
        telegram=TelegramSink(config.telegram, heading=config.relay.post_heading),
        discord=DiscordSink(
            config.discord,
            heading=config.relay.post_heading,
            bot_name=config.relay.bot_name,
        ),
        failure_threshold=config.relay.failure_alert_threshold,
        post_delay=config.relay.post_delay_seconds,
    )


def format_error_alert(errors: list[str]) -> str:
    summary = '\n• '.join(errors[:MAX_ALERT_ERRORS])
    more = f'\n...and {len(errors) - MAX_ALERT_ERRORS} more' if len(errors) > MAX_ALERT_ERRORS else ''
    return f'Encountered {len(errors)} error(s) during processing:\n\n• {summary}{more}'


def report_cycle(orchestrator: RelayOrchestrator, result: CycleResult | None) -> None:
    if result is None:
        return
    summary = to_legacy_summary(result)
    log.info(
        'Cycle summary: fetched=%d new=%d telegram=%d/%d discord=%d/%d errors=%d',
        summary.total_fetched,
        summary.new_tweets,
        summary.telegram_success,
        summary.telegram_failed,
        summary.discord_success,
        summary.discord_failed,
        len(result.errors),
    )
    # Fetch failures are alerted by the failure streak; only per-post errors here.
    if result.success and result.errors:
        orchestrator.discord.send_alert('Processing Errors', format_error_alert(result.errors))


def run_scheduled_cycle(orchestrator: RelayOrchestrator) -> None:
    report_cycle(orchestrator, orchestrator.try_run_cycle())


def log_health(orchestrator: RelayOrchestrator) -> dict[str, bool]:
    health = orchestrator.health_check()
    for name, ok in health.items():
        if ok:
            log.info('Health check passed: %s', name)
        else:
            log.warning('Health check failed: %s - continuing anyway', name)
    return health


def start_scheduler(orchestrator: RelayOrchestrator, cron_expression: str) -> BackgroundScheduler:
    try:
        trigger = CronTrigger.from_crontab(cron_expression)
    except ValueError as exc:
        raise RelayError(f'Invalid cron expression: {cron_expression} ({exc})') from exc
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_scheduled_cycle,
        trigger=trigger,
        args=[orchestrator],
        id=JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    log.info('Cron scheduler started (%s)', cron_expression)
    return scheduler


def shutdown(orchestrator: RelayOrchestrator, scheduler: BackgroundScheduler | None) -> None:
    log.info('Cleaning up resources...')
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        log.info('Cron scheduler stopped')
    if orchestrator.in_progress:
        log.info('Waiting for current processing cycle to complete...')
        if not orchestrator.wait_until_idle(SHUTDOWN_TIMEOUT):
            log.warning('Processing did not complete within %.0fs', SHUTDOWN_TIMEOUT)
    orchestrator.telegram.close()
    orchestrator.discord.close()
    orchestrator.feed_source.close()
    orchestrator.store.close()
    log.info('Cleanup completed')


# ****************************************************************************************
# Handle the arguments
# ****************************************************************************************


def handle_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Relay new posts from a Nitter RSS feed to Telegram and Discord.')
    parser.add_argument('--config', default=DEFAULT_CONFIG_FILE, help='Path to relay config YAML.')
    parser.add_argument('--once', action='store_true', help='Run a single relay cycle and exit.')
    parser.add_argument('--health', action='store_true', help='Run health checks and exit.')
    parser.add_argument(
        '--cleanup-days',
        type=int,
        default=None,
        help='Delete processed-post records older than N days and exit.',
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output to stdout.')
    parser.add_argument('-q', '--quiet', action='store_true', help='Minimal stdout.')
    return parser.parse_args(argv)


def configure_console_logging(args: argparse.Namespace, level: str) -> None:
    ch = logging.StreamHandler(sys.stdout)
    if args.verbose:
        ch.setLevel(logging.DEBUG)
    elif args.quiet:
        ch.setLevel(logging.ERROR)
    else:
        ch.setLevel(getattr(logging, level, logging.INFO))
    ch.setFormatter(formatter)
    log.addHandler(ch)
    root_log.addHandler(ch)

    log.info('++++++++++++++++++++++++++++++++++++++++++++++')
    log.info('+  %s', os.path.basename(sys.argv[0]))
    log.info('+  Python Version: %s', sys.version.split()[0])
    log.info('+  Today is: %s', date.today())
    log.info('++++++++++++++++++++++++++++++++++++++++++++++')


# ****************************************************************************************
# Main
# ****************************************************************************************


def main(argv: list[str] | None = None) -> int:
    args = handle_args(argv)
    load_dotenv()
    try:
        config = load_config(args.config)
    except RelayError as exc:
        ch = logging.StreamHandler(sys.stderr)
        ch.setFormatter(formatter)
        log.addHandler(ch)
        log.error('Configuration error: %s', exc)
        return 1

    configure_file_logging(config.log.file)
    configure_console_logging(args, config.log.level)
    # APScheduler logs every job run at INFO.
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    try:
        orchestrator = build_orchestrator(config)
    except (RelayError, RuntimeError) as exc:
        log.critical('Failed to start relay: %s', exc)
        return 1

    if args.cleanup_days is not None:
        deleted = orchestrator.store.cleanup_old(args.cleanup_days)
        log.info('Deleted %d record(s) older than %d days', deleted, args.cleanup_days)
        shutdown(orchestrator, None)
        return 0

    if args.health:
        health = log_health(orchestrator)
        shutdown(orchestrator, None)
        return 0 if all(health.values()) else 1

    log_health(orchestrator)
    log.info('Running initial processing cycle')
    run_scheduled_cycle(orchestrator)
    if args.once:
        shutdown(orchestrator, None)
        return 0

    try:
        scheduler = start_scheduler(orchestrator, config.polling.cron_expression)
    except RelayError as exc:
        log.critical('Failed to start relay: %s', exc)
        shutdown(orchestrator, None)
        return 1

    stop = {'value': False}

    def _shutdown_handler(signum: int, _frame: object) -> None:
        log.info('Received shutdown signal %s', signal.Signals(signum).name)
        stop['value'] = True

    signal.signal(signal.SIGINT, _shutdown_handler)
    signal.signal(signal.SIGTERM, _shutdown_handler)

    log.info('Relay is running and waiting for scheduled cycles')
    while not stop['value']:
        time.sleep(0.5)

    shutdown(orchestrator, scheduler)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
