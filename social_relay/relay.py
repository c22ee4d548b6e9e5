##########################################################################################
#
# Script name: relay.py
#
# Description: Drives one polling cycle: fetch, interpret, deduplicate, dispatch, record.
#
##########################################################################################

import logging
import threading
import time
from collections.abc import Callable

from .errors import FeedFetchError, StoreError
from .feed_source import FeedSource
from .interpreter import FeedInterpreter
from .models import CandidatePost, CycleResult, FailureStreak, PostOutcome
from .sinks import DiscordSink, TelegramSink
from .store import ProcessedPostStore


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)
FAILURE_THRESHOLD = 3
POST_DELAY_SECONDS = 1.0
ALERT_TITLE = 'Nitter RSS Feed Failure'


# ****************************************************************************************
# Functions
# ****************************************************************************************


def build_failure_alert(consecutive_failures: int, error_message: str) -> str:
    return '\n'.join([
        f'The bot has failed to fetch posts {consecutive_failures} times in a row.',
        '',
        '**Possible causes:**',
        '• Session cookies expired',
        '• Watched account suspended or banned',
        '• Nitter container stopped or crashed',
        '• Network connectivity issues',
        '',
        f'**Last error:** {error_message}',
        '',
        '**Action required:** Check Nitter logs and session status.',
        '```bash',
        'docker logs nitter --tail 50',
        '```',
    ])


class RelayOrchestrator:
    '''
    Relays new posts from one feed to Telegram and Discord.

    Input:
        feed_source, interpreter, store: the feed and bookkeeping collaborators.
        telegram, discord: the two sinks; discord also carries failure alerts.
        streak: failure-streak state; a fresh one is created when omitted.
        failure_threshold: consecutive fetch failures before one alert is sent.
        post_delay: seconds to wait between two relayed posts.
        sleep: injectable sleep function.

    Side Effects:
        Writes to the store and to both chat destinations. Mutates streak at the
        end of every cycle.
    '''

    def __init__(
        self,
        feed_source: FeedSource,
        interpreter: FeedInterpreter,
        store: ProcessedPostStore,
        telegram: TelegramSink,
        discord: DiscordSink,
        streak: FailureStreak | None = None,
        failure_threshold: int = FAILURE_THRESHOLD,
        post_delay: float = POST_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.feed_source = feed_source
        self.interpreter = interpreter
        self.store = store
        self.telegram = telegram
        self.discord = discord
        self.streak = streak if streak is not None else FailureStreak()
        self.failure_threshold = failure_threshold
        self.post_delay = post_delay
        self._sleep = sleep
        self._cycle_lock = threading.Lock()

    @property
    def sinks(self) -> tuple[TelegramSink, DiscordSink]:
        return (self.telegram, self.discord)

    @property
    def in_progress(self) -> bool:
        return self._cycle_lock.locked()

    def try_run_cycle(self) -> CycleResult | None:
        '''
        Run a cycle unless one is already in flight; returns None when skipped.
        '''
        if not self._cycle_lock.acquire(blocking=False):
            log.warning('Previous processing cycle still running, skipping')
            return None
        try:
            return self.run_cycle()
        finally:
            self._cycle_lock.release()

    def wait_until_idle(self, timeout: float) -> bool:
        if not self._cycle_lock.acquire(timeout=max(0.0, timeout)):
            return False
        self._cycle_lock.release()
        return True

    def run_cycle(self) -> CycleResult:
        result = CycleResult()
        log.info('Starting processing cycle')
        try:
            self._execute(result)
        except (FeedFetchError, StoreError) as exc:
            self._fail(result, str(exc))
            return result
        except Exception as exc:  # noqa: BLE001
            log.exception('Processing cycle failed unexpectedly')
            self._fail(result, str(exc) or exc.__class__.__name__)
            return result

        if self.streak.consecutive_failures > 0:
            log.info(
                'Feed recovered after %d failure(s), resetting failure counter',
                self.streak.consecutive_failures,
            )
        self.streak.reset()
        log.info(
            'Processing cycle completed: fetched=%d new=%d backfilled=%d errors=%d',
            result.total_fetched,
            result.new_posts,
            result.backfilled,
            len(result.errors),
        )
        return result

    def _execute(self, result: CycleResult) -> None:
        raw = self.feed_source.fetch()
        posts = self.interpreter.to_candidates(self.interpreter.parse(raw))
        result.total_fetched = len(posts)
        if not posts:
            log.info('No posts found in RSS feed')
            return

        existing = self.store.filter_existing(post.id for post in posts)
        new_posts = [post for post in posts if post.id not in existing]
        result.new_posts = len(new_posts)
        if not new_posts:
            log.info('No new posts to process (%d fetched)', result.total_fetched)
            return

        first_run = not existing and len(new_posts) == result.total_fetched
        if first_run and len(new_posts) > 1:
            new_posts = self._backfill(new_posts, result)
            result.new_posts = len(new_posts)
        else:
            log.info('%d new post(s) to process, %d already relayed', len(new_posts), len(existing))

        for index, post in enumerate(new_posts):
            result.outcomes.append(self._dispatch(post, result))
            if index < len(new_posts) - 1 and self.post_delay > 0:
                self._sleep(self.post_delay)

    def _backfill(self, posts: list[CandidatePost], result: CycleResult) -> list[CandidatePost]:
        '''
        Record every post but the newest without sending; return the newest alone.
        '''
        latest = max(posts, key=lambda post: post.published_at)
        older = [post for post in posts if post is not latest]
        log.info('First run detected: recording %d older post(s), relaying only %s', len(older), latest.id)
        # StoreError propagates: nothing is sent until the backfill is recorded.
        for post in older:
            self.store.mark_processed(post.id, post.published_at)
            result.backfilled += 1
        return [latest]

    def _dispatch(self, post: CandidatePost, result: CycleResult) -> PostOutcome:
        outcome = PostOutcome(post_id=post.id)
        log.debug('Processing post %s', post.id)

        # Another cycle may have claimed the post since the bulk check.
        if self.store.exists(post.id):
            log.debug('Post %s already processed, skipping', post.id)
            outcome.skipped = True
            return outcome

        outcome.telegram = self._send(self.telegram, post, result)
        outcome.discord = self._send(self.discord, post, result)

        if outcome.telegram or outcome.discord:
            try:
                outcome.stored = self.store.mark_processed(post.id, post.published_at)
            except StoreError as exc:
                result.errors.append(f'Store error for post {post.id}: {exc}')
                log.error('Failed to mark post %s as processed; it may be relayed again', post.id)

        if not outcome.telegram and not outcome.discord:
            outcome.error = 'Both Telegram and Discord failed'
            log.warning('Post %s failed to post to any channel', post.id)
        elif not outcome.telegram:
            outcome.error = 'Telegram send failed'
        elif not outcome.discord:
            outcome.error = 'Discord send failed'
        return outcome

    def _send(self, sink: TelegramSink | DiscordSink, post: CandidatePost, result: CycleResult) -> bool:
        try:
            ok = bool(sink.send(post))
        except Exception as exc:  # noqa: BLE001
            log.exception('%s send raised for post %s', sink.name, post.id)
            result.errors.append(f'{sink.name} error for post {post.id}: {exc}')
            ok = False
        else:
            if not ok:
                result.errors.append(f'{sink.name} send failed for post {post.id}')
        result.record_sink(sink.name, ok)
        return ok

    def _fail(self, result: CycleResult, message: str) -> None:
        log.error('Processing cycle failed: %s', message)
        result.abort(message)
        alert_due = self.streak.record_failure(self.failure_threshold)
        log.warning(
            'Feed failure tracked: %d consecutive (threshold %d)',
            self.streak.consecutive_failures,
            self.failure_threshold,
        )
        if alert_due:
            self._send_failure_alert(message)
            self.streak.alert_sent = True

    def _send_failure_alert(self, message: str) -> None:
        body = build_failure_alert(self.streak.consecutive_failures, message)
        try:
            if self.discord.send_alert(ALERT_TITLE, body):
                log.info('Feed failure alert sent')
            else:
                log.warning('Feed failure alert was not delivered')
        except Exception:  # noqa: BLE001
            log.exception('Failed to send feed failure alert')

    def health_check(self) -> dict[str, bool]:
        try:
            self.store.count()
            database = True
        except StoreError:
            database = False
        return {
            'feed': self.feed_source.health_check(),
            'telegram': self.telegram.health_check(),
            'discord': self.discord.health_check(),
            'database': database,
        }
