##########################################################################################
#
# Script name: feed_source.py
#
# Description: Fetches the watched account's RSS document from a Nitter instance.
#
##########################################################################################

import logging
import time
from collections.abc import Callable

import requests

from .config import FeedSettings, RetrySettings
from .errors import FeedFetchError


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)
USER_AGENT = 'social-relay-bot/1.0'
ACCEPT = 'application/rss+xml, application/xml, text/xml'
FETCH_TIMEOUT = 30
HEALTH_TIMEOUT = 5


class EmptyFeedError(Exception):
    pass


# ****************************************************************************************
# Functions
# ****************************************************************************************


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, EmptyFeedError):
        return True
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        if response is None:
            return True
        return response.status_code == 429 or 500 <= response.status_code < 600
    return isinstance(exc, (requests.ConnectionError, requests.Timeout))


class FeedSource:
    def __init__(
        self,
        settings: FeedSettings,
        retry: RetrySettings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.retry = retry
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': ACCEPT, 'User-Agent': USER_AGENT})
        self._sleep = sleep

    @property
    def rss_url(self) -> str:
        return f'{self.settings.base_url}/{self.settings.username}/rss'

    def fetch(self) -> str:
        url = self.rss_url
        last_error: Exception | None = None
        attempts = self.retry.max_retries
        for attempt in range(1, attempts + 1):
            try:
                log.debug('Fetching RSS feed %s (attempt %d)', url, attempt)
                response = self.session.get(url, timeout=FETCH_TIMEOUT)
                response.raise_for_status()
                body = response.text or ''
                if not body.strip():
                    raise EmptyFeedError('Empty RSS feed response')
                log.debug('RSS feed fetched: %d chars on attempt %d', len(body), attempt)
                return body
            except (requests.RequestException, EmptyFeedError) as exc:
                last_error = exc
                retryable = is_retryable(exc)
                log.warning(
                    'RSS fetch attempt %d/%d failed for %s (retryable=%s): %s',
                    attempt,
                    attempts,
                    url,
                    retryable,
                    exc,
                )
                if not retryable or attempt == attempts:
                    break
                self._sleep(self.retry.retry_delay_ms * (2 ** (attempt - 1)) / 1000.0)
        raise FeedFetchError(f'Failed to fetch RSS after {attempts} attempts: {last_error}', url=url)

    def health_check(self) -> bool:
        try:
            response = self.session.get(f'{self.settings.base_url}/', timeout=HEALTH_TIMEOUT)
        except requests.RequestException as exc:
            log.warning('Nitter health check failed: %s', exc)
            return False
        return response.status_code == 200

    def close(self) -> None:
        self.session.close()
