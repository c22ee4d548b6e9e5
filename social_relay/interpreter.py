##########################################################################################
#
# Script name: interpreter.py
#
# Description: Turns a raw Nitter RSS document into candidate posts for relaying.
#
##########################################################################################

import logging

import feedparser

from .errors import FeedFetchError
from .models import CandidatePost, FeedEntry
from .utils import clean_text, extract_status_id, parse_datetime, to_x_link


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)
REPOST_PREFIX = 'RT @'
REPLY_PREFIXES = ('@', 'R @')


# ****************************************************************************************
# Functions
# ****************************************************************************************


def is_repost(text: str) -> bool:
    return text.lstrip().startswith(REPOST_PREFIX)


def is_reply(text: str) -> bool:
    return text.lstrip().startswith(REPLY_PREFIXES)


def _entry_from_item(item: dict) -> FeedEntry | None:
    link = (item.get('link') or '').strip()
    published = (item.get('published') or '').strip()
    if not link or not published:
        log.debug('Skipping item with missing link or pubDate: %s', item.get('title', '')[:50])
        return None
    return FeedEntry(
        title=item.get('title') or '',
        link=link,
        published=published,
        description=item.get('summary') or item.get('description') or '',
        guid=item.get('id'),
    )


class FeedInterpreter:
    def parse(self, raw: str) -> list[FeedEntry]:
        if not raw or not raw.strip():
            log.warning('Empty XML content provided')
            return []

        parsed = feedparser.parse(raw)
        items = parsed.entries or []
        if not items and not parsed.get('version'):
            if getattr(parsed, 'bozo', False):
                raise FeedFetchError(f'RSS parsing failed: {parsed.get("bozo_exception")}')
            log.warning('Invalid RSS structure: no channel found')
            return []
        if getattr(parsed, 'bozo', False):
            log.warning('RSS parse warning: %s', parsed.get('bozo_exception'))

        entries = [entry for entry in (_entry_from_item(item) for item in items) if entry is not None]
        log.debug('RSS feed parsed: %d of %d item(s) usable', len(entries), len(items))
        return entries

    def to_candidates(self, entries: list[FeedEntry]) -> list[CandidatePost]:
        posts: list[CandidatePost] = []
        for entry in entries:
            post = self._to_candidate(entry)
            if post is not None:
                posts.append(post)
        # Oldest first so posts are relayed in the order they were written.
        posts.sort(key=lambda post: post.published_at)
        log.debug('Converted %d RSS item(s) to %d candidate post(s)', len(entries), len(posts))
        return posts

    def _to_candidate(self, entry: FeedEntry) -> CandidatePost | None:
        post_id = extract_status_id(entry.link)
        if not post_id:
            log.debug('Could not extract post id from link %s', entry.link)
            return None

        published_at = parse_datetime(entry.published)
        if published_at is None:
            log.debug('Could not parse publication date %r', entry.published)
            return None

        text = clean_text(entry.title)
        if is_repost(text):
            log.debug('Skipping repost %s: %s', post_id, text[:50])
            return None
        if is_reply(text):
            log.debug('Skipping reply %s: %s', post_id, text[:50])
            return None

        return CandidatePost(
            id=post_id,
            text=text,
            link=to_x_link(entry.link),
            published_at=published_at,
        )
