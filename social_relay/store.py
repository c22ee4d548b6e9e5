##########################################################################################
#
# Script name: store.py
#
# Description: Durable record of which posts have already been relayed (SQLite/PostgreSQL).
#
##########################################################################################

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

try:
    import psycopg2
except ImportError:  # pragma: no cover
    psycopg2 = None

from .config import DatabaseSettings
from .errors import StoreError
from .models import ProcessedPostRecord
from .utils import parse_datetime


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(__name__)
TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'
TABLE = 'posts_processed'

SCHEMA = [
    f'''
    CREATE TABLE IF NOT EXISTS {TABLE} (
        id TEXT PRIMARY KEY,
        published_at TIMESTAMP NOT NULL,
        processed_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    ''',
    f'CREATE INDEX IF NOT EXISTS idx_{TABLE}_published_at ON {TABLE}(published_at DESC)',
    f'CREATE INDEX IF NOT EXISTS idx_{TABLE}_processed_at ON {TABLE}(processed_at DESC)',
]


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return parse_datetime(str(value)) if value else None


# ****************************************************************************************
# Store
# ****************************************************************************************


class ProcessedPostStore:
    '''
    Set of relayed post ids with their publish and processing timestamps.

    Uses SQLite at settings.path unless settings.url names a PostgreSQL database.
    Every driver error is re-raised as StoreError so callers can tell a bookkeeping
    failure apart from anything else.
    '''

    def __init__(self, settings: DatabaseSettings):
        self.settings = settings
        self.is_postgres = bool(settings.url)
        self._closed = False
        if self.is_postgres:
            if psycopg2 is None:
                raise RuntimeError('psycopg2 is required for PostgreSQL storage (pip install social-relay[postgres]).')
            self._errors: tuple[type[Exception], ...] = (psycopg2.Error,)
            self._placeholder = '%s'
        else:
            Path(settings.path).parent.mkdir(parents=True, exist_ok=True)
            self._errors = (sqlite3.Error,)
            self._placeholder = '?'
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        if self._closed:
            raise StoreError('connect', RuntimeError('store is closed'))
        if self.is_postgres:
            conn = psycopg2.connect(self.settings.url)
        else:
            conn = sqlite3.connect(self.settings.path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _execute(self, operation: str, query: str, params: Iterable[Any] = ()) -> tuple[list[tuple], int]:
        try:
            with self._connect() as conn:
                cur = conn.cursor()
                cur.execute(query, tuple(params))
                rows = cur.fetchall() if cur.description else []
                return rows, cur.rowcount
        except self._errors as exc:
            log.error('Store %s failed: %s', operation, exc)
            raise StoreError(operation, exc) from exc

    def _init_schema(self) -> None:
        for statement in SCHEMA:
            self._execute('init schema', statement)

    def exists(self, post_id: str) -> bool:
        rows, _ = self._execute(
            'exists',
            f'SELECT 1 FROM {TABLE} WHERE id = {self._placeholder} LIMIT 1',
            (post_id,),
        )
        return bool(rows)

    def filter_existing(self, post_ids: Iterable[str]) -> set[str]:
        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return set()
        placeholders = ', '.join(self._placeholder for _ in ids)
        rows, _ = self._execute(
            'filter existing',
            f'SELECT id FROM {TABLE} WHERE id IN ({placeholders})',
            ids,
        )
        return {row[0] for row in rows}

    def mark_processed(self, post_id: str, published_at: datetime) -> bool:
        '''
        Insert the post id if absent.

        Output:
            True when a new record was written, False when the id was already stored.
        '''
        p = self._placeholder
        rows, _ = self._execute(
            'mark processed',
            f'INSERT INTO {TABLE} (id, published_at) VALUES ({p}, {p}) ON CONFLICT (id) DO NOTHING RETURNING id',
            (post_id, _format_timestamp(published_at)),
        )
        inserted = bool(rows)
        if inserted:
            log.debug('Post %s marked as processed', post_id)
        else:
            log.debug('Post %s already processed (duplicate)', post_id)
        return inserted

    def count(self) -> int:
        rows, _ = self._execute('count', f'SELECT COUNT(*) FROM {TABLE}')
        return int(rows[0][0]) if rows else 0

    def recent(self, limit: int = 10) -> list[ProcessedPostRecord]:
        rows, _ = self._execute(
            'recent',
            f'SELECT id, published_at, processed_at FROM {TABLE} '
            f'ORDER BY processed_at DESC, published_at DESC LIMIT {self._placeholder}',
            (limit,),
        )
        return [
            ProcessedPostRecord(id=row[0], published_at=_to_datetime(row[1]), processed_at=_to_datetime(row[2]))
            for row in rows
        ]

    def cleanup_old(self, days_to_keep: int = 90) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_to_keep)
        _, deleted = self._execute(
            'cleanup',
            f'DELETE FROM {TABLE} WHERE processed_at < {self._placeholder}',
            (_format_timestamp(cutoff),),
        )
        deleted = max(deleted, 0)
        if deleted:
            log.info('Cleaned up %d processed post record(s) older than %d days', deleted, days_to_keep)
        return deleted

    def health_check(self) -> bool:
        try:
            self.count()
        except StoreError:
            return False
        return True

    def close(self) -> None:
        self._closed = True
        log.info('Processed-post store closed')
