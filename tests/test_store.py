##########################################################################################
#
# Script name: test_store.py
#
# Description: Processed-post store behavior against a temporary SQLite database.
#
##########################################################################################

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import pytest

from social_relay.config import DatabaseSettings
from social_relay.errors import StoreError
from social_relay.store import TABLE, ProcessedPostStore


PUBLISHED = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def _store(tmp_path: Path) -> ProcessedPostStore:
    return ProcessedPostStore(DatabaseSettings(path=str(tmp_path / 'data' / 'relay.db')))


def test_mark_processed_is_idempotent(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.mark_processed('123', PUBLISHED) is True
    assert store.mark_processed('123', PUBLISHED) is False
    assert store.count() == 1
    assert store.exists('123') is True
    assert store.exists('456') is False


def test_filter_existing_returns_only_stored_ids(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.mark_processed('1', PUBLISHED)
    store.mark_processed('3', PUBLISHED)
    assert store.filter_existing({'1', '2', '3', '4'}) == {'1', '3'}
    assert store.filter_existing([]) == set()


def test_recent_returns_records_with_timestamps(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.mark_processed('1', PUBLISHED)
    records = store.recent(limit=5)
    assert [record.id for record in records] == ['1']
    assert records[0].published_at == PUBLISHED
    assert records[0].processed_at is not None


def test_cleanup_old_removes_only_stale_records(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.mark_processed('old', PUBLISHED)
    store.mark_processed('new', PUBLISHED)
    conn = sqlite3.connect(store.settings.path)
    conn.execute(f"UPDATE {TABLE} SET processed_at = '2020-01-01 00:00:00' WHERE id = 'old'")
    conn.commit()
    conn.close()

    assert store.cleanup_old(days_to_keep=90) == 1
    assert store.filter_existing({'old', 'new'}) == {'new'}


def test_closed_store_raises_store_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.close()
    with pytest.raises(StoreError):
        store.exists('1')
    assert store.health_check() is False
