# -*- coding: utf-8 -*-
"""SQLite-based feed caching for fast startup and scroll position restore."""

import json
import os
import sqlite3
import threading
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from skyline.errors import DecodeError
from skyline.logging_config import get_logger
from skyline.models import FeedViewPost
from skyline.platforms.bluesky.models import bluesky_feed_item_from_json

logger = get_logger('cache')


class TimelineCache:
    """SQLite cache of feed pages and scroll anchors.

    Rows are keyed by (account id, feed URI) so one account never sees
    another account's cached posts. Feed entries are stored as the server
    JSON they were decoded from. The cache is best effort: database errors
    are logged and the cache behaves as if it were empty.

    Thread-safe with WAL mode for better concurrency.
    """

    SCHEMA_VERSION = 2
    DEFAULT_LIMIT = 200

    def __init__(self, cache_dir: str, filename: str = 'timeline_cache.db'):
        self.cache_dir = cache_dir
        self.db_path = os.path.join(cache_dir, filename)
        self._lock = threading.RLock()
        self._conn = None
        self._initialized = False

        self._init_db()

    def _init_db(self):
        """Open the database and create the schema."""
        with self._lock:
            try:
                os.makedirs(self.cache_dir, exist_ok=True)
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA synchronous=NORMAL")
                self._create_tables()
                self._initialized = True
            except (sqlite3.Error, OSError) as e:
                logger.error(f"Timeline cache init error: {e}")
                self._initialized = False

    def _create_tables(self):
        cursor = self._conn.cursor()
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS feed_items (
                account_id TEXT NOT NULL,
                feed_uri TEXT NOT NULL,
                position INTEGER NOT NULL,
                item_id TEXT NOT NULL,
                item_json TEXT NOT NULL,
                PRIMARY KEY (account_id, feed_uri, position)
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS feed_metadata (
                account_id TEXT NOT NULL,
                feed_uri TEXT NOT NULL,
                cursor TEXT,
                scroll_anchor TEXT,
                anchor_time TEXT,
                item_count INTEGER DEFAULT 0,
                last_updated TEXT,
                PRIMARY KEY (account_id, feed_uri)
            )
        ''')
        # Version 1 databases predate the anchor timestamp
        columns = {row[1] for row in cursor.execute("PRAGMA table_info(feed_metadata)")}
        if 'anchor_time' not in columns:
            cursor.execute('ALTER TABLE feed_metadata ADD COLUMN anchor_time TEXT')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            )
        ''')
        cursor.execute('INSERT OR IGNORE INTO schema_version (version) VALUES (?)', (self.SCHEMA_VERSION,))
        self._conn.commit()

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self._conn:
                try:
                    # Checkpoint WAL to main database before closing
                    self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                    self._conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing timeline cache: {e}")
                self._conn = None
                self._initialized = False

    def is_available(self) -> bool:
        return self._initialized and self._conn is not None

    # ============ Feed Operations ============

    def save_feed(self, account_id: str, feed_uri: str, items: List[FeedViewPost],
                  cursor: Optional[str] = None, limit: int = DEFAULT_LIMIT):
        """Replace the cached entries of a feed, keeping its scroll anchor."""
        if not self.is_available():
            return
        rows = []
        for position, item in enumerate(items[:limit]):
            if item._platform_data is None:
                continue
            rows.append((account_id, feed_uri, position, item.id, json.dumps(item._platform_data)))

        with self._lock:
            try:
                db = self._conn.cursor()
                db.execute('DELETE FROM feed_items WHERE account_id = ? AND feed_uri = ?', (account_id, feed_uri))
                db.executemany('''
                    INSERT INTO feed_items (account_id, feed_uri, position, item_id, item_json)
                    VALUES (?, ?, ?, ?, ?)
                ''', rows)
                db.execute('''
                    INSERT INTO feed_metadata (account_id, feed_uri, cursor, item_count, last_updated)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(account_id, feed_uri) DO UPDATE SET
                        cursor = excluded.cursor,
                        item_count = excluded.item_count,
                        last_updated = excluded.last_updated
                ''', (account_id, feed_uri, cursor, len(rows), datetime.now().isoformat()))
                self._conn.commit()
            except sqlite3.Error as e:
                logger.error(f"Cache save_feed error: {e}")

    def load_feed(self, account_id: str, feed_uri: str) -> Tuple[List[FeedViewPost], Dict[str, Any]]:
        """Load cached entries of a feed in their original order.

        Returns:
            Tuple of (items, metadata) where metadata has 'cursor',
            'scroll_anchor', 'anchor_time', 'item_count' and 'last_updated'
            when present.
        """
        if not self.is_available():
            return [], {}

        with self._lock:
            try:
                db = self._conn.cursor()
                db.execute('''
                    SELECT item_json FROM feed_items
                    WHERE account_id = ? AND feed_uri = ?
                    ORDER BY position ASC
                ''', (account_id, feed_uri))
                rows = db.fetchall()
                db.execute('SELECT * FROM feed_metadata WHERE account_id = ? AND feed_uri = ?', (account_id, feed_uri))
                meta_row = db.fetchone()
            except sqlite3.Error as e:
                logger.error(f"Cache load_feed error: {e}")
                return [], {}

        items = []
        for row in rows:
            try:
                items.append(bluesky_feed_item_from_json(json.loads(row['item_json'])))
            except (ValueError, DecodeError) as e:
                logger.warning(f"Dropping unreadable cached feed entry: {e}")

        metadata = {}
        if meta_row:
            metadata = {
                'cursor': meta_row['cursor'],
                'scroll_anchor': meta_row['scroll_anchor'],
                'anchor_time': meta_row['anchor_time'],
                'item_count': meta_row['item_count'],
                'last_updated': meta_row['last_updated'],
            }
        return items, metadata

    def save_scroll_anchor(self, account_id: str, feed_uri: str, post_uri: Optional[str],
                           anchor_time: Optional[str] = None):
        """Remember the post the user was looking at in a feed, and when it was written."""
        if not self.is_available():
            return
        with self._lock:
            try:
                self._conn.execute('''
                    INSERT INTO feed_metadata (account_id, feed_uri, scroll_anchor, anchor_time, last_updated)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(account_id, feed_uri) DO UPDATE SET
                        scroll_anchor = excluded.scroll_anchor,
                        anchor_time = excluded.anchor_time
                ''', (account_id, feed_uri, post_uri, anchor_time, datetime.now().isoformat()))
                self._conn.commit()
            except sqlite3.Error as e:
                logger.error(f"Cache save_scroll_anchor error: {e}")

    def load_scroll_position(self, account_id: str, feed_uri: str) -> Tuple[Optional[str], Optional[str]]:
        """The saved (anchor post URI, anchor creation time), either of which may be None."""
        if not self.is_available():
            return None, None
        with self._lock:
            try:
                row = self._conn.execute(
                    'SELECT scroll_anchor, anchor_time FROM feed_metadata WHERE account_id = ? AND feed_uri = ?',
                    (account_id, feed_uri),
                ).fetchone()
            except sqlite3.Error as e:
                logger.error(f"Cache load_scroll_position error: {e}")
                return None, None
        if not row:
            return None, None
        return row['scroll_anchor'], row['anchor_time']

    def load_scroll_anchor(self, account_id: str, feed_uri: str) -> Optional[str]:
        return self.load_scroll_position(account_id, feed_uri)[0]

    def clear_account(self, account_id: str):
        """Forget everything cached for an account (used on sign-out)."""
        if not self.is_available():
            return
        with self._lock:
            try:
                self._conn.execute('DELETE FROM feed_items WHERE account_id = ?', (account_id,))
                self._conn.execute('DELETE FROM feed_metadata WHERE account_id = ?', (account_id,))
                self._conn.commit()
            except sqlite3.Error as e:
                logger.error(f"Cache clear_account error: {e}")

    def clear_all(self):
        """Forget every cached feed of every account."""
        if not self.is_available():
            return
        with self._lock:
            try:
                self._conn.execute('DELETE FROM feed_items')
                self._conn.execute('DELETE FROM feed_metadata')
                self._conn.commit()
                logger.info("Timeline cache cleared")
            except sqlite3.Error as e:
                logger.error(f"Cache clear_all error: {e}")

    def get_cache_stats(self) -> Dict[str, Any]:
        """Entry counts and database size, for a settings screen."""
        stats = {'feeds': 0, 'items': 0, 'size_bytes': 0}
        if not self.is_available():
            return stats
        with self._lock:
            try:
                stats['feeds'] = self._conn.execute('SELECT COUNT(*) FROM feed_metadata').fetchone()[0]
                stats['items'] = self._conn.execute('SELECT COUNT(*) FROM feed_items').fetchone()[0]
            except sqlite3.Error as e:
                logger.error(f"Cache get_cache_stats error: {e}")
        if os.path.exists(self.db_path):
            stats['size_bytes'] = os.path.getsize(self.db_path)
        return stats
