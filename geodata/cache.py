"""
ResultCache - SQLite TTL cache keyed by a deterministic coordinate hash.

One table per cache (suitability, snapping, ...). Each row stores the parsed
result, the raw provider response and an absolute expiry time. Expired rows
are deleted by the read that finds them.
"""

import hashlib
import json
import logging
import sqlite3
import threading
import time
from typing import Any, Callable, Dict, Optional

log = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def coordinate_hash(lat: float, lng: float) -> str:
    """Deterministic cache key: md5 of the coordinate rounded to 5 decimals (~1m)."""
    key = f"{lat:.5f},{lng:.5f}"
    return hashlib.md5(key.encode()).hexdigest()


class ResultCache:
    """
    TTL cache for per-coordinate provider results.

    Usage:
        cache = ResultCache("cache.db", table="suitability_cache", ttl_days=30)
        cache.set(52.5, 13.4, {"isSuitable": True}, raw_response={...})
        cache.get(52.5, 13.4)
    """

    def __init__(
        self,
        db_path: str = "expansion_cache.db",
        table: str = "result_cache",
        ttl_days: float = 30,
        clock: Callable[[], float] = time.time,
    ):
        if not table.isidentifier():
            raise ValueError(f"Invalid cache table name: {table!r}")

        self.db_path = db_path
        self.table = table
        self.ttl_seconds = ttl_days * SECONDS_PER_DAY
        self.clock = clock

        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.expired = 0
        self.write_failures = 0

        self._init_db()

    def sibling(self, table: str) -> "ResultCache":
        """Another table in the same database, sharing TTL and clock."""
        return ResultCache(self.db_path, table=table, ttl_days=self.ttl_seconds / SECONDS_PER_DAY, clock=self.clock)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        conn = self._connect()
        try:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    coordinate_hash TEXT PRIMARY KEY,
                    original_lat REAL NOT NULL,
                    original_lng REAL NOT NULL,
                    result_json TEXT NOT NULL,
                    raw_response TEXT,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            """)
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{self.table}_expires ON {self.table}(expires_at)")
            conn.commit()
        finally:
            conn.close()

    def _count(self, attr: str):
        with self._lock:
            setattr(self, attr, getattr(self, attr) + 1)

    def get(self, lat: float, lng: float) -> Optional[Dict[str, Any]]:
        """
        Look up a cached result.

        Returns the stored result dict, or None on a miss. A row whose
        expires_at has passed is removed and reported as a miss.
        """
        key = coordinate_hash(lat, lng)
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    f"SELECT result_json, expires_at FROM {self.table} WHERE coordinate_hash = ?",
                    (key,),
                ).fetchone()

                if row is None:
                    self._count("misses")
                    return None

                if row["expires_at"] < self.clock():
                    conn.execute(f"DELETE FROM {self.table} WHERE coordinate_hash = ?", (key,))
                    conn.commit()
                    self._count("expired")
                    self._count("misses")
                    log.debug(f"Expired {self.table} entry purged for ({lat}, {lng})")
                    return None
            finally:
                conn.close()
        except sqlite3.Error as e:
            log.warning(f"{self.table} lookup failed for ({lat}, {lng}): {e}")
            self._count("misses")
            return None

        self._count("hits")
        log.debug(f"{self.table} hit for ({lat}, {lng})")
        return json.loads(row["result_json"])

    def set(
        self,
        lat: float,
        lng: float,
        result: Dict[str, Any],
        raw_response: Optional[Any] = None,
    ) -> bool:
        """
        Store a result (last write wins).

        Returns False if the write failed; failures are logged, never raised.
        """
        now = self.clock()
        try:
            conn = self._connect()
            try:
                conn.execute(
                    f"""INSERT OR REPLACE INTO {self.table}
                       (coordinate_hash, original_lat, original_lng, result_json,
                        raw_response, created_at, expires_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        coordinate_hash(lat, lng),
                        lat,
                        lng,
                        json.dumps(result),
                        json.dumps(raw_response) if raw_response is not None else None,
                        now,
                        now + self.ttl_seconds,
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except (sqlite3.Error, TypeError, ValueError) as e:
            self._count("write_failures")
            log.warning(f"{self.table} write failed for ({lat}, {lng}): {e}")
            return False
        return True

    def get_raw_response(self, lat: float, lng: float) -> Optional[Any]:
        """Raw provider payload stored alongside a live entry."""
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT raw_response FROM {self.table} WHERE coordinate_hash = ? AND expires_at >= ?",
                (coordinate_hash(lat, lng), self.clock()),
            ).fetchone()
        finally:
            conn.close()
        if row is None or row["raw_response"] is None:
            return None
        return json.loads(row["raw_response"])

    def purge_expired(self) -> int:
        """Delete every expired row. Returns the number removed."""
        conn = self._connect()
        try:
            cursor = conn.execute(f"DELETE FROM {self.table} WHERE expires_at < ?", (self.clock(),))
            conn.commit()
            removed = cursor.rowcount
        finally:
            conn.close()
        if removed:
            log.info(f"Purged {removed} expired rows from {self.table}")
        return removed

    def size(self) -> int:
        conn = self._connect()
        try:
            return conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]
        finally:
            conn.close()

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        hit_rate = (self.hits / total) * 100 if total else 0.0
        return {
            "cacheHits": self.hits,
            "cacheMisses": self.misses,
            "expired": self.expired,
            "writeFailures": self.write_failures,
            "hitRate": round(hit_rate, 2),
        }

    def reset_stats(self):
        with self._lock:
            self.hits = 0
            self.misses = 0
            self.expired = 0
            self.write_failures = 0
