"""
Store Cache - local SQLite copy of the existing store network.

Holds every known store plus a metadata row describing when the copy was
taken. Reads are served from the local copy; `load()` refreshes it in the
background once it is more than a day old.
"""

import sqlite3
import threading
import time
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger(__name__)

CACHE_VERSION = 1
MAX_AGE_SECONDS = 24 * 60 * 60


class CacheNotInitialized(RuntimeError):
    """A data operation was called before initialize()."""


@dataclass
class CachedStore:
    id: str
    name: str
    latitude: float
    longitude: float
    country: str
    status: str
    created_at: str
    updated_at: str
    region: Optional[str] = None
    address: Optional[str] = None
    annual_turnover: Optional[float] = None
    city_population_band: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "country": self.country,
            "region": self.region,
            "address": self.address,
            "status": self.status,
            "annualTurnover": self.annual_turnover,
            "cityPopulationBand": self.city_population_band,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedStore":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            country=data["country"],
            status=data["status"],
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
            region=data.get("region"),
            address=data.get("address"),
            annual_turnover=data.get("annualTurnover"),
            city_population_band=data.get("cityPopulationBand"),
        )


@dataclass
class CacheMetadata:
    version: str
    timestamp: float          # epoch seconds of the last full write
    store_count: int
    last_import_date: Optional[str] = None


@dataclass
class ViewportBounds:
    north: float
    south: float
    east: float
    west: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east


_STORE_COLUMNS = (
    "id", "name", "latitude", "longitude", "country", "region", "address",
    "status", "annual_turnover", "city_population_band", "created_at", "updated_at",
)


class StoreCacheManager:
    """
    Local store cache with stale-while-revalidate reads.

    Usage:
        cache = StoreCacheManager("store_cache.db")
        cache.initialize()
        stores = cache.load(fetch_stores_from_api)
        cache.close()
    """

    def __init__(self, db_path: str = "store_cache.db", max_age_seconds: float = MAX_AGE_SECONDS,
                 clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.max_age_seconds = max_age_seconds
        self.clock = clock

        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._refresh_thread: Optional[threading.Thread] = None

        self.hits = 0
        self.misses = 0

    # ───────────────────────────────────────────────────────────────────────
    # Connection
    # ───────────────────────────────────────────────────────────────────────
    def initialize(self):
        with self._lock:
            if self._conn is not None:
                return
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("""
                CREATE TABLE IF NOT EXISTS stores (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    country TEXT NOT NULL,
                    region TEXT,
                    address TEXT,
                    status TEXT NOT NULL,
                    annual_turnover REAL,
                    city_population_band TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_stores_lat_lng ON stores(latitude, longitude)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    version TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    store_count INTEGER NOT NULL,
                    last_import_date TEXT
                )
            """)
            conn.commit()
            self._conn = conn
            log.info(f"Store cache opened at {self.db_path}")

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise CacheNotInitialized("Store cache not initialized; call initialize() first")
        return self._conn

    @contextmanager
    def _transaction(self):
        with self._lock:
            conn = self._require_conn()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                log.error(f"Store cache transaction failed: {e}")
                raise

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                log.info("Store cache closed")

    # ───────────────────────────────────────────────────────────────────────
    # Reads
    # ───────────────────────────────────────────────────────────────────────
    @staticmethod
    def _row_to_store(row: sqlite3.Row) -> CachedStore:
        return CachedStore(**dict(row))

    def get_all(self) -> List[CachedStore]:
        with self._lock:
            rows = self._require_conn().execute("SELECT * FROM stores ORDER BY rowid").fetchall()
            if rows:
                self.hits += 1
                log.debug(f"Store cache hit: {len(rows)} stores")
            else:
                self.misses += 1
                log.debug("Store cache miss: no stores cached")
        return [self._row_to_store(row) for row in rows]

    def get_by_viewport(self, bounds: ViewportBounds) -> List[CachedStore]:
        """Stores inside the box, edges included."""
        with self._lock:
            rows = self._require_conn().execute(
                """
                SELECT * FROM stores
                WHERE latitude BETWEEN ? AND ? AND longitude BETWEEN ? AND ?
                ORDER BY rowid
                """,
                (bounds.south, bounds.north, bounds.west, bounds.east)
            ).fetchall()
        return [self._row_to_store(row) for row in rows]

    def get_metadata(self) -> Optional[CacheMetadata]:
        with self._lock:
            row = self._require_conn().execute(
                "SELECT version, timestamp, store_count, last_import_date FROM metadata WHERE key = 'cache_info'"
            ).fetchone()
        return CacheMetadata(**dict(row)) if row else None

    def is_stale(self) -> bool:
        metadata = self.get_metadata()
        if metadata is None:
            return True
        age = self.clock() - metadata.timestamp
        if age > self.max_age_seconds:
            log.info(f"Store cache is stale ({int(age / 60)} minutes old)")
            return True
        return False

    # ───────────────────────────────────────────────────────────────────────
    # Writes
    # ───────────────────────────────────────────────────────────────────────
    def set(self, stores: List[CachedStore], last_import_date: Optional[str] = None):
        """Replace the whole cache in one transaction."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM stores")
            conn.executemany(
                f"INSERT INTO stores ({', '.join(_STORE_COLUMNS)}) VALUES ({', '.join('?' for _ in _STORE_COLUMNS)})",
                [tuple(getattr(s, col) for col in _STORE_COLUMNS) for s in stores]
            )
            conn.execute(
                """
                INSERT OR REPLACE INTO metadata (key, version, timestamp, store_count, last_import_date)
                VALUES ('cache_info', ?, ?, ?, ?)
                """,
                (str(CACHE_VERSION), self.clock(), len(stores), last_import_date)
            )
        log.info(f"Cached {len(stores)} stores")

    def update(self, store: CachedStore):
        with self._transaction() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO stores ({', '.join(_STORE_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _STORE_COLUMNS)})",
                tuple(getattr(store, col) for col in _STORE_COLUMNS)
            )
        log.debug(f"Updated store {store.id} in cache")

    def delete(self, store_id: str):
        with self._transaction() as conn:
            conn.execute("DELETE FROM stores WHERE id = ?", (store_id,))
        log.debug(f"Deleted store {store_id} from cache")

    def invalidate(self):
        with self._transaction() as conn:
            conn.execute("DELETE FROM stores")
            conn.execute("DELETE FROM metadata")
        log.info("Store cache invalidated")

    # ───────────────────────────────────────────────────────────────────────
    # Stale-while-revalidate
    # ───────────────────────────────────────────────────────────────────────
    def load(self, fetch: Callable[[], List[CachedStore]]) -> List[CachedStore]:
        """
        Return stores, preferring the local copy.

        Cached stores are returned immediately; if they are stale a single
        background refresh is started. An empty cache is filled synchronously.
        """
        stores = self.get_all()
        if stores:
            if self.is_stale():
                self._start_refresh(fetch)
            return stores

        fresh = list(fetch())
        self.set(fresh)
        return fresh

    def _start_refresh(self, fetch: Callable[[], List[CachedStore]]):
        with self._lock:
            if self._refresh_thread is not None and self._refresh_thread.is_alive():
                return
            self._refresh_thread = threading.Thread(
                target=self._refresh, args=(fetch,), name="store-cache-refresh", daemon=True
            )
            self._refresh_thread.start()

    def _refresh(self, fetch: Callable[[], List[CachedStore]]):
        try:
            stores = list(fetch())
            self.set(stores)
            log.info(f"Background store refresh cached {len(stores)} stores")
        except Exception:
            # Cached copy stays in place
            log.exception("Background store refresh failed")

    def wait_for_refresh(self, timeout: Optional[float] = None) -> bool:
        """Block until any background refresh finishes. Returns False on timeout."""
        thread = self._refresh_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        hit_rate = (self.hits / total) * 100 if total else 0.0
        metadata = self.get_metadata() if self._conn is not None else None
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": round(hit_rate, 2),
            "storeCount": metadata.store_count if metadata else 0,
            "lastUpdate": metadata.timestamp if metadata else None,
        }
