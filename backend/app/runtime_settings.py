"""
Runtime-tunable settings backed by the system_settings table.

Loaded on startup and refreshed on an explicit admin action or when the
snapshot is older than its TTL. One instance lives on app.state and is handed
to whatever needs it; nothing here is module-global.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional
import logging
import sqlite3
import threading
import time

from backend.app.config import Settings
from backend.recommender.errors import store_errors
from backend.recommender.models import CFParams

logger = logging.getLogger(__name__)

TOP_K_KEY = "recommendation.top_k_neighbors"
MIN_SIMILARITY_KEY = "recommendation.min_similarity"
CACHE_TTL_HOURS_KEY = "recommendation.cache_ttl_hours"


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value <= 0:
        raise ValueError(f"{raw!r} is not a positive integer")
    return value


def _similarity(raw: str) -> float:
    value = float(raw)
    # also rejects nan
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{raw!r} is not between 0 and 1")
    return value


_PARSERS: Dict[str, Callable[[str], object]] = {
    TOP_K_KEY: _positive_int,
    MIN_SIMILARITY_KEY: _similarity,
    CACHE_TTL_HOURS_KEY: _positive_int,
}


class RuntimeSettings:
    def __init__(
        self,
        connect: Callable[[], sqlite3.Connection],
        defaults: Settings,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._connect = connect
        self.defaults = defaults
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._values: Dict[str, str] = {}
        self._loaded_at: Optional[float] = None
        self._lock = threading.Lock()

    def refresh(self) -> int:
        conn = self._connect()
        try:
            with store_errors("load system settings"):
                rows = conn.execute("SELECT key, value FROM system_settings").fetchall()
        finally:
            conn.close()

        values = {str(r["key"]): str(r["value"]) for r in rows}
        with self._lock:
            self._values = values
            self._loaded_at = self.clock()
        logger.info("Loaded %d runtime settings", len(values))
        return len(values)

    def _snapshot(self) -> Dict[str, str]:
        with self._lock:
            stale = self._loaded_at is None or self.clock() - self._loaded_at >= self.ttl_seconds
        if stale:
            self.refresh()
        with self._lock:
            return self._values

    def set(self, key: str, value: str) -> None:
        """Persist an override. Raises ValueError for an invalid value of a known key."""
        parser = _PARSERS.get(key)
        if parser is not None:
            try:
                parser(value)
            except ValueError as e:
                raise ValueError(f"invalid value for {key}: {e}") from e

        conn = self._connect()
        try:
            with store_errors("save system setting"), conn:
                conn.execute(
                    """
                    INSERT INTO system_settings(key, value, updated_at)
                    VALUES(?, ?, strftime('%s', 'now'))
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, value),
                )
        finally:
            conn.close()
        self.refresh()

    def all(self) -> Dict[str, str]:
        return dict(self._snapshot())

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._snapshot().get(key, default)

    def get_checked(self, key: str, default):
        """Parsed value of a known key; a stored value that fails validation yields `default`."""
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return _PARSERS[key](raw)
        except ValueError:
            logger.warning("Setting %s=%r is invalid, using %s", key, raw, default)
            return default

    def cf_params(self) -> CFParams:
        d = self.defaults
        return CFParams(
            top_k=self.get_checked(TOP_K_KEY, d.top_k_neighbors),
            min_similarity=self.get_checked(MIN_SIMILARITY_KEY, d.min_similarity),
            cache_ttl_seconds=self.get_checked(CACHE_TTL_HOURS_KEY, d.rec_cache_ttl_hours) * 3600,
            recompute_block_size=d.recompute_block_size,
        )
