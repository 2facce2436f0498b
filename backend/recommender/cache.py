"""
Per (user, strategy) ranked recommendation cache with a TTL.

Read-through: a complete, unexpired row set is authoritative and returned
as-is; anything else is a miss and the caller recomputes. Writes replace the
whole set for the key. Recording an interaction drops every strategy for the
user. Expired rows are only reclaimed by the scheduled sweep.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Mapping, Optional, Sequence
import logging
import sqlite3
import time

from backend.recommender.errors import store_errors

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600


class Strategy(str, Enum):
    USER_BASED = "user_based"
    ITEM_BASED = "item_based"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class CachedRecommendation:
    product_id: int
    confidence: float
    rank: int
    generated_at: int
    expires_at: Optional[int]


class RecommendationCache:
    def __init__(
        self,
        conn: sqlite3.Connection,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.conn = conn
        self.ttl_seconds = int(ttl_seconds)
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    def get(self, user_id: int, strategy: Strategy, limit: Optional[int] = None) -> Optional[List[CachedRecommendation]]:
        """Cached ranking for the key, or None on a miss (no rows, or any row expired)."""
        now = self._now()
        with store_errors("read recommendation cache"):
            rows = self.conn.execute(
                """
                SELECT product_id, confidence, rank, generated_at, expires_at
                FROM recommendations_cache
                WHERE user_id = ? AND strategy = ?
                ORDER BY confidence DESC, rank ASC
                """,
                (user_id, strategy.value),
            ).fetchall()

        if not rows:
            return None
        for r in rows:
            if r["expires_at"] is not None and int(r["expires_at"]) <= now:
                return None

        entries = [
            CachedRecommendation(
                product_id=int(r["product_id"]),
                confidence=float(r["confidence"]),
                rank=int(r["rank"]),
                generated_at=int(r["generated_at"]),
                expires_at=int(r["expires_at"]) if r["expires_at"] is not None else None,
            )
            for r in rows
        ]
        if limit is not None:
            entries = entries[:limit]
        return entries

    def get_ids(self, user_id: int, strategy: Strategy, limit: Optional[int] = None) -> Optional[List[int]]:
        entries = self.get(user_id, strategy, limit)
        if entries is None:
            return None
        return [e.product_id for e in entries]

    def put(
        self,
        user_id: int,
        strategy: Strategy,
        ranked_ids: Sequence[int],
        confidences: Mapping[int, float],
    ) -> int:
        """Replace the set for (user, strategy) with `ranked_ids` in rank order."""
        now = self._now()
        # every row gets an expiry; a non-positive TTL makes it stale at once
        expires_at = now + max(self.ttl_seconds, 0)
        rows = []
        for rank, product_id in enumerate(ranked_ids):
            conf = max(0.0, min(float(confidences.get(product_id, 0.0)), 1.0))
            rows.append((user_id, int(product_id), strategy.value, conf, rank, now, expires_at))

        with store_errors("write recommendation cache"), self.conn:
            self.conn.execute(
                "DELETE FROM recommendations_cache WHERE user_id = ? AND strategy = ?",
                (user_id, strategy.value),
            )
            self.conn.executemany(
                """
                INSERT INTO recommendations_cache(
                  user_id, product_id, strategy, confidence, rank, generated_at, expires_at
                )
                VALUES(?,?,?,?,?,?,?)
                """,
                rows,
            )
        logger.debug("Cached %d %s recommendations for user %s", len(rows), strategy.value, user_id)
        return len(rows)

    def invalidate_user(self, user_id: int) -> int:
        with store_errors("invalidate recommendation cache"), self.conn:
            cur = self.conn.execute("DELETE FROM recommendations_cache WHERE user_id = ?", (user_id,))
        return cur.rowcount

    def delete_expired(self) -> int:
        now = self._now()
        with store_errors("sweep recommendation cache"), self.conn:
            cur = self.conn.execute(
                "DELETE FROM recommendations_cache WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            )
        return cur.rowcount
