"""
Pairwise similarity storage (user-user and product-product).

Each unordered pair has exactly one row, stored with id_a < id_b. Every
write goes through `canonical_pair`; reads check both columns.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import sqlite3
import time

from backend.recommender.errors import store_errors


class Metric(str, Enum):
    COSINE = "cosine"
    PEARSON = "pearson"
    JACCARD = "jaccard"


class SimilarityKind(str, Enum):
    USER = "user_similarity"
    PRODUCT = "product_similarity"


def canonical_pair(id_1: int, id_2: int) -> Tuple[int, int]:
    id_1, id_2 = int(id_1), int(id_2)
    if id_1 == id_2:
        raise ValueError(f"self-similarity is not stored (id={id_1})")
    return (id_1, id_2) if id_1 < id_2 else (id_2, id_1)


@dataclass(frozen=True)
class PairSimilarity:
    id_a: int
    id_b: int
    score: float
    metric: Metric
    computed_at: int


@dataclass(frozen=True)
class Neighbor:
    id: int
    score: float


class SimilarityStore:
    def __init__(self, conn: sqlite3.Connection, kind: SimilarityKind):
        self.conn = conn
        self.kind = kind
        # table name comes from the enum, never from input
        self.table = kind.value

    def upsert(self, id_1: int, id_2: int, score: float, metric: Metric, now: Optional[int] = None) -> None:
        self.upsert_many([(id_1, id_2, score)], metric, now=now)

    def upsert_many(
        self,
        rows: Iterable[Tuple[int, int, float]],
        metric: Metric,
        now: Optional[int] = None,
    ) -> int:
        now = int(time.time()) if now is None else int(now)
        params = []
        for id_1, id_2, score in rows:
            a, b = canonical_pair(id_1, id_2)
            params.append((a, b, float(score), metric.value, now))
        if not params:
            return 0
        with store_errors(f"upsert {self.table}"), self.conn:
            self.conn.executemany(
                f"""
                INSERT INTO {self.table}(id_a, id_b, score, metric, computed_at)
                VALUES(?,?,?,?,?)
                ON CONFLICT(id_a, id_b) DO UPDATE SET
                  score = excluded.score,
                  metric = excluded.metric,
                  computed_at = excluded.computed_at
                """,
                params,
            )
        return len(params)

    def find_pair(self, id_1: int, id_2: int) -> Optional[PairSimilarity]:
        a, b = canonical_pair(id_1, id_2)
        with store_errors(f"load {self.table} pair"):
            row = self.conn.execute(
                f"SELECT id_a, id_b, score, metric, computed_at FROM {self.table} WHERE id_a = ? AND id_b = ?",
                (a, b),
            ).fetchone()
        if row is None:
            return None
        return PairSimilarity(
            id_a=int(row["id_a"]),
            id_b=int(row["id_b"]),
            score=float(row["score"]),
            metric=Metric(row["metric"]),
            computed_at=int(row["computed_at"]),
        )

    def most_similar(self, entity_id: int, limit: int, min_score: Optional[float] = None) -> List[Neighbor]:
        """Neighbours of `entity_id` by score descending (ties: lower id first)."""
        if limit <= 0:
            return []
        sql = f"""
            SELECT CASE WHEN id_a = ? THEN id_b ELSE id_a END AS other_id, score
            FROM {self.table}
            WHERE (id_a = ? OR id_b = ?)
        """
        params: list[object] = [entity_id, entity_id, entity_id]
        if min_score is not None:
            sql += " AND score >= ?"
            params.append(float(min_score))
        sql += " ORDER BY score DESC, other_id ASC LIMIT ?"
        params.append(int(limit))
        with store_errors(f"load {self.table} neighbours"):
            rows = self.conn.execute(sql, params).fetchall()
        return [Neighbor(id=int(r["other_id"]), score=float(r["score"])) for r in rows]

    def most_similar_many(
        self,
        entity_ids: Sequence[int],
        limit: int,
        min_score: Optional[float] = None,
    ) -> Dict[int, List[Neighbor]]:
        """`most_similar` for a batch of ids in a single windowed query."""
        ids = list(dict.fromkeys(int(e) for e in entity_ids))
        out: Dict[int, List[Neighbor]] = {e: [] for e in ids}
        if not ids:
            return out
        q = ",".join(["?"] * len(ids))
        threshold = float(min_score) if min_score is not None else float("-inf")
        with store_errors(f"load {self.table} neighbours"):
            rows = self.conn.execute(
                f"""
                WITH pairs AS (
                  SELECT id_a AS source_id, id_b AS other_id, score FROM {self.table} WHERE id_a IN ({q})
                  UNION ALL
                  SELECT id_b AS source_id, id_a AS other_id, score FROM {self.table} WHERE id_b IN ({q})
                ),
                ranked AS (
                  SELECT source_id, other_id, score,
                         ROW_NUMBER() OVER (
                           PARTITION BY source_id ORDER BY score DESC, other_id ASC
                         ) AS rn
                  FROM pairs
                  WHERE score >= ?
                )
                SELECT source_id, other_id, score FROM ranked
                WHERE rn <= ?
                ORDER BY source_id, rn
                """,
                (*ids, *ids, threshold, int(limit)),
            ).fetchall()
        for r in rows:
            out[int(r["source_id"])].append(Neighbor(id=int(r["other_id"]), score=float(r["score"])))
        return out

    def count(self) -> int:
        with store_errors(f"count {self.table}"):
            row = self.conn.execute(f"SELECT COUNT(*) AS c FROM {self.table}").fetchone()
        return int(row["c"]) if row else 0

    def delete_older_than(self, days: int, now: Optional[int] = None) -> int:
        now = int(time.time()) if now is None else int(now)
        cutoff = now - int(days) * 24 * 3600
        with store_errors(f"purge stale {self.table}"), self.conn:
            cur = self.conn.execute(f"DELETE FROM {self.table} WHERE computed_at < ?", (cutoff,))
        return cur.rowcount
