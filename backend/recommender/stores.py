"""
sqlite-backed stores the recommendation core reads from and appends to:
the interaction log, explicit ratings and the product catalog.

Every sqlite failure surfaces as StoreError so callers can tell
"store unavailable" apart from "no data".
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
import sqlite3
import time

from backend.recommender.errors import store_errors
from backend.recommender.interactions import (
    BASKET_TYPES,
    Interaction,
    InteractionType,
    Rating,
)


def _placeholders(n: int) -> str:
    return ",".join(["?"] * n)


def _row_to_interaction(r: sqlite3.Row) -> Interaction:
    return Interaction(
        id=int(r["id"]),
        user_id=int(r["user_id"]),
        product_id=int(r["product_id"]),
        type=InteractionType(r["event_type"]),
        value=float(r["value"]) if r["value"] is not None else None,
        ts=int(r["ts"]),
        session_id=r["session_id"],
    )


class InteractionStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def append(
        self,
        user_id: int,
        product_id: int,
        itype: InteractionType,
        value: Optional[float] = None,
        session_id: Optional[str] = None,
        ts: Optional[int] = None,
    ) -> int:
        ts = int(time.time()) if ts is None else int(ts)
        with store_errors("append interaction"), self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO interactions(user_id, product_id, event_type, value, session_id, ts)
                VALUES(?,?,?,?,?,?)
                """,
                (user_id, product_id, itype.value, value, session_id, ts),
            )
        return int(cur.lastrowid)

    def find_by_user(self, user_id: int) -> List[Interaction]:
        with store_errors("load user interactions"):
            rows = self.conn.execute(
                """
                SELECT id, user_id, product_id, event_type, value, session_id, ts
                FROM interactions
                WHERE user_id = ?
                ORDER BY ts DESC, id DESC
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_interaction(r) for r in rows]

    def find_by_users(self, user_ids: Sequence[int]) -> Dict[int, List[Interaction]]:
        """One query for a whole neighbour set; users without history map to []."""
        out: Dict[int, List[Interaction]] = {int(u): [] for u in user_ids}
        if not out:
            return out
        ids = list(out.keys())
        with store_errors("load interactions for users"):
            rows = self.conn.execute(
                f"""
                SELECT id, user_id, product_id, event_type, value, session_id, ts
                FROM interactions
                WHERE user_id IN ({_placeholders(len(ids))})
                ORDER BY ts DESC, id DESC
                """,
                ids,
            ).fetchall()
        for r in rows:
            out[int(r["user_id"])].append(_row_to_interaction(r))
        return out

    def seen_product_ids(self, user_id: int) -> Set[int]:
        with store_errors("load seen products"):
            rows = self.conn.execute(
                "SELECT DISTINCT product_id FROM interactions WHERE user_id = ?",
                (user_id,),
            ).fetchall()
        return {int(r["product_id"]) for r in rows}

    def user_ids_for_product(self, product_id: int, limit: Optional[int] = None) -> List[int]:
        """Distinct users who touched the product, most recent first."""
        sql = """
            SELECT user_id, MAX(ts) AS last_ts
            FROM interactions
            WHERE product_id = ?
            GROUP BY user_id
            ORDER BY last_ts DESC, user_id ASC
        """
        params: list[object] = [product_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with store_errors("load users for product"):
            rows = self.conn.execute(sql, params).fetchall()
        return [int(r["user_id"]) for r in rows]

    def users_with_product(self, user_ids: Iterable[int], product_id: int) -> Set[int]:
        ids = list(user_ids)
        if not ids:
            return set()
        with store_errors("check users for product"):
            rows = self.conn.execute(
                f"""
                SELECT DISTINCT user_id FROM interactions
                WHERE product_id = ? AND user_id IN ({_placeholders(len(ids))})
                """,
                (product_id, *ids),
            ).fetchall()
        return {int(r["user_id"]) for r in rows}

    def interaction_matrix(self) -> List[Tuple[int, int, InteractionType, Optional[float]]]:
        """Snapshot of (user, product, type, value) for the batch jobs."""
        with store_errors("load interaction matrix"):
            rows = self.conn.execute(
                """
                SELECT user_id, product_id, event_type, value
                FROM interactions
                ORDER BY user_id, product_id, id
                """
            ).fetchall()
        return [
            (
                int(r["user_id"]),
                int(r["product_id"]),
                InteractionType(r["event_type"]),
                float(r["value"]) if r["value"] is not None else None,
            )
            for r in rows
        ]

    def co_occurrences(self, product_id: int, limit: int = 50) -> List[Tuple[int, int]]:
        """(other_product_id, count) for products put in a basket by the same users."""
        types = [t.value for t in BASKET_TYPES]
        q = _placeholders(len(types))
        with store_errors("load co-occurrences"):
            rows = self.conn.execute(
                f"""
                SELECT x2.product_id AS product_id, COUNT(*) AS c
                FROM interactions x1
                JOIN interactions x2 ON x1.user_id = x2.user_id
                WHERE x1.product_id = ? AND x2.product_id != ?
                  AND x1.event_type IN ({q})
                  AND x2.event_type IN ({q})
                GROUP BY x2.product_id
                ORDER BY c DESC, x2.product_id ASC
                LIMIT ?
                """,
                (product_id, product_id, *types, *types, limit),
            ).fetchall()
        return [(int(r["product_id"]), int(r["c"])) for r in rows]

    def delete_older_than(self, days: int, now: Optional[int] = None) -> int:
        now = int(time.time()) if now is None else int(now)
        cutoff = now - int(days) * 24 * 3600
        with store_errors("delete old interactions"), self.conn:
            cur = self.conn.execute("DELETE FROM interactions WHERE ts < ?", (cutoff,))
        return cur.rowcount


def _row_to_rating(r: sqlite3.Row) -> Rating:
    return Rating(
        user_id=int(r["user_id"]),
        product_id=int(r["product_id"]),
        rating=float(r["rating"]),
        review_text=r["review_text"],
        created_at=int(r["created_at"]),
        updated_at=int(r["updated_at"]),
    )


class RatingStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def save(
        self,
        user_id: int,
        product_id: int,
        rating: float,
        review_text: Optional[str] = None,
        now: Optional[int] = None,
    ) -> None:
        """Insert, or update in place when the user already rated the product."""
        now = int(time.time()) if now is None else int(now)
        with store_errors("save rating"), self.conn:
            self.conn.execute(
                """
                INSERT INTO ratings(user_id, product_id, rating, review_text, created_at, updated_at)
                VALUES(?,?,?,?,?,?)
                ON CONFLICT(user_id, product_id) DO UPDATE SET
                  rating = excluded.rating,
                  review_text = excluded.review_text,
                  updated_at = excluded.updated_at
                """,
                (user_id, product_id, float(rating), review_text, now, now),
            )

    def find(self, user_id: int, product_id: int) -> Optional[Rating]:
        with store_errors("load rating"):
            row = self.conn.execute(
                "SELECT * FROM ratings WHERE user_id = ? AND product_id = ?",
                (user_id, product_id),
            ).fetchone()
        return _row_to_rating(row) if row else None

    def all_ratings(self) -> List[Tuple[int, int, float]]:
        with store_errors("load rating matrix"):
            rows = self.conn.execute(
                "SELECT user_id, product_id, rating FROM ratings ORDER BY user_id, product_id"
            ).fetchall()
        return [(int(r["user_id"]), int(r["product_id"]), float(r["rating"])) for r in rows]


@dataclass(frozen=True)
class Product:
    product_id: int
    name: str
    category: Optional[str]
    price: Optional[float]
    is_active: bool
    view_count: int
    purchase_count: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "category": self.category,
            "price": self.price,
            "view_count": self.view_count,
            "purchase_count": self.purchase_count,
        }


def _row_to_product(r: sqlite3.Row) -> Product:
    return Product(
        product_id=int(r["id"]),
        name=str(r["name"]),
        category=r["category"],
        price=float(r["price"]) if r["price"] is not None else None,
        is_active=bool(r["is_active"]),
        view_count=int(r["view_count"] or 0),
        purchase_count=int(r["purchase_count"] or 0),
    )


class Catalog:
    """Read side of the product catalog plus the two popularity counters."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def find_by_id(self, product_id: int) -> Optional[Product]:
        with store_errors("load product"):
            row = self.conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
        return _row_to_product(row) if row else None

    def find_by_ids(self, product_ids: Sequence[int]) -> List[Product]:
        """Active products in the order of `product_ids`; unknown/inactive ids are dropped."""
        if not product_ids:
            return []
        ids = list(dict.fromkeys(int(p) for p in product_ids))
        with store_errors("load products"):
            rows = self.conn.execute(
                f"SELECT * FROM products WHERE id IN ({_placeholders(len(ids))}) AND is_active = 1",
                ids,
            ).fetchall()
        by_id = {int(r["id"]): _row_to_product(r) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    def find_trending(self, limit: int) -> List[Product]:
        # purchases weigh 10 views, newer products win ties
        with store_errors("load trending products"):
            rows = self.conn.execute(
                """
                SELECT * FROM products
                WHERE is_active = 1
                ORDER BY COALESCE(purchase_count, 0) * 10 + COALESCE(view_count, 0) DESC,
                         created_at DESC, id ASC
                LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
        return [_row_to_product(r) for r in rows]

    def trending_ids(self, limit: int) -> List[int]:
        return [p.product_id for p in self.find_trending(limit)]

    def active_product_ids(self) -> List[int]:
        with store_errors("load active products"):
            rows = self.conn.execute(
                "SELECT id FROM products WHERE is_active = 1 ORDER BY id"
            ).fetchall()
        return [int(r["id"]) for r in rows]

    def list_products(self, limit: int) -> List[Product]:
        with store_errors("list products"):
            rows = self.conn.execute("SELECT * FROM products ORDER BY id LIMIT ?", (limit,)).fetchall()
        return [_row_to_product(r) for r in rows]

    def increment_view_count(self, product_id: int) -> int:
        with store_errors("increment view count"), self.conn:
            cur = self.conn.execute(
                "UPDATE products SET view_count = view_count + 1 WHERE id = ?", (product_id,)
            )
        return cur.rowcount

    def increment_purchase_count(self, product_id: int) -> int:
        with store_errors("increment purchase count"), self.conn:
            cur = self.conn.execute(
                "UPDATE products SET purchase_count = purchase_count + 1 WHERE id = ?", (product_id,)
            )
        return cur.rowcount
