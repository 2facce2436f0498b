import sqlite3
import time

from backend.recommender.interactions import InteractionType
from backend.recommender.stores import InteractionStore


def add_products(conn: sqlite3.Connection, *product_ids, **overrides) -> None:
    """Insert active products; overrides maps "p<id>" -> dict of column values."""
    rows = []
    for pid in product_ids:
        extra = overrides.get(f"p{pid}", {})
        rows.append(
            (
                pid,
                extra.get("name", f"Product {pid}"),
                extra.get("category", "misc"),
                extra.get("price", 10.0),
                extra.get("is_active", 1),
                extra.get("view_count", 0),
                extra.get("purchase_count", 0),
                extra.get("created_at", 1_700_000_000 + pid),
            )
        )
    conn.executemany(
        """
        INSERT INTO products(id, name, category, price, is_active, view_count, purchase_count, created_at)
        VALUES(?,?,?,?,?,?,?,?)
        """,
        rows,
    )
    conn.commit()


def add_interactions(conn: sqlite3.Connection, events) -> None:
    """events: iterable of (user_id, product_id, type[, value[, ts]])."""
    store = InteractionStore(conn)
    # recent enough to survive retention, increasing so history order is predictable
    base = int(time.time()) - 3600
    for i, ev in enumerate(events):
        user_id, product_id, itype = ev[0], ev[1], InteractionType(ev[2])
        value = ev[3] if len(ev) > 3 else None
        ts = ev[4] if len(ev) > 4 else base + i
        store.append(user_id, product_id, itype, value, ts=ts)
