#!/usr/bin/env python3
import argparse
import random
import sqlite3
import time

from backend.app.db import connect, init_db

CATEGORIES = ["electronics", "books", "kitchen", "garden", "toys", "sports", "fashion", "beauty"]

# event mix for a synthetic session, most traffic is browsing
EVENT_MIX = [
    ("view", 0.70),
    ("add_to_cart", 0.12),
    ("wishlist", 0.08),
    ("purchase", 0.07),
    ("rating", 0.03),
]


def seed_products(conn: sqlite3.Connection, n_products: int, rng: random.Random, now: int) -> dict[str, list[int]]:
    by_category: dict[str, list[int]] = {c: [] for c in CATEGORIES}
    rows = []
    for product_id in range(1, n_products + 1):
        category = CATEGORIES[(product_id - 1) % len(CATEGORIES)]
        by_category[category].append(product_id)
        price = round(rng.uniform(5, 500), 2)
        # spread creation over the last 90 days
        created_at = now - rng.randint(0, 90 * 24 * 3600)
        rows.append((product_id, f"{category.title()} item {product_id}", category, price, created_at))

    conn.executemany(
        """
        INSERT OR REPLACE INTO products(id, name, category, price, is_active, view_count, purchase_count, created_at)
        VALUES(?,?,?,?,1,0,0,?)
        """,
        rows,
    )
    return by_category


def seed_interactions(
    conn: sqlite3.Connection,
    n_users: int,
    events_per_user: int,
    by_category: dict[str, list[int]],
    rng: random.Random,
    now: int,
) -> int:
    types = [t for t, _ in EVENT_MIX]
    weights = [w for _, w in EVENT_MIX]
    rows = []
    views: dict[int, int] = {}
    purchases: dict[int, int] = {}

    for user_id in range(1, n_users + 1):
        # each user mostly shops in two favourite categories
        favourites = rng.sample(CATEGORIES, 2)
        session_id = f"seed-{user_id}"
        for _ in range(events_per_user):
            category = rng.choice(favourites) if rng.random() < 0.8 else rng.choice(CATEGORIES)
            product_id = rng.choice(by_category[category])
            event_type = rng.choices(types, weights=weights)[0]
            value = float(rng.randint(3, 5)) if event_type == "rating" else None
            ts = now - rng.randint(0, 60 * 24 * 3600)
            rows.append((user_id, product_id, event_type, value, session_id, ts))

            if event_type == "view":
                views[product_id] = views.get(product_id, 0) + 1
            elif event_type == "purchase":
                purchases[product_id] = purchases.get(product_id, 0) + 1

    conn.executemany(
        """
        INSERT INTO interactions(user_id, product_id, event_type, value, session_id, ts)
        VALUES(?,?,?,?,?,?)
        """,
        rows,
    )
    conn.executemany("UPDATE products SET view_count = ? WHERE id = ?", [(c, p) for p, c in views.items()])
    conn.executemany("UPDATE products SET purchase_count = ? WHERE id = ?", [(c, p) for p, c in purchases.items()])

    # explicit ratings mirror the rating events (last one wins)
    conn.executemany(
        """
        INSERT INTO ratings(user_id, product_id, rating, review_text, created_at, updated_at)
        VALUES(?,?,?,NULL,?,?)
        ON CONFLICT(user_id, product_id) DO UPDATE SET rating = excluded.rating, updated_at = excluded.updated_at
        """,
        [(u, p, v, ts, ts) for u, p, t, v, _, ts in rows if t == "rating"],
    )
    return len(rows)


def clear_tables(conn: sqlite3.Connection) -> None:
    conn.execute("DELETE FROM recommendations_cache;")
    conn.execute("DELETE FROM user_similarity;")
    conn.execute("DELETE FROM product_similarity;")
    conn.execute("DELETE FROM ratings;")
    conn.execute("DELETE FROM interactions;")
    conn.execute("DELETE FROM products;")


def main():
    ap = argparse.ArgumentParser(description="Seed a synthetic shop catalog and interaction log")
    ap.add_argument("--products", type=int, default=200)
    ap.add_argument("--users", type=int, default=500)
    ap.add_argument("--events-per-user", type=int, default=30)
    ap.add_argument("--seed", type=int, default=42)
    ap.add_argument("--reset", action="store_true", help="Clear tables before seeding")
    args = ap.parse_args()

    rng = random.Random(args.seed)
    now = int(time.time())

    conn = connect()
    init_db(conn)

    if args.reset:
        clear_tables(conn)

    by_category = seed_products(conn, args.products, rng, now)
    n_events = seed_interactions(conn, args.users, args.events_per_user, by_category, rng, now)

    conn.commit()
    conn.close()
    print(f"Seeding complete: {args.products} products, {args.users} users, {n_events} interactions.")


if __name__ == "__main__":
    main()
