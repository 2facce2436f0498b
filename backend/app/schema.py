SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

-- catalog (owned by the shop backend, read-mostly here)

CREATE TABLE IF NOT EXISTS products (
  id             INTEGER PRIMARY KEY,
  name           TEXT NOT NULL,
  category       TEXT,
  price          REAL,
  is_active      INTEGER NOT NULL DEFAULT 1,
  view_count     INTEGER NOT NULL DEFAULT 0,
  purchase_count INTEGER NOT NULL DEFAULT 0,
  created_at     INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_products_active ON products(is_active);

-- append-only interaction log

CREATE TABLE IF NOT EXISTS interactions (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id    INTEGER NOT NULL,
  product_id INTEGER NOT NULL,
  event_type TEXT NOT NULL,  -- view | add_to_cart | purchase | rating | wishlist
  value      REAL,           -- explicit value, used for ratings
  session_id TEXT,
  ts         INTEGER NOT NULL -- unix timestamp
);

CREATE INDEX IF NOT EXISTS idx_interactions_user_id ON interactions(user_id);
CREATE INDEX IF NOT EXISTS idx_interactions_product_id ON interactions(product_id);
CREATE INDEX IF NOT EXISTS idx_interactions_ts ON interactions(ts);

-- explicit ratings, one row per (user, product)

CREATE TABLE IF NOT EXISTS ratings (
  user_id     INTEGER NOT NULL,
  product_id  INTEGER NOT NULL,
  rating      REAL NOT NULL,
  review_text TEXT,
  created_at  INTEGER NOT NULL,
  updated_at  INTEGER NOT NULL,
  PRIMARY KEY (user_id, product_id)
);

-- precomputed pairwise similarities, canonical order id_a < id_b

CREATE TABLE IF NOT EXISTS user_similarity (
  id_a        INTEGER NOT NULL,
  id_b        INTEGER NOT NULL,
  score       REAL NOT NULL,
  metric      TEXT NOT NULL,   -- cosine | pearson | jaccard
  computed_at INTEGER NOT NULL,
  PRIMARY KEY (id_a, id_b),
  CHECK (id_a < id_b)
);

CREATE INDEX IF NOT EXISTS idx_user_similarity_b ON user_similarity(id_b);

CREATE TABLE IF NOT EXISTS product_similarity (
  id_a        INTEGER NOT NULL,
  id_b        INTEGER NOT NULL,
  score       REAL NOT NULL,
  metric      TEXT NOT NULL,
  computed_at INTEGER NOT NULL,
  PRIMARY KEY (id_a, id_b),
  CHECK (id_a < id_b)
);

CREATE INDEX IF NOT EXISTS idx_product_similarity_b ON product_similarity(id_b);

-- per (user, strategy) ranked recommendation cache

CREATE TABLE IF NOT EXISTS recommendations_cache (
  user_id      INTEGER NOT NULL,
  product_id   INTEGER NOT NULL,
  strategy     TEXT NOT NULL,  -- user_based | item_based | hybrid
  confidence   REAL NOT NULL,  -- 0..1
  rank         INTEGER NOT NULL,
  generated_at INTEGER NOT NULL,
  expires_at   INTEGER,        -- NULL = never expires
  PRIMARY KEY (user_id, strategy, product_id)
);

CREATE INDEX IF NOT EXISTS idx_recommendations_cache_expires
ON recommendations_cache(expires_at);

-- runtime-tunable settings

CREATE TABLE IF NOT EXISTS system_settings (
  key        TEXT PRIMARY KEY,
  value      TEXT NOT NULL,
  updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
);
"""
