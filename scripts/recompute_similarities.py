#!/usr/bin/env python3
"""Run the recommendation maintenance jobs once, outside the API process."""
import argparse
import json

from backend.app.config import settings
from backend.app.db import connect, init_db
from backend.app.logging_setup import setup_logging
from backend.recommender import recompute
from backend.recommender.batch import Deadline
from backend.recommender.models import CFParams

JOBS = ["all", "users", "products", "cooccurrence", "cache", "retention"]


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("job", choices=JOBS, nargs="?", default="all")
    ap.add_argument("--top-k", type=int, default=settings.top_k_neighbors)
    ap.add_argument("--min-similarity", type=float, default=settings.min_similarity)
    ap.add_argument("--block-size", type=int, default=settings.recompute_block_size)
    ap.add_argument("--timeout", type=float, default=settings.recompute_timeout_seconds,
                    help="Seconds before a similarity job stops (rows written so far are kept)")
    ap.add_argument("--item-mode", choices=list(recompute.ITEM_MODES), default=settings.item_similarity_mode)
    args = ap.parse_args()

    setup_logging(settings.log_level)

    params = CFParams(
        top_k=args.top_k,
        min_similarity=args.min_similarity,
        cache_ttl_seconds=settings.rec_cache_ttl_hours * 3600,
        recompute_block_size=args.block_size,
    )

    conn = connect()
    init_db(conn)
    try:
        if args.job == "all":
            result = recompute.compute_all(conn, params, args.item_mode, args.timeout)
        elif args.job == "users":
            result = recompute.run_task(
                "user_similarities",
                lambda: recompute.compute_user_similarities(conn, params, Deadline(args.timeout)),
            )
        elif args.job in ("products", "cooccurrence"):
            mode = "cooccurrence" if args.job == "cooccurrence" else args.item_mode
            result = recompute.run_task(
                "product_similarities",
                lambda: recompute.compute_item_similarities(conn, mode, params, Deadline(args.timeout)),
            )
        elif args.job == "cache":
            result = recompute.run_task("cache_cleanup", lambda: recompute.cleanup_expired_cache(conn))
        else:
            result = recompute.run_task(
                "retention_cleanup",
                lambda: recompute.cleanup_retention(
                    conn, settings.interaction_retention_days, settings.similarity_retention_days
                ),
            )
    finally:
        conn.close()

    print(json.dumps(result, indent=2))
    if not result["success"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
