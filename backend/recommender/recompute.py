"""
Batch maintenance jobs: similarity matrices, cache sweep, retention.

Each job is idempotent and takes its own connection, so it can run beside
live traffic. `compute_all` runs them in sequence and reports per task
instead of stopping at the first failure.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional
import logging
import sqlite3
import time

from backend.recommender.batch import Deadline, RecomputeReport
from backend.recommender.errors import RecomputeCancelled
from backend.recommender.hybrid import build_recommender
from backend.recommender.models import CFParams
from backend.recommender.similarity_store import SimilarityKind, SimilarityStore
from backend.recommender.stores import InteractionStore

logger = logging.getLogger(__name__)

ITEM_MODES = ("full", "cooccurrence")


def compute_user_similarities(
    conn: sqlite3.Connection,
    params: Optional[CFParams] = None,
    deadline: Optional[Deadline] = None,
) -> RecomputeReport:
    recommender = build_recommender(conn, params)
    return recommender.user_based.compute_similarities(deadline)


def compute_item_similarities(
    conn: sqlite3.Connection,
    mode: str = "full",
    params: Optional[CFParams] = None,
    deadline: Optional[Deadline] = None,
) -> RecomputeReport:
    if mode not in ITEM_MODES:
        raise ValueError(f"mode must be one of: {', '.join(ITEM_MODES)}")
    recommender = build_recommender(conn, params)
    if mode == "cooccurrence":
        return recommender.item_based.compute_similarities_by_cooccurrence(deadline)
    return recommender.item_based.compute_similarities(deadline)


def cleanup_expired_cache(conn: sqlite3.Connection, clock: Callable[[], float] = time.time) -> int:
    return build_recommender(conn, clock=clock).cleanup_expired_cache()


def cleanup_retention(
    conn: sqlite3.Connection,
    interaction_days: int,
    similarity_days: int,
) -> Dict[str, int]:
    """Drop interactions older than `interaction_days` and similarity rows not recomputed for `similarity_days`."""
    deleted = {
        "interactions": InteractionStore(conn).delete_older_than(interaction_days),
        "user_similarity": SimilarityStore(conn, SimilarityKind.USER).delete_older_than(similarity_days),
        "product_similarity": SimilarityStore(conn, SimilarityKind.PRODUCT).delete_older_than(similarity_days),
    }
    logger.info("Retention cleanup removed %s", deleted)
    return deleted


def run_task(name: str, func: Callable[[], Any]) -> Dict[str, Any]:
    """Run one maintenance task inside its own failure boundary."""
    start = time.monotonic()
    try:
        result = func()
    except RecomputeCancelled as e:
        logger.warning("Task %s stopped early: %s", name, e)
        return {
            "success": False,
            "duration_ms": round((time.monotonic() - start) * 1000.0, 1),
            "error": str(e),
            "partial": e.report.to_dict(),
        }
    except Exception as e:
        logger.exception("Task %s failed", name)
        return {
            "success": False,
            "duration_ms": round((time.monotonic() - start) * 1000.0, 1),
            "error": str(e),
        }

    out: Dict[str, Any] = {
        "success": True,
        "duration_ms": round((time.monotonic() - start) * 1000.0, 1),
    }
    if isinstance(result, RecomputeReport):
        out["rows_written"] = result.rows_written
        out["processed"] = result.processed
    elif isinstance(result, (int, dict)):
        out["deleted"] = result
    return out


def compute_all(
    conn: sqlite3.Connection,
    params: Optional[CFParams] = None,
    item_mode: str = "full",
    timeout_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    """
    user similarities -> product similarities -> expired cache sweep.
    A failing task is reported and the rest still run.
    """
    logger.info("Starting all recommendation computations")
    tasks = {
        "user_similarities": run_task(
            "user_similarities",
            lambda: compute_user_similarities(conn, params, Deadline(timeout_seconds)),
        ),
        "product_similarities": run_task(
            "product_similarities",
            lambda: compute_item_similarities(conn, item_mode, params, Deadline(timeout_seconds)),
        ),
        "cache_cleanup": run_task("cache_cleanup", lambda: cleanup_expired_cache(conn)),
    }
    success = all(t["success"] for t in tasks.values())
    logger.info("All computations finished (success=%s)", success)
    return {"success": success, "tasks": tasks}
