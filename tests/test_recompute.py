import pytest

from backend.recommender import recompute
from backend.recommender.cache import RecommendationCache, Strategy
from backend.recommender.models import CFParams
from backend.recommender.similarity_store import Metric, SimilarityKind, SimilarityStore
from backend.recommender.stores import RatingStore
from tests.helpers import add_interactions


@pytest.fixture
def shop(catalog_10):
    add_interactions(
        catalog_10,
        [
            (1, 1, "purchase"), (1, 2, "view"), (1, 3, "add_to_cart"),
            (2, 1, "view"), (2, 2, "view"), (2, 3, "purchase"),
            (3, 2, "purchase"), (3, 4, "view"),
        ],
    )
    ratings = RatingStore(catalog_10)
    for user_id, product_id, value in [
        (1, 1, 5.0), (1, 2, 3.0), (1, 3, 4.0),
        (2, 1, 4.0), (2, 2, 2.0), (2, 3, 5.0),
    ]:
        ratings.save(user_id, product_id, value)
    return catalog_10


def test_compute_all_runs_every_task(shop):
    result = recompute.compute_all(shop, CFParams())

    assert result["success"] is True
    assert set(result["tasks"]) == {"user_similarities", "product_similarities", "cache_cleanup"}
    assert result["tasks"]["user_similarities"]["rows_written"] == 1
    assert result["tasks"]["product_similarities"]["rows_written"] > 0
    assert result["tasks"]["cache_cleanup"]["deleted"] == 0
    assert SimilarityStore(shop, SimilarityKind.USER).count() == 1


def test_failing_task_does_not_stop_the_rest(shop, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("similarity store offline")

    monkeypatch.setattr(recompute, "compute_user_similarities", boom)
    result = recompute.compute_all(shop)

    assert result["success"] is False
    user_task = result["tasks"]["user_similarities"]
    assert user_task["success"] is False
    assert "offline" in user_task["error"]
    assert result["tasks"]["product_similarities"]["success"] is True
    assert result["tasks"]["cache_cleanup"]["success"] is True


def test_timeout_reports_partial_progress(shop):
    result = recompute.compute_all(shop, timeout_seconds=0)
    task = result["tasks"]["product_similarities"]
    assert task["success"] is False
    assert task["partial"]["completed"] is False
    assert task["partial"]["job"] == "product_similarities"
    assert result["tasks"]["cache_cleanup"]["success"] is True


def test_cooccurrence_mode(shop):
    report = recompute.compute_item_similarities(shop, "cooccurrence")
    assert report.job == "product_similarities_cooccurrence"
    assert report.completed


def test_unknown_item_mode(shop):
    with pytest.raises(ValueError):
        recompute.compute_item_similarities(shop, "magic")


def test_cleanup_expired_cache(shop):
    RecommendationCache(shop, ttl_seconds=60, clock=lambda: 1_000.0).put(1, Strategy.HYBRID, [5, 6], {})
    assert recompute.cleanup_expired_cache(shop, clock=lambda: 2_000.0) == 2


def test_cleanup_retention(shop):
    # every seeded row is recent, only the planted old ones go
    add_interactions(shop, [(9, 9, "view", None, 1_000)])
    SimilarityStore(shop, SimilarityKind.PRODUCT).upsert(8, 9, 0.5, Metric.COSINE, now=1_000)

    deleted = recompute.cleanup_retention(shop, interaction_days=365, similarity_days=30)
    assert deleted == {"interactions": 1, "user_similarity": 0, "product_similarity": 1}
