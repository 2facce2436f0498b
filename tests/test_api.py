import pytest
from fastapi.testclient import TestClient

from backend.app import main
from backend.app.config import settings
from backend.recommender.errors import StoreError
from backend.recommender.similarity_store import Metric, SimilarityKind, SimilarityStore
from tests.helpers import add_interactions, add_products


@pytest.fixture
def client(conn, db_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{db_path}")
    monkeypatch.setattr(settings, "scheduler_enabled", False)
    add_products(conn, *range(1, 11), p10={"is_active": 0})
    with TestClient(main.app) as c:
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_new_user_gets_trending(client):
    r = client.get("/recommendations/user/42", params={"strategy": "user_based", "limit": 3})
    assert r.status_code == 200
    body = r.json()
    assert body["source"] == "trending"
    # product 10 is inactive, so trending starts at 9
    assert body["product_ids"] == [9, 8, 7]
    assert [item["product_id"] for item in body["items"]] == [9, 8, 7]


def test_invalid_strategy_and_limit(client):
    assert client.get("/recommendations/user/1", params={"strategy": "magic"}).status_code == 422
    assert client.get("/recommendations/user/1", params={"limit": 0}).status_code == 422


def test_homepage_anonymous(client):
    body = client.get("/recommendations/homepage", params={"limit": 2}).json()
    assert body["source"] == "trending"
    assert body["user_id"] is None
    assert len(body["product_ids"]) == 2


def test_product_widgets(client, conn):
    SimilarityStore(conn, SimilarityKind.PRODUCT).upsert_many([(1, 2, 0.8), (1, 3, 0.4)], Metric.COSINE)
    add_interactions(conn, [(1, 1, "view"), (1, 4, "view"), (2, 1, "view"), (2, 4, "purchase"), (2, 5, "view")])

    similar = client.get("/recommendations/product/1/similar").json()
    assert similar["product_ids"] == [2, 3]
    assert client.get("/recommendations/product/1/bought-together", params={"limit": 1}).json()["product_ids"] == [2]
    assert client.get("/recommendations/product/1/also-viewed").json()["product_ids"] == [4, 5]


def test_record_interaction_then_debug(client):
    r = client.post("/interactions", json={"user_id": 1, "product_id": 3, "interaction_type": "PURCHASE"})
    assert r.status_code == 200
    assert r.json()["status"] == "ok"

    rows = client.get("/debug/interactions", params={"user_id": 1}).json()
    assert rows[0]["product_id"] == 3
    assert rows[0]["interaction_type"] == "purchase"

    products = client.get("/debug/products", params={"limit": 3}).json()
    assert products[2]["purchase_count"] == 1


def test_unknown_interaction_type_rejected(client):
    r = client.post("/interactions", json={"user_id": 1, "product_id": 3, "interaction_type": "click"})
    assert r.status_code == 422


def test_ratings(client):
    assert client.post("/ratings", json={"user_id": 1, "product_id": 2, "rating": 6}).status_code == 422
    r = client.post("/ratings", json={"user_id": 1, "product_id": 2, "rating": 4, "review_text": "good"})
    assert r.status_code == 200
    assert r.json()["rating"]["rating"] == 4.0
    assert r.json()["rating"]["review_text"] == "good"

    explain = client.get("/recommendations/user/1/explain/5", params={"strategy": "user_based"}).json()
    assert explain["explanation"] == "Recommended based on your preferences"


def test_admin_jobs(client, conn):
    add_interactions(conn, [(1, 1, "purchase"), (1, 2, "purchase"), (2, 1, "purchase"), (2, 2, "view")])

    r = client.post("/admin/recommendations/compute-item-similarities")
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["rows_written"] >= 1

    assert client.post("/admin/recommendations/compute-user-similarities").json()["success"] is True
    assert client.post("/admin/recommendations/compute-item-similarities-cooccurrence").json()["success"] is True
    assert client.post("/admin/recommendations/cleanup-cache").json()["deleted"] == 0

    everything = client.post("/admin/recommendations/compute-all").json()
    assert everything["success"] is True
    assert set(everything["tasks"]) == {"user_similarities", "product_similarities", "cache_cleanup"}


def test_admin_status(client):
    body = client.get("/admin/recommendations/status").json()
    assert body["scheduler_enabled"] is False
    assert body["running"] is False
    assert {job["name"] for job in body["jobs"]} >= {"product_similarities", "user_similarities", "cache_cleanup"}
    assert body["similarity_rows"] == {"user_similarity": 0, "product_similarity": 0}


def test_admin_settings(client):
    r = client.put("/admin/settings/recommendation.top_k_neighbors", json={"value": "5"})
    assert r.status_code == 200
    assert r.json()["settings"]["recommendation.top_k_neighbors"] == "5"

    refreshed = client.post("/admin/settings/refresh").json()
    assert refreshed["loaded"] == 1
    assert main.app.state.runtime.cf_params().top_k == 5


def test_store_failure_is_503(client, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StoreError("load interactions failed: database is locked")

    monkeypatch.setattr(main, "build_recommender", unavailable)
    r = client.get("/recommendations/user/1")
    assert r.status_code == 503
    assert r.json()["detail"] == "Recommendation store unavailable"


def test_unknown_product_is_404(client):
    assert client.get("/recommendations/product/999/similar").status_code == 404
    r = client.post("/interactions", json={"user_id": 1, "product_id": 999, "interaction_type": "view"})
    assert r.status_code == 404


def test_admin_settings_rejects_invalid_values(client):
    r = client.put("/admin/settings/recommendation.cache_ttl_hours", json={"value": "0"})
    assert r.status_code == 422
    assert client.put("/admin/settings/recommendation.top_k_neighbors", json={"value": "-1"}).status_code == 422
    assert main.app.state.runtime.cf_params().cache_ttl_seconds == 24 * 3600
