from contextlib import asynccontextmanager
from dataclasses import asdict
import logging

from fastapi import FastAPI, Query, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from backend.app.config import settings
from backend.app.logging_setup import setup_logging
from backend.app.db import connect, init_db
from backend.app.runtime_settings import RuntimeSettings
from backend.app.scheduler import JobScheduler, register_recommendation_jobs
from backend.recommender import recompute
from backend.recommender.batch import Deadline
from backend.recommender.cache import Strategy
from backend.recommender.errors import StoreError
from backend.recommender.hybrid import build_recommender
from backend.recommender.interactions import InteractionType, parse_interaction_type
from backend.recommender.models import Recommendations
from backend.recommender.similarity_store import SimilarityKind, SimilarityStore
from backend.recommender.stores import Catalog, InteractionStore

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ensure DB exists
    conn = connect()
    init_db(conn)
    conn.close()

    runtime = RuntimeSettings(connect, settings, ttl_seconds=settings.runtime_settings_ttl_seconds)
    runtime.refresh()
    app.state.runtime = runtime

    scheduler = JobScheduler()
    register_recommendation_jobs(scheduler, settings, connect, runtime.cf_params)
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        await scheduler.start()

    yield

    # cancels the deadline of any job still running
    await scheduler.stop()


app = FastAPI(
    title=settings.app_name,
    version="0.2.0",
    lifespan=lifespan,
)

if settings.cors_origins_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Store unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Recommendation store unavailable"})


def _payload(conn, recs: Recommendations, **extra) -> dict:
    products = Catalog(conn).find_by_ids(recs.product_ids)
    return {
        **extra,
        "source": recs.source.value,
        "product_ids": recs.product_ids,
        "items": [p.to_dict() for p in products],
    }


def _require_product(conn, product_id: int) -> None:
    if Catalog(conn).find_by_id(product_id) is None:
        raise HTTPException(status_code=404, detail="Product not found")


def _product_payload(conn, product_id: int, product_ids: list, widget: str) -> dict:
    products = Catalog(conn).find_by_ids(product_ids)
    return {
        "product_id": product_id,
        "widget": widget,
        "product_ids": product_ids,
        "items": [p.to_dict() for p in products],
    }


@app.get("/health")
def health():
    return {"status": "ok", "app": settings.app_name, "env": settings.app_env}


@app.get("/")
def root():
    return {"message": "Shop recommender API is running", "docs": "/docs", "health": "/health"}


# Debug endpoints
@app.get("/debug/products")
def debug_products(limit: int = Query(10, ge=1, le=200)):
    conn = connect()
    try:
        return [p.to_dict() | {"is_active": p.is_active} for p in Catalog(conn).list_products(limit)]
    finally:
        conn.close()


@app.get("/debug/interactions")
def debug_interactions(
    user_id: int = Query(..., ge=1),
    limit: int = Query(20, ge=1, le=200),
):
    conn = connect()
    try:
        rows = InteractionStore(conn).find_by_user(user_id)[:limit]
    finally:
        conn.close()
    return [
        {
            "id": x.id,
            "product_id": x.product_id,
            "interaction_type": x.type.value,
            "value": x.value,
            "session_id": x.session_id,
            "ts": x.ts,
        }
        for x in rows
    ]


# Recommendations
@app.get("/recommendations/user/{user_id}")
def user_recommendations(
    user_id: int,
    strategy: Strategy = Query(Strategy.HYBRID),
    limit: int = Query(10, ge=1, le=100),
):
    conn = connect()
    try:
        recommender = build_recommender(conn, app.state.runtime.cf_params())
        recs = recommender.recommend_with(strategy, user_id, limit)
        return _payload(conn, recs, user_id=user_id, strategy=strategy.value)
    finally:
        conn.close()


@app.get("/recommendations/homepage")
def homepage_recommendations(
    user_id: int | None = Query(default=None),
    limit: int = Query(10, ge=1, le=100),
):
    conn = connect()
    try:
        recommender = build_recommender(conn, app.state.runtime.cf_params())
        recs = recommender.homepage_recommendations(user_id, limit)
        return _payload(conn, recs, user_id=user_id)
    finally:
        conn.close()


@app.get("/recommendations/product/{product_id}/similar")
def similar_products(product_id: int, limit: int = Query(6, ge=1, le=100)):
    conn = connect()
    try:
        _require_product(conn, product_id)
        recommender = build_recommender(conn, app.state.runtime.cf_params())
        ids = recommender.item_based.similar_to(product_id, limit)
        return _product_payload(conn, product_id, ids, "similar")
    finally:
        conn.close()


@app.get("/recommendations/product/{product_id}/bought-together")
def bought_together(product_id: int, limit: int = Query(4, ge=1, le=100)):
    conn = connect()
    try:
        _require_product(conn, product_id)
        recommender = build_recommender(conn, app.state.runtime.cf_params())
        ids = recommender.frequently_bought_together(product_id, limit)
        return _product_payload(conn, product_id, ids, "bought_together")
    finally:
        conn.close()


@app.get("/recommendations/product/{product_id}/also-viewed")
def also_viewed(product_id: int, limit: int = Query(6, ge=1, le=100)):
    conn = connect()
    try:
        _require_product(conn, product_id)
        recommender = build_recommender(conn, app.state.runtime.cf_params())
        ids = recommender.customers_also_viewed(product_id, limit)
        return _product_payload(conn, product_id, ids, "also_viewed")
    finally:
        conn.close()


@app.get("/recommendations/user/{user_id}/explain/{product_id}")
def explain_recommendation(
    user_id: int,
    product_id: int,
    strategy: Strategy = Query(Strategy.ITEM_BASED),
):
    conn = connect()
    try:
        recommender = build_recommender(conn, app.state.runtime.cf_params())
        explanation = recommender.explain(strategy, user_id, product_id)
    finally:
        conn.close()
    return {
        "user_id": user_id,
        "product_id": product_id,
        "strategy": strategy.value,
        "explanation": explanation,
    }


# Interaction logging
class InteractionEvent(BaseModel):
    user_id: int = Field(..., ge=1)
    product_id: int = Field(..., ge=1)
    interaction_type: InteractionType
    value: float | None = None

    @field_validator("interaction_type", mode="before")
    @classmethod
    def _parse_type(cls, v):
        return parse_interaction_type(v)


class RatingEvent(BaseModel):
    user_id: int = Field(..., ge=1)
    product_id: int = Field(..., ge=1)
    rating: float = Field(..., ge=1, le=5)
    review_text: str | None = Field(default=None, max_length=5000)


@app.post("/interactions")
def record_interaction(ev: InteractionEvent):
    conn = connect()
    try:
        _require_product(conn, ev.product_id)
        recommender = build_recommender(conn, app.state.runtime.cf_params())
        interaction_id = recommender.record_interaction(
            ev.user_id, ev.product_id, ev.interaction_type, ev.value
        )
    finally:
        conn.close()
    return {"status": "ok", "interaction_id": interaction_id}


@app.post("/ratings")
def submit_rating(ev: RatingEvent):
    conn = connect()
    try:
        _require_product(conn, ev.product_id)
        recommender = build_recommender(conn, app.state.runtime.cf_params())
        interaction_id = recommender.submit_rating(ev.user_id, ev.product_id, ev.rating, ev.review_text)
        saved = recommender.ratings.find(ev.user_id, ev.product_id)
    finally:
        conn.close()
    return {"status": "ok", "interaction_id": interaction_id, "rating": asdict(saved)}


# Admin: batch jobs
def _run_admin_task(name: str, func) -> dict:
    conn = connect()
    try:
        return recompute.run_task(name, lambda: func(conn))
    finally:
        conn.close()


@app.post("/admin/recommendations/compute-user-similarities")
def admin_compute_user_similarities():
    params = app.state.runtime.cf_params()
    return _run_admin_task(
        "user_similarities",
        lambda conn: recompute.compute_user_similarities(
            conn, params, Deadline(settings.recompute_timeout_seconds)
        ),
    )


@app.post("/admin/recommendations/compute-item-similarities")
def admin_compute_item_similarities():
    params = app.state.runtime.cf_params()
    return _run_admin_task(
        "product_similarities",
        lambda conn: recompute.compute_item_similarities(
            conn, "full", params, Deadline(settings.recompute_timeout_seconds)
        ),
    )


@app.post("/admin/recommendations/compute-item-similarities-cooccurrence")
def admin_compute_item_similarities_cooccurrence():
    params = app.state.runtime.cf_params()
    return _run_admin_task(
        "product_similarities_cooccurrence",
        lambda conn: recompute.compute_item_similarities(
            conn, "cooccurrence", params, Deadline(settings.recompute_timeout_seconds)
        ),
    )


@app.post("/admin/recommendations/cleanup-cache")
def admin_cleanup_cache():
    return _run_admin_task("cache_cleanup", recompute.cleanup_expired_cache)


@app.post("/admin/recommendations/compute-all")
def admin_compute_all():
    conn = connect()
    try:
        return recompute.compute_all(
            conn,
            app.state.runtime.cf_params(),
            item_mode=settings.item_similarity_mode,
            timeout_seconds=settings.recompute_timeout_seconds,
        )
    finally:
        conn.close()


@app.get("/admin/recommendations/status")
def admin_status():
    scheduler: JobScheduler = app.state.scheduler
    conn = connect()
    try:
        stored = {kind.value: SimilarityStore(conn, kind).count() for kind in SimilarityKind}
    finally:
        conn.close()
    return {
        "scheduler_enabled": settings.scheduler_enabled,
        "running": scheduler.running,
        "jobs": scheduler.get_all_jobs(),
        "similarity_rows": stored,
    }


# Admin: runtime settings
class SettingValue(BaseModel):
    value: str = Field(..., max_length=256)


@app.post("/admin/settings/refresh")
def admin_refresh_settings():
    runtime: RuntimeSettings = app.state.runtime
    loaded = runtime.refresh()
    return {"status": "ok", "loaded": loaded, "settings": runtime.all()}


@app.put("/admin/settings/{key}")
def admin_put_setting(key: str, body: SettingValue):
    runtime: RuntimeSettings = app.state.runtime
    try:
        runtime.set(key, body.value)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"status": "ok", "settings": runtime.all()}
