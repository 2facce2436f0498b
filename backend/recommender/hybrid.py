from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence
import logging
import sqlite3
import time
import uuid

from backend.recommender.cache import RecommendationCache, Strategy
from backend.recommender.interactions import InteractionType
from backend.recommender.item_based import ItemBasedCF
from backend.recommender.models import CFParams, Recommendations, Source
from backend.recommender.similarity_store import SimilarityKind, SimilarityStore
from backend.recommender.stores import Catalog, InteractionStore, RatingStore
from backend.recommender.user_based import UserBasedCF

logger = logging.getLogger(__name__)

# weights (fixed)
WEIGHT_USER_BASED = 0.3
WEIGHT_ITEM_BASED = 0.5
WEIGHT_TRENDING = 0.2

ALSO_VIEWED_USER_SAMPLE = 50


def rank_decay_scores(
    ranked_ids: Sequence[int],
    weight: float,
    exclude: set[int],
    into: Dict[int, float],
) -> None:
    """Add weight * (1 - i / len) for the item at position i, skipping excluded ids."""
    n = len(ranked_ids)
    for i, product_id in enumerate(ranked_ids):
        if product_id in exclude:
            continue
        into[product_id] = into.get(product_id, 0.0) + weight * (1.0 - i / n)


class HybridRecommender:
    """
    Default entry point. Blends user-based CF, item-based CF and trending
    products with a linear rank decay per source, plus the product-page
    widgets and interaction recording.
    """

    def __init__(
        self,
        user_based: UserBasedCF,
        item_based: ItemBasedCF,
        interactions: InteractionStore,
        ratings: RatingStore,
        catalog: Catalog,
        cache: RecommendationCache,
    ):
        self.user_based = user_based
        self.item_based = item_based
        self.interactions = interactions
        self.ratings = ratings
        self.catalog = catalog
        self.cache = cache

    def recommend(self, user_id: int, limit: int = 10) -> Recommendations:
        cached = self.cache.get_ids(user_id, Strategy.HYBRID, limit)
        if cached is not None:
            logger.info("Returning %d cached hybrid recommendations for user %s", len(cached), user_id)
            return Recommendations(cached, Source.CACHE)

        seen = self.interactions.seen_product_ids(user_id)
        pool = limit * 2
        scores: Dict[int, float] = {}

        # each engine contributes whatever it answers, its own trending fallback included
        user_recs = self.user_based.recommend(user_id, pool)
        rank_decay_scores(user_recs.product_ids, WEIGHT_USER_BASED, seen, scores)

        item_recs = self.item_based.recommend(user_id, pool)
        rank_decay_scores(item_recs.product_ids, WEIGHT_ITEM_BASED, seen, scores)

        rank_decay_scores(self.catalog.trending_ids(pool), WEIGHT_TRENDING, seen, scores)

        # ties broken by product id so the output is deterministic
        ranked = sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        if not ranked:
            logger.warning("No hybrid recommendations for user %s, falling back to trending", user_id)
            return Recommendations(self.catalog.trending_ids(limit), Source.TRENDING)

        product_ids = [pid for pid, _ in ranked]
        max_score = max(scores.values())
        confidences = {pid: s / max_score for pid, s in ranked} if max_score > 0 else {}
        self.cache.put(user_id, Strategy.HYBRID, product_ids, confidences)

        logger.info("Generated %d hybrid recommendations for user %s", len(product_ids), user_id)
        return Recommendations(product_ids, Source.COMPUTED, dict(ranked))

    def recommend_with(self, strategy: Strategy, user_id: int, limit: int = 10) -> Recommendations:
        if strategy is Strategy.USER_BASED:
            return self.user_based.recommend(user_id, limit)
        if strategy is Strategy.ITEM_BASED:
            return self.item_based.recommend(user_id, limit)
        return self.recommend(user_id, limit)

    def homepage_recommendations(self, user_id: Optional[int], limit: int = 10) -> Recommendations:
        if user_id is None:
            # anonymous visitor
            return Recommendations(self.catalog.trending_ids(limit), Source.TRENDING)
        return self.recommend(user_id, limit)

    def frequently_bought_together(self, product_id: int, limit: int = 4) -> List[int]:
        return self.item_based.similar_to(product_id, limit)

    def customers_also_viewed(self, product_id: int, limit: int = 6) -> List[int]:
        """
        Products most often touched by (up to 50 of) the users who touched
        `product_id`, ranked by raw co-occurrence count, ties by product id. No similarity data used.
        """
        user_ids = self.interactions.user_ids_for_product(product_id, limit=ALSO_VIEWED_USER_SAMPLE)
        if not user_ids:
            return []

        counts: Dict[int, int] = {}
        histories = self.interactions.find_by_users(user_ids)
        for uid in user_ids:
            for x in histories[uid]:
                if x.product_id == product_id:
                    continue
                counts[x.product_id] = counts.get(x.product_id, 0) + 1

        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return [pid for pid, _ in ranked[:limit]]

    def record_interaction(
        self,
        user_id: int,
        product_id: int,
        itype: InteractionType,
        value: Optional[float] = None,
    ) -> int:
        interaction_id = self.interactions.append(
            user_id, product_id, itype, value, session_id=str(uuid.uuid4())
        )

        if itype is InteractionType.VIEW:
            self.catalog.increment_view_count(product_id)
        elif itype is InteractionType.PURCHASE:
            self.catalog.increment_purchase_count(product_id)

        # next request for this user must recompute, whatever the strategy
        dropped = self.cache.invalidate_user(user_id)

        logger.info(
            "Recorded %s interaction for user %s on product %s (%d cached rows dropped)",
            itype.value, user_id, product_id, dropped,
        )
        return interaction_id

    def submit_rating(
        self,
        user_id: int,
        product_id: int,
        rating: float,
        review_text: Optional[str] = None,
    ) -> int:
        self.ratings.save(user_id, product_id, rating, review_text)
        return self.record_interaction(user_id, product_id, InteractionType.RATING, rating)

    def explain(self, strategy: Strategy, user_id: int, product_id: int) -> str:
        if strategy is Strategy.USER_BASED:
            return self.user_based.explain(user_id, product_id)
        return self.item_based.explain(user_id, product_id)

    def cleanup_expired_cache(self) -> int:
        deleted = self.cache.delete_expired()
        logger.info("Cleaned up %d expired recommendations", deleted)
        return deleted


def build_recommender(
    conn: sqlite3.Connection,
    params: Optional[CFParams] = None,
    clock: Callable[[], float] = time.time,
) -> HybridRecommender:
    """Wire the stores and engines around one connection."""
    params = params or CFParams()
    interactions = InteractionStore(conn)
    ratings = RatingStore(conn)
    catalog = Catalog(conn)
    cache = RecommendationCache(conn, ttl_seconds=params.cache_ttl_seconds, clock=clock)

    user_based = UserBasedCF(
        interactions,
        ratings,
        SimilarityStore(conn, SimilarityKind.USER),
        catalog,
        cache,
        params,
    )
    item_based = ItemBasedCF(
        interactions,
        SimilarityStore(conn, SimilarityKind.PRODUCT),
        catalog,
        cache,
        params,
    )
    return HybridRecommender(user_based, item_based, interactions, ratings, catalog, cache)
