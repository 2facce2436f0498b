from __future__ import annotations

from typing import Dict, Optional
import logging

from backend.recommender.batch import Deadline, RecomputeReport
from backend.recommender.cache import RecommendationCache, Strategy
from backend.recommender.models import CFParams, Recommendations, Source
from backend.recommender.similarity import normalize_scores, top_n
from backend.recommender.similarity_store import Metric, SimilarityStore
from backend.recommender.stores import Catalog, InteractionStore, RatingStore

logger = logging.getLogger(__name__)


class UserBasedCF:
    """
    User-based collaborative filtering:
      - neighbours = the K users most similar to the target (Pearson over ratings, precomputed)
      - candidates = products those neighbours touched that the target has not
      - score = sum(neighbour_similarity * interaction_weight)
    Falls back to trending products when there is nothing to go on.
    """

    def __init__(
        self,
        interactions: InteractionStore,
        ratings: RatingStore,
        similarities: SimilarityStore,
        catalog: Catalog,
        cache: RecommendationCache,
        params: Optional[CFParams] = None,
    ):
        self.interactions = interactions
        self.ratings = ratings
        self.similarities = similarities
        self.catalog = catalog
        self.cache = cache
        self.params = params or CFParams()

    def recommend(self, user_id: int, limit: int = 10) -> Recommendations:
        cached = self.cache.get_ids(user_id, Strategy.USER_BASED, limit)
        if cached is not None:
            logger.info("Returning %d cached user-based recommendations for user %s", len(cached), user_id)
            return Recommendations(cached, Source.CACHE)

        neighbors = [
            n
            for n in self.similarities.most_similar(user_id, self.params.top_k)
            if n.score >= self.params.min_similarity
        ]
        if not neighbors:
            logger.info("No similar users for user %s, falling back to trending", user_id)
            return self._trending(limit)

        seen = self.interactions.seen_product_ids(user_id)
        history = self.interactions.find_by_users([n.id for n in neighbors])

        scores: Dict[int, float] = {}
        for neighbor in neighbors:
            for x in history.get(neighbor.id, []):
                if x.product_id in seen:
                    continue
                scores[x.product_id] = scores.get(x.product_id, 0.0) + neighbor.score * x.score

        ranked = top_n(scores, limit)
        if not ranked:
            logger.info("Neighbours of user %s had nothing new, falling back to trending", user_id)
            return self._trending(limit)

        product_ids = [pid for pid, _ in ranked]
        self.cache.put(user_id, Strategy.USER_BASED, product_ids, normalize_scores(scores))

        logger.info(
            "Generated %d user-based recommendations for user %s from %d neighbours",
            len(product_ids), user_id, len(neighbors),
        )
        return Recommendations(product_ids, Source.COMPUTED, dict(ranked))

    def _trending(self, limit: int) -> Recommendations:
        return Recommendations(self.catalog.trending_ids(limit), Source.TRENDING)

    def explain(self, user_id: int, product_id: int) -> str:
        neighbors = self.similarities.most_similar(user_id, 5)
        liked = self.interactions.users_with_product([n.id for n in neighbors], product_id)
        if liked:
            return f"{len(liked)} similar users liked this product"
        return "Recommended based on your preferences"

    def compute_similarities(self, deadline: Optional[Deadline] = None) -> RecomputeReport:
        """
        Pearson correlation over explicit ratings for every pair of users.
        Pairs with |r| > min_similarity are upserted block by block, so a
        cancelled run keeps whatever it already wrote.
        """
        # lazy import so the serving path can run without loading torch
        from backend.recommender import matrix

        deadline = deadline or Deadline()
        report = RecomputeReport(job="user_similarities")

        vectors = matrix.to_vectors(self.ratings.all_ratings())
        packed = matrix.pack(vectors)
        report.total = len(packed)
        logger.info("Computing user similarities for %d users", len(packed))

        threshold = self.params.min_similarity
        for start, block in matrix.pearson_blocks(packed, self.params.recompute_block_size):
            deadline.check(report)
            rows = matrix.upper_pairs(packed.row_ids, start, block, lambda b: b.abs() > threshold)
            report.rows_written += self.similarities.upsert_many(rows, Metric.PEARSON)
            report.processed += block.shape[0]
            logger.info("Processed %d/%d users (%d pairs stored)", report.processed, report.total, report.rows_written)

        report.finish()
        logger.info(
            "User similarity computation completed: %d pairs in %.0f ms",
            report.rows_written, report.duration_ms,
        )
        return report
