from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple
import logging

from backend.recommender.batch import Deadline, RecomputeReport
from backend.recommender.cache import RecommendationCache, Strategy
from backend.recommender.interactions import weighted_score
from backend.recommender.models import CFParams, Recommendations, Source
from backend.recommender.similarity import normalize_scores, top_n
from backend.recommender.similarity_store import Metric, SimilarityStore, canonical_pair
from backend.recommender.stores import Catalog, InteractionStore

logger = logging.getLogger(__name__)

# co-occurrence count at which two products are treated as fully similar
COOCCURRENCE_SATURATION = 10.0
COOCCURRENCE_CANDIDATES = 50


class ItemBasedCF:
    """
    Item-based collaborative filtering:
      - preference = the user's strongest weighted interaction per product
      - for each preferred product, its K most similar products (precomputed cosine)
      - score(candidate) = sum(preference(source) * similarity(source, candidate))
    """

    def __init__(
        self,
        interactions: InteractionStore,
        similarities: SimilarityStore,
        catalog: Catalog,
        cache: RecommendationCache,
        params: Optional[CFParams] = None,
    ):
        self.interactions = interactions
        self.similarities = similarities
        self.catalog = catalog
        self.cache = cache
        self.params = params or CFParams()

    def preference_map(self, user_id: int) -> Dict[int, float]:
        # most recently touched products first
        prefs: Dict[int, float] = {}
        for x in self.interactions.find_by_user(user_id):
            prefs[x.product_id] = max(prefs.get(x.product_id, 0.0), x.score)
        return prefs

    def recommend(self, user_id: int, limit: int = 10) -> Recommendations:
        cached = self.cache.get_ids(user_id, Strategy.ITEM_BASED, limit)
        if cached is not None:
            logger.info("Returning %d cached item-based recommendations for user %s", len(cached), user_id)
            return Recommendations(cached, Source.CACHE)

        prefs = self.preference_map(user_id)
        if not prefs:
            logger.info("No interaction history for user %s, falling back to trending", user_id)
            return self._trending(limit)

        neighbors = self.similarities.most_similar_many(
            list(prefs), self.params.top_k, min_score=self.params.min_similarity
        )

        scores: Dict[int, float] = {}
        for source_id, preference in prefs.items():
            for n in neighbors.get(source_id, []):
                if n.id in prefs:
                    continue
                scores[n.id] = scores.get(n.id, 0.0) + preference * n.score

        ranked = top_n(scores, limit)
        if not ranked:
            logger.info("No similar items for user %s's history, falling back to trending", user_id)
            return self._trending(limit)

        product_ids = [pid for pid, _ in ranked]
        self.cache.put(user_id, Strategy.ITEM_BASED, product_ids, normalize_scores(scores))

        logger.info(
            "Generated %d item-based recommendations for user %s from %d source products",
            len(product_ids), user_id, len(prefs),
        )
        return Recommendations(product_ids, Source.COMPUTED, dict(ranked))

    def similar_to(self, product_id: int, limit: int = 6) -> List[int]:
        """Products most similar to `product_id`; straight from the similarity store, uncached."""
        neighbors = self.similarities.most_similar(product_id, limit, min_score=self.params.min_similarity)
        return [n.id for n in neighbors]

    def _trending(self, limit: int) -> Recommendations:
        return Recommendations(self.catalog.trending_ids(limit), Source.TRENDING)

    def explain(self, user_id: int, product_id: int) -> str:
        best_score = 0.0
        best_source: Optional[int] = None
        for source_id in self.preference_map(user_id):
            if source_id == product_id:
                continue
            pair = self.similarities.find_pair(source_id, product_id)
            if pair is not None and pair.score > best_score:
                best_score = pair.score
                best_source = source_id

        if best_source is not None:
            product = self.catalog.find_by_id(best_source)
            if product is not None:
                return f"Similar to {product.name} you viewed before"
        return "Customers who bought similar items also bought this"

    def compute_similarities(self, deadline: Optional[Deadline] = None) -> RecomputeReport:
        """
        Full pairwise cosine over product vectors (product -> {user: weighted score}).
        Pairs scoring above min_similarity are upserted block by block.
        """
        # lazy import so the serving path can run without loading torch
        from backend.recommender import matrix

        deadline = deadline or Deadline()
        report = RecomputeReport(job="product_similarities")

        vectors: Dict[int, Dict[int, float]] = {}
        for user_id, product_id, itype, value in self.interactions.interaction_matrix():
            x = vectors.setdefault(product_id, {})
            x[user_id] = max(x.get(user_id, 0.0), weighted_score(itype, value))

        packed = matrix.pack(vectors)
        report.total = len(packed)
        logger.info("Computing product similarities for %d products", len(packed))

        threshold = self.params.min_similarity
        for start, block in matrix.cosine_blocks(packed, self.params.recompute_block_size):
            deadline.check(report)
            rows = matrix.upper_pairs(packed.row_ids, start, block, lambda b: b > threshold)
            report.rows_written += self.similarities.upsert_many(rows, Metric.COSINE)
            report.processed += block.shape[0]
            logger.info("Processed %d/%d products (%d pairs stored)", report.processed, report.total, report.rows_written)

        report.finish()
        logger.info(
            "Product similarity computation completed: %d pairs in %.0f ms",
            report.rows_written, report.duration_ms,
        )
        return report

    def compute_similarities_by_cooccurrence(self, deadline: Optional[Deadline] = None) -> RecomputeReport:
        """
        Cheaper approximation: products put in a basket (purchase/add_to_cart)
        by the same users, score = min(1, count / 10).
        """
        deadline = deadline or Deadline()
        report = RecomputeReport(job="product_similarities_cooccurrence")

        product_ids = self.catalog.active_product_ids()
        report.total = len(product_ids)
        logger.info("Computing co-occurrence similarities for %d products", len(product_ids))

        written: Set[Tuple[int, int]] = set()
        for product_id in product_ids:
            deadline.check(report)
            rows = []
            for other_id, count in self.interactions.co_occurrences(product_id, COOCCURRENCE_CANDIDATES):
                score = min(1.0, count / COOCCURRENCE_SATURATION)
                pair = canonical_pair(product_id, other_id)
                if score <= self.params.min_similarity or pair in written:
                    continue
                written.add(pair)
                rows.append((product_id, other_id, score))
            report.rows_written += self.similarities.upsert_many(rows, Metric.JACCARD)
            report.processed += 1

        report.finish()
        logger.info(
            "Co-occurrence computation completed: %d pairs in %.0f ms",
            report.rows_written, report.duration_ms,
        )
        return report
