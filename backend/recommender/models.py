from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List


@dataclass(frozen=True)
class CFParams:
    top_k: int = 20  # neighbours per user / similar items per product
    min_similarity: float = 0.1
    cache_ttl_seconds: int = 24 * 3600
    recompute_block_size: int = 256


class Source(str, Enum):
    CACHE = "cache"
    COMPUTED = "computed"
    TRENDING = "trending"


@dataclass
class Recommendations:
    product_ids: List[int]
    source: Source
    scores: Dict[int, float] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.product_ids)
