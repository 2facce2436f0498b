"""
Vectorised all-pairs similarity for the offline recompute jobs.

Sparse vectors are packed into a sparse COO float64 matrix. Only one row block
is ever made dense (block_size x columns), multiplied against the sparse
matrix, and handed back, so memory grows with the number of stored values and
a job can stop (and persist what it has) between blocks. The results match
`similarity.cosine_similarity` / `pearson_correlation` up to float rounding.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import torch

# variances below this are treated as zero (constant vectors)
_VAR_EPS = 1e-9


@dataclass
class PackedRows:
    """Row-sorted COO entries; the entries of row i sit at [row_ptr[i], row_ptr[i + 1])."""

    row_ids: List[int]
    n_cols: int
    row_ptr: List[int]
    rows: torch.Tensor
    cols: torch.Tensor
    vals: torch.Tensor

    def __len__(self) -> int:
        return len(self.row_ids)

    def sparse(self, vals: Optional[torch.Tensor] = None) -> torch.Tensor:
        """(R, C) sparse matrix over the packed positions, with `vals` in place of the values."""
        v = self.vals if vals is None else vals
        indices = torch.stack([self.rows, self.cols])
        return torch.sparse_coo_tensor(indices, v, (len(self.row_ids), self.n_cols)).coalesce()

    def dense_block(self, start: int, stop: int, vals: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Rows [start, stop) as a dense (stop - start, C) tensor."""
        v = self.vals if vals is None else vals
        lo, hi = self.row_ptr[start], self.row_ptr[stop]
        out = torch.zeros((stop - start, self.n_cols), dtype=torch.float64)
        out[self.rows[lo:hi] - start, self.cols[lo:hi]] = v[lo:hi]
        return out


def pack(vectors: Mapping[int, Mapping[int, float]]) -> PackedRows:
    """vectors: row_id -> {col_id: value}; rows come out sorted by id."""
    row_ids = sorted(vectors)
    col_ids = sorted({c for v in vectors.values() for c in v})
    col_index = {c: j for j, c in enumerate(col_ids)}

    rows: List[int] = []
    cols: List[int] = []
    vals: List[float] = []
    row_ptr = [0]
    for i, rid in enumerate(row_ids):
        for c, v in vectors[rid].items():
            rows.append(i)
            cols.append(col_index[c])
            vals.append(float(v))
        row_ptr.append(len(vals))

    return PackedRows(
        row_ids=row_ids,
        n_cols=len(col_ids),
        row_ptr=row_ptr,
        rows=torch.tensor(rows, dtype=torch.long),
        cols=torch.tensor(cols, dtype=torch.long),
        vals=torch.tensor(vals, dtype=torch.float64),
    )


def _against_all(matrix: torch.Tensor, block: torch.Tensor) -> torch.Tensor:
    # (B, C) x (R, C)^T -> (B, R) with the sparse side on the left
    return torch.sparse.mm(matrix, block.T.contiguous()).T


def cosine_blocks(packed: PackedRows, block_size: int) -> Iterator[Tuple[int, torch.Tensor]]:
    """Yield (start_row, block) where block[i, j] = cosine(row start+i, row j)."""
    n = len(packed)
    norms = torch.zeros(n, dtype=torch.float64).index_add_(0, packed.rows, packed.vals * packed.vals).sqrt()
    safe = torch.where(norms > 0, norms, torch.ones_like(norms))
    unit_vals = packed.vals / safe[packed.rows]  # zero rows stay zero -> similarity 0
    unit = packed.sparse(unit_vals)
    for start in range(0, n, block_size):
        stop = min(start + block_size, n)
        yield start, _against_all(unit, packed.dense_block(start, stop, unit_vals))


def pearson_blocks(packed: PackedRows, block_size: int) -> Iterator[Tuple[int, torch.Tensor]]:
    """
    Yield (start_row, block) where block[i, j] is the Pearson correlation of rows
    start+i and j over their co-rated columns only (0 with < 2 common columns or
    zero variance on either side).
    """
    ones = torch.ones_like(packed.vals)
    sq_vals = packed.vals * packed.vals
    values = packed.sparse()
    mask = packed.sparse(ones)
    sq = packed.sparse(sq_vals)

    n_rows = len(packed)
    for start in range(0, n_rows, block_size):
        stop = min(start + block_size, n_rows)
        ra = packed.dense_block(start, stop)
        ma = packed.dense_block(start, stop, ones)
        sqa = packed.dense_block(start, stop, sq_vals)

        n = _against_all(mask, ma)          # common column count
        sum_a = _against_all(mask, ra)      # sum of a over common columns
        sum_b = _against_all(values, ma)    # sum of b over common columns
        sum_ab = _against_all(values, ra)
        sum_a2 = _against_all(mask, sqa)
        sum_b2 = _against_all(sq, ma)

        safe_n = torch.clamp(n, min=1.0)
        cov = sum_ab - sum_a * sum_b / safe_n
        var_a = sum_a2 - sum_a * sum_a / safe_n
        var_b = sum_b2 - sum_b * sum_b / safe_n

        valid = (n >= 2) & (var_a > _VAR_EPS) & (var_b > _VAR_EPS)
        denom = torch.sqrt(torch.clamp(var_a * var_b, min=_VAR_EPS * _VAR_EPS))
        r = torch.where(valid, cov / denom, torch.zeros_like(cov))
        yield start, r.clamp(-1.0, 1.0)


def upper_pairs(
    ids: List[int],
    start: int,
    block: torch.Tensor,
    keep: Callable[[torch.Tensor], torch.Tensor],
) -> List[Tuple[int, int, float]]:
    """
    (id_i, id_j, score) for block cells with j > i (each unordered pair once)
    where keep(block) is true.
    """
    b, n = block.shape
    row_pos = torch.arange(start, start + b).unsqueeze(1)
    col_pos = torch.arange(n).unsqueeze(0)
    selected = (col_pos > row_pos) & keep(block)
    idx = selected.nonzero(as_tuple=False).tolist()
    return [(ids[start + i], ids[j], float(block[i, j])) for i, j in idx]


def to_vectors(triples) -> Dict[int, Dict[int, float]]:
    out: Dict[int, Dict[int, float]] = {}
    for row_id, col_id, value in triples:
        out.setdefault(row_id, {})[col_id] = value
    return out
