"""
Unknown layout definition and block-structured containers.

Principles:
- Block order matches the order of the unknown list given at construction.
- Each unknown owns one contiguous slice of the global vector; no hand-rolled offsets
  elsewhere, indices come from BlockLayout helpers.
- BlockVector blocks are views: writing vec[u] mutates the shared storage.
- BlockMatrix storage is reused across assemblies: zero() keeps the sparsity pattern,
  flush() writes into the existing data array whenever the pattern is unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, Iterator, List, Optional, Sequence, Tuple

import logging
import numpy as np
import scipy.sparse as sp

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Unknown:
    """Identifier of one solution field (e.g. velocity, pressure)."""

    name: str
    identifier: Optional[Hashable] = None

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class DofSpace:
    """Minimal discretization target: a named space with a number of dofs."""

    name: str
    ndofs: int

    def __post_init__(self) -> None:
        if int(self.ndofs) < 0:
            raise ValueError(f"DofSpace '{self.name}': ndofs must be >= 0, got {self.ndofs}")


def ndofs_of(space: Any) -> int:
    """Number of dofs of a discretization target (DofSpace, FE space, or int)."""
    if isinstance(space, (int, np.integer)):
        n = int(space)
    else:
        n = getattr(space, "ndofs", None)
        if n is None:
            raise TypeError(f"Discretization target {space!r} does not expose 'ndofs'")
        n = int(n)
    if n < 0:
        raise ValueError(f"ndofs must be >= 0, got {n}")
    return n


@dataclass(slots=True)
class BlockLayout:
    """Ordered map Unknown -> contiguous slice of a global vector."""

    unknowns: Tuple[Unknown, ...]
    spaces: Tuple[Any, ...]
    blocks: Dict[Unknown, slice] = field(init=False)
    size: int = field(init=False)

    def __post_init__(self) -> None:
        self.unknowns = tuple(self.unknowns)
        self.spaces = tuple(self.spaces)
        if len(self.unknowns) != len(self.spaces):
            raise ValueError(
                f"Got {len(self.unknowns)} unknowns but {len(self.spaces)} discretization targets"
            )
        seen: set = set()
        dup = [u for u in self.unknowns if u in seen or seen.add(u)]
        if dup:
            raise ValueError(f"Duplicated unknowns in layout: {[str(u) for u in dup]}")
        self.blocks = {}
        offset = 0
        for u, space in zip(self.unknowns, self.spaces):
            n = ndofs_of(space)
            self.blocks[u] = slice(offset, offset + n)
            offset += n
        self.size = offset

    @classmethod
    def from_sizes(cls, sizes: Sequence[Tuple[Unknown, int]]) -> "BlockLayout":
        return cls(unknowns=tuple(u for u, _ in sizes), spaces=tuple(int(n) for _, n in sizes))

    def has_block(self, u: Unknown) -> bool:
        return u in self.blocks

    def block_slice(self, u: Unknown) -> slice:
        if u not in self.blocks:
            raise KeyError(f"Unknown '{u}' not present in layout. Available: {[str(k) for k in self.unknowns]}")
        return self.blocks[u]

    def block_size(self, u: Unknown) -> int:
        sl = self.block_slice(u)
        return int(sl.stop - sl.start)

    def offset(self, u: Unknown) -> int:
        return int(self.block_slice(u).start)

    def index(self, u: Unknown) -> Optional[int]:
        """Position of u in the unknown list, or None."""
        try:
            return self.unknowns.index(u)
        except ValueError:
            return None

    def space(self, u: Unknown) -> Any:
        i = self.index(u)
        if i is None:
            raise KeyError(f"Unknown '{u}' not present in layout.")
        return self.spaces[i]

    def iter_blocks(self) -> Iterator[Tuple[Unknown, slice]]:
        """Iterate blocks in layout order."""
        for u in self.unknowns:
            yield u, self.blocks[u]


class BlockVector:
    """Block vector tagged by Unknown; vec[u] is a mutable view into entries."""

    __slots__ = ("layout", "entries")

    def __init__(self, layout: BlockLayout, entries: Optional[np.ndarray] = None) -> None:
        self.layout = layout
        if entries is None:
            entries = np.zeros(layout.size, dtype=np.float64)
        else:
            entries = np.asarray(entries, dtype=np.float64)
            if entries.shape != (layout.size,):
                raise ValueError(f"entries shape {entries.shape} does not match layout size {layout.size}")
        self.entries = entries

    @classmethod
    def zeros(cls, unknowns: Sequence[Unknown], spaces: Sequence[Any]) -> "BlockVector":
        return cls(BlockLayout(unknowns=tuple(unknowns), spaces=tuple(spaces)))

    @property
    def tags(self) -> Tuple[Unknown, ...]:
        return self.layout.unknowns

    def __getitem__(self, u: Unknown) -> np.ndarray:
        return self.entries[self.layout.block_slice(u)]

    def __setitem__(self, u: Unknown, values: Any) -> None:
        self.entries[self.layout.block_slice(u)] = values

    def __contains__(self, u: Unknown) -> bool:
        return self.layout.has_block(u)

    def __len__(self) -> int:
        return int(self.layout.size)

    def __repr__(self) -> str:
        blocks = ", ".join(f"{u}:{self.layout.block_size(u)}" for u in self.layout.unknowns)
        return f"BlockVector({blocks})"

    def contains(self, unknowns: Iterable[Unknown]) -> bool:
        return all(self.layout.has_block(u) for u in unknowns)

    def missing(self, unknowns: Iterable[Unknown]) -> List[Unknown]:
        return [u for u in unknowns if not self.layout.has_block(u)]

    def fill(self, value: float = 0.0) -> None:
        self.entries.fill(value)

    def copy(self) -> "BlockVector":
        """Value copy sharing the (immutable) layout."""
        return BlockVector(self.layout, self.entries.copy())

    def copy_from(self, other: "BlockVector") -> None:
        """Copy values of all blocks present in both vectors, in place."""
        for u in self.layout.unknowns:
            if other.layout.has_block(u):
                self[u] = other[u]

    def norm(self) -> float:
        return float(np.linalg.norm(self.entries))


def _csr_rows(A: sp.csr_matrix) -> np.ndarray:
    return np.repeat(np.arange(A.shape[0], dtype=np.int64), np.diff(A.indptr))


class BlockMatrix:
    """CSR-backed block operator with additive, pattern-reusing assembly."""

    def __init__(self, layout: BlockLayout) -> None:
        self.layout = layout
        n = layout.size
        self._csr = sp.csr_matrix((n, n), dtype=np.float64)
        self._rows: List[np.ndarray] = []
        self._cols: List[np.ndarray] = []
        self._vals: List[np.ndarray] = []
        self.pattern_changes = 0

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.layout.size, self.layout.size)

    @property
    def entries(self) -> sp.csr_matrix:
        """Flushed CSR storage (pending contributions are merged first)."""
        self.flush()
        return self._csr

    def zero(self) -> None:
        """Zero stored values in place; the sparsity pattern is kept."""
        self._csr.data[:] = 0.0
        self._rows.clear()
        self._cols.clear()
        self._vals.clear()

    def add(self, u: Unknown, v: Unknown, rows: Any, cols: Any, values: Any) -> None:
        """Queue values at block-local (rows, cols) of block (u, v)."""
        rows = np.atleast_1d(np.asarray(rows, dtype=np.int64))
        cols = np.atleast_1d(np.asarray(cols, dtype=np.int64))
        values = np.broadcast_to(np.asarray(values, dtype=np.float64), rows.shape)
        if rows.shape != cols.shape:
            raise ValueError(f"rows shape {rows.shape} does not match cols shape {cols.shape}")
        nr, nc = self.layout.block_size(u), self.layout.block_size(v)
        if rows.size and (rows.min() < 0 or rows.max() >= nr or cols.min() < 0 or cols.max() >= nc):
            raise IndexError(f"Block ({u},{v}) index out of range for shape {(nr, nc)}")
        self._rows.append(rows + self.layout.offset(u))
        self._cols.append(cols + self.layout.offset(v))
        self._vals.append(np.array(values, dtype=np.float64))

    def add_block(self, u: Unknown, v: Unknown, local: Any, factor: float = 1.0) -> None:
        """Queue a whole local block (dense array or sparse matrix) for (u, v)."""
        shape = (self.layout.block_size(u), self.layout.block_size(v))
        if sp.issparse(local):
            coo = sp.coo_matrix(local)
            if coo.shape != shape:
                raise ValueError(f"Block ({u},{v}) expects shape {shape}, got {coo.shape}")
            self.add(u, v, coo.row, coo.col, factor * coo.data)
            return
        dense = np.asarray(local, dtype=np.float64)
        if dense.shape != shape:
            raise ValueError(f"Block ({u},{v}) expects shape {shape}, got {dense.shape}")
        r, c = np.nonzero(dense)
        self.add(u, v, r, c, factor * dense[r, c])

    def add_diagonal(self, u: Unknown, values: Any, dofs: Any = None) -> None:
        n = self.layout.block_size(u)
        idx = np.arange(n) if dofs is None else np.asarray(dofs, dtype=np.int64)
        self.add(u, u, idx, idx, values)

    def flush(self) -> None:
        """Merge queued contributions into the CSR storage."""
        if not self._vals:
            return
        old = self._csr
        rows = np.concatenate([_csr_rows(old)] + self._rows)
        cols = np.concatenate([old.indices.astype(np.int64)] + self._cols)
        vals = np.concatenate([old.data] + self._vals)
        self._rows.clear()
        self._cols.clear()
        self._vals.clear()
        merged = sp.coo_matrix((vals, (rows, cols)), shape=self.shape).tocsr()
        merged.sum_duplicates()
        merged.sort_indices()
        if (
            merged.nnz == old.nnz
            and np.array_equal(merged.indptr, old.indptr)
            and np.array_equal(merged.indices, old.indices)
        ):
            old.data[:] = merged.data
        else:
            self._csr = merged
            self.pattern_changes += 1
            logger.debug("BlockMatrix pattern changed: nnz=%d (change #%d)", merged.nnz, self.pattern_changes)

    def block(self, u: Unknown, v: Unknown) -> sp.csr_matrix:
        """Extract block (u, v) as a CSR matrix."""
        A = self.entries
        return A[self.layout.block_slice(u), :][:, self.layout.block_slice(v)]

    def __repr__(self) -> str:
        return f"BlockMatrix(shape={self.shape}, nnz={self._csr.nnz}, blocks={len(self.layout.unknowns)}^2)"
