#
# Copyright 2025 Christoph Huber
#
# ### MIT License
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
#
"""
Row surgery: merge equation rows into other rows and clear them.

A ``RowSurgery`` plan lists ``(src, dst)`` row pairs whose source equation is
added (optionally weighted) into the destination, and the rows to clear
afterwards. Adds always read the source values as they were before the first
add of the plan, so that chained pairs do not compound. Plans are applied
strictly after region assembly and before boundary assembly.

Matrix rows are handled in COO value form: the positions of every source
entry and of its destination counterpart are resolved once per pattern
(``CooRowOps``). A destination position that the pattern does not contain is
an invariant violation: boundary conditions must reserve it beforehand.
"""
from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple

import numpy as np
import numpy.typing as npt

from ..errors import StencilInvariantViolation

NDArray = npt.NDArray[np.floating]
IntArray = npt.NDArray[np.signedinteger]


def _ints(a=None) -> IntArray:
    if a is None:
        return np.zeros(0, dtype=np.int64)
    return np.asarray(a, dtype=np.int64).ravel()


@dataclass
class RowSurgery:
    """Row merge/clear instructions.

    Attributes
    ----------
    src, dst : IntArray
        Local rows; ``row[dst[i]] += scale[i] * row[src[i]]``.
    clear : IntArray
        Local rows zeroed after all adds.
    scale : NDArray
        Weight of each add (default 1).
    """
    src: IntArray = field(default_factory=_ints)
    dst: IntArray = field(default_factory=_ints)
    clear: IntArray = field(default_factory=_ints)
    scale: Optional[NDArray] = None

    def __post_init__(self):
        self.src = _ints(self.src)
        self.dst = _ints(self.dst)
        self.clear = _ints(self.clear)
        if len(self.src) != len(self.dst):
            raise ValueError("Row surgery needs as many source as destination rows")
        if self.scale is None:
            self.scale = np.ones(len(self.src))
        else:
            self.scale = np.broadcast_to(np.asarray(self.scale, dtype=np.float64), self.src.shape).copy()

    def __len__(self) -> int:
        return len(self.src) + len(self.clear)

    @classmethod
    def concat(cls, plans: Iterable["RowSurgery"]) -> "RowSurgery":
        plans = list(plans)
        if not plans:
            return cls()
        return cls(src=np.concatenate([p.src for p in plans]),
                   dst=np.concatenate([p.dst for p in plans]),
                   clear=np.concatenate([p.clear for p in plans]),
                   scale=np.concatenate([p.scale for p in plans]))

    def apply_to_vector(self, vec: NDArray) -> NDArray:
        """Apply adds, then clears, to a residual vector in place."""
        add_row_to_row(vec, self.src, self.dst, self.scale)
        zero_rows(vec, self.clear)
        return vec


# ---------------------------
# Vectors
# ---------------------------

def add_row_to_row(vec: NDArray, src, dst, scale=None) -> NDArray:
    """``vec[dst] += scale * vec[src]`` with the source values read before any add."""
    src, dst = _ints(src), _ints(dst)
    vals = vec[src].copy()
    if scale is not None:
        vals = vals * scale
    np.add.at(vec, dst, vals)
    return vec


def zero_rows(vec: NDArray, rows, diagonal_value: float = 0.) -> NDArray:
    """Zero vector rows (the diagonal value only matters for matrices)."""
    vec[_ints(rows)] = 0.
    return vec


# ---------------------------
# COO matrices
# ---------------------------

class RowColumnIndex:
    """Entries of each row of a COO pattern (CSR view without values).

    Parameters
    ----------
    rows, cols : IntArray
        COO row and column indices.
    n_rows : int
        Number of rows addressed by ``rows``.
    """

    def __init__(self, rows: IntArray, cols: IntArray, n_rows: int) -> None:
        rows = _ints(rows)
        self.cols = _ints(cols)
        self.order = np.argsort(rows, kind='stable')
        counts = np.bincount(rows, minlength=n_rows)
        self.ptr = np.concatenate([[0], np.cumsum(counts)])

    def entries(self, rows) -> Tuple[IntArray, IntArray]:
        """Entry positions of the given rows.

        Returns
        -------
        owner : IntArray
            Index into ``rows`` for every entry.
        positions : IntArray
            Position of the entry in the original COO arrays.
        """
        rows = _ints(rows)
        start = self.ptr[rows]
        count = self.ptr[rows + 1] - start
        owner = np.repeat(np.arange(len(rows)), count)
        offset = np.arange(count.sum()) - np.repeat(np.cumsum(count) - count, count)
        return owner, self.order[start[owner] + offset]

    def expand(self, src, dst) -> Tuple[IntArray, IntArray]:
        """(row, col) pairs placing every column of each ``src`` row into its ``dst`` row."""
        src, dst = _ints(src), _ints(dst)
        owner, pos = self.entries(src)
        return dst[owner], self.cols[pos]


@dataclass
class CooRowOps:
    """Precomputed COO positions of a row surgery plan.

    Attributes
    ----------
    src_pos, dst_pos : IntArray
        Paired COO positions: ``values[dst_pos] += weight * values[src_pos]``.
    weight : NDArray
        Weight of each entry add.
    clear_pos : IntArray
        COO positions zeroed after the adds.
    diag_pos : IntArray
        Diagonal positions of the cleared rows (-1 if not stored).
    """
    src_pos: IntArray
    dst_pos: IntArray
    weight: NDArray
    clear_pos: IntArray
    diag_pos: IntArray

    @classmethod
    def from_surgery(cls, plan: RowSurgery, matrix_coo, lookup, index: RowColumnIndex) -> "CooRowOps":
        owner, src_pos = index.entries(plan.src)
        dst_rows = plan.dst[owner]
        cols = matrix_coo.local_cols[src_pos]
        dst_pos = lookup.lookup(dst_rows, cols)

        missing = dst_pos < 0
        if np.any(missing):
            raise StencilInvariantViolation(
                f"Row surgery destination (row {dst_rows[missing][0]}, col {cols[missing][0]}) "
                f"has no reserved matrix position ({missing.sum()} missing)")

        _, clear_pos = index.entries(plan.clear)
        diag_pos = lookup.lookup(plan.clear, plan.clear)

        return cls(src_pos=src_pos,
                   dst_pos=dst_pos,
                   weight=plan.scale[owner],
                   clear_pos=clear_pos,
                   diag_pos=diag_pos)

    def apply(self, values: NDArray, factor: float = 1.0, diagonal_value: float = 0.) -> NDArray:
        """Apply adds, then clears, to COO values in place."""
        if len(self.src_pos):
            add = values[self.src_pos] * (self.weight * factor)
            np.add.at(values, self.dst_pos, add)
        values[self.clear_pos] = 0.
        if diagonal_value != 0.:
            values[self.diag_pos[self.diag_pos >= 0]] = diagonal_value
        return values


def add_coo_row_to_row(values: NDArray, matrix_coo, lookup, src, dst, scale=None) -> NDArray:
    """One-off COO form of ``add_row_to_row``."""
    n_rows = int(max(matrix_coo.local_rows.max(initial=-1), np.max(_ints(src), initial=-1))) + 1
    index = RowColumnIndex(matrix_coo.local_rows, matrix_coo.local_cols, n_rows)
    ops = CooRowOps.from_surgery(RowSurgery(src=src, dst=dst, scale=scale), matrix_coo, lookup, index)
    return ops.apply(values)


def zero_coo_rows(values: NDArray, matrix_coo, lookup, rows, diagonal: float = 0.) -> NDArray:
    """One-off COO form of ``zero_rows``; optionally set the stored diagonal."""
    rows = _ints(rows)
    n_rows = int(max(matrix_coo.local_rows.max(initial=-1), np.max(rows, initial=-1))) + 1
    index = RowColumnIndex(matrix_coo.local_rows, matrix_coo.local_cols, n_rows)
    ops = CooRowOps.from_surgery(RowSurgery(clear=rows), matrix_coo, lookup, index)
    return ops.apply(values, diagonal_value=diagonal)
