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
# flake8: noqa: W503

"""
FVM Assembly Layout - Precomputed index structures for O(nnz) assembly.

Architecture:
    FVMAssemblyLayout (top-level container)
    ├── MatrixCOOPattern  - Sparse matrix structure (fixed after setup)
    ├── COOLookup         - (row, col) -> COO position
    └── term_maps         - Dict[str, IntArray], COO positions of each assembler's entries

    LinearSystemInfo      - Extracted info for PETSc/SciPy (references, not copies)

Every assembler (region or boundary condition) declares the local (row, col)
pairs it writes, in the order in which it later produces values. The union of
all declarations, plus the explicit zeros reserved for row surgery, is the
matrix pattern. Declared pairs are resolved once to COO positions, so that
assembling an iteration is a sequence of ``np.add.at`` calls.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import numpy as np
import numpy.typing as npt

NDArray = npt.NDArray[np.floating]
IntArray = npt.NDArray[np.signedinteger]
Int8Array = npt.NDArray[np.int8]


@dataclass
class MatrixCOOPattern:
    """Sparse matrix COO structure with row metadata for scaling.

    Attributes
    ----------
    nnz : int
        Number of stored entries.
    local_rows, local_cols : IntArray
        Local indices for each COO entry. Used for dense reconstruction.
    global_rows, global_cols : IntArray
        Global indices for PETSc preallocation.
    row_kind : Int8Array
        Equation kind of the row of each entry (0=psi, 1=n, 2=p, 3=T, 4=electrode).
    """
    nnz: int
    local_rows: IntArray
    local_cols: IntArray
    global_rows: IntArray
    global_cols: IntArray
    row_kind: Int8Array

    @classmethod
    def from_entries(cls, rows: IntArray, cols: IntArray, local_to_global: IntArray,
                     row_kind: Int8Array) -> "MatrixCOOPattern":
        """Unique, row-major sorted pattern from (possibly repeated) local entries."""
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        n_local = len(local_to_global)
        keys = np.unique(rows * n_local + cols)
        local_rows = keys // n_local
        local_cols = keys % n_local
        return cls(
            nnz=len(keys),
            local_rows=local_rows,
            local_cols=local_cols,
            global_rows=local_to_global[local_rows],
            global_cols=local_to_global[local_cols],
            row_kind=row_kind[local_rows],
        )


@dataclass
class COOLookup:
    """Memory-efficient COO index lookup using sorted arrays.

    Attributes
    ----------
    sorted_keys : IntArray
        Composite keys (row * max_col + col), sorted for binary search.
    sorted_indices : IntArray
        COO indices corresponding to sorted_keys.
    max_col : int
        Maximum column index + 1, for computing composite keys.
    """
    sorted_keys: IntArray
    sorted_indices: IntArray
    max_col: int

    @classmethod
    def from_coo_pattern(cls, local_rows: IntArray, local_cols: IntArray) -> "COOLookup":
        """Build lookup structure from COO row/col arrays.

        Parameters
        ----------
        local_rows : IntArray
            Local row indices for COO entries.
        local_cols : IntArray
            Local column indices for COO entries.

        Returns
        -------
        COOLookup
            Lookup structure for efficient index queries.
        """
        max_col = int(local_cols.max()) + 1 if len(local_cols) else 1
        coo_keys = local_rows.astype(np.int64) * max_col + local_cols
        sort_order = np.argsort(coo_keys)
        return cls(
            sorted_keys=coo_keys[sort_order],
            sorted_indices=sort_order.astype(np.int64),
            max_col=max_col,
        )

    def lookup(self, row_block: IntArray, col_block: IntArray) -> IntArray:
        """Vectorized COO index lookup.

        Parameters
        ----------
        row_block : IntArray
            Row indices to look up.
        col_block : IntArray
            Column indices to look up.

        Returns
        -------
        IntArray
            COO indices for each (row, col) pair, or -1 if not found.
        """
        row_block = np.asarray(row_block, dtype=np.int64)
        col_block = np.asarray(col_block, dtype=np.int64)
        if len(self.sorted_keys) == 0:
            return np.full(row_block.shape, -1, dtype=np.int64)

        query_keys = row_block * self.max_col + col_block
        positions = np.searchsorted(self.sorted_keys, query_keys)
        positions = np.minimum(positions, len(self.sorted_keys) - 1)
        valid = (self.sorted_keys[positions] == query_keys) & (col_block < self.max_col)
        return np.where(valid, self.sorted_indices[positions], -1).astype(np.int64)


@dataclass
class LinearSystemInfo:
    """Minimal info for linear system creation and assembly.

    Attributes
    ----------
    local_size : int
        Number of rows owned by this rank.
    global_size : int
        Global matrix/vector size.
    mat_global_rows, mat_global_cols : IntArray
        Global COO indices for matrix preallocation.
    rhs_global_rows : IntArray
        Global row indices of the owned RHS entries.
    """
    local_size: int
    global_size: int
    mat_global_rows: IntArray
    mat_global_cols: IntArray
    rhs_global_rows: IntArray


@dataclass
class FVMAssemblyLayout:
    """Complete precomputed layout for FVM assembly.

    Single source of truth for all COO index mappings of one EquationLayout.

    Attributes
    ----------
    matrix_coo : MatrixCOOPattern
        Sparse matrix structure.
    lookup : COOLookup
        Position lookup on ``matrix_coo``.
    n_owned : int
        Rows owned by this rank (leading block of the local buffer).
    owned_start : int
        First owned global row.
    global_size : int
        Global number of unknowns.
    term_maps : dict
        Maps assembler name -> COO positions of its declared entries.
    """
    matrix_coo: MatrixCOOPattern
    lookup: COOLookup
    n_owned: int
    owned_start: int
    global_size: int
    term_maps: Dict[str, IntArray] = field(default_factory=dict)

    @classmethod
    def build(cls, declarations: List[Tuple[str, IntArray, IntArray]],
              reserved: List[Tuple[IntArray, IntArray]], layout) -> "FVMAssemblyLayout":
        """Pattern from named assembler declarations and reserved zeros.

        Parameters
        ----------
        declarations : list of (name, rows, cols)
            Entries each assembler writes, in value order.
        reserved : list of (rows, cols)
            Explicit zeros needed by row surgery.
        layout : EquationLayout
            Current unknown layout.
        """
        all_rows = [d[1] for d in declarations] + [r[0] for r in reserved]
        all_cols = [d[2] for d in declarations] + [r[1] for r in reserved]
        rows = np.concatenate(all_rows) if all_rows else np.zeros(0, np.int64)
        cols = np.concatenate(all_cols) if all_cols else np.zeros(0, np.int64)

        pattern = MatrixCOOPattern.from_entries(rows, cols, layout.local_to_global, layout.row_kind)
        lookup = COOLookup.from_coo_pattern(pattern.local_rows, pattern.local_cols)

        term_maps = {}
        for name, r, c in declarations:
            term_maps[name] = lookup.lookup(r, c)

        return cls(matrix_coo=pattern,
                   lookup=lookup,
                   n_owned=layout.n_owned,
                   owned_start=layout.owned_start,
                   global_size=layout.global_size,
                   term_maps=term_maps)

    def get_system_info(self) -> LinearSystemInfo:
        """Extract linear-system specific assembly info."""
        return LinearSystemInfo(
            local_size=self.n_owned,
            global_size=self.global_size,
            mat_global_rows=self.matrix_coo.global_rows,
            mat_global_cols=self.matrix_coo.global_cols,
            rhs_global_rows=self.owned_start + np.arange(self.n_owned, dtype=np.int64),
        )

    def to_dense(self, values: NDArray, size: int) -> NDArray:
        """Dense (local rows x local cols) matrix from COO values."""
        M = np.zeros((size, size))
        np.add.at(M, (self.matrix_coo.local_rows, self.matrix_coo.local_cols), values)
        return M
