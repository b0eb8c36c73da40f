#
# Copyright 2025 Hannes Holey
#           2025 Christoph Huber
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
Boundary condition base class.

A boundary condition owns a set of mesh nodes. At every node it sees the
(region, FVM node) pairs of all regions touching that node, ordered by region
type priority and then region index; pair 0 is the reference of the coupling
equations. Per layout, a boundary condition provides

* ``surgery``: rows to merge into the reference rows and rows to clear,
* ``current_plan``: weighted rows added into its electrode row (electrodes),
* ``residual`` / ``jacobian``: the replacement equations, written after the
  surgery into the cleared rows,
* ``reserve_pattern``: explicit zeros for every position the surgery writes.

Only nodes owned by this rank are processed.
"""
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
import numpy.typing as npt

from ..ad import StencilKernel
from ..fvm.row_surgery import RowSurgery
from ..layout import RegionType

NDArray = npt.NDArray[np.floating]
IntArray = npt.NDArray[np.signedinteger]

Pair = Tuple[int, int]


class BoundaryKind(Enum):
    BOUNDARY = 'boundary'
    INTERFACE = 'interface'
    MIXED_BOUNDARY_INTERFACE = 'mixed_boundary_interface'
    INTER_CONNECT = 'inter_connect'


def _equality(x, prm, consts):
    return x[0] - x[1] - prm['shift']


# u_ref - u_other - shift, seeded over both unknowns
EQUALITY = StencilKernel(_equality, 2, 1, name='equality')


def _empty():
    return np.zeros(0, dtype=np.int64)


class BoundaryCondition:
    """Base class of all boundary conditions.

    Parameters
    ----------
    name : str
        Label of the boundary.
    nodes : array_like
        Mesh nodes of the boundary.
    """
    kind = BoundaryKind.BOUNDARY
    n_slots = 0

    def __init__(self, name: str, nodes) -> None:
        self.name = name
        self.nodes = np.unique(np.asarray(nodes, dtype=np.int64))
        self.slots = _empty()
        self._table = None
        self._table_layout = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}('{self.name}', {len(self.nodes)} nodes)"

    # ---------------------------
    # Setup
    # ---------------------------

    def attach(self, mesh, regions) -> None:
        """Resolve the (region, FVM node) pairs of every node and validate them."""
        self.mesh = mesh
        self.regions = list(regions)
        self.pairs: List[List[Pair]] = [self.node_pairs(node) for node in self.nodes]
        self.validate()

    def node_pairs(self, node: int) -> List[Pair]:
        """Pairs at ``node`` in priority order (region type, then region index)."""
        pairs = []
        for r in self.regions:
            fvm = r.geometry.node_to_fvm[node]
            if fvm >= 0:
                pairs.append((r.index, int(fvm)))
        return sorted(pairs, key=lambda p: (int(self.regions[p[0]].rtype), p[0]))

    def region_type(self, region: int) -> RegionType:
        return self.regions[region].rtype

    def validate(self) -> None:
        """Raise ``BoundaryConfigurationError`` for unsupported region combinations."""

    def set_slots(self, slots) -> None:
        self.slots = np.asarray(slots, dtype=np.int64)

    def owned_node_indices(self, layout) -> IntArray:
        """Positions in ``self.nodes`` of the nodes owned by this rank."""
        return np.flatnonzero(self.mesh.node_owner[self.nodes] == layout.rank)

    def table(self, layout):
        """Per-layout index table (built by ``build_table``, cached)."""
        if self._table_layout is not layout:
            self._table = self.build_table(layout)
            self._table_layout = layout
        return self._table

    def build_table(self, layout):
        return None

    # ---------------------------
    # Assembly contract
    # ---------------------------

    def surgery(self, layout) -> RowSurgery:
        return RowSurgery()

    def current_plan(self, layout) -> RowSurgery:
        return RowSurgery()

    def current_factor(self, ctx) -> float:
        return 0.

    def preprocess(self, x: NDArray, r: NDArray, layout, ctx, comm) -> None:
        """Read region rows of ``r`` before the surgery (collective)."""

    def residual(self, x: NDArray, r: NDArray, layout, ctx) -> None:
        """Add the boundary equations to ``r``."""

    def jacobian_pattern(self, layout) -> Tuple[IntArray, IntArray]:
        return _empty(), _empty()

    def jacobian(self, x: NDArray, layout, ctx) -> NDArray:
        return np.zeros(0)

    def reserve_pattern(self, layout, index) -> Tuple[IntArray, IntArray]:
        """Positions written by the surgery and the current adds of this boundary."""
        rows, cols = [], []
        for plan in (self.surgery(layout), self.current_plan(layout)):
            if len(plan.src):
                r, c = index.expand(plan.src, plan.dst)
                rows.append(r)
                cols.append(c)
            if len(plan.clear):
                rows.append(plan.clear)
                cols.append(plan.clear)
        if not rows:
            return _empty(), _empty()
        return np.concatenate(rows), np.concatenate(cols)

    def fill_value(self, x: NDArray, L: NDArray, layout) -> None:
        """Write slot values and their row scaling."""

    def update(self, ctx) -> None:
        """Commit boundary state after an accepted step."""

    def rollback(self) -> None:
        """Discard boundary state of a rejected step."""

    # ---------------------------
    # Helpers
    # ---------------------------

    @staticmethod
    def equality_pattern(ref_rows: IntArray, other_rows: IntArray) -> Tuple[IntArray, IntArray]:
        rows = np.repeat(other_rows, 2)
        cols = np.stack([ref_rows, other_rows], axis=1).ravel()
        return rows, cols

    def potential_shift(self, ref_region: int, region: int, var: str) -> float:
        """Offset between the stored unknowns of two regions at equal physical value."""
        if var != 'psi':
            return 0.
        return self.regions[ref_region].potential_offset - self.regions[region].potential_offset

    @staticmethod
    def equality_values(x: NDArray, ref_rows: IntArray, other_rows: IntArray,
                        shift: Optional[NDArray] = None):
        """Residual and Jacobian values of ``u_ref - u_other - shift``."""
        xs = np.stack([x[ref_rows], x[other_rows]], axis=1) if len(ref_rows) else np.zeros((0, 2))
        if shift is None:
            shift = np.zeros(len(xs))
        return EQUALITY.value_and_jacobian(xs, {'shift': np.asarray(shift, dtype=np.float64)})
