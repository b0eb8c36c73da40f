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
Unknown layout: where every equation lives in the global and rank-local vectors.

Global numbering is contiguous per owner rank. Inside a rank the FVM nodes are
numbered region by region, each node holding a block of consecutive slots,
one per variable of its region. Scalar slots of boundary conditions
(electrode potentials, inter-connect hubs) follow the nodes of the last rank
and are owned by it.

Rank-local buffer:

    [ owned rows | ghost FVM nodes | scalar slots not owned by this rank ]

so that the first ``n_owned`` local rows coincide with the rank's block of the
distributed matrix. A layout is an immutable value, rebuilt whenever the
variable set changes, and passed explicitly to every assembly call.
"""
from dataclasses import dataclass
from enum import IntEnum
from typing import Sequence, Tuple

import numpy as np
import numpy.typing as npt
from mpi4py import MPI

IntArray = npt.NDArray[np.signedinteger]
BoolArray = npt.NDArray[np.bool_]
Int8Array = npt.NDArray[np.int8]


class RegionType(IntEnum):
    """Region families, in coupling priority order (lowest value is the reference)."""
    SEMICONDUCTOR = 0
    INSULATOR = 1
    CONDUCTOR = 2
    RESISTIVE = 3
    VACUUM = 4


class EquationKind(IntEnum):
    PSI = 0
    N = 1
    P = 2
    T = 3
    ELECTRODE = 4
    TN = 5
    TP = 6


VARIABLE_KIND = {'psi': EquationKind.PSI,
                 'n': EquationKind.N,
                 'p': EquationKind.P,
                 'T': EquationKind.T,
                 'Tn': EquationKind.TN,
                 'Tp': EquationKind.TP}


def region_variables(rtype: RegionType, lattice: bool, energy_balance: bool = False) -> Tuple[str, ...]:
    """Ordered unknowns of a region family."""
    if rtype == RegionType.SEMICONDUCTOR:
        base = ('psi', 'n', 'p', 'Tn', 'Tp') if energy_balance else ('psi', 'n', 'p')
    else:
        base = ('psi',)
    return base + ('T',) if lattice else base


@dataclass(frozen=True, eq=False)
class EquationLayout:
    """Offsets of all unknowns for one variable set.

    Attributes
    ----------
    rank, size : int
        Rank of this process and communicator size.
    lattice : bool
        Whether the lattice temperature is an unknown.
    energy_balance : bool
        Whether the carrier temperatures are unknowns of the semiconductors.
    variables : tuple of tuple of str
        Ordered variable names per region.
    region_types : tuple of RegionType
        Family of each region.
    global_offset : tuple of IntArray
        First global slot of each FVM node, per region.
    local_offset : tuple of IntArray
        First local slot of each FVM node, per region, -1 if not in the local buffer.
    owned : tuple of BoolArray
        FVM node owned by this rank, per region.
    slot_global, slot_local : IntArray
        Global and local index of each scalar boundary slot.
    local_to_global : IntArray
        Global index of every local slot.
    rank_starts : IntArray
        First owned global row of each rank, with the global size appended.
    row_kind : Int8Array
        EquationKind of every local row.
    row_region : IntArray
        Region of every local row, -1 for scalar slots.
    """
    rank: int
    size: int
    lattice: bool
    energy_balance: bool
    variables: Tuple[Tuple[str, ...], ...]
    region_types: Tuple[RegionType, ...]
    global_offset: Tuple[IntArray, ...]
    local_offset: Tuple[IntArray, ...]
    owned: Tuple[BoolArray, ...]
    slot_global: IntArray
    slot_local: IntArray
    local_to_global: IntArray
    rank_starts: IntArray
    row_kind: Int8Array
    row_region: IntArray

    @property
    def owned_start(self) -> int:
        return int(self.rank_starts[self.rank])

    @property
    def owned_end(self) -> int:
        return int(self.rank_starts[self.rank + 1])

    @property
    def n_owned(self) -> int:
        return self.owned_end - self.owned_start

    @property
    def global_size(self) -> int:
        return int(self.rank_starts[-1])

    @property
    def local_size(self) -> int:
        return len(self.local_to_global)

    @property
    def n_slots(self) -> int:
        return len(self.slot_global)

    def n_vars(self, region: int) -> int:
        return len(self.variables[region])

    def has_var(self, region: int, var: str) -> bool:
        return var in self.variables[region]

    def var_offset(self, region: int, var: str) -> int:
        try:
            return self.variables[region].index(var)
        except ValueError:
            raise KeyError(f"Region {region} has no unknown '{var}'") from None

    def rows(self, region: int, fvm, var: str) -> IntArray:
        """Local rows of variable ``var`` at the given FVM nodes."""
        base = self.local_offset[region][fvm]
        if np.any(base < 0):
            raise IndexError("FVM node not present in the local buffer")
        return base + self.var_offset(region, var)

    def row_region_type(self) -> IntArray:
        """RegionType of every local row, -1 for scalar slots."""
        types = np.array([int(t) for t in self.region_types] + [-1], dtype=np.int64)
        return types[self.row_region]

    def is_owned_row(self, local_rows) -> BoolArray:
        return np.asarray(local_rows) < self.n_owned

    def global_to_local(self, global_rows) -> IntArray:
        """Local index of global rows, -1 where not in the local buffer."""
        global_rows = np.asarray(global_rows)
        order = np.argsort(self.local_to_global)
        sorted_g = self.local_to_global[order]
        pos = np.minimum(np.searchsorted(sorted_g, global_rows), len(sorted_g) - 1)
        found = sorted_g[pos] == global_rows
        return np.where(found, order[pos], -1)


def build_layout(mesh,
                 regions: Sequence,
                 n_slots: int,
                 lattice: bool,
                 comm=MPI.COMM_WORLD,
                 energy_balance: bool = False) -> EquationLayout:
    """Assign global and local offsets for all regions and boundary slots.

    Parameters
    ----------
    mesh : Mesh
        Mesh with node ownership set.
    regions : sequence of Region
        Regions in handle order, each with ``rtype`` and ``geometry``.
    n_slots : int
        Number of scalar boundary slots.
    lattice : bool
        Solve for the lattice temperature.
    comm : MPI communicator, optional
    energy_balance : bool, optional
        Solve for the electron and hole temperatures.

    Returns
    -------
    EquationLayout
    """
    rank = comm.Get_rank()
    size = comm.Get_size()

    variables = tuple(region_variables(r.rtype, lattice, energy_balance) for r in regions)
    region_types = tuple(RegionType(r.rtype) for r in regions)
    node_rank = [mesh.node_owner[r.geometry.nodes] for r in regions]

    # Global offsets, rank by rank, region by region
    global_offset = [np.full(r.geometry.n_fvm, -1, dtype=np.int64) for r in regions]
    rank_starts = np.zeros(size + 1, dtype=np.int64)
    cursor = 0
    for q in range(size):
        rank_starts[q] = cursor
        for ri, nv in enumerate(len(v) for v in variables):
            idx = np.flatnonzero(node_rank[ri] == q)
            global_offset[ri][idx] = cursor + nv * np.arange(len(idx))
            cursor += nv * len(idx)

    slot_global = cursor + np.arange(n_slots, dtype=np.int64)
    rank_starts[size] = cursor + n_slots
    owned_start = rank_starts[rank]

    owned = [nr == rank for nr in node_rank]

    # Local buffer: owned block first
    local_offset = []
    for ri in range(len(regions)):
        lo = np.full(regions[ri].geometry.n_fvm, -1, dtype=np.int64)
        lo[owned[ri]] = global_offset[ri][owned[ri]] - owned_start
        local_offset.append(lo)

    n_owned = int(rank_starts[rank + 1] - owned_start)
    local_to_global = [owned_start + np.arange(n_owned, dtype=np.int64)]
    local_cursor = n_owned

    # Ghosts: every vertex of a cell that touches an owned FVM node
    ghost_entries = []
    for ri, r in enumerate(regions):
        cells = r.geometry.cells
        touching = owned[ri][cells].any(axis=1)
        needed = np.zeros(r.geometry.n_fvm, dtype=bool)
        needed[cells[touching].ravel()] = True
        for f in np.flatnonzero(needed & ~owned[ri]):
            ghost_entries.append((global_offset[ri][f], ri, f))

    for g0, ri, f in sorted(ghost_entries):
        nv = len(variables[ri])
        local_offset[ri][f] = local_cursor
        local_to_global.append(g0 + np.arange(nv, dtype=np.int64))
        local_cursor += nv

    # Scalar slots
    slot_local = np.empty(n_slots, dtype=np.int64)
    for s, g in enumerate(slot_global):
        if owned_start <= g < owned_start + n_owned:
            slot_local[s] = g - owned_start
        else:
            slot_local[s] = local_cursor
            local_to_global.append(np.array([g], dtype=np.int64))
            local_cursor += 1

    local_to_global = np.concatenate(local_to_global) if local_to_global else np.zeros(0, np.int64)

    row_kind = np.full(local_cursor, int(EquationKind.ELECTRODE), dtype=np.int8)
    row_region = np.full(local_cursor, -1, dtype=np.int64)
    for ri in range(len(regions)):
        base = local_offset[ri][local_offset[ri] >= 0]
        for k, var in enumerate(variables[ri]):
            row_kind[base + k] = int(VARIABLE_KIND[var])
            row_region[base + k] = ri

    return EquationLayout(
        rank=rank,
        size=size,
        lattice=lattice,
        energy_balance=energy_balance,
        variables=variables,
        region_types=region_types,
        global_offset=tuple(global_offset),
        local_offset=tuple(local_offset),
        owned=tuple(owned),
        slot_global=slot_global,
        slot_local=slot_local,
        local_to_global=local_to_global,
        rank_starts=rank_starts,
        row_kind=row_kind,
        row_region=row_region,
    )
