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
Region assembler base class and stencil bookkeeping.

A region evaluates three kinds of stencils: edges (fluxes between two
control volumes), cells (terms that need the gradient reconstructed from all
cell vertices) and nodes (volume terms). Each stencil pass knows, for the
current layout, the local unknowns it reads and the local rows it writes.
Rows are written only for FVM nodes owned by this rank; ghost values are
read only.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import numpy.typing as npt

from ..layout import EquationLayout, RegionType
from ..material import DopingProfile, evaluate_doping
from ..node_data import NodeData

NDArray = npt.NDArray[np.floating]
IntArray = npt.NDArray[np.signedinteger]
BoolArray = npt.NDArray[np.bool_]

# (output, vertex, variable, sign)
Route = Tuple[int, int, str, float]


@dataclass
class StencilPass:
    """Index maps of one stencil family for one layout.

    Attributes
    ----------
    name : str
        Label of the pass.
    ids : IntArray
        Edge, cell or FVM-node handles of the evaluated stencils, shape (m,).
    vertices : IntArray
        FVM nodes of each stencil, shape (m, n_vertices).
    x_idx : IntArray
        Local unknowns read by each stencil (vertex-major), shape (m, n_vertices * nv).
    routes : list of (output, vertex, variable offset, sign)
        Residual output ``output`` goes with ``sign`` into the row of ``variable``
        at vertex ``vertex``.
    rows : IntArray
        Local row of every route and stencil, shape (n_routes, m).
    masks : BoolArray
        Whether that row is owned, shape (n_routes, m).
    """
    name: str
    ids: IntArray
    vertices: IntArray
    x_idx: IntArray
    routes: List[Tuple[int, int, int, float]]
    rows: IntArray
    masks: BoolArray

    @classmethod
    def build(cls, name: str, ids, vertices, region: int, layout: EquationLayout,
              routes: Sequence[Route]) -> "StencilPass":
        ids = np.asarray(ids, dtype=np.int64)
        vertices = np.asarray(vertices, dtype=np.int64).reshape(len(ids), -1)
        base = layout.local_offset[region]
        owned = layout.owned[region]
        nv = layout.n_vars(region)

        x_idx = (base[vertices][:, :, None] + np.arange(nv)).reshape(len(ids), -1)

        resolved = []
        rows = np.zeros((len(routes), len(ids)), dtype=np.int64)
        masks = np.zeros((len(routes), len(ids)), dtype=bool)
        for q, (out, v, var, sign) in enumerate(routes):
            off = layout.var_offset(region, var)
            resolved.append((out, v, off, sign))
            rows[q] = base[vertices[:, v]] + off
            masks[q] = owned[vertices[:, v]]

        return cls(name=name, ids=ids, vertices=vertices, x_idx=x_idx,
                   routes=resolved, rows=rows, masks=masks)

    @property
    def m(self) -> int:
        return len(self.ids)

    @property
    def n_directions(self) -> int:
        return self.x_idx.shape[1]

    def gather(self, x: NDArray) -> NDArray:
        return x[self.x_idx]

    def scatter(self, vals: NDArray, r: NDArray) -> None:
        """Add stencil outputs (m, n_outputs) into the owned residual rows."""
        for q, (out, _, _, sign) in enumerate(self.routes):
            mask = self.masks[q]
            np.add.at(r, self.rows[q][mask], sign * vals[mask, out])

    def pattern(self) -> Tuple[IntArray, IntArray]:
        """(rows, cols) written by ``jacobian_values``, in the same order."""
        nd = self.n_directions
        rows, cols = [], []
        for q in range(len(self.routes)):
            mask = self.masks[q]
            rows.append(np.repeat(self.rows[q][mask], nd))
            cols.append(self.x_idx[mask].ravel())
        if not rows:
            return np.zeros(0, np.int64), np.zeros(0, np.int64)
        return np.concatenate(rows), np.concatenate(cols)

    def jacobian_values(self, J: NDArray) -> NDArray:
        """Flatten stencil Jacobians (m, n_outputs, nd) in ``pattern`` order."""
        vals = []
        for q, (out, _, _, sign) in enumerate(self.routes):
            mask = self.masks[q]
            vals.append(sign * J[mask, out, :].ravel())
        if not vals:
            return np.zeros(0)
        return np.concatenate(vals)


class Region:
    """Base class of all region assemblers.

    Parameters
    ----------
    index : int
        Region handle in the mesh.
    name : str
        Region label.
    material : object
        Material parameter set (see ``SemiFlow.material``).
    mesh : Mesh
        Mesh arena.
    doping : sequence of DopingProfile, optional
        Doping profiles (semiconductors only).
    generation : float, optional
        Uniform carrier generation rate [cm^-3 s^-1].
    T_ext : float, optional
        Ambient temperature [K].
    """
    rtype: RegionType

    def __init__(self,
                 index: int,
                 name: str,
                 material,
                 mesh,
                 doping: Sequence[DopingProfile] = (),
                 generation: float = 0.,
                 T_ext: float = 300.) -> None:

        self.index = index
        self.name = name
        self.material = material
        self.mesh = mesh
        self.geometry = mesh.region_geometry(index)
        self.T_ext = T_ext
        self.generation = generation

        g = self.geometry
        self.data = NodeData.allocate(g.n_fvm, g.n_cells, mesh.dim, T_ext)
        Nd, Na = evaluate_doping(doping, mesh.points[g.nodes])
        self.data.Nd[:] = Nd
        self.data.Na[:] = Na

        self._kernels: Dict[tuple, object] = {}
        self._passes: Optional[Dict[str, StencilPass]] = None
        self._passes_layout: Optional[EquationLayout] = None

        self.initial_guess()
        self.data.start_history()

    def __repr__(self) -> str:
        return f"{type(self).__name__}('{self.name}', {self.material.name}, {self.geometry.n_fvm} nodes)"

    # ---------------------------
    # Hooks for subclasses
    # ---------------------------

    def initial_guess(self) -> None:
        """Set the node data to a starting state."""

    def build_passes(self, layout: EquationLayout) -> Dict[str, StencilPass]:
        raise NotImplementedError

    def row_scale(self, var: str, fvm: IntArray) -> NDArray:
        raise NotImplementedError

    @property
    def potential_offset(self) -> float:
        """Stored potential unknown minus the vacuum-level potential [V]."""
        return 0.

    # ---------------------------
    # Stencil bookkeeping
    # ---------------------------

    def passes(self, layout: EquationLayout) -> Dict[str, StencilPass]:
        if self._passes_layout is not layout:
            self._passes = self.build_passes(layout)
            self._passes_layout = layout
        return self._passes

    def active_cells(self, layout: EquationLayout) -> IntArray:
        """Cells touching at least one owned FVM node."""
        owned = layout.owned[self.index]
        return np.flatnonzero(owned[self.geometry.cells].any(axis=1))

    def active_edges(self, layout: EquationLayout) -> IntArray:
        """Edges of the active cells."""
        cells = self.active_cells(layout)
        return np.unique(self.geometry.cell_edges[cells].ravel())

    def owned_nodes(self, layout: EquationLayout) -> IntArray:
        return np.flatnonzero(layout.owned[self.index])

    def local_nodes(self, layout: EquationLayout) -> IntArray:
        return np.flatnonzero(layout.local_offset[self.index] >= 0)

    def node_values(self, x: NDArray, layout: EquationLayout, var: str, fvm: IntArray) -> NDArray:
        return x[layout.rows(self.index, fvm, var)]

    def temperature(self, x: NDArray, layout: EquationLayout, fvm: IntArray) -> NDArray:
        """Lattice temperature at FVM nodes, from ``x`` when it is an unknown."""
        if layout.lattice:
            return x[layout.rows(self.index, fvm, 'T')]
        return self.data.T[fvm]

    def history_params(self, layout: EquationLayout, fvm: IntArray) -> Dict[str, NDArray]:
        """Previous and before-previous values of all unknowns at ``fvm``."""
        variables = layout.variables[self.index]
        prev = np.stack([self.data.history(v)[0][fvm] for v in variables], axis=1)
        last = np.stack([self.data.history(v)[1][fvm] for v in variables], axis=1)
        return {'prev': prev, 'last': last}

    # ---------------------------
    # Assembly contract
    # ---------------------------

    def jacobian_pattern(self, layout: EquationLayout) -> Tuple[IntArray, IntArray]:
        """Local (rows, cols) written by ``jacobian``, in value order."""
        rows, cols = [], []
        for p in self.passes(layout).values():
            r, c = p.pattern()
            rows.append(r)
            cols.append(c)
        return np.concatenate(rows), np.concatenate(cols)

    def fill_value(self, x: NDArray, L: NDArray, layout: EquationLayout) -> None:
        """Write node data into the local unknown vector and the row scaling."""
        fvm = self.local_nodes(layout)
        for var in layout.variables[self.index]:
            rows = layout.rows(self.index, fvm, var)
            x[rows] = getattr(self.data, var)[fvm]
            L[rows] = self.row_scale(var, fvm)

    def reload(self, x: NDArray, L: NDArray, layout: EquationLayout) -> None:
        """Restore the last accepted state (diverged-iteration recovery)."""
        self.fill_value(x, L, layout)

    def update_solution(self, x: NDArray, layout: EquationLayout) -> None:
        """Store an accepted solution in the node data."""
        fvm = self.local_nodes(layout)
        for var in layout.variables[self.index]:
            getattr(self.data, var)[fvm] = x[layout.rows(self.index, fvm, var)]
        self.update_derived(layout)

    def update_derived(self, layout: EquationLayout) -> None:
        """Refresh derived node quantities after an accepted step."""

    def cell_field(self, layout: EquationLayout) -> NDArray:
        """Electric field -grad(psi) of the cells whose vertices are all local."""
        g = self.geometry
        local = layout.local_offset[self.index] >= 0
        cells = np.flatnonzero(local[g.cells].all(axis=1))
        E = np.zeros((g.n_cells, self.mesh.dim))
        E[cells] = -np.einsum('cdk,ck->cd', g.cell_grad[cells], self.data.psi[g.cells[cells]])
        return E

    def safe_inverse(self, values: NDArray) -> NDArray:
        """``1/values``, with 1 where a control volume is degenerate."""
        values = np.asarray(values, dtype=np.float64)
        return np.where(values > 0., 1. / np.where(values > 0., values, 1.), 1.)
