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
"""Drift-diffusion assembler of semiconductor regions."""
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from ..ad import StencilKernel
from ..constants import KB, thermal_voltage
from ..layout import RegionType
from ..material import BulkTrap
from .base import Region, StencilPass
from .kernels import (cell_outputs,
                      equilibrium_densities,
                      intrinsic_offset,
                      semiconductor_cell,
                      semiconductor_edge,
                      semiconductor_node)


class SemiconductorRegion(Region):
    """Poisson, electron and hole continuity (and lattice heat) of a semiconductor.

    Edge fluxes (Poisson, Scharfetter-Gummel, heat) are evaluated once per edge
    for the residual and gathered by the cells, which add the mobility and the
    partial face area of the edge. The Jacobian differentiates the complete
    cell stencil, which recomputes the edge fluxes from the cell unknowns.

    Parameters
    ----------
    models : dict, optional
        Field driven generation switches ``impact_ionization`` and
        ``band_band_tunneling``.
    traps : sequence of BulkTrap, optional
        Bulk trap levels, uniform over the region.
    """
    rtype = RegionType.SEMICONDUCTOR

    def __init__(self, *args, models: Optional[Dict[str, bool]] = None,
                 traps: Sequence[BulkTrap] = (), **kwargs) -> None:
        models = models or {}
        self.impact_ionization = bool(models.get('impact_ionization', False))
        self.band_band_tunneling = bool(models.get('band_band_tunneling', False))
        self.traps = tuple(traps)
        super().__init__(*args, **kwargs)

    def initial_guess(self) -> None:
        """Charge-neutral equilibrium with the Fermi level at 0 V."""
        d = self.data
        mat = self.material
        T = d.T
        nie = np.asarray(mat.nie(T))
        n, p = equilibrium_densities(d.Nnet, nie)
        d.n[:] = np.asarray(n)
        d.p[:] = np.asarray(p)
        d.psi[:] = thermal_voltage(T) * np.arcsinh(d.Nnet / (2. * nie)) - np.asarray(intrinsic_offset(mat, T))
        d.Tn[:] = T
        d.Tp[:] = T
        self._derive(d.psi, d.n, d.p, d.T)

    @property
    def field_generation(self) -> bool:
        return self.impact_ionization or self.band_band_tunneling

    # ---------------------------
    # Stencils
    # ---------------------------

    def kernel(self, part: str, variables: Tuple[str, ...],
               transient: bool = False, bdf2: bool = False) -> StencilKernel:
        key = (part, variables, transient, bdf2)
        if key not in self._kernels:
            nv = len(variables)
            k = self.mesh.dim + 1
            mat = self.material
            if part == 'edge':
                kern = StencilKernel(semiconductor_edge(mat, variables), 2 * nv, nv, name=f'{self.name}.edge')
            elif part in ('cell_value', 'cell'):
                fn = semiconductor_cell(mat, variables, self.mesh.dim, recompute_sg=(part == 'cell'),
                                        impact_ionization=self.impact_ionization,
                                        band_band_tunneling=self.band_band_tunneling)
                kern = StencilKernel(fn, k * nv, len(cell_outputs(variables)) * k, name=f'{self.name}.cell')
            else:
                kern = StencilKernel(semiconductor_node(mat, variables, transient, bdf2, self.traps),
                                     nv, nv, name=f'{self.name}.node')
            self._kernels[key] = kern
        return self._kernels[key]

    def build_passes(self, layout) -> Dict[str, StencilPass]:
        g = self.geometry
        k = self.mesh.dim + 1
        variables = layout.variables[self.index]

        cells = self.active_cells(layout)
        edges = self.active_edges(layout)
        nodes = self.owned_nodes(layout)

        edge_routes = [(0, 0, 'psi', 1.), (0, 1, 'psi', -1.)]
        if layout.lattice:
            edge_routes += [(3, 0, 'T', 1.), (3, 1, 'T', -1.)]

        cell_routes = [(b * k + q, q, var, 1.)
                       for b, var in enumerate(cell_outputs(variables)) for q in range(k)]

        node_routes = [(q, 0, var, 1.) for q, var in enumerate(variables)]

        self._cell_edge_pos = np.searchsorted(edges, g.cell_edges[cells])

        return {
            'edge': StencilPass.build('edge', edges, g.edges[edges], self.index, layout, edge_routes),
            'cell': StencilPass.build('cell', cells, g.cells[cells], self.index, layout, cell_routes),
            'node': StencilPass.build('node', nodes, nodes[:, None], self.index, layout, node_routes),
        }

    def _edge_params(self, p: StencilPass, lattice: bool):
        g = self.geometry
        prm = {'A': g.edge_area[p.ids], 'L': g.edge_length[p.ids]}
        if not lattice:
            prm['T'] = self.data.T[p.vertices]
        return prm

    def _cell_params(self, p: StencilPass, lattice: bool, ctx):
        g = self.geometry
        prm = {'grad': g.cell_grad[p.ids],
               't': g.cell_tangent[p.ids],
               'pa': g.cell_partial_area[p.ids],
               'L': g.cell_edge_length[p.ids],
               'Ntot': self.data.Ntot[p.vertices]}
        if not lattice:
            prm['T'] = self.data.T[p.vertices]
        if self.band_band_tunneling:
            prm['pv'] = g.cell_partial_volume[p.ids]
        if self.field_generation:
            prm['gen'] = np.full(p.m, 0. if ctx.equilibrium else 1.)
        return prm

    def _node_params(self, p: StencilPass, layout, ctx):
        fvm = p.ids
        G = 0. if ctx.equilibrium else self.generation
        prm = {'vol': self.geometry.volume[fvm],
               'Nnet': self.data.Nnet[fvm],
               'G': np.full(len(fvm), G)}
        if not layout.lattice:
            prm['T'] = self.data.T[fvm]
        prm.update(self.history_params(layout, fvm))
        return prm

    # ---------------------------
    # Assembly
    # ---------------------------

    def residual(self, x, r, layout, ctx) -> None:
        """Add the region contributions to the owned rows of ``r``."""
        lattice = layout.lattice
        variables = layout.variables[self.index]
        passes = self.passes(layout)

        e = passes['edge']
        ev = self.kernel('edge', variables).value(e.gather(x), self._edge_params(e, lattice))
        e.scatter(ev, r)

        c = passes['cell']
        sign = self.geometry.cell_edge_sign[c.ids]
        prm = self._cell_params(c, lattice, ctx)
        prm['In'] = sign * ev[self._cell_edge_pos, 1]
        prm['Ip'] = sign * ev[self._cell_edge_pos, 2]
        cv = self.kernel('cell_value', variables).value(c.gather(x), prm)
        c.scatter(cv, r)

        n = passes['node']
        node = self.kernel('node', variables, ctx.transient, ctx.bdf2)
        nv = node.value(n.gather(x), self._node_params(n, layout, ctx), ctx.consts)
        n.scatter(nv, r)

    def jacobian(self, x, layout, ctx):
        """Jacobian values in the order of ``jacobian_pattern``."""
        lattice = layout.lattice
        variables = layout.variables[self.index]
        passes = self.passes(layout)

        e = passes['edge']
        _, Je = self.kernel('edge', variables).value_and_jacobian(e.gather(x), self._edge_params(e, lattice))

        c = passes['cell']
        _, Jc = self.kernel('cell', variables).value_and_jacobian(c.gather(x), self._cell_params(c, lattice, ctx))

        n = passes['node']
        node = self.kernel('node', variables, ctx.transient, ctx.bdf2)
        _, Jn = node.value_and_jacobian(n.gather(x), self._node_params(n, layout, ctx), ctx.consts)

        return np.concatenate([e.jacobian_values(Je), c.jacobian_values(Jc), n.jacobian_values(Jn)])

    def row_scale(self, var: str, fvm):
        vol = self.geometry.volume[fvm]
        if var == 'psi':
            return self.safe_inverse(self.material.permittivity * vol)
        if var == 'T':
            kappa = np.asarray(self.material.thermal_conductivity(self.data.T[fvm]))
            return self.safe_inverse(kappa * vol)
        if var in ('Tn', 'Tp'):
            c = self.data.n[fvm] if var == 'Tn' else self.data.p[fvm]
            tau = self.material.tau_wn if var == 'Tn' else self.material.tau_wp
            return self.safe_inverse(1.5 * KB * np.maximum(c, 1.) / tau * vol)
        return self.safe_inverse(vol)

    # ---------------------------
    # Derived quantities
    # ---------------------------

    def _derive(self, psi, n, p, T) -> None:
        d = self.data
        mat = self.material
        Vt = thermal_voltage(T)
        nie = np.asarray(mat.nie(T))
        psi_i = psi + np.asarray(intrinsic_offset(mat, T))

        d.Eg[:] = np.asarray(mat.band_gap(T))
        d.Ec[:] = -(psi + mat.affinity)
        d.Ev[:] = d.Ec - d.Eg
        d.qFn[:] = psi_i - Vt * np.log(np.maximum(n, 1e-300) / nie)
        d.qFp[:] = psi_i + Vt * np.log(np.maximum(p, 1e-300) / nie)
        d.recomb[:] = np.asarray(mat.recombination(n, p, T))

    def update_derived(self, layout) -> None:
        d = self.data
        self._derive(d.psi, d.n, d.p, d.T)
        d.E[:] = self.cell_field(layout)
