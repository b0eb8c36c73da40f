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
"""Potential-only assemblers: insulators, ideal conductors and vacuum."""
from typing import Dict

import numpy as np

from ..ad import StencilKernel
from ..layout import RegionType
from .base import Region, StencilPass
from .kernels import lattice_node, poisson_edge


class PoissonRegion(Region):
    """Charge-free Poisson equation (and lattice heat) of a region.

    Subclasses set ``rtype`` and may replace the edge stencil.
    """
    rtype = RegionType.INSULATOR

    def edge_function(self, lattice: bool):
        return poisson_edge(self.material, lattice)

    def edge_routes(self, lattice: bool):
        routes = [(0, 0, 'psi', 1.), (0, 1, 'psi', -1.)]
        if lattice:
            routes += [(1, 0, 'T', 1.), (1, 1, 'T', -1.)]
        return routes

    def kernel(self, part: str, lattice: bool, transient: bool = False, bdf2: bool = False) -> StencilKernel:
        key = (part, lattice, transient, bdf2)
        if key not in self._kernels:
            nv = 2 if lattice else 1
            if part == 'edge':
                routes = self.edge_routes(lattice)
                n_out = max(out for out, *_ in routes) + 1
                kern = StencilKernel(self.edge_function(lattice), 2 * nv, n_out, name=f'{self.name}.edge')
            else:
                kern = StencilKernel(lattice_node(self.material, lattice, transient, bdf2),
                                     nv, nv, name=f'{self.name}.node')
            self._kernels[key] = kern
        return self._kernels[key]

    def build_passes(self, layout) -> Dict[str, StencilPass]:
        g = self.geometry
        edges = self.active_edges(layout)
        nodes = self.owned_nodes(layout)
        node_routes = [(q, 0, var, 1.) for q, var in enumerate(layout.variables[self.index])]
        return {
            'edge': StencilPass.build('edge', edges, g.edges[edges], self.index, layout,
                                      self.edge_routes(layout.lattice)),
            'node': StencilPass.build('node', nodes, nodes[:, None], self.index, layout, node_routes),
        }

    def _edge_params(self, p: StencilPass, lattice: bool):
        g = self.geometry
        prm = {'A': g.edge_area[p.ids], 'L': g.edge_length[p.ids]}
        if not lattice:
            prm['T'] = self.data.T[p.vertices]
        return prm

    def _node_params(self, p: StencilPass, layout):
        prm = {'vol': self.geometry.volume[p.ids]}
        prm.update(self.history_params(layout, p.ids))
        return prm

    def residual(self, x, r, layout, ctx) -> None:
        lattice = layout.lattice
        passes = self.passes(layout)

        e = passes['edge']
        e.scatter(self.kernel('edge', lattice).value(e.gather(x), self._edge_params(e, lattice)), r)

        n = passes['node']
        node = self.kernel('node', lattice, ctx.transient, ctx.bdf2)
        n.scatter(node.value(n.gather(x), self._node_params(n, layout), ctx.consts), r)

    def jacobian(self, x, layout, ctx):
        lattice = layout.lattice
        passes = self.passes(layout)

        e = passes['edge']
        _, Je = self.kernel('edge', lattice).value_and_jacobian(e.gather(x), self._edge_params(e, lattice))

        n = passes['node']
        node = self.kernel('node', lattice, ctx.transient, ctx.bdf2)
        _, Jn = node.value_and_jacobian(n.gather(x), self._node_params(n, layout), ctx.consts)

        return np.concatenate([e.jacobian_values(Je), n.jacobian_values(Jn)])

    def row_scale(self, var: str, fvm):
        vol = self.geometry.volume[fvm]
        if var == 'T':
            kappa = np.asarray(self.material.thermal_conductivity(self.data.T[fvm]))
            return self.safe_inverse(kappa * vol)
        return self.safe_inverse(self.material.permittivity * vol)


class InsulatorRegion(PoissonRegion):
    rtype = RegionType.INSULATOR


class VacuumRegion(PoissonRegion):
    rtype = RegionType.VACUUM


class ConductorRegion(PoissonRegion):
    """Ideal metal; its potential is pinned to ``V`` at Ohmic contacts.

    The potential unknown is the Fermi level ``psi + W``, so that electrode
    voltages are carried without the work function offset.
    """
    rtype = RegionType.CONDUCTOR

    @property
    def potential_offset(self) -> float:
        return self.material.work_function
