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
"""Exterior boundary with optional heat exchange to the ambient."""
import numpy as np

from ..ad import StencilKernel
from .base import BoundaryCondition, BoundaryKind


def _heat_transfer(x, prm, consts):
    return prm['hS'] * (consts['T_ext'] - x[0])


HEAT_TRANSFER = StencilKernel(_heat_transfer, 1, 1, name='heat_transfer')


class NeumannBC(BoundaryCondition):
    """Zero-flux exterior boundary.

    With lattice heating, ``h (T_ext - T) S`` is added to the temperature row
    of the reference pair, ``S`` being the exterior surface of all control
    volumes at the node.

    Parameters
    ----------
    name : str
        Label of the boundary.
    nodes : array_like
        Boundary nodes.
    heat_transfer : float, optional
        Heat transfer coefficient h [W/(cm^2 K)].
    """
    kind = BoundaryKind.BOUNDARY

    def __init__(self, name: str, nodes, heat_transfer: float = 0.) -> None:
        super().__init__(name, nodes)
        self.heat_transfer = heat_transfer

    def build_table(self, layout):
        rows, hS = [], []
        if layout.lattice and self.heat_transfer > 0.:
            for k in self.owned_node_indices(layout):
                pairs = self.pairs[k]
                ref_region, ref_fvm = pairs[0]
                S = sum(self.regions[r].geometry.boundary_area[f] for r, f in pairs)
                if S > 0.:
                    rows.append(layout.rows(ref_region, [ref_fvm], 'T')[0])
                    hS.append(self.heat_transfer * S)
        return np.asarray(rows, dtype=np.int64), np.asarray(hS, dtype=np.float64)

    def residual(self, x, r, layout, ctx) -> None:
        rows, hS = self.table(layout)
        vals = HEAT_TRANSFER.value(x[rows][:, None], {'hS': hS}, {'T_ext': ctx.T_ext})
        np.add.at(r, rows, vals[:, 0])

    def jacobian_pattern(self, layout):
        rows, _ = self.table(layout)
        return rows, rows

    def jacobian(self, x, layout, ctx):
        rows, hS = self.table(layout)
        _, J = HEAT_TRANSFER.value_and_jacobian(x[rows][:, None], {'hS': hS}, {'T_ext': ctx.T_ext})
        return J.ravel()
