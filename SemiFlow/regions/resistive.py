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
"""Ohmic metal with finite conductivity."""
from ..layout import RegionType
from .kernels import resistive_edge
from .poisson import PoissonRegion


class ResistiveRegion(PoissonRegion):
    """Current continuity ``div(sigma grad psi) = 0`` with Joule heating.

    The potential row carries the electric current balance of the control
    volume; its residual is the negative current leaving the node. The
    potential unknown is the Fermi level ``psi + W``: currents are read from
    differences of values near the electrode voltage, not near ``-W``.
    """
    rtype = RegionType.RESISTIVE

    @property
    def potential_offset(self) -> float:
        return self.material.work_function

    def edge_function(self, lattice: bool):
        return resistive_edge(self.material, lattice)

    def edge_routes(self, lattice: bool):
        routes = [(0, 0, 'psi', 1.), (0, 1, 'psi', -1.)]
        if lattice:
            routes += [(1, 0, 'T', 1.), (1, 1, 'T', -1.),
                       (2, 0, 'T', 0.5), (2, 1, 'T', 0.5)]
        return routes

    def row_scale(self, var: str, fvm):
        if var == 'psi':
            return self.safe_inverse(self.material.conductivity * self.geometry.volume[fvm])
        return super().row_scale(var, fvm)

