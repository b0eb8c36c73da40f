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
"""Inter-connect hub joining several electrodes through their series resistors."""
import jax.numpy as jnp
import numpy as np

from ..ad import StencilKernel
from ..errors import BoundaryConfigurationError
from .base import BoundaryCondition, BoundaryKind


def _kirchhoff(x, prm, consts):
    return jnp.sum((x[0] - x[1:]) * prm['G'])


class InterConnectHub(BoundaryCondition):
    """Floating node ``V_hub`` with ``sum_i (V_hub - Ve_i) / R_i = 0``.

    Parameters
    ----------
    name : str
        Label of the hub.
    members : sequence of OhmicContactBC
        Electrodes driven by an 'inter_connect' circuit.
    """
    kind = BoundaryKind.INTER_CONNECT
    n_slots = 1

    def __init__(self, name: str, members) -> None:
        super().__init__(name, [])
        self.members = list(members)
        if len(self.members) < 2:
            raise BoundaryConfigurationError(f"Inter-connect '{name}' needs at least two electrodes")
        for m in self.members:
            if not m.circuit.is_inter_connect:
                raise BoundaryConfigurationError(
                    f"Electrode '{m.name}' joined to inter-connect '{name}' is not inter-connect driven")
            if m.circuit.R <= 0.:
                raise BoundaryConfigurationError(f"Electrode '{m.name}' needs a positive resistance")
            m.hub = self
        self.G = np.array([1. / m.circuit.R for m in self.members])
        self.kernel = StencilKernel(_kirchhoff, len(self.members) + 1, 1, name=f'{name}.kirchhoff')
        self.potential = 0.
        self.potential_itering = 0.

    def slot_local(self, layout) -> int:
        return int(layout.slot_local[self.slots[0]])

    def build_table(self, layout):
        cols = [self.slot_local(layout)] + [m.slot_local(layout) for m in self.members]
        return np.array([cols], dtype=np.int64), bool(layout.is_owned_row(cols[0]))

    def residual(self, x, r, layout, ctx) -> None:
        cols, owned = self.table(layout)
        self.potential_itering = float(x[cols[0, 0]])
        if owned:
            r[cols[0, 0]] += self.kernel.value(x[cols], {'G': self.G[None, :]})[0, 0]

    def jacobian_pattern(self, layout):
        cols, owned = self.table(layout)
        if not owned:
            return super().jacobian_pattern(layout)
        return np.full(cols.shape[1], cols[0, 0], dtype=np.int64), cols[0].copy()

    def jacobian(self, x, layout, ctx):
        cols, owned = self.table(layout)
        if not owned:
            return np.zeros(0)
        _, J = self.kernel.value_and_jacobian(x[cols], {'G': self.G[None, :]})
        return J.ravel()

    def fill_value(self, x, L, layout) -> None:
        slot = self.slot_local(layout)
        x[slot] = self.potential
        L[slot] = 1.

    def update(self, ctx) -> None:
        self.potential = self.potential_itering

    def rollback(self) -> None:
        self.potential_itering = self.potential
