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
"""Physical state attached to the control volumes of one region."""
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np
import numpy.typing as npt

NDArray = npt.NDArray[np.floating]

STATE_FIELDS = ('psi', 'n', 'p', 'T', 'Tn', 'Tp')


@dataclass
class NodeData:
    """Struct-of-arrays node state of a region.

    Solution fields (``psi, n, p, T, Tn, Tp``) are the last accepted values;
    ``*_prev`` hold the values of the previous accepted time step and
    ``*_last`` the one before, as needed by BDF2. Derived quantities are
    refreshed by the owning region after every accepted step.

    Attributes
    ----------
    psi, n, p, T : NDArray
        Electrostatic potential [V], carrier densities [cm^-3], lattice temperature [K].
        Metal regions hold the Fermi level ``psi + W`` in ``psi``.
    Tn, Tp : NDArray
        Electron and hole temperatures [K], equal to ``T`` unless solved for.
    Nd, Na : NDArray
        Donor and acceptor concentrations [cm^-3].
    Ec, Ev, Eg : NDArray
        Band edges and band gap [eV].
    qFn, qFp : NDArray
        Electron and hole quasi-Fermi potentials [V].
    recomb : NDArray
        Net recombination rate [cm^-3 s^-1].
    E : NDArray
        Electric field per region cell [V/cm], shape (n_cells, dim).
    """
    psi: NDArray
    n: NDArray
    p: NDArray
    T: NDArray
    Tn: NDArray
    Tp: NDArray
    Nd: NDArray
    Na: NDArray
    E: NDArray
    psi_prev: NDArray = field(init=False)
    n_prev: NDArray = field(init=False)
    p_prev: NDArray = field(init=False)
    T_prev: NDArray = field(init=False)
    Tn_prev: NDArray = field(init=False)
    Tp_prev: NDArray = field(init=False)
    psi_last: NDArray = field(init=False)
    n_last: NDArray = field(init=False)
    p_last: NDArray = field(init=False)
    T_last: NDArray = field(init=False)
    Tn_last: NDArray = field(init=False)
    Tp_last: NDArray = field(init=False)
    Ec: NDArray = field(init=False)
    Ev: NDArray = field(init=False)
    Eg: NDArray = field(init=False)
    qFn: NDArray = field(init=False)
    qFp: NDArray = field(init=False)
    recomb: NDArray = field(init=False)

    def __post_init__(self):
        for name in STATE_FIELDS:
            setattr(self, f'{name}_prev', getattr(self, name).copy())
            setattr(self, f'{name}_last', getattr(self, name).copy())
        size = len(self.psi)
        for name in ('Ec', 'Ev', 'Eg', 'qFn', 'qFp', 'recomb'):
            setattr(self, name, np.zeros(size))

    @classmethod
    def allocate(cls, n_fvm: int, n_cells: int, dim: int, T0: float) -> "NodeData":
        return cls(psi=np.zeros(n_fvm),
                   n=np.zeros(n_fvm),
                   p=np.zeros(n_fvm),
                   T=np.full(n_fvm, T0),
                   Tn=np.full(n_fvm, T0),
                   Tp=np.full(n_fvm, T0),
                   Nd=np.zeros(n_fvm),
                   Na=np.zeros(n_fvm),
                   E=np.zeros((n_cells, dim)))

    @property
    def Nnet(self) -> NDArray:
        return self.Nd - self.Na

    @property
    def Ntot(self) -> NDArray:
        return self.Nd + self.Na

    def history(self, name: str) -> Tuple[NDArray, NDArray]:
        """(previous, before-previous) values of a solution field."""
        return getattr(self, f'{name}_prev'), getattr(self, f'{name}_last')

    def start_history(self) -> None:
        """Make the current state the only known history (start of a transient)."""
        for name in STATE_FIELDS:
            getattr(self, f'{name}_prev')[:] = getattr(self, name)
            getattr(self, f'{name}_last')[:] = getattr(self, name)

    def shift_history(self) -> None:
        """Push the current state into the time history after an accepted step."""
        for name in STATE_FIELDS:
            getattr(self, f'{name}_last')[:] = getattr(self, f'{name}_prev')
            getattr(self, f'{name}_prev')[:] = getattr(self, name)
