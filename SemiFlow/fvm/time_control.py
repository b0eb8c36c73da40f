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
"""
Local truncation error estimate and adaptive step control.

The LTE of an accepted corrector ``x`` is estimated from a polynomial
predictor through the previous accepted steps:

    BDF1:  x_p = (1 + h/h1) x_n - (h/h1) x_n1,          LTE = h/(h + h1) (x - x_p)
    BDF2:  x_p = quadratic extrapolation of x_n, x_n1, x_n2,
                                                          LTE = h/(h + h1 + h2) (x - x_p)

where ``h`` is the current step and ``h1``, ``h2`` are the previous ones.
Potentials and electrode slots are not counted.
"""
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import numpy.typing as npt
from mpi4py import MPI

from ..errors import TruncationToleranceExceeded
from ..layout import EquationKind

NDArray = npt.NDArray[np.floating]

# Absolute LTE tolerances per equation kind
LTE_ATOL = {EquationKind.N: 1e4, EquationKind.P: 1e4, EquationKind.T: 1e-2,
            EquationKind.TN: 1e-1, EquationKind.TP: 1e-1}


def bdf1_predictor(x_n: NDArray, x_n1: NDArray, h: float, h1: float) -> NDArray:
    return (1. + h / h1) * x_n - (h / h1) * x_n1


def bdf2_predictor(x_n: NDArray, x_n1: NDArray, x_n2: NDArray,
                   h: float, h1: float, h2: float) -> NDArray:
    c0 = (h + h1) * (h + h1 + h2) / (h1 * (h1 + h2))
    c1 = -h * (h + h1 + h2) / (h1 * h2)
    c2 = h * (h + h1) / ((h1 + h2) * h2)
    return c0 * x_n + c1 * x_n1 + c2 * x_n2


def lte_norm(x: NDArray,
             history: Sequence[NDArray],
             steps: Sequence[float],
             row_kind,
             rtol: float = 1e-3,
             atol: Optional[dict] = None,
             predictor: Optional[NDArray] = None,
             comm=MPI.COMM_WORLD) -> float:
    """RMS-normalised LTE of the corrector ``x``.

    Parameters
    ----------
    x : NDArray
        Corrector (accepted Newton solution), owned block.
    history : sequence of NDArray
        Previous accepted solutions ``[x_n, x_n1]`` (BDF1) or ``[x_n, x_n1, x_n2]`` (BDF2).
    steps : sequence of float
        ``[h, h1]`` or ``[h, h1, h2]``.
    row_kind : Int8Array
        Equation kind of each owned row.
    rtol : float
        Relative tolerance.
    atol : dict, optional
        Absolute tolerance per counted EquationKind.
    predictor : NDArray, optional
        Use this predictor instead of extrapolating ``history``.

    Returns
    -------
    float
        ``sqrt(mean((LTE / (rtol |x| + atol))**2))`` over the counted rows of
        all ranks, 1.0 if no row is counted.
    """
    atol = LTE_ATOL if atol is None else atol
    order = len(steps) - 1
    h = steps[0]

    if predictor is None:
        if order == 1:
            predictor = bdf1_predictor(history[0], history[1], h, steps[1])
        elif order == 2:
            predictor = bdf2_predictor(history[0], history[1], history[2], h, steps[1], steps[2])
        else:
            raise ValueError(f"LTE estimate supports order 1 or 2, got {order}")

    lte = h / sum(steps) * (x - predictor)

    counted = np.zeros(len(x), dtype=bool)
    weight = np.ones(len(x))
    for kind, a in atol.items():
        mask = row_kind == kind
        counted |= mask
        weight[mask] = rtol * np.abs(x[mask]) + a

    local = np.array([np.sum((lte[counted] / weight[counted])**2), float(counted.sum())])
    total = np.empty_like(local)
    comm.Allreduce(local, total, op=MPI.SUM)

    if total[1] == 0:
        return 1.0
    return float(np.sqrt(total[0] / total[1]))


@dataclass
class StepController:
    """Next step size from the LTE norm.

    ``h_next = h * safety * r^(-1/(order+1))``, clipped to ``[min_factor, max_factor] * h``
    and to ``[dt_min, dt_max]``.
    """
    safety: float = 0.9
    min_factor: float = 0.5
    max_factor: float = 2.0
    dt_min: float = 0.0
    dt_max: float = np.inf

    def next_step(self, h: float, r: float, order: int) -> float:
        if r <= 0.:
            factor = self.max_factor
        else:
            factor = self.safety * r**(-1. / (order + 1))
            factor = min(max(factor, self.min_factor), self.max_factor)
        return float(min(max(h * factor, self.dt_min), self.dt_max))

    def check(self, h: float, r: float, order: int) -> float:
        """Return the next step size of an accepted step.

        Raises
        ------
        TruncationToleranceExceeded
            If ``r > 1``; carries the reduced step to retry with.
        """
        h_next = self.next_step(h, r, order)
        if r > 1.:
            raise TruncationToleranceExceeded(r, h_next)
        return h_next
