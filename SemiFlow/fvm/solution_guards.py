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
Newton update damping and physical-bounds projection.

All functions work on the owned block of the unknown vector and report
``(changed_y, changed_w)``: whether the search direction ``dx`` was modified
and whether the candidate point ``x + dx`` was modified. Projection only ever
changes the candidate point.
"""
import numpy as np
from mpi4py import MPI
from typing import Tuple

from ..constants import thermal_voltage
from ..layout import EquationKind, RegionType
from ..logging import get_logger

logger = get_logger("semiflow.guards")

# Guard parameters
DENSITY_FLOOR = 1.0           # Minimum carrier density [cm^-3]
MAX_POTENTIAL_UPDATE = 1.0    # Positive-density damping clip [V]
MIN_POTENTIAL_UPDATE = 1e-6   # Below this, potential damping is inactive [V]
T_MIN_FACTOR = 0.9            # Lattice and carrier temperature floor, relative to ambient


def _masks(row_kind, row_type):
    psi = row_kind == EquationKind.PSI
    carrier = (row_kind == EquationKind.N) | (row_kind == EquationKind.P)
    lattice = row_kind == EquationKind.T
    electrode = row_kind == EquationKind.ELECTRODE
    semi_psi = psi & (row_type == RegionType.SEMICONDUCTOR)
    return psi, carrier, lattice, electrode, semi_psi


def potential_damping(x, dx, row_kind, row_type, T_ext: float,
                      potential_update: float = 1.0,
                      comm=MPI.COMM_WORLD) -> Tuple[np.ndarray, bool, bool]:
    """Logarithmic compression of all potential updates.

    With ``dV`` the largest semiconductor potential update (over all ranks)
    and ``Vut = Vt * potential_update``, every potential and electrode update
    is multiplied by ``f = ln(1 + dV/Vut) / (dV/Vut)``.

    Returns
    -------
    dx : NDArray
        Possibly damped update.
    changed_y, changed_w : bool
    """
    psi, _, _, electrode, semi_psi = _masks(row_kind, row_type)

    dV = float(np.max(np.abs(dx[semi_psi]), initial=0.))
    dV = comm.allreduce(dV, op=MPI.MAX)

    changed_y = False
    if dV > MIN_POTENTIAL_UPDATE:
        Vut = thermal_voltage(T_ext) * potential_update
        ratio = dV / Vut
        f = np.log1p(ratio) / ratio
        if f < 1.:
            dx = dx.copy()
            mask = psi | electrode
            dx[mask] *= f
            changed_y = True
            logger.debug(f"Potential damping: dV_max = {dV:.3e} V, factor {f:.3e}")

    return dx, changed_y, False


def positive_density_damping(x, dx, row_kind, row_type, T_ext: float,
                             comm=MPI.COMM_WORLD) -> Tuple[np.ndarray, bool, bool]:
    """Clip potential updates to 1 V; carriers and temperatures are handled by projection."""
    psi, _, _, electrode, _ = _masks(row_kind, row_type)
    mask = psi | electrode

    over = np.abs(dx[mask]) > MAX_POTENTIAL_UPDATE
    changed_local = bool(np.any(over))
    changed_y = bool(comm.allreduce(changed_local, op=MPI.LOR))

    if changed_local:
        dx = dx.copy()
        sub = dx[mask]
        sub[over] = np.sign(sub[over]) * MAX_POTENTIAL_UPDATE
        dx[mask] = sub

    return dx, changed_y, False


def no_damping(x, dx, row_kind, row_type, T_ext: float,
               comm=MPI.COMM_WORLD) -> Tuple[np.ndarray, bool, bool]:
    return dx, False, False


DAMPING = {
    'potential': potential_damping,
    'positive_density': positive_density_damping,
    'none': no_damping,
    'bank_rose': no_damping,
}


def projection_positive_density_check(x, row_kind, T_ext: float,
                                      comm=MPI.COMM_WORLD) -> Tuple[np.ndarray, bool]:
    """Clamp carrier densities to the floor and all temperatures above 0.9 T_ext.

    Idempotent: a projected point is left unchanged by a second projection.

    Returns
    -------
    x : NDArray
        Projected candidate point (a copy if anything changed).
    changed_w : bool
        Whether any rank changed its block.
    """
    carrier = (row_kind == EquationKind.N) | (row_kind == EquationKind.P)
    temperature = np.isin(row_kind, (EquationKind.T, EquationKind.TN, EquationKind.TP))
    T_min = T_MIN_FACTOR * T_ext

    low_carrier = carrier & (x < DENSITY_FLOOR)
    low_T = temperature & (x < T_min)
    changed_local = bool(np.any(low_carrier) or np.any(low_T))

    if changed_local:
        x = x.copy()
        x[low_carrier] = DENSITY_FLOOR
        x[low_T] = T_min

    changed_w = bool(comm.allreduce(changed_local, op=MPI.LOR))
    return x, changed_w
