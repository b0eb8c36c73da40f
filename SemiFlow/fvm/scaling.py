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
Linear system scaling for FVM solver conditioning.

Rows of the residual and Jacobian are multiplied by a diagonal scaling
vector ``L`` supplied by the assemblers (e.g. ``1/(eps vol)`` for Poisson
rows, ``1/vol`` for continuity rows). In the notation of a general
row/column scaling

    J*[i,j] = J[i,j] · D_q[j] / D_R[i]
    R*[i] = R[i] / D_R[i]
    dq[j] = dq*[j] · D_q[j]

this is ``D_R = 1/L`` and ``D_q = 1``.
"""
from dataclasses import dataclass
from typing import Tuple, TYPE_CHECKING

import numpy as np
import numpy.typing as npt

if TYPE_CHECKING:
    from .assembly_layout import MatrixCOOPattern

NDArray = npt.NDArray[np.floating]


@dataclass
class ScalingInfo:
    """Precomputed scaling factors for linear system conditioning.

    Attributes
    ----------
    coo_scale : NDArray
        Scale factors for COO values, shape (nnz,).
    rhs_scale : NDArray
        Scale factors for the owned residual vector, shape (n_owned,).
    sol_scale : NDArray
        Scale factors for the owned solution vector, shape (n_owned,).
    row_scale : NDArray
        The local scaling vector ``L`` itself, shape (local_size,).
    """
    coo_scale: NDArray
    rhs_scale: NDArray
    sol_scale: NDArray
    row_scale: NDArray

    def scale_system(self, M_coo: NDArray, R: NDArray) -> Tuple[NDArray, NDArray]:
        """Scale Jacobian COO values and owned residual vector.

        Parameters
        ----------
        M_coo : NDArray, shape (nnz,)
            Unscaled Jacobian in COO value format.
        R : NDArray, shape (n_owned,)
            Unscaled residual vector.

        Returns
        -------
        M_scaled : NDArray, shape (nnz,)
            Scaled Jacobian COO values.
        R_scaled : NDArray, shape (n_owned,)
            Scaled residual vector.
        """
        return M_coo * self.coo_scale, R / self.rhs_scale

    def scale_residual(self, R: NDArray) -> NDArray:
        return R / self.rhs_scale

    def unscale_solution(self, dq_scaled: NDArray) -> NDArray:
        """Recover physical solution increment from scaled solution."""
        return dq_scaled * self.sol_scale


def build_scaling(L: NDArray, matrix_coo: "MatrixCOOPattern", n_owned: int) -> ScalingInfo:
    """Build scaling factors from the local row scaling vector.

    Parameters
    ----------
    L : NDArray
        Row scaling of every local row, shape (local_size,).
    matrix_coo : MatrixCOOPattern
        Sparse matrix structure.
    n_owned : int
        Number of owned rows.

    Returns
    -------
    ScalingInfo

    Raises
    ------
    ValueError
        If an owned row has a non-positive or non-finite scale.
    """
    L = np.asarray(L, dtype=np.float64)
    owned = L[:n_owned]
    bad = ~np.isfinite(owned) | (owned <= 0.)
    if np.any(bad):
        raise ValueError(f"Row scaling must be positive and finite, "
                         f"got {owned[bad][:5]} at rows {np.flatnonzero(bad)[:5]}")

    return ScalingInfo(
        coo_scale=L[matrix_coo.local_rows],
        rhs_scale=1. / owned,
        sol_scale=np.ones(n_owned),
        row_scale=L,
    )
