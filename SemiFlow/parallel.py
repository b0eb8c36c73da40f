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
from mpi4py import MPI
import numpy as np
import numpy.typing as npt

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .layout import EquationLayout

NDArray = npt.NDArray[np.floating]


class GhostScatter:
    """
    Global-to-local scatter of the distributed unknown vector.

    Every rank contributes its owned block, the full vector is gathered with
    ``Allgatherv`` and each rank picks its local buffer (owned rows, ghost
    FVM nodes and scalar slots) through ``layout.local_to_global``.

    Parameters
    ----------
    layout : EquationLayout
        Layout defining the owned blocks and the local buffer.
    comm : MPI.Comm, optional
        MPI communicator (default: MPI.COMM_WORLD)
    """

    def __init__(self, layout: "EquationLayout", comm=MPI.COMM_WORLD) -> None:
        self.layout = layout
        self._mpi_comm = comm
        self._counts = np.diff(layout.rank_starts).astype(np.int64)
        self._displs = layout.rank_starts[:-1].astype(np.int64)

    # ---------------------------
    # MPI properties
    # ---------------------------

    @property
    def rank(self) -> int:
        """MPI rank of this process."""
        return self._mpi_comm.Get_rank()

    @property
    def size(self) -> int:
        """Total number of MPI processes."""
        return self._mpi_comm.Get_size()

    # ---------------------------
    # Communication
    # ---------------------------

    def allgather(self, x_owned: NDArray) -> NDArray:
        """Assemble the full global vector on every rank (collective)."""
        x_owned = np.ascontiguousarray(x_owned, dtype=np.float64)
        if x_owned.shape != (self.layout.n_owned,):
            raise ValueError(f"Owned block must have shape ({self.layout.n_owned},), got {x_owned.shape}")

        if self.size == 1:
            return x_owned.copy()

        x_global = np.empty(self.layout.global_size, dtype=np.float64)
        self._mpi_comm.Allgatherv(x_owned, [x_global, self._counts, self._displs, MPI.DOUBLE])
        return x_global

    def scatter(self, x_owned: NDArray) -> NDArray:
        """Owned block to local buffer including ghosts and slots (collective)."""
        if self.size == 1:
            return np.array(x_owned, dtype=np.float64)
        return self.allgather(x_owned)[self.layout.local_to_global]

    def owned(self, x_local: NDArray) -> NDArray:
        """Owned block of a local buffer."""
        return np.array(x_local[:self.layout.n_owned], dtype=np.float64)

    def allreduce_sum(self, value):
        return self._mpi_comm.allreduce(value, op=MPI.SUM)

    def allreduce_max(self, value):
        return self._mpi_comm.allreduce(value, op=MPI.MAX)
