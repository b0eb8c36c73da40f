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
"""
Linear solve of the scaled Newton system ``M dx = -R``.

Every rank owns a contiguous block of global rows (its FVM nodes, plus the
boundary slots on the last rank) and hands the COO values of the fixed
pattern together with its owned residual to the backend. Serial runs use
SciPy unless PETSc is requested, parallel runs need PETSc. A failed solve
raises ``NonlinearDivergence`` on all ranks so that the caller can retry
with a smaller step.
"""
import numpy as np
import numpy.typing as npt
from mpi4py import MPI
from scipy.sparse import csr_matrix
from scipy.sparse.linalg import LinearOperator, gmres, spilu, splu

from .. import HAS_PETSC
from ..errors import NonlinearDivergence
from ..logging import get_logger
from .assembly_layout import LinearSystemInfo

if HAS_PETSC:
    from petsc4py import PETSc

NDArray = npt.NDArray[np.floating]

logger = get_logger("semiflow.linear")

# Krylov settings of the iterative solvers
KRYLOV_RTOL = 1e-10
KRYLOV_ATOL = 1e-20
KRYLOV_MAXIT = 1000

# Global size above which the PETSc ILU uses two fill levels
ILU2_THRESHOLD = 110000


class LinearSystem:
    """Owned-row block of the Newton matrix.

    Parameters
    ----------
    info : LinearSystemInfo
        Sizes and global COO indices of the layout.
    solver_type : str, optional
        'direct' or 'iterative'.
    comm : MPI communicator, optional
    """
    backend = ''

    def __init__(self, info: LinearSystemInfo, solver_type: str = 'direct', comm=MPI.COMM_WORLD) -> None:
        self.info = info
        self.solver_type = solver_type
        self.comm = comm
        self.iterations = 0
        logger.debug(f"Linear system: {self.backend} {solver_type}, {info.global_size} rows, "
                     f"{len(info.mat_global_rows)} local entries")

    def assemble(self, coo_values: NDArray, R_owned: NDArray) -> None:
        raise NotImplementedError

    def solve(self) -> NDArray:
        """Owned block of the Newton update."""
        raise NotImplementedError

    def _checked(self, dx: NDArray, converged: bool = True, reason: str = 'non-finite update') -> NDArray:
        ok = bool(converged) and bool(np.all(np.isfinite(dx)))
        if not self.comm.allreduce(ok, op=MPI.LAND):
            raise NonlinearDivergence(f"{self.backend} {self.solver_type} linear solve failed: {reason}")
        return dx


class ScipySystem(LinearSystem):
    """Serial SuperLU, or GMRES preconditioned with an incomplete LU."""
    backend = 'SciPy'

    def __init__(self, info: LinearSystemInfo, solver_type: str = 'direct', comm=MPI.COMM_WORLD) -> None:
        if info.local_size != info.global_size:
            raise RuntimeError("The SciPy backend is serial only, parallel runs need petsc4py")
        super().__init__(info, solver_type, comm)
        self._mat = None
        self._rhs = None

    def assemble(self, coo_values: NDArray, R_owned: NDArray) -> None:
        info = self.info
        size = info.global_size
        # Duplicate (row, col) pairs are summed
        self._mat = csr_matrix((coo_values, (info.mat_global_rows, info.mat_global_cols)), shape=(size, size))
        self._rhs = np.zeros(size)
        np.add.at(self._rhs, info.rhs_global_rows, -R_owned)

    def solve(self) -> NDArray:
        if self._mat is None:
            raise RuntimeError("assemble() must be called before solve()")

        A = self._mat.tocsc()
        converged, reason = True, 'non-finite update'
        try:
            if self.solver_type == 'iterative':
                ilu = spilu(A)
                dx, info = gmres(A, self._rhs, M=LinearOperator(A.shape, ilu.solve),
                                 rtol=KRYLOV_RTOL, atol=KRYLOV_ATOL, maxiter=KRYLOV_MAXIT)
                self.iterations = info if info > 0 else 0
                converged, reason = info == 0, f"GMRES info {info}"
            else:
                dx = splu(A).solve(self._rhs)
        except RuntimeError as err:
            # Exactly singular factor
            raise NonlinearDivergence(f"SciPy {self.solver_type} linear solve failed: {err}") from err
        return self._checked(np.asarray(dx), converged, reason)


class PETScSystem(LinearSystem):
    """Distributed AIJ matrix with COO preallocation, MUMPS LU or BiCGSTAB with ILU."""
    backend = 'PETSc'

    def __init__(self, info: LinearSystemInfo, solver_type: str = 'direct', comm=MPI.COMM_WORLD) -> None:
        super().__init__(info, solver_type, comm)
        pcomm = PETSc.Comm(comm)
        sizes = (info.local_size, info.global_size)

        self.mat = PETSc.Mat().create(pcomm)
        self.mat.setSizes([sizes, sizes])
        self.mat.setType('aij')
        self.mat.setFromOptions()
        # Entries repeated across ranks are summed
        self.mat.setPreallocationCOO(info.mat_global_rows.astype(PETSc.IntType),
                                     info.mat_global_cols.astype(PETSc.IntType))
        self.mat.setUp()

        self.rhs = self.mat.createVecLeft()
        self.sol = self.mat.createVecRight()
        self._rhs_rows = info.rhs_global_rows.astype(PETSc.IntType)

        self.ksp = PETSc.KSP().create(pcomm)
        self.ksp.setOperators(self.mat)
        pc = self.ksp.getPC()
        if solver_type == 'iterative':
            self.ksp.setType('bcgs')
            self.ksp.setTolerances(rtol=KRYLOV_RTOL, atol=KRYLOV_ATOL, max_it=KRYLOV_MAXIT)
            pc.setType('ilu')
            pc.setFactorLevels(2 if info.global_size > ILU2_THRESHOLD else 1)
        else:
            self.ksp.setType('preonly')
            pc.setType('lu')
            pc.setFactorSolverType('mumps')
        self.ksp.setFromOptions()

    def assemble(self, coo_values: NDArray, R_owned: NDArray) -> None:
        self.mat.setValuesCOO(coo_values, PETSc.InsertMode.INSERT_VALUES)
        self.rhs.zeroEntries()
        self.rhs.setValues(self._rhs_rows, -R_owned, PETSc.InsertMode.INSERT_VALUES)

        self.mat.assemblyBegin(PETSc.Mat.AssemblyType.FINAL)
        self.mat.assemblyEnd(PETSc.Mat.AssemblyType.FINAL)
        self.rhs.assemblyBegin()
        self.rhs.assemblyEnd()

    def solve(self) -> NDArray:
        try:
            self.ksp.solve(self.rhs, self.sol)
        except PETSc.Error as err:
            raise NonlinearDivergence(f"PETSc {self.solver_type} linear solve failed: {err}") from err
        reason = self.ksp.getConvergedReason()
        self.iterations = self.ksp.getIterationNumber()
        return self._checked(self.sol.getArray().copy(), reason > 0, f"KSP reason {reason}")


def create_linear_system(info: LinearSystemInfo, solver_type: str = 'direct',
                         petsc: bool = False, comm=MPI.COMM_WORLD) -> LinearSystem:
    """PETSc backend in parallel runs or on request, SciPy otherwise."""
    if comm.Get_size() > 1 or petsc:
        if not HAS_PETSC:
            raise RuntimeError("petsc4py is required for parallel runs and the 'petsc' option; "
                               "install SemiFlow with the 'petsc' extra")
        return PETScSystem(info, solver_type, comm)
    return ScipySystem(info, solver_type, comm)
