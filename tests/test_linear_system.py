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
Linear backends of the Newton update.
"""
import numpy as np
import pytest
from mpi4py import MPI

from SemiFlow.errors import NonlinearDivergence
from SemiFlow.fvm.assembly_layout import LinearSystemInfo
from SemiFlow.fvm.linear_system import ScipySystem, create_linear_system
from SemiFlow.simulation import Simulation
from SemiFlow.solver import AssemblyContext

serial_only = pytest.mark.skipif(MPI.COMM_WORLD.size > 1, reason="serial linear system")

# 3x3 system with a duplicated diagonal entry in row 0
ROWS = np.array([0, 0, 0, 1, 1, 2, 2])
COLS = np.array([0, 1, 0, 1, 2, 1, 2])


def serial_info(size=3, rows=ROWS, cols=COLS) -> LinearSystemInfo:
    return LinearSystemInfo(local_size=size,
                            global_size=size,
                            mat_global_rows=rows,
                            mat_global_cols=cols,
                            rhs_global_rows=np.arange(size))


@pytest.mark.parametrize("solver_type", ['direct', 'iterative'])
def test_solve_sums_duplicates(solver_type):
    system = ScipySystem(serial_info(), solver_type, MPI.COMM_SELF)
    values = np.array([2., 1., 2., 3., 1., 1., 5.])
    R = np.array([1., -2., 4.])
    system.assemble(values, R)

    M = np.array([[4., 1., 0.],
                  [0., 3., 1.],
                  [0., 1., 5.]])
    np.testing.assert_allclose(system.solve(), np.linalg.solve(M, -R), rtol=1e-9)


@pytest.mark.parametrize("solver_type", ['direct', 'iterative'])
def test_singular_system_raises_divergence(solver_type):
    system = ScipySystem(serial_info(), solver_type, MPI.COMM_SELF)
    # Row 1 and column 1 vanish
    values = np.array([1., 0., 1., 0., 0., 0., 1.])
    system.assemble(values, np.ones(3))

    with pytest.raises(NonlinearDivergence):
        system.solve()


def test_solve_before_assemble_raises():
    system = ScipySystem(serial_info(), comm=MPI.COMM_SELF)
    with pytest.raises(RuntimeError):
        system.solve()


def test_serial_backend_is_scipy():
    system = create_linear_system(serial_info(), 'direct', petsc=False, comm=MPI.COMM_SELF)
    assert isinstance(system, ScipySystem)


def test_scipy_backend_rejects_distributed_layout():
    info = LinearSystemInfo(local_size=2, global_size=3, mat_global_rows=ROWS, mat_global_cols=COLS,
                            rhs_global_rows=np.arange(2))
    with pytest.raises(RuntimeError):
        ScipySystem(info, comm=MPI.COMM_SELF)


@serial_only
def test_failed_linear_solve_diverges_newton(monkeypatch):
    sim = Simulation.from_string("""
options:
    silent: True
mesh:
    type: line
    x: {start: 0., stop: 1.e-4, num: 6}
    regions:
        - name: line
regions:
    line:
        material: Al
boundaries:
    - name: left
      type: ohmic
      location: {axis: x, value: 0.}
      circuit: {driver: voltage, R: 1., source: 1.}
    - name: right
      type: ohmic
      location: {axis: x, value: 1.e-4}
solver:
    type: steadystate
""")
    orch = sim.orchestrator

    def failing_solve():
        raise NonlinearDivergence("SciPy direct linear solve failed: singular")

    monkeypatch.setattr(orch.linear, 'solve', failing_solve)
    with pytest.raises(NonlinearDivergence) as err:
        orch.iterate(AssemblyContext(T_ext=300.))

    assert "linear solve failed" in str(err.value)
    assert err.value.residual_norm is not None
    # The stored state is ready for a retry
    assert orch._restart is not None
