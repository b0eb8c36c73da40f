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
Solver orchestrator: one nonlinear solve on a fixed unknown layout.

Per Newton iteration every rank runs, in this order,

    scatter -> region residual/Jacobian -> boundary preprocess (electrode
    currents, Jacobian current rows) -> row surgery -> boundary equations
    -> row scaling -> linear solve -> damping and projection

The matrix pattern is fixed at setup: regions and boundaries declare their
entries, the boundaries reserve explicit zeros for every position the row
surgery writes.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import numpy.typing as npt
from mpi4py import MPI

from .errors import NonlinearDivergence
from .fvm.assembly_layout import FVMAssemblyLayout
from .fvm.linear_system import create_linear_system
from .fvm.row_surgery import CooRowOps, RowColumnIndex, RowSurgery
from .fvm.scaling import build_scaling
from .fvm.solution_guards import DAMPING, projection_positive_density_check
from .layout import EquationKind, EquationLayout, build_layout
from .logging import get_logger
from .parallel import GhostScatter

NDArray = npt.NDArray[np.floating]

logger = get_logger("semiflow.solver")


class SolverState(Enum):
    IDLE = 'idle'
    SCATTER = 'scatter'
    REGION_ASSEMBLE = 'region_assemble'
    BOUNDARY_PREPROCESS = 'boundary_preprocess'
    ROW_SURGERY = 'row_surgery'
    BOUNDARY_ASSEMBLE = 'boundary_assemble'
    SCALE = 'scale'
    DAMP_PROJECT = 'damp_project'
    CONVERGED = 'converged'
    DIVERGED = 'diverged'


@dataclass
class AssemblyContext:
    """Time and operating point of one nonlinear solve.

    Attributes
    ----------
    transient : bool
        Include time derivative terms.
    bdf2 : bool
        Use the second order BDF formula (needs two previous steps).
    dt, dt_last : float
        Current and previous step size [s].
    time : float
        Time at the end of the current step [s].
    equilibrium : bool
        Ground all voltage and current driven electrodes, switch generation off.
    T_ext : float
        Ambient temperature [K].
    """
    transient: bool = False
    bdf2: bool = False
    dt: float = 1.
    dt_last: float = 1.
    time: float = 0.
    equilibrium: bool = False
    T_ext: float = 300.

    @property
    def consts(self) -> Dict[str, float]:
        if not self.transient:
            return {'dt': 1., 'dt_last': 1.}
        return {'dt': float(self.dt), 'dt_last': float(self.dt_last)}


NEWTON_DEFAULTS = {
    'max_iteration': 30,
    'damping': 'potential',
    'potential_update': 1.0,
    'poisson_abs_toler': 1e-26,
    'elec_continuity_abs_toler': 5e-18,
    'hole_continuity_abs_toler': 5e-18,
    'heat_equation_abs_toler': 1e-11,
    'elec_energy_abs_toler': 1e-18,
    'hole_energy_abs_toler': 1e-18,
    'electrode_abs_toler': 1e-9,
    'relative_toler': 1e-5,
    'linear_solver': 'direct',
    'petsc': False,
}

# Residual norm name and tolerance key per equation kind
NORMS = {
    EquationKind.PSI: ('poisson', 'poisson_abs_toler'),
    EquationKind.N: ('electron', 'elec_continuity_abs_toler'),
    EquationKind.P: ('hole', 'hole_continuity_abs_toler'),
    EquationKind.T: ('heat', 'heat_equation_abs_toler'),
    EquationKind.ELECTRODE: ('electrode', 'electrode_abs_toler'),
    EquationKind.TN: ('electron energy', 'elec_energy_abs_toler'),
    EquationKind.TP: ('hole energy', 'hole_energy_abs_toler'),
}


@dataclass
class NewtonResult:
    x: NDArray
    iterations: int
    norms: Dict[str, float] = field(default_factory=dict)
    relative: float = np.inf


class Orchestrator:
    """Assembles and solves the coupled system of all regions and boundaries.

    Parameters
    ----------
    mesh : Mesh
        Mesh with node ownership set.
    regions : sequence of Region
        Region assemblers in handle order.
    boundaries : sequence of BoundaryCondition
        Attached boundary conditions, in assembly order.
    options : dict, optional
        Newton options, see ``NEWTON_DEFAULTS``.
    comm : MPI communicator, optional
    """

    def __init__(self, mesh, regions: Sequence, boundaries: Sequence,
                 options: Optional[dict] = None, comm=MPI.COMM_WORLD) -> None:
        self.mesh = mesh
        self.regions = list(regions)
        self.boundaries = list(boundaries)
        self.options = dict(NEWTON_DEFAULTS)
        if options is not None:
            self.options.update(options)
        self.comm = comm
        self.state = SolverState.IDLE
        self.layout: Optional[EquationLayout] = None
        # Start point reloaded by diverged_recovery, consumed by the next iterate
        self._restart: Optional[Tuple[NDArray, NDArray]] = None

        slot = 0
        for bc in self.boundaries:
            bc.set_slots(np.arange(slot, slot + bc.n_slots))
            slot += bc.n_slots
        self.n_slots = slot

    # ---------------------------
    # Setup
    # ---------------------------

    def setup(self, lattice: bool = False, energy_balance: bool = False) -> EquationLayout:
        """Build the layout, the matrix pattern and the linear system for a variable set."""
        if (self.layout is not None and self.layout.lattice == lattice
                and self.layout.energy_balance == energy_balance):
            return self.layout

        layout = build_layout(self.mesh, self.regions, self.n_slots, lattice, self.comm,
                              energy_balance=energy_balance)

        declarations = []
        for reg in self.regions:
            rows, cols = reg.jacobian_pattern(layout)
            declarations.append((self._term(reg), rows, cols))
        for bc in self.boundaries:
            rows, cols = bc.jacobian_pattern(layout)
            declarations.append((self._term(bc), rows, cols))

        declared = RowColumnIndex(np.concatenate([d[1] for d in declarations]),
                                  np.concatenate([d[2] for d in declarations]),
                                  layout.local_size)
        reserved = [bc.reserve_pattern(layout, declared) for bc in self.boundaries]

        self.assembly = FVMAssemblyLayout.build(declarations, reserved, layout)
        coo = self.assembly.matrix_coo
        index = RowColumnIndex(coo.local_rows, coo.local_cols, layout.local_size)

        self.current_ops = []
        for bc in self.boundaries:
            plan = bc.current_plan(layout)
            if len(plan):
                self.current_ops.append((bc, CooRowOps.from_surgery(plan, coo, self.assembly.lookup, index)))
        self.surgery = RowSurgery.concat(bc.surgery(layout) for bc in self.boundaries)
        self.surgery_ops = CooRowOps.from_surgery(self.surgery, coo, self.assembly.lookup, index)

        self.scatterer = GhostScatter(layout, self.comm)
        self.row_kind = layout.row_kind[:layout.n_owned]
        self.row_type = layout.row_region_type()[:layout.n_owned]
        self.layout = layout
        self._restart = None
        self._init_linear_system()

        logger.debug(f"Layout: {layout.global_size} unknowns, {self.assembly.matrix_coo.nnz} local entries, "
                     f"{len(self.surgery.src)} merged rows, {len(self.surgery.clear)} cleared rows")
        return layout

    def _init_linear_system(self) -> None:
        self.linear = create_linear_system(self.assembly.get_system_info(), self.options['linear_solver'],
                                           self.options['petsc'], self.comm)

    @staticmethod
    def _term(obj) -> str:
        return f"{type(obj).__name__}:{obj.name}"

    # ---------------------------
    # Vectors
    # ---------------------------

    def fill(self) -> Tuple[NDArray, NDArray]:
        """Local unknown vector and row scaling from the stored node data and circuit state."""
        layout = self.layout
        x = np.zeros(layout.local_size)
        L = np.ones(layout.local_size)
        for reg in self.regions:
            reg.fill_value(x, L, layout)
        for bc in self.boundaries:
            bc.fill_value(x, L, layout)
        return x, L

    def scatter(self, x_owned: NDArray) -> NDArray:
        self.state = SolverState.SCATTER
        return self.scatterer.scatter(x_owned)

    # ---------------------------
    # Assembly
    # ---------------------------

    def form_function(self, x_owned: NDArray, ctx: AssemblyContext) -> NDArray:
        """Local residual vector at ``x_owned`` (collective)."""
        layout = self.layout
        x = self.scatter(x_owned)
        r = np.zeros(layout.local_size)

        self.state = SolverState.REGION_ASSEMBLE
        for reg in self.regions:
            reg.residual(x, r, layout, ctx)

        self.state = SolverState.BOUNDARY_PREPROCESS
        for bc in self.boundaries:
            bc.preprocess(x, r, layout, ctx, self.comm)

        self.state = SolverState.ROW_SURGERY
        self.surgery.apply_to_vector(r)

        self.state = SolverState.BOUNDARY_ASSEMBLE
        for bc in self.boundaries:
            bc.residual(x, r, layout, ctx)
        return r

    def form_jacobian(self, x_owned: NDArray, ctx: AssemblyContext) -> NDArray:
        """COO values of the Jacobian at ``x_owned`` (collective)."""
        layout = self.layout
        maps = self.assembly.term_maps
        x = self.scatter(x_owned)
        values = np.zeros(self.assembly.matrix_coo.nnz)

        self.state = SolverState.REGION_ASSEMBLE
        for reg in self.regions:
            np.add.at(values, maps[self._term(reg)], reg.jacobian(x, layout, ctx))

        self.state = SolverState.BOUNDARY_PREPROCESS
        for bc, ops in self.current_ops:
            ops.apply(values, factor=bc.current_factor(ctx))

        self.state = SolverState.ROW_SURGERY
        self.surgery_ops.apply(values)

        self.state = SolverState.BOUNDARY_ASSEMBLE
        for bc in self.boundaries:
            np.add.at(values, maps[self._term(bc)], bc.jacobian(x, layout, ctx))
        return values

    def dense_jacobian(self, x_owned: NDArray, ctx: AssemblyContext) -> NDArray:
        """Jacobian as a dense (local x local) array, serial diagnostics."""
        values = self.form_jacobian(x_owned, ctx)
        return self.assembly.to_dense(values, self.layout.local_size)

    # ---------------------------
    # Newton
    # ---------------------------

    def residual_norms(self, r: NDArray) -> Dict[str, float]:
        """L2 norm of the owned residual per equation kind (collective)."""
        owned = r[:self.layout.n_owned]
        local = np.array([np.sum(owned[self.row_kind == kind]**2) for kind in NORMS])
        total = np.empty_like(local)
        self.comm.Allreduce(local, total, op=MPI.SUM)
        return {NORMS[kind][0]: float(np.sqrt(v)) for kind, v in zip(NORMS, total)}

    def relative_update(self, dx: NDArray, x: NDArray) -> float:
        """Largest ``|dx_k| / max(|x_k|, 1)`` over the equation kinds (collective)."""
        local = np.zeros(2 * len(NORMS))
        for q, kind in enumerate(NORMS):
            mask = self.row_kind == kind
            local[2 * q] = np.sum(dx[mask]**2)
            local[2 * q + 1] = np.sum(x[mask]**2)
        total = np.empty_like(local)
        self.comm.Allreduce(local, total, op=MPI.SUM)
        rel = np.sqrt(total[0::2]) / np.maximum(np.sqrt(total[1::2]), 1.)
        return float(rel.max())

    def _abs_converged(self, norms: Dict[str, float]) -> bool:
        return all(norms[name] < self.options[key] for name, key in NORMS.values())

    def damp(self, x: NDArray, dx: NDArray, ctx: AssemblyContext) -> Tuple[NDArray, bool, bool]:
        """Damped update and projected candidate point."""
        self.state = SolverState.DAMP_PROJECT
        name = self.options['damping']
        if name == 'potential':
            dx, changed_y, _ = DAMPING[name](x, dx, self.row_kind, self.row_type, ctx.T_ext,
                                             potential_update=self.options['potential_update'], comm=self.comm)
        else:
            dx, changed_y, _ = DAMPING[name](x, dx, self.row_kind, self.row_type, ctx.T_ext, comm=self.comm)
        x_new, changed_w = projection_positive_density_check(x + dx, self.row_kind, ctx.T_ext, comm=self.comm)
        return x_new, changed_y, changed_w

    def newton(self, x: NDArray, ctx: AssemblyContext) -> NewtonResult:
        """Damped Newton iteration from the owned vector ``x``.

        Converged when every residual norm is below its absolute tolerance
        or when the relative update falls below ``relative_toler``.

        Raises
        ------
        NonlinearDivergence
            After ``max_iteration`` iterations, on a non-finite residual or a failed linear solve.
        """
        opts = self.options
        n_owned = self.layout.n_owned
        x = np.array(x, dtype=np.float64)

        logger.debug(61 * '-')
        logger.debug(f"{'Iteration':<10s} {'Poisson':<12s} {'Electron':<12s} {'Hole':<12s} {'Update':<12s}")
        logger.debug(61 * '-')

        rel = np.inf
        norms = {}
        for it in range(opts['max_iteration'] + 1):
            r = self.form_function(x, ctx)
            norms = self.residual_norms(r)
            if not all(np.isfinite(v) for v in norms.values()):
                raise NonlinearDivergence("Non-finite residual", it)

            if self._abs_converged(norms) or rel < opts['relative_toler']:
                self.state = SolverState.CONVERGED
                return NewtonResult(x=x, iterations=it, norms=norms, relative=rel)

            if it == opts['max_iteration']:
                break

            values = self.form_jacobian(x, ctx)

            self.state = SolverState.SCALE
            M, R = self.scaling.scale_system(values, r[:n_owned])
            self.linear.assemble(M, R)
            try:
                dx = self.scaling.unscale_solution(self.linear.solve())
            except NonlinearDivergence as err:
                raise NonlinearDivergence(str(err), it, norms['poisson']) from err

            x_new, changed_y, changed_w = self.damp(x, dx, ctx)
            rel = self.relative_update(x_new - x, x)
            x = x_new

            logger.debug(f"{it:<10d} {norms['poisson']:<12.4e} {norms['electron']:<12.4e} "
                         f"{norms['hole']:<12.4e} {rel:<12.4e}"
                         + (" damped" if changed_y else "") + (" projected" if changed_w else ""))

        self.state = SolverState.DIVERGED
        raise NonlinearDivergence(f"Newton did not converge in {opts['max_iteration']} iterations",
                                  opts['max_iteration'], norms.get('poisson'))

    # ---------------------------
    # Solve step
    # ---------------------------

    def iterate(self, ctx: AssemblyContext) -> NewtonResult:
        """Solve from the stored state.

        After a divergence the start point is the one reloaded by
        ``diverged_recovery``; otherwise it is filled from the node data.
        """
        if self._restart is not None:
            x, L = self._restart
            self._restart = None
        else:
            x, L = self.fill()
        self.scaling = build_scaling(L, self.assembly.matrix_coo, self.layout.n_owned)
        try:
            return self.newton(x[:self.layout.n_owned], ctx)
        except NonlinearDivergence:
            self.state = SolverState.DIVERGED
            self._restart = self.diverged_recovery()
            raise

    def diverged_recovery(self) -> Tuple[NDArray, NDArray]:
        """Roll back the circuits and reload the last accepted state into ``x`` and ``L``."""
        for bc in self.boundaries:
            bc.rollback()
        x = np.zeros(self.layout.local_size)
        L = np.ones(self.layout.local_size)
        for reg in self.regions:
            reg.reload(x, L, self.layout)
        for bc in self.boundaries:
            bc.fill_value(x, L, self.layout)
        logger.info("Diverged iteration: reloaded last accepted state")
        return x, L

    def update_solution(self, x_owned: NDArray, ctx: AssemblyContext) -> None:
        """Commit an accepted solution to node data and boundary state."""
        self._restart = None
        x = self.scatter(x_owned)
        for reg in self.regions:
            reg.update_solution(x, self.layout)
            if ctx.transient:
                reg.data.shift_history()
        for bc in self.boundaries:
            bc.update(ctx)
        self.state = SolverState.IDLE

    def reject(self) -> None:
        """Discard a converged but rejected step (LTE too large)."""
        for bc in self.boundaries:
            bc.rollback()
        self.state = SolverState.IDLE

    def start_transient(self) -> None:
        self._restart = None
        for reg in self.regions:
            reg.data.start_history()

    def owned_solution(self) -> NDArray:
        """Owned block of the stored state."""
        x, _ = self.fill()
        return x[:self.layout.n_owned]
