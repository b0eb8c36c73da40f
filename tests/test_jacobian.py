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
Finite difference verification of the assembled Jacobian.

The Jacobian of the complete system (regions, row surgery, contacts,
circuits and interfaces) is compared against central finite differences of
the residual at a perturbed, non-equilibrium state.
"""
import numpy as np
import pytest
from mpi4py import MPI

from SemiFlow import HAS_PETSC
from SemiFlow.layout import EquationKind
from SemiFlow.simulation import Simulation
from SemiFlow.solver import AssemblyContext

# Skip entire module if running in parallel without PETSc
_parallel_without_petsc = MPI.COMM_WORLD.size > 1 and not HAS_PETSC
pytestmark = pytest.mark.skipif(
    _parallel_without_petsc,
    reason="PETSc required for parallel execution"
)

# Dense finite differences need the full vector on one rank
serial_only = pytest.mark.skipif(MPI.COMM_WORLD.size > 1, reason="serial finite differences")


# =============================================================================
# Configuration Templates
# =============================================================================

DIODE_TEMPLATE = """
options:
    silent: True
mesh:
    type: line
    x: {{start: 0., stop: 2.e-4, num: 11}}
    regions:
        - name: bulk
regions:
    bulk:
        material: Si
{extra}        doping:
            - species: donor
              peak: 1.e+16
              box: {{x: [0., 1.05e-4]}}
            - species: acceptor
              peak: 5.e+16
              box: {{x: [1.05e-4, 2.e-4]}}
boundaries:
    - name: cathode
      type: ohmic
      location: {{axis: x, value: 0.}}
      circuit: {cathode}
    - name: anode
      type: ohmic
      location: {{axis: x, value: 2.e-4}}
      circuit: {anode}
    - name: hub
      type: {hub_type}
      location: {{axis: x, value: 1.e-4}}
      members: [cathode, anode]
solver:
    type: steadystate
    lattice_heating: {lattice}
    energy_balance: {energy_balance}
"""

MOS_TEMPLATE = """
options:
    silent: True
mesh:
    type: rectangle
    x: [0., 0.5e-4, 1.e-4, 1.5e-4]
    y: [0., 0.25e-4, 0.5e-4, 0.75e-4, 1.e-4, 1.25e-4]
    regions:
        - name: substrate
          y: [0., 0.5e-4]
        - name: oxide
          y: [0.5e-4, 1.e-4]
        - name: gate
          y: [1.e-4, 1.25e-4]
regions:
    substrate:
        material: Si
{extra}        doping:
            - species: acceptor
              peak: 1.e+16
    oxide:
        material: SiO2
    gate:
        material: Elec
boundaries:
    - name: source
      type: ohmic
      location: {{lower: [0., 0.], upper: [0., 0.5e-4]}}
    - name: drain
      type: ohmic
      location: {{lower: [1.5e-4, 0.], upper: [1.5e-4, 0.5e-4]}}
      circuit: {{driver: voltage, R: 20., source: 0.1}}
    - name: gate
      type: ohmic
      location: {{axis: y, value: 1.25e-4}}
      circuit: {{driver: voltage, source: 1.0}}
    - name: bottom
      type: neumann
      location: {{axis: y, value: 0.}}
      heat_transfer: 10.
    - name: oxide_charge
      type: interface
      location: {{lower: [0.5e-4, 0.5e-4], upper: [1.e-4, 0.5e-4]}}
      interface_charge: 1.e+11
solver:
    type: steadystate
    lattice_heating: {lattice}
    energy_balance: {energy_balance}
"""

RESISTOR_TEMPLATE = """
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
      circuit: {driver: voltage, R: 1.e-9, source: 1.e-3}
    - name: right
      type: ohmic
      location: {axis: x, value: 1.e-4}
solver:
    type: steadystate
    lattice_heating: True
"""

VOLTAGE = "{driver: voltage, R: 10., source: 0.5}"
GROUND = "{driver: voltage}"

# Field driven generation made visible at the low fields of the coarse diode
FIELD_GENERATION = """        parameters: {ii_bn: 1.e+5, ii_bp: 2.e+5, bbt_B: 1.e+5}
        models: {impact_ionization: True, band_band_tunneling: True}
"""

TRAPS = """        traps:
            - {charge: acceptor, density: 1.e+15, energy: 0.1}
            - {charge: donor, density: 5.e+14, energy: -0.2, sigma_p: 1.e-14}
"""


def make_diode(cathode=GROUND, anode=VOLTAGE, lattice=False, hub=False,
               extra="", energy_balance=False) -> str:
    """Diode configuration; with ``hub`` both electrodes are inter-connected.

    ``extra`` holds additional keys of the semiconductor region.
    """
    return DIODE_TEMPLATE.format(cathode=cathode,
                                 anode=anode,
                                 lattice=lattice,
                                 hub_type='inter_connect' if hub else 'neumann',
                                 extra=extra,
                                 energy_balance=energy_balance)


def make_mos(lattice=False, extra="", energy_balance=False) -> str:
    return MOS_TEMPLATE.format(lattice=lattice, extra=extra, energy_balance=energy_balance)


# =============================================================================
# Helper Functions
# =============================================================================

def perturbed_state(sim, seed: int = 1) -> np.ndarray:
    """Stored state with random perturbations of all unknowns."""
    orch = sim.orchestrator
    rng = np.random.default_rng(seed)
    x = orch.owned_solution().copy()
    kind = orch.row_kind

    psi = kind == EquationKind.PSI
    carrier = (kind == EquationKind.N) | (kind == EquationKind.P)
    lattice = kind == EquationKind.T
    hot = (kind == EquationKind.TN) | (kind == EquationKind.TP)
    electrode = kind == EquationKind.ELECTRODE

    x[psi] += rng.uniform(-0.02, 0.02, psi.sum())
    x[carrier] *= rng.uniform(0.8, 1.2, carrier.sum())
    x[lattice] += rng.uniform(0., 5., lattice.sum())
    x[hot] += rng.uniform(0., 200., hot.sum())
    x[electrode] += rng.uniform(-0.1, 0.1, electrode.sum())
    return x


def compute_fd_jacobian(orch, x0: np.ndarray, ctx: AssemblyContext, eps: float = 1e-6) -> np.ndarray:
    """Compute Jacobian using central finite differences.

    Uses relative perturbation for better accuracy across different variable
    scales (carrier densities are many orders of magnitude above potentials).
    """
    n = len(x0)
    J_fd = np.zeros((n, n))

    for j in range(n):
        eps_j = max(eps, eps * abs(x0[j]))

        x_plus = x0.copy()
        x_minus = x0.copy()
        x_plus[j] += eps_j
        x_minus[j] -= eps_j

        R_plus = orch.form_function(x_plus, ctx)[:n]
        R_minus = orch.form_function(x_minus, ctx)[:n]

        J_fd[:, j] = (R_plus - R_minus) / (2 * eps_j)

    return J_fd


def scaled_error(sim, x0: np.ndarray, ctx: AssemblyContext) -> float:
    """Relative Frobenius error of the row/column scaled Jacobian."""
    orch = sim.orchestrator
    n = orch.layout.n_owned

    M = orch.dense_jacobian(x0, ctx)[:n, :n]
    J_fd = compute_fd_jacobian(orch, x0, ctx)

    _, L = orch.fill()
    D_row = L[:n, None]
    D_col = np.maximum(np.abs(x0), 1.)[None, :]

    diff = np.linalg.norm(D_row * (M - J_fd) * D_col)
    ref = np.linalg.norm(D_row * J_fd * D_col)
    return diff / (ref + 1e-300)


def steady(**kwargs) -> AssemblyContext:
    return AssemblyContext(T_ext=300., **kwargs)


# =============================================================================
# Tests
# =============================================================================

@serial_only
class TestJacobianFiniteDifference:
    """Assembled Jacobian against central finite differences."""

    @pytest.mark.parametrize("lattice", [False, True])
    def test_diode(self, lattice: bool):
        sim = Simulation.from_string(make_diode(lattice=lattice))
        x0 = perturbed_state(sim)

        rel_err = scaled_error(sim, x0, steady())
        assert rel_err < 1e-5, f"Jacobian mismatch (lattice={lattice}): rel_err={rel_err:.2e}"

    def test_diode_equilibrium(self):
        sim = Simulation.from_string(make_diode())
        x0 = perturbed_state(sim, seed=2)

        rel_err = scaled_error(sim, x0, steady(equilibrium=True))
        assert rel_err < 1e-5

    def test_current_driven(self):
        sim = Simulation.from_string(make_diode(anode="{driver: current, source: 1.e-6}"))
        x0 = perturbed_state(sim, seed=3)

        rel_err = scaled_error(sim, x0, steady())
        assert rel_err < 1e-5

    @pytest.mark.parametrize("bdf2", [False, True])
    def test_transient_with_displacement(self, bdf2: bool):
        anode = "{driver: voltage, R: 10., C: 1.e-12, L: 1.e-9, source: 0.5}"
        sim = Simulation.from_string(make_diode(anode=anode))
        x0 = perturbed_state(sim, seed=4)

        ctx = steady(transient=True, bdf2=bdf2, dt=1e-11, dt_last=2e-11, time=1e-11)
        rel_err = scaled_error(sim, x0, ctx)
        assert rel_err < 1e-5, f"Jacobian mismatch (bdf2={bdf2}): rel_err={rel_err:.2e}"

    def test_inter_connect(self):
        cathode = "{driver: inter_connect, R: 100.}"
        anode = "{driver: inter_connect, R: 50.}"
        sim = Simulation.from_string(make_diode(cathode=cathode, anode=anode, hub=True))
        x0 = perturbed_state(sim, seed=5)

        rel_err = scaled_error(sim, x0, steady())
        assert rel_err < 1e-5

    @pytest.mark.parametrize("lattice", [False, True])
    def test_mos_2d(self, lattice: bool):
        sim = Simulation.from_string(make_mos(lattice=lattice))
        x0 = perturbed_state(sim, seed=6)

        rel_err = scaled_error(sim, x0, steady())
        assert rel_err < 1e-5, f"Jacobian mismatch (lattice={lattice}): rel_err={rel_err:.2e}"

    def test_resistor_joule_heating(self):
        sim = Simulation.from_string(RESISTOR_TEMPLATE)
        x0 = perturbed_state(sim, seed=7)

        rel_err = scaled_error(sim, x0, steady())
        assert rel_err < 1e-5

    @pytest.mark.parametrize("lattice", [False, True])
    def test_diode_field_generation_and_traps(self, lattice: bool):
        sim = Simulation.from_string(make_diode(lattice=lattice, extra=FIELD_GENERATION + TRAPS))
        x0 = perturbed_state(sim, seed=8)

        rel_err = scaled_error(sim, x0, steady())
        assert rel_err < 1e-5, f"Jacobian mismatch (lattice={lattice}): rel_err={rel_err:.2e}"

    def test_mos_2d_field_generation(self):
        sim = Simulation.from_string(make_mos(extra=FIELD_GENERATION + TRAPS))
        x0 = perturbed_state(sim, seed=9)

        rel_err = scaled_error(sim, x0, steady())
        assert rel_err < 1e-5

    @pytest.mark.parametrize("lattice", [False, True])
    def test_diode_energy_balance(self, lattice: bool):
        sim = Simulation.from_string(make_diode(lattice=lattice, energy_balance=True, extra=TRAPS))
        x0 = perturbed_state(sim, seed=10)

        rel_err = scaled_error(sim, x0, steady())
        assert rel_err < 1e-5, f"Jacobian mismatch (lattice={lattice}): rel_err={rel_err:.2e}"

    @pytest.mark.parametrize("bdf2", [False, True])
    def test_energy_balance_transient(self, bdf2: bool):
        sim = Simulation.from_string(make_diode(lattice=True, energy_balance=True))
        x0 = perturbed_state(sim, seed=11)

        ctx = steady(transient=True, bdf2=bdf2, dt=1e-12, dt_last=2e-12, time=1e-12)
        rel_err = scaled_error(sim, x0, ctx)
        assert rel_err < 1e-5, f"Jacobian mismatch (bdf2={bdf2}): rel_err={rel_err:.2e}"

    def test_mos_2d_energy_balance(self):
        sim = Simulation.from_string(make_mos(lattice=True, energy_balance=True))
        x0 = perturbed_state(sim, seed=12)

        rel_err = scaled_error(sim, x0, steady())
        assert rel_err < 1e-5


@serial_only
def test_jacobian_pattern_is_fixed():
    """Assembly never writes outside the pattern fixed at setup."""
    sim = Simulation.from_string(make_mos())
    orch = sim.orchestrator
    nnz = orch.assembly.matrix_coo.nnz

    x0 = perturbed_state(sim)
    values = orch.form_jacobian(x0, steady())

    assert values.shape == (nnz,)
    assert orch.assembly.matrix_coo.nnz == nnz
    assert np.all(np.isfinite(values))


@serial_only
def test_field_generation_is_off_in_equilibrium():
    """Impact ionization and band-to-band tunneling only act out of equilibrium."""
    plain = Simulation.from_string(make_diode())
    models = Simulation.from_string(make_diode(extra=FIELD_GENERATION))
    x0 = perturbed_state(plain, seed=13)

    r_plain = plain.orchestrator.form_function(x0, steady(equilibrium=True))
    r_models = models.orchestrator.form_function(x0, steady(equilibrium=True))
    np.testing.assert_array_equal(r_models, r_plain)

    r_plain = plain.orchestrator.form_function(x0, steady())
    r_models = models.orchestrator.form_function(x0, steady())
    kind = plain.orchestrator.row_kind
    carrier = (kind == EquationKind.N) | (kind == EquationKind.P)
    assert np.any(r_models[carrier] != r_plain[carrier])
    psi = kind == EquationKind.PSI
    np.testing.assert_array_equal(r_models[psi], r_plain[psi])


@serial_only
def test_energy_balance_layout():
    sim = Simulation.from_string(make_diode(energy_balance=True))
    layout = sim.orchestrator.layout
    assert layout.energy_balance
    assert layout.variables[0] == ('psi', 'n', 'p', 'Tn', 'Tp')
    assert np.count_nonzero(layout.row_kind == EquationKind.TN) == 11

    # Carrier temperatures start at the lattice temperature
    data = sim.regions[0].data
    np.testing.assert_array_equal(data.Tn, data.T)
    np.testing.assert_array_equal(data.Tp, data.T)
