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
End-to-end runs of the simulation driver on small devices.
"""
import numpy as np
import pytest
from mpi4py import MPI

from SemiFlow.constants import E_CHARGE, thermal_voltage
from SemiFlow.errors import BoundaryConfigurationError, NonlinearDivergence
from SemiFlow.material import get_material
from SemiFlow.simulation import Simulation
from SemiFlow.solver import AssemblyContext

serial_only = pytest.mark.skipif(MPI.COMM_WORLD.size > 1, reason="serial node data")

SIGMA_AL = 3.77e5
LENGTH = 1e-4

RESISTOR = """
options:
    silent: True
mesh:
    type: line
    x: {{start: 0., stop: 1.e-4, num: 11}}
    regions:
        - name: line
regions:
    line:
        material: Al
boundaries:
    - name: left
      type: ohmic
      location: {{axis: x, value: 0.}}
      circuit: {{driver: voltage, R: 1., C: 1.e-12, source: {source}}}
    - name: right
      type: ohmic
      location: {{axis: x, value: 1.e-4}}
solver:
{solver}
"""

BAR = """
options:
    silent: True
mesh:
    type: line
    x: {start: 0., stop: 1.e-4, num: 41}
    z_width: 1.e-8
    regions:
        - name: bar
regions:
    bar:
        material: Si
        doping:
            - species: donor
              peak: 1.e+16
boundaries:
    - name: left
      type: ohmic
      location: {axis: x, value: 0.}
      circuit: {source: 0.1}
    - name: right
      type: ohmic
      location: {axis: x, value: 1.e-4}
solver:
    type: steadystate
"""

DIODE = """
options:
    silent: True
mesh:
    type: line
    x: {start: 0., stop: 2.e-4, num: 81}
    z_width: 1.e-8
    regions:
        - name: bulk
regions:
    bulk:
        material: Si
        doping:
            - species: donor
              peak: 1.e+16
              box: {x: [0., 1.e-4]}
            - species: acceptor
              peak: 1.e+17
              box: {x: [1.e-4, 2.e-4]}
boundaries:
    - name: cathode
      type: ohmic
      location: {axis: x, value: 0.}
    - name: anode
      type: ohmic
      location: {axis: x, value: 2.e-4}
"""


def resistor(source=1.0, solver="    type: steadystate"):
    return Simulation.from_string(RESISTOR.format(source=source, solver=solver))


def series_current(V):
    R_device = LENGTH / SIGMA_AL
    return V / (1. + R_device)


def test_resistor_steady_state():
    sim = resistor()
    history = sim.run()

    last = history[-1]
    assert last['left_I'] == pytest.approx(series_current(1.), rel=1e-6)
    assert last['right_I'] == pytest.approx(-series_current(1.), rel=1e-6)
    assert abs(last['right_V']) < 1e-12


@serial_only
def test_resistor_potential_is_referred_to_the_electrodes():
    sim = resistor()
    history = sim.run()
    last = history[-1]

    u = sim.regions[0].data.psi
    assert u[0] == pytest.approx(last['left_V'], rel=1e-12)
    assert abs(u[-1]) < 1e-18

    # Ohm's law on the stored potentials resolves the current to round-off
    assert (u[0] - u[-1]) * SIGMA_AL / LENGTH == pytest.approx(last['left_I'], rel=1e-9)


def test_retry_starts_from_reloaded_state(monkeypatch):
    sim = resistor()
    orch = sim.orchestrator
    ctx = AssemblyContext(T_ext=300.)

    orch.options['max_iteration'] = 0
    with pytest.raises(NonlinearDivergence):
        orch.iterate(ctx)

    x_reloaded, _ = orch._restart
    np.testing.assert_array_equal(x_reloaded, orch.fill()[0])

    fills = []
    original_fill = orch.fill
    monkeypatch.setattr(orch, 'fill', lambda: fills.append(1) or original_fill())

    orch.options['max_iteration'] = 30
    res = orch.iterate(ctx)
    assert fills == []
    assert orch._restart is None
    assert res.iterations > 0


def test_equilibrium_grounds_electrodes():
    sim = resistor()
    sim.equilibrium()

    row = sim.history[-1]
    assert abs(row['left_I']) < 1e-9
    assert abs(row['left_V']) < 1e-9


def test_dcsweep():
    sim = resistor(solver="    type: dcsweep\n    dcsweep: {electrode: left, start: 0., stop: 0.2, step: 0.1}")
    history = sim.run()

    points = [row for row in history if 'source' in row]
    np.testing.assert_allclose([p['source'] for p in points], [0., 0.1, 0.2], atol=1e-12)
    np.testing.assert_allclose([p['left_I'] for p in points],
                               [series_current(v) for v in (0., 0.1, 0.2)], rtol=1e-6, atol=1e-12)


def test_transient_follows_ramp():
    source = "{type: pulse, v1: 0., v2: 1., td: 0., tr: 1.e-11, pw: 1.e-9}"
    solver = ("    type: transient\n"
              "    transient: {t_stop: 5.e-12, dt: 1.e-12}")
    sim = resistor(source=source, solver=solver)
    history = sim.run()

    steps = [row for row in history if 'dt' in row]
    assert len(steps) == 5
    assert steps[-1]['time'] == pytest.approx(5e-12)
    np.testing.assert_allclose([s['left_I'] for s in steps],
                               [series_current(0.1 * k) for k in range(1, 6)], rtol=1e-4)


def test_ohmic_bar_current():
    sim = Simulation.from_string(BAR)
    history = sim.run()

    mat = get_material('Si')
    mu = float(mat.mobility_n(1e16, 300.))
    area = 1e-8
    expected = E_CHARGE * mu * 1e16 * 0.1 * area / LENGTH

    last = history[-1]
    assert last['left_I'] == pytest.approx(expected, rel=0.05)
    assert last['right_I'] == pytest.approx(-last['left_I'], rel=1e-6)


@serial_only
def test_ohmic_bar_energy_balance():
    sim = Simulation.from_string(BAR.replace("    type: steadystate", "    type: steadystate\n    energy_balance: True"))
    history = sim.run()

    mat = get_material('Si')
    mu = float(mat.mobility_n(1e16, 300.))
    expected = E_CHARGE * mu * 1e16 * 0.1 * 1e-8 / LENGTH
    assert history[-1]['left_I'] == pytest.approx(expected, rel=0.05)

    # Weak field: electrons warm by a few kelvin, pinned to the lattice at the contacts
    Tn = sim.regions[0].data.Tn
    assert Tn[0] == pytest.approx(300.) and Tn[-1] == pytest.approx(300.)
    assert 300. < Tn.max() < 320.


@serial_only
def test_diode_equilibrium():
    sim = Simulation.from_string(DIODE)
    res = sim.equilibrium()
    assert res.iterations <= sim.solver_spec['max_iteration']

    row = sim.history[-1]
    assert abs(row['cathode_I']) < 1e-6
    assert abs(row['anode_I']) < 1e-6

    mat = get_material('Si')
    T = 300.
    nie = float(mat.nie(T))
    vbi = thermal_voltage(T) * (np.arcsinh(1e16 / (2. * nie)) + np.arcsinh(1e17 / (2. * nie)))

    psi = sim.regions[0].data.psi
    assert psi[0] - psi[-1] == pytest.approx(vbi, rel=1e-6)

    n, p = sim.regions[0].data.n, sim.regions[0].data.p
    np.testing.assert_allclose(n * p, nie**2, rtol=1e-4)


def test_duplicate_boundary_names_raise():
    text = DIODE.replace("name: anode", "name: cathode")
    with pytest.raises(IOError):
        Simulation.from_string(text)


def test_unknown_hub_member_raises():
    text = DIODE + """
    - name: hub
      type: inter_connect
      members: [cathode, gate]
"""
    with pytest.raises(BoundaryConfigurationError):
        Simulation.from_string(text)


def test_doped_insulator_raises():
    text = RESISTOR.format(source=1., solver="    type: steadystate").replace(
        "material: Al", "material: SiO2\n        doping:\n            - {species: donor, peak: 1.e+16}")
    with pytest.raises(BoundaryConfigurationError):
        Simulation.from_string(text)
