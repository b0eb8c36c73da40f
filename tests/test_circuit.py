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
External circuit equations and the electrode rows they produce.
"""
import warnings
from pathlib import Path

import numpy as np
import pytest
from mpi4py import MPI

from SemiFlow.boundary import ExternalCircuit, InterConnectHub, OhmicContactBC, make_source
from SemiFlow.boundary import circuit as circuit_module
from SemiFlow.boundary.circuit import DCSource, PulseSource, SineSource
from SemiFlow.errors import BoundaryConfigurationError
from SemiFlow.material import DopingProfile, get_material
from SemiFlow.mesh import Mesh
from SemiFlow.regions import create_region
from SemiFlow.solver import AssemblyContext, Orchestrator


STEADY = AssemblyContext()
TRANSIENT = AssemblyContext(transient=True, dt=1e-9, dt_last=1e-9, time=1e-9)


def single_electrode(circuit):
    mesh = Mesh.line(np.linspace(0., 1e-4, 6))
    doping = [DopingProfile(species='donor', shape='uniform', peak=1e16)]
    region = create_region(0, 'bulk', get_material('Si'), mesh, doping=doping)
    bc = OhmicContactBC('contact', [0], circuit)
    bc.attach(mesh, [region])
    orch = Orchestrator(mesh, [region], [bc], comm=MPI.COMM_SELF)
    orch.setup()
    return orch, bc


# ---------------------------
# Circuit equations
# ---------------------------

def test_voltage_driven_ideal_source():
    c = ExternalCircuit(driver='voltage', source=DCSource(5.))
    assert c.residual(I=3.7, Ve=5., ctx=STEADY) == 0.
    assert c.residual(I=0., Ve=4.5, ctx=STEADY) == pytest.approx(-0.5)
    assert c.current_factor(STEADY) == 0.
    assert c.diagonal(STEADY) == 1.


def test_voltage_driven_series_resistance():
    c = ExternalCircuit(driver='voltage', R=100., source=DCSource(1.))
    assert c.residual(I=1e-3, Ve=0.9, ctx=STEADY) == pytest.approx(0.)
    assert c.current_factor(STEADY) == 100.


def test_voltage_driven_transient_rlc():
    c = ExternalCircuit(driver='voltage', R=10., C=1e-12, L=1e-9, source=DCSource(1.))
    c.potential, c.current, c.cap_current = 0.5, 2e-3, 1e-4
    dt = TRANSIENT.dt
    k = c.L / dt + c.R

    expected = k * 1e-3 + (0.7 - 1.) + k * c.C / dt * (0.7 - 0.5) - c.L / dt * (2e-3 + 1e-4)
    assert c.residual(I=1e-3, Ve=0.7, ctx=TRANSIENT) == pytest.approx(expected)
    assert c.current_factor(TRANSIENT) == pytest.approx(k)
    assert c.diagonal(TRANSIENT) == pytest.approx(1. + k * c.C / dt)


def test_current_driven():
    c = ExternalCircuit(driver='current', C=1e-12, source=DCSource(1e-6))
    assert c.residual(I=1e-6, Ve=3., ctx=STEADY) == 0.
    assert c.current_factor(STEADY) == 1.
    assert c.diagonal(STEADY) == 0.

    c.cap_current = 2e-7
    assert c.residual(I=1e-6, Ve=3., ctx=TRANSIENT) == pytest.approx(2e-7)


def test_equilibrium_grounds_voltage_and_current_drivers():
    eq = AssemblyContext(equilibrium=True)
    for driver in ('voltage', 'current'):
        c = ExternalCircuit(driver=driver, R=5., source=DCSource(2.))
        assert c.residual(I=0.1, Ve=-0.5, ctx=eq) == pytest.approx(0.)
        assert c.diagonal(eq) == 1.


def test_update_and_rollback():
    c = ExternalCircuit(driver='voltage', C=1e-12)
    c.residual(I=1e-3, Ve=0.2, ctx=STEADY)
    c.update(dt=1e-9)
    assert c.potential == 0.2
    assert c.current == 1e-3
    assert c.cap_current == pytest.approx(1e-12 * 0.2 / 1e-9)

    c.residual(I=5e-3, Ve=0.9, ctx=STEADY)
    c.rollback()
    assert c.potential_itering == 0.2
    assert c.current_itering == 1e-3


def test_invalid_circuits_raise():
    with pytest.raises(BoundaryConfigurationError):
        ExternalCircuit(driver='battery')
    with pytest.raises(BoundaryConfigurationError):
        ExternalCircuit(R=-1.)
    with pytest.raises(BoundaryConfigurationError):
        ExternalCircuit(driver='inter_connect', R=0.)


# ---------------------------
# Sources
# ---------------------------

def test_sources():
    assert make_source(2.5)(1.) == 2.5
    assert isinstance(make_source(None), DCSource)

    pulse = make_source({'type': 'pulse', 'v1': 0., 'v2': 1., 'td': 1e-9, 'tr': 1e-9, 'tf': 1e-9, 'pw': 2e-9})
    assert isinstance(pulse, PulseSource)
    assert pulse(0.) == 0.
    assert pulse(1.5e-9) == pytest.approx(0.5)
    assert pulse(3e-9) == 1.
    assert pulse(4.5e-9) == pytest.approx(0.5)
    assert pulse(1e-6) == 0.

    sine = make_source({'type': 'sin', 'v0': 1., 'amplitude': 2., 'freq': 1e6})
    assert isinstance(sine, SineSource)
    assert sine(0.25e-6) == pytest.approx(3.)

    with pytest.raises(BoundaryConfigurationError):
        make_source({'type': 'noise'})


# ---------------------------
# Electrode rows
# ---------------------------

@pytest.mark.skipif(MPI.COMM_WORLD.size > 1, reason="serial mesh")
def test_ideal_voltage_source_jacobian_row():
    orch, bc = single_electrode(ExternalCircuit(driver='voltage', source=DCSource(5.)))
    slot = bc.slot_local(orch.layout)

    x = orch.owned_solution()
    x[slot] = 4.

    r = orch.form_function(x, STEADY)
    assert r[slot] == pytest.approx(-1.)

    J = orch.dense_jacobian(x, STEADY)
    row = J[slot]
    assert row[slot] == 1.
    assert np.count_nonzero(row) == 1


@pytest.mark.skipif(MPI.COMM_WORLD.size > 1, reason="serial mesh")
def test_contact_rows_are_replaced():
    orch, bc = single_electrode(ExternalCircuit(driver='voltage', R=10., source=DCSource(0.3)))
    layout = orch.layout
    slot = bc.slot_local(layout)
    x = orch.owned_solution()
    x[slot] = 0.3

    J = orch.dense_jacobian(x, STEADY)
    n_row = layout.rows(0, [0], 'n')[0]
    p_row = layout.rows(0, [0], 'p')[0]
    psi_row = layout.rows(0, [0], 'psi')[0]

    # Boltzmann contact: psi depends on Ve only, carriers are pinned
    assert J[psi_row, slot] == -1.
    assert np.count_nonzero(J[n_row]) == 1 and J[n_row, n_row] == 1.
    assert np.count_nonzero(J[p_row]) == 1 and J[p_row, p_row] == 1.

    # The device current enters the electrode row through the series resistor
    assert np.count_nonzero(J[slot]) > 1


@pytest.mark.skipif(MPI.COMM_WORLD.size > 1, reason="serial mesh")
def test_contact_potential_at_equilibrium():
    orch, bc = single_electrode(ExternalCircuit(driver='voltage'))
    layout = orch.layout
    x = orch.owned_solution()

    r = orch.form_function(x, AssemblyContext(equilibrium=True))
    for var in ('psi', 'n', 'p'):
        row = layout.rows(0, [0], var)[0]
        assert abs(r[row]) <= 1e-10 * max(abs(x[row]), 1.)


def test_inter_connect_hub_validation():
    a = OhmicContactBC('a', [0], ExternalCircuit(driver='inter_connect', R=10.))
    b = OhmicContactBC('b', [1], ExternalCircuit(driver='voltage'))
    with pytest.raises(BoundaryConfigurationError):
        InterConnectHub('hub', [a])
    with pytest.raises(BoundaryConfigurationError):
        InterConnectHub('hub', [a, b])

    c = OhmicContactBC('c', [2], ExternalCircuit(driver='inter_connect', R=40.))
    hub = InterConnectHub('hub', [a, c])
    assert a.hub is hub and c.hub is hub
    np.testing.assert_allclose(hub.G, [0.1, 0.025])


def test_circuit_module_compiles_cleanly():
    """The circuit sketches in the module docstring hold no escape sequences."""
    source = Path(circuit_module.__file__).read_text()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, circuit_module.__file__, "exec")
