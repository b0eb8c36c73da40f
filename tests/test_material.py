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
Generation, trap and carrier energy models of the semiconductor material.
"""
import jax.numpy as jnp
import numpy as np
import pytest

from SemiFlow.constants import E_CHARGE, KB
from SemiFlow.material import BulkTrap, get_material
from SemiFlow.regions.kernels import energy_flux, sg_fluxes

T = 300.


@pytest.fixture
def si():
    return get_material('Si')


@pytest.mark.parametrize("charge", ['acceptor', 'donor'])
def test_trap_capture_vanishes_in_equilibrium(si, charge):
    trap = BulkTrap(charge=charge, density=1e15, energy=0.15)
    ni = float(si.nie(T))
    n = jnp.array([1e16, ni, ni**2 / 1e17])
    p = ni**2 / n

    np.testing.assert_allclose(np.asarray(trap.capture_rate(n, p, ni, T)), 0., atol=1e-6 * ni)


def test_trap_capture_matches_occupancy(si):
    trap = BulkTrap(charge='acceptor', density=1e15, energy=-0.1, sigma_n=3e-15)
    ni = float(si.nie(T))
    n = jnp.array([1e17, 1e12, 1e15])
    p = jnp.array([1e15, 1e12, 1e3])

    R = np.asarray(trap.capture_rate(n, p, ni, T))
    f, empty = (np.asarray(v) for v in trap.occupancy(n, p, ni, T))
    np.testing.assert_allclose(f + empty, 1., rtol=1e-14)

    # Electron capture into empty traps minus emission from occupied ones
    cn = trap.sigma_n * trap.vth
    en = cn * ni * np.exp(trap.energy / (KB * T / E_CHARGE))
    explicit = trap.density * (cn * np.asarray(n) * empty - en * f)
    np.testing.assert_allclose(R[:2], explicit[:2], rtol=1e-8)

    # Injection recombines, depletion generates
    assert R[0] > 0. and R[1] > 0.
    assert R[2] < 0.

def test_trap_charge_sign_and_bounds(si):
    ni = float(si.nie(T))
    n = jnp.array([1e18, 1e10, 1.])
    p = jnp.array([1., 1e10, 1e18])
    acceptor = np.asarray(BulkTrap('acceptor', 2e15).charge_density(n, p, ni, T))
    donor = np.asarray(BulkTrap('donor', 2e15).charge_density(n, p, ni, T))

    assert np.all((acceptor <= 0.) & (acceptor >= -2e15))
    assert np.all((donor >= 0.) & (donor <= 2e15))
    # Full of electrons in n-type, empty in p-type
    assert acceptor[0] == pytest.approx(-2e15, rel=1e-6)
    assert donor[2] == pytest.approx(2e15, rel=1e-6)


def test_trap_validation():
    with pytest.raises(ValueError):
        BulkTrap(charge='neutral', density=1e15)
    with pytest.raises(ValueError):
        BulkTrap(charge='donor', density=-1.)


def test_field_generation_rates(si):
    E = jnp.array([1e3, 1e5, 5e5])
    an = np.asarray(si.impact_ionization_n(E))
    ap = np.asarray(si.impact_ionization_p(E))
    bbt = np.asarray(si.band_band_tunneling(E, T))

    for rate in (an, ap, bbt):
        assert np.all(np.diff(rate) > 0.)
    assert an[0] < 1e-300 and bbt[0] < 1e-300
    assert an[2] == pytest.approx(7.03e5 * np.exp(-1.231e6 / 5e5))
    # Holes ionize less than electrons in silicon
    assert np.all(ap[1:] < an[1:])


def test_generation_parameters_override():
    mat = get_material('Si', ii_bn=1e5, bbt_B=1e6, tau_wn=1e-12)
    assert float(mat.impact_ionization_n(1e5)) == pytest.approx(7.03e5 * np.exp(-1.))
    assert mat.tau_wn == 1e-12


def test_carrier_temperature_reduces_to_lattice(si):
    args = (si, 0.1, 1e16, 1e4, T, 0.12, 2e16, 5e3, T, 1e-5)
    np.testing.assert_allclose(np.asarray(sg_fluxes(*args, Tn=(T, T), Tp=(T, T))),
                               np.asarray(sg_fluxes(*args)), rtol=1e-14)


def test_hot_electrons_diffuse_faster(si):
    # Flat bands, density gradient only: the flux scales with the carrier temperature
    cold, _ = sg_fluxes(si, 0., 1e16, 1e4, T, 0., 2e16, 1e4, T, 1e-5)
    hot, _ = sg_fluxes(si, 0., 1e16, 1e4, T, 0., 2e16, 1e4, T, 1e-5, Tn=(2 * T, 2 * T))
    assert float(hot) == pytest.approx(2. * float(cold), rel=1e-12)


def test_energy_flux():
    # Uniform temperature: pure convection
    assert float(energy_flux(1e20, 1e16, 1e16, T, T, 1000., 1e-5)) == pytest.approx(2.5 * KB * T * 1e20)
    # No particle flux: conduction from hot to cold
    assert float(energy_flux(0., 1e16, 1e16, 2 * T, T, 1000., 1e-5)) > 0.
    assert float(energy_flux(0., 1e16, 1e16, T, 2 * T, 1000., 1e-5)) < 0.
