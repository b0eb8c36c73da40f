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
Material models.

Every model is a frozen dataclass of scalar parameters whose methods are pure
``jax.numpy`` expressions of the local state, so that they can be traced and
differentiated inside the stencil kernels. Band energies are in eV, lengths
in cm, densities in cm^-3, mobilities in cm^2/(V s), times in s.
"""
from dataclasses import dataclass, field, fields, replace
from typing import Dict, List, Sequence, Tuple

import jax.numpy as jnp
import numpy as np
import numpy.typing as npt

from .constants import EPS0, E_CHARGE, KB, T_ROOM

NDArray = npt.NDArray[np.floating]

# Smoothing field [V/cm] for |E| in the high-field mobility
E_SMOOTH = 1.0


@dataclass(frozen=True)
class Semiconductor:
    """Drift-diffusion parameter set. Defaults describe silicon.

    Attributes
    ----------
    eps_r : float
        Relative permittivity.
    affinity : float
        Electron affinity [eV].
    Eg0, Eg_alpha, Eg_beta : float
        Varshni band gap ``Eg0 - alpha T^2 / (T + beta)``.
    Nc300, Nv300 : float
        Effective density of states at 300 K, scaled with ``(T/300)^1.5``.
    mun_*, mup_* : float
        Caughey-Thomas doping dependent low-field mobility.
    vsat_n, vsat_p, beta_n, beta_p : float
        Caughey-Thomas high-field saturation.
    tau_n, tau_p : float
        SRH lifetimes (midgap trap).
    auger_n, auger_p : float
        Auger coefficients [cm^6/s].
    ii_an, ii_bn, ii_ap, ii_bp : float
        Chynoweth impact ionization coefficients ``a exp(-b/E)`` [1/cm, V/cm].
    bbt_A, bbt_B : float
        Kane band-to-band tunneling prefactor and exponent.
    tau_wn, tau_wp : float
        Carrier energy relaxation times [s].
    kappa300, kappa_texp : float
        Thermal conductivity [W/(cm K)] and its temperature exponent.
    heat_capacity : float
        Volumetric heat capacity rho*c_p [J/(cm^3 K)].
    """
    kind = 'semiconductor'

    name: str = 'Si'
    eps_r: float = 11.9
    affinity: float = 4.05
    Eg0: float = 1.1696
    Eg_alpha: float = 4.73e-4
    Eg_beta: float = 636.0
    Nc300: float = 2.86e19
    Nv300: float = 3.10e19

    mun_min: float = 52.2
    mun_max: float = 1417.0
    mun_nref: float = 9.68e16
    mun_alpha: float = 0.68
    mun_texp: float = -2.5
    mup_min: float = 44.9
    mup_max: float = 470.5
    mup_nref: float = 2.23e17
    mup_alpha: float = 0.719
    mup_texp: float = -2.2

    vsat_n: float = 1.07e7
    vsat_p: float = 8.37e6
    beta_n: float = 2.0
    beta_p: float = 1.0

    tau_n: float = 1e-7
    tau_p: float = 1e-7
    auger_n: float = 2.8e-31
    auger_p: float = 9.9e-32

    ii_an: float = 7.03e5
    ii_bn: float = 1.231e6
    ii_ap: float = 1.582e6
    ii_bp: float = 2.036e6
    bbt_A: float = 3.5e21
    bbt_B: float = 2.25e7
    tau_wn: float = 3e-13
    tau_wp: float = 2.5e-13

    kappa300: float = 1.48
    kappa_texp: float = -1.3
    heat_capacity: float = 1.63

    @property
    def permittivity(self) -> float:
        return self.eps_r * EPS0

    # Band structure

    def band_gap(self, T):
        return self.Eg0 - self.Eg_alpha * T**2 / (T + self.Eg_beta)

    def Nc(self, T):
        return self.Nc300 * (T / T_ROOM)**1.5

    def Nv(self, T):
        return self.Nv300 * (T / T_ROOM)**1.5

    def nie(self, T):
        """Effective intrinsic carrier density."""
        Vt = KB * T / E_CHARGE
        return jnp.sqrt(self.Nc(T) * self.Nv(T)) * jnp.exp(-self.band_gap(T) / (2. * Vt))

    # Mobility

    def mobility_n(self, Ntot, T, E_par=0.):
        mu0 = _doping_mobility(Ntot, T, self.mun_min, self.mun_max,
                               self.mun_nref, self.mun_alpha, self.mun_texp)
        return _high_field_mobility(mu0, E_par, self.vsat_n, self.beta_n)

    def mobility_p(self, Ntot, T, E_par=0.):
        mu0 = _doping_mobility(Ntot, T, self.mup_min, self.mup_max,
                               self.mup_nref, self.mup_alpha, self.mup_texp)
        return _high_field_mobility(mu0, E_par, self.vsat_p, self.beta_p)

    # Recombination

    def recombination(self, n, p, T):
        """Net SRH plus Auger recombination rate [cm^-3 s^-1]."""
        ni = self.nie(T)
        excess = n * p - ni**2
        srh = excess / (self.tau_p * (n + ni) + self.tau_n * (p + ni))
        auger = (self.auger_n * n + self.auger_p * p) * excess
        return srh + auger

    # Generation

    def impact_ionization_n(self, E):
        """Electron ionization coefficient [1/cm] at field magnitude ``E``."""
        return self.ii_an * jnp.exp(-self.ii_bn / E)

    def impact_ionization_p(self, E):
        return self.ii_ap * jnp.exp(-self.ii_bp / E)

    def band_band_tunneling(self, E, T):
        """Kane band-to-band generation rate [cm^-3 s^-1] at field magnitude ``E``."""
        Eg = self.band_gap(T)
        return self.bbt_A * E**2 / jnp.sqrt(Eg) * jnp.exp(-self.bbt_B * Eg**1.5 / E)

    # Lattice heat

    def thermal_conductivity(self, T):
        return self.kappa300 * (T / T_ROOM)**self.kappa_texp


@dataclass(frozen=True)
class Insulator:
    """Dielectric. Defaults describe SiO2."""
    kind = 'insulator'

    name: str = 'SiO2'
    eps_r: float = 3.9
    affinity: float = 0.9
    Eg0: float = 9.0
    kappa300: float = 0.014
    kappa_texp: float = 0.0
    heat_capacity: float = 1.67

    @property
    def permittivity(self) -> float:
        return self.eps_r * EPS0

    def thermal_conductivity(self, T):
        return self.kappa300 * (T / T_ROOM)**self.kappa_texp


@dataclass(frozen=True)
class Conductor:
    """Ideal electrode region, only its potential (and temperature) is solved."""
    kind = 'conductor'

    name: str = 'Elec'
    eps_r: float = 1.0
    work_function: float = 4.17
    kappa300: float = 2.37
    kappa_texp: float = 0.0
    heat_capacity: float = 2.43

    @property
    def permittivity(self) -> float:
        return self.eps_r * EPS0

    def thermal_conductivity(self, T):
        return self.kappa300 * (T / T_ROOM)**self.kappa_texp


@dataclass(frozen=True)
class Resistive:
    """Ohmic metal with finite conductivity. Defaults describe aluminium."""
    kind = 'resistive'

    name: str = 'Al'
    conductivity: float = 3.77e5
    work_function: float = 4.28
    eps_r: float = 1.0
    kappa300: float = 2.37
    kappa_texp: float = 0.0
    heat_capacity: float = 2.43

    @property
    def permittivity(self) -> float:
        return self.eps_r * EPS0

    def thermal_conductivity(self, T):
        return self.kappa300 * (T / T_ROOM)**self.kappa_texp


@dataclass(frozen=True)
class Vacuum:
    kind = 'vacuum'

    name: str = 'Vacuum'
    eps_r: float = 1.0
    kappa300: float = 1e-8
    kappa_texp: float = 0.0
    heat_capacity: float = 1e-8

    @property
    def permittivity(self) -> float:
        return self.eps_r * EPS0

    def thermal_conductivity(self, T):
        return self.kappa300 * (T / T_ROOM)**self.kappa_texp


MATERIALS = {
    'Si': (Semiconductor, {}),
    'SiO2': (Insulator, {}),
    'Si3N4': (Insulator, {'name': 'Si3N4', 'eps_r': 7.5, 'affinity': 1.9, 'Eg0': 5.0, 'kappa300': 0.185}),
    'Elec': (Conductor, {}),
    'Al': (Resistive, {}),
    'Cu': (Resistive, {'name': 'Cu', 'conductivity': 5.96e5, 'work_function': 4.65,
                       'kappa300': 4.01, 'heat_capacity': 3.45}),
    'Vacuum': (Vacuum, {}),
}


def get_material(name: str, **overrides):
    """Material instance from the registry, with optional parameter overrides."""
    try:
        cls, defaults = MATERIALS[name]
    except KeyError:
        raise ValueError(f"Unknown material '{name}'. Available: {sorted(MATERIALS)}") from None

    allowed = {f.name for f in fields(cls)}
    unknown = set(overrides) - allowed
    if unknown:
        raise ValueError(f"Unknown parameters for {name}: {sorted(unknown)}")

    return replace(cls(), **{**defaults, **overrides})


def _doping_mobility(Ntot, T, mu_min, mu_max, nref, alpha, texp):
    mu_lattice = mu_max * (T / T_ROOM)**texp
    return mu_min + (mu_lattice - mu_min) / (1. + (Ntot / nref)**alpha)


def _high_field_mobility(mu0, E_par, vsat, beta):
    E = jnp.sqrt(E_par**2 + E_SMOOTH**2)
    return mu0 / (1. + (mu0 * E / vsat)**beta)**(1. / beta)


# ---------------------------
# Bulk traps
# ---------------------------

@dataclass(frozen=True)
class BulkTrap:
    """Single-level bulk trap with Shockley-Read-Hall capture and emission.

    Parameters
    ----------
    charge : str
        'acceptor' (negative when occupied) or 'donor' (positive when empty).
    density : float
        Trap concentration [cm^-3].
    energy : float
        Trap level relative to the intrinsic level [eV].
    sigma_n, sigma_p : float
        Capture cross sections [cm^2].
    vth : float
        Thermal velocity [cm/s].
    """
    charge: str
    density: float
    energy: float = 0.
    sigma_n: float = 1e-15
    sigma_p: float = 1e-15
    vth: float = 1e7

    def __post_init__(self):
        if self.charge not in ('acceptor', 'donor'):
            raise ValueError(f"Trap charge must be 'acceptor' or 'donor', got '{self.charge}'")
        if self.density < 0.:
            raise ValueError("Trap density must be non-negative")

    def _rates(self, ni, T):
        Vt = KB * T / E_CHARGE
        cn = self.sigma_n * self.vth
        cp = self.sigma_p * self.vth
        en = cn * ni * jnp.exp(self.energy / Vt)
        ep = cp * ni * jnp.exp(-self.energy / Vt)
        return cn, cp, en, ep

    def occupancy(self, n, p, ni, T):
        """Steady-state electron occupation probability ``f`` and ``1 - f``."""
        cn, cp, en, ep = self._rates(ni, T)
        total = cn * n + en + cp * p + ep
        return (cn * n + ep) / total, (en + cp * p) / total

    def charge_density(self, n, p, ni, T):
        """Trapped charge in units of e [cm^-3]."""
        f, empty = self.occupancy(n, p, ni, T)
        if self.charge == 'acceptor':
            return -self.density * f
        return self.density * empty

    def capture_rate(self, n, p, ni, T):
        """Net capture rate [cm^-3 s^-1], equal for electrons and holes at steady occupancy."""
        cn, cp, en, ep = self._rates(ni, T)
        return self.density * cn * cp * (n * p - ni**2) / (cn * n + en + cp * p + ep)


# ---------------------------
# Doping profiles
# ---------------------------

@dataclass
class DopingProfile:
    """Analytic doping profile.

    Parameters
    ----------
    species : str
        'donor' or 'acceptor'.
    shape : str
        'uniform' or 'gaussian'.
    peak : float
        Concentration [cm^-3].
    center : sequence of float
        Peak location (gaussian only).
    char_length : sequence of float
        Characteristic (1/e) length per axis (gaussian only).
    box : dict
        Optional coordinate intervals ``{'x': [lo, hi], 'y': [lo, hi]}``
        outside of which a uniform profile vanishes.
    """
    species: str
    shape: str
    peak: float
    center: Sequence[float] = field(default_factory=list)
    char_length: Sequence[float] = field(default_factory=list)
    box: Dict[str, List[float]] = field(default_factory=dict)

    def __post_init__(self):
        if self.species not in ('donor', 'acceptor'):
            raise ValueError(f"Doping species must be 'donor' or 'acceptor', got '{self.species}'")
        if self.shape not in ('uniform', 'gaussian'):
            raise ValueError(f"Doping shape must be 'uniform' or 'gaussian', got '{self.shape}'")
        if self.peak < 0.:
            raise ValueError("Doping concentration must be non-negative")

    def evaluate(self, points: NDArray) -> NDArray:
        points = np.atleast_2d(points)
        if self.shape == 'uniform':
            out = np.full(len(points), self.peak)
            for axis, key in enumerate('xy'[:points.shape[1]]):
                if key in self.box:
                    lo, hi = self.box[key]
                    out[(points[:, axis] < lo) | (points[:, axis] > hi)] = 0.
            return out

        arg = np.zeros(len(points))
        for axis, (c, s) in enumerate(zip(self.center, self.char_length)):
            arg += ((points[:, axis] - c) / s)**2
        return self.peak * np.exp(-arg)


def evaluate_doping(profiles: Sequence[DopingProfile], points: NDArray) -> Tuple[NDArray, NDArray]:
    """Summed donor and acceptor concentrations (Nd, Na) at the given points."""
    Nd = np.zeros(len(points))
    Na = np.zeros(len(points))
    for prof in profiles:
        if prof.species == 'donor':
            Nd += prof.evaluate(points)
        else:
            Na += prof.evaluate(points)
    return Nd, Na
