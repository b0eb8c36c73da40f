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
Stencil residual functions of the region assemblers.

All functions are pure ``jax.numpy`` and are wrapped into ``StencilKernel``
objects by the regions. Sign conventions of the returned contributions:

    edge (a -> b):  Poisson flux  f = eps A (psi_b - psi_a) / L,  +f to a, -f to b
                    heat flux     q = kappa A (T_b - T_a) / L,    +q to a, -q to b
    cell (i -> j):  electrons     +mu_n In pa to i,  -mu_n In pa to j
                    holes         -mu_p Ip pa to i,  +mu_p Ip pa to j
                    generation    +G v to both carrier rows of i and j
    node:           Poisson       e (Nd - Na + p - n) vol
                    continuity    -(R - G) vol - du/dt vol

``In`` and ``Ip`` are the Scharfetter-Gummel electron and hole fluxes along
the edge, evaluated once per edge and reused by all cells sharing it.
"""
import jax.numpy as jnp

from ..constants import E_CHARGE, KB, thermal_voltage
from ..material import E_SMOOTH
from ..mesh import SIMPLEX_EDGES

# Series expansion threshold of the Bernoulli function
BERNOULLI_SMALL = 1e-3


def bernoulli(x):
    """Bernoulli function ``B(x) = x / (exp(x) - 1)``, stable for all ``x``."""
    small = jnp.abs(x) < BERNOULLI_SMALL
    xp = jnp.where(x > 0., x, 1.)
    xn = jnp.where(x < 0., x, -1.)

    series = 1. - 0.5 * x + x**2 / 12.
    pos = xp * jnp.exp(-xp) / (-jnp.expm1(-xp))
    neg = xn / jnp.expm1(xn)

    return jnp.where(small, series, jnp.where(x > 0., pos, neg))


# ---------------------------
# Band structure helpers
# ---------------------------

def conduction_band(mat, psi, T):
    """Effective conduction band potential ``-(psi + chi) - Vt ln Nc`` [V]."""
    return -(psi + mat.affinity) - thermal_voltage(T) * jnp.log(mat.Nc(T))


def valence_band(mat, psi, T):
    """Effective valence band potential ``-(psi + chi + Eg) + Vt ln Nv`` [V]."""
    return -(psi + mat.affinity + mat.band_gap(T)) + thermal_voltage(T) * jnp.log(mat.Nv(T))


def intrinsic_offset(mat, T):
    """``psi_i - psi``: shift from the vacuum-level potential to the intrinsic level [V]."""
    return mat.affinity + 0.5 * mat.band_gap(T) + 0.5 * thermal_voltage(T) * jnp.log(mat.Nc(T) / mat.Nv(T))


def equilibrium_densities(Nnet, nie):
    """Charge-neutral carrier densities, using the root without cancellation."""
    root = jnp.sqrt(0.25 * Nnet**2 + nie**2)
    n_major = 0.5 * Nnet + jnp.where(Nnet >= 0., root, 0.)
    p_major = -0.5 * Nnet + jnp.where(Nnet < 0., root, 0.)
    n_safe = jnp.where(Nnet >= 0., n_major, 1.)
    p_safe = jnp.where(Nnet < 0., p_major, 1.)
    n = jnp.where(Nnet >= 0., n_major, nie**2 / p_safe)
    p = jnp.where(Nnet >= 0., nie**2 / n_safe, p_major)
    return n, p


def sg_fluxes(mat, psi1, n1, p1, T1, psi2, n2, p2, T2, L, Tn=None, Tp=None):
    """Scharfetter-Gummel electron and hole fluxes along the edge 1 -> 2.

    ``Tn`` and ``Tp`` are the carrier temperature pairs of the edge; without
    them the carriers diffuse at the lattice temperature.
    """
    Ec = conduction_band(mat, psi2, T2) - conduction_band(mat, psi1, T1)
    Ev = valence_band(mat, psi2, T2) - valence_band(mat, psi1, T1)
    Vt = thermal_voltage(0.5 * (T1 + T2))
    Vtn = Vt if Tn is None else thermal_voltage(0.5 * (Tn[0] + Tn[1]))
    Vtp = Vt if Tp is None else thermal_voltage(0.5 * (Tp[0] + Tp[1]))
    dEc = Ec / Vtn
    dEv = Ev / Vtp

    In = Vtn / L * (n2 * bernoulli(-dEc) - n1 * bernoulli(dEc))
    Ip = Vtp / L * (p1 * bernoulli(-dEv) - p2 * bernoulli(dEv))
    return In, Ip


def energy_flux(F, c1, c2, T1, T2, mu, L):
    """Carrier energy flux along the edge 1 -> 2 [W/cm^2].

    Convection of the particle flux ``F`` plus Wiedemann-Franz conduction
    with ``kappa = 5/2 (k^2/e) mu c T``.
    """
    Tm = 0.5 * (T1 + T2)
    kappa = 2.5 * KB * KB / E_CHARGE * mu * 0.5 * (c1 + c2) * Tm
    return 2.5 * KB * Tm * F - kappa * (T2 - T1) / L


def time_derivative(u, prev, last, consts, bdf2: bool):
    """BDF1 or variable-step BDF2 time derivative."""
    dt = consts['dt']
    if not bdf2:
        return (u - prev) / dt

    dt_last = consts['dt_last']
    r = dt_last / (dt_last + dt)
    return ((2. - r) / (1. - r) * u
            - 1. / (r * (1. - r)) * prev
            + (1. - r) / r * last) / (dt_last + dt)


def _split(x, nv, lattice, T_param):
    """Unpack per-vertex unknowns of a 2-vertex stencil."""
    u1, u2 = x[:nv], x[nv:2 * nv]
    if lattice:
        return u1, u2, u1[nv - 1], u2[nv - 1]
    return u1, u2, T_param[0], T_param[1]


# ---------------------------
# Semiconductor
# ---------------------------

def cell_outputs(variables):
    """Row variables of the cell stencil outputs, ``k`` outputs each."""
    if 'Tn' in variables:
        return ('n', 'p', 'Tn', 'Tp')
    if 'T' in variables:
        return ('n', 'p', 'T')
    return ('n', 'p')


def semiconductor_edge(mat, variables):
    """Edge stencil with outputs ``[poisson flux, In, Ip(, heat flux)]``."""
    nv = len(variables)
    idx = {v: q for q, v in enumerate(variables)}
    lattice = 'T' in idx
    hot = 'Tn' in idx

    def edge(x, prm, consts):
        u1, u2 = x[:nv], x[nv:]
        if lattice:
            T1, T2 = u1[idx['T']], u2[idx['T']]
        else:
            T1, T2 = prm['T'][0], prm['T'][1]
        A, L = prm['A'], prm['L']

        Tn = (u1[idx['Tn']], u2[idx['Tn']]) if hot else None
        Tp = (u1[idx['Tp']], u2[idx['Tp']]) if hot else None

        out = [mat.permittivity * A * (u2[0] - u1[0]) / L]
        out.extend(sg_fluxes(mat, u1[0], u1[1], u1[2], T1, u2[0], u2[1], u2[2], T2, L, Tn, Tp))
        if lattice:
            kappa = 0.5 * (mat.thermal_conductivity(T1) + mat.thermal_conductivity(T2))
            out.append(kappa * A * (T2 - T1) / L)
        return jnp.stack(out)

    return edge


def semiconductor_cell(mat, variables, dim: int, recompute_sg: bool,
                       impact_ionization: bool = False, band_band_tunneling: bool = False):
    """Cell stencil with ``k`` outputs per row variable of ``cell_outputs``.

    With ``recompute_sg`` the edge fluxes are evaluated from the cell unknowns
    (Jacobian path), otherwise they are read from ``prm['In']``, ``prm['Ip']``.

    Joule heat goes to the carrier energy rows when the carrier temperatures
    are solved for, to the lattice rows otherwise. Impact ionization is
    driven by the edge currents and the field along the edge, band-to-band
    tunneling by the cell field; both are distributed with the partial
    volumes and scaled by ``prm['gen']`` (0 in equilibrium).
    """
    nv = len(variables)
    idx = {v: q for q, v in enumerate(variables)}
    lattice = 'T' in idx
    hot = 'Tn' in idx
    k = dim + 1
    local_edges = SIMPLEX_EDGES[dim]

    def cell(x, prm, consts):
        u = x.reshape(k, nv)
        psi, n, p = u[:, 0], u[:, 1], u[:, 2]
        Tv = u[:, idx['T']] if lattice else prm['T']
        Tn = u[:, idx['Tn']] if hot else Tv
        Tp = u[:, idx['Tp']] if hot else Tv
        E = -(prm['grad'] @ psi)

        rn = jnp.zeros(k)
        rp = jnp.zeros(k)
        rTn = jnp.zeros(k)
        rTp = jnp.zeros(k)
        rT = jnp.zeros(k)
        gen = jnp.zeros(k)
        for le, (i, j) in enumerate(local_edges):
            L = prm['L'][le]
            if recompute_sg:
                carrier_T = ((Tn[i], Tn[j]), (Tp[i], Tp[j])) if hot else (None, None)
                In, Ip = sg_fluxes(mat, psi[i], n[i], p[i], Tv[i],
                                   psi[j], n[j], p[j], Tv[j], L, *carrier_T)
            else:
                In, Ip = prm['In'][le], prm['Ip'][le]

            E_par = jnp.dot(E, prm['t'][le])
            mun = 0.5 * (mat.mobility_n(prm['Ntot'][i], Tv[i], E_par)
                         + mat.mobility_n(prm['Ntot'][j], Tv[j], E_par))
            mup = 0.5 * (mat.mobility_p(prm['Ntot'][i], Tv[i], E_par)
                         + mat.mobility_p(prm['Ntot'][j], Tv[j], E_par))

            pa = prm['pa'][le]
            Fn = mun * In
            Fp = mup * Ip
            Jn = Fn * pa
            Jp = Fp * pa
            rn = rn.at[i].add(Jn).at[j].add(-Jn)
            rp = rp.at[i].add(-Jp).at[j].add(Jp)

            dpsi = psi[i] - psi[j]
            if hot:
                Sn = energy_flux(-Fn, n[i], n[j], Tn[i], Tn[j], mun, L) * pa
                Sp = energy_flux(Fp, p[i], p[j], Tp[i], Tp[j], mup, L) * pa
                heat_n = 0.5 * E_CHARGE * Jn * dpsi
                heat_p = 0.5 * E_CHARGE * Jp * dpsi
                rTn = rTn.at[i].add(heat_n - Sn).at[j].add(heat_n + Sn)
                rTp = rTp.at[i].add(heat_p - Sp).at[j].add(heat_p + Sp)
            elif lattice:
                heat = 0.5 * E_CHARGE * (Jn + Jp) * dpsi
                rT = rT.at[i].add(heat).at[j].add(heat)

            if impact_ionization:
                Em = jnp.sqrt(E_par**2 + E_SMOOTH**2)
                G = mat.impact_ionization_n(Em) * jnp.abs(Fn) + mat.impact_ionization_p(Em) * jnp.abs(Fp)
                share = jnp.maximum(0.5 * pa * L / dim, 0.)
                gen = gen.at[i].add(G * share).at[j].add(G * share)

        if band_band_tunneling:
            Em = jnp.sqrt(jnp.sum(E**2) + E_SMOOTH**2)
            gen = gen + mat.band_band_tunneling(Em, jnp.mean(Tv)) * jnp.maximum(prm['pv'], 0.)

        if impact_ionization or band_band_tunneling:
            gen = prm['gen'] * gen
            rn = rn + gen
            rp = rp + gen

        rows = {'n': rn, 'p': rp, 'Tn': rTn, 'Tp': rTp, 'T': rT}
        return jnp.concatenate([rows[v] for v in cell_outputs(variables)])

    return cell


def semiconductor_node(mat, variables, transient: bool, bdf2: bool, traps=()):
    """Node stencil with one output per unknown of ``variables``.

    Bulk traps add their charge to the Poisson row and their net capture
    rate to both continuity rows. With carrier temperatures, the carriers
    relax their energy to the lattice with the times ``tau_wn``, ``tau_wp``.
    """
    idx = {v: q for q, v in enumerate(variables)}
    lattice = 'T' in idx
    hot = 'Tn' in idx

    def node(x, prm, consts):
        n, p = x[1], x[2]
        T = x[idx['T']] if lattice else prm['T']
        vol = prm['vol']

        U = mat.recombination(n, p, T) - prm['G']
        rho = prm['Nnet'] + p - n
        R = U
        if traps:
            ni = mat.nie(T)
            for trap in traps:
                rho = rho + trap.charge_density(n, p, ni, T)
                R = R + trap.capture_rate(n, p, ni, T)

        out = {'psi': E_CHARGE * rho * vol, 'n': -R * vol, 'p': -R * vol}
        if hot:
            Tn, Tp = x[idx['Tn']], x[idx['Tp']]
            Wn = 1.5 * KB * n * (Tn - T) / mat.tau_wn
            Wp = 1.5 * KB * p * (Tp - T) / mat.tau_wp
            out['Tn'] = -(Wn + 1.5 * KB * Tn * R) * vol
            out['Tp'] = -(Wp + 1.5 * KB * Tp * R) * vol
            if lattice:
                out['T'] = (Wn + Wp + U * (mat.band_gap(T) * E_CHARGE + 1.5 * KB * (Tn + Tp))) * vol
        elif lattice:
            out['T'] = U * (mat.band_gap(T) * E_CHARGE + 3. * KB * T) * vol

        if transient:
            prev, last = prm['prev'], prm['last']

            def ddt(var):
                q = idx[var]
                return time_derivative(x[q], prev[q], last[q], consts, bdf2)

            out['n'] = out['n'] - ddt('n') * vol
            out['p'] = out['p'] - ddt('p') * vol
            if hot:
                for c, var in ((1, 'Tn'), (2, 'Tp')):
                    q = idx[var]
                    w = time_derivative(x[c] * x[q], prev[c] * prev[q], last[c] * last[q], consts, bdf2)
                    out[var] = out[var] - 1.5 * KB * w * vol
            if lattice:
                out['T'] = out['T'] - mat.heat_capacity * ddt('T') * vol

        return jnp.stack([out[v] for v in variables])

    return node


# ---------------------------
# Insulator, conductor, vacuum
# ---------------------------

def poisson_edge(mat, lattice: bool):
    """Edge stencil with outputs ``[poisson flux(, heat flux)]``."""
    nv = 2 if lattice else 1

    def edge(x, prm, consts):
        u1, u2, T1, T2 = _split(x, nv, lattice, prm.get('T'))
        A, L = prm['A'], prm['L']
        out = [mat.permittivity * A * (u2[0] - u1[0]) / L]
        if lattice:
            kappa = 0.5 * (mat.thermal_conductivity(T1) + mat.thermal_conductivity(T2))
            out.append(kappa * A * (T2 - T1) / L)
        return jnp.stack(out)

    return edge


def resistive_edge(mat, lattice: bool):
    """Edge stencil with outputs ``[current(, heat flux, joule heat)]``."""
    nv = 2 if lattice else 1

    def edge(x, prm, consts):
        u1, u2, T1, T2 = _split(x, nv, lattice, prm.get('T'))
        A, L = prm['A'], prm['L']
        dpsi = u2[0] - u1[0]
        out = [mat.conductivity * A * dpsi / L]
        if lattice:
            kappa = 0.5 * (mat.thermal_conductivity(T1) + mat.thermal_conductivity(T2))
            out.append(kappa * A * (T2 - T1) / L)
            out.append(mat.conductivity * A * dpsi**2 / L)
        return jnp.stack(out)

    return edge


def lattice_node(mat, lattice: bool, transient: bool, bdf2: bool):
    """Node stencil with outputs ``[psi(, T)]`` of the single-carrier-free regions.

    The potential row gets no volume term; the explicit zero keeps the diagonal
    position in the pattern.
    """

    def node(x, prm, consts):
        out = [0. * x[0]]
        if lattice:
            T = x[1]
            heat = 0. * T
            if transient:
                heat = -mat.heat_capacity * time_derivative(T, prm['prev'][1], prm['last'][1], consts, bdf2) * prm['vol']
            out.append(heat)
        return jnp.stack(out)

    return node
