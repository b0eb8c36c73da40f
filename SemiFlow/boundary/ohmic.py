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
"""Ohmic electrode with a lumped external circuit."""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import jax.numpy as jnp
import numpy as np
import numpy.typing as npt
from mpi4py import MPI

from ..ad import StencilKernel
from ..constants import E_CHARGE, thermal_voltage
from ..errors import BoundaryConfigurationError
from ..fvm.row_surgery import RowSurgery
from ..layout import RegionType
from ..logging import get_logger
from ..regions.kernels import equilibrium_densities, intrinsic_offset, time_derivative
from .base import BoundaryCondition, BoundaryKind
from .circuit import ExternalCircuit

NDArray = npt.NDArray[np.floating]
IntArray = npt.NDArray[np.signedinteger]

logger = get_logger("semiflow.ohmic")

# Region families that can carry an electrode, in contact priority order
CONTACT_TYPES = (RegionType.SEMICONDUCTOR, RegionType.CONDUCTOR, RegionType.RESISTIVE)


# ---------------------------
# Contact equations
# ---------------------------

def semiconductor_contact(mat, variables):
    """Charge-neutral Boltzmann contact, one output per unknown of ``variables``; last unknown is Ve.

    Carrier temperatures are pinned to the lattice temperature.
    """
    idx = {v: q for q, v in enumerate(variables)}
    lattice = 'T' in idx

    def contact(x, prm, consts):
        n, p = x[1], x[2]
        T = x[idx['T']] if lattice else prm['T']
        Ve = x[-1]
        nie = mat.nie(T)
        n_eq, p_eq = equilibrium_densities(prm['Nnet'], nie)

        out = {'psi': x[0] - thermal_voltage(T) * jnp.arcsinh(prm['Nnet'] / (2. * nie)) + intrinsic_offset(mat, T) - Ve,
               'n': n - n_eq,
               'p': p - p_eq}
        if 'Tn' in idx:
            out['Tn'] = x[idx['Tn']] - T
            out['Tp'] = x[idx['Tp']] - T
        if lattice:
            out['T'] = T - consts['T_ext']
        return jnp.stack([out[v] for v in variables])

    return contact


def metal_contact(mat, lattice: bool):
    """Metal contact ``u - Ve``, outputs ``[psi(, T)]``; last unknown is Ve.

    Metal regions store ``u = psi + W``, so the pinned Fermi level of the
    contact needs no work function offset.
    """

    def contact(x, prm, consts):
        out = [x[0] - x[-1]]
        if lattice:
            out.append(x[1] - consts['T_ext'])
        return jnp.stack(out)

    return contact


def _displacement(bdf2: bool):
    def disp(x, prm, consts):
        return prm['c'] * time_derivative(x[0] - x[1], prm['prev'], prm['last'], consts, bdf2)
    return disp


DISPLACEMENT = {flag: StencilKernel(_displacement(flag), 2, 1, name='displacement') for flag in (False, True)}


@dataclass
class _ContactGroup:
    region: int
    fvm: IntArray
    x_idx: IntArray
    rows: IntArray


@dataclass
class _DisplacementGroup:
    c: NDArray
    fvm_i: IntArray
    fvm_j: IntArray
    region: int
    cols: IntArray


@dataclass
class _OhmicTable:
    groups: List[_ContactGroup]
    ref_rows: IntArray
    other_rows: IntArray
    shift: NDArray
    clear: IntArray
    current_src: IntArray
    current_scale: NDArray
    displacement: List[_DisplacementGroup]
    slot: int
    slot_owned: bool
    hub_slot: int = -1
    extra: dict = field(default_factory=dict)


class OhmicContactBC(BoundaryCondition):
    """Ohmic contact on semiconductor, conductor or resistive regions.

    At every node the pairs of the contact family (the first of
    semiconductor, conductor, resistive present at the node) get the contact
    equations; all other pairs get ``u_ref - u_other`` for the potential and
    the lattice temperature. The electrode potential ``Ve`` is an extra
    unknown governed by the circuit equation.

    The device current is read from the region rows before they are cleared:
    ``e (r_n - r_p)`` for semiconductors, ``-r_psi`` for resistive metals,
    plus the displacement current of the contact control volumes in
    transient runs.

    Parameters
    ----------
    name : str
        Label of the electrode.
    nodes : array_like
        Contact nodes.
    circuit : ExternalCircuit, optional
        External circuit (default: ideal voltage source at 0 V).
    """
    n_slots = 1

    def __init__(self, name: str, nodes, circuit: Optional[ExternalCircuit] = None) -> None:
        super().__init__(name, nodes)
        self.circuit = circuit if circuit is not None else ExternalCircuit()
        self.hub = None
        self.current = 0.
        self._kernels = {}

    def validate(self) -> None:
        if len(self.nodes) == 0:
            raise BoundaryConfigurationError(f"Electrode '{self.name}' has no nodes")
        for node, pairs in zip(self.nodes, self.pairs):
            if not any(self.region_type(r) in CONTACT_TYPES for r, _ in pairs):
                raise BoundaryConfigurationError(
                    f"Electrode '{self.name}' node {node} touches no semiconductor, conductor or resistive region")
        mixed = any(len(p) > 1 for p in self.pairs)
        self.kind = BoundaryKind.MIXED_BOUNDARY_INTERFACE if mixed else BoundaryKind.BOUNDARY
        if self.circuit.is_inter_connect and self.hub is None:
            raise BoundaryConfigurationError(f"Inter-connect electrode '{self.name}' is not attached to a hub")

    def contact_pairs(self, pairs):
        """Split node pairs into (contact pairs, other pairs)."""
        ctype = min((self.region_type(r) for r, _ in pairs if self.region_type(r) in CONTACT_TYPES),
                    key=CONTACT_TYPES.index)
        contact = [p for p in pairs if self.region_type(p[0]) == ctype]
        other = [p for p in pairs if self.region_type(p[0]) != ctype]
        return contact, other

    def kernel(self, region: int, variables: Tuple[str, ...]) -> StencilKernel:
        key = (region, variables)
        if key not in self._kernels:
            reg = self.regions[region]
            nv = len(variables)
            if reg.rtype == RegionType.SEMICONDUCTOR:
                fn = semiconductor_contact(reg.material, variables)
            else:
                fn = metal_contact(reg.material, 'T' in variables)
            self._kernels[key] = StencilKernel(fn, nv + 1, nv, name=f'{self.name}.contact')
        return self._kernels[key]

    # ---------------------------
    # Per-layout index table
    # ---------------------------

    def slot_local(self, layout) -> int:
        return int(layout.slot_local[self.slots[0]])

    def build_table(self, layout) -> _OhmicTable:
        slot = self.slot_local(layout)
        contact = {}
        ref_rows, other_rows, shift, clear = [], [], [], []
        current_src, current_scale = [], []
        disp = {}

        for k in self.owned_node_indices(layout):
            cpairs, opairs = self.contact_pairs(self.pairs[k])
            ref_region, ref_fvm = cpairs[0]

            for region, fvm in cpairs:
                rows = [layout.rows(region, [fvm], var)[0] for var in layout.variables[region]]
                contact.setdefault(region, []).append((fvm, rows))
                clear.extend(rows)

                rtype = self.region_type(region)
                if rtype == RegionType.SEMICONDUCTOR:
                    current_src += [layout.rows(region, [fvm], 'n')[0], layout.rows(region, [fvm], 'p')[0]]
                    current_scale += [E_CHARGE, -E_CHARGE]
                elif rtype == RegionType.RESISTIVE:
                    current_src.append(layout.rows(region, [fvm], 'psi')[0])
                    current_scale.append(-1.)

                geom = self.regions[region].geometry
                for j, e in zip(geom.neighbors(fvm), geom.neighbor_edges(fvm)):
                    disp.setdefault(region, []).append((fvm, int(j), int(e)))

            for region, fvm in opairs:
                for var in ('psi', 'T'):
                    if layout.has_var(region, var) and layout.has_var(ref_region, var):
                        ref_rows.append(layout.rows(ref_region, [ref_fvm], var)[0])
                        other_rows.append(layout.rows(region, [fvm], var)[0])
                        shift.append(self.potential_shift(ref_region, region, var))
                        clear.append(other_rows[-1])

        groups = []
        for region, entries in contact.items():
            fvm = np.array([e[0] for e in entries], dtype=np.int64)
            rows = np.array([e[1] for e in entries], dtype=np.int64)
            x_idx = np.concatenate([rows, np.full((len(fvm), 1), slot, dtype=np.int64)], axis=1)
            groups.append(_ContactGroup(region=region, fvm=fvm, x_idx=x_idx, rows=rows))

        displacement = []
        for region, entries in disp.items():
            reg = self.regions[region]
            geom = reg.geometry
            fi = np.array([e[0] for e in entries], dtype=np.int64)
            fj = np.array([e[1] for e in entries], dtype=np.int64)
            eid = np.array([e[2] for e in entries], dtype=np.int64)
            cols = np.stack([layout.rows(region, fi, 'psi'), layout.rows(region, fj, 'psi')], axis=1)
            c = reg.material.permittivity * geom.edge_area[eid] / geom.edge_length[eid]
            displacement.append(_DisplacementGroup(c=c, fvm_i=fi, fvm_j=fj, region=region, cols=cols))

        as_int = lambda a: np.asarray(a, dtype=np.int64)  # noqa: E731
        hub_slot = self.hub.slot_local(layout) if self.hub is not None else -1
        return _OhmicTable(groups=groups,
                           ref_rows=as_int(ref_rows),
                           other_rows=as_int(other_rows),
                           shift=np.asarray(shift, dtype=np.float64),
                           clear=as_int(clear),
                           current_src=as_int(current_src),
                           current_scale=np.asarray(current_scale, dtype=np.float64),
                           displacement=displacement,
                           slot=slot,
                           slot_owned=bool(layout.is_owned_row(slot)),
                           hub_slot=hub_slot)

    # ---------------------------
    # Row surgery
    # ---------------------------

    def surgery(self, layout) -> RowSurgery:
        return RowSurgery(clear=self.table(layout).clear)

    def current_plan(self, layout) -> RowSurgery:
        t = self.table(layout)
        return RowSurgery(src=t.current_src, dst=np.full(len(t.current_src), t.slot), scale=t.current_scale)

    def current_factor(self, ctx) -> float:
        return self.circuit.current_factor(ctx)

    # ---------------------------
    # Assembly
    # ---------------------------

    def _group_params(self, g: _ContactGroup, lattice: bool):
        data = self.regions[g.region].data
        prm = {'Nnet': data.Nnet[g.fvm]}
        if not lattice:
            prm['T'] = data.T[g.fvm]
        return prm

    def _displacement_params(self, d: _DisplacementGroup):
        data = self.regions[d.region].data
        return {'c': d.c,
                'prev': data.psi_prev[d.fvm_i] - data.psi_prev[d.fvm_j],
                'last': data.psi_last[d.fvm_i] - data.psi_last[d.fvm_j]}

    def displacement_current(self, x, layout, ctx) -> float:
        if not ctx.transient:
            return 0.
        total = 0.
        for d in self.table(layout).displacement:
            vals = DISPLACEMENT[ctx.bdf2].value(x[d.cols], self._displacement_params(d), ctx.consts)
            total += float(vals.sum())
        return total

    def preprocess(self, x, r, layout, ctx, comm=MPI.COMM_WORLD) -> None:
        t = self.table(layout)
        local = float(np.sum(r[t.current_src] * t.current_scale)) + self.displacement_current(x, layout, ctx)
        self.current = comm.allreduce(local, op=MPI.SUM)

    def residual(self, x, r, layout, ctx) -> None:
        t = self.table(layout)
        consts = {'T_ext': ctx.T_ext}
        for g in t.groups:
            kern = self.kernel(g.region, layout.variables[g.region])
            vals = kern.value(x[g.x_idx], self._group_params(g, layout.lattice), consts)
            np.add.at(r, g.rows.ravel(), vals.ravel())

        vals, _ = self.equality_values(x, t.ref_rows, t.other_rows, t.shift)
        np.add.at(r, t.other_rows, vals[:, 0])

        V_hub = x[t.hub_slot] if t.hub_slot >= 0 else None
        F = self.circuit.residual(self.current, x[t.slot], ctx, V_hub)
        if t.slot_owned:
            r[t.slot] += F

    def jacobian_pattern(self, layout):
        t = self.table(layout)
        rows, cols = [], []
        for g in t.groups:
            nout, nd = g.rows.shape[1], g.x_idx.shape[1]
            rows.append(np.repeat(g.rows.ravel(), nd))
            cols.append(np.repeat(g.x_idx[:, None, :], nout, axis=1).ravel())

        r, c = self.equality_pattern(t.ref_rows, t.other_rows)
        rows.append(r)
        cols.append(c)

        for d in t.displacement:
            rows.append(np.full(d.cols.size, t.slot, dtype=np.int64))
            cols.append(d.cols.ravel())

        if t.slot_owned:
            rows.append(np.array([t.slot], dtype=np.int64))
            cols.append(np.array([t.slot], dtype=np.int64))
            if t.hub_slot >= 0:
                rows.append(np.array([t.slot], dtype=np.int64))
                cols.append(np.array([t.hub_slot], dtype=np.int64))

        return np.concatenate(rows), np.concatenate(cols)

    def jacobian(self, x, layout, ctx):
        t = self.table(layout)
        consts = {'T_ext': ctx.T_ext}
        vals = []
        for g in t.groups:
            _, J = self.kernel(g.region, layout.variables[g.region]).value_and_jacobian(
                x[g.x_idx], self._group_params(g, layout.lattice), consts)
            vals.append(J.ravel())

        _, J = self.equality_values(x, t.ref_rows, t.other_rows, t.shift)
        vals.append(J.ravel())

        factor = self.current_factor(ctx)
        for d in t.displacement:
            if ctx.transient:
                _, J = DISPLACEMENT[ctx.bdf2].value_and_jacobian(x[d.cols], self._displacement_params(d), ctx.consts)
                vals.append(factor * J.ravel())
            else:
                vals.append(np.zeros(d.cols.size))

        if t.slot_owned:
            vals.append(np.array([self.circuit.diagonal(ctx)]))
            if t.hub_slot >= 0:
                vals.append(np.array([-1.]))

        return np.concatenate(vals)

    # ---------------------------
    # State
    # ---------------------------

    def fill_value(self, x, L, layout) -> None:
        slot = self.slot_local(layout)
        x[slot] = self.circuit.potential
        L[slot] = self.circuit.row_scale()

    def update(self, ctx) -> None:
        self.circuit.update(ctx.dt if ctx.transient else None)
        logger.debug(f"{self.name}: V = {self.circuit.potential:.6e} V, I = {self.circuit.current:.6e} A")

    def rollback(self) -> None:
        self.circuit.rollback()
