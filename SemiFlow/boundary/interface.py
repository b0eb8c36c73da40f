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
"""Region-region interfaces."""
from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

from ..constants import E_CHARGE
from ..errors import BoundaryConfigurationError
from ..fvm.row_surgery import RowSurgery
from ..layout import RegionType
from .base import BoundaryCondition, BoundaryKind

_S = RegionType.SEMICONDUCTOR
_I = RegionType.INSULATOR
_C = RegionType.CONDUCTOR
_R = RegionType.RESISTIVE
_V = RegionType.VACUUM

# Variables kept continuous across an interface, keyed by (reference type, other type)
COUPLING_RULES: Dict[Tuple[RegionType, RegionType], Tuple[str, ...]] = {
    (_S, _S): ('psi', 'n', 'p', 'Tn', 'Tp', 'T'),
    (_S, _I): ('psi', 'T'),
    (_I, _I): ('psi', 'T'),
    (_I, _C): ('psi', 'T'),
    (_I, _R): ('psi', 'T'),
    (_C, _C): ('psi', 'T'),
    (_C, _R): ('psi', 'T'),
    (_R, _R): ('psi', 'T'),
    (_S, _V): ('psi', 'T'),
    (_I, _V): ('psi', 'T'),
    (_C, _V): ('psi', 'T'),
    (_R, _V): ('psi', 'T'),
    (_V, _V): ('psi', 'T'),
}


def coupled_variables(ref: RegionType, other: RegionType) -> Tuple[str, ...]:
    try:
        return COUPLING_RULES[(RegionType(ref), RegionType(other))]
    except KeyError:
        raise BoundaryConfigurationError(
            f"No coupling rule between {RegionType(ref).name} and {RegionType(other).name} regions; "
            f"declare a contact boundary for this interface") from None


@dataclass
class _InterfaceTable:
    ref_rows: np.ndarray
    other_rows: np.ndarray
    shift: np.ndarray
    charge_rows: np.ndarray
    charge: np.ndarray


class InterfaceBC(BoundaryCondition):
    """Continuity of the coupled unknowns at a region-region interface.

    Rows of every non-reference pair are merged into the reference rows, which
    then hold the conservation law of the combined control volume, and are
    replaced by ``u_ref - u_other = 0``.

    Parameters
    ----------
    name : str
        Label of the boundary.
    nodes : array_like
        Interface nodes.
    interface_charge : float, optional
        Fixed sheet charge density [cm^-2], added to the reference Poisson row.
    """
    kind = BoundaryKind.INTERFACE

    def __init__(self, name: str, nodes, interface_charge: float = 0.) -> None:
        super().__init__(name, nodes)
        self.interface_charge = interface_charge

    def validate(self) -> None:
        for pairs in self.pairs:
            ref_type = self.region_type(pairs[0][0])
            for region, _ in pairs[1:]:
                coupled_variables(ref_type, self.region_type(region))

    def build_table(self, layout) -> _InterfaceTable:
        ref_rows, other_rows, shift = [], [], []
        charge_rows, charge = [], []
        areas = {}

        for k in self.owned_node_indices(layout):
            node = self.nodes[k]
            pairs = self.pairs[k]
            ref_region, ref_fvm = pairs[0]
            ref_type = self.region_type(ref_region)

            for region, fvm in pairs[1:]:
                for var in coupled_variables(ref_type, self.region_type(region)):
                    if layout.has_var(ref_region, var) and layout.has_var(region, var):
                        ref_rows.append(layout.rows(ref_region, fvm=[ref_fvm], var=var)[0])
                        other_rows.append(layout.rows(region, fvm=[fvm], var=var)[0])
                        shift.append(self.potential_shift(ref_region, region, var))

                if self.interface_charge != 0.:
                    key = (ref_region, region)
                    if key not in areas:
                        areas[key] = self.mesh.shared_facet_area(ref_region, region)
                    charge_rows.append(layout.rows(ref_region, fvm=[ref_fvm], var='psi')[0])
                    charge.append(E_CHARGE * self.interface_charge * areas[key][node])

        as_int = lambda a: np.asarray(a, dtype=np.int64)  # noqa: E731
        return _InterfaceTable(ref_rows=as_int(ref_rows),
                               other_rows=as_int(other_rows),
                               shift=np.asarray(shift, dtype=np.float64),
                               charge_rows=as_int(charge_rows),
                               charge=np.asarray(charge, dtype=np.float64))

    def surgery(self, layout) -> RowSurgery:
        t = self.table(layout)
        return RowSurgery(src=t.other_rows, dst=t.ref_rows, clear=t.other_rows)

    def residual(self, x, r, layout, ctx) -> None:
        t = self.table(layout)
        vals, _ = self.equality_values(x, t.ref_rows, t.other_rows, t.shift)
        np.add.at(r, t.other_rows, vals[:, 0])
        np.add.at(r, t.charge_rows, t.charge)

    def jacobian_pattern(self, layout):
        t = self.table(layout)
        return self.equality_pattern(t.ref_rows, t.other_rows)

    def jacobian(self, x, layout, ctx):
        t = self.table(layout)
        _, J = self.equality_values(x, t.ref_rows, t.other_rows, t.shift)
        return J.ravel()
