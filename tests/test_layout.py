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
Unknown layout: global numbering, local buffers, ghosts and boundary slots.
"""
import numpy as np
import pytest

from SemiFlow.layout import EquationKind, RegionType, build_layout, region_variables
from SemiFlow.material import get_material
from SemiFlow.mesh import Mesh
from SemiFlow.regions import create_region


class FakeComm:
    """Rank/size stand-in to build the layout of any rank in a serial run."""

    def __init__(self, rank, size):
        self.rank = rank
        self.size = size

    def Get_rank(self):
        return self.rank

    def Get_size(self):
        return self.size


def stacked_regions(n_ranks=1):
    """Silicon below oxide on a 4 x 3 grid."""
    mesh = Mesh.rectangle(np.linspace(0., 3e-4, 4), np.linspace(0., 2e-4, 3),
                          cell_region=lambda c: (c[:, 1] > 1e-4).astype(int),
                          region_names=['si', 'ox'])
    mesh.partition(n_ranks)
    regions = [create_region(0, 'si', get_material('Si'), mesh),
               create_region(1, 'ox', get_material('SiO2'), mesh)]
    return mesh, regions


def test_region_variables():
    assert region_variables(RegionType.SEMICONDUCTOR, False) == ('psi', 'n', 'p')
    assert region_variables(RegionType.SEMICONDUCTOR, True) == ('psi', 'n', 'p', 'T')
    assert region_variables(RegionType.RESISTIVE, False) == ('psi',)
    assert region_variables(RegionType.VACUUM, True) == ('psi', 'T')
    assert region_variables(RegionType.SEMICONDUCTOR, False, energy_balance=True) == ('psi', 'n', 'p', 'Tn', 'Tp')
    assert region_variables(RegionType.SEMICONDUCTOR, True, energy_balance=True) == ('psi', 'n', 'p', 'Tn', 'Tp', 'T')
    assert region_variables(RegionType.INSULATOR, True, energy_balance=True) == ('psi', 'T')


@pytest.mark.parametrize("lattice", [False, True])
def test_serial_layout(lattice):
    mesh, regions = stacked_regions()
    layout = build_layout(mesh, regions, n_slots=2, lattice=lattice, comm=FakeComm(0, 1))

    n_si = regions[0].geometry.n_fvm
    n_ox = regions[1].geometry.n_fvm
    nv_si = 4 if lattice else 3
    nv_ox = 2 if lattice else 1
    n_nodes = nv_si * n_si + nv_ox * n_ox

    assert layout.global_size == n_nodes + 2
    assert layout.n_owned == layout.local_size == layout.global_size
    np.testing.assert_array_equal(layout.local_to_global, np.arange(layout.global_size))
    np.testing.assert_array_equal(layout.slot_local, [n_nodes, n_nodes + 1])

    # Contiguous per region, variables interleaved per node
    np.testing.assert_array_equal(layout.rows(0, np.arange(n_si), 'psi'), nv_si * np.arange(n_si))
    np.testing.assert_array_equal(layout.rows(1, [0], 'psi'), [nv_si * n_si])

    kinds = layout.row_kind
    assert kinds[layout.rows(0, [0], 'n')[0]] == EquationKind.N
    assert kinds[layout.rows(1, [0], 'psi')[0]] == EquationKind.PSI
    assert np.all(kinds[layout.slot_local] == EquationKind.ELECTRODE)
    np.testing.assert_array_equal(layout.row_region_type()[layout.slot_local], [-1, -1])

    with pytest.raises(KeyError):
        layout.rows(1, [0], 'n')


def test_partitioned_layouts_agree():
    size = 2
    mesh, regions = stacked_regions(size)
    layouts = [build_layout(mesh, regions, n_slots=1, lattice=False, comm=FakeComm(q, size))
               for q in range(size)]

    global_size = layouts[0].global_size
    assert all(lay.global_size == global_size for lay in layouts)

    # Owned blocks tile the global range, slots belong to the last rank
    owned = np.concatenate([lay.local_to_global[:lay.n_owned] for lay in layouts])
    np.testing.assert_array_equal(np.sort(owned), np.arange(global_size))
    assert layouts[-1].is_owned_row(layouts[-1].slot_local).all()
    assert not layouts[0].is_owned_row(layouts[0].slot_local).any()

    # Every FVM node has the same global offset on all ranks
    for ri in range(len(regions)):
        np.testing.assert_array_equal(layouts[0].global_offset[ri], layouts[1].global_offset[ri])

    # Ghosts cover every vertex of a cell touching an owned node
    for lay in layouts:
        for ri, r in enumerate(regions):
            cells = r.geometry.cells
            touching = lay.owned[ri][cells].any(axis=1)
            needed = np.unique(cells[touching])
            assert np.all(lay.local_offset[ri][needed] >= 0)
            glob = lay.local_to_global[lay.local_offset[ri][needed]]
            np.testing.assert_array_equal(glob, lay.global_offset[ri][needed])


def test_global_to_local():
    size = 2
    mesh, regions = stacked_regions(size)
    lay = build_layout(mesh, regions, n_slots=1, lattice=False, comm=FakeComm(1, size))

    local = lay.global_to_local(lay.local_to_global)
    np.testing.assert_array_equal(local, np.arange(lay.local_size))

    missing = np.setdiff1d(np.arange(lay.global_size), lay.local_to_global)
    if len(missing):
        assert np.all(lay.global_to_local(missing) == -1)
