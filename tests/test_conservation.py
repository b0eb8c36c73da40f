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
Discrete divergence theorem: edge and cell fluxes cancel when summed over a
closed mesh, so that only the volume terms remain.
"""
import numpy as np
import pytest
from mpi4py import MPI

from SemiFlow.constants import E_CHARGE
from SemiFlow.material import DopingProfile, get_material
from SemiFlow.mesh import Mesh
from SemiFlow.regions import create_region
from SemiFlow.solver import AssemblyContext, Orchestrator

pytestmark = pytest.mark.skipif(MPI.COMM_WORLD.size > 1, reason="serial mesh")


def two_node_mesh():
    return Mesh.line([0., 1e-4])


def closed_loop_mesh():
    return Mesh.rectangle([0., 1e-4], [0., 1e-4])


MESHES = {'two_node': two_node_mesh, 'closed_loop': closed_loop_mesh}


def setup_region(mesh, material, lattice=False, **kwargs):
    region = create_region(0, 'r', get_material(material), mesh, **kwargs)
    orch = Orchestrator(mesh, [region], [], comm=MPI.COMM_SELF)
    orch.setup(lattice=lattice)
    return region, orch


@pytest.mark.parametrize("mesh_name", list(MESHES))
@pytest.mark.parametrize("material", ['SiO2', 'Al', 'Vacuum'])
def test_flux_only_regions_telescope(mesh_name, material):
    mesh = MESHES[mesh_name]()
    region, orch = setup_region(mesh, material, lattice=True)
    layout = orch.layout

    rng = np.random.default_rng(11)
    x = orch.owned_solution()
    fvm = np.arange(region.geometry.n_fvm)
    psi_rows = layout.rows(0, fvm, 'psi')
    T_rows = layout.rows(0, fvm, 'T')
    x[psi_rows] += rng.uniform(-1., 1., len(fvm))
    x[T_rows] += rng.uniform(0., 20., len(fvm))

    r = orch.form_function(x, AssemblyContext())

    scale = np.abs(r[psi_rows]).max()
    assert scale > 0.
    assert abs(r[psi_rows].sum()) <= 1e-12 * scale

    if material != 'Al':
        scale = np.abs(r[T_rows]).max()
        assert abs(r[T_rows].sum()) <= 1e-12 * scale


@pytest.mark.parametrize("mesh_name", list(MESHES))
def test_semiconductor_volume_terms_remain(mesh_name):
    mesh = MESHES[mesh_name]()
    doping = [DopingProfile(species='donor', shape='uniform', peak=1e17)]
    region, orch = setup_region(mesh, 'Si', doping=doping)
    layout = orch.layout
    mat = region.material

    rng = np.random.default_rng(3)
    fvm = np.arange(region.geometry.n_fvm)
    rows = {var: layout.rows(0, fvm, var) for var in ('psi', 'n', 'p')}

    x = orch.owned_solution()
    x[rows['psi']] += rng.uniform(-0.05, 0.05, len(fvm))
    x[rows['n']] *= rng.uniform(0.5, 1.5, len(fvm))
    x[rows['p']] *= rng.uniform(0.5, 1.5, len(fvm))

    r = orch.form_function(x, AssemblyContext())

    n, p = x[rows['n']], x[rows['p']]
    T = region.data.T
    vol = region.geometry.volume
    U = np.asarray(mat.recombination(n, p, T))

    space_charge = np.sum(E_CHARGE * (region.data.Nnet + p - n) * vol)
    np.testing.assert_allclose(r[rows['psi']].sum(), space_charge,
                               rtol=1e-9, atol=1e-12 * np.abs(r[rows['psi']]).max())

    for var in ('n', 'p'):
        scale = np.abs(r[rows[var]]).max()
        np.testing.assert_allclose(r[rows[var]].sum(), -np.sum(U * vol), rtol=1e-9, atol=1e-12 * scale)


def test_closed_loop_volumes_partition_the_domain():
    mesh = closed_loop_mesh()
    region = create_region(0, 'r', get_material('SiO2'), mesh)
    g = region.geometry

    np.testing.assert_allclose(g.volume.sum(), 1e-8)
    np.testing.assert_allclose(g.volume, 0.25e-8)
    assert g.n_edges == 5
