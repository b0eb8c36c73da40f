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
Simplex mesh arena and finite-volume control-volume geometry.

Architecture:
    Mesh (nodes, cells, region tag per cell, owner rank per node)
    └── RegionGeometry (one per region, built on demand)
        ├── FVM nodes     - one per (region, mesh node) pair
        ├── edges         - unique FVM-node pairs with length and face area
        └── cells         - vertex FVM nodes, partial areas/volumes, gradient operator

All cross references are integer handles into flat numpy arrays. Two regions
sharing a mesh node each own a separate FVM node for it.

Control volumes are the Voronoi (perpendicular bisector) cells of the
simplices. All areas and volumes are multiplied by ``z_width``: the device
cross section in 1D [cm^2] and the device depth in 2D [cm], so that fluxes
summed over a contact are terminal currents.
"""
from dataclasses import dataclass
from functools import cached_property
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import numpy.typing as npt

NDArray = npt.NDArray[np.floating]
IntArray = npt.NDArray[np.signedinteger]
BoolArray = npt.NDArray[np.bool_]

# Local edges and facets of a simplex, in vertex indices
SIMPLEX_EDGES = {1: ((0, 1),), 2: ((0, 1), (1, 2), (2, 0))}
SIMPLEX_FACETS = {1: ((0,), (1,)), 2: ((0, 1), (1, 2), (2, 0))}

CellRegionSpec = Union[None, Sequence[int], IntArray, Callable[[NDArray], IntArray]]


@dataclass
class RegionGeometry:
    """Control-volume geometry of one region.

    Attributes
    ----------
    region : int
        Region handle.
    nodes : IntArray
        Mesh node of each FVM node, shape (n_fvm,).
    node_to_fvm : IntArray
        FVM node of each mesh node, -1 where the region does not touch it.
    volume : NDArray
        Control volume of each FVM node.
    boundary_area : NDArray
        Exterior (mesh boundary) surface of each control volume.
    edges : IntArray
        FVM-node pairs, shape (n_edges, 2), with ``edges[:, 0] < edges[:, 1]``.
    edge_length, edge_area : NDArray
        Edge length and total control-volume face area across the edge.
    cells : IntArray
        Vertex FVM nodes of each cell, shape (n_cells, dim + 1).
    cell_ids : IntArray
        Mesh cell handle of each region cell.
    cell_edges : IntArray
        Region edge of each local cell edge, shape (n_cells, n_local_edges).
    cell_edge_sign : NDArray
        +1 where the local edge (i -> j) runs along the region edge, else -1.
    cell_partial_area : NDArray
        Part of the edge face area lying inside the cell.
    cell_partial_volume : NDArray
        Part of each vertex control volume lying inside the cell.
    cell_edge_length : NDArray
        Length of each local cell edge.
    cell_grad : NDArray
        Gradient operator, ``grad f = cell_grad[c] @ f[cells[c]]``, shape (n_cells, dim, dim + 1).
    cell_tangent : NDArray
        Unit vector of each local edge (i -> j), shape (n_cells, n_local_edges, dim).
    """
    region: int
    nodes: IntArray
    node_to_fvm: IntArray
    volume: NDArray
    boundary_area: NDArray
    edges: IntArray
    edge_length: NDArray
    edge_area: NDArray
    cells: IntArray
    cell_ids: IntArray
    cell_edges: IntArray
    cell_edge_sign: NDArray
    cell_partial_area: NDArray
    cell_partial_volume: NDArray
    cell_edge_length: NDArray
    cell_grad: NDArray
    cell_tangent: NDArray

    @property
    def n_fvm(self) -> int:
        return len(self.nodes)

    @property
    def n_edges(self) -> int:
        return len(self.edges)

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    @cached_property
    def _adjacency(self):
        a, b = self.edges[:, 0], self.edges[:, 1]
        src = np.concatenate([a, b])
        dst = np.concatenate([b, a])
        eid = np.concatenate([np.arange(len(a)), np.arange(len(a))])
        order = np.lexsort((dst, src))
        ptr = np.zeros(self.n_fvm + 1, dtype=np.int64)
        np.add.at(ptr, src + 1, 1)
        return np.cumsum(ptr), dst[order], eid[order]

    def neighbors(self, i: int) -> IntArray:
        """FVM nodes sharing an edge with FVM node ``i``."""
        ptr, nb, _ = self._adjacency
        return nb[ptr[i]:ptr[i + 1]]

    def neighbor_edges(self, i: int) -> IntArray:
        """Region edges incident to FVM node ``i`` (same order as ``neighbors``)."""
        ptr, _, eid = self._adjacency
        return eid[ptr[i]:ptr[i + 1]]


class Mesh:
    """Unstructured simplex mesh (segments in 1D, triangles in 2D).

    Parameters
    ----------
    points : array_like
        Node coordinates, shape (n_nodes, dim) or (n_nodes,) in 1D.
    cells : array_like
        Vertex indices of each simplex, shape (n_cells, dim + 1).
    cell_region : array_like or callable, optional
        Region handle of each cell, or a function of the cell centroids.
        Default: a single region.
    region_names : sequence of str, optional
        Names of the regions, indexed by region handle.
    node_owner : array_like, optional
        Owning MPI rank of each node. Default: everything on rank 0.
    truncate : bool, optional
        Clip negative Voronoi face areas of obtuse triangles at zero.
    z_width : float, optional
        Cross section (1D) or depth (2D) of the device. Default: 1.0.
    """

    def __init__(self,
                 points,
                 cells,
                 cell_region: CellRegionSpec = None,
                 region_names: Optional[Sequence[str]] = None,
                 node_owner=None,
                 truncate: bool = True,
                 z_width: float = 1.0) -> None:

        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            points = points[:, None]
        cells = np.asarray(cells, dtype=np.int64)

        self.dim = points.shape[1]
        if self.dim not in SIMPLEX_EDGES:
            raise ValueError(f"Only 1D and 2D simplex meshes are supported, got dim={self.dim}")
        if cells.ndim != 2 or cells.shape[1] != self.dim + 1:
            raise ValueError(f"Cells of a {self.dim}D mesh need {self.dim + 1} vertices")

        self.points = points
        self.cells = cells
        self.cell_region = _resolve_cell_region(cell_region, self.centroids)
        self.n_regions = int(self.cell_region.max()) + 1 if len(cells) else 0

        if region_names is None:
            region_names = [f"region{r}" for r in range(self.n_regions)]
        self.region_names = list(region_names)
        if len(self.region_names) < self.n_regions:
            raise ValueError("Fewer region names than regions referenced by cells")

        self.truncate = truncate
        self.z_width = float(z_width)

        if node_owner is None:
            node_owner = np.zeros(len(points), dtype=np.int64)
        self.node_owner = np.asarray(node_owner, dtype=np.int64)

        self._region_geometry: Dict[int, RegionGeometry] = {}

    # ---------------------------
    # Builders
    # ---------------------------

    @classmethod
    def line(cls, x, cell_region: CellRegionSpec = None, **kwargs) -> "Mesh":
        """1D mesh of segments between consecutive coordinates ``x``."""
        x = np.asarray(x, dtype=np.float64)
        if np.any(np.diff(x) <= 0.):
            raise ValueError("Line mesh coordinates must be strictly increasing")
        idx = np.arange(len(x) - 1)
        cells = np.stack([idx, idx + 1], axis=1)
        return cls(x, cells, cell_region, **kwargs)

    @classmethod
    def rectangle(cls, x, y, cell_region: CellRegionSpec = None, **kwargs) -> "Mesh":
        """Structured triangulation of the tensor grid ``x`` by ``y``.

        Each rectangle is split along its (x0, y0) - (x1, y1) diagonal, so that
        all triangles are right-angled and their Voronoi areas are non-negative.
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        nx, ny = len(x), len(y)
        X, Y = np.meshgrid(x, y, indexing='ij')
        points = np.stack([X.ravel(), Y.ravel()], axis=1)

        i, j = np.meshgrid(np.arange(nx - 1), np.arange(ny - 1), indexing='ij')
        n00 = (i * ny + j).ravel()
        n10 = ((i + 1) * ny + j).ravel()
        n01 = (i * ny + j + 1).ravel()
        n11 = ((i + 1) * ny + j + 1).ravel()

        lower = np.stack([n00, n10, n11], axis=1)
        upper = np.stack([n00, n11, n01], axis=1)
        cells = np.concatenate([lower, upper])
        return cls(points, cells, cell_region, **kwargs)

    # ---------------------------
    # Basic properties
    # ---------------------------

    @property
    def n_nodes(self) -> int:
        return len(self.points)

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    @cached_property
    def centroids(self) -> NDArray:
        return self.points[self.cells].mean(axis=1)

    def region_index(self, name: str) -> int:
        try:
            return self.region_names.index(name)
        except ValueError:
            raise KeyError(f"Unknown region '{name}'") from None

    # ---------------------------
    # Cell geometry
    # ---------------------------

    @cached_property
    def _cell_metrics(self) -> Dict[str, NDArray]:
        P = self.points[self.cells]                      # (C, k, dim)
        local_edges = SIMPLEX_EDGES[self.dim]
        ii = [e[0] for e in local_edges]
        jj = [e[1] for e in local_edges]

        edge_vec = P[:, jj] - P[:, ii]                   # (C, ne, dim)
        length = np.linalg.norm(edge_vec, axis=-1)
        tangent = edge_vec / length[..., None]

        # A @ grad = D @ f with rows of A the edge vectors from vertex 0
        A = P[:, 1:] - P[:, :1]                          # (C, dim, dim)
        D = np.hstack([-np.ones((self.dim, 1)), np.eye(self.dim)])
        grad = np.linalg.inv(A) @ D                      # (C, dim, k)

        if self.dim == 1:
            partial_area = np.ones_like(length)
            partial_volume = 0.5 * np.repeat(length, 2, axis=1)
        else:
            partial_area, partial_volume = self._triangle_voronoi(P, length)

        return {'partial_area': partial_area,
                'partial_volume': partial_volume,
                'length': length,
                'grad': grad,
                'tangent': tangent}

    def _triangle_voronoi(self, P: NDArray, length: NDArray):
        a, b, c = P[:, 0], P[:, 1], P[:, 2]
        d = 2.0 * (a[:, 0] * (b[:, 1] - c[:, 1])
                   + b[:, 0] * (c[:, 1] - a[:, 1])
                   + c[:, 0] * (a[:, 1] - b[:, 1]))
        sa, sb, sc = (a**2).sum(1), (b**2).sum(1), (c**2).sum(1)
        ux = (sa * (b[:, 1] - c[:, 1]) + sb * (c[:, 1] - a[:, 1]) + sc * (a[:, 1] - b[:, 1])) / d
        uy = (sa * (c[:, 0] - b[:, 0]) + sb * (a[:, 0] - c[:, 0]) + sc * (b[:, 0] - a[:, 0])) / d
        circumcenter = np.stack([ux, uy], axis=1)

        area = np.empty_like(length)
        for le, (i, j) in enumerate(SIMPLEX_EDGES[2]):
            k = 3 - i - j
            mid = 0.5 * (P[:, i] + P[:, j])
            to_cc = circumcenter - mid
            side = np.sign(np.einsum('ij,ij->i', to_cc, P[:, k] - mid))
            area[:, le] = side * np.linalg.norm(to_cc, axis=1)

        if self.truncate:
            area = np.maximum(area, 0.)

        volume = np.zeros((len(P), 3))
        for le, (i, j) in enumerate(SIMPLEX_EDGES[2]):
            kite = 0.25 * length[:, le] * area[:, le]
            volume[:, i] += kite
            volume[:, j] += kite

        return area, volume

    @cached_property
    def _facet_counts(self):
        keys = self._facet_keys(np.arange(self.n_cells))
        return np.unique(keys.ravel(), return_counts=True)

    def _facet_keys(self, cell_ids: IntArray) -> IntArray:
        """Sorted-vertex keys of all facets of the given cells, shape (n, nf)."""
        cols = []
        for f in SIMPLEX_FACETS[self.dim]:
            F = np.sort(self.cells[cell_ids][:, list(f)], axis=1)
            key = F[:, 0] if self.dim == 1 else F[:, 0] * self.n_nodes + F[:, 1]
            cols.append(key)
        return np.stack(cols, axis=1)

    def _exterior_area(self, cell_ids: IntArray, node_to_fvm: IntArray, n_fvm: int) -> NDArray:
        uniq, counts = self._facet_counts
        keys = self._facet_keys(cell_ids)
        exterior = counts[np.searchsorted(uniq, keys)] == 1

        area = np.zeros(n_fvm)
        for fi, f in enumerate(SIMPLEX_FACETS[self.dim]):
            ext = exterior[:, fi]
            verts = self.cells[cell_ids][ext][:, list(f)]
            if self.dim == 1:
                np.add.at(area, node_to_fvm[verts[:, 0]], 1.0)
            else:
                half = 0.5 * np.linalg.norm(self.points[verts[:, 1]] - self.points[verts[:, 0]], axis=1)
                np.add.at(area, node_to_fvm[verts[:, 0]], half)
                np.add.at(area, node_to_fvm[verts[:, 1]], half)
        return area

    def region_geometry(self, region: int) -> RegionGeometry:
        """Build (and cache) the control-volume geometry of a region."""
        if region in self._region_geometry:
            return self._region_geometry[region]

        cell_ids = np.flatnonzero(self.cell_region == region)
        if len(cell_ids) == 0:
            raise ValueError(f"Region {region} ('{self.region_names[region]}') has no cells")

        nodes, local = np.unique(self.cells[cell_ids], return_inverse=True)
        local = local.reshape(len(cell_ids), -1)
        n_fvm = len(nodes)

        node_to_fvm = np.full(self.n_nodes, -1, dtype=np.int64)
        node_to_fvm[nodes] = np.arange(n_fvm)

        m = self._cell_metrics
        partial_area = self.z_width * m['partial_area'][cell_ids]
        partial_volume = self.z_width * m['partial_volume'][cell_ids]

        local_edges = SIMPLEX_EDGES[self.dim]
        ea = local[:, [e[0] for e in local_edges]]
        eb = local[:, [e[1] for e in local_edges]]
        keys = np.minimum(ea, eb) * n_fvm + np.maximum(ea, eb)
        uniq, inverse = np.unique(keys.ravel(), return_inverse=True)
        edges = np.stack([uniq // n_fvm, uniq % n_fvm], axis=1)

        edge_vec = self.points[nodes[edges[:, 1]]] - self.points[nodes[edges[:, 0]]]

        geom = RegionGeometry(
            region=region,
            nodes=nodes,
            node_to_fvm=node_to_fvm,
            volume=np.bincount(local.ravel(), weights=partial_volume.ravel(), minlength=n_fvm),
            boundary_area=self.z_width * self._exterior_area(cell_ids, node_to_fvm, n_fvm),
            edges=edges,
            edge_length=np.linalg.norm(edge_vec, axis=1),
            edge_area=np.bincount(inverse, weights=partial_area.ravel(), minlength=len(uniq)),
            cells=local,
            cell_ids=cell_ids,
            cell_edges=inverse.reshape(keys.shape),
            cell_edge_sign=np.where(ea < eb, 1.0, -1.0),
            cell_partial_area=partial_area,
            cell_partial_volume=partial_volume,
            cell_edge_length=m['length'][cell_ids],
            cell_grad=m['grad'][cell_ids],
            cell_tangent=m['tangent'][cell_ids],
        )
        self._region_geometry[region] = geom
        return geom

    # ---------------------------
    # Node queries
    # ---------------------------

    @cached_property
    def node_region_incidence(self) -> BoolArray:
        """Boolean matrix (n_nodes, n_regions): node touches region."""
        inc = np.zeros((self.n_nodes, self.n_regions), dtype=bool)
        for r in range(self.n_regions):
            inc[np.unique(self.cells[self.cell_region == r]), r] = True
        return inc

    def interface_nodes(self) -> IntArray:
        """Nodes shared by more than one region."""
        return np.flatnonzero(self.node_region_incidence.sum(axis=1) > 1)

    def nodes_on(self, axis: int, value: float, atol: Optional[float] = None) -> IntArray:
        """Nodes on the coordinate plane ``points[:, axis] == value``."""
        if atol is None:
            extent = np.ptp(self.points[:, axis])
            atol = 1e-9 * (extent if extent > 0 else 1.0)
        return np.flatnonzero(np.abs(self.points[:, axis] - value) <= atol)

    def nodes_in_box(self, lower: Sequence[float], upper: Sequence[float]) -> IntArray:
        lower = np.asarray(lower, dtype=np.float64)
        upper = np.asarray(upper, dtype=np.float64)
        inside = np.all((self.points >= lower) & (self.points <= upper), axis=1)
        return np.flatnonzero(inside)

    def shared_nodes(self, regions: Sequence[int]) -> IntArray:
        """Nodes touching every region in ``regions``."""
        return np.flatnonzero(self.node_region_incidence[:, list(regions)].all(axis=1))

    def shared_facet_area(self, region_a: int, region_b: int) -> NDArray:
        """Interface area between two regions attributed to each mesh node.

        Facets shared by a cell of ``region_a`` and a cell of ``region_b`` are
        split evenly among their vertices. Returns an array of shape (n_nodes,).
        """
        keys_a = self._facet_keys(np.flatnonzero(self.cell_region == region_a)).ravel()
        keys_b = self._facet_keys(np.flatnonzero(self.cell_region == region_b)).ravel()
        common = np.intersect1d(keys_a, keys_b)

        area = np.zeros(self.n_nodes)
        if self.dim == 1:
            area[common] = 1.0
        else:
            first, second = common // self.n_nodes, common % self.n_nodes
            half = 0.5 * np.linalg.norm(self.points[second] - self.points[first], axis=1)
            np.add.at(area, first, half)
            np.add.at(area, second, half)
        return self.z_width * area

    def partition(self, size: int) -> None:
        """Assign node owners for ``size`` ranks (see ``partition_nodes``)."""
        self.node_owner = partition_nodes(self.points, size)


def partition_nodes(points: NDArray, size: int) -> IntArray:
    """Contiguous slabs of nodes along the first axis, one slab per rank."""
    points = np.asarray(points)
    if points.ndim == 1:
        points = points[:, None]
    owner = np.empty(len(points), dtype=np.int64)
    order = np.lexsort(points.T[::-1])
    for rank, block in enumerate(np.array_split(order, size)):
        owner[block] = rank
    return owner


def _resolve_cell_region(spec: CellRegionSpec, centroids: NDArray) -> IntArray:
    n_cells = len(centroids)
    if spec is None:
        return np.zeros(n_cells, dtype=np.int64)
    if callable(spec):
        out = np.asarray(spec(centroids), dtype=np.int64)
    else:
        out = np.asarray(spec, dtype=np.int64)
    if out.shape != (n_cells,):
        raise ValueError(f"cell_region must have shape ({n_cells},), got {out.shape}")
    if np.any(out < 0):
        raise ValueError("Cells without region (negative region handle)")
    return out


def box_regions(boxes: List[Dict], dim: int) -> Callable[[NDArray], IntArray]:
    """Cell-region function from a list of coordinate boxes.

    Each box is a dict with optional ``x``, ``y`` intervals; a cell belongs to
    the first box containing its centroid.
    """
    def assign(centroids: NDArray) -> IntArray:
        out = np.full(len(centroids), -1, dtype=np.int64)
        for r, box in enumerate(boxes):
            inside = np.ones(len(centroids), dtype=bool)
            for axis, key in enumerate('xy'[:dim]):
                if key in box:
                    lo, hi = box[key]
                    inside &= (centroids[:, axis] >= lo) & (centroids[:, axis] <= hi)
            out[inside & (out < 0)] = r
        return out
    return assign
