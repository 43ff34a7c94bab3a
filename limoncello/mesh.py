import typing as t
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt
from scipy.spatial import Delaunay, QhullError

from .config import log
from .constants import DIM
from .errors import GeometryError

# Cell volume relative to the cube of its longest edge under which a cell counts as flat.
_DEGENERATE_VOLUME = 1.0e-12


def _csr_edges(
        points: npt.NDArray[np.float64], neigh_ptr: npt.NDArray[np.int64], neigh_idx: npt.NDArray[np.int64]
) -> t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.int64]]:
    num_neigh = np.diff(neigh_ptr)
    owner = np.repeat(np.arange(len(points)), num_neigh)
    delta = points[neigh_idx] - points[owner]
    ds = np.linalg.norm(delta, axis=1)
    if np.any(ds <= 0):
        raise GeometryError("Coincident neighbouring vertices.")
    direction = delta / ds[:, None]
    w = 1.0 / ds
    w /= np.bincount(owner, weights=w, minlength=len(points))[owner]
    return direction, ds, w, owner


def _sink_mask(n_points: int, sink: npt.ArrayLike | None, default: npt.NDArray[np.int64]) -> npt.NDArray[np.bool_]:
    mask = np.zeros(n_points, dtype=bool)
    if sink is None:
        mask[default] = True
        return mask
    sink = np.asarray(sink)
    if sink.dtype == bool:
        if sink.shape != (n_points,):
            raise GeometryError(f"Sink mask has shape {sink.shape}, expected ({n_points},).")
        return sink.copy()
    mask[sink.astype(np.int64)] = True
    return mask


@dataclass
class Mesh:
    """
    Vertices and (optionally) Delaunay cells, addressed by integer index.

    Edges are stored in compressed-row form: the neighbours of vertex ``i`` are
    ``neigh_idx[neigh_ptr[i]:neigh_ptr[i + 1]]`` and the per-edge arrays ``dir``, ``ds`` and ``w`` share that
    indexing. In ``cell_neighbours[c, k]`` the neighbour across face ``k`` is opposite vertex ``simplices[c, k]``,
    and ``-1`` marks a face on the boundary.
    """
    points: npt.NDArray[np.float64]
    sink: npt.NDArray[np.bool_]
    neigh_ptr: npt.NDArray[np.int64]
    neigh_idx: npt.NDArray[np.int64]
    dir: npt.NDArray[np.float64]
    ds: npt.NDArray[np.float64]
    w: npt.NDArray[np.float64]
    edge_owner: npt.NDArray[np.int64]
    simplices: npt.NDArray[np.int64] | None = None
    cell_neighbours: npt.NDArray[np.int64] | None = None
    centres: npt.NDArray[np.float64] | None = None
    volumes: npt.NDArray[np.float64] | None = None
    ids: npt.NDArray[np.int64] | None = None

    def __post_init__(self):
        for arr in (self.points, self.sink, self.neigh_ptr, self.neigh_idx, self.dir, self.ds, self.w,
                    self.edge_owner, self.simplices, self.cell_neighbours, self.centres, self.volumes, self.ids):
            if arr is not None:
                arr.setflags(write=False)

    @property
    def n_points(self) -> int:
        return len(self.points)

    @property
    def n_cells(self) -> int:
        return 0 if self.simplices is None else len(self.simplices)

    @property
    def n_edges(self) -> int:
        return len(self.neigh_idx)

    @property
    def num_neigh(self) -> npt.NDArray[np.int64]:
        return np.diff(self.neigh_ptr)

    @property
    def has_cells(self) -> bool:
        return self.simplices is not None

    @property
    def radius(self) -> float:
        """Largest distance of a vertex from the origin."""
        return float(np.max(np.linalg.norm(self.points, axis=1)))

    def neighbours(self, vertex: int) -> npt.NDArray[np.int64]:
        return self.neigh_idx[self.neigh_ptr[vertex]:self.neigh_ptr[vertex + 1]]

    def edge_index(self, vertex: int, neighbour: int) -> int:
        """Index into the per-edge arrays of the edge ``vertex -> neighbour``."""
        hits = np.nonzero(self.neighbours(vertex) == neighbour)[0]
        if len(hits) == 0:
            raise KeyError(f"No edge {vertex} -> {neighbour}.")
        return int(self.neigh_ptr[vertex] + hits[0])

    def boundary_faces(self) -> npt.NDArray[np.int64]:
        """``(cell, face)`` pairs of every face on the boundary of the triangulation."""
        if not self.has_cells:
            raise GeometryError("Mesh was built without cells.")
        return np.argwhere(self.cell_neighbours < 0)

    def face_vertices(self, cell: int, face: int) -> npt.NDArray[np.int64]:
        """The three vertices of face ``face`` of ``cell`` (every vertex but the one opposite), in cell order."""
        return np.delete(self.simplices[cell], face)

    @classmethod
    def from_points(cls, points: npt.ArrayLike, sink: npt.ArrayLike | None = None) -> "Mesh":
        """
        Delaunay-triangulate a point cloud.

        Args:
            points: Vertex positions, shape (n, 3), in m.
            sink: Boolean mask or indices of the sink (boundary) vertices. Defaults to the vertices of the convex
                hull.

        Raises:
            GeometryError: Too few points, the triangulation failed, points were left out of it (duplicates) or a
                cell is degenerate.
        """
        points = np.array(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != DIM:
            raise GeometryError(f"Points must have shape (n, {DIM}); got {points.shape}.")
        if len(points) < DIM + 2:
            raise GeometryError(f"At least {DIM + 2} points are needed for a 3D triangulation (got {len(points)}).")
        if not np.all(np.isfinite(points)):
            raise GeometryError("Non-finite vertex coordinates.")

        try:
            tri = Delaunay(points)
        except QhullError as e:
            raise GeometryError(f"Delaunay triangulation failed: {e}") from e
        if len(tri.coplanar) > 0:
            raise GeometryError(
                f"{len(tri.coplanar)} points were not included in the triangulation (duplicates?): "
                f"{tri.coplanar[:, 0]}"
            )
        return cls.from_simplices(points, tri.simplices, tri.neighbors, sink=sink)

    @classmethod
    def from_simplices(
            cls,
            points: npt.ArrayLike,
            simplices: npt.ArrayLike,
            cell_neighbours: npt.ArrayLike,
            sink: npt.ArrayLike | None = None,
    ) -> "Mesh":
        """
        Build the mesh from an existing tetrahedralisation, e.g. ``scipy.spatial.Delaunay`` output.

        Args:
            points: Vertex positions, shape (n, 3), in m.
            simplices: Vertex indices of each cell, shape (nc, 4).
            cell_neighbours: Cell across the face opposite each vertex of a cell, ``-1`` on the boundary, shape (nc, 4).
            sink: Boolean mask or indices of the sink (boundary) vertices. Defaults to the vertices of the boundary
                faces.

        Raises:
            GeometryError: Bad shapes or indices, vertices in no cell, adjacency that does not match the shared faces,
                or a degenerate cell.
        """
        points = np.array(points, dtype=np.float64)
        simplices = np.array(simplices, dtype=np.int64)
        cell_neighbours = np.array(cell_neighbours, dtype=np.int64)
        n_points = len(points)
        n_cells = len(simplices)
        if points.ndim != 2 or points.shape[1] != DIM:
            raise GeometryError(f"Points must have shape (n, {DIM}); got {points.shape}.")
        if simplices.ndim != 2 or simplices.shape[1] != DIM + 1 or n_cells == 0:
            raise GeometryError(f"Simplices must have shape (nc, {DIM + 1}); got {simplices.shape}.")
        if cell_neighbours.shape != simplices.shape:
            raise GeometryError(f"Cell neighbours have shape {cell_neighbours.shape}, expected {simplices.shape}.")
        if np.any(simplices < 0) or np.any(simplices >= n_points):
            raise GeometryError("Simplex vertex index out of range.")
        if np.any(cell_neighbours < -1) or np.any(cell_neighbours >= n_cells):
            raise GeometryError("Cell neighbour index out of range.")
        unused = np.setdiff1d(np.arange(n_points), simplices)
        if len(unused) > 0:
            raise GeometryError(f"{len(unused)} vertices belong to no cell: {unused[:10]}")

        # The neighbour across face k must list this cell back and contain every vertex but simplices[c, k].
        cell, face = np.nonzero(cell_neighbours >= 0)
        nxt = cell_neighbours[cell, face]
        keep = np.arange(DIM + 1)[None, :] != face[:, None]
        shared = simplices[cell][keep].reshape(-1, DIM)
        links_back = np.any(cell_neighbours[nxt] == cell[:, None], axis=1)
        on_face = np.all(np.any(shared[:, :, None] == simplices[nxt][:, None, :], axis=2), axis=1)
        bad = np.nonzero(~(links_back & on_face))[0]
        if len(bad) > 0:
            i = bad[0]
            raise GeometryError(
                f"{len(bad)} cell faces do not match their neighbours, first cell {cell[i]} face {face[i]} "
                f"(neighbour {nxt[i]})."
            )

        corners = points[simplices]
        edges = corners[:, 1:, :] - corners[:, :1, :]
        volumes = np.abs(np.linalg.det(edges)) / 6.0
        longest = np.max(np.linalg.norm(corners[:, :, None, :] - corners[:, None, :, :], axis=-1), axis=(1, 2))
        flat = np.nonzero(volumes < _DEGENERATE_VOLUME * longest ** 3)[0]
        if len(flat) > 0:
            raise GeometryError(f"{len(flat)} degenerate cells, first at index {flat[0]}.")

        # Every vertex pair of a cell is an edge; both directions, sorted by owner.
        pairs = simplices[:, [[0, 1], [0, 2], [0, 3], [1, 2], [1, 3], [2, 3]]].reshape(-1, 2)
        pairs = np.unique(np.vstack([pairs, pairs[:, ::-1]]), axis=0)
        neigh_idx = pairs[:, 1].copy()
        neigh_ptr = np.searchsorted(pairs[:, 0], np.arange(n_points + 1)).astype(np.int64)
        direction, ds, w, owner = _csr_edges(points, neigh_ptr, neigh_idx)

        b_cell, b_face = np.nonzero(cell_neighbours < 0)
        b_keep = np.arange(DIM + 1)[None, :] != b_face[:, None]
        hull_vertices = np.unique(simplices[b_cell][b_keep])
        sink_mask = _sink_mask(n_points, sink, hull_vertices)
        if np.all(sink_mask):
            raise GeometryError("Every vertex is a sink; nothing to solve.")

        log.info(
            f"Built mesh of {len(points)} vertices ({int(sink_mask.sum())} sinks), {len(simplices)} cells, "
            f"{len(neigh_idx)} directed edges."
        )
        return cls(
            points=points,
            sink=sink_mask,
            neigh_ptr=neigh_ptr,
            neigh_idx=neigh_idx,
            dir=direction,
            ds=ds,
            w=w,
            edge_owner=owner,
            simplices=simplices,
            cell_neighbours=cell_neighbours,
            centres=corners.mean(axis=1),
            volumes=volumes,
            ids=np.arange(len(simplices), dtype=np.int64),
        )

    @classmethod
    def from_neighbours(
            cls, points: npt.ArrayLike, neighbours: t.Sequence[t.Sequence[int]], sink: npt.ArrayLike
    ) -> "Mesh":
        """Mesh with explicit vertex connectivity and no cells; images cannot be traced through it."""
        points = np.array(points, dtype=np.float64).reshape(-1, DIM)
        if len(neighbours) != len(points):
            raise GeometryError(f"{len(neighbours)} neighbour lists for {len(points)} points.")
        neigh_ptr = np.zeros(len(points) + 1, dtype=np.int64)
        np.cumsum([len(nb) for nb in neighbours], out=neigh_ptr[1:])
        neigh_idx = np.array([j for nb in neighbours for j in nb], dtype=np.int64)
        if np.any(neigh_ptr[1:] == neigh_ptr[:-1]):
            raise GeometryError("Every vertex needs at least one neighbour.")
        if np.any(neigh_idx < 0) or np.any(neigh_idx >= len(points)):
            raise GeometryError("Neighbour index out of range.")
        for i, nb in enumerate(neighbours):
            if i in nb:
                raise GeometryError(f"Vertex {i} lists itself as a neighbour.")
            for j in nb:
                if i not in neighbours[j]:
                    raise GeometryError(f"Connectivity is not symmetric: {i} -> {j}.")
        direction, ds, w, owner = _csr_edges(points, neigh_ptr, neigh_idx)
        return cls(
            points=points,
            sink=_sink_mask(len(points), sink, np.zeros(0, dtype=np.int64)),
            neigh_ptr=neigh_ptr,
            neigh_idx=neigh_idx,
            dir=direction,
            ds=ds,
            w=w,
            edge_owner=owner,
        )
