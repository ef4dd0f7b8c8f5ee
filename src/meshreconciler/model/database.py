"""
In-Memory Mesh Database
=======================
Entity store that the import and reconcile stages write into.

Why is this file needed?
------------------------
1. Handles: vertices, elements and sets share one integer handle space,
   allocated upwards from 1, so "created after" comparisons are meaningful.
2. Adjacency: vertex-to-element upward adjacency answers "which entities of
   dimension d use all of these vertices", which drives side matching and
   dead-element lookup.
3. Sets & Tags: ordered or unordered sets, optionally tracking their members
   so deleted entities disappear from every set that holds them, plus
   sparse named tags on any handle.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence

import meshio
import numpy as np

from meshreconciler.config import GLOBAL_ID_TAG
from meshreconciler.errors import DatabaseError
from meshreconciler.model.element_types import Topology

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)

_MISSING = object()

# (topology, node count) -> meshio cell type
MESHIO_CELL_TYPES: dict[tuple[Topology, int], str] = {
    (Topology.EDGE, 2): "line",
    (Topology.EDGE, 3): "line3",
    (Topology.TRI, 3): "triangle",
    (Topology.TRI, 6): "triangle6",
    (Topology.TRI, 7): "triangle7",
    (Topology.QUAD, 4): "quad",
    (Topology.QUAD, 8): "quad8",
    (Topology.QUAD, 9): "quad9",
    (Topology.TET, 4): "tetra",
    (Topology.TET, 10): "tetra10",
    (Topology.HEX, 8): "hexahedron",
    (Topology.HEX, 20): "hexahedron20",
    (Topology.HEX, 27): "hexahedron27",
}

# meshio follows VTK node order, which differs from the canonical one for
# hexahedra: top edges before vertical edges, face centres as -X, +X, -Y, +Y, -Z, +Z
_HEX20_TO_VTK = tuple(range(12)) + (16, 17, 18, 19, 12, 13, 14, 15)
MESHIO_NODE_ORDER: dict[str, tuple[int, ...]] = {
    "hexahedron20": _HEX20_TO_VTK,
    "hexahedron27": _HEX20_TO_VTK + (23, 21, 20, 22, 24, 25, 26),
}


@dataclass
class _Element:
    topology: Topology
    connectivity: tuple[int, ...]


@dataclass
class _MeshSet:
    ordered: bool
    track_owner: bool
    members: list[int] = field(default_factory=list)
    # Mirrors `members` for O(1) membership tests
    lookup: dict[int, int] = field(default_factory=dict)

    def add(self, handle: int) -> None:
        if not self.ordered and handle in self.lookup:
            return
        self.members.append(handle)
        self.lookup[handle] = self.lookup.get(handle, 0) + 1

    def discard(self, handle: int) -> bool:
        if handle not in self.lookup:
            return False
        self.members = [m for m in self.members if m != handle]
        del self.lookup[handle]
        return True


class MeshDatabase:
    """
    Minimal mesh database with vertices, elements, sets and tags.

    Handles are positive integers; 0 is never a valid handle.
    """

    def __init__(self) -> None:
        self._next_handle = 1
        self._coords: dict[int, np.ndarray] = {}
        self._elements: dict[int, _Element] = {}
        self._sets: dict[int, _MeshSet] = {}
        self._upward: dict[int, set[int]] = {}
        self._owners: dict[int, set[int]] = {}
        self._tags: dict[str, dict[int, Any]] = {}

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------
    @property
    def max_handle(self) -> int:
        """Largest handle allocated so far (0 for an empty database)."""
        return self._next_handle - 1

    def _allocate(self, count: int) -> range:
        start = self._next_handle
        self._next_handle += count
        return range(start, start + count)

    def is_vertex(self, handle: int) -> bool:
        return handle in self._coords

    def is_element(self, handle: int) -> bool:
        return handle in self._elements

    def is_set(self, handle: int) -> bool:
        return handle in self._sets

    def exists(self, handle: int) -> bool:
        return self.is_vertex(handle) or self.is_element(handle) or self.is_set(handle)

    def handles_after(self, watermark: int) -> list[int]:
        """All live handles greater than `watermark`, ascending."""
        live = [h for h in self._coords if h > watermark]
        live += [h for h in self._elements if h > watermark]
        live += [h for h in self._sets if h > watermark]
        return sorted(live)

    # ------------------------------------------------------------------
    # Vertices
    # ------------------------------------------------------------------
    def create_vertices(self, coords: npt.ArrayLike) -> range:
        """
        Create one vertex per coordinate row.

        Args:
            coords: Array of shape (n, 3).

        Returns:
            The contiguous range of new vertex handles.
        """
        points = np.asarray(coords, dtype=np.float64).reshape(-1, 3)
        handles = self._allocate(len(points))
        for handle, point in zip(handles, points):
            self._coords[handle] = point.copy()
            self._upward[handle] = set()
        return handles

    def vertices(self, set_handle: Optional[int] = None) -> list[int]:
        if set_handle is None:
            return sorted(self._coords)
        return [h for h in self.set_members(set_handle) if h in self._coords]

    def get_coords(self, handles: Iterable[int]) -> np.ndarray:
        rows = []
        for handle in handles:
            if handle not in self._coords:
                raise DatabaseError("Handle is not a vertex", stage="database", identifier=handle)
            rows.append(self._coords[handle])
        if not rows:
            return np.empty((0, 3), dtype=np.float64)
        return np.vstack(rows)

    def set_coords(self, handles: Sequence[int], coords: npt.ArrayLike) -> None:
        points = np.asarray(coords, dtype=np.float64).reshape(-1, 3)
        if len(points) != len(handles):
            raise DatabaseError(
                f"Got {len(points)} coordinates for {len(handles)} vertices", stage="database"
            )
        for handle, point in zip(handles, points):
            if handle not in self._coords:
                raise DatabaseError("Handle is not a vertex", stage="database", identifier=handle)
            self._coords[handle] = point.copy()

    # ------------------------------------------------------------------
    # Elements
    # ------------------------------------------------------------------
    def create_elements(self, topology: Topology, connectivity: npt.ArrayLike) -> range:
        """
        Create elements from a connectivity table of vertex handles.

        Args:
            topology: Topology shared by all new elements.
            connectivity: Array of shape (n, nodes_per_element).

        Returns:
            The contiguous range of new element handles.
        """
        table = np.asarray(connectivity, dtype=np.int64)
        if table.ndim != 2:
            raise DatabaseError("Connectivity must be a 2-D table", stage="database")
        for handle in np.unique(table):
            if int(handle) not in self._coords:
                raise DatabaseError("Connectivity references a non-vertex", stage="database",
                                    identifier=int(handle))

        handles = self._allocate(len(table))
        for handle, row in zip(handles, table):
            nodes = tuple(int(v) for v in row)
            self._elements[handle] = _Element(topology, nodes)
            for vertex in nodes:
                self._upward[vertex].add(handle)
        return handles

    def create_element(self, topology: Topology, nodes: Sequence[int]) -> int:
        return self.create_elements(topology, [list(nodes)])[0]

    def elements(self, dimension: Optional[int] = None, set_handle: Optional[int] = None) -> list[int]:
        if set_handle is None:
            candidates: Iterable[int] = sorted(self._elements)
        else:
            candidates = [h for h in self.set_members(set_handle) if h in self._elements]
        if dimension is None:
            return list(candidates)
        return [h for h in candidates if self._elements[h].topology.dimension == dimension]

    def topology(self, handle: int) -> Topology:
        if handle in self._coords:
            return Topology.VERTEX
        if handle not in self._elements:
            raise DatabaseError("Handle is not an element", stage="database", identifier=handle)
        return self._elements[handle].topology

    def get_connectivity(self, handle: int) -> tuple[int, ...]:
        if handle not in self._elements:
            raise DatabaseError("Handle is not an element", stage="database", identifier=handle)
        return self._elements[handle].connectivity

    def get_adjacencies(self, vertices: Iterable[int], dimension: int) -> list[int]:
        """
        Elements of the given dimension that use every one of `vertices`.

        Returns:
            Matching element handles in ascending order.
        """
        common: Optional[set[int]] = None
        for vertex in vertices:
            if vertex not in self._upward:
                raise DatabaseError("Handle is not a vertex", stage="database", identifier=vertex)
            users = self._upward[vertex]
            common = set(users) if common is None else common & users
            if not common:
                return []
        if common is None:
            return []
        return sorted(h for h in common if self._elements[h].topology.dimension == dimension)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    def delete_entities(self, handles: Iterable[int]) -> None:
        """Delete elements, unused vertices or sets and drop their tags."""
        for handle in list(handles):
            if handle in self._elements:
                element = self._elements.pop(handle)
                for vertex in element.connectivity:
                    self._upward[vertex].discard(handle)
            elif handle in self._coords:
                if self._upward[handle]:
                    raise DatabaseError("Vertex is still used by elements", stage="database",
                                        identifier=handle)
                del self._coords[handle]
                del self._upward[handle]
            elif handle in self._sets:
                del self._sets[handle]
            else:
                raise DatabaseError("Cannot delete unknown handle", stage="database",
                                    identifier=handle)

            for owner in self._owners.pop(handle, set()):
                if owner in self._sets:
                    self._sets[owner].discard(handle)
            for values in self._tags.values():
                values.pop(handle, None)

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------
    def create_set(self, ordered: bool = False, track_owner: bool = True) -> int:
        handle = self._allocate(1)[0]
        self._sets[handle] = _MeshSet(ordered=ordered, track_owner=track_owner)
        return handle

    def _set(self, handle: int) -> _MeshSet:
        if handle not in self._sets:
            raise DatabaseError("Handle is not a set", stage="database", identifier=handle)
        return self._sets[handle]

    def add_entities(self, set_handle: int, handles: Iterable[int]) -> None:
        mesh_set = self._set(set_handle)
        for handle in handles:
            if not self.exists(handle):
                raise DatabaseError("Cannot add unknown handle to set", stage="database",
                                    identifier=handle)
            mesh_set.add(handle)
            if mesh_set.track_owner:
                self._owners.setdefault(handle, set()).add(set_handle)

    def remove_entities(self, set_handle: int, handles: Iterable[int]) -> None:
        mesh_set = self._set(set_handle)
        for handle in handles:
            if mesh_set.discard(handle) and handle in self._owners:
                self._owners[handle].discard(set_handle)

    def set_members(self, set_handle: int) -> list[int]:
        return list(self._set(set_handle).members)

    def contains(self, set_handle: int, handle: int) -> bool:
        return handle in self._set(set_handle).lookup

    def is_ordered(self, set_handle: int) -> bool:
        return self._set(set_handle).ordered

    def find_sets(self, tag: str, value: Any) -> list[int]:
        """Sets carrying `tag` equal to `value`, ascending by handle."""
        values = self._tags.get(tag, {})
        return sorted(h for h, v in values.items() if h in self._sets and v == value)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------
    def tag_set(self, tag: str, handle: int, value: Any) -> None:
        if not self.exists(handle):
            raise DatabaseError(f"Cannot tag unknown handle with '{tag}'", stage="database",
                                identifier=handle)
        self._tags.setdefault(tag, {})[handle] = value

    def tag_set_many(self, tag: str, handles: Sequence[int], values: Sequence[Any]) -> None:
        if len(handles) != len(values):
            raise DatabaseError(
                f"Got {len(values)} values for {len(handles)} handles on tag '{tag}'",
                stage="database",
            )
        for handle, value in zip(handles, values):
            self.tag_set(tag, handle, value)

    def tag_get(self, tag: str, handle: int, default: Any = _MISSING) -> Any:
        value = self._tags.get(tag, {}).get(handle, _MISSING)
        if value is _MISSING:
            if default is _MISSING:
                raise DatabaseError(f"Tag '{tag}' not set", stage="database", identifier=handle)
            return default
        return value

    def tagged(self, tag: str) -> dict[int, Any]:
        """Copy of every (handle, value) pair for a tag."""
        return dict(self._tags.get(tag, {}))

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------
    def to_meshio(self, set_handle: Optional[int] = None) -> meshio.Mesh:
        """
        Export vertices and elements to a meshio.Mesh.

        Elements are grouped per meshio cell type; higher-order hexahedra are
        reordered into meshio's node convention. GLOBAL_ID is exported as
        point and cell data, 0 where unset. Elements without a meshio
        counterpart are skipped with a warning.
        """
        vertices = self.vertices(set_handle)
        index = {h: i for i, h in enumerate(vertices)}
        points = self.get_coords(vertices)

        ids = self._tags.get(GLOBAL_ID_TAG, {})
        grouped: dict[str, list[list[int]]] = {}
        grouped_ids: dict[str, list[int]] = {}
        for handle in self.elements(set_handle=set_handle):
            element = self._elements[handle]
            cell_type = MESHIO_CELL_TYPES.get((element.topology, len(element.connectivity)))
            if cell_type is None:
                logger.warning(f"Element {handle} has no meshio cell type, skipped.")
                continue
            if any(v not in index for v in element.connectivity):
                logger.warning(f"Element {handle} uses vertices outside the export, skipped.")
                continue
            nodes = [index[v] for v in element.connectivity]
            order = MESHIO_NODE_ORDER.get(cell_type)
            if order is not None:
                nodes = [nodes[i] for i in order]
            grouped.setdefault(cell_type, []).append(nodes)
            grouped_ids.setdefault(cell_type, []).append(int(ids.get(handle, 0)))

        cells = [(cell_type, np.asarray(rows, dtype=np.int64)) for cell_type, rows in grouped.items()]
        cell_data = {GLOBAL_ID_TAG: [np.asarray(grouped_ids[cell_type], dtype=np.int64) for cell_type in grouped]}
        point_data = {GLOBAL_ID_TAG: np.asarray([int(ids.get(h, 0)) for h in vertices], dtype=np.int64)}
        return meshio.Mesh(points, cells, point_data=point_data, cell_data=cell_data)
