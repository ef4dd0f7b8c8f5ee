"""
Element Types & Canonical Ordering
==================================
Static tables describing every supported element type.

Why is this file needed?
------------------------
1. Ordering: file node order is permuted once into the canonical order, so
   everything downstream (side enumeration, matching) assumes one convention.
2. Topology: each type knows its vertices-per-element, its sides and the
   number of distribution factors a side consumes.

Side numbering follows the file convention (1-based). Node indices in the
side tables refer to the canonical (already permuted) element node order.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum, StrEnum
from typing import Optional

from meshreconciler.errors import FormatError
from meshreconciler.model.records import Sense


class Topology(Enum):
    """Shape of an entity in the mesh database: (label, dimension, corner count)."""
    VERTEX = ("vertex", 0, 1)
    EDGE = ("edge", 1, 2)
    TRI = ("tri", 2, 3)
    QUAD = ("quad", 2, 4)
    TET = ("tet", 3, 4)
    HEX = ("hex", 3, 8)

    def __init__(self, label: str, dimension: int, corner_count: int) -> None:
        self.label = label
        self.dimension = dimension
        self.corner_count = corner_count


class ElementFamily(StrEnum):
    TETRA = "TETRA"
    HEX = "HEX"
    QUAD = "QUAD"
    TRI = "TRI"
    SHELL = "SHELL"
    TRISHELL = "TRISHELL"


FAMILY_ALIASES: dict[str, ElementFamily] = {
    "TETRA": ElementFamily.TETRA,
    "TET": ElementFamily.TETRA,
    "HEX": ElementFamily.HEX,
    "HEXAHEDRON": ElementFamily.HEX,
    "QUAD": ElementFamily.QUAD,
    "TRI": ElementFamily.TRI,
    "TRIANGLE": ElementFamily.TRI,
    "SHELL": ElementFamily.SHELL,
    "TRISHELL": ElementFamily.TRISHELL,
}

FAMILY_TOPOLOGY: dict[ElementFamily, Topology] = {
    ElementFamily.TETRA: Topology.TET,
    ElementFamily.HEX: Topology.HEX,
    ElementFamily.QUAD: Topology.QUAD,
    ElementFamily.TRI: Topology.TRI,
    ElementFamily.SHELL: Topology.QUAD,
    ElementFamily.TRISHELL: Topology.TRI,
}

# Edges as corner pairs; the mid node of edge i sits at index corner_count + i
EDGES: dict[Topology, tuple[tuple[int, int], ...]] = {
    Topology.HEX: ((0, 1), (1, 2), (2, 3), (3, 0), (0, 4), (1, 5),
                   (2, 6), (3, 7), (4, 5), (5, 6), (6, 7), (7, 4)),
    Topology.TET: ((0, 1), (1, 2), (2, 0), (0, 3), (1, 3), (2, 3)),
    Topology.QUAD: ((0, 1), (1, 2), (2, 3), (3, 0)),
    Topology.TRI: ((0, 1), (1, 2), (2, 0)),
}

# Faces as corner loops, outward normal by the right-hand rule
FACES: dict[Topology, tuple[tuple[int, ...], ...]] = {
    Topology.HEX: ((0, 1, 5, 4), (1, 2, 6, 5), (2, 3, 7, 6),
                   (0, 4, 7, 3), (0, 3, 2, 1), (4, 5, 6, 7)),
    Topology.TET: ((0, 1, 3), (1, 2, 3), (0, 3, 2), (0, 2, 1)),
}

# HEX27 in the file: centroid at 20, then face centres -Z, +Z, -X, +X, -Y, +Y.
# Canonical: face centres in side order at 20..25, centroid at 26.
CANONICAL_PERMUTATIONS: dict[str, tuple[int, ...]] = {
    "HEX27": tuple(range(20)) + (25, 24, 26, 23, 21, 22, 20),
}

# Element types that carry a centre node on each face (or on the element for 2-D)
_FACE_CENTRED = {"HEX27", "QUAD9", "SHELL9", "TRI7"}


@dataclass(frozen=True)
class Side:
    """
    One side of an element.

    Args:
        number: 1-based side number as written in the file.
        whole_element: True if the side is the element itself (shell sides 1 and 2).
        sense: Orientation of the side relative to the element.
        node_indices: Canonical element node indices forming the side, in order.
        topology: Topology of the side entity.
        factor_count: Distribution factors consumed by this side.
    """
    number: int
    whole_element: bool
    sense: Sense
    node_indices: tuple[int, ...]
    topology: Topology
    factor_count: int


class ElementType(Enum):
    TETRA4 = (ElementFamily.TETRA, 4)
    TETRA10 = (ElementFamily.TETRA, 10)
    HEX8 = (ElementFamily.HEX, 8)
    HEX20 = (ElementFamily.HEX, 20)
    HEX27 = (ElementFamily.HEX, 27)
    QUAD4 = (ElementFamily.QUAD, 4)
    QUAD8 = (ElementFamily.QUAD, 8)
    QUAD9 = (ElementFamily.QUAD, 9)
    TRI3 = (ElementFamily.TRI, 3)
    TRI6 = (ElementFamily.TRI, 6)
    TRI7 = (ElementFamily.TRI, 7)
    SHELL4 = (ElementFamily.SHELL, 4)
    SHELL8 = (ElementFamily.SHELL, 8)
    SHELL9 = (ElementFamily.SHELL, 9)
    TRISHELL3 = (ElementFamily.TRISHELL, 3)
    TRISHELL6 = (ElementFamily.TRISHELL, 6)

    def __init__(self, family: ElementFamily, nodes_per_element: int) -> None:
        self.family = family
        self.nodes_per_element = nodes_per_element

    @property
    def topology(self) -> Topology:
        return FAMILY_TOPOLOGY[self.family]

    @property
    def dimension(self) -> int:
        return self.topology.dimension

    @property
    def corner_count(self) -> int:
        return self.topology.corner_count

    @property
    def is_shell(self) -> bool:
        return self.family in (ElementFamily.SHELL, ElementFamily.TRISHELL)

    @property
    def permutation(self) -> Optional[tuple[int, ...]]:
        """Canonical node permutation, or None when file order is already canonical."""
        return CANONICAL_PERMUTATIONS.get(self.name)

    @property
    def has_edge_mids(self) -> bool:
        return self.nodes_per_element >= self.corner_count + len(EDGES[self.topology])

    @property
    def mid_node_flags(self) -> tuple[int, int, int, int]:
        """Mid-node presence per dimension (vertex, edge, face, region)."""
        face = int(self.name in _FACE_CENTRED)
        region = int(self is ElementType.HEX27)
        return 0, int(self.has_edge_mids), face, region

    def whole_element_sides(self, mesh_dim: int) -> int:
        """Number of leading side numbers that refer to the element itself."""
        if self.is_shell or (self.family is ElementFamily.TRI and mesh_dim == 3):
            return 2
        return 0

    def side_count(self, mesh_dim: int) -> int:
        if self.dimension == 3:
            return len(FACES[self.topology])
        return self.whole_element_sides(mesh_dim) + len(EDGES[self.topology])

    def side(self, side_number: int, mesh_dim: int) -> Side:
        """
        Describe one side of this element type.

        Args:
            side_number: 1-based side number from the file.
            mesh_dim: Spatial dimension of the mesh (2 or 3).

        Returns:
            The Side with canonical node indices.

        Raises:
            FormatError: If the side number does not exist for this type.
        """
        if side_number < 1 or side_number > self.side_count(mesh_dim):
            raise FormatError(
                f"Side {side_number} does not exist for element type {self.name}",
                stage="sidesets",
            )

        whole_sides = self.whole_element_sides(mesh_dim)
        if side_number <= whole_sides:
            return Side(
                number=side_number,
                whole_element=True,
                sense=Sense.FORWARD if side_number == 1 else Sense.REVERSE,
                node_indices=tuple(range(self.nodes_per_element)),
                topology=self.topology,
                factor_count=self.corner_count,
            )

        index = side_number - whole_sides - 1
        if self.dimension == 3:
            corners = FACES[self.topology][index]
            side_topology = Topology.QUAD if len(corners) == 4 else Topology.TRI
        else:
            corners = EDGES[self.topology][index]
            side_topology = Topology.EDGE

        nodes = list(corners)
        if self.has_edge_mids:
            if len(corners) == 2:
                pairs = [(corners[0], corners[1])]
            else:
                pairs = list(zip(corners, corners[1:] + corners[:1]))
            nodes.extend(self._edge_mid(a, b) for a, b in pairs)
        if self is ElementType.HEX27:
            nodes.append(20 + index)

        return Side(
            number=side_number,
            whole_element=False,
            sense=Sense.FORWARD,
            node_indices=tuple(nodes),
            topology=side_topology,
            factor_count=len(corners),
        )

    def side_factor_count(self, side_number: int, mesh_dim: int) -> int:
        return self.side(side_number, mesh_dim).factor_count

    def _edge_mid(self, a: int, b: int) -> int:
        edges = EDGES[self.topology]
        for i, (p, q) in enumerate(edges):
            if (p, q) == (a, b) or (q, p) == (a, b):
                return self.corner_count + i
        raise KeyError(f"No edge ({a}, {b}) on {self.topology.label}")

    @classmethod
    def from_name(cls, name: str, nodes_per_element: Optional[int] = None) -> ElementType:
        """
        Resolve a file element type name such as 'HEX8', 'hex' or 'SHELL4'.

        A name without a node count takes it from `nodes_per_element`, or the
        lowest-order variant if that is not given either.

        Raises:
            FormatError: If the name is unknown or disagrees with `nodes_per_element`.
        """
        cleaned = name.strip().strip("\x00").strip().upper()
        match = re.fullmatch(r"([A-Z]+)(\d*)", cleaned)
        if match is None or match.group(1) not in FAMILY_ALIASES:
            raise FormatError(f"Unknown element type '{name}'", stage="blocks")

        family = FAMILY_ALIASES[match.group(1)]
        declared = int(match.group(2)) if match.group(2) else None
        if declared is not None and nodes_per_element and declared != nodes_per_element:
            raise FormatError(
                f"Element type '{name}' declares {declared} nodes but the block has "
                f"{nodes_per_element} nodes per element",
                stage="blocks",
            )

        count = declared or nodes_per_element
        variants = [t for t in cls if t.family is family]
        if count is None:
            return variants[0]
        for variant in variants:
            if variant.nodes_per_element == count:
                return variant
        raise FormatError(f"Unsupported element type '{name}' with {count} nodes", stage="blocks")
