"""
Boundary Resolver
=================
Builds node sets and side sets from the file's boundary condition groups.

Why is this file needed?
------------------------
1. Sides: a side set lists (element, side number) pairs. Each pair is
   resolved to a lower-dimensional side entity that is found by matching
   nodes, or created. Its orientation relative to the element decides
   whether it joins the forward members or the reverse child set.
2. Factors: distribution factors are consumed per side, including sides of
   blocks that are not loaded, so values stay aligned with their sides.
3. Node sets: nodes are restricted to those used by loaded blocks.
"""
from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Sequence, Union

import numpy as np

from meshreconciler.config import (
    DIRICHLET_SET_TAG,
    DIST_FACTOR_TAG,
    GLOBAL_ID_TAG,
    NEUMANN_SET_TAG,
    SENSE_TAG,
)
from meshreconciler.errors import BadConnectivity, FormatError
from meshreconciler.model.io import optional_dimension, read_set_ids
from meshreconciler.model.records import Sense

if TYPE_CHECKING:
    from meshreconciler.model.database import MeshDatabase
    from meshreconciler.model.element_types import Topology
    from meshreconciler.model.io import SnapshotFile
    from meshreconciler.model.records import Block, ImportResult, ImportSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedSide:
    handle: int
    sense: Sense
    created: bool
    factor_count: int


@dataclass(frozen=True)
class SkippedSide:
    """Side of an element in a block that is not loaded; only its factors are consumed."""
    block_id: int
    factor_count: Optional[int]


@dataclass
class SideSetContent:
    forward: list[int] = field(default_factory=list)
    reverse: list[int] = field(default_factory=list)
    factors: list[float] = field(default_factory=list)
    created: int = 0
    matched: int = 0
    skipped: int = 0


class FactorCursor:
    """
    Sequential reader over one set's distribution factors.

    Overrunning the available values is a format error; leftover values are
    reported by the caller.
    """

    def __init__(self, factors: Optional[np.ndarray], set_id: int) -> None:
        self.factors = np.zeros(0) if factors is None else np.asarray(factors, dtype=np.float64).ravel()
        self.set_id = set_id
        self.position = 0

    @property
    def remaining(self) -> int:
        return len(self.factors) - self.position

    def take(self, count: int) -> np.ndarray:
        if count > self.remaining:
            raise FormatError(
                f"Side set needs {count} more distribution factors but only {self.remaining} remain",
                stage="sidesets",
                identifier=self.set_id,
            )
        values = self.factors[self.position:self.position + count]
        self.position += count
        return values

    def skip(self, count: int) -> None:
        self.take(count)


def match_orientation(candidate: Sequence[int], side: Sequence[int], corner_count: int) -> Optional[Sense]:
    """
    Compare an existing entity's nodes with a side's nodes.

    Corners are compared cyclically starting at the side's first node, first
    in forward order and then reversed. For higher-order sides the edge mid
    nodes follow the corners and rotate with them; any remaining nodes (face
    centres) are compared position by position.

    Returns:
        FORWARD or REVERSE on a match, None otherwise.
    """
    if len(candidate) != len(side):
        return None

    n = corner_count
    corners = list(candidate[:n])
    if side[0] not in corners:
        return None

    has_mids = n > 2 and len(side) >= 2 * n
    tail = 2 * n if has_mids else n
    if list(candidate[tail:]) != list(side[tail:]):
        return None

    side_corners = list(side[:n])
    if n == 2:
        # Edges have no rotation, only direction
        if corners == side_corners:
            return Sense.FORWARD
        if corners[::-1] == side_corners:
            return Sense.REVERSE
        return None

    r = corners.index(side[0])
    mids = list(candidate[n:2 * n]) if has_mids else []
    side_mids = list(side[n:2 * n]) if has_mids else []

    forward = [corners[(r + i) % n] for i in range(n)]
    if forward == side_corners:
        if not has_mids or [mids[(r + i) % n] for i in range(n)] == side_mids:
            return Sense.FORWARD

    reverse = [corners[(r - i) % n] for i in range(n)]
    if reverse == side_corners:
        # Side edge i joins reversed corners i and i+1, i.e. candidate edge r-i-1
        if not has_mids or [mids[(r - i - 1) % n] for i in range(n)] == side_mids:
            return Sense.REVERSE

    return None


def find_or_create_side(db: MeshDatabase, nodes: Sequence[int], topology: Topology) -> tuple[int, Sense, bool]:
    """
    Reuse an existing entity with the same nodes, or create a new one.

    Returns:
        (handle, sense, created). A created side always has FORWARD sense.
    """
    for candidate in db.get_adjacencies([nodes[0]], topology.dimension):
        sense = match_orientation(db.get_connectivity(candidate), nodes, topology.corner_count)
        if sense is not None:
            return candidate, sense, False
    handle = db.create_element(topology, nodes)
    return handle, Sense.FORWARD, True


class BoundaryResolver:
    """Locates the owning block of a file element id and resolves its sides."""

    def __init__(self, db: MeshDatabase, blocks: Sequence[Block], mesh_dim: int) -> None:
        self.db = db
        self.blocks = sorted(blocks, key=lambda b: b.start_file_id)
        self.starts = [b.start_file_id for b in self.blocks]
        self.mesh_dim = mesh_dim

    def locate(self, file_id: int) -> Optional[Block]:
        i = bisect.bisect_right(self.starts, file_id) - 1
        if i < 0:
            return None
        block = self.blocks[i]
        return block if block.contains_file_id(file_id) else None

    def resolve(self, file_id: int, side_number: int, set_id: int) -> Union[ResolvedSide, SkippedSide]:
        block = self.locate(file_id)
        if block is None:
            raise FormatError(
                f"Element {file_id} is not in any block", stage="sidesets", identifier=set_id
            )

        element_type = block.element_type
        if not block.reading:
            if element_type is None:
                return SkippedSide(block.block_id, None)
            return SkippedSide(block.block_id, element_type.side_factor_count(side_number, self.mesh_dim))

        side = element_type.side(side_number, self.mesh_dim)
        element = block.element_handle(file_id)
        if side.whole_element:
            return ResolvedSide(element, side.sense, False, side.factor_count)

        connectivity = self.db.get_connectivity(element)
        nodes = [connectivity[i] for i in side.node_indices]
        handle, sense, created = find_or_create_side(self.db, nodes, side.topology)
        return ResolvedSide(handle, sense, created, side.factor_count)


def _session_set(db: MeshDatabase, session: ImportSession, tag: str, set_id: int) -> Optional[int]:
    """A set carrying `tag` == `set_id` that was created during this import, if any."""
    for handle in db.find_sets(tag, set_id):
        if session.created_this_session(handle):
            return handle
    return None


def _reverse_child(db: MeshDatabase, side_set: int) -> int:
    for member in db.set_members(side_set):
        if db.is_set(member) and db.tag_get(SENSE_TAG, member, default=None) == int(Sense.REVERSE):
            return member
    child = db.create_set(ordered=False, track_owner=True)
    db.tag_set(SENSE_TAG, child, int(Sense.REVERSE))
    db.add_entities(side_set, [child])
    return child


def resolve_side_set(snapshot: SnapshotFile, resolver: BoundaryResolver, seq_id: int,
                     set_id: int) -> SideSetContent:
    """Resolve every (element, side) pair of one side set."""
    elements = np.asarray(snapshot.variable(f"elem_ss{seq_id}"), dtype=np.int64).ravel()
    sides = np.asarray(snapshot.variable(f"side_ss{seq_id}"), dtype=np.int64).ravel()
    if len(elements) != len(sides):
        raise FormatError(
            f"elem_ss{seq_id} and side_ss{seq_id} differ in length", stage="sidesets", identifier=set_id
        )

    num_df = optional_dimension(snapshot, f"num_df_ss{seq_id}")
    factors = snapshot.variable(f"dist_fact_ss{seq_id}") if num_df else None
    cursor = FactorCursor(factors, set_id)

    content = SideSetContent()
    for file_id, side_number in zip(elements, sides):
        outcome = resolver.resolve(int(file_id), int(side_number), set_id)
        if isinstance(outcome, SkippedSide):
            if factors is not None:
                if outcome.factor_count is None:
                    raise FormatError(
                        f"Cannot count distribution factors for element {int(file_id)} in skipped "
                        f"block {outcome.block_id} of unknown type",
                        stage="sidesets",
                        identifier=set_id,
                    )
                cursor.skip(outcome.factor_count)
            content.skipped += 1
            continue

        if outcome.sense is Sense.REVERSE:
            content.reverse.append(outcome.handle)
        else:
            content.forward.append(outcome.handle)
        if outcome.created:
            content.created += 1
        else:
            content.matched += 1
        if factors is not None:
            content.factors.extend(float(v) for v in cursor.take(outcome.factor_count))

    if cursor.remaining > 0:
        logger.warning(
            f"Side set {set_id}: {cursor.remaining} distribution factors left unused."
        )
    return content


def read_side_sets(snapshot: SnapshotFile, db: MeshDatabase, session: ImportSession,
                   result: ImportResult) -> None:
    """
    Create a NEUMANN_SET for every side set with at least one loaded side.

    Forward sides are direct members; reverse sides go into a child set
    tagged SENSE = -1. Distribution factors are appended to the set's
    `distFactor` tag.
    """
    num_sets = session.header.num_side_sets
    if num_sets == 0:
        return

    ids = read_set_ids(snapshot, NEUMANN_SET_TAG)
    resolver = BoundaryResolver(db, session.blocks, session.header.num_dim)

    for seq_id, set_id in enumerate(ids, start=1):
        set_id = int(set_id)
        content = resolve_side_set(snapshot, resolver, seq_id, set_id)
        result.sides_created += content.created
        result.sides_matched += content.matched
        result.sides_skipped += content.skipped

        if not content.forward and not content.reverse:
            logger.debug(f"Side set {set_id} has no sides in loaded blocks.")
            continue

        side_set = _session_set(db, session, NEUMANN_SET_TAG, set_id)
        if side_set is None:
            side_set = db.create_set(ordered=True, track_owner=True)
            db.tag_set(NEUMANN_SET_TAG, side_set, set_id)
            db.tag_set(GLOBAL_ID_TAG, side_set, set_id)

        if content.reverse:
            db.add_entities(_reverse_child(db, side_set), content.reverse)
        if content.forward:
            db.add_entities(side_set, content.forward)

        if content.factors:
            existing = db.tag_get(DIST_FACTOR_TAG, side_set, default=None)
            values = np.asarray(content.factors, dtype=np.float64)
            if existing is not None:
                values = np.concatenate([existing, values])
            db.tag_set(DIST_FACTOR_TAG, side_set, values)

        result.side_sets[set_id] = side_set
        logger.info(
            f"Side set {set_id}: {len(content.forward)} forward, {len(content.reverse)} reverse sides."
        )


def read_node_sets(snapshot: SnapshotFile, db: MeshDatabase, session: ImportSession,
                   result: ImportResult) -> None:
    """
    Create a DIRICHLET_SET for every node set, keeping only nodes used by
    loaded blocks and not already in the set.
    """
    header = session.header
    if header.num_node_sets == 0:
        return

    ids = read_set_ids(snapshot, DIRICHLET_SET_TAG)
    for seq_id, set_id in enumerate(ids, start=1):
        set_id = int(set_id)
        indices = np.asarray(snapshot.variable(f"node_ns{seq_id}"), dtype=np.int64).ravel()
        bad = (indices < 1) | (indices > header.num_nodes)
        if bad.any():
            raise BadConnectivity(
                f"Node set references node {int(indices[bad][0])}, valid range is 1..{header.num_nodes}",
                stage="nodesets",
                identifier=set_id,
            )

        num_df = optional_dimension(snapshot, f"num_df_ns{seq_id}")
        factors = None
        if num_df:
            factors = np.asarray(snapshot.variable(f"dist_fact_ns{seq_id}"), dtype=np.float64).ravel()
            if len(factors) < len(indices):
                raise FormatError(
                    f"Node set has {len(indices)} nodes but {len(factors)} distribution factors",
                    stage="nodesets",
                    identifier=set_id,
                )

        node_set = _session_set(db, session, DIRICHLET_SET_TAG, set_id)
        seen = set(db.set_members(node_set)) if node_set is not None else set()

        nodes: list[int] = []
        node_factors: list[float] = []
        for j, index in enumerate(indices):
            if not session.loaded_nodes[index]:
                continue
            handle = session.node_offset.to_handle(int(index))
            if handle in seen:
                continue
            seen.add(handle)
            nodes.append(handle)
            if factors is not None:
                node_factors.append(float(factors[j]))

        if not nodes:
            logger.debug(f"Node set {set_id} has no nodes in loaded blocks.")
            continue

        if node_set is None:
            node_set = db.create_set(ordered=True, track_owner=True)
            db.tag_set(DIRICHLET_SET_TAG, node_set, set_id)
            db.tag_set(GLOBAL_ID_TAG, node_set, set_id)
        db.add_entities(node_set, nodes)

        if node_factors:
            existing = db.tag_get(DIST_FACTOR_TAG, node_set, default=None)
            values = np.asarray(node_factors, dtype=np.float64)
            if existing is not None:
                values = np.concatenate([existing, values])
            db.tag_set(DIST_FACTOR_TAG, node_set, values)

        result.node_sets[set_id] = node_set
        logger.info(f"Node set {set_id}: {len(nodes)} nodes.")
