"""
Node Correspondence
===================
Maps every source node of a snapshot onto a canonical vertex handle.

Why is this file needed?
------------------------
1. Identity: when both meshes carry stable node ids, the match is an exact
   id lookup.
2. Proximity: when ids cannot be trusted, the nearest canonical vertex within
   a search radius is used (KD-tree, ties resolved to the lowest index).

Misses are reported, never raised: the caller decides whether they matter.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np
from scipy.spatial import cKDTree

from meshreconciler.config import GLOBAL_ID_TAG, MAX_NODE_DIST, MatchStrategy

if TYPE_CHECKING:
    import numpy.typing as npt
    from meshreconciler.model.database import MeshDatabase

logger = logging.getLogger(__name__)

UNMATCHED = 0


@dataclass
class CorrespondenceMap:
    """
    Source node position (0-based) -> canonical vertex handle.

    Args:
        source_ids: Stable id of each source node.
        handles: Matched handle per source node, UNMATCHED (0) for a miss.
        distances: Match distance per source node (proximity only), NaN for a miss.
    """
    source_ids: np.ndarray
    handles: np.ndarray
    distances: Optional[np.ndarray] = None

    def get(self, position: int) -> Optional[int]:
        handle = int(self.handles[position])
        return None if handle == UNMATCHED else handle

    @property
    def matched_positions(self) -> np.ndarray:
        return np.flatnonzero(self.handles != UNMATCHED)

    @property
    def missed_positions(self) -> np.ndarray:
        return np.flatnonzero(self.handles == UNMATCHED)

    @property
    def matched_count(self) -> int:
        return int(np.count_nonzero(self.handles != UNMATCHED))

    @property
    def missed_count(self) -> int:
        return len(self.handles) - self.matched_count

    def resolve(self, positions: npt.ArrayLike) -> tuple[list[int], list[int]]:
        """
        Map source positions to handles.

        Returns:
            (handles for the resolved positions, source ids of the unresolved ones)
        """
        handles: list[int] = []
        missing: list[int] = []
        for position in np.asarray(positions, dtype=np.int64).ravel():
            handle = int(self.handles[position])
            if handle == UNMATCHED:
                missing.append(int(self.source_ids[position]))
            else:
                handles.append(handle)
        return handles, missing


class NodeMatcher(ABC):
    """Matches source nodes against a fixed set of canonical vertices."""

    def __init__(self, db: MeshDatabase, vertices: Sequence[int]) -> None:
        self.db = db
        self.vertices = np.asarray(vertices, dtype=np.int64)

    @abstractmethod
    def match(self, source_ids: np.ndarray, source_coords: np.ndarray) -> CorrespondenceMap:
        """Build the correspondence map for the given source nodes."""
        pass


class IdentityMatcher(NodeMatcher):
    def __init__(self, db: MeshDatabase, vertices: Sequence[int]) -> None:
        super().__init__(db, vertices)
        self.by_id: dict[int, int] = {}
        duplicates = 0
        unlabelled = 0
        for handle in self.vertices:
            gid = db.tag_get(GLOBAL_ID_TAG, int(handle), default=None)
            if gid is None:
                unlabelled += 1
                continue
            if int(gid) in self.by_id:
                duplicates += 1
                continue
            self.by_id[int(gid)] = int(handle)

        if duplicates:
            logger.warning(f"{duplicates} canonical vertices share a global id; the first one wins.")
        if unlabelled:
            logger.warning(f"{unlabelled} canonical vertices carry no global id.")

    def match(self, source_ids: np.ndarray, source_coords: np.ndarray) -> CorrespondenceMap:
        handles = np.array(
            [self.by_id.get(int(gid), UNMATCHED) for gid in source_ids], dtype=np.int64
        )
        return CorrespondenceMap(np.asarray(source_ids, dtype=np.int64), handles)


class ProximityMatcher(NodeMatcher):
    def __init__(self, db: MeshDatabase, vertices: Sequence[int], search_radius: float = MAX_NODE_DIST) -> None:
        super().__init__(db, vertices)
        if search_radius <= 0:
            raise ValueError("Search radius must be positive")
        self.search_radius = search_radius
        self.coords = db.get_coords(self.vertices.tolist())
        self.tree = cKDTree(self.coords) if len(self.vertices) else None

    def match(self, source_ids: np.ndarray, source_coords: np.ndarray) -> CorrespondenceMap:
        points = np.asarray(source_coords, dtype=np.float64).reshape(-1, 3)
        handles = np.full(len(points), UNMATCHED, dtype=np.int64)
        distances = np.full(len(points), np.nan, dtype=np.float64)

        if self.tree is not None and len(points):
            neighbours = self.tree.query_ball_point(points, r=self.search_radius, return_sorted=True)
            for i, candidates in enumerate(neighbours):
                if not candidates:
                    continue
                idx = np.asarray(candidates, dtype=np.int64)
                d = np.linalg.norm(self.coords[idx] - points[i], axis=1)
                # argmin keeps the first (lowest index) of equal distances
                k = int(np.argmin(d))
                if d[k] < self.search_radius:
                    handles[i] = self.vertices[idx[k]]
                    distances[i] = d[k]

        return CorrespondenceMap(np.asarray(source_ids, dtype=np.int64), handles, distances)


def build_matcher(strategy: MatchStrategy, db: MeshDatabase, vertices: Sequence[int],
                  search_radius: float = MAX_NODE_DIST) -> NodeMatcher:
    if strategy == MatchStrategy.IDENTITY:
        return IdentityMatcher(db, vertices)
    if strategy == MatchStrategy.PROXIMITY:
        return ProximityMatcher(db, vertices, search_radius)
    raise ValueError(f"Unknown match strategy '{strategy}'")


def resolve_correspondence(db: MeshDatabase, vertices: Sequence[int], source_ids: np.ndarray,
                           source_coords: np.ndarray, strategy: MatchStrategy,
                           search_radius: float = MAX_NODE_DIST) -> CorrespondenceMap:
    """
    Match source nodes to canonical vertices with the chosen strategy and log the outcome.
    """
    strategy = MatchStrategy(strategy)
    matcher = build_matcher(strategy, db, vertices, search_radius)
    mapping = matcher.match(source_ids, source_coords)
    logger.info(
        f"Node correspondence ({strategy.value}): {mapping.matched_count} matched, "
        f"{mapping.missed_count} unmatched."
    )
    return mapping
