"""
Configuration & Constants
=========================
This module serves as the central registry for tag names, tunable constants
and the per-run settings objects.

Why is this file needed?
------------------------
1. Abstraction: tag names and file variable names are referenced by several
   stages; keeping them here prevents string literals drifting apart.
2. Tuning: the proximity search radius and the liveness convention are the
   knobs a user is most likely to adjust.

Exports:
    ImportSettings: options for importing a mesh from a snapshot.
    ReconcileSettings: options for reconciling a mesh against a later snapshot.
    UpdateMode, MatchStrategy: enums selecting the reconcile behaviour.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Optional, Sequence

# Tag names attached to mesh database entities and sets
MATERIAL_SET_TAG = "MATERIAL_SET"
DIRICHLET_SET_TAG = "DIRICHLET_SET"
NEUMANN_SET_TAG = "NEUMANN_SET"
HAS_MID_NODES_TAG = "HAS_MID_NODES"
DIST_FACTOR_TAG = "distFactor"
QA_RECORD_TAG = "qaRecord"
GLOBAL_ID_TAG = "GLOBAL_ID"
SENSE_TAG = "SENSE"

# Farthest distance searched when matching nodes by proximity.
# For the 1/12th symmetry 85 pin model it could not be less than 1e-1.
MAX_NODE_DIST = 1e-1

# Element variable holding the per-element liveness flag, matched case-insensitively
DEATH_STATUS_VARIABLE = "death_status"
ALIVE_FLAG = 1.0

# Each QA record is four strings: code name, code version, date, time
QA_RECORD_FIELDS = 4


class UpdateMode(StrEnum):
    REPLACE = "set"
    ACCUMULATE = "add"


class MatchStrategy(StrEnum):
    IDENTITY = "id"
    PROXIMITY = "proximity"


@dataclass(frozen=True)
class ImportSettings:
    """
    Options for `import_mesh`.

    Args:
        create_file_set: Collect every created entity in one file set.
        read_qa_records: Store the QA records as a tag on the file set.
        file_id_tag: If given, tag vertices and elements with their 1-based
            position in the file under this tag name.
    """
    create_file_set: bool = True
    read_qa_records: bool = True
    file_id_tag: Optional[str] = None


@dataclass(frozen=True)
class ReconcileSettings:
    """
    Options for `reconcile_mesh`.

    Args:
        time_step: 1-based snapshot index to replay.
        update_mode: Replace canonical coordinates with original + displacement,
            or add the displacement to the current canonical coordinates.
        strategy: Match nodes by their stable id or by spatial proximity.
        search_radius: Maximum distance for the proximity strategy.
        prune_dead_elements: Delete elements whose liveness flag is not alive.
        allow_unmatched_nodes: If False, any unmatched source node aborts the run.
        strict_element_correspondence: If True, a dead element with an
            unresolved node aborts the run instead of being reported.
        file_set: Set whose vertices and elements form the canonical mesh.
            None means the whole database.
        block_ids: Restrict dead-element pruning to these block ids.
    """
    time_step: int = 1
    update_mode: UpdateMode = UpdateMode.REPLACE
    strategy: MatchStrategy = MatchStrategy.IDENTITY
    search_radius: float = MAX_NODE_DIST
    prune_dead_elements: bool = True
    allow_unmatched_nodes: bool = True
    strict_element_correspondence: bool = False
    file_set: Optional[int] = None
    block_ids: Optional[Sequence[int]] = None
