"""
Snapshot Reconciler
===================
Brings a canonical mesh in line with a later snapshot of a deforming simulation.

Why is this file needed?
------------------------
1. Coordinates: nodal displacements at a chosen time step are replayed onto
   the matched canonical vertices (replace or accumulate).
2. Element death: elements flagged dead at that step are located in the
   canonical mesh through the node correspondence and deleted.

Steps:
    1. Validate the header and the requested time step.
    2. Build the node correspondence (by id or by proximity).
    3. Write displaced coordinates.
    4. Prune dead elements, block by block.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import numpy as np

from meshreconciler.config import (
    ALIVE_FLAG,
    DEATH_STATUS_VARIABLE,
    ReconcileSettings,
    UpdateMode,
)
from meshreconciler.controller.blocks import read_block_headers, resolve_element_type
from meshreconciler.controller.correspondence import resolve_correspondence
from meshreconciler.errors import (
    AmbiguousMatch,
    BadConnectivity,
    FormatError,
    NoMatch,
    UnresolvedCorrespondence,
)
from meshreconciler.model.io import (
    optional_dimension,
    read_block_connectivity,
    read_coordinates,
    read_header,
    read_element_variable,
    read_id_map,
    read_nodal_variable,
    read_time_values,
    variable_names,
)
from meshreconciler.model.records import ReconcileResult
from meshreconciler.utils import find_name, vector_magnitudes

if TYPE_CHECKING:
    from meshreconciler.controller.correspondence import CorrespondenceMap
    from meshreconciler.model.database import MeshDatabase
    from meshreconciler.model.io import ExodusHeader, SnapshotFile

logger = logging.getLogger(__name__)

# Accepts displ_x, disp_x, dispx, displacement_x, ... (case-insensitive)
DISPLACEMENT_PATTERN = r"disp(?:l(?:acement)?)?_?{axis}"


def _warn(result: ReconcileResult, message: str) -> None:
    logger.warning(message)
    result.warnings.append(message)


def validate_time_step(snapshot: SnapshotFile, time_step: int) -> Optional[float]:
    """
    Check the 1-based time step against the file and return its time value.

    Raises:
        FormatError: If the step is out of range.
    """
    num_steps = optional_dimension(snapshot, "time_step")
    if time_step < 1 or time_step > num_steps:
        raise FormatError(
            f"Time step {time_step} out of range, the file has {num_steps} steps",
            stage="reconcile",
            identifier=time_step,
        )
    times = read_time_values(snapshot)
    if times is None or len(times) < time_step:
        return None
    return float(times[time_step - 1])


def displacement_indices(snapshot: SnapshotFile, num_dim: int) -> list[int]:
    """
    1-based nodal variable indices of the displacement components.

    Components are looked up by name in `name_nod_var`; if any is missing the
    first `num_dim` nodal variables are used.
    """
    names = variable_names(snapshot, "name_nod_var")
    found = [find_name(names, DISPLACEMENT_PATTERN.format(axis=axis)) for axis in "xyz"[:num_dim]]
    if names and all(i is not None for i in found):
        return [int(i) for i in found]
    logger.debug("Displacement variables not found by name, using the first nodal variables.")
    return list(range(1, num_dim + 1))


def read_displacements(snapshot: SnapshotFile, header: ExodusHeader, time_step: int) -> np.ndarray:
    """Displacement vectors at `time_step` as an (num_nodes, 3) array."""
    displacement = np.zeros((header.num_nodes, 3), dtype=np.float64)
    for axis, index in enumerate(displacement_indices(snapshot, header.num_dim)):
        displacement[:, axis] = read_nodal_variable(snapshot, index, time_step, header.num_nodes)
    return displacement


def replay_coordinates(db: MeshDatabase, mapping: CorrespondenceMap, original: np.ndarray,
                       displacement: np.ndarray, mode: UpdateMode, result: ReconcileResult) -> None:
    """
    Write displaced coordinates onto the matched canonical vertices.

    REPLACE writes original + displacement; ACCUMULATE adds the displacement
    to the vertex's current coordinates.
    """
    positions = mapping.matched_positions
    if len(positions) == 0:
        return

    handles = [int(h) for h in mapping.handles[positions]]
    moved = displacement[positions]
    if mode == UpdateMode.REPLACE:
        updated = original[positions] + moved
    else:
        updated = db.get_coords(handles) + moved
    db.set_coords(handles, updated)

    magnitudes = vector_magnitudes(moved)
    result.nodes_updated = len(handles)
    result.max_displacement = float(magnitudes.max())
    result.mean_displacement = float(magnitudes.mean())
    logger.info(
        f"Updated {len(handles)} vertices, max displacement {result.max_displacement:.6g}, "
        f"mean {result.mean_displacement:.6g}."
    )


def prune_dead_elements(snapshot: SnapshotFile, db: MeshDatabase, header: ExodusHeader,
                        mapping: CorrespondenceMap, settings: ReconcileSettings,
                        result: ReconcileResult) -> None:
    """
    Delete canonical elements whose source element is flagged dead.

    Each dead element's nodes are mapped through the correspondence and the
    unique canonical element using all of them is deleted.

    Raises:
        NoMatch: If no canonical element uses all the mapped nodes.
        AmbiguousMatch: If more than one does.
        UnresolvedCorrespondence: If a node is unmatched and
            `strict_element_correspondence` is set.
    """
    names = variable_names(snapshot, "name_elem_var")
    death_index = find_name(names, f".*{DEATH_STATUS_VARIABLE}.*")
    if death_index is None:
        raise FormatError(
            f"No element variable named '{DEATH_STATUS_VARIABLE}'", stage="prune"
        )

    time_step = settings.time_step
    for block in read_block_headers(snapshot, header, settings.block_ids):
        if not block.reading or block.num_elements == 0:
            continue

        status = read_element_variable(snapshot, death_index, block.seq_id, time_step, block.num_elements)
        if status is None:
            _warn(result, f"Block {block.block_id} has no '{DEATH_STATUS_VARIABLE}' values, skipped.")
            continue

        dead_rows = np.flatnonzero(status != ALIVE_FLAG)
        result.dead_elements_by_block[block.block_id] = 0
        if len(dead_rows) == 0:
            logger.info(f"Block {block.block_id}: no dead elements.")
            continue

        element_type = resolve_element_type(snapshot, block)
        raw, _ = read_block_connectivity(snapshot, block.seq_id, block.num_elements, block.nodes_per_element)
        if raw.size and (raw.min() < 1 or raw.max() > header.num_nodes):
            raise BadConnectivity(
                f"Connectivity references nodes outside 1..{header.num_nodes}",
                stage="prune",
                identifier=block.block_id,
            )

        deleted = 0
        for row in dead_rows:
            file_id = block.start_file_id + int(row)
            handles, missing = mapping.resolve(raw[row] - 1)
            if missing:
                if settings.strict_element_correspondence:
                    raise UnresolvedCorrespondence(
                        f"Dead element {file_id} has unmatched nodes {missing}",
                        stage="prune",
                        identifier=file_id,
                        missing_nodes=missing,
                    )
                result.unresolved_elements.append(file_id)
                _warn(result, f"Dead element {file_id} has unmatched nodes {missing}, not deleted.")
                continue

            candidates = db.get_adjacencies(sorted(set(handles)), element_type.dimension)
            if not candidates:
                raise NoMatch(
                    f"No canonical element matches dead element {file_id}",
                    stage="prune",
                    identifier=file_id,
                )
            if len(candidates) > 1:
                raise AmbiguousMatch(
                    f"{len(candidates)} canonical elements match dead element {file_id}",
                    stage="prune",
                    identifier=file_id,
                    candidates=candidates,
                )

            if settings.file_set is not None:
                db.remove_entities(settings.file_set, candidates)
            db.delete_entities(candidates)
            deleted += 1

        result.dead_elements_by_block[block.block_id] = deleted
        result.elements_deleted += deleted
        logger.info(f"Block {block.block_id}: {deleted} of {block.num_elements} elements dead and deleted.")


def reconcile_mesh(snapshot: SnapshotFile, db: MeshDatabase,
                   settings: Optional[ReconcileSettings] = None) -> ReconcileResult:
    """
    Replay one time step of a snapshot onto the canonical mesh in `db`.

    Args:
        snapshot: The later snapshot (same source numbering as its own node map).
        db: Database holding the canonical mesh.
        settings: Time step, update mode, match strategy and pruning options.

    Returns:
        Counts, displacement statistics and non-fatal warnings.

    Raises:
        FormatError: Bad header, time step or missing variables.
        UnresolvedCorrespondence: Unmatched nodes while `allow_unmatched_nodes` is False.
        NoMatch, AmbiguousMatch: A dead element cannot be located uniquely.
    """
    settings = settings or ReconcileSettings()
    result = ReconcileResult(time_step=settings.time_step)

    header = read_header(snapshot)
    result.time_value = validate_time_step(snapshot, settings.time_step)
    if result.time_value is not None:
        logger.info(f"Reconciling time step {settings.time_step} (time = {result.time_value:.6g}).")

    source_ids = read_id_map(snapshot, "node_num_map", header.num_nodes)
    if source_ids is None:
        source_ids = np.arange(1, header.num_nodes + 1, dtype=np.int64)
    original = read_coordinates(snapshot, header)
    displacement = read_displacements(snapshot, header, settings.time_step)

    vertices = db.vertices(settings.file_set)
    mapping = resolve_correspondence(
        db, vertices, source_ids, original, settings.strategy, settings.search_radius
    )
    result.nodes_matched = mapping.matched_count
    result.nodes_unmatched = mapping.missed_count

    if mapping.missed_count:
        for position in mapping.missed_positions:
            x, y, z = original[position]
            logger.warning(f"Node {int(source_ids[position])} at ({x:.6g}, {y:.6g}, {z:.6g}) has no match.")
        if not settings.allow_unmatched_nodes:
            missing = [int(source_ids[p]) for p in mapping.missed_positions]
            raise UnresolvedCorrespondence(
                f"{len(missing)} source nodes have no canonical match",
                stage="correspondence",
                missing_nodes=missing,
            )
        result.warnings.append(f"{mapping.missed_count} source nodes have no canonical match.")

    replay_coordinates(db, mapping, original, displacement, settings.update_mode, result)

    if settings.prune_dead_elements:
        prune_dead_elements(snapshot, db, header, mapping, settings, result)

    return result
