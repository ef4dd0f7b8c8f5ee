"""
Block Builder
=============
Turns element block headers and connectivity into database elements.

Why is this file needed?
------------------------
1. Selection: only requested blocks are loaded, but every block's element
   id range is recorded so side sets can still skip over unloaded blocks.
2. Connectivity: file-local 1-based node indices are bounds-checked,
   offset into vertex handles and permuted into canonical order.
3. Ids: global element and node ids from the id maps are attached as tags.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

import numpy as np

from meshreconciler.config import GLOBAL_ID_TAG, HAS_MID_NODES_TAG, MATERIAL_SET_TAG
from meshreconciler.errors import BadConnectivity, FormatError
from meshreconciler.model.element_types import ElementType
from meshreconciler.model.io import (
    optional_dimension,
    read_block_connectivity,
    read_coordinates,
    read_element_type_name,
    read_id_map,
)
from meshreconciler.model.records import Block, HandleOffset

if TYPE_CHECKING:
    from meshreconciler.config import ImportSettings
    from meshreconciler.model.database import MeshDatabase
    from meshreconciler.model.io import ExodusHeader, SnapshotFile
    from meshreconciler.model.records import ImportResult, ImportSession

logger = logging.getLogger(__name__)


def load_nodes(snapshot: SnapshotFile, header: ExodusHeader, db: MeshDatabase,
               file_id_tag: Optional[str] = None) -> HandleOffset:
    """
    Create one vertex per file node, in file order.

    Returns:
        The offset mapping 1-based file node indices to vertex handles.
    """
    coords = read_coordinates(snapshot, header)
    handles = db.create_vertices(coords)
    base = handles.start if len(handles) else db.max_handle + 1
    offset = HandleOffset(base=base, count=header.num_nodes)

    if file_id_tag:
        db.tag_set_many(file_id_tag, list(handles), list(range(1, header.num_nodes + 1)))

    logger.info(f"Created {len(handles)} vertices.")
    return offset


def read_block_headers(snapshot: SnapshotFile, header: ExodusHeader,
                       block_ids: Optional[Iterable[int]] = None) -> list[Block]:
    """
    Read block ids and element counts and lay out file element id ranges.

    Args:
        block_ids: Ids of blocks to load. None or empty means all blocks.

    Returns:
        Every block in file order, with `reading` set for the requested ones.
    """
    if header.num_el_blk == 0:
        return []

    ids = np.asarray(snapshot.variable("eb_prop1"), dtype=np.int64).ravel()
    if len(ids) != header.num_el_blk:
        raise FormatError(
            f"'eb_prop1' has {len(ids)} entries, expected {header.num_el_blk}", stage="blocks"
        )

    requested = set(int(i) for i in block_ids) if block_ids else None
    if requested:
        unknown = requested - set(int(i) for i in ids)
        for block_id in sorted(unknown):
            logger.warning(f"Requested block {block_id} is not in the file.")

    blocks = []
    start = 1
    for seq_id, block_id in enumerate(ids, start=1):
        count = optional_dimension(snapshot, f"num_el_in_blk{seq_id}")
        nodes = optional_dimension(snapshot, f"num_nod_per_el{seq_id}")
        blocks.append(Block(
            block_id=int(block_id),
            seq_id=seq_id,
            start_file_id=start,
            num_elements=count,
            nodes_per_element=nodes,
            reading=requested is None or int(block_id) in requested,
        ))
        start += count
    return blocks


def resolve_element_type(snapshot: SnapshotFile, block: Block) -> ElementType:
    """Element type of a block from the `elem_type` attribute, without reading connectivity."""
    if block.element_type is not None:
        return block.element_type
    name = read_element_type_name(snapshot, block.seq_id)
    return ElementType.from_name(name, block.nodes_per_element or None)


def canonical_connectivity(raw: np.ndarray, element_type: ElementType, num_nodes: int,
                           offset: HandleOffset, block: Block) -> np.ndarray:
    """
    Convert 1-based file node indices into canonical vertex handle rows.

    Raises:
        BadConnectivity: If any index falls outside [1, num_nodes].
    """
    conn = np.asarray(raw, dtype=np.int64)
    bad = (conn < 1) | (conn > num_nodes)
    if bad.any():
        row, col = (int(i) for i in np.argwhere(bad)[0])
        raise BadConnectivity(
            f"Element {block.start_file_id + row} references node {int(conn[row, col])}, "
            f"valid range is 1..{num_nodes}",
            stage="blocks",
            identifier=block.block_id,
        )

    handles = offset.to_handles(conn)
    if element_type.permutation is not None:
        handles = handles[:, list(element_type.permutation)]
    return handles


def build_blocks(snapshot: SnapshotFile, db: MeshDatabase, header: ExodusHeader,
                 blocks: Sequence[Block], offset: HandleOffset, settings: ImportSettings,
                 result: ImportResult) -> tuple[tuple[Block, ...], np.ndarray]:
    """
    Create elements and a material set for every block marked for reading.

    Unloaded blocks still get their element type resolved so that side-set
    distribution factors can be skipped by the right amount.

    Returns:
        The updated blocks and the loaded-node flags (indexed by 1-based file
        node index, slot 0 unused).
    """
    loaded_nodes = np.zeros(header.num_nodes + 1, dtype=bool)
    built: list[Block] = []
    for block in blocks:
        if not block.reading:
            try:
                element_type = resolve_element_type(snapshot, block)
            except FormatError as e:
                message = f"Type of skipped block {block.block_id} is unknown: {e.detail}"
                logger.warning(message)
                result.warnings.append(message)
                built.append(block)
                continue
            built.append(block.loaded(element_type, None, None))
            continue

        if block.num_elements == 0:
            message = f"Block {block.block_id} has no elements."
            logger.warning(message)
            result.warnings.append(message)
            element_type = resolve_element_type(snapshot, block)
            raw = np.empty((0, element_type.nodes_per_element), dtype=np.int64)
        else:
            raw, type_name = read_block_connectivity(
                snapshot, block.seq_id, block.num_elements, block.nodes_per_element
            )
            element_type = ElementType.from_name(type_name, block.nodes_per_element or None)
        conn = canonical_connectivity(raw, element_type, header.num_nodes, offset, block)
        loaded_nodes[raw.ravel()] = True

        handles = db.create_elements(element_type.topology, conn)
        start_handle = handles.start if len(handles) else None

        block_set = db.create_set(ordered=False, track_owner=True)
        db.add_entities(block_set, handles)
        db.tag_set(MATERIAL_SET_TAG, block_set, block.block_id)
        db.tag_set(GLOBAL_ID_TAG, block_set, block.block_id)
        db.tag_set(HAS_MID_NODES_TAG, block_set, element_type.mid_node_flags)
        if settings.file_id_tag:
            file_ids = range(block.start_file_id, block.end_file_id)
            db.tag_set_many(settings.file_id_tag, list(handles), list(file_ids))

        result.elements_created += len(handles)
        result.block_sets[block.block_id] = block_set
        built.append(block.loaded(element_type, start_handle, block_set))
        logger.info(
            f"Block {block.block_id}: {len(handles)} {element_type.name} elements created."
        )

    return tuple(built), loaded_nodes


def assign_global_ids(snapshot: SnapshotFile, db: MeshDatabase, session: ImportSession) -> None:
    """
    Tag loaded elements and all created vertices with GLOBAL_ID.

    Element ids come from `elem_num_map` (or the older `elem_map`), indexed by
    each block's file element range. Vertices use `node_num_map`, or their
    1-based file position when the file carries no map.
    """
    header = session.header
    elem_map = read_id_map(snapshot, "elem_num_map", header.num_elem)
    if elem_map is None:
        elem_map = read_id_map(snapshot, "elem_map", header.num_elem)

    if elem_map is not None:
        for block in session.blocks:
            if not block.reading or block.start_handle is None:
                continue
            ids = elem_map[block.start_file_id - 1:block.end_file_id - 1]
            handles = range(block.start_handle, block.start_handle + block.num_elements)
            db.tag_set_many(GLOBAL_ID_TAG, list(handles), [int(i) for i in ids])
    else:
        logger.debug("No element id map, elements keep no global id.")

    node_map = read_id_map(snapshot, "node_num_map", header.num_nodes)
    if node_map is None:
        node_map = np.arange(1, header.num_nodes + 1, dtype=np.int64)
    vertices = session.node_offset.to_handles(np.arange(1, header.num_nodes + 1))
    db.tag_set_many(GLOBAL_ID_TAG, [int(h) for h in vertices], [int(i) for i in node_map])
