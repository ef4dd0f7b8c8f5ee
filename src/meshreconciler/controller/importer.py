"""
Mesh Import
===========
Loads a snapshot into the mesh database.

Steps:
    1. Validate the header.
    2. Create vertices for every file node.
    3. Read block headers and build elements for the requested blocks.
    4. Attach global ids.
    5. Build node sets and side sets.
    6. Collect everything created into a file set and attach QA records.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional

from meshreconciler.config import ImportSettings, QA_RECORD_TAG
from meshreconciler.controller.blocks import (
    assign_global_ids,
    build_blocks,
    load_nodes,
    read_block_headers,
)
from meshreconciler.controller.sides import read_node_sets, read_side_sets
from meshreconciler.model.io import read_header, read_qa_records
from meshreconciler.model.records import ImportResult, ImportSession

if TYPE_CHECKING:
    from meshreconciler.model.database import MeshDatabase
    from meshreconciler.model.io import SnapshotFile

logger = logging.getLogger(__name__)


def import_mesh(snapshot: SnapshotFile, db: MeshDatabase, block_ids: Optional[Iterable[int]] = None,
                settings: Optional[ImportSettings] = None) -> ImportResult:
    """
    Import the mesh of `snapshot` into `db`.

    Args:
        snapshot: Source file.
        db: Target database. Existing content is left untouched; sets created
            by earlier imports are never extended.
        block_ids: Blocks to load. None or empty loads every block.
        settings: File set, QA record and file-id tagging options.

    Returns:
        Counts of created entities, the created set handles and any warnings.
    """
    settings = settings or ImportSettings()
    result = ImportResult()

    header = read_header(snapshot)
    watermark = db.max_handle
    logger.info(f"Importing '{header.title}' ({header.num_nodes} nodes, {header.num_elem} elements).")

    offset = load_nodes(snapshot, header, db, settings.file_id_tag)
    result.vertices_created = header.num_nodes

    headers = read_block_headers(snapshot, header, block_ids)
    blocks, loaded_nodes = build_blocks(snapshot, db, header, headers, offset, settings, result)
    session = ImportSession(header, settings, offset, blocks, loaded_nodes, watermark)

    assign_global_ids(snapshot, db, session)
    read_node_sets(snapshot, db, session, result)
    read_side_sets(snapshot, db, session, result)

    if settings.create_file_set:
        created = db.handles_after(watermark)
        file_set = db.create_set(ordered=False, track_owner=True)
        db.add_entities(file_set, created)
        result.file_set = file_set

        if settings.read_qa_records:
            result.qa_records = read_qa_records(snapshot)
            if result.qa_records:
                db.tag_set(QA_RECORD_TAG, file_set, "\x00".join(result.qa_records).encode("utf-8"))

    logger.info(
        f"Import finished: {result.vertices_created} vertices, {result.elements_created} elements, "
        f"{result.sides_created} new sides, {len(result.side_sets)} side sets, "
        f"{len(result.node_sets)} node sets."
    )
    return result
