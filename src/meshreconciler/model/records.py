"""
Import & Reconcile Records
==========================
Plain data carried between the import and reconcile stages.

Why is this file needed?
------------------------
1. Session state: the node handle offset, block descriptors and the handle
   watermark are built once and then passed explicitly to each stage.
2. Reporting: every entry point returns a result object with counts and the
   non-fatal warnings it emitted, so callers do not have to scrape logs.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import TYPE_CHECKING, Optional

import numpy as np

from meshreconciler.errors import FormatError

if TYPE_CHECKING:
    import numpy.typing as npt
    from meshreconciler.config import ImportSettings
    from meshreconciler.model.element_types import ElementType
    from meshreconciler.model.io import ExodusHeader


class Sense(IntEnum):
    """Orientation of a side relative to the element that referenced it."""
    FORWARD = 1
    REVERSE = -1


@dataclass(frozen=True)
class HandleOffset:
    """
    Maps 1-based file node indices onto the contiguous vertex handles created
    for them: handle = base + (file_index - 1).
    """
    base: int
    count: int

    def to_handle(self, file_index: int) -> int:
        return self.base + file_index - 1

    def to_handles(self, file_indices: npt.ArrayLike) -> np.ndarray:
        return np.asarray(file_indices, dtype=np.int64) + (self.base - 1)


@dataclass(frozen=True)
class Block:
    """
    Descriptor of one element block.

    Args:
        block_id: User-facing id from `eb_prop1`.
        seq_id: 1-based position of the block in the file.
        start_file_id: 1-based file element id of the first element.
        num_elements: Element count.
        nodes_per_element: Node count per element as declared in the header.
        reading: Whether the block is loaded into the database.
        element_type: Resolved type, filled when connectivity is read.
        start_handle: Handle of the first element once created.
        set_handle: The block's material set once created.
    """
    block_id: int
    seq_id: int
    start_file_id: int
    num_elements: int
    nodes_per_element: int
    reading: bool = True
    element_type: Optional[ElementType] = None
    start_handle: Optional[int] = None
    set_handle: Optional[int] = None

    @property
    def end_file_id(self) -> int:
        """One past the last file element id of the block."""
        return self.start_file_id + self.num_elements

    def contains_file_id(self, file_id: int) -> bool:
        return self.start_file_id <= file_id < self.end_file_id

    def element_handle(self, file_id: int) -> int:
        if self.start_handle is None:
            raise FormatError(
                f"Side references element {file_id} of block {self.block_id}, which has no elements loaded",
                stage="sidesets",
                identifier=self.block_id,
            )
        return self.start_handle + (file_id - self.start_file_id)

    def loaded(self, element_type: ElementType, start_handle: Optional[int],
               set_handle: Optional[int]) -> Block:
        return replace(self, element_type=element_type, start_handle=start_handle,
                       set_handle=set_handle)


@dataclass(frozen=True)
class ImportSession:
    """
    State shared by the stages of one import, fixed once the blocks are built.

    Args:
        header: Validated file header.
        settings: Import options.
        node_offset: File node index to vertex handle mapping.
        blocks: Every block in file order, loaded ones carrying their handles.
        loaded_nodes: Flags indexed by 1-based file node index (slot 0 unused),
            set for nodes used by a loaded block.
        watermark: Largest handle that existed before the import started.
    """
    header: ExodusHeader
    settings: ImportSettings
    node_offset: HandleOffset
    blocks: tuple[Block, ...]
    loaded_nodes: np.ndarray
    watermark: int

    def created_this_session(self, handle: int) -> bool:
        return handle > self.watermark


@dataclass
class ImportResult:
    vertices_created: int = 0
    elements_created: int = 0
    sides_created: int = 0
    sides_matched: int = 0
    sides_skipped: int = 0
    block_sets: dict[int, int] = field(default_factory=dict)
    node_sets: dict[int, int] = field(default_factory=dict)
    side_sets: dict[int, int] = field(default_factory=dict)
    file_set: Optional[int] = None
    qa_records: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ReconcileResult:
    time_step: int = 1
    time_value: Optional[float] = None
    nodes_matched: int = 0
    nodes_unmatched: int = 0
    nodes_updated: int = 0
    max_displacement: float = 0.0
    mean_displacement: float = 0.0
    elements_deleted: int = 0
    dead_elements_by_block: dict[int, int] = field(default_factory=dict)
    unresolved_elements: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
