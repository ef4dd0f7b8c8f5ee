"""
Snapshot Input
==============
Read-only access to ExodusII (netCDF) snapshot files.

Why is this file needed?
------------------------
1. Seam: the import and reconcile stages only talk to the `SnapshotFile`
   protocol, so a netCDF file on disk and an in-memory stand-in are
   interchangeable.
2. Layout knowledge: variable naming conventions (`connect{n}`,
   `vals_nod_var{k}`, `vals_elem_var{k}eb{n}`, ...) and header validation
   live here, not in the stages.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence, Union

import numpy as np
from netCDF4 import Dataset

from meshreconciler.config import (
    DIRICHLET_SET_TAG,
    MATERIAL_SET_TAG,
    NEUMANN_SET_TAG,
    QA_RECORD_FIELDS,
)
from meshreconciler.errors import FormatError
from meshreconciler.utils import decode_char_rows

logger = logging.getLogger(__name__)

# Set tag -> (count dimension, id property variable)
SET_ID_VARIABLES: dict[str, tuple[str, str]] = {
    MATERIAL_SET_TAG: ("num_el_blk", "eb_prop1"),
    DIRICHLET_SET_TAG: ("num_node_sets", "ns_prop1"),
    NEUMANN_SET_TAG: ("num_side_sets", "ss_prop1"),
}


class SnapshotFile(Protocol):
    """Read-only view of one snapshot file."""

    def has_dimension(self, name: str) -> bool: ...

    def dimension(self, name: str) -> int: ...

    def has_variable(self, name: str) -> bool: ...

    def variable(self, name: str) -> np.ndarray: ...

    def variable_attribute(self, variable: str, name: str) -> Any: ...

    def attribute(self, name: str) -> Any: ...

    def strings(self, name: str) -> list[str]: ...


class ExodusFile:
    """
    netCDF4-backed snapshot. Keeps the dataset open and only reads what is asked for.

    Usage:
        with ExodusFile("run.e") as snapshot:
            import_mesh(snapshot, db)
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        try:
            self.ds = Dataset(str(self.path), mode="r")
        except OSError as e:
            raise FormatError(f"Cannot open snapshot: {e}", stage="file", identifier=str(self.path)) from e
        # Plain arrays, no masking or scaling
        self.ds.set_auto_maskandscale(False)
        logger.debug(f"Opened snapshot {self.path}")

    def __enter__(self) -> ExodusFile:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self.ds.isopen():
            self.ds.close()

    def has_dimension(self, name: str) -> bool:
        return name in self.ds.dimensions

    def dimension(self, name: str) -> int:
        if name not in self.ds.dimensions:
            raise FormatError(f"Dimension '{name}' not found", stage="file", identifier=str(self.path))
        return int(self.ds.dimensions[name].size)

    def has_variable(self, name: str) -> bool:
        return name in self.ds.variables

    def variable(self, name: str) -> np.ndarray:
        if name not in self.ds.variables:
            raise FormatError(f"Variable '{name}' not found", stage="file", identifier=str(self.path))
        return np.asarray(self.ds.variables[name][:])

    def variable_attribute(self, variable: str, name: str) -> Any:
        if variable not in self.ds.variables:
            raise FormatError(f"Variable '{variable}' not found", stage="file", identifier=str(self.path))
        var = self.ds.variables[variable]
        if name not in var.ncattrs():
            return None
        return var.getncattr(name)

    def attribute(self, name: str) -> Any:
        if name not in self.ds.ncattrs():
            return None
        return self.ds.getncattr(name)

    def strings(self, name: str) -> list[str]:
        raw = self.variable(name)
        if raw.dtype.kind in ("U", "O"):
            return [str(s).strip() for s in raw.ravel()]
        return decode_char_rows(raw)


class InMemorySnapshot:
    """
    Snapshot held in plain dictionaries. String variables (names, QA records)
    are given as lists of Python strings.
    """

    def __init__(
        self,
        dimensions: Optional[Mapping[str, int]] = None,
        variables: Optional[Mapping[str, Any]] = None,
        variable_attributes: Optional[Mapping[str, Mapping[str, Any]]] = None,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.dimensions = dict(dimensions or {})
        self.variables = dict(variables or {})
        self.variable_attributes = {k: dict(v) for k, v in (variable_attributes or {}).items()}
        self.attributes = dict(attributes or {})

    def has_dimension(self, name: str) -> bool:
        return name in self.dimensions

    def dimension(self, name: str) -> int:
        if name not in self.dimensions:
            raise FormatError(f"Dimension '{name}' not found", stage="file")
        return int(self.dimensions[name])

    def has_variable(self, name: str) -> bool:
        return name in self.variables

    def variable(self, name: str) -> np.ndarray:
        if name not in self.variables:
            raise FormatError(f"Variable '{name}' not found", stage="file")
        return np.asarray(self.variables[name])

    def variable_attribute(self, variable: str, name: str) -> Any:
        if variable not in self.variables:
            raise FormatError(f"Variable '{variable}' not found", stage="file")
        return self.variable_attributes.get(variable, {}).get(name)

    def attribute(self, name: str) -> Any:
        return self.attributes.get(name)

    def strings(self, name: str) -> list[str]:
        raw = self.variable(name)
        if raw.dtype.kind == "S":
            return decode_char_rows(raw)
        return [str(s).strip() for s in raw.ravel()]


def optional_dimension(snapshot: SnapshotFile, name: str) -> int:
    """Dimension length, or 0 if the file does not define it."""
    return snapshot.dimension(name) if snapshot.has_dimension(name) else 0


def _single(value: Any, kind: str) -> bool:
    a = np.asarray(value)
    if a.size != 1:
        return False
    if kind == "int":
        return bool(np.issubdtype(a.dtype, np.integer))
    return bool(np.issubdtype(a.dtype, np.floating))


@dataclass(frozen=True)
class ExodusHeader:
    title: str
    word_size: int
    version: float
    num_dim: int
    num_nodes: int
    num_elem: int
    num_el_blk: int
    num_node_sets: int
    num_side_sets: int
    len_string: int
    len_line: int

    @classmethod
    def read(cls, snapshot: SnapshotFile) -> ExodusHeader:
        """
        Validate global attributes and read the counting dimensions.

        Raises:
            FormatError: If the word size is not a single integer, the version
                is not a single float, or the title is missing.
        """
        word_size = snapshot.attribute("floating_point_word_size")
        if word_size is None or not _single(word_size, "int"):
            raise FormatError("'floating_point_word_size' must be a single integer", stage="header")

        version = snapshot.attribute("version")
        if version is None or not _single(version, "float"):
            raise FormatError("'version' must be a single float", stage="header")

        title = snapshot.attribute("title")
        if title is None:
            raise FormatError("'title' attribute is missing", stage="header")
        if isinstance(title, bytes):
            title = title.decode("utf-8", "ignore")

        header = cls(
            title=str(title).strip(),
            word_size=int(np.asarray(word_size).item()),
            version=float(np.asarray(version).item()),
            num_dim=optional_dimension(snapshot, "num_dim"),
            num_nodes=optional_dimension(snapshot, "num_nodes"),
            num_elem=optional_dimension(snapshot, "num_elem"),
            num_el_blk=optional_dimension(snapshot, "num_el_blk"),
            num_node_sets=optional_dimension(snapshot, "num_node_sets"),
            num_side_sets=optional_dimension(snapshot, "num_side_sets"),
            len_string=optional_dimension(snapshot, "len_string"),
            len_line=optional_dimension(snapshot, "len_line"),
        )
        logger.debug(
            f"Header '{header.title}': dim={header.num_dim}, nodes={header.num_nodes}, "
            f"elements={header.num_elem}, blocks={header.num_el_blk}"
        )
        return header


def read_header(snapshot: SnapshotFile) -> ExodusHeader:
    return ExodusHeader.read(snapshot)


def read_coordinates(snapshot: SnapshotFile, header: ExodusHeader) -> np.ndarray:
    """
    Nodal coordinates as an (num_nodes, 3) array; missing axes are zero.

    Coordinates may be stored as one (num_dim, num_nodes) `coord` variable or
    as separate `coordx`/`coordy`/`coordz` variables.
    """
    coords = np.zeros((header.num_nodes, 3), dtype=np.float64)
    if header.num_nodes == 0:
        return coords

    if snapshot.has_variable("coord"):
        c = np.asarray(snapshot.variable("coord"), dtype=np.float64)
        if c.shape != (header.num_dim, header.num_nodes):
            raise FormatError(
                f"'coord' has shape {c.shape}, expected {(header.num_dim, header.num_nodes)}",
                stage="nodes",
            )
        coords[:, :header.num_dim] = c.T
        return coords

    for axis, name in enumerate(("coordx", "coordy", "coordz")[:header.num_dim]):
        values = np.asarray(snapshot.variable(name), dtype=np.float64).ravel()
        if len(values) != header.num_nodes:
            raise FormatError(
                f"'{name}' has {len(values)} values, expected {header.num_nodes}", stage="nodes"
            )
        coords[:, axis] = values
    return coords


def read_id_map(snapshot: SnapshotFile, name: str, count: int) -> Optional[np.ndarray]:
    """Integer id map (`node_num_map`, `elem_num_map`, ...) or None if absent."""
    if not snapshot.has_variable(name):
        return None
    ids = np.asarray(snapshot.variable(name), dtype=np.int64).ravel()
    if len(ids) != count:
        raise FormatError(f"'{name}' has {len(ids)} entries, expected {count}", stage="ids")
    return ids


def read_set_ids(snapshot: SnapshotFile, set_tag: str) -> list[int]:
    """
    User-facing ids of every block, node set or side set in the file,
    without loading any mesh data.

    Args:
        set_tag: MATERIAL_SET_TAG, DIRICHLET_SET_TAG or NEUMANN_SET_TAG.
    """
    if set_tag not in SET_ID_VARIABLES:
        raise ValueError(f"Unknown set tag '{set_tag}'")
    count_name, ids_name = SET_ID_VARIABLES[set_tag]
    count = optional_dimension(snapshot, count_name)
    if count == 0:
        return []
    ids = np.asarray(snapshot.variable(ids_name), dtype=np.int64).ravel()
    if len(ids) != count:
        raise FormatError(f"'{ids_name}' has {len(ids)} entries, expected {count}", stage="ids")
    return [int(i) for i in ids]


def read_qa_records(snapshot: SnapshotFile) -> list[str]:
    """QA records flattened to num_qa_rec * 4 strings, or [] if the file has none."""
    num_qa = optional_dimension(snapshot, "num_qa_rec")
    if num_qa == 0 or not snapshot.has_variable("qa_records"):
        return []
    records = snapshot.strings("qa_records")
    expected = num_qa * QA_RECORD_FIELDS
    if len(records) != expected:
        raise FormatError(f"'qa_records' holds {len(records)} strings, expected {expected}", stage="qa")
    return records


def read_time_values(snapshot: SnapshotFile) -> Optional[np.ndarray]:
    if not snapshot.has_variable("time_whole"):
        return None
    return np.asarray(snapshot.variable("time_whole"), dtype=np.float64).ravel()


def read_block_connectivity(snapshot: SnapshotFile, seq_id: int, num_elements: int,
                            nodes_per_element: int) -> tuple[np.ndarray, str]:
    """
    Raw 1-based connectivity of block `seq_id` and its declared element type name.
    """
    name = f"connect{seq_id}"
    if not snapshot.has_variable(name):
        raise FormatError(f"Connectivity variable '{name}' not found", stage="blocks")
    elem_type = read_element_type_name(snapshot, seq_id)
    raw = np.asarray(snapshot.variable(name), dtype=np.int64)
    if raw.size != num_elements * nodes_per_element:
        raise FormatError(
            f"'{name}' has {raw.size} entries, expected {num_elements} x {nodes_per_element}",
            stage="blocks",
        )
    return raw.reshape(num_elements, nodes_per_element), elem_type


def read_element_type_name(snapshot: SnapshotFile, seq_id: int) -> str:
    name = f"connect{seq_id}"
    elem_type = snapshot.variable_attribute(name, "elem_type")
    if elem_type is None:
        raise FormatError(f"'{name}' has no 'elem_type' attribute", stage="blocks")
    if isinstance(elem_type, bytes):
        elem_type = elem_type.decode("utf-8", "ignore")
    return str(elem_type)


def read_nodal_variable(snapshot: SnapshotFile, index: int, time_step: int, num_nodes: int) -> np.ndarray:
    """
    Values of nodal variable `index` (1-based) at `time_step` (1-based).

    Handles both the per-variable layout (`vals_nod_var{k}`) and the combined
    (time, variable, node) layout (`vals_nod_var`).
    """
    separate = f"vals_nod_var{index}"
    if snapshot.has_variable(separate):
        values = np.asarray(snapshot.variable(separate), dtype=np.float64)
        values = values.reshape(-1, num_nodes)[time_step - 1]
    elif snapshot.has_variable("vals_nod_var"):
        values = np.asarray(snapshot.variable("vals_nod_var"), dtype=np.float64)
        values = values.reshape(values.shape[0], -1, num_nodes)[time_step - 1, index - 1]
    else:
        raise FormatError(f"Nodal variable {index} not found", stage="reconcile", identifier=index)
    return values


def read_element_variable(snapshot: SnapshotFile, index: int, seq_id: int, time_step: int,
                          num_elements: int) -> Optional[np.ndarray]:
    """
    Values of element variable `index` for block `seq_id` at `time_step`,
    or None when the truth table omits the variable for that block.
    """
    name = f"vals_elem_var{index}eb{seq_id}"
    if not snapshot.has_variable(name):
        return None
    values = np.asarray(snapshot.variable(name), dtype=np.float64)
    return values.reshape(-1, num_elements)[time_step - 1]


def variable_names(snapshot: SnapshotFile, name: str) -> Sequence[str]:
    """Names from a `name_*_var` table, or an empty list if the file has none."""
    if not snapshot.has_variable(name):
        return []
    return snapshot.strings(name)
