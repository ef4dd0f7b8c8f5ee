import sys
from pathlib import Path
from typing import Optional

import numpy as np
import pytest

# Add src to sys.path so we can import meshreconciler
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if SRC_PATH.as_posix() not in sys.path:
    sys.path.insert(0, SRC_PATH.as_posix())

from meshreconciler.model.database import MeshDatabase  # noqa: E402
from meshreconciler.model.io import InMemorySnapshot  # noqa: E402


def build_snapshot(
    coords,
    blocks=(),
    node_sets=(),
    side_sets=(),
    node_map=None,
    elem_map=None,
    qa_records=None,
    title: str = "test mesh",
    num_dim: Optional[int] = None,
    displacements=None,
    nodal_names=None,
    times=None,
    elem_vars=None,
) -> InMemorySnapshot:
    """
    Build an exodus-like in-memory snapshot.

    Args:
        coords: (n, dim) node coordinates.
        blocks: (block_id, elem_type, connectivity rows with 1-based node indices).
        node_sets: (set_id, 1-based node indices, factors or None).
        side_sets: (set_id, 1-based element ids, side numbers, factors or None).
        displacements: One (n, dim) array per time step.
        elem_vars: {variable name: {block seq id: one value list per time step}}.
    """
    coords = np.asarray(coords, dtype=np.float64)
    num_dim = num_dim or coords.shape[1]
    dims = {
        "num_dim": num_dim,
        "num_nodes": len(coords),
        "num_elem": sum(len(b[2]) for b in blocks),
        "num_el_blk": len(blocks),
        "len_string": 33,
        "len_line": 81,
    }
    variables = {}
    var_attrs = {}

    for axis, name in enumerate(("coordx", "coordy", "coordz")[:num_dim]):
        variables[name] = coords[:, axis]

    if blocks:
        variables["eb_prop1"] = [b[0] for b in blocks]
    for seq, (_, elem_type, conn) in enumerate(blocks, start=1):
        conn = np.asarray(conn, dtype=np.int64)
        dims[f"num_el_in_blk{seq}"] = conn.shape[0]
        dims[f"num_nod_per_el{seq}"] = conn.shape[1]
        variables[f"connect{seq}"] = conn
        var_attrs[f"connect{seq}"] = {"elem_type": elem_type}

    if node_sets:
        dims["num_node_sets"] = len(node_sets)
        variables["ns_prop1"] = [s[0] for s in node_sets]
    for seq, (_, nodes, factors) in enumerate(node_sets, start=1):
        dims[f"num_nod_ns{seq}"] = len(nodes)
        variables[f"node_ns{seq}"] = list(nodes)
        if factors is not None:
            dims[f"num_df_ns{seq}"] = len(factors)
            variables[f"dist_fact_ns{seq}"] = list(factors)

    if side_sets:
        dims["num_side_sets"] = len(side_sets)
        variables["ss_prop1"] = [s[0] for s in side_sets]
    for seq, (_, elements, sides, factors) in enumerate(side_sets, start=1):
        dims[f"num_side_ss{seq}"] = len(elements)
        variables[f"elem_ss{seq}"] = list(elements)
        variables[f"side_ss{seq}"] = list(sides)
        if factors is not None:
            dims[f"num_df_ss{seq}"] = len(factors)
            variables[f"dist_fact_ss{seq}"] = list(factors)

    if node_map is not None:
        variables["node_num_map"] = list(node_map)
    if elem_map is not None:
        variables["elem_num_map"] = list(elem_map)

    if qa_records:
        dims["num_qa_rec"] = len(qa_records)
        variables["qa_records"] = [field for record in qa_records for field in record]

    if displacements is not None:
        steps = len(displacements)
        times = times if times is not None else [float(i) for i in range(steps)]
        names = nodal_names or ["displ_x", "displ_y", "displ_z"][:num_dim]
        dims["num_nod_var"] = len(names)
        variables["name_nod_var"] = names
        stacked = np.asarray(displacements, dtype=np.float64)
        for k in range(len(names)):
            variables[f"vals_nod_var{k + 1}"] = stacked[:, :, k]

    if times is not None:
        dims["time_step"] = len(times)
        variables["time_whole"] = list(times)

    if elem_vars:
        names = list(elem_vars)
        dims["num_elem_var"] = len(names)
        variables["name_elem_var"] = names
        for k, name in enumerate(names, start=1):
            for seq, values in elem_vars[name].items():
                variables[f"vals_elem_var{k}eb{seq}"] = np.asarray(values, dtype=np.float64)

    attributes = {
        "title": title,
        "floating_point_word_size": np.int32(8),
        "version": np.float32(5.1),
    }
    return InMemorySnapshot(dims, variables, var_attrs, attributes)


def two_hex_coords():
    """12 nodes on a 3 x 2 x 2 lattice; node id = 1 + i + 3*j + 6*k."""
    return [(i, j, k) for k in range(2) for j in range(2) for i in range(3)]


# Hex 1 spans x in [0, 1], hex 2 spans x in [1, 2]; they share the x = 1 face
HEX_1 = [1, 2, 5, 4, 7, 8, 11, 10]
HEX_2 = [2, 3, 6, 5, 8, 9, 12, 11]


def strip_coords():
    """10 nodes on a 5 x 2 grid in the plane; node id = 1 + i + 5*j."""
    return [(i, j) for j in range(2) for i in range(5)]


STRIP_QUADS = [[1 + k, 2 + k, 7 + k, 6 + k] for k in range(4)]


@pytest.fixture
def db() -> MeshDatabase:
    """Return an empty mesh database."""
    return MeshDatabase()


@pytest.fixture
def snapshot_factory():
    """Return the snapshot builder."""
    return build_snapshot


@pytest.fixture
def two_hex_snapshot():
    """Two hexes in separate blocks 10 and 20 sharing one face."""
    return build_snapshot(two_hex_coords(), blocks=[(10, "HEX8", [HEX_1]), (20, "HEX8", [HEX_2])])


@pytest.fixture
def strip_snapshot():
    """Four quads in one block on a 2-D strip of 10 nodes."""
    return build_snapshot(strip_coords(), blocks=[(1, "QUAD4", STRIP_QUADS)])
