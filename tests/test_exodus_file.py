"""
Integration Tests for netCDF Snapshots

Writes small ExodusII files with netCDF4 and runs import and reconcile on them.
"""

import numpy as np
import pytest
from netCDF4 import Dataset

from conftest import HEX_1, HEX_2, two_hex_coords
from meshreconciler import ExodusFile, ReconcileSettings, import_mesh, reconcile_mesh
from meshreconciler.config import GLOBAL_ID_TAG, NEUMANN_SET_TAG
from meshreconciler.errors import FormatError


def _chars(strings, length=33):
    """Fixed-width char table of shape strings.shape + (length,)."""
    table = np.array(strings, dtype=f"S{length}")
    return table.view("S1").reshape(table.shape + (length,))


def write_two_hex_file(path):
    """Two-hex mesh, one side set, QA record and two time steps of results."""
    coords = np.asarray(two_hex_coords(), dtype=np.float64)
    with Dataset(path, "w") as nc:
        nc.setncattr("title", "two hexes")
        nc.setncattr("floating_point_word_size", np.int32(8))
        nc.setncattr("version", np.float32(5.1))

        for name, size in [("len_string", 33), ("len_line", 81), ("four", 4), ("num_dim", 3),
                           ("num_nodes", 12), ("num_elem", 2), ("num_el_blk", 2),
                           ("num_el_in_blk1", 1), ("num_nod_per_el1", 8),
                           ("num_el_in_blk2", 1), ("num_nod_per_el2", 8),
                           ("num_side_sets", 1), ("num_side_ss1", 2),
                           ("num_qa_rec", 1), ("num_nod_var", 3), ("num_elem_var", 1)]:
            nc.createDimension(name, size)
        nc.createDimension("time_step", None)

        for axis, name in enumerate(("coordx", "coordy", "coordz")):
            nc.createVariable(name, "f8", ("num_nodes",))[:] = coords[:, axis]
        nc.createVariable("node_num_map", "i4", ("num_nodes",))[:] = np.arange(101, 113)
        nc.createVariable("elem_num_map", "i4", ("num_elem",))[:] = [7, 8]

        nc.createVariable("eb_prop1", "i4", ("num_el_blk",))[:] = [10, 20]
        for seq, conn in ((1, HEX_1), (2, HEX_2)):
            connect = nc.createVariable(f"connect{seq}", "i4", (f"num_el_in_blk{seq}", f"num_nod_per_el{seq}"))
            connect.setncattr("elem_type", "HEX8")
            connect[:] = [conn]

        nc.createVariable("ss_prop1", "i4", ("num_side_sets",))[:] = [100]
        nc.createVariable("elem_ss1", "i4", ("num_side_ss1",))[:] = [1, 2]
        nc.createVariable("side_ss1", "i4", ("num_side_ss1",))[:] = [2, 4]

        qa = nc.createVariable("qa_records", "S1", ("num_qa_rec", "four", "len_string"))
        qa[:] = _chars([["cubit", "16.0", "01/01/2024", "12:00:00"]])

        nc.createVariable("name_nod_var", "S1", ("num_nod_var", "len_string"))[:] = _chars(
            ["displ_x", "displ_y", "displ_z"]
        )
        nc.createVariable("name_elem_var", "S1", ("num_elem_var", "len_string"))[:] = _chars(
            ["death_status"]
        )

        nc.createVariable("time_whole", "f8", ("time_step",))[0:2] = [0.0, 0.5]
        for k in range(1, 4):
            values = np.zeros((2, 12))
            if k == 3:
                values[1, 2] = 0.25
            nc.createVariable(f"vals_nod_var{k}", "f8", ("time_step", "num_nodes"))[0:2, :] = values
        for seq in (1, 2):
            status = np.ones((2, 1))
            if seq == 2:
                status[1, 0] = 0.0
            nc.createVariable(f"vals_elem_var1eb{seq}", "f8", ("time_step", f"num_el_in_blk{seq}"))[0:2, :] = status


@pytest.fixture
def exodus_path(tmp_path):
    """Path of a freshly written two-hex snapshot."""
    path = tmp_path / "two_hex.e"
    write_two_hex_file(path)
    return path


class TestExodusFile:
    """Tests for the netCDF4-backed snapshot."""

    def test_strings_when_char_table_then_decodes_rows(self, exodus_path):
        """Character tables decode to trimmed strings."""
        with ExodusFile(exodus_path) as snapshot:
            assert snapshot.strings("name_nod_var") == ["displ_x", "displ_y", "displ_z"]
            assert snapshot.strings("qa_records") == ["cubit", "16.0", "01/01/2024", "12:00:00"]
            assert snapshot.variable_attribute("connect1", "elem_type") == "HEX8"
            assert snapshot.dimension("time_step") == 2

    def test_open_when_file_missing_then_raises_format_error(self, tmp_path):
        """Unreadable paths are reported as format errors."""
        with pytest.raises(FormatError, match="Cannot open snapshot"):
            ExodusFile(tmp_path / "missing.e")

    def test_variable_when_missing_then_raises_format_error(self, exodus_path):
        """Missing variables name the file."""
        with ExodusFile(exodus_path) as snapshot:
            with pytest.raises(FormatError, match="Variable 'coord' not found"):
                snapshot.variable("coord")


# ───────────────────────────────────────────────────────────────────────────
# End to end
# ───────────────────────────────────────────────────────────────────────────

class TestRoundTrip:
    """Import a written file, then reconcile it against itself at a later step."""

    def test_import_when_exodus_file_then_builds_mesh_and_sets(self, db, exodus_path):
        """Blocks, global ids, side set and QA records come through netCDF."""
        with ExodusFile(exodus_path) as snapshot:
            result = import_mesh(snapshot, db)

        assert result.elements_created == 2
        assert result.qa_records[0] == "cubit"
        assert [db.tag_get(GLOBAL_ID_TAG, e) for e in db.elements(dimension=3)] == [7, 8]
        assert db.tag_get(GLOBAL_ID_TAG, db.vertices()[0]) == 101
        assert db.find_sets(NEUMANN_SET_TAG, 100) == [result.side_sets[100]]
        assert len(db.elements(dimension=2)) == 1

    def test_reconcile_when_later_step_then_moves_node_and_prunes(self, db, exodus_path):
        """Node 103 moves by 0.25 in z and the dead second hex is deleted."""
        with ExodusFile(exodus_path) as snapshot:
            imported = import_mesh(snapshot, db)
            result = reconcile_mesh(snapshot, db, ReconcileSettings(time_step=2, file_set=imported.file_set))

        assert result.time_value == pytest.approx(0.5)
        assert result.nodes_matched == 12
        np.testing.assert_allclose(db.get_coords([3]), [[2.0, 0.0, 0.25]])
        assert result.dead_elements_by_block == {10: 0, 20: 1}
        assert [db.tag_get(GLOBAL_ID_TAG, e) for e in db.elements(dimension=3)] == [7]

        mesh = db.to_meshio(imported.file_set)
        assert [block.type for block in mesh.cells] == ["hexahedron", "quad"]
