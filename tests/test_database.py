"""
Unit Tests for the Mesh Database

Tests for handles, adjacency, deletion, sets, tags and meshio export.
"""

import numpy as np
import pytest

from meshreconciler.config import GLOBAL_ID_TAG
from meshreconciler.errors import DatabaseError
from meshreconciler.model.element_types import Topology


def _unit_square(db):
    vertices = db.create_vertices([[0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0]])
    quad = db.create_element(Topology.QUAD, list(vertices))
    return list(vertices), quad


class TestHandles:
    """Tests for handle allocation."""

    def test_create_vertices_when_empty_db_then_handles_start_at_one(self, db):
        """The first handle is 1 and ranges are contiguous."""
        handles = db.create_vertices(np.zeros((3, 3)))
        assert list(handles) == [1, 2, 3]
        assert db.max_handle == 3

    def test_handles_after_when_watermark_then_returns_newer_live_handles(self, db):
        """Only handles above the watermark are returned."""
        db.create_vertices(np.zeros((2, 3)))
        watermark = db.max_handle
        newer = db.create_vertices(np.ones((2, 3)))
        mesh_set = db.create_set()
        assert db.handles_after(watermark) == [*newer, mesh_set]

    def test_set_coords_when_count_differs_then_raises_database_error(self, db):
        """Coordinates must match the handle count."""
        handles = db.create_vertices(np.zeros((2, 3)))
        with pytest.raises(DatabaseError, match="Got 1 coordinates for 2 vertices"):
            db.set_coords(list(handles), [[1, 1, 1]])


# ───────────────────────────────────────────────────────────────────────────
# Elements & Adjacency
# ───────────────────────────────────────────────────────────────────────────

class TestElements:
    """Tests for element creation and adjacency queries."""

    def test_create_element_when_vertex_unknown_then_raises_database_error(self, db):
        """Connectivity may only reference existing vertices."""
        db.create_vertices(np.zeros((2, 3)))
        with pytest.raises(DatabaseError, match="non-vertex") as exc:
            db.create_element(Topology.EDGE, [1, 99])
        assert exc.value.identifier == 99

    def test_get_adjacencies_when_shared_vertices_then_returns_common_users(self, db):
        """Only elements using every given vertex of the right dimension match."""
        vertices, quad = _unit_square(db)
        edge = db.create_element(Topology.EDGE, vertices[:2])
        assert db.get_adjacencies(vertices[:2], 2) == [quad]
        assert db.get_adjacencies(vertices[:2], 1) == [edge]
        assert db.get_adjacencies([vertices[0], vertices[2]], 1) == []

    def test_elements_when_filtered_by_dimension_then_excludes_others(self, db):
        """Dimension filtering separates faces from edges."""
        vertices, quad = _unit_square(db)
        edge = db.create_element(Topology.EDGE, vertices[1:3])
        assert db.elements(dimension=2) == [quad]
        assert db.elements() == [quad, edge]
        assert db.topology(vertices[0]) is Topology.VERTEX


# ───────────────────────────────────────────────────────────────────────────
# Deletion
# ───────────────────────────────────────────────────────────────────────────

class TestDeletion:
    """Tests for entity deletion."""

    def test_delete_entities_when_element_in_tracking_set_then_removed_from_set(self, db):
        """Owner-tracking sets lose deleted members."""
        vertices, quad = _unit_square(db)
        mesh_set = db.create_set(track_owner=True)
        db.add_entities(mesh_set, [quad, *vertices])
        db.tag_set(GLOBAL_ID_TAG, quad, 7)

        db.delete_entities([quad])

        assert not db.is_element(quad)
        assert quad not in db.set_members(mesh_set)
        assert db.tag_get(GLOBAL_ID_TAG, quad, default=None) is None
        assert db.get_adjacencies(vertices, 2) == []

    def test_delete_entities_when_vertex_still_used_then_raises_database_error(self, db):
        """A vertex cannot be deleted out from under its elements."""
        vertices, _ = _unit_square(db)
        with pytest.raises(DatabaseError, match="still used"):
            db.delete_entities([vertices[0]])

    def test_delete_entities_when_handle_unknown_then_raises_database_error(self, db):
        """Unknown handles are rejected."""
        with pytest.raises(DatabaseError, match="unknown handle"):
            db.delete_entities([42])


# ───────────────────────────────────────────────────────────────────────────
# Sets & Tags
# ───────────────────────────────────────────────────────────────────────────

class TestSetsAndTags:
    """Tests for set semantics and tag access."""

    def test_add_entities_when_unordered_set_then_ignores_duplicates(self, db):
        """Unordered sets hold each member once."""
        handles = list(db.create_vertices(np.zeros((2, 3))))
        mesh_set = db.create_set(ordered=False)
        db.add_entities(mesh_set, handles + handles)
        assert db.set_members(mesh_set) == handles

    def test_add_entities_when_ordered_set_then_keeps_insertion_order(self, db):
        """Ordered sets keep the order members were added in."""
        handles = list(db.create_vertices(np.zeros((3, 3))))
        mesh_set = db.create_set(ordered=True)
        db.add_entities(mesh_set, handles[::-1])
        assert db.set_members(mesh_set) == handles[::-1]
        assert db.is_ordered(mesh_set)

    def test_find_sets_when_tagged_then_returns_matching_sets(self, db):
        """Sets are found by tag value."""
        first = db.create_set()
        second = db.create_set()
        db.tag_set("MATERIAL_SET", first, 10)
        db.tag_set("MATERIAL_SET", second, 20)
        assert db.find_sets("MATERIAL_SET", 20) == [second]

    def test_tag_get_when_missing_without_default_then_raises_database_error(self, db):
        """Reading an unset tag without a default is an error."""
        handle = db.create_set()
        with pytest.raises(DatabaseError, match="Tag 'X' not set"):
            db.tag_get("X", handle)
        assert db.tag_get("X", handle, default=0) == 0

    def test_tag_set_when_handle_unknown_then_raises_database_error(self, db):
        """Tags can only be attached to live handles."""
        with pytest.raises(DatabaseError, match="Cannot tag unknown handle"):
            db.tag_set("X", 5, 1)


# ───────────────────────────────────────────────────────────────────────────
# Export
# ───────────────────────────────────────────────────────────────────────────

class TestMeshioExport:
    """Tests for MeshDatabase.to_meshio."""

    def test_to_meshio_when_quad_mesh_then_exports_points_cells_and_ids(self, db):
        """Vertices become points, elements become cells with GLOBAL_ID data."""
        vertices, quad = _unit_square(db)
        db.tag_set_many(GLOBAL_ID_TAG, vertices, [11, 12, 13, 14])
        db.tag_set(GLOBAL_ID_TAG, quad, 5)

        mesh = db.to_meshio()

        assert mesh.points.shape == (4, 3)
        assert mesh.cells[0].type == "quad"
        np.testing.assert_array_equal(mesh.cells[0].data, [[0, 1, 2, 3]])
        np.testing.assert_array_equal(mesh.point_data[GLOBAL_ID_TAG], [11, 12, 13, 14])
        np.testing.assert_array_equal(mesh.cell_data[GLOBAL_ID_TAG][0], [5])

    def test_to_meshio_when_hex20_then_reorders_vertical_edges_last(self, db):
        """Canonical hex20 mid nodes are reordered into the VTK convention."""
        vertices = list(db.create_vertices(np.arange(60, dtype=float).reshape(20, 3)))
        db.create_element(Topology.HEX, vertices)

        mesh = db.to_meshio()

        row = mesh.cells[0].data[0]
        assert mesh.cells[0].type == "hexahedron20"
        assert list(row[:12]) == list(range(12))
        assert list(row[12:]) == [16, 17, 18, 19, 12, 13, 14, 15]

    def test_to_meshio_when_set_given_then_exports_only_members(self, db):
        """Export can be restricted to one set."""
        vertices, quad = _unit_square(db)
        db.create_vertices([[5, 5, 5]])
        mesh_set = db.create_set()
        db.add_entities(mesh_set, [quad, *vertices])

        mesh = db.to_meshio(mesh_set)

        assert len(mesh.points) == 4
        np.testing.assert_array_equal(mesh.point_data[GLOBAL_ID_TAG], [0, 0, 0, 0])
