"""
meshreconciler
==============
Imports ExodusII meshes into a mesh database and reconciles them against
later snapshots of a deforming simulation.
"""
from meshreconciler.config import (
    ImportSettings,
    MatchStrategy,
    ReconcileSettings,
    UpdateMode,
)
from meshreconciler.controller.importer import import_mesh
from meshreconciler.controller.reconciler import reconcile_mesh
from meshreconciler.errors import (
    AmbiguousMatch,
    BadConnectivity,
    DatabaseError,
    FormatError,
    NoMatch,
    ReconcileError,
    UnresolvedCorrespondence,
)
from meshreconciler.logging_config import setup_logging
from meshreconciler.model.database import MeshDatabase
from meshreconciler.model.io import ExodusFile, InMemorySnapshot, read_set_ids

__all__ = [
    "AmbiguousMatch",
    "BadConnectivity",
    "DatabaseError",
    "ExodusFile",
    "FormatError",
    "ImportSettings",
    "InMemorySnapshot",
    "MatchStrategy",
    "MeshDatabase",
    "NoMatch",
    "ReconcileError",
    "ReconcileSettings",
    "UnresolvedCorrespondence",
    "UpdateMode",
    "import_mesh",
    "read_set_ids",
    "reconcile_mesh",
    "setup_logging",
]
