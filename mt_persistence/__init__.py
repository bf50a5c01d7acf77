"""
MobileTester persistence module.

This module contains the storage implementations: the SQLite job repository
and the artifact stores. It depends on mt_common for domain models and
interfaces and is used by both mt_server and mt_controller.
"""

from .artifact_store import LocalArtifactStore, VercelBlobStore, build_artifact_store
from .sqlite_repository import SQLiteJobRepository

__all__ = [
    "LocalArtifactStore",
    "SQLiteJobRepository",
    "VercelBlobStore",
    "build_artifact_store",
]
