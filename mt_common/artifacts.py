"""
Abstract artifact storage interface.

Artifact stores hold the uploaded APK binaries. The orchestrator only ever
sees the opaque reference returned by upload().
"""

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

MAX_ARTIFACT_SIZE = 50 * 1024 * 1024  # 50MB
MIN_ARTIFACT_SIZE = 1024  # 1KB
ARTIFACT_EXTENSION = ".apk"


@dataclass(frozen=True)
class ArtifactValidation:
    valid: bool
    error: str | None = None


def validate_artifact(filename: str, size: int) -> ArtifactValidation:
    """Check extension and size bounds of an uploaded APK."""
    if not filename.lower().endswith(ARTIFACT_EXTENSION):
        return ArtifactValidation(False, "File must be an APK file (.apk extension)")

    if size > MAX_ARTIFACT_SIZE:
        size_mb = round(size / (1024 * 1024))
        return ArtifactValidation(
            False, f"File size ({size_mb}MB) exceeds the 50MB limit"
        )

    if size < MIN_ARTIFACT_SIZE:
        return ArtifactValidation(
            False, "APK file appears to be too small or corrupted"
        )

    return ArtifactValidation(True)


def artifact_path(filename: str, owner_id: str, timestamp_ms: int | None = None) -> str:
    """Build the storage path for an upload: apks/<owner>/<timestamp>_<name>."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    sanitized = re.sub(r"[^a-zA-Z0-9.-]", "_", filename)
    return f"apks/{owner_id}/{timestamp_ms}_{sanitized}"


class ArtifactStore(ABC):
    """Storage for uploaded artifacts."""

    def validate(self, filename: str, size: int) -> ArtifactValidation:
        return validate_artifact(filename, size)

    @abstractmethod
    async def upload(self, filename: str, data: bytes, owner_id: str) -> str:
        """
        Store an artifact.

        Returns:
            Stable reference (URL or path) to the stored artifact

        Raises:
            ArtifactStoreError: If the upload fails
        """

    @abstractmethod
    async def delete(self, artifact_ref: str) -> None:
        """
        Remove a stored artifact.

        Raises:
            ArtifactStoreError: If the deletion fails
        """
