"""
Artifact store implementations.

- LocalArtifactStore keeps uploads in a directory (development, simulated runs)
- VercelBlobStore uploads to Vercel Blob over its REST API
"""

import asyncio
import logging
from pathlib import Path

import requests

from mt_common.artifacts import ArtifactStore, artifact_path
from mt_common.errors import ArtifactStoreError

logger = logging.getLogger(__name__)

BLOB_API_URL = "https://blob.vercel-storage.com"
BLOB_API_VERSION = "7"
APK_CONTENT_TYPE = "application/vnd.android.package-archive"


class LocalArtifactStore(ArtifactStore):
    """Stores artifacts under a base directory; references are file paths."""

    def __init__(self, base_dir: str | Path = "artifacts"):
        self.base_dir = Path(base_dir).resolve()

    async def upload(self, filename: str, data: bytes, owner_id: str) -> str:
        target = self.base_dir / artifact_path(filename, owner_id)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise ArtifactStoreError(f"Failed to store {filename}: {e}") from e

        logger.info(f"Stored artifact {target} ({len(data)} bytes)")
        return str(target)

    async def delete(self, artifact_ref: str) -> None:
        path = Path(artifact_ref).resolve()
        if not path.is_relative_to(self.base_dir):
            raise ArtifactStoreError(f"Refusing to delete {artifact_ref}: outside store")

        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise ArtifactStoreError(f"Failed to delete {artifact_ref}: {e}") from e

        logger.info(f"Deleted artifact {artifact_ref}")


class VercelBlobStore(ArtifactStore):
    """Stores artifacts in Vercel Blob; references are public blob URLs."""

    def __init__(
        self,
        token: str,
        api_url: str = BLOB_API_URL,
        request_timeout: float = 120.0,
    ):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "x-api-version": BLOB_API_VERSION,
        }

    async def upload(self, filename: str, data: bytes, owner_id: str) -> str:
        return await asyncio.to_thread(self._upload, filename, data, owner_id)

    def _upload(self, filename: str, data: bytes, owner_id: str) -> str:
        pathname = artifact_path(filename, owner_id)
        headers = self._headers()
        headers["x-content-type"] = APK_CONTENT_TYPE
        headers["x-add-random-suffix"] = "0"

        try:
            response = requests.put(
                f"{self.api_url}/{pathname}",
                data=data,
                headers=headers,
                timeout=self.request_timeout,
            )
            response.raise_for_status()
            url = response.json()["url"]
        except (requests.exceptions.RequestException, ValueError, KeyError) as e:
            raise ArtifactStoreError(f"Failed to upload {filename}: {e}") from e

        logger.info(f"Uploaded artifact {pathname} to blob storage")
        return url

    async def delete(self, artifact_ref: str) -> None:
        await asyncio.to_thread(self._delete, artifact_ref)

    def _delete(self, artifact_ref: str) -> None:
        try:
            response = requests.post(
                f"{self.api_url}/delete",
                json={"urls": [artifact_ref]},
                headers=self._headers(),
                timeout=self.request_timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ArtifactStoreError(f"Failed to delete {artifact_ref}: {e}") from e

        logger.info(f"Deleted blob {artifact_ref}")


def build_artifact_store(
    blob_token: str | None, artifact_dir: str = "artifacts"
) -> ArtifactStore:
    """Use Vercel Blob when a token is configured, local storage otherwise."""
    if blob_token:
        return VercelBlobStore(blob_token)
    return LocalArtifactStore(artifact_dir)
