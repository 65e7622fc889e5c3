"""
Durable, publicly readable storage for generated images.

Backed by a Google Cloud Storage bucket. Objects live at
``<prefix>/<artifact name>.<ext>`` and are served from
``<public base>/<bucket>/<prefix>/<artifact name>.<ext>``.
"""

import logging
from typing import Optional

from google.cloud import storage

from ..config.loader import StorageConfig
from ..core.errors import MisconfigurationError, StorageWriteError

logger = logging.getLogger(__name__)


def extension_for(mime_type: str) -> str:
    """File extension for a MIME type: png, or jpg for anything else."""
    return "png" if "png" in mime_type else "jpg"


class ArtifactStore:
    """Writes image bytes to the bucket and makes them public.

    The Cloud Storage client is built on first use, so a store that never
    uploads needs no credentials.
    """

    def __init__(self, config: StorageConfig, bucket: Optional[storage.Bucket] = None):
        """Initialize the store.

        Args:
            config: Bucket name, object prefix, public base URL and timeout
            bucket: Pre-built bucket handle (defaults to ``config.bucket``
                through an application-default-credentials client)
        """
        self.config = config
        self._bucket = bucket

    def check_configured(self) -> None:
        """Raise MisconfigurationError unless a bucket is available."""
        if self._bucket is None and not self.config.bucket:
            raise MisconfigurationError("storage bucket is not configured")

    @property
    def bucket(self) -> storage.Bucket:
        if self._bucket is None:
            self.check_configured()
            self._bucket = storage.Client().bucket(self.config.bucket)
        return self._bucket

    def object_path(self, artifact_name: str, mime_type: str) -> str:
        return f"{self.config.prefix}/{artifact_name}.{extension_for(mime_type)}"

    def public_url(self, object_path: str) -> str:
        return f"{self.config.public_base.rstrip('/')}/{self.bucket.name}/{object_path}"

    def put(self, payload: bytes, artifact_name: str, mime_type: str) -> str:
        """Upload an image and return its public URL.

        Args:
            payload: Raw image bytes
            artifact_name: File-safe name derived from the normalized title
            mime_type: Content type reported by the generator

        Returns:
            Stable public URL of the stored object

        Raises:
            MisconfigurationError: If no bucket is configured
            StorageWriteError: If the client cannot be created or the upload
                fails
        """
        object_path = self.object_path(artifact_name, mime_type)
        self.check_configured()
        try:
            blob = self.bucket.blob(object_path)
            blob.upload_from_string(
                payload,
                content_type=mime_type,
                timeout=self.config.timeout_seconds,
            )
            blob.make_public(timeout=self.config.timeout_seconds)
        except Exception as e:
            logger.error(f"Error uploading to Storage: {e}", exc_info=True)
            raise StorageWriteError(f"Failed to upload image to Storage: {e}") from e

        url = self.public_url(object_path)
        logger.info(f"Upload complete: {url}")
        return url
