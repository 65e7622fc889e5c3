"""
Cache of generated menu images keyed by normalized title.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .policy import Collaborator, guard
from menu_image_guard.storage.models import CacheEntry
from menu_image_guard.storage.repository import CacheRepository

logger = logging.getLogger(__name__)


class ArtifactCache:
    """Best-effort lookup and insert of ``normalized key -> image URL``.

    Read failures count as a miss and write failures are dropped: by the
    time insert() runs the image has already been paid for.
    """

    def __init__(self, repository: CacheRepository):
        self.repository = repository

    def lookup(self, normalized_key: str) -> Optional[str]:
        entry = guard(
            Collaborator.CACHE_READ,
            lambda: self.repository.find_first(normalized_key),
            fallback=None,
        )
        if entry is None:
            logger.info(f"Image cache miss for: {normalized_key!r}")
            return None
        logger.info(f"Image cache hit for: {normalized_key!r}")
        return entry.artifact_url

    def insert(self, normalized_key: str, artifact_url: str) -> bool:
        entry = CacheEntry(
            normalized_key=normalized_key,
            artifact_url=artifact_url,
            created_at=datetime.now(timezone.utc),
        )

        def _insert() -> bool:
            self.repository.insert(entry)
            return True

        stored = guard(Collaborator.CACHE_WRITE, _insert, fallback=False)
        if stored:
            logger.info(f"Cached image for: {normalized_key!r}")
        return stored
