"""
SDK for the menu image pipeline.

Clients for the external image generator and object storage.
"""

from .gemini_client import GeminiImageClient, build_prompt
from .object_store import ArtifactStore
from .results import Artifact

__all__ = ["Artifact", "ArtifactStore", "GeminiImageClient", "build_prompt"]
