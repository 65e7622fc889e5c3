"""
Error taxonomy for the image pipeline.

Rejections (validation, authorization, misconfiguration) propagate to the
caller. Generation and storage failures are caught by the pipeline and
turned into a response carrying an error message.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class InputValidationError(PipelineError):
    """Raised when a required request field is missing or empty."""


class AuthorizationError(PipelineError):
    """Raised when the caller is not a member of the claimed group."""


class MisconfigurationError(PipelineError):
    """Raised when the generation API credential is missing or a placeholder."""


class GenerationError(PipelineError):
    """Base class for failures of the external generation call."""


class GenerationTransportError(GenerationError):
    """Generation endpoint answered with a non-success status or not at all."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationEmptyResultError(GenerationError):
    """Generation endpoint succeeded but returned no usable image."""


class StorageWriteError(PipelineError):
    """Raised when the artifact could not be durably stored."""
