"""
Tagged results of a generation call.

The Gemini response is loosely structured JSON. It is decoded exactly once,
here, into one of three variants; nothing downstream looks at raw JSON.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Optional, Union

from menu_image_guard.core.errors import (
    GenerationEmptyResultError,
    GenerationTransportError,
)

IMAGE_MIME_PREFIX = "image/"


@dataclass(frozen=True)
class Artifact:
    """Generated image bytes and their MIME type."""
    payload: bytes
    mime_type: str


@dataclass(frozen=True)
class GenerationSuccess:
    artifact: Artifact


@dataclass(frozen=True)
class GenerationEmpty:
    reason: str


@dataclass(frozen=True)
class GenerationTransportFailure:
    status_code: Optional[int]
    detail: str


GenerationResult = Union[GenerationSuccess, GenerationEmpty, GenerationTransportFailure]


def decode_response(status_code: int, body: Any) -> GenerationResult:
    """Classify a completed HTTP exchange with the generation endpoint.

    Args:
        status_code: HTTP status returned by the endpoint
        body: Parsed JSON body, or None if it wasn't JSON

    Returns:
        The matching result variant
    """
    if not 200 <= status_code < 300:
        return GenerationTransportFailure(
            status_code=status_code,
            detail=f"Gemini API error: {status_code}",
        )

    candidates = body.get("candidates") if isinstance(body, dict) else None
    if not candidates or not isinstance(candidates, list):
        return GenerationEmpty("No image generated by Gemini API")

    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    for part in parts or []:
        inline = part.get("inlineData") if isinstance(part, dict) else None
        if not isinstance(inline, dict):
            continue
        mime_type = inline.get("mimeType")
        if not isinstance(mime_type, str) or not mime_type.startswith(IMAGE_MIME_PREFIX):
            continue
        data = inline.get("data")
        if not data:
            break
        try:
            payload = base64.b64decode(data, validate=True)
        except (binascii.Error, TypeError, ValueError):
            return GenerationEmpty("Image data in Gemini response is not valid base64")
        return GenerationSuccess(Artifact(payload=payload, mime_type=mime_type))

    return GenerationEmpty("No image data found in Gemini response")


def unwrap(result: GenerationResult) -> Artifact:
    """Return the artifact of a successful result, raise for the others.

    Raises:
        GenerationTransportError: For GenerationTransportFailure
        GenerationEmptyResultError: For GenerationEmpty
    """
    if isinstance(result, GenerationSuccess):
        return result.artifact
    if isinstance(result, GenerationTransportFailure):
        raise GenerationTransportError(result.detail, status_code=result.status_code)
    raise GenerationEmptyResultError(result.reason)
