"""
Gemini image generation client.

Issues a single generateContent call per image. There is no retry: a failed
call is surfaced to the caller, who may send the whole request again.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..config.loader import GenerationConfig
from .results import (
    Artifact,
    GenerationResult,
    GenerationTransportFailure,
    decode_response,
    unwrap,
)

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = (
    "A colorful, comic book style illustration of {subject}. "
    "Focus only on the food itself, ignore any person's names in the title. "
    "Vibrant colors, cartoon aesthetic, playful and fun, food-focused, "
    "no text, no watermarks, clean background, appetizing"
)


def build_prompt(subject_text: str) -> str:
    """Embed the caller's original menu title in the fixed image prompt."""
    return PROMPT_TEMPLATE.format(subject=subject_text)


class GeminiImageClient:
    """Synchronous client for Gemini image-only generation.

    Wraps one HTTPS endpoint and converts its responses into Artifact
    objects or generation errors.
    """

    def __init__(self, config: GenerationConfig, http_client: Optional[httpx.Client] = None):
        """Initialize the client.

        Args:
            config: Endpoint, model, aspect ratio and transport timeout
            http_client: Pre-built httpx client (defaults to one using
                ``config.timeout_seconds``)
        """
        self.config = config
        self.http_client = http_client or httpx.Client(timeout=config.timeout_seconds)

    def request_body(self, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [{
                "parts": [{"text": prompt}],
            }],
            "generationConfig": {
                "responseModalities": ["Image"],
                "imageConfig": {
                    "aspectRatio": self.config.aspect_ratio,
                },
            },
        }

    def call(self, prompt: str, api_key: str) -> GenerationResult:
        """Send the prompt and classify whatever comes back.

        Any httpx request error, timeouts included, becomes a
        GenerationTransportFailure with no status code. This method never
        raises for endpoint errors.
        """
        logger.info(f"Generating image with {self.config.model}")
        try:
            response = self.http_client.post(
                self.config.endpoint,
                headers={
                    "x-goog-api-key": api_key,
                    "Content-Type": "application/json",
                },
                json=self.request_body(prompt),
                timeout=self.config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            return GenerationTransportFailure(
                status_code=None,
                detail=f"Gemini API timed out after {self.config.timeout_seconds}s: {e}",
            )
        except httpx.RequestError as e:
            return GenerationTransportFailure(status_code=None, detail=f"Gemini API request failed: {e}")

        if response.is_success:
            try:
                body = response.json()
            except ValueError:
                body = None
        else:
            logger.error(f"Gemini API error: {response.status_code} {response.text[:500]}")
            body = None

        return decode_response(response.status_code, body)

    def generate(self, prompt: str, api_key: str) -> Artifact:
        """Generate one image for the prompt.

        Args:
            prompt: Full prompt, usually from build_prompt()
            api_key: Gemini API key

        Returns:
            The generated image

        Raises:
            GenerationTransportError: Non-success status, timeout or connection failure
            GenerationEmptyResultError: Success status without an image part
        """
        artifact = unwrap(self.call(prompt, api_key))
        logger.info(f"Image generated, type: {artifact.mime_type}")
        return artifact

    def close(self) -> None:
        self.http_client.close()
