"""
End-to-end menu image pipeline.

Sequence for one request:
1. Validate input and group membership - rejections raise
2. Normalize the title and check the cache - a hit answers immediately
3. Check the budget - an exhausted budget answers with budget_exceeded
4. Resolve the API credential and check the bucket setting - either missing raises
5. Generate, upload, record the spend, cache the URL

Generation and upload failures come back as a response with ``error`` set.
Ledger and cache write failures are logged and otherwise ignored. The spend
is recorded only after a successful upload and the URL is cached only after
that, so every cache entry stands for at least one counted image.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .budget import BudgetLedger
from .cache import ArtifactCache
from .errors import (
    AuthorizationError,
    GenerationError,
    InputValidationError,
    StorageWriteError,
)
from .membership import MembershipGate
from .normalizer import normalize_title, to_artifact_name
from .policy import Collaborator, guard
from menu_image_guard.config.loader import PipelineConfig, resolve_api_key
from menu_image_guard.sdk.gemini_client import GeminiImageClient, build_prompt
from menu_image_guard.sdk.object_store import ArtifactStore
from menu_image_guard.storage.repository import (
    BudgetRepository,
    CacheRepository,
    GroupRepository,
)

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Stages a request passes through. Every path ends in RESPONDING."""
    AUTHORIZING = "authorizing"
    CACHE_CHECKING = "cache_checking"
    BUDGET_CHECKING = "budget_checking"
    GENERATING = "generating"
    UPLOADING = "uploading"
    ACCOUNTING_COMMIT = "accounting_commit"
    CACHE_WRITING = "cache_writing"
    RESPONDING = "responding"


@dataclass(frozen=True)
class GenerationRequest:
    """One caller request for a menu image."""
    subject_text: str
    group_id: str
    caller_name: str

    def validate(self) -> None:
        """Raise InputValidationError unless every field is a non-blank string."""
        missing = [
            name for name in ("subject_text", "group_id", "caller_name")
            if not isinstance(getattr(self, name), str) or not getattr(self, name).strip()
        ]
        if missing:
            raise InputValidationError(f"Missing required fields: {', '.join(missing)}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GenerationRequest":
        """Build a request from the caller's ``{subjectText, groupId, callerName}`` payload."""
        return cls(
            subject_text=data.get("subjectText"),
            group_id=data.get("groupId"),
            caller_name=data.get("callerName"),
        )


@dataclass(frozen=True)
class PipelineResponse:
    """Answer to a request.

    Exactly one of ``artifact_url``, ``budget_exceeded`` or ``error`` is
    set. ``cached`` implies an URL.
    """
    artifact_url: Optional[str] = None
    cached: bool = False
    budget_exceeded: bool = False
    error: Optional[str] = None
    trail: Tuple[PipelineState, ...] = field(default=(), compare=False)

    def __post_init__(self):
        outcomes = [self.artifact_url is not None, self.budget_exceeded, self.error is not None]
        if sum(outcomes) != 1:
            raise ValueError("response must carry exactly one of url, budget_exceeded, error")
        if self.cached and self.artifact_url is None:
            raise ValueError("cached response must carry an url")

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "artifactURL": self.artifact_url,
            "cached": self.cached,
            "budgetExceeded": self.budget_exceeded,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


class PipelineController:
    """Runs requests through the gate, cache, ledger, generator and store.

    Holds no per-request state, so one controller can serve concurrent
    requests from several threads.

    ``request_timeout_seconds`` is the deadline the serving layer gives each
    request. The controller does not cancel work at that deadline; it logs
    requests that overran it. Generation and upload are bounded by their own
    per-call timeouts, which configuration keeps below this deadline.
    """

    def __init__(
        self,
        gate: MembershipGate,
        cache: ArtifactCache,
        ledger: BudgetLedger,
        generator: GeminiImageClient,
        store: ArtifactStore,
        api_key_provider: Callable[[], str] = resolve_api_key,
        request_timeout_seconds: Optional[float] = None,
    ):
        self.gate = gate
        self.cache = cache
        self.ledger = ledger
        self.generator = generator
        self.store = store
        self.api_key_provider = api_key_provider
        self.request_timeout_seconds = request_timeout_seconds

    def handle(self, request: GenerationRequest) -> PipelineResponse:
        """Serve one request.

        Args:
            request: Menu title plus the group and caller it is made for

        Returns:
            PipelineResponse describing the outcome

        Raises:
            InputValidationError: A required field is missing
            AuthorizationError: The caller is not in the group
            MisconfigurationError: No usable API key or storage bucket,
                detected before any paid call
        """
        started = monotonic()
        trail: List[PipelineState] = [PipelineState.AUTHORIZING]

        def respond(**kwargs: Any) -> PipelineResponse:
            trail.append(PipelineState.RESPONDING)
            logger.debug(f"Pipeline trail: {' -> '.join(s.value for s in trail)}")
            elapsed = monotonic() - started
            if self.request_timeout_seconds is not None and elapsed > self.request_timeout_seconds:
                logger.warning(
                    f"Request took {elapsed:.1f}s, over the {self.request_timeout_seconds}s deadline"
                )
            return PipelineResponse(trail=tuple(trail), **kwargs)

        request.validate()
        logger.info(
            f"Image generation request from {request.caller_name} for {request.subject_text!r}"
        )
        if not self.gate.is_member(request.group_id, request.caller_name):
            raise AuthorizationError("User is not a member of the specified group")

        trail.append(PipelineState.CACHE_CHECKING)
        normalized_key = normalize_title(request.subject_text)
        cached_url = self.cache.lookup(normalized_key)
        if cached_url:
            return respond(artifact_url=cached_url, cached=True)

        trail.append(PipelineState.BUDGET_CHECKING)
        if not self.ledger.check_available():
            logger.warning("Budget cap reached, skipping generation")
            return respond(budget_exceeded=True)

        api_key = self.api_key_provider()
        self.store.check_configured()

        try:
            trail.append(PipelineState.GENERATING)
            artifact = guard(
                Collaborator.GENERATION,
                lambda: self.generator.generate(build_prompt(request.subject_text), api_key),
                fallback=None,
            )
            if artifact is None:
                return respond(error="Image generation failed")

            trail.append(PipelineState.UPLOADING)
            artifact_url = guard(
                Collaborator.ARTIFACT_STORAGE,
                lambda: self.store.put(
                    artifact.payload, to_artifact_name(normalized_key), artifact.mime_type
                ),
                fallback=None,
            )
            if artifact_url is None:
                return respond(error="Image upload failed")
        except (GenerationError, StorageWriteError) as e:
            logger.error(f"Image generation failed: {e}")
            return respond(error=str(e))

        trail.append(PipelineState.ACCOUNTING_COMMIT)
        if self.ledger.commit_increment():
            trail.append(PipelineState.CACHE_WRITING)
            self.cache.insert(normalized_key, artifact_url)
        else:
            logger.warning(f"Spend not recorded, not caching {normalized_key!r}")

        logger.info("Image generation complete")
        return respond(artifact_url=artifact_url)

    def close(self) -> None:
        """Release the generator's HTTP connections."""
        self.generator.close()


def build_pipeline(
    config: PipelineConfig,
    api_key_provider: Callable[[], str] = resolve_api_key,
) -> PipelineController:
    """Wire a controller backed by SQLite, Gemini and Cloud Storage.

    The Cloud Storage client is created on the first upload, so requests
    answered from the cache never need storage credentials.
    """
    return PipelineController(
        gate=MembershipGate(GroupRepository(config.db_path)),
        cache=ArtifactCache(CacheRepository(config.db_path)),
        ledger=BudgetLedger(BudgetRepository(config.db_path), config.budget),
        generator=GeminiImageClient(config.generation),
        store=ArtifactStore(config.storage),
        api_key_provider=api_key_provider,
        request_timeout_seconds=config.request_timeout_seconds,
    )
