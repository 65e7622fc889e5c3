"""
Failure policy for pipeline collaborators.

Every external collaborator has exactly one behaviour on error, declared in
FAILURE_POLICY. Components route their collaborator calls through guard()
instead of carrying their own catch blocks, so the resilience posture of the
whole pipeline can be read from the table below. DEGRADE re-raises so the
pipeline can put the error message into its response.
"""

import logging
from enum import Enum
from typing import Callable, Dict, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OnError(Enum):
    """What to do when a collaborator call fails."""
    FAIL_CLOSED = "fail_closed"  # deny the guarded action
    FAIL_OPEN = "fail_open"      # permit the guarded action
    SWALLOW = "swallow"          # log, lose the side effect, carry on
    DEGRADE = "degrade"          # re-raise; pipeline answers "no artifact"


class Collaborator(Enum):
    """External collaborators consulted while serving one request."""
    MEMBERSHIP_LOOKUP = "membership_lookup"
    CACHE_READ = "cache_read"
    CACHE_WRITE = "cache_write"
    BUDGET_READ = "budget_read"
    BUDGET_COMMIT = "budget_commit"
    GENERATION = "generation"
    ARTIFACT_STORAGE = "artifact_storage"


FAILURE_POLICY: Dict[Collaborator, OnError] = {
    Collaborator.MEMBERSHIP_LOOKUP: OnError.FAIL_CLOSED,
    Collaborator.CACHE_READ: OnError.SWALLOW,
    Collaborator.CACHE_WRITE: OnError.SWALLOW,
    Collaborator.BUDGET_READ: OnError.FAIL_OPEN,
    Collaborator.BUDGET_COMMIT: OnError.SWALLOW,
    Collaborator.GENERATION: OnError.DEGRADE,
    Collaborator.ARTIFACT_STORAGE: OnError.DEGRADE,
}


def guard(collaborator: Collaborator, operation: Callable[[], T], fallback: T) -> T:
    """Run a collaborator call under its failure policy.

    Args:
        collaborator: Which collaborator is being called
        operation: Zero-argument callable performing the call
        fallback: Value returned when the policy absorbs the failure

    Returns:
        The operation result, or ``fallback`` if it failed and the policy
        is FAIL_CLOSED, FAIL_OPEN or SWALLOW

    Raises:
        Exception: The original error when the policy is DEGRADE
    """
    policy = FAILURE_POLICY[collaborator]
    try:
        return operation()
    except Exception as e:
        if policy is OnError.DEGRADE:
            raise
        logger.error(
            f"{collaborator.value} failed, applying {policy.value}: {e}",
            exc_info=True,
        )
        return fallback
