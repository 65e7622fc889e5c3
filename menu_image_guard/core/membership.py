"""
Group membership check performed before any paid work.
"""

import logging
from typing import Optional, Protocol

from .policy import Collaborator, guard
from menu_image_guard.storage.models import Group

logger = logging.getLogger(__name__)


class GroupLookup(Protocol):
    def get_group(self, group_id: str) -> Optional[Group]:
        ...


class MembershipGate:
    """Fail-closed membership check by exact display-name match.

    Identity is the member's display name, not an authenticated subject,
    so two members sharing a name are indistinguishable here.
    """

    def __init__(self, groups: GroupLookup):
        self.groups = groups

    def is_member(self, group_id: str, caller_name: str) -> bool:
        group = guard(
            Collaborator.MEMBERSHIP_LOOKUP,
            lambda: self.groups.get_group(group_id),
            fallback=None,
        )
        if group is None:
            logger.warning(f"Group not found or unreadable: {group_id}")
            return False

        if caller_name not in group.member_names():
            logger.warning(f"User {caller_name} is not a member of group {group_id}")
            return False
        return True
