"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional


@dataclass(frozen=True)
class CacheEntry:
    """Mapping from a normalized menu title to a stored image URL.

    Append-only: entries are never updated once written. Keys are not
    unique-constrained, so concurrent misses may leave duplicates behind.
    """
    normalized_key: str
    artifact_url: str
    created_at: datetime


@dataclass(frozen=True)
class BudgetState:
    """Snapshot of the global image generation ledger."""
    units_generated: int
    total_cost_spent: Decimal
    last_updated: datetime

    def __post_init__(self):
        if self.units_generated < 0:
            raise ValueError("units_generated must be >= 0")
        if self.total_cost_spent < 0:
            raise ValueError("total_cost_spent must be >= 0")


@dataclass(frozen=True)
class GroupMember:
    """A group member, identified by display name only."""
    name: str
    user_id: Optional[str] = None


@dataclass(frozen=True)
class Group:
    """A meal-planning group and its member roster."""
    group_id: str
    name: str
    members: List[GroupMember] = field(default_factory=list)
    code: Optional[str] = None

    def member_names(self) -> List[str]:
        return [member.name for member in self.members]
