"""Resource reconciliation models."""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ResourceKind(str, Enum):
    PROJECT = 'project'
    REPOSITORY = 'repository'
    BRANCH_POLICY = 'branch_policy'
    GROUP = 'group'
    MEMBERSHIP = 'membership'
    WIKI = 'wiki'
    WORK_ITEM_TEMPLATE = 'work_item_template'
    ACCESS_CONTROL = 'access_control'


# Kinds whose pre-existence must be explicitly accepted by the caller.
CONFLICT_SENSITIVE_KINDS = frozenset({ResourceKind.REPOSITORY})


class ResourceDescriptor(BaseModel):
    """Desired versus live state of one remote resource.

    Recomputed from the live remote state on every ensure call and never
    persisted.
    """

    kind: ResourceKind
    name: str
    desired: Dict[str, Any] = Field(default_factory=dict)
    existing: Optional[Dict[str, Any]] = None

    @property
    def exists(self) -> bool:
        return self.existing is not None


class EnsuredResource(BaseModel):
    """Result of an ensure call."""

    kind: ResourceKind
    id: str
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created: bool = False
    reused: bool = False
