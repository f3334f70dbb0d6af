"""Repository entity models."""

from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field


class TargetRepository(BaseModel):
    """Azure DevOps Git repository."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: str = Field(..., description='Repository GUID')
    name: str = Field(..., description='Repository name')
    project: Dict[str, Any] = Field(default_factory=dict, description='Owning project')
    remote_url: Optional[str] = Field(default=None, alias='remoteUrl')
    default_branch: Optional[str] = Field(
        default=None, alias='defaultBranch', description='Full ref, e.g. refs/heads/main'
    )
    size: Optional[int] = Field(default=None, description='Repository size in bytes')
    is_disabled: Optional[bool] = Field(default=None, alias='isDisabled')

    @property
    def project_id(self) -> Optional[str]:
        return self.project.get('id')

    @property
    def default_branch_name(self) -> Optional[str]:
        if not self.default_branch:
            return None
        return branch_name(self.default_branch)


def branch_ref(branch: str) -> str:
    """Full ref name for a branch (``main`` -> ``refs/heads/main``)."""
    return branch if branch.startswith('refs/') else f'refs/heads/{branch}'


def branch_name(ref: str) -> str:
    """Short branch name for a ref (``refs/heads/main`` -> ``main``)."""
    prefix = 'refs/heads/'
    return ref[len(prefix) :] if ref.startswith(prefix) else ref
