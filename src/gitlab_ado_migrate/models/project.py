"""Project entity models."""

from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field

from .migration import SourceFacts


class SourceProject(BaseModel):
    """GitLab project model (only the fields the migration reads)."""

    id: int = Field(..., description='Project ID')
    name: str = Field(..., description='Project name')
    path: str = Field(..., description='Project path')
    path_with_namespace: str = Field(..., description='Full project path')
    visibility: Optional[str] = Field(
        default=None, description='Project visibility (private, internal, public)'
    )
    default_branch: Optional[str] = Field(
        default=None, description='Default branch name'
    )
    http_url_to_repo: Optional[str] = Field(default=None, description='HTTP clone URL')
    lfs_enabled: Optional[bool] = Field(default=None, description='LFS enabled')
    empty_repo: Optional[bool] = Field(default=None, description='Repository is empty')
    statistics: Dict[str, Any] = Field(
        default_factory=dict, description='Project statistics (requires reporter access)'
    )

    @property
    def repository_size(self) -> int:
        return int(self.statistics.get('repository_size') or 0)

    @property
    def lfs_objects_size(self) -> int:
        return int(self.statistics.get('lfs_objects_size') or 0)

    def to_facts(self) -> SourceFacts:
        return SourceFacts(
            id=self.id,
            path_with_namespace=self.path_with_namespace,
            name=self.name,
            size=self.repository_size,
            lfs_enabled=bool(self.lfs_enabled) or self.lfs_objects_size > 0,
            default_branch=self.default_branch,
            visibility=self.visibility,
            http_url_to_repo=self.http_url_to_repo,
        )


class TargetProject(BaseModel):
    """Azure DevOps team project."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: str = Field(..., description='Project GUID')
    name: str = Field(..., description='Project name')
    description: Optional[str] = Field(default=None)
    state: Optional[str] = Field(default=None, description='wellFormed, createPending, ...')
    visibility: Optional[str] = Field(default=None)
    default_team: Optional[Dict[str, Any]] = Field(default=None, alias='defaultTeam')

    @property
    def default_team_name(self) -> str:
        if self.default_team and self.default_team.get('name'):
            return self.default_team['name']
        return f'{self.name} Team'
