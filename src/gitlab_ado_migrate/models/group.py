"""Group entity models."""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class SecurityGroup(BaseModel):
    """Azure DevOps project security group as returned by the identities API."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: str = Field(..., description='Identity id')
    descriptor: str = Field(..., description='Identity descriptor used in ACLs')
    subject_descriptor: Optional[str] = Field(
        default=None, alias='subjectDescriptor', description='Graph descriptor'
    )
    provider_display_name: Optional[str] = Field(
        default=None, alias='providerDisplayName', description='[Project]\\Group'
    )

    @property
    def display_name(self) -> str:
        name = self.provider_display_name or ''
        return name.split('\\', 1)[-1]
