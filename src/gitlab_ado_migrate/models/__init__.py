"""Data models for source, target and migration state."""

from .group import SecurityGroup
from .migration import (
    BatchItem,
    BatchItemResult,
    BatchRunReport,
    MigrationErrorRecord,
    MigrationKind,
    MigrationOutcome,
    MigrationRecord,
    MigrationRequest,
    MigrationState,
    MigrationStep,
    PreconditionReport,
    SourceFacts,
)
from .project import SourceProject, TargetProject
from .repository import TargetRepository
from .resource import EnsuredResource, ResourceDescriptor, ResourceKind

__all__ = [
    'BatchItem',
    'BatchItemResult',
    'BatchRunReport',
    'EnsuredResource',
    'MigrationErrorRecord',
    'MigrationKind',
    'MigrationOutcome',
    'MigrationRecord',
    'MigrationRequest',
    'MigrationState',
    'MigrationStep',
    'PreconditionReport',
    'ResourceDescriptor',
    'ResourceKind',
    'SecurityGroup',
    'SourceFacts',
    'SourceProject',
    'TargetProject',
    'TargetRepository',
]
