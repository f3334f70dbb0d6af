"""Migration state, report and record models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class MigrationState(str, Enum):
    """Lifecycle of a single migration attempt."""

    NOT_STARTED = 'not_started'
    VALIDATING = 'validating'
    BLOCKED = 'blocked'
    READY = 'ready'
    MIGRATING = 'migrating'
    COMPLETED = 'completed'
    FAILED = 'failed'


class MigrationKind(str, Enum):
    INITIAL = 'INITIAL'
    SYNC = 'SYNC'


class MigrationStep(str, Enum):
    """Ordered steps of the MIGRATING phase."""

    REPOSITORY = 'repository'
    MIRROR = 'mirror'
    BRANCH_POLICIES = 'branch_policies'
    RESTRICTION = 'restriction'


class MigrationRequest(BaseModel):
    """One unit of work: a source project mirrored into a target project."""

    source_path: str = Field(..., description='GitLab project path, e.g. group/project')
    target_project: str = Field(..., description='Azure DevOps project name')
    repository_name: Optional[str] = Field(
        default=None, description='Target repository name, defaults to the source name'
    )
    sync: bool = Field(default=False, description='Allow an existing target repository')

    @field_validator('source_path')
    @classmethod
    def validate_source_path(cls, v):
        v = v.strip().strip('/')
        if not v:
            raise ValueError('source_path must not be empty')
        return v

    @property
    def resolved_repository_name(self) -> str:
        return self.repository_name or self.source_path.rsplit('/', 1)[-1]


class SourceFacts(BaseModel):
    """Facts about the source project gathered during validation."""

    id: int
    path_with_namespace: str
    name: str
    size: int = 0
    lfs_enabled: bool = False
    default_branch: Optional[str] = None
    visibility: Optional[str] = None
    http_url_to_repo: Optional[str] = None


class PreconditionReport(BaseModel):
    """Immutable outcome of pre-flight validation."""

    model_config = ConfigDict(frozen=True)

    source_path: str
    target_project: str
    repository_name: str
    source: Optional[SourceFacts] = None
    target_project_exists: bool = False
    target_repository_exists: bool = False
    sync_requested: bool = False
    sync_mode: bool = False
    ready: bool = False
    blocking_issues: Tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=datetime.now)


class MigrationRecord(BaseModel):
    """Durable outcome of a successful migration, chained across re-runs."""

    source_id: int
    source_path: str
    target_project: str
    target_project_id: Optional[str] = None
    target_repository_id: str
    target_repository_name: str
    kind: MigrationKind
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    outcome: str = 'completed'
    default_branch: Optional[str] = None
    history: List['MigrationRecord'] = Field(default_factory=list)

    @field_validator('duration_seconds')
    @classmethod
    def validate_duration(cls, v):
        return round(max(0.0, v), 2)

    @computed_field
    @property
    def migration_count(self) -> int:
        return 1 + len(self.history)

    def as_history_entry(self) -> 'MigrationRecord':
        """Copy of this record suitable for appending to a successor's history."""
        return self.model_copy(update={'history': []})


class MigrationErrorRecord(BaseModel):
    """What is persisted when a migration attempt fails mid-run."""

    source_path: str
    target_project: str
    repository_name: str
    message: str
    error_type: str
    elapsed_seconds: float
    last_completed_step: Optional[MigrationStep] = None
    failed_step: Optional[MigrationStep] = None
    occurred_at: datetime = Field(default_factory=datetime.now)


class MigrationOutcome(BaseModel):
    """Return value of one orchestrated attempt."""

    state: MigrationState
    report: PreconditionReport
    record: Optional[MigrationRecord] = None

    @property
    def succeeded(self) -> bool:
        return self.state == MigrationState.COMPLETED


class BatchItem(BaseModel):
    """Entry of a batch run; per-item values override the batch defaults."""

    source_path: str
    target_project: Optional[str] = None
    repository_name: Optional[str] = None


class BatchItemResult(BaseModel):
    index: int
    source_path: str
    target_project: str
    success: bool
    state: MigrationState
    message: Optional[str] = None
    migration_count: Optional[int] = None
    duration_seconds: Optional[float] = None


class BatchRunReport(BaseModel):
    """Aggregate report of one batch invocation."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    total: int = 0
    sync_mode: bool = False
    results: List[BatchItemResult] = Field(default_factory=list)

    @computed_field
    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @computed_field
    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)
