"""Migration orchestrator - drives one source project through validate, migrate and record."""

from datetime import datetime
from typing import Callable, Optional, Tuple

from loguru import logger

from ..api.client import GitLabClient
from ..api.exceptions import APIError
from ..config.config import BranchPolicyConfig, MigrationConfig
from ..git.mirror import RepositoryMirror
from ..models.migration import (
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
from ..models.project import SourceProject, TargetProject
from ..models.repository import TargetRepository
from .exceptions import MigrationError, MirrorError, StateFileError
from .reconciler import ResourceReconciler, permission_bits
from .state import MigrationStore

DEFAULT_BRANCH = 'main'


class MigrationOrchestrator:
    """Runs the validate -> migrate/sync -> record lifecycle for one unit of work.

    ``state`` reflects the most recent attempt. BLOCKED and FAILED are
    terminal for an attempt; a COMPLETED attempt's record becomes the
    predecessor of the next sync.
    """

    def __init__(
        self,
        source_client: GitLabClient,
        reconciler: ResourceReconciler,
        mirror: RepositoryMirror,
        store: MigrationStore,
        migration_config: Optional[MigrationConfig] = None,
        branch_policies: Optional[BranchPolicyConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize migration orchestrator.

        Args:
            source_client: Source GitLab client
            reconciler: Target resource reconciler
            mirror: Repository mirror capability
            store: Durable state store
            migration_config: Migration settings
            branch_policies: Branch policy settings
            clock: Wall clock
        """
        self.source_client = source_client
        self.reconciler = reconciler
        self.mirror = mirror
        self.store = store
        self.migration_config = migration_config or MigrationConfig()
        self.branch_policies = branch_policies or BranchPolicyConfig()
        self._clock = clock
        self.state = MigrationState.NOT_STARTED
        self.logger = logger.bind(component='MigrationOrchestrator')

    def validate(self, request: MigrationRequest) -> PreconditionReport:
        """Build and persist the precondition report for ``request``.

        Performs reads only. The target project is never created here.
        """
        report, _, _ = self._validate(request)
        return report

    def _validate(
        self, request: MigrationRequest
    ) -> Tuple[PreconditionReport, Optional[TargetProject], Optional[TargetRepository]]:
        self.state = MigrationState.VALIDATING
        repository_name = request.resolved_repository_name
        issues = []

        facts = self._gather_source_facts(request.source_path)
        if facts is None:
            issues.append(f'source project {request.source_path!r} not found')

        project = self.reconciler.find_project(request.target_project)
        repository = None
        if project is None:
            issues.append(
                f'target project {request.target_project!r} does not exist; '
                'create it before migrating'
            )
        else:
            repository = self.reconciler.find_repository(project.name, repository_name)

        if repository is not None and not request.sync:
            issues.append(
                f'repository already exists in target project {request.target_project!r}: '
                f'{repository_name!r}; re-run in sync mode to update it'
            )

        report = PreconditionReport(
            source_path=request.source_path,
            target_project=request.target_project,
            repository_name=repository_name,
            source=facts,
            target_project_exists=project is not None,
            target_repository_exists=repository is not None,
            sync_requested=request.sync,
            sync_mode=repository is not None and request.sync,
            ready=not issues,
            blocking_issues=tuple(issues),
            created_at=self._clock(),
        )
        self.store.save_report(report)

        self.state = MigrationState.READY if report.ready else MigrationState.BLOCKED
        for issue in report.blocking_issues:
            self.logger.warning(f'Blocking issue for {request.source_path}: {issue}')
        return report, project, repository

    def _gather_source_facts(self, source_path: str) -> Optional[SourceFacts]:
        try:
            data = self.source_client.get_project(source_path)
        except APIError as e:
            if e.is_not_found:
                return None
            raise
        return SourceProject(**data).to_facts()

    def run(self, request: MigrationRequest) -> MigrationOutcome:
        """Validate and, when nothing blocks, migrate or sync one repository.

        Returns:
            Outcome carrying the report and, when completed, the new record

        Raises:
            StateFileError: In sync mode, when the stored record exists but
                cannot be read. Raised before anything is changed.
            Exception: Whatever stopped the MIGRATING phase, after the error
                record has been persisted. Nothing is rolled back.
        """
        started_at = self._clock()
        self.state = MigrationState.NOT_STARTED

        try:
            report, project, repository = self._validate(request)
        except Exception:
            self.state = MigrationState.FAILED
            raise

        if not report.ready:
            self.logger.info(
                f'Migration {request.source_path} -> {request.target_project}/'
                f'{report.repository_name}: blocked ({len(report.blocking_issues)} issue(s))'
            )
            return MigrationOutcome(state=self.state, report=report)

        prior = None
        if report.sync_mode:
            # Sync extends the stored history, so the stored record must be readable.
            try:
                prior = self.store.load_record(
                    request.source_path,
                    request.target_project,
                    report.repository_name,
                    strict=True,
                )
            except StateFileError as e:
                self.state = MigrationState.FAILED
                self.logger.error(
                    f'Sync {request.source_path} -> {request.target_project}/'
                    f'{report.repository_name}: refusing to run, {e}'
                )
                raise

        self.state = MigrationState.MIGRATING

        current_step = None
        last_completed = None
        try:
            current_step = MigrationStep.REPOSITORY
            ensured = self.reconciler.ensure_repository(
                project, report.repository_name, allow_existing=report.sync_mode
            )
            repository = TargetRepository(**ensured.data)
            last_completed = current_step

            current_step = MigrationStep.MIRROR
            self._mirror(report.source, repository)
            last_completed = current_step

            current_step = MigrationStep.BRANCH_POLICIES
            default_branch = self._resolve_default_branch(report.source, repository)
            if self.branch_policies.enabled:
                self.reconciler.ensure_branch_policies(
                    project, repository, default_branch, self.branch_policies
                )
            last_completed = current_step

            current_step = MigrationStep.RESTRICTION
            self._apply_restriction(project, repository)
            last_completed = current_step

        except Exception as e:
            failed_at = self._clock()
            elapsed = max(0.0, (failed_at - started_at).total_seconds())
            self.store.save_error(
                MigrationErrorRecord(
                    source_path=request.source_path,
                    target_project=request.target_project,
                    repository_name=report.repository_name,
                    message=str(e),
                    error_type=type(e).__name__,
                    elapsed_seconds=round(elapsed, 2),
                    last_completed_step=last_completed,
                    failed_step=current_step,
                    occurred_at=failed_at,
                )
            )
            self.state = MigrationState.FAILED
            self.logger.error(
                f'Migration {request.source_path} -> {request.target_project}/'
                f'{report.repository_name}: failed at {current_step.value} after '
                f'{elapsed:.2f}s (last completed step: '
                f'{last_completed.value if last_completed else "none"}): {e}'
            )
            raise

        completed_at = self._clock()
        history = []
        if prior is not None:
            history = list(prior.history) + [prior.as_history_entry()]

        record = MigrationRecord(
            source_id=report.source.id,
            source_path=request.source_path,
            target_project=request.target_project,
            target_project_id=project.id,
            target_repository_id=repository.id,
            target_repository_name=repository.name,
            kind=MigrationKind.SYNC if report.sync_mode else MigrationKind.INITIAL,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=(completed_at - started_at).total_seconds(),
            default_branch=default_branch,
            history=history,
        )
        self.store.save_record(record)
        self.store.clear_error(
            request.source_path, request.target_project, report.repository_name
        )

        self.state = MigrationState.COMPLETED
        self.logger.info(
            f'Migration {request.source_path} -> {request.target_project}/{repository.name}: '
            f'{record.kind.value} completed in {record.duration_seconds:.2f}s '
            f'(migration #{record.migration_count})'
        )
        return MigrationOutcome(state=self.state, report=report, record=record)

    def _mirror(self, facts: SourceFacts, repository: TargetRepository) -> None:
        if not facts.http_url_to_repo:
            raise MigrationError(f'Source project {facts.path_with_namespace!r} has no HTTP clone URL')
        if not repository.remote_url:
            raise MigrationError(f'Target repository {repository.name!r} has no remote URL')

        result = self.mirror.mirror(
            self.source_client.clone_url({'http_url_to_repo': facts.http_url_to_repo}),
            self.reconciler.client.push_url(repository.remote_url),
            lfs=facts.lfs_enabled,
        )
        if not result.success:
            raise MirrorError(result.error or 'Repository mirror failed')

    @staticmethod
    def _resolve_default_branch(facts: SourceFacts, repository: TargetRepository) -> str:
        return facts.default_branch or repository.default_branch_name or DEFAULT_BRANCH

    def _apply_restriction(self, project: TargetProject, repository: TargetRepository) -> None:
        group_name = self.migration_config.restrict_group
        if not group_name:
            return

        group = self.reconciler.find_group(project.name, group_name)
        if group is None:
            self.logger.warning(
                f'Group {group_name!r} not found in {project.name!r}; '
                'skipping repository restriction'
            )
            return

        self.reconciler.ensure_deny_restriction(
            project,
            repository,
            group,
            permission_bits(self.migration_config.restricted_permissions),
        )
