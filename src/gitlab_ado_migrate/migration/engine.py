"""Migration engine - main entry point for migration operations."""

from typing import Optional, Sequence

from loguru import logger

from ..api.client import PlatformClientFactory
from ..config.config import Config
from ..git.mirror import RepositoryMirror
from ..models.migration import (
    BatchRunReport,
    MigrationOutcome,
    MigrationRequest,
    PreconditionReport,
)
from .batch import BatchCoordinator, BatchInput
from .orchestrator import MigrationOrchestrator
from .reconciler import ResourceReconciler
from .scaffold import ProjectScaffolder, ScaffoldResult
from .state import MigrationStore


class MigrationEngine:
    """Session object built once from the loaded configuration.

    Owns both platform clients and hands the same instances to every
    component, so the resolved api-version and rate limiters are shared.
    """

    def __init__(self, config: Config):
        """Initialize migration engine.

        Args:
            config: Migration configuration
        """
        self.config = config
        self.logger = logger.bind(component='MigrationEngine')

        diagnostics_dir = (
            config.migration.resolved_diagnostics_dir
            if config.migration.diagnostics_enabled
            else None
        )
        self.source_client = PlatformClientFactory.create_source_client(
            config.source, config.retry, diagnostics_dir
        )
        self.target_client = PlatformClientFactory.create_target_client(
            config.target, config.retry, diagnostics_dir
        )

        self.store = MigrationStore(config.migration.state_dir)
        self.reconciler = ResourceReconciler(
            self.target_client, operation_timeout=config.migration.operation_timeout
        )
        self.mirror = RepositoryMirror(config.git)
        self.orchestrator = MigrationOrchestrator(
            self.source_client,
            self.reconciler,
            self.mirror,
            self.store,
            migration_config=config.migration,
            branch_policies=config.branch_policies,
        )

    def validate(self, request: MigrationRequest) -> PreconditionReport:
        return self.orchestrator.validate(request)

    def migrate(self, request: MigrationRequest) -> MigrationOutcome:
        return self.orchestrator.run(request)

    def run_batch(
        self,
        items: Sequence[BatchInput],
        target_project: Optional[str] = None,
        sync_mode: bool = False,
    ) -> BatchRunReport:
        coordinator = BatchCoordinator(self.orchestrator, self.store)
        return coordinator.run_batch(items, target_project, sync_mode)

    def scaffold(self, project_name: str) -> ScaffoldResult:
        return ProjectScaffolder(self.reconciler).scaffold(project_name, self.config.scaffold)

    def test_connectivity(self) -> None:
        """Test connectivity to both platforms.

        Raises:
            ConnectionError: If connectivity test fails
        """
        self.logger.info('Testing connectivity to GitLab and Azure DevOps')

        if not self.source_client.test_connection():
            raise ConnectionError('Cannot connect to source GitLab instance')

        if not self.target_client.test_connection():
            raise ConnectionError('Cannot connect to target Azure DevOps organization')

        if not self.mirror.check_git_availability():
            raise ConnectionError('git executable is not available')

        self.logger.info('Connectivity tests passed')

    def close(self) -> None:
        self.source_client.close()
        self.target_client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
