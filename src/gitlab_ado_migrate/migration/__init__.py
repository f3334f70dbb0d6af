"""Reconciliation, orchestration and batch execution."""

from .batch import BatchCoordinator, load_batch_file
from .engine import MigrationEngine
from .exceptions import MigrationError, MirrorError, ResourceExistsError
from .orchestrator import MigrationOrchestrator
from .reconciler import ResourceReconciler
from .scaffold import ProjectScaffolder
from .state import MigrationStore

__all__ = [
    'BatchCoordinator',
    'load_batch_file',
    'MigrationEngine',
    'MigrationError',
    'MirrorError',
    'ResourceExistsError',
    'MigrationOrchestrator',
    'ResourceReconciler',
    'ProjectScaffolder',
    'MigrationStore',
]
