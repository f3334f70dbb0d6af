"""Batch coordinator - sequential migrations with per-item failure isolation."""

from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import yaml
from loguru import logger

from ..models.migration import (
    BatchItem,
    BatchItemResult,
    BatchRunReport,
    MigrationRequest,
    MigrationState,
)
from .orchestrator import MigrationOrchestrator
from .state import MigrationStore

BatchInput = Union[str, BatchItem]


def load_batch_file(path: str) -> List[BatchItem]:
    """Load batch items from a YAML list or a plain text file.

    YAML entries may be strings or mappings with ``source_path`` and optional
    ``target_project``/``repository_name``. Plain text has one source path per
    line; blank lines and ``#`` comments are ignored.
    """
    text = Path(path).read_text(encoding='utf-8')

    if Path(path).suffix.lower() in ('.yaml', '.yml'):
        data = yaml.safe_load(text) or []
        if isinstance(data, dict):
            data = data.get('items', [])
        if not isinstance(data, list):
            raise ValueError(f'Batch file {path} must contain a list of items')
        return [
            BatchItem(source_path=entry) if isinstance(entry, str) else BatchItem(**entry)
            for entry in data
        ]

    items = []
    for line in text.splitlines():
        line = line.split('#', 1)[0].strip()
        if line:
            items.append(BatchItem(source_path=line))
    return items


class BatchCoordinator:
    """Runs the orchestrator once per item, in input order."""

    def __init__(
        self,
        orchestrator: MigrationOrchestrator,
        store: Optional[MigrationStore] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self._clock = clock
        self.logger = logger.bind(component='BatchCoordinator')

    def run_batch(
        self,
        items: Sequence[BatchInput],
        target_project: Optional[str] = None,
        sync_mode: bool = False,
    ) -> BatchRunReport:
        """Migrate every item and aggregate one report.

        No item's failure stops the remaining items; every item appears in
        the report exactly once, at its input position.

        Args:
            items: Source paths or batch items (item values override the defaults)
            target_project: Default target project
            sync_mode: Allow existing target repositories

        Returns:
            Batch run report
        """
        report = BatchRunReport(
            started_at=self._clock(), total=len(items), sync_mode=sync_mode
        )
        self.logger.info(f'Starting batch of {len(items)} item(s)')

        for index, entry in enumerate(items, start=1):
            item = BatchItem(source_path=entry) if isinstance(entry, str) else entry
            report.results.append(
                self._run_item(index, len(items), item, target_project, sync_mode)
            )

        report.completed_at = self._clock()
        if self.store is not None:
            path = self.store.save_batch_report(report)
            self.logger.info(f'Batch report written to {path}')

        self.logger.info(
            f'Batch finished: {report.succeeded}/{report.total} succeeded, '
            f'{report.failed} failed'
        )
        return report

    def _run_item(
        self,
        index: int,
        total: int,
        item: BatchItem,
        default_project: Optional[str],
        sync_mode: bool,
    ) -> BatchItemResult:
        project = item.target_project or default_project or ''
        self.logger.info(f'[{index}/{total}] {item.source_path} -> {project or "?"}')

        try:
            if not project:
                raise ValueError('no target project given for item or batch')
            request = MigrationRequest(
                source_path=item.source_path,
                target_project=project,
                repository_name=item.repository_name,
                sync=sync_mode,
            )
            outcome = self.orchestrator.run(request)
        except Exception as e:
            self.logger.error(f'[{index}/{total}] {item.source_path} failed: {e}')
            return BatchItemResult(
                index=index,
                source_path=item.source_path,
                target_project=project,
                success=False,
                state=MigrationState.FAILED,
                message=f'{type(e).__name__}: {e}',
            )

        if outcome.state == MigrationState.BLOCKED:
            return BatchItemResult(
                index=index,
                source_path=item.source_path,
                target_project=project,
                success=False,
                state=outcome.state,
                message='; '.join(outcome.report.blocking_issues),
            )

        record = outcome.record
        return BatchItemResult(
            index=index,
            source_path=item.source_path,
            target_project=project,
            success=outcome.succeeded,
            state=outcome.state,
            migration_count=record.migration_count if record else None,
            duration_seconds=record.duration_seconds if record else None,
        )
