"""Durable storage for precondition reports, migration records and batch reports.

Layout under the state directory::

    <source-slug>__<project-slug>__<repo-slug>/precondition_report.json
    <source-slug>__<project-slug>__<repo-slug>/migration_record.json
    <source-slug>__<project-slug>__<repo-slug>/migration_error.json
    batches/batch_<timestamp>.json
"""

import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from ..models.migration import (
    BatchRunReport,
    MigrationErrorRecord,
    MigrationRecord,
    PreconditionReport,
)
from .exceptions import StateFileError

REPORT_FILE = 'precondition_report.json'
RECORD_FILE = 'migration_record.json'
ERROR_FILE = 'migration_error.json'
BATCH_DIR = 'batches'

ModelT = TypeVar('ModelT', bound=BaseModel)


def slugify(value: str) -> str:
    """File-system safe slug (``Group/Sub Project`` -> ``group-sub-project``)."""
    slug = re.sub(r'[^a-z0-9._-]+', '-', value.strip().lower()).strip('-.')
    return slug or '_'


class MigrationStore:
    """Reads and writes migration artifacts as JSON files."""

    def __init__(self, state_dir: str):
        self.state_dir = Path(state_dir)
        self.logger = logger.bind(component='MigrationStore')

    def migration_dir(self, source_path: str, target_project: str, repository_name: str) -> Path:
        key = '__'.join(slugify(v) for v in (source_path, target_project, repository_name))
        return self.state_dir / key

    def _write(self, path: Path, model: BaseModel) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + '.tmp')
        tmp_path.write_text(model.model_dump_json(indent=2), encoding='utf-8')
        tmp_path.replace(path)
        self.logger.debug(f'Wrote {path}')
        return path

    def _read(
        self, path: Path, model: Type[ModelT], strict: bool = False
    ) -> Optional[ModelT]:
        if not path.exists():
            return None
        try:
            return model.model_validate_json(path.read_text(encoding='utf-8'))
        except (ValidationError, UnicodeDecodeError, OSError) as e:
            if strict:
                raise StateFileError(f'Unreadable {path.name} in {path.parent}: {e}') from e
            self.logger.warning(f'Ignoring unreadable {path.name} in {path.parent}: {e}')
            return None

    def save_report(self, report: PreconditionReport) -> Path:
        directory = self.migration_dir(
            report.source_path, report.target_project, report.repository_name
        )
        return self._write(directory / REPORT_FILE, report)

    def load_report(
        self, source_path: str, target_project: str, repository_name: str
    ) -> Optional[PreconditionReport]:
        directory = self.migration_dir(source_path, target_project, repository_name)
        return self._read(directory / REPORT_FILE, PreconditionReport)

    def save_record(self, record: MigrationRecord) -> Path:
        directory = self.migration_dir(
            record.source_path, record.target_project, record.target_repository_name
        )
        return self._write(directory / RECORD_FILE, record)

    def load_record(
        self,
        source_path: str,
        target_project: str,
        repository_name: str,
        strict: bool = False,
    ) -> Optional[MigrationRecord]:
        """Most recent successful record for this migration, if any.

        An unreadable record file is logged and treated as absent, unless
        ``strict`` is set, in which case :class:`StateFileError` is raised.
        """
        directory = self.migration_dir(source_path, target_project, repository_name)
        return self._read(directory / RECORD_FILE, MigrationRecord, strict=strict)

    def save_error(self, error: MigrationErrorRecord) -> Path:
        directory = self.migration_dir(
            error.source_path, error.target_project, error.repository_name
        )
        return self._write(directory / ERROR_FILE, error)

    def load_error(
        self, source_path: str, target_project: str, repository_name: str
    ) -> Optional[MigrationErrorRecord]:
        directory = self.migration_dir(source_path, target_project, repository_name)
        return self._read(directory / ERROR_FILE, MigrationErrorRecord)

    def clear_error(self, source_path: str, target_project: str, repository_name: str) -> None:
        path = self.migration_dir(source_path, target_project, repository_name) / ERROR_FILE
        if path.exists():
            path.unlink()

    def save_batch_report(self, report: BatchRunReport) -> Path:
        timestamp = report.started_at.strftime('%Y%m%dT%H%M%S%f')
        return self._write(self.state_dir / BATCH_DIR / f'batch_{timestamp}.json', report)

    def list_records(self) -> List[MigrationRecord]:
        """All stored migration records, most recently completed first."""
        if not self.state_dir.exists():
            return []
        records = []
        for path in sorted(self.state_dir.glob(f'*/{RECORD_FILE}')):
            record = self._read(path, MigrationRecord)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.completed_at or datetime.min, reverse=True)
        return records

    def list_errors(self) -> List[MigrationErrorRecord]:
        if not self.state_dir.exists():
            return []
        errors = []
        for path in sorted(self.state_dir.glob(f'*/{ERROR_FILE}')):
            error = self._read(path, MigrationErrorRecord)
            if error is not None:
                errors.append(error)
        return errors
