"""Tests for batch coordination and batch files."""

import json
import os
import tempfile

import pytest
from unittest.mock import Mock

from gitlab_ado_migrate.migration.batch import BatchCoordinator, load_batch_file
from gitlab_ado_migrate.models.migration import BatchItem, MigrationState


class TestBatchCoordinator:
    """Per-item failure isolation."""

    def test_one_missing_project_fails_only_that_item(
        self, orchestrator, fake_gitlab, fake_ado, store
    ):
        for path in ('group/one', 'group/two', 'group/three'):
            fake_gitlab.add_project(path)
        fake_ado.add_project('Platform')
        items = [
            'group/one',
            BatchItem(source_path='group/two', target_project='Ghost'),
            'group/three',
        ]

        report = BatchCoordinator(orchestrator, store).run_batch(items, target_project='Platform')

        assert report.total == 3
        assert report.succeeded == 2
        assert report.failed == 1
        assert [r.source_path for r in report.results] == ['group/one', 'group/two', 'group/three']
        failed = report.results[1]
        assert failed.index == 2
        assert failed.state == MigrationState.BLOCKED
        assert 'Ghost' in failed.message

    @pytest.mark.parametrize('failing_index', [0, 1, 2, 3])
    def test_exception_in_any_position_is_isolated(
        self, orchestrator, fake_gitlab, fake_ado, fake_mirror, failing_index
    ):
        paths = [f'group/repo{i}' for i in range(4)]
        for path in paths:
            fake_gitlab.add_project(path)
        fake_ado.add_project('Platform')
        fake_mirror.fail_on = f'{paths[failing_index]}.git'

        report = BatchCoordinator(orchestrator).run_batch(paths, target_project='Platform')

        assert report.succeeded == 3
        assert report.failed == 1
        assert len(report.results) == 4
        failed = [r for r in report.results if not r.success]
        assert failed[0].source_path == paths[failing_index]
        assert failed[0].state == MigrationState.FAILED
        assert 'MirrorError' in failed[0].message

    def test_unexpected_exception_is_recorded(self):
        orchestrator = Mock()
        orchestrator.run.side_effect = [
            RuntimeError('disk full'),
            Mock(state=MigrationState.COMPLETED, record=None, succeeded=True),
        ]

        report = BatchCoordinator(orchestrator).run_batch(['a/b', 'a/c'], target_project='P')

        assert report.results[0].success is False
        assert report.results[0].message == 'RuntimeError: disk full'
        assert orchestrator.run.call_count == 2

    def test_item_without_target_project_fails(self, orchestrator, fake_gitlab):
        fake_gitlab.add_project('group/one')

        report = BatchCoordinator(orchestrator).run_batch(['group/one'])

        assert report.failed == 1
        assert 'no target project' in report.results[0].message

    def test_sync_mode_is_passed_to_every_item(self):
        orchestrator = Mock()
        orchestrator.run.return_value = Mock(
            state=MigrationState.COMPLETED, record=None, succeeded=True
        )

        BatchCoordinator(orchestrator).run_batch(['a/b', 'a/c'], 'P', sync_mode=True)

        requests = [c[0][0] for c in orchestrator.run.call_args_list]
        assert all(r.sync for r in requests)
        assert [r.source_path for r in requests] == ['a/b', 'a/c']

    def test_duplicates_are_not_removed(self):
        orchestrator = Mock()
        orchestrator.run.return_value = Mock(
            state=MigrationState.COMPLETED, record=None, succeeded=True
        )

        report = BatchCoordinator(orchestrator).run_batch(['a/b', 'a/b'], 'P')

        assert report.total == 2
        assert orchestrator.run.call_count == 2

    def test_report_is_persisted(self, orchestrator, fake_gitlab, fake_ado, store):
        fake_gitlab.add_project('group/one')
        fake_ado.add_project('Platform')

        report = BatchCoordinator(orchestrator, store).run_batch(['group/one'], 'Platform')

        files = list((store.state_dir / 'batches').glob('batch_*.json'))
        assert len(files) == 1
        data = json.loads(files[0].read_text())
        assert data['succeeded'] == 1
        assert data['results'][0]['migration_count'] == 1
        assert report.completed_at is not None


class TestLoadBatchFile:
    """Batch file formats."""

    def _write(self, suffix, content):
        f = tempfile.NamedTemporaryFile(mode='w', suffix=suffix, delete=False)
        f.write(content)
        f.close()
        self.paths.append(f.name)
        return f.name

    def setup_method(self):
        self.paths = []

    def teardown_method(self):
        for path in self.paths:
            os.unlink(path)

    def test_plain_text(self):
        path = self._write('.txt', '# projects\ngroup/one\n\n  group/two  # legacy\n')

        items = load_batch_file(path)

        assert [i.source_path for i in items] == ['group/one', 'group/two']

    def test_yaml_list(self):
        path = self._write(
            '.yaml',
            '- group/one\n'
            '- source_path: group/two\n'
            '  target_project: Other\n'
            '  repository_name: two-service\n',
        )

        items = load_batch_file(path)

        assert items[0] == BatchItem(source_path='group/one')
        assert items[1].target_project == 'Other'
        assert items[1].repository_name == 'two-service'

    def test_yaml_must_be_a_list(self):
        path = self._write('.yml', 'just a string\n')

        with pytest.raises(ValueError):
            load_batch_file(path)
