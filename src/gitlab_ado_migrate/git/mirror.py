"""Git repository mirroring operations."""

import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from loguru import logger

from ..api.redaction import redact_secrets
from ..config.config import GitConfig


@dataclass
class MirrorResult:
    """Result of a mirror operation."""

    success: bool
    error: Optional[str] = None
    lfs_mirrored: bool = False
    duration_seconds: float = 0.0


class RepositoryMirror:
    """Copies every ref of a repository (and optionally its LFS objects)."""

    def __init__(self, config: GitConfig):
        """Initialize repository mirror.

        Args:
            config: Git configuration
        """
        self.config = config
        self.logger = logger.bind(component='RepositoryMirror')

    def mirror(self, source_url: str, target_url: str, lfs: bool = False) -> MirrorResult:
        """Mirror ``source_url`` into ``target_url``.

        Both URLs may carry credentials; they never reach the logs unmasked.

        Args:
            source_url: Credentialed clone URL of the source repository
            target_url: Credentialed push URL of the target repository
            lfs: Also transfer Git LFS objects

        Returns:
            Mirror result
        """
        started = time.monotonic()
        lfs = lfs and self.config.lfs_enabled
        work_dir = self._create_temp_directory()
        repo_path = str(Path(work_dir) / 'repository.git')

        try:
            self.logger.info(f'Mirroring {redact_secrets(source_url)} -> {redact_secrets(target_url)}')

            steps = [
                (['git', 'clone', '--mirror', source_url, repo_path], work_dir),
            ]
            if lfs:
                steps.append((['git', 'lfs', 'fetch', '--all', 'origin'], repo_path))
            steps.append((['git', 'push', '--mirror', target_url], repo_path))
            if lfs:
                steps.append((['git', 'lfs', 'push', '--all', target_url], repo_path))

            for cmd, cwd in steps:
                error = self._run_git_command(cmd, cwd)
                if error is not None:
                    return MirrorResult(
                        success=False,
                        error=error,
                        duration_seconds=time.monotonic() - started,
                    )

            duration = time.monotonic() - started
            self.logger.info(f'Mirror completed in {duration:.1f}s')
            return MirrorResult(success=True, lfs_mirrored=lfs, duration_seconds=duration)

        finally:
            if self.config.cleanup_temp:
                self._cleanup_temp_directory(work_dir)

    def _run_git_command(self, cmd: List[str], work_dir: str) -> Optional[str]:
        """Run a git command.

        Returns:
            None on success, otherwise a redacted error message
        """
        display = redact_secrets(' '.join(cmd))
        self.logger.debug(f'Running: {display}')
        try:
            process = subprocess.run(
                cmd,
                cwd=work_dir,
                capture_output=True,
                text=True,
                timeout=self.config.timeout,
            )
        except FileNotFoundError:
            return f'{cmd[0]} executable not found'
        except subprocess.TimeoutExpired:
            return f'Timed out after {self.config.timeout} seconds: {display}'

        if process.returncode != 0:
            error_output = redact_secrets((process.stderr or '').strip()) or 'Unknown error'
            self.logger.error(f'Git command failed: {display} - {error_output}')
            return f'{display} failed: {error_output}'
        return None

    def _create_temp_directory(self) -> str:
        if self.config.temp_dir:
            base_dir = Path(self.config.temp_dir)
            base_dir.mkdir(parents=True, exist_ok=True)
            return tempfile.mkdtemp(prefix='gitlab_ado_migrate_', dir=base_dir)
        return tempfile.mkdtemp(prefix='gitlab_ado_migrate_')

    def _cleanup_temp_directory(self, temp_path: str) -> None:
        try:
            shutil.rmtree(temp_path)
            self.logger.debug(f'Cleaned up temporary directory: {temp_path}')
        except OSError as e:
            self.logger.warning(f'Failed to cleanup temporary directory {temp_path}: {e}')

    def check_git_availability(self) -> bool:
        """Check if the git command is available."""
        try:
            process = subprocess.run(
                ['git', '--version'], capture_output=True, text=True, timeout=30
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False
        return process.returncode == 0
