"""Git operations for repository mirroring."""

from .mirror import MirrorResult, RepositoryMirror

__all__ = ['MirrorResult', 'RepositoryMirror']
