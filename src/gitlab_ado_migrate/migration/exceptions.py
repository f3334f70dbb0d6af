"""Migration-level exceptions."""


class MigrationError(Exception):
    """Base exception for migration failures above the transport layer."""

    pass


class ResourceExistsError(MigrationError):
    """A conflict-sensitive resource exists and reuse was not allowed."""

    def __init__(self, kind: str, name: str):
        super().__init__(
            f'{kind} {name!r} already exists; re-run in sync mode to reuse it'
        )
        self.kind = kind
        self.name = name


class ResourceNotFoundError(MigrationError):
    """A resource the reconciler depends on could not be resolved."""

    pass


class OperationTimeoutError(MigrationError):
    """An asynchronous target operation did not finish in time."""

    pass


class MirrorError(MigrationError):
    """The repository mirror capability reported failure."""

    pass


class StateFileError(MigrationError):
    """A stored state file exists but cannot be read or parsed."""

    pass
