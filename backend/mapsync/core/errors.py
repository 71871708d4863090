"""
Error taxonomy for sync runs.

ExpressionError and MappingError are recoverable: the owning row is counted as an
error and skipped. ReadError, WriteError and DeltaExportError are fatal for the
entity (or export) run and propagate to the caller.
"""
from __future__ import annotations


class MapSyncError(RuntimeError):
    """Base class for every error raised by the engine."""

    stage = 'unknown'
    fatal = True


class ManifestError(MapSyncError):
    stage = 'manifest'


class ExpressionError(MapSyncError):
    stage = 'map'
    fatal = False

    def __init__(self, message: str, expression: str | None = None) -> None:
        super().__init__(message if expression is None else f'{message} (expression: {expression!r})')
        self.expression = expression


class MappingError(MapSyncError):
    stage = 'map'
    fatal = False

    def __init__(self, message: str, *, field: str | None = None, expression: str | None = None) -> None:
        super().__init__(message)
        self.field = field
        self.expression = expression


class ReadError(MapSyncError):
    stage = 'read'

    def __init__(self, message: str, *, entity: str | None = None, table: str | None = None) -> None:
        super().__init__(message)
        self.entity = entity
        self.table = table


class WriteError(MapSyncError):
    stage = 'write'

    def __init__(self, message: str, *, entity: str | None = None, table: str | None = None, attempted: int = 0) -> None:
        super().__init__(message)
        self.entity = entity
        self.table = table
        self.attempted = attempted


class DeltaExportError(MapSyncError):
    stage = 'delta_export'

    def __init__(self, message: str, *, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


class SyncCancelled(MapSyncError):
    stage = 'cancelled'


class SyncBusyError(MapSyncError):
    stage = 'busy'

    def __init__(self, entity: str) -> None:
        super().__init__(f'sync already running for entity {entity!r}')
        self.entity = entity
