from mapsync.models.sync_log import DeltaExportLog, SyncRunLog

__all__ = [
    'DeltaExportLog',
    'SyncRunLog',
]
