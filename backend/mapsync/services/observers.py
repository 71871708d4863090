from __future__ import annotations

import json
import logging
from typing import Any, Callable, Iterable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mapsync.core.errors import DeltaExportError
from mapsync.core.logging_config import log_delta_export, log_sync_run, structured_log
from mapsync.db.session import SessionLocal
from mapsync.models.sync_log import DeltaExportLog, SyncRunLog
from mapsync.schemas.sync import DeltaExportResult, SyncStats


logger = logging.getLogger(__name__)


class Observer(Protocol):
    def on_sync_completed(self, stats: SyncStats) -> None:
        ...

    def on_sync_failed(self, entity: str, error: BaseException) -> None:
        ...

    def on_delta_export(self, result: DeltaExportResult) -> None:
        ...


class LoggingObserver:
    """Emits one structured JSON line per run."""

    def on_sync_completed(self, stats: SyncStats) -> None:
        log_sync_run(stats.entity, stats.model_dump(mode='json'))
        if stats.cancelled:
            structured_log('warning', 'sync_cancelled', entity=stats.entity, stage='cancelled')

    def on_sync_failed(self, entity: str, error: BaseException) -> None:
        structured_log(
            'error',
            'sync_failed',
            entity=entity,
            stage=getattr(error, 'stage', 'unknown'),
            error=str(error),
            table=getattr(error, 'table', None),
        )

    def on_delta_export(self, result: DeltaExportResult) -> None:
        log_delta_export(result.target_path, result.tables, result.duration_ms)


class RunLogObserver:
    """Persists every run as a sync_run_log / delta_export_log row."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self.session_factory = session_factory or SessionLocal

    def on_sync_completed(self, stats: SyncStats) -> None:
        status = 'cancelled' if stats.cancelled else ('completed_with_warnings' if stats.has_warnings else 'completed')
        self._persist(
            SyncRunLog(
                entity=stats.entity,
                status=status,
                processed=stats.processed,
                inserted=stats.inserted,
                updated=stats.updated,
                unchanged=stats.unchanged,
                errors=stats.errors,
                orphans=stats.orphans,
                duplicates=stats.duplicates,
                rows_read=stats.rows_read,
                cancelled=stats.cancelled,
                load_ms=stats.timing.load_ms,
                map_ms=stats.timing.map_ms,
                write_ms=stats.timing.write_ms,
                total_ms=stats.timing.total_ms,
                error_samples_json=json.dumps(stats.error_samples, ensure_ascii=False),
            )
        )

    def on_sync_failed(self, entity: str, error: BaseException) -> None:
        if isinstance(error, DeltaExportError):
            self._persist(DeltaExportLog(target_path='', status='failed', error=str(error)))
            return
        self._persist(
            SyncRunLog(
                entity=entity,
                status='failed',
                error=f'{getattr(error, "stage", "unknown")}: {error}',
                error_samples_json='[]',
            )
        )

    def on_delta_export(self, result: DeltaExportResult) -> None:
        self._persist(
            DeltaExportLog(
                target_path=result.target_path,
                status='completed',
                tables_json=json.dumps(result.tables, ensure_ascii=False, sort_keys=True),
                total_tables=len(result.tables),
                total_rows=result.total_rows,
                duration_ms=result.duration_ms,
            )
        )

    def _persist(self, row: Any) -> None:
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception('[runlog] could not persist %s row', row.__tablename__)
        finally:
            db.close()


class CompositeObserver:
    """Fans events out; a failing observer is logged and never breaks the run."""

    def __init__(self, observers: Iterable[Observer] = ()) -> None:
        self.observers: list[Observer] = list(observers)

    def add(self, observer: Observer) -> None:
        self.observers.append(observer)

    def on_sync_completed(self, stats: SyncStats) -> None:
        self._dispatch('on_sync_completed', stats)

    def on_sync_failed(self, entity: str, error: BaseException) -> None:
        self._dispatch('on_sync_failed', entity, error)

    def on_delta_export(self, result: DeltaExportResult) -> None:
        self._dispatch('on_delta_export', result)

    def _dispatch(self, method: str, *args: Any) -> None:
        for observer in self.observers:
            try:
                getattr(observer, method)(*args)
            except Exception:
                logger.exception('observer %s.%s failed', type(observer).__name__, method)
