from __future__ import annotations

import logging
import time
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from mapsync.core.config import settings
from mapsync.core.errors import DeltaExportError
from mapsync.schemas.sync import DeltaExportResult, FlaggedTableDescriptor
from mapsync.services.target_writer import FlagCopyResult, TargetWriter


logger = logging.getLogger(__name__)


class DeltaExporter:
    """
    Copies every row whose change flag is set into a fresh SQLite file and clears
    the flags of exactly those rows afterwards. Flags are only reset once every
    table was copied and the delta store was detached; on any failure nothing is reset.
    """

    def __init__(self, flag_column: str | None = None) -> None:
        self.flag_column = flag_column or settings.sync_flag_column

    def export(self, primary_writer: TargetWriter, delta_path: str) -> dict[str, int]:
        return self.export_result(primary_writer, delta_path).tables

    def export_result(self, primary_writer: TargetWriter, delta_path: str) -> DeltaExportResult:
        started = time.perf_counter()
        path = Path(delta_path)
        primary_path = getattr(primary_writer, 'database_path', None)
        if primary_path is not None and path.resolve() == primary_path:
            raise DeltaExportError(f'delta path {delta_path!r} points to the primary store')
        self._recreate(path)

        skipped: list[str] = []
        descriptors = primary_writer.list_flagged_tables(self.flag_column, on_skip=lambda table, _reason: skipped.append(table))
        if not descriptors:
            logger.info('[delta] no tables with a %r column, export skipped', self.flag_column)
            return DeltaExportResult(target_path=str(path), skipped_tables=skipped, duration_ms=_elapsed_ms(started))

        copied: list[tuple[FlaggedTableDescriptor, FlagCopyResult]] = []
        try:
            with primary_writer.attach_delta(str(path)) as handle:
                for descriptor in descriptors:
                    primary_writer.create_delta_table(descriptor, handle)
                    result = primary_writer.copy_flagged_rows(descriptor, handle)
                    if result.count > 0:
                        copied.append((descriptor, result))
                    logger.debug('[delta] %s: %d flagged rows copied', descriptor.table_name, result.count)
        except DeltaExportError:
            logger.exception('[delta] export to %s failed, flags left untouched', path)
            raise
        except SQLAlchemyError as exc:
            logger.exception('[delta] export to %s failed, flags left untouched', path)
            raise DeltaExportError(f'delta export to {str(path)!r} failed: {exc}') from exc

        try:
            with primary_writer.begin() as conn:
                for descriptor, result in copied:
                    primary_writer.reset_flags(descriptor, result.keys, conn=conn)
        except SQLAlchemyError as exc:
            raise DeltaExportError(f'resetting change flags failed: {exc}') from exc

        tables = {descriptor.table_name: result.count for descriptor, result in copied}
        export = DeltaExportResult(
            target_path=str(path),
            tables=tables,
            skipped_tables=skipped,
            duration_ms=_elapsed_ms(started),
        )
        logger.info(
            '[delta] exported %d rows from %d tables to %s in %.1fms',
            export.total_rows,
            len(tables),
            path,
            export.duration_ms,
        )
        return export

    @staticmethod
    def _recreate(path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            for candidate in (path, Path(f'{path}-journal'), Path(f'{path}-wal'), Path(f'{path}-shm')):
                if candidate.exists():
                    candidate.unlink()
        except OSError as exc:
            raise DeltaExportError(f'cannot recreate delta store {str(path)!r}: {exc}') from exc
        fresh = create_engine(f'sqlite:///{path}')
        try:
            with fresh.connect() as conn:
                conn.exec_driver_sql('PRAGMA user_version = 0')
        except SQLAlchemyError as exc:
            raise DeltaExportError(f'cannot create delta store {str(path)!r}: {exc}') from exc
        finally:
            fresh.dispose()


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 2)
