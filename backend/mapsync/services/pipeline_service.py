from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from mapsync.core.config import settings
from mapsync.core.errors import MapSyncError, SyncBusyError, SyncCancelled
from mapsync.core.manifest_cache import ManifestCache
from mapsync.schemas.sync import DeltaExportResult, SyncStats
from mapsync.services.delta_exporter import DeltaExporter
from mapsync.services.observers import CompositeObserver, Observer
from mapsync.services.source_readers import SourceReader
from mapsync.services.sync_engine import SyncEngine
from mapsync.services.target_writer import TargetWriter


logger = logging.getLogger(__name__)


@dataclass
class PipelineReport:
    stats: dict[str, SyncStats] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    delta: DeltaExportResult | None = None

    @property
    def ok(self) -> bool:
        return not self.failures


class PipelineService:
    """
    Runs entity syncs and delta exports against one source and one target store.

    At most one run per entity is active at a time; a second request for the same
    entity raises SyncBusyError. A delta export needs the target store to itself:
    it waits for in-flight entity runs to finish and new runs wait until it is done.
    """

    def __init__(
        self,
        manifests: ManifestCache,
        source_reader: SourceReader,
        target_writer: TargetWriter,
        *,
        engine: SyncEngine | None = None,
        exporter: DeltaExporter | None = None,
        observers: list[Observer] | None = None,
        delta_path: str | None = None,
    ) -> None:
        self.manifests = manifests
        self.source_reader = source_reader
        self.target_writer = target_writer
        self.engine = engine or SyncEngine()
        self.exporter = exporter or DeltaExporter()
        self.observer = CompositeObserver(observers or [])
        self.delta_path = delta_path or settings.delta_export_path
        self._state_lock = threading.Lock()
        self._state_changed = threading.Condition(self._state_lock)
        self._running_by_entity: set[str] = set()
        self._exporting = False

    def running(self) -> list[str]:
        with self._state_lock:
            return sorted(self._running_by_entity)

    def _acquire_entity(self, entity: str) -> None:
        with self._state_changed:
            while self._exporting:
                self._state_changed.wait()
            if entity in self._running_by_entity:
                raise SyncBusyError(entity)
            self._running_by_entity.add(entity)

    def _release_entity(self, entity: str) -> None:
        with self._state_changed:
            self._running_by_entity.discard(entity)
            self._state_changed.notify_all()

    def run_entity(self, entity: str, cancel_event: threading.Event | None = None) -> SyncStats:
        manifest = self.manifests.entity(entity)
        self._acquire_entity(entity)
        started = time.perf_counter()
        try:
            stats = self.engine.sync_entity(manifest, self.source_reader, self.target_writer, cancel_event=cancel_event)
        except SyncCancelled:
            stats = SyncStats(entity=entity, cancelled=True)
            stats.timing.total_ms = round((time.perf_counter() - started) * 1000.0, 2)
            self.observer.on_sync_completed(stats)
            return stats
        except MapSyncError as exc:
            logger.error('[sync:%s] failed in stage %s: %s', entity, exc.stage, exc)
            self.observer.on_sync_failed(entity, exc)
            raise
        finally:
            self._release_entity(entity)
        self.observer.on_sync_completed(stats)
        return stats

    def run_all(
        self,
        entities: list[str] | None = None,
        cancel_event: threading.Event | None = None,
        export_delta: bool = False,
    ) -> PipelineReport:
        """Sync the given entities (all, in manifest order, by default); one failure does not stop the others."""
        report = PipelineReport()
        names = list(entities) if entities else list(self.manifests.get())
        for name in names:
            if cancel_event is not None and cancel_event.is_set():
                logger.info('pipeline cancelled before entity %s', name)
                break
            try:
                report.stats[name] = self.run_entity(name, cancel_event=cancel_event)
            except MapSyncError as exc:
                report.failures[name] = f'{exc.stage}: {exc}'
        if export_delta and not (cancel_event is not None and cancel_event.is_set()):
            try:
                report.delta = self.export_delta()
            except MapSyncError as exc:
                report.failures['delta_export'] = f'{exc.stage}: {exc}'
        return report

    def export_delta(self, delta_path: str | None = None) -> DeltaExportResult:
        target = delta_path or self.delta_path
        with self._state_changed:
            while self._exporting:
                self._state_changed.wait()
            self._exporting = True
            while self._running_by_entity:
                self._state_changed.wait()
        try:
            result = self.exporter.export_result(self.target_writer, target)
        except MapSyncError as exc:
            logger.error('[delta] export to %s failed: %s', target, exc)
            self.observer.on_sync_failed('delta_export', exc)
            raise
        finally:
            with self._state_changed:
                self._exporting = False
                self._state_changed.notify_all()
        self.observer.on_delta_export(result)
        return result
