import io
import json
import sys
import tempfile
import threading
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

from mapsync.core.errors import ReadError, SyncBusyError  # noqa: E402
from mapsync.core.manifest_cache import ManifestCache  # noqa: E402
from mapsync.db.bootstrap import bootstrap_database  # noqa: E402
from mapsync.db.session import build_engine  # noqa: E402
from mapsync.models.sync_log import DeltaExportLog, SyncRunLog  # noqa: E402
from mapsync.schemas.sync import DeltaExportResult, SyncStats  # noqa: E402
from mapsync.services.observers import CompositeObserver, LoggingObserver, RunLogObserver  # noqa: E402
from mapsync.services.pipeline_service import PipelineService  # noqa: E402
from mapsync.services.source_readers import SqlAlchemySourceReader  # noqa: E402
from mapsync.services.target_writer import SqlAlchemyTargetWriter  # noqa: E402


MANIFEST_YAML = """
entities:
  artikel:
    from: afs.Artikel
    target: artikel
    unique_key: [model]
    map:
      model: afs.Artikel.Nr | trim
      preis: afs.Artikel.Preis | to_decimal
  lager:
    from: afs.Lager
    target: lager
    unique_key: [ort]
    map:
      ort: afs.Lager.Ort
"""


class RecordingObserver:
    def __init__(self):
        self.completed = []
        self.failed = []
        self.exports = []

    def on_sync_completed(self, stats):
        self.completed.append(stats)

    def on_sync_failed(self, entity, error):
        self.failed.append((entity, error))

    def on_delta_export(self, result):
        self.exports.append(result)


class BlockingReader:
    def __init__(self, inner):
        self.inner = inner
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch(self, descriptor):
        self.entered.set()
        self.release.wait(5)
        return self.inner.fetch(descriptor)


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.manifest_path = base / 'manifest.yml'
        self.manifest_path.write_text(MANIFEST_YAML, encoding='utf-8')
        self.delta_path = base / 'delta.db'
        self.source_engine = build_engine(f'sqlite:///{base / "source.db"}')
        self.target_engine = build_engine(f'sqlite:///{base / "target.db"}')
        with self.source_engine.begin() as conn:
            conn.exec_driver_sql('CREATE TABLE "Artikel" (Nr TEXT, Preis TEXT)')
            conn.exec_driver_sql("INSERT INTO \"Artikel\" VALUES ('A', '1,50'), ('B', '2,50')")
        with self.target_engine.begin() as conn:
            conn.exec_driver_sql(
                'CREATE TABLE artikel (model TEXT PRIMARY KEY, preis REAL, content_hash TEXT, "update" INTEGER DEFAULT 0)'
            )
        self.reader = SqlAlchemySourceReader(self.source_engine)
        self.writer = SqlAlchemyTargetWriter(self.target_engine)
        self.observer = RecordingObserver()

    def tearDown(self):
        self.source_engine.dispose()
        self.target_engine.dispose()
        self._tmp.cleanup()

    def service(self, reader=None):
        return PipelineService(
            ManifestCache(self.manifest_path),
            reader or self.reader,
            self.writer,
            observers=[self.observer],
            delta_path=str(self.delta_path),
        )


class PipelineServiceTests(PipelineTestCase):
    def test_run_entity_notifies_observers(self):
        stats = self.service().run_entity('artikel')
        self.assertEqual(stats.inserted, 2)
        self.assertEqual([s.entity for s in self.observer.completed], ['artikel'])

    def test_run_all_continues_after_a_failing_entity(self):
        report = self.service().run_all(export_delta=True)
        self.assertEqual(report.stats['artikel'].inserted, 2)
        self.assertIn('lager', report.failures)
        self.assertTrue(report.failures['lager'].startswith('read:'))
        self.assertFalse(report.ok)
        self.assertEqual(report.delta.tables, {'artikel': 2})
        self.assertEqual(self.observer.failed[0][0], 'lager')
        self.assertIsInstance(self.observer.failed[0][1], ReadError)
        self.assertEqual(len(self.observer.exports), 1)

    def test_cancelled_run_is_reported_not_raised(self):
        event = threading.Event()
        event.set()
        stats = self.service().run_entity('artikel', cancel_event=event)
        self.assertTrue(stats.cancelled)
        self.assertEqual(self.observer.completed, [stats])

    def test_same_entity_cannot_run_twice(self):
        reader = BlockingReader(self.reader)
        service = self.service(reader)
        worker = threading.Thread(target=service.run_entity, args=('artikel',))
        worker.start()
        try:
            self.assertTrue(reader.entered.wait(5))
            self.assertEqual(service.running(), ['artikel'])
            with self.assertRaises(SyncBusyError):
                service.run_entity('artikel')
        finally:
            reader.release.set()
            worker.join(5)
        self.assertEqual(service.running(), [])
        self.assertEqual(service.run_entity('artikel').unchanged, 2)

    def test_delta_export_waits_for_running_entities(self):
        reader = BlockingReader(self.reader)
        service = self.service(reader)
        results = {}
        sync_thread = threading.Thread(target=service.run_entity, args=('artikel',))
        export_thread = threading.Thread(target=lambda: results.setdefault('delta', service.export_delta()))
        sync_thread.start()
        try:
            self.assertTrue(reader.entered.wait(5))
            export_thread.start()
            export_thread.join(0.3)
            self.assertTrue(export_thread.is_alive())
        finally:
            reader.release.set()
            sync_thread.join(5)
            export_thread.join(5)
        self.assertEqual(results['delta'].tables, {'artikel': 2})


class ObserverTests(PipelineTestCase):
    def test_run_log_observer_persists_runs(self):
        log_engine = build_engine(f'sqlite:///{Path(self._tmp.name) / "runlog.db"}')
        try:
            bootstrap_database(bind=log_engine)
            factory = sessionmaker(bind=log_engine)
            observer = RunLogObserver(session_factory=factory)
            observer.on_sync_completed(SyncStats(entity='artikel', inserted=2, processed=2, errors=1, error_samples=['row 3: bad']))
            observer.on_sync_failed('lager', ReadError('source table missing', table='Lager'))
            observer.on_delta_export(DeltaExportResult(target_path='delta.db', tables={'artikel': 2}, duration_ms=1.5))
            db = factory()
            try:
                runs = db.query(SyncRunLog).order_by(SyncRunLog.id).all()
                self.assertEqual([(r.entity, r.status) for r in runs], [('artikel', 'completed_with_warnings'), ('lager', 'failed')])
                self.assertEqual(json.loads(runs[0].error_samples_json), ['row 3: bad'])
                self.assertIn('read: source table missing', runs[1].error)
                export = db.query(DeltaExportLog).one()
                self.assertEqual((export.total_tables, export.total_rows), (1, 2))
            finally:
                db.close()
        finally:
            log_engine.dispose()

    def test_logging_observer_emits_json_lines(self):
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            LoggingObserver().on_sync_completed(SyncStats(entity='artikel', inserted=1, processed=1))
        line = json.loads(buffer.getvalue().strip().splitlines()[-1])
        self.assertEqual((line['message'], line['entity'], line['inserted']), ('sync_run', 'artikel', 1))

    def test_composite_observer_isolates_failures(self):
        class Broken:
            def on_sync_completed(self, stats):
                raise RuntimeError('boom')

        recorder = RecordingObserver()
        composite = CompositeObserver([Broken(), recorder])
        with self.assertLogs('mapsync.services.observers', level='ERROR'):
            composite.on_sync_completed(SyncStats(entity='artikel'))
        self.assertEqual(len(recorder.completed), 1)


if __name__ == '__main__':
    unittest.main()
