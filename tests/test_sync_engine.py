import sys
import tempfile
import threading
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

from mapsync.core.errors import ReadError, SyncCancelled, WriteError  # noqa: E402
from mapsync.db.session import build_engine  # noqa: E402
from mapsync.schemas.manifest import Manifest  # noqa: E402
from mapsync.services.source_readers import SqlAlchemySourceReader  # noqa: E402
from mapsync.services.sync_engine import SyncEngine  # noqa: E402
from mapsync.services.target_writer import SqlAlchemyTargetWriter  # noqa: E402


TARGET_DDL = """
CREATE TABLE artikel (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    model TEXT NOT NULL UNIQUE,
    preis REAL CHECK (preis IS NULL OR preis >= 0),
    name TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    content_hash TEXT,
    "update" INTEGER NOT NULL DEFAULT 0
)
"""
SOURCE_DDL = 'CREATE TABLE "Artikel" (Artikelnummer TEXT, Preis TEXT, Bezeichnung TEXT)'


def build_manifest(orphan_policy=None, model='afs.Artikel.Artikelnummer | trim'):
    raw = {
        'from': 'afs.Artikel',
        'target': 'artikel',
        'unique_key': ['model'],
        'map': {
            'evo.artikel.model': model,
            'evo.artikel.preis': 'afs.Artikel.Preis | to_decimal',
            'evo.artikel.name': 'afs.Artikel.Bezeichnung | trim | null_if_empty | default:afs.Artikel.Artikelnummer',
        },
    }
    if orphan_policy is not None:
        raw['orphan_policy'] = orphan_policy
    return Manifest.from_config('artikel', raw)


class SyncEngineTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name)
        self.source_engine = build_engine(f'sqlite:///{base / "source.db"}')
        self.target_engine = build_engine(f'sqlite:///{base / "target.db"}')
        with self.source_engine.begin() as conn:
            conn.exec_driver_sql(SOURCE_DDL)
        with self.target_engine.begin() as conn:
            conn.exec_driver_sql(TARGET_DDL)
        self.reader = SqlAlchemySourceReader(self.source_engine)
        self.writer = SqlAlchemyTargetWriter(self.target_engine, bind_limit=999)
        self.engine = SyncEngine()

    def tearDown(self):
        self.source_engine.dispose()
        self.target_engine.dispose()
        self._tmp.cleanup()

    def set_source(self, *rows):
        with self.source_engine.begin() as conn:
            conn.exec_driver_sql('DELETE FROM "Artikel"')
            for row in rows:
                conn.exec_driver_sql('INSERT INTO "Artikel" (Artikelnummer, Preis, Bezeichnung) VALUES (?, ?, ?)', row)

    def target_rows(self):
        with self.target_engine.connect() as conn:
            return {
                r[0]: {'preis': r[1], 'name': r[2], 'active': r[3], 'content_hash': r[4], 'update': r[5]}
                for r in conn.exec_driver_sql(
                    'SELECT model, preis, name, active, content_hash, "update" FROM artikel ORDER BY model'
                ).fetchall()
            }

    def clear_flags(self):
        with self.target_engine.begin() as conn:
            conn.exec_driver_sql('UPDATE artikel SET "update" = 0')

    def sync(self, manifest=None, cancel_event=None):
        return self.engine.sync_entity(manifest or build_manifest(), self.reader, self.writer, cancel_event=cancel_event)


class ArticleScenarioTests(SyncEngineTestCase):
    def test_insert_then_unchanged_then_update(self):
        self.set_source(('ART-001', '19,99', 'Schraube'))
        first = self.sync()
        self.assertEqual((first.inserted, first.updated, first.unchanged, first.errors), (1, 0, 0, 0))
        stored = self.target_rows()['ART-001']
        self.assertEqual(stored['preis'], 19.99)
        self.assertEqual(stored['update'], 1)
        self.assertTrue(stored['content_hash'])
        first_hash = stored['content_hash']

        self.clear_flags()
        second = self.sync()
        self.assertEqual((second.inserted, second.updated, second.unchanged), (0, 0, 1))
        self.assertEqual(self.target_rows()['ART-001']['update'], 0)

        self.set_source(('ART-001', '24,99', 'Schraube'))
        third = self.sync()
        self.assertEqual((third.inserted, third.updated, third.unchanged), (0, 1, 0))
        stored = self.target_rows()['ART-001']
        self.assertEqual(stored['preis'], 24.99)
        self.assertEqual(stored['update'], 1)
        self.assertNotEqual(stored['content_hash'], first_hash)

    def test_second_run_writes_nothing(self):
        self.set_source(('A', '1', 'a'), ('B', '2', 'b'), ('C', '3', None))
        self.sync()
        snapshot = self.target_rows()
        again = self.sync()
        self.assertEqual(again.written, 0)
        self.assertEqual(again.unchanged, 3)
        self.assertEqual(self.target_rows(), snapshot)
        self.assertEqual(snapshot['C']['name'], 'C')

    def test_stats_and_timing(self):
        self.set_source(('A', '1', 'a'))
        stats = self.sync()
        self.assertEqual(stats.entity, 'artikel')
        self.assertEqual(stats.rows_read, 1)
        self.assertEqual(stats.processed, 1)
        self.assertGreaterEqual(stats.timing.total_ms, stats.timing.write_ms)
        self.assertFalse(stats.has_warnings)

    def test_bulk_write_spans_several_chunks(self):
        rows = [(f'ART-{i:04d}', f'{i},50', f'Artikel {i}') for i in range(1200)]
        self.set_source(*rows)
        stats = self.sync()
        self.assertEqual(stats.inserted, 1200)
        self.assertEqual(len(self.target_rows()), 1200)

    def test_untrimmed_key_padding_is_a_different_key(self):
        manifest = build_manifest(model='afs.Artikel.Artikelnummer')
        self.set_source(('A', '1', 'a'))
        self.sync(manifest)

        self.set_source(('A ', '2', 'a'))
        stats = self.sync(manifest)
        self.assertEqual((stats.inserted, stats.updated, stats.unchanged), (1, 0, 0))
        self.assertEqual(stats.orphan_keys, [('A',)])
        rows = self.target_rows()
        self.assertEqual(sorted(rows), ['A', 'A '])
        self.assertEqual(rows['A']['preis'], 1.0)
        self.assertEqual(rows['A ']['preis'], 2.0)

        again = self.sync(manifest)
        self.assertEqual((again.inserted, again.updated, again.unchanged), (0, 0, 1))


class OrphanTests(SyncEngineTestCase):
    def test_orphans_are_reported_and_left_untouched(self):
        self.set_source(('A', '1', 'a'), ('B', '2', 'b'), ('C', '3', 'c'))
        self.sync()
        self.clear_flags()
        before = self.target_rows()['B']

        self.set_source(('A', '1', 'a'), ('C', '3', 'c'))
        stats = self.sync()
        self.assertEqual(stats.orphans, 1)
        self.assertEqual(stats.orphan_keys, [('B',)])
        self.assertEqual(self.target_rows()['B'], before)

    def test_mark_policy_sets_values_and_flag(self):
        manifest = build_manifest({'action': 'mark', 'set': {'active': 0}})
        self.set_source(('A', '1', 'a'), ('B', '2', 'b'))
        self.sync(manifest)
        self.clear_flags()

        self.set_source(('A', '1', 'a'))
        stats = self.sync(manifest)
        self.assertEqual(stats.orphans, 1)
        rows = self.target_rows()
        self.assertEqual((rows['B']['active'], rows['B']['update']), (0, 1))
        self.assertEqual((rows['A']['active'], rows['A']['update']), (1, 0))

        self.clear_flags()
        self.sync(manifest)
        self.assertEqual(self.target_rows()['B']['update'], 0)

    def test_delete_policy_removes_orphans(self):
        manifest = build_manifest('delete')
        self.set_source(('A', '1', 'a'), ('B', '2', 'b'))
        self.sync(manifest)
        self.set_source(('B', '2', 'b'))
        stats = self.sync(manifest)
        self.assertEqual(stats.orphans, 1)
        self.assertEqual(list(self.target_rows()), ['B'])


class FailureTests(SyncEngineTestCase):
    def test_mapping_errors_skip_rows(self):
        self.set_source(('A', '1', 'a'), ('   ', '2', 'blank key'), (None, '3', 'no key'))
        stats = self.sync()
        self.assertEqual(stats.errors, 2)
        self.assertEqual(stats.inserted, 1)
        self.assertEqual(len(stats.error_samples), 2)
        self.assertTrue(stats.has_warnings)
        self.assertEqual(list(self.target_rows()), ['A'])

    def test_error_samples_are_capped(self):
        self.set_source(*[('', str(i), 'x') for i in range(30)])
        stats = self.sync()
        self.assertEqual(stats.errors, 30)
        self.assertEqual(len(stats.error_samples), 20)

    def test_duplicate_keys_collapse_last_wins(self):
        self.set_source(('A', '1', 'first'), ('A ', '2', 'second'))
        stats = self.sync()
        self.assertEqual((stats.duplicates, stats.inserted), (1, 1))
        self.assertEqual(self.target_rows()['A']['name'], 'second')

    def test_write_failure_rolls_back_everything(self):
        self.set_source(('A', '1', 'a'), ('B', '-5', 'negative'), ('C', '3', 'c'))
        with self.assertRaises(WriteError) as ctx:
            self.sync()
        self.assertEqual(ctx.exception.entity, 'artikel')
        self.assertEqual(ctx.exception.attempted, 3)
        self.assertEqual(self.target_rows(), {})

    def test_missing_source_table(self):
        with self.source_engine.begin() as conn:
            conn.exec_driver_sql('DROP TABLE "Artikel"')
        with self.assertRaises(ReadError) as ctx:
            self.sync()
        self.assertEqual(ctx.exception.entity, 'artikel')

    def test_target_without_hash_column(self):
        with self.target_engine.begin() as conn:
            conn.exec_driver_sql('DROP TABLE artikel')
            conn.exec_driver_sql('CREATE TABLE artikel (model TEXT PRIMARY KEY, preis REAL, name TEXT)')
        self.set_source(('A', '1', 'a'))
        with self.assertRaises(ReadError):
            self.sync()


class CancellationTests(SyncEngineTestCase):
    def test_cancel_before_start_writes_nothing(self):
        self.set_source(('A', '1', 'a'))
        event = threading.Event()
        event.set()
        with self.assertRaises(SyncCancelled):
            self.sync(cancel_event=event)
        self.assertEqual(self.target_rows(), {})

    def test_cancel_during_fetch_writes_nothing(self):
        self.set_source(('A', '1', 'a'), ('B', '2', 'b'))
        event = threading.Event()

        class CancellingReader:
            def __init__(self, inner):
                self.inner = inner

            def fetch(self, descriptor):
                rows = self.inner.fetch(descriptor)
                event.set()
                return rows

        with self.assertRaises(SyncCancelled):
            self.engine.sync_entity(build_manifest(), CancellingReader(self.reader), self.writer, cancel_event=event)
        self.assertEqual(self.target_rows(), {})

    def test_cancel_right_before_commit_rolls_back(self):
        self.set_source(('A', '1', 'a'))
        event = threading.Event()

        class CancelOnCommitWriter(SqlAlchemyTargetWriter):
            def bulk_upsert(self, *args, **kwargs):
                event.set()
                return super().bulk_upsert(*args, **kwargs)

        writer = CancelOnCommitWriter(self.target_engine)
        with self.assertRaises(SyncCancelled):
            self.engine.sync_entity(build_manifest(), self.reader, writer, cancel_event=event)
        self.assertEqual(self.target_rows(), {})


if __name__ == '__main__':
    unittest.main()
