import sys
import unittest
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

from mapsync.schemas.manifest import Manifest  # noqa: E402
from mapsync.services.change_hasher import ChangeHasher  # noqa: E402


PAYLOAD = {'model': 'ART-001', 'preis': 19.99, 'name': 'Schraube', 'online': True}


class ChangeHasherTests(unittest.TestCase):
    def setUp(self):
        self.hasher = ChangeHasher(decimal_places=2)

    def test_hash_is_deterministic_and_order_independent(self):
        reordered = {'online': True, 'name': 'Schraube', 'preis': 19.99, 'model': 'ART-001'}
        first = self.hasher.hash_payload(PAYLOAD)
        self.assertEqual(first, self.hasher.hash_payload(dict(PAYLOAD)))
        self.assertEqual(first, self.hasher.hash_payload(reordered))
        self.assertEqual(len(first), 64)

    def test_bookkeeping_fields_are_ignored(self):
        noisy = {**PAYLOAD, 'id': 99, 'content_hash': 'abc', 'update': 1, 'Updated_At': '2026-01-01'}
        self.assertEqual(self.hasher.hash_payload(PAYLOAD), self.hasher.hash_payload(noisy))

    def test_foreign_target_ids_are_ignored(self):
        noisy = {**PAYLOAD, 'xt_category_id': 4, 'xt_artikel_id': 12, 'XT_BILD_ID': 7, 'xt_attrib_id': 3}
        self.assertEqual(self.hasher.hash_payload(PAYLOAD), self.hasher.hash_payload(noisy))

    def test_insignificant_noise_hashes_equal(self):
        noisy = {**PAYLOAD, 'name': '  Schraube ', 'preis': 19.9899, 'online': 1}
        self.assertEqual(self.hasher.hash_payload(PAYLOAD), self.hasher.hash_payload(noisy))
        self.assertEqual(
            self.hasher.hash_payload({'a': None}),
            self.hasher.hash_payload({'a': ''}),
        )

    def test_any_significant_change_changes_the_hash(self):
        base = self.hasher.hash_payload(PAYLOAD)
        for field, value in (('preis', 24.99), ('name', 'Mutter'), ('online', False), ('model', 'ART-002')):
            with self.subTest(field=field):
                self.assertNotEqual(base, self.hasher.hash_payload({**PAYLOAD, field: value}))

    def test_manifest_exclusions(self):
        manifest = Manifest.from_config(
            'artikel',
            {
                'from': 'afs.Artikel',
                'target': 'artikel',
                'unique_key': ['model'],
                'hash_exclude': ['Lagerbestand'],
                'map': {'model': 'afs.Artikel.Nr', 'lagerbestand': 'afs.Artikel.Bestand'},
            },
        )
        hasher = ChangeHasher.for_manifest(manifest)
        self.assertTrue(hasher.is_excluded('lagerbestand'))
        self.assertEqual(
            hasher.hash_payload({'model': 'A', 'lagerbestand': 1}),
            hasher.hash_payload({'model': 'A', 'lagerbestand': 500}),
        )

    def test_has_changed(self):
        digest = self.hasher.hash_payload(PAYLOAD)
        self.assertTrue(ChangeHasher.has_changed(None, digest))
        self.assertTrue(ChangeHasher.has_changed('', digest))
        self.assertFalse(ChangeHasher.has_changed(digest, digest))

    def test_canonical_key_unifies_numeric_spellings(self):
        expected = ('7',)
        for value in (7, 7.0, Decimal('7.00'), '7'):
            with self.subTest(value=value):
                self.assertEqual(self.hasher.canonical_key([value]), expected)
        self.assertEqual(self.hasher.canonical_key([Decimal('1.50'), 'X']), ('1.5', 'X'))
        self.assertEqual(self.hasher.canonical_key([float('nan')]), ('nan',))

    def test_canonical_key_keeps_string_padding(self):
        self.assertNotEqual(self.hasher.canonical_key(['A ']), self.hasher.canonical_key(['A']))
        self.assertEqual(self.hasher.canonical_key([' 7 ']), (' 7 ',))

    def test_partial_hashes_isolate_scopes(self):
        scopes = {'price': ['preis'], 'text': ['name'], 'media': ['bild']}
        old = self.hasher.partial_hashes(PAYLOAD, scopes)
        new = self.hasher.partial_hashes({**PAYLOAD, 'name': 'Mutter'}, scopes)
        self.assertIsNone(old['media'])
        changed = self.hasher.changed_scopes(old, new)
        self.assertFalse(changed['price'])
        self.assertTrue(changed['text'])


if __name__ == '__main__':
    unittest.main()
