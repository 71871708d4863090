"""
Content hashing for target payloads.

The canonical form drops bookkeeping fields, trims strings, maps null and '' to
the same token, turns booleans into 1/0 and rounds decimals, so a row that was
re-read with insignificant noise hashes to the same value as before.
"""
from __future__ import annotations

import hashlib
import json
import math
from datetime import date, datetime, time
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from mapsync.core.config import settings

if TYPE_CHECKING:
    from mapsync.schemas.manifest import Manifest


DEFAULT_EXCLUDED_FIELDS = frozenset(
    {
        'id',
        'xt_id',
        'afs_id',
        'xt_category_id',
        'xt_artikel_id',
        'xt_bild_id',
        'xt_attrib_id',
        'update',
        'last_update',
        'last_update_ts',
        'updated_at',
        'created_at',
        'content_hash',
        'last_imported_hash',
        'last_seen_hash',
        'price_hash',
        'media_hash',
    }
)


class ChangeHasher:
    def __init__(self, exclude: Iterable[str] = (), decimal_places: int | None = None) -> None:
        self.excluded = frozenset(DEFAULT_EXCLUDED_FIELDS | {str(name).lower() for name in exclude})
        self.decimal_places = settings.sync_hash_decimal_places if decimal_places is None else int(decimal_places)

    @classmethod
    def for_manifest(cls, manifest: 'Manifest') -> 'ChangeHasher':
        return cls(exclude=(manifest.hash_column, manifest.flag_column, *manifest.hash_exclude))

    def is_excluded(self, field: str) -> bool:
        return str(field).lower() in self.excluded

    def canonicalize(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {
            str(key): self._normalize(value)
            for key, value in sorted(payload.items(), key=lambda item: str(item[0]))
            if not self.is_excluded(key)
        }

    def hash(self, canonical: Mapping[str, Any]) -> str:
        data = json.dumps(canonical, ensure_ascii=False, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(data.encode('utf-8')).hexdigest()

    def hash_payload(self, payload: Mapping[str, Any]) -> str:
        return self.hash(self.canonicalize(payload))

    @staticmethod
    def has_changed(old_hash: str | None, new_hash: str) -> bool:
        return old_hash is None or old_hash == '' or old_hash != new_hash

    def canonical_key(self, values: Iterable[Any]) -> tuple[str, ...]:
        """
        Key tuple comparable across sources: 7, 7.0 and Decimal('7.00') all give ('7',).
        Strings are kept verbatim so two keys match exactly when the target's unique
        index considers them equal; padding has to be removed in the mapping (| trim).
        """
        return tuple(self._key_part(value) for value in values)

    def partial_hashes(self, payload: Mapping[str, Any], scopes: Mapping[str, Iterable[str]]) -> dict[str, str | None]:
        """
        Hash named field groups independently, e.g. {'price': ['preis', 'rabatt']}.
        A scope with none of its fields present hashes to None. The engine only
        stores the full content hash; callers that keep per-scope hashes (price or
        media columns) use this together with changed_scopes().
        """
        lowered = {str(k).lower(): k for k in payload}
        hashes: dict[str, str | None] = {}
        for scope, fields in scopes.items():
            data: dict[str, Any] = {}
            for field in fields:
                key = field if field in payload else lowered.get(str(field).lower())
                if key is not None:
                    data[str(key)] = payload[key]
            hashes[scope] = self.hash({k: self._normalize(v) for k, v in data.items()}) if data else None
        return hashes

    def changed_scopes(self, old_hashes: Mapping[str, str | None], new_hashes: Mapping[str, str | None]) -> dict[str, bool]:
        return {
            scope: self.has_changed(old_hashes.get(scope), new_hash or '')
            for scope, new_hash in new_hashes.items()
        }

    def _normalize(self, value: Any) -> Any:
        if value is None:
            return ''
        if isinstance(value, str):
            return value.strip()
        if isinstance(value, bool):
            return 1 if value else 0
        if isinstance(value, int):
            return value
        if isinstance(value, (float, Decimal)):
            number = float(value)
            if math.isnan(number) or math.isinf(number):
                return str(number)
            return round(number, self.decimal_places) + 0.0
        if isinstance(value, (datetime, date, time)):
            return value.isoformat()
        if isinstance(value, Mapping):
            return {str(k): self._normalize(v) for k, v in sorted(value.items(), key=lambda item: str(item[0]))}
        if isinstance(value, (list, tuple)):
            return [self._normalize(v) for v in value]
        if isinstance(value, bytes):
            return value.hex()
        return str(value)

    def _key_part(self, value: Any) -> str:
        if value is None:
            return ''
        if isinstance(value, bool):
            return '1' if value else '0'
        if isinstance(value, (int, float, Decimal)):
            number = Decimal(str(value))
            if not number.is_finite():
                return str(value)
            if number == number.to_integral_value():
                return str(int(number))
            return format(number.normalize(), 'f')
        if isinstance(value, (datetime, date, time)):
            return value.isoformat()
        return str(value)
