from __future__ import annotations

from types import MappingProxyType
from typing import Any, Mapping

from mapsync.core.errors import ExpressionError, ManifestError, MappingError
from mapsync.schemas.manifest import Manifest
from mapsync.services.change_hasher import ChangeHasher
from mapsync.services.expression_evaluator import ExpressionEvaluator


class FieldMapper:
    """Turns one source row into a flat target payload using a manifest's field expressions."""

    def __init__(self, evaluator: ExpressionEvaluator | None = None, hasher: ChangeHasher | None = None) -> None:
        self.evaluator = evaluator or ExpressionEvaluator()
        self.hasher = hasher or ChangeHasher()

    def compile(self, manifest: Manifest) -> None:
        """Parse every expression up front so a broken manifest fails before any row is read."""
        for mapping in manifest.fields:
            try:
                self.evaluator.parse(mapping.expression)
            except ExpressionError as exc:
                raise ManifestError(f'entity {manifest.entity!r}, field {mapping.target!r}: {exc}') from exc

    @staticmethod
    def build_context(manifest: Manifest, row: Mapping[str, Any]) -> Mapping[str, Any]:
        """
        {namespace: {table: row}} plus the upper-case namespace and the bare table
        name as aliases, so afs.Artikel.Preis, AFS.Artikel.Preis and Artikel.Preis
        all resolve to the same value.
        """
        frozen_row = MappingProxyType(dict(row))
        source = manifest.source
        tables = MappingProxyType({source.table: frozen_row})
        context: dict[str, Any] = {
            source.table: frozen_row,
            source.table.upper(): frozen_row,
            source.namespace.upper(): tables,
            source.namespace: tables,
        }
        return MappingProxyType(context)

    def map(self, manifest: Manifest, row: Mapping[str, Any]) -> tuple[dict[str, Any] | None, MappingError | None]:
        context = self.build_context(manifest, row)
        payload: dict[str, Any] = {}
        for mapping in manifest.fields:
            try:
                payload[mapping.target] = self.evaluator.evaluate(mapping.expression, context)
            except ExpressionError as exc:
                return None, MappingError(
                    f'field {mapping.target!r} ({mapping.expression}): {exc}',
                    field=mapping.target,
                    expression=mapping.expression,
                )
        return payload, None

    def unique_key(self, manifest: Manifest, payload: Mapping[str, Any]) -> tuple[str, ...]:
        values = []
        for field in manifest.unique_key:
            value = payload.get(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise MappingError(f'unique key field {field!r} is empty', field=field)
            values.append(value)
        return self.hasher.canonical_key(values)
