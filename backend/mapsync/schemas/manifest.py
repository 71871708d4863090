from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from mapsync.core.config import settings
from mapsync.core.errors import ManifestError


FILTER_OPERATORS = {
    'eq', 'ne', 'lt', 'lte', 'le', 'gt', 'gte', 'ge', 'like', 'not_like',
    'in', 'not_in', 'between', 'is_null', 'not_null',
}


class SourceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    namespace: str = Field(min_length=1, max_length=64)
    table: str = Field(min_length=1, max_length=128)
    relation: str | None = None
    fields: tuple[str | dict[str, str], ...] = ()
    filters: dict[str, Any] = Field(default_factory=dict)
    order: str | None = None

    @field_validator('namespace', 'table')
    @classmethod
    def validate_name(cls, value: str) -> str:
        text = str(value or '').strip()
        if not text or '.' in text:
            raise ValueError(f'invalid source name: {value!r}')
        return text

    @field_validator('filters')
    @classmethod
    def validate_filters(cls, value: dict[str, Any]) -> dict[str, Any]:
        for column, rule in value.items():
            if isinstance(rule, Mapping):
                for operator in rule:
                    if str(operator).lower() not in FILTER_OPERATORS:
                        raise ValueError(f'unknown filter operator {operator!r} for column {column!r}')
        return value

    @property
    def physical_table(self) -> str:
        return self.relation or self.table

    @property
    def reference(self) -> str:
        return f'{self.namespace}.{self.table}'

    @classmethod
    def parse(cls, reference: str, options: Mapping[str, Any] | None = None) -> 'SourceDescriptor':
        parts = str(reference or '').split('.', 1)
        if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
            raise ManifestError(f'invalid source reference: {reference!r} (expected namespace.table)')
        options = dict(options or {})
        fields = options.get('fields') or ()
        if isinstance(fields, str):
            fields = (fields,)
        return cls(
            namespace=parts[0].strip(),
            table=parts[1].strip(),
            relation=options.get('table') or options.get('relation'),
            fields=tuple(fields),
            filters=dict(options.get('filter') or options.get('filters') or {}),
            order=options.get('order'),
        )


class FieldMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    target: str = Field(min_length=1, max_length=128)
    expression: str


class OrphanPolicy(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    action: Literal['report', 'mark', 'delete'] = 'report'
    set_values: dict[str, Any] = Field(default_factory=dict, alias='set')

    @model_validator(mode='after')
    def validate_mark(self) -> 'OrphanPolicy':
        if self.action == 'mark' and not self.set_values:
            raise ValueError("orphan_policy action 'mark' requires a non-empty 'set' block")
        return self


class Manifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity: str = Field(min_length=1, max_length=128)
    source: SourceDescriptor
    target_table: str = Field(min_length=1, max_length=128)
    fields: tuple[FieldMapping, ...]
    unique_key: tuple[str, ...]
    hash_column: str = Field(default_factory=lambda: settings.sync_hash_column)
    flag_column: str = Field(default_factory=lambda: settings.sync_flag_column)
    hash_exclude: tuple[str, ...] = ()
    orphan_policy: OrphanPolicy = Field(default_factory=OrphanPolicy)

    @model_validator(mode='after')
    def validate_fields(self) -> 'Manifest':
        if not self.fields:
            raise ValueError(f'entity {self.entity!r} defines no field mappings')
        targets: list[str] = []
        for mapping in self.fields:
            if mapping.target in targets:
                raise ValueError(f'duplicate target {mapping.target!r} in entity {self.entity!r}')
            targets.append(mapping.target)
        if not self.unique_key:
            raise ValueError(f'entity {self.entity!r} requires at least one unique_key field')
        missing = [k for k in self.unique_key if k not in targets]
        if missing:
            raise ValueError(f'unique_key fields not mapped in entity {self.entity!r}: {", ".join(missing)}')
        reserved = {self.hash_column.lower(), self.flag_column.lower()}
        clashing = [t for t in targets if t.lower() in reserved]
        if clashing:
            raise ValueError(f'bookkeeping columns cannot be mapped in entity {self.entity!r}: {", ".join(clashing)}')
        return self

    @property
    def targets(self) -> tuple[str, ...]:
        return tuple(m.target for m in self.fields)

    @classmethod
    def from_config(cls, name: str, raw: Any) -> 'Manifest':
        """
        Build a manifest from the generic nested structure of a manifest file:

            artikel:
              from: afs.Artikel
              target: artikel
              unique_key: [model]
              map:
                evo.artikel.model: afs.Artikel.Artikelnummer | trim
        """
        if not isinstance(raw, Mapping):
            raise ManifestError(f'entity {name!r} must be a mapping, got {type(raw).__name__}')
        source_ref = raw.get('from')
        if not source_ref:
            raise ManifestError(f'entity {name!r} without "from" definition')

        target_table = str(raw.get('target') or '').strip() or None
        fields: list[dict[str, str]] = []
        map_config = raw.get('map') if raw.get('map') is not None else raw.get('fields')
        if isinstance(map_config, Mapping):
            items = list(map_config.items())
        elif isinstance(map_config, list):
            items = []
            for entry in map_config:
                if not isinstance(entry, Mapping) or 'target' not in entry:
                    raise ManifestError(f'field entry in entity {name!r} must define "target": {entry!r}')
                items.append((entry['target'], entry.get('expression', entry.get('source'))))
        else:
            raise ManifestError(f'entity {name!r} requires a "map" block')

        for target_path, expression in items:
            table, column = _parse_target_path(str(target_path))
            if table and target_table is None:
                target_table = table
            fields.append({'target': column, 'expression': _expression_text(expression)})

        unique_key = raw.get('unique_key') or raw.get('key') or ()
        if isinstance(unique_key, str):
            unique_key = [unique_key]

        payload: dict[str, Any] = {
            'entity': name,
            'target_table': target_table or name,
            'fields': fields,
            'unique_key': tuple(str(k).strip() for k in unique_key),
            'hash_exclude': tuple(raw.get('hash_exclude') or ()),
        }
        if raw.get('hash_column'):
            payload['hash_column'] = str(raw['hash_column'])
        if raw.get('flag_column'):
            payload['flag_column'] = str(raw['flag_column'])
        orphan_policy = raw.get('orphan_policy')
        if isinstance(orphan_policy, str):
            payload['orphan_policy'] = {'action': orphan_policy}
        elif orphan_policy:
            payload['orphan_policy'] = orphan_policy
        try:
            payload['source'] = SourceDescriptor.parse(str(source_ref), raw.get('source'))
            return cls(**payload)
        except ValidationError as exc:
            raise ManifestError(f'invalid manifest for entity {name!r}: {exc}') from exc


def manifests_from_document(document: Any) -> dict[str, Manifest]:
    """Return the manifests of a parsed manifest document, keyed by entity, in file order."""
    if not isinstance(document, Mapping):
        raise ManifestError('manifest document must be a mapping')
    entities = document.get('entities')
    if not isinstance(entities, Mapping) or not entities:
        raise ManifestError('manifest document defines no entities')
    return {str(name): Manifest.from_config(str(name), raw) for name, raw in entities.items()}


def _parse_target_path(path: str) -> tuple[str | None, str]:
    parts = [p.strip() for p in path.split('.')]
    if len(parts) >= 3 and parts[1] and parts[2]:
        return parts[1], parts[2]
    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    if len(parts) == 1 and parts[0]:
        return None, parts[0]
    raise ManifestError(f'invalid target path: {path!r}')


def _expression_text(expression: Any) -> str:
    # YAML scalars that are not strings become literal expressions.
    if expression is None:
        return 'null'
    if isinstance(expression, bool):
        return 'true' if expression else 'false'
    if isinstance(expression, (int, float)):
        return repr(expression)
    if isinstance(expression, str):
        return expression
    raise ManifestError(f'mapping expression must be a scalar, got {type(expression).__name__}')
