from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from mapsync.core.config import settings
from mapsync.core.errors import MappingError, ReadError, SyncCancelled, WriteError
from mapsync.schemas.manifest import Manifest
from mapsync.schemas.sync import SyncStats
from mapsync.services.change_hasher import ChangeHasher
from mapsync.services.expression_evaluator import ExpressionEvaluator
from mapsync.services.field_mapper import FieldMapper
from mapsync.services.source_readers import SourceReader
from mapsync.services.target_writer import TargetWriter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeRecord:
    unique_key: tuple[str, ...]
    payload: dict[str, Any]
    content_hash: str


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 2)


class SyncEngine:
    """
    Batch sync of one entity: fetch the whole source set, map and hash every row,
    diff against the stored hashes (one query), then write inserts and updates in
    a single transaction. Instances hold no per-run state and are cheap to create.
    """

    def __init__(self, evaluator: ExpressionEvaluator | None = None, error_sample_size: int | None = None) -> None:
        self.evaluator = evaluator or ExpressionEvaluator()
        self.error_sample_size = int(settings.sync_error_sample_size if error_sample_size is None else error_sample_size)

    def sync_entity(
        self,
        manifest: Manifest,
        source_reader: SourceReader,
        target_writer: TargetWriter,
        cancel_event: threading.Event | None = None,
    ) -> SyncStats:
        entity = manifest.entity
        run_started = time.perf_counter()
        stats = SyncStats(entity=entity)
        hasher = ChangeHasher.for_manifest(manifest)
        mapper = FieldMapper(self.evaluator, hasher)
        mapper.compile(manifest)

        def _check_cancel(stage: str) -> None:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning('[sync:%s] cancelled during %s', entity, stage)
                raise SyncCancelled(f'sync of entity {entity!r} cancelled during {stage}')

        # 1. load
        stage_started = time.perf_counter()
        try:
            rows = source_reader.fetch(manifest.source)
        except ReadError as exc:
            exc.entity = entity
            raise
        except Exception as exc:
            raise ReadError(f'source read failed for {manifest.source.reference}: {exc}', entity=entity, table=manifest.source.physical_table) from exc
        fetch_ms = _elapsed_ms(stage_started)
        stats.rows_read = len(rows)
        logger.info('[sync:%s] fetched %d source rows from %s', entity, len(rows), manifest.source.reference)

        # 2. map + hash
        stage_started = time.perf_counter()
        records: dict[tuple[str, ...], ChangeRecord] = {}
        for position, row in enumerate(rows):
            _check_cancel('mapping')
            payload, error = mapper.map(manifest, row)
            key: tuple[str, ...] = ()
            if error is None:
                try:
                    key = mapper.unique_key(manifest, payload)
                except MappingError as exc:
                    error = exc
            if error is not None:
                stats.errors += 1
                if len(stats.error_samples) < self.error_sample_size:
                    stats.error_samples.append(f'row {position}: {error}')
                continue
            if key in records:
                stats.duplicates += 1
            records[key] = ChangeRecord(key, payload, hasher.hash_payload(payload))
        stats.timing.map_ms = _elapsed_ms(stage_started)
        if stats.errors:
            logger.warning('[sync:%s] %d rows failed mapping (first: %s)', entity, stats.errors, stats.error_samples[0] if stats.error_samples else '-')
        if stats.duplicates:
            logger.warning('[sync:%s] %d duplicate keys collapsed (last row wins)', entity, stats.duplicates)

        # 3. index existing target state
        stage_started = time.perf_counter()
        try:
            existing = target_writer.load_existing_hashes(
                manifest.target_table,
                manifest.unique_key,
                manifest.hash_column,
                key_builder=hasher.canonical_key,
            )
        except ReadError as exc:
            exc.entity = entity
            raise
        stats.timing.load_ms = round(fetch_ms + _elapsed_ms(stage_started), 2)

        # 4. classify
        to_write: list[dict[str, Any]] = []
        for key, record in records.items():
            current = existing.get(key)
            if current is None:
                stats.inserted += 1
            elif hasher.has_changed(current.content_hash, record.content_hash):
                stats.updated += 1
            else:
                stats.unchanged += 1
                continue
            to_write.append({**record.payload, manifest.hash_column: record.content_hash, manifest.flag_column: 1})
        stats.processed = stats.inserted + stats.updated + stats.unchanged

        orphan_keys = sorted(key for key in existing if key not in records)
        stats.orphans = len(orphan_keys)
        stats.orphan_keys = orphan_keys
        policy = manifest.orphan_policy
        apply_orphans = bool(orphan_keys) and policy.action in ('mark', 'delete')

        # 5. write
        _check_cancel('write')
        stage_started = time.perf_counter()
        if to_write or apply_orphans:
            try:
                result = target_writer.bulk_upsert(
                    manifest.target_table,
                    manifest.unique_key,
                    to_write,
                    orphan_action=policy.action,
                    orphan_keys=[existing[k].key_values for k in orphan_keys] if apply_orphans else (),
                    orphan_values=dict(policy.set_values),
                    flag_column=manifest.flag_column,
                    should_abort=cancel_event.is_set if cancel_event is not None else None,
                )
            except SyncCancelled:
                logger.warning('[sync:%s] cancelled before commit, nothing written', entity)
                raise
            except WriteError as exc:
                exc.entity = entity
                logger.error('[sync:%s] write failed, %d rows rolled back: %s', entity, len(to_write), exc)
                raise
            if apply_orphans:
                logger.info('[sync:%s] orphan policy %s affected %d rows', entity, policy.action, result.orphans_affected)
        stats.timing.write_ms = _elapsed_ms(stage_started)
        stats.timing.total_ms = _elapsed_ms(run_started)

        if orphan_keys and policy.action == 'report':
            logger.info('[sync:%s] %d orphan rows left untouched', entity, len(orphan_keys))
        logger.info(
            '[sync:%s] done: processed=%d inserted=%d updated=%d unchanged=%d errors=%d orphans=%d in %.1fms',
            entity,
            stats.processed,
            stats.inserted,
            stats.updated,
            stats.unchanged,
            stats.errors,
            stats.orphans,
            stats.timing.total_ms,
        )
        return stats
