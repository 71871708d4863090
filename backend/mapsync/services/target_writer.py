from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, NamedTuple, Protocol, Sequence

from sqlalchemy import Boolean, Integer, MetaData, Numeric, Table, and_, create_engine, delete, inspect, literal_column, or_, select, update
from sqlalchemy.dialects import sqlite as sqlite_dialect
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.schema import CreateTable

from mapsync.core.config import settings
from mapsync.core.errors import DeltaExportError, ReadError, SyncCancelled, WriteError
from mapsync.schemas.sync import FlaggedTableDescriptor


logger = logging.getLogger(__name__)

_SQLITE_FLAG_TYPES = ('INT', 'BOOL', 'NUM', 'DEC')
_CREATE_TABLE_RE = re.compile(r'^\s*CREATE\s+TABLE\s+', re.IGNORECASE)


class ExistingRow(NamedTuple):
    content_hash: str | None
    surrogate_id: Any
    key_values: tuple


@dataclass(frozen=True)
class FlagCopyResult:
    count: int
    keys: tuple[tuple, ...] = ()


@dataclass(frozen=True)
class UpsertResult:
    written: int
    orphans_affected: int = 0


@dataclass
class DeltaHandle:
    path: str
    connection: Connection | None = None
    engine: Engine | None = None

    @property
    def attached(self) -> bool:
        return self.connection is not None


class TargetWriter(Protocol):
    def load_existing_hashes(self, table_name: str, unique_key: Sequence[str], hash_column: str,
                             key_builder: Callable[[Sequence[Any]], tuple] | None = None) -> dict[tuple, ExistingRow]:
        ...

    def bulk_upsert(self, table_name: str, unique_key: Sequence[str], rows: list[dict[str, Any]], **kwargs: Any) -> UpsertResult:
        ...

    def list_flagged_tables(self, flag_column: str, on_skip: Callable[[str, str], None] | None = None) -> list[FlaggedTableDescriptor]:
        ...

    def attach_delta(self, delta_path: str):
        ...

    def create_delta_table(self, descriptor: FlaggedTableDescriptor, handle: DeltaHandle) -> None:
        ...

    def copy_flagged_rows(self, descriptor: FlaggedTableDescriptor, handle: DeltaHandle) -> FlagCopyResult:
        ...

    def reset_flags(self, descriptor: FlaggedTableDescriptor, keys: Sequence[tuple], conn: Connection | None = None) -> int:
        ...

    def begin(self):
        ...


def _quote(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    step = max(1, int(size))
    for start in range(0, len(items), step):
        yield items[start:start + step]


class SqlAlchemyTargetWriter:
    """
    Target store access for the sync engine and the delta exporter.
    Upserts use INSERT ... ON CONFLICT DO UPDATE, so SQLite and PostgreSQL are supported.
    """

    def __init__(self, engine: Engine, *, bind_limit: int | None = None, batch_size: int | None = None) -> None:
        self.engine = engine
        self.bind_limit = max(1, int(bind_limit or settings.sync_sqlite_bind_limit or 999))
        self.batch_size = max(1, int(batch_size or settings.sync_write_batch_size or 5000))

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def database_path(self) -> Path | None:
        database = self.engine.url.database
        if self.dialect != 'sqlite' or not database or database == ':memory:':
            return None
        return Path(database).resolve()

    def reflect(self, table_name: str) -> Table:
        return Table(table_name, MetaData(), autoload_with=self.engine)

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        with self.engine.begin() as conn:
            yield conn

    def _chunk_size(self, columns_per_row: int) -> int:
        if self.dialect == 'sqlite':
            return max(1, self.bind_limit // max(1, columns_per_row))
        return self.batch_size

    # --- sync side -------------------------------------------------------------------------

    def load_existing_hashes(
        self,
        table_name: str,
        unique_key: Sequence[str],
        hash_column: str,
        key_builder: Callable[[Sequence[Any]], tuple] | None = None,
    ) -> dict[tuple, ExistingRow]:
        """One query: unique key -> (stored hash, surrogate id, raw key values)."""
        try:
            table = self.reflect(table_name)
        except NoSuchTableError as exc:
            raise ReadError(f'target table {table_name!r} does not exist', table=table_name) from exc
        except SQLAlchemyError as exc:
            raise ReadError(f'cannot inspect target table {table_name!r}: {exc}', table=table_name) from exc

        key_columns = [_resolve_column(table, k) for k in unique_key]
        hash_col = _resolve_column(table, hash_column, required=False)
        if hash_col is None:
            raise ReadError(f'target table {table_name!r} has no hash column {hash_column!r}', table=table_name)
        pk = list(table.primary_key.columns)
        surrogate = pk[0] if len(pk) == 1 and pk[0].name not in {c.name for c in key_columns} else None

        columns = [*key_columns, hash_col] + ([surrogate] if surrogate is not None else [])
        build = key_builder or tuple
        index: dict[tuple, ExistingRow] = {}
        try:
            with self.engine.connect() as conn:
                result = conn.execute(select(*columns))
                while True:
                    batch = result.fetchmany(self.batch_size)
                    if not batch:
                        break
                    for row in batch:
                        fields = tuple(row)
                        raw_key = fields[: len(key_columns)]
                        stored_hash = fields[len(key_columns)]
                        surrogate_id = fields[len(key_columns) + 1] if surrogate is not None else None
                        index[build(raw_key)] = ExistingRow(stored_hash, surrogate_id, raw_key)
        except SQLAlchemyError as exc:
            raise ReadError(f'loading existing hashes from {table_name!r} failed: {exc}', table=table_name) from exc
        return index

    def bulk_upsert(
        self,
        table_name: str,
        unique_key: Sequence[str],
        rows: list[dict[str, Any]],
        *,
        orphan_action: str = 'report',
        orphan_keys: Sequence[tuple] = (),
        orphan_values: dict[str, Any] | None = None,
        flag_column: str | None = None,
        should_abort: Callable[[], bool] | None = None,
    ) -> UpsertResult:
        """
        Write all rows (and apply the orphan policy) in a single transaction.
        Any failure rolls the whole batch back and raises WriteError.
        """
        if self.dialect not in ('sqlite', 'postgresql'):
            raise WriteError(f'upsert is not supported for dialect {self.dialect!r}', table=table_name, attempted=len(rows))
        try:
            table = self.reflect(table_name)
        except SQLAlchemyError as exc:
            raise WriteError(f'cannot inspect target table {table_name!r}: {exc}', table=table_name, attempted=len(rows)) from exc

        values = self._prepare_rows(table, rows)
        try:
            key_names = [_resolve_column(table, k).name for k in unique_key]
            marks = {_resolve_column(table, k).name: v for k, v in (orphan_values or {}).items()}
        except ReadError as exc:
            raise WriteError(str(exc), table=table_name, attempted=len(rows)) from exc
        written = 0
        affected = 0
        try:
            with self.engine.begin() as conn:
                if values:
                    chunk_size = self._chunk_size(len(values[0]))
                    for chunk in _chunks(values, chunk_size):
                        conn.execute(self._upsert_statement(table, key_names, list(chunk)))
                        written += len(chunk)
                if orphan_keys and orphan_action in ('mark', 'delete'):
                    affected = self._apply_orphan_policy(
                        conn, table, key_names, orphan_keys, orphan_action, marks, flag_column
                    )
                if should_abort is not None and should_abort():
                    raise SyncCancelled(f'sync of {table_name!r} cancelled before commit')
        except SyncCancelled:
            raise
        except SQLAlchemyError as exc:
            raise WriteError(f'bulk upsert into {table_name!r} failed: {exc}', table=table_name, attempted=len(rows)) from exc
        return UpsertResult(written=written, orphans_affected=affected)

    def _prepare_rows(self, table: Table, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        lookup = {c.name.lower(): c.name for c in table.c}
        dropped: set[str] = set()
        out: list[dict[str, Any]] = []
        for row in rows:
            record: dict[str, Any] = {}
            for key, value in row.items():
                name = lookup.get(str(key).lower())
                if name is None:
                    dropped.add(str(key))
                    continue
                record[name] = value
            out.append(record)
        if dropped:
            logger.warning('[target:%s] ignoring fields without a target column: %s', table.name, ', '.join(sorted(dropped)))
        return out

    def _upsert_statement(self, table: Table, key_names: list[str], chunk: list[dict[str, Any]]):
        insert_stmt = pg_insert(table).values(chunk) if self.dialect == 'postgresql' else sqlite_insert(table).values(chunk)
        excluded = insert_stmt.excluded
        set_map = {name: excluded[name] for name in chunk[0] if name not in key_names}
        index_cols = [table.c[name] for name in key_names]
        if not set_map:
            return insert_stmt.on_conflict_do_nothing(index_elements=index_cols)
        return insert_stmt.on_conflict_do_update(index_elements=index_cols, set_=set_map)

    def _key_condition(self, table: Table, key_names: list[str], keys: Sequence[tuple]):
        if len(key_names) == 1:
            return table.c[key_names[0]].in_([k[0] for k in keys])
        return or_(*[and_(*[table.c[n] == v for n, v in zip(key_names, key)]) for key in keys])

    def _apply_orphan_policy(
        self,
        conn: Connection,
        table: Table,
        key_names: list[str],
        orphan_keys: Sequence[tuple],
        action: str,
        marks: dict[str, Any],
        flag_column: str | None,
    ) -> int:
        affected = 0
        chunk_size = max(1, (self.bind_limit - len(marks) * 2 - 1) // len(key_names))
        for chunk in _chunks(list(orphan_keys), chunk_size):
            condition = self._key_condition(table, key_names, chunk)
            if action == 'delete':
                result = conn.execute(delete(table).where(condition))
            else:
                differs = or_(*[table.c[name].is_distinct_from(v) for name, v in marks.items()])
                assignments = dict(marks)
                flag = _resolve_column(table, flag_column, required=False) if flag_column else None
                if flag is not None:
                    assignments[flag.name] = 1
                result = conn.execute(update(table).where(and_(condition, differs)).values(**assignments))
            affected += int(result.rowcount or 0)
        return affected

    # --- delta side ------------------------------------------------------------------------

    def list_flagged_tables(
        self,
        flag_column: str,
        on_skip: Callable[[str, str], None] | None = None,
    ) -> list[FlaggedTableDescriptor]:
        """
        Every user table with a flag column (case-insensitive) of integer, boolean
        or numeric type. Tables with a flag column of any other type are skipped.
        """
        def _skip(table_name: str, reason: str) -> None:
            logger.warning('[delta] skipping table %s: %s', table_name, reason)
            if on_skip is not None:
                on_skip(table_name, reason)

        try:
            if self.dialect == 'sqlite':
                return self._list_flagged_sqlite(flag_column, _skip)
            return self._list_flagged_generic(flag_column, _skip)
        except SQLAlchemyError as exc:
            raise DeltaExportError(f'schema discovery failed: {exc}') from exc

    def _list_flagged_sqlite(self, flag_column: str, skip: Callable[[str, str], None]) -> list[FlaggedTableDescriptor]:
        wanted = flag_column.lower()
        out: list[FlaggedTableDescriptor] = []
        with self.engine.connect() as conn:
            tables = conn.exec_driver_sql(
                "SELECT name, sql FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
            for name, create_sql in tables:
                info = conn.exec_driver_sql(f'PRAGMA table_info({_quote(name)})').fetchall()
                flag = next((c for c in info if str(c[1]).lower() == wanted), None)
                if flag is None:
                    continue
                declared = str(flag[2] or '').upper()
                if not any(token in declared for token in _SQLITE_FLAG_TYPES):
                    skip(name, f'flag column {flag[1]!r} has type {declared or "<none>"}')
                    continue
                if not create_sql:
                    skip(name, 'no create statement in catalog')
                    continue
                key_columns = tuple(str(c[1]) for c in sorted((c for c in info if c[5]), key=lambda c: c[5]))
                out.append(
                    FlaggedTableDescriptor(
                        table_name=name,
                        create_statement=create_sql,
                        flag_column=str(flag[1]),
                        key_columns=key_columns,
                    )
                )
        return out

    def _list_flagged_generic(self, flag_column: str, skip: Callable[[str, str], None]) -> list[FlaggedTableDescriptor]:
        wanted = flag_column.lower()
        inspector = inspect(self.engine)
        out: list[FlaggedTableDescriptor] = []
        for name in sorted(inspector.get_table_names()):
            columns = inspector.get_columns(name)
            flag = next((c for c in columns if str(c['name']).lower() == wanted), None)
            if flag is None:
                continue
            if not isinstance(flag['type'], (Integer, Boolean, Numeric)):
                skip(name, f'flag column {flag["name"]!r} has type {flag["type"]}')
                continue
            table = self.reflect(name)
            create_sql = str(CreateTable(table).compile(dialect=sqlite_dialect.dialect())).strip()
            pk = inspector.get_pk_constraint(name) or {}
            out.append(
                FlaggedTableDescriptor(
                    table_name=name,
                    create_statement=create_sql,
                    flag_column=str(flag['name']),
                    key_columns=tuple(pk.get('constrained_columns') or ()),
                )
            )
        return out

    @contextmanager
    def attach_delta(self, delta_path: str) -> Iterator[DeltaHandle]:
        """
        SQLite primaries attach the delta file to one connection (ATTACH ... AS delta)
        and copy with INSERT ... SELECT. Other primaries open a separate SQLite
        engine and copy read-then-insert. The delta store is detached on exit.
        """
        if self.dialect != 'sqlite':
            delta_engine = create_engine(f'sqlite:///{delta_path}')
            try:
                yield DeltaHandle(path=delta_path, engine=delta_engine)
            finally:
                delta_engine.dispose()
            return

        escaped = str(delta_path).replace("'", "''")
        with self.engine.connect() as conn:
            conn.execution_options(isolation_level='AUTOCOMMIT')
            try:
                conn.exec_driver_sql(f"ATTACH DATABASE '{escaped}' AS delta")
            except SQLAlchemyError as exc:
                raise DeltaExportError(f'cannot attach delta store {delta_path!r}: {exc}') from exc
            try:
                yield DeltaHandle(path=delta_path, connection=conn)
            finally:
                try:
                    conn.exec_driver_sql('DETACH DATABASE delta')
                except SQLAlchemyError:
                    logger.exception('[delta] detach of %s failed', delta_path)
                    raise

    def create_delta_table(self, descriptor: FlaggedTableDescriptor, handle: DeltaHandle) -> None:
        try:
            if handle.attached:
                statement = _CREATE_TABLE_RE.sub('CREATE TABLE delta.', descriptor.create_statement, count=1)
                handle.connection.exec_driver_sql(statement)
            else:
                with handle.engine.begin() as delta_conn:
                    delta_conn.exec_driver_sql(descriptor.create_statement)
        except SQLAlchemyError as exc:
            raise DeltaExportError(f'creating delta table {descriptor.table_name!r} failed: {exc}', table=descriptor.table_name) from exc

    def copy_flagged_rows(self, descriptor: FlaggedTableDescriptor, handle: DeltaHandle) -> FlagCopyResult:
        try:
            if handle.attached:
                result = self._copy_attached(descriptor, handle.connection)
            else:
                result = self._copy_separate(descriptor, handle.engine)
        except SQLAlchemyError as exc:
            raise DeltaExportError(f'copying flagged rows of {descriptor.table_name!r} failed: {exc}', table=descriptor.table_name) from exc
        return result

    def _copy_attached(self, descriptor: FlaggedTableDescriptor, conn: Connection) -> FlagCopyResult:
        table = _quote(descriptor.table_name)
        flag = _quote(descriptor.flag_column)
        key_select = 'rowid' if descriptor.uses_rowid else ', '.join(_quote(c) for c in descriptor.key_columns)
        conn.exec_driver_sql('BEGIN')
        try:
            keys = tuple(
                tuple(r) for r in conn.exec_driver_sql(f'SELECT {key_select} FROM main.{table} WHERE {flag} = 1').fetchall()
            )
            if keys:
                conn.exec_driver_sql(f'INSERT INTO delta.{table} SELECT * FROM main.{table} WHERE {flag} = 1')
            conn.exec_driver_sql('COMMIT')
        except Exception:
            conn.exec_driver_sql('ROLLBACK')
            raise
        return FlagCopyResult(count=len(keys), keys=keys)

    def _copy_separate(self, descriptor: FlaggedTableDescriptor, delta_engine: Engine) -> FlagCopyResult:
        table = self.reflect(descriptor.table_name)
        flag = table.c[descriptor.flag_column]
        with self.engine.connect() as conn:
            rows = [dict(r) for r in conn.execute(select(table).where(flag == 1)).mappings()]
        if not rows:
            return FlagCopyResult(count=0)
        key_columns = descriptor.key_columns or tuple(c.name for c in table.c)
        keys = tuple(tuple(r[c] for c in key_columns) for r in rows)
        with delta_engine.begin() as delta_conn:
            for chunk in _chunks(rows, max(1, self.bind_limit // max(1, len(table.c)))):
                delta_conn.execute(table.insert(), list(chunk))
        return FlagCopyResult(count=len(rows), keys=keys)

    def reset_flags(self, descriptor: FlaggedTableDescriptor, keys: Sequence[tuple], conn: Connection | None = None) -> int:
        """Set the flag back to 0 for exactly the given rows."""
        if not keys:
            return 0
        if conn is None:
            with self.engine.begin() as own_conn:
                return self.reset_flags(descriptor, keys, own_conn)
        table = self.reflect(descriptor.table_name)
        flag = table.c[descriptor.flag_column]
        if descriptor.key_columns:
            key_names = list(descriptor.key_columns)
        elif self.dialect == 'sqlite':
            key_names = []
        else:
            key_names = [c.name for c in table.c]
        affected = 0
        chunk_size = max(1, self.bind_limit // max(1, len(key_names) or 1))
        for chunk in _chunks(list(keys), chunk_size):
            if key_names:
                condition = self._key_condition(table, key_names, chunk)
            else:
                condition = literal_column('rowid').in_([k[0] for k in chunk])
            result = conn.execute(update(table).where(condition).values({flag.name: 0}))
            affected += int(result.rowcount or 0)
        return affected


def _resolve_column(table: Table, name: str, required: bool = True):
    if name in table.c:
        return table.c[name]
    for column in table.c:
        if column.name.lower() == str(name).lower():
            return column
    if required:
        raise ReadError(f'column {name!r} does not exist in target table {table.name!r}', table=table.name)
    return None
