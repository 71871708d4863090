from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

import mysql.connector
from sqlalchemy import MetaData, Table, and_, false, select, true
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from mapsync.core.config import settings
from mapsync.core.errors import ReadError
from mapsync.db.session import build_engine
from mapsync.schemas.manifest import SourceDescriptor


logger = logging.getLogger(__name__)


class SourceReader(Protocol):
    def fetch(self, descriptor: SourceDescriptor) -> list[dict[str, Any]]:
        ...


def _select_fields(descriptor: SourceDescriptor) -> list[tuple[str, str]]:
    """(column, alias) pairs; an empty list means every column."""
    out: list[tuple[str, str]] = []
    for entry in descriptor.fields:
        if isinstance(entry, str):
            out.append((entry, entry))
        else:
            out.extend((str(column), str(alias)) for alias, column in entry.items())
    return out


def _filter_rules(descriptor: SourceDescriptor) -> list[tuple[str, str, Any]]:
    rules: list[tuple[str, str, Any]] = []
    for column, rule in descriptor.filters.items():
        if isinstance(rule, dict):
            rules.extend((str(column), str(op).lower(), value) for op, value in rule.items())
        else:
            rules.append((str(column), 'eq', rule))
    return rules


def _order_terms(descriptor: SourceDescriptor) -> list[tuple[str, str]]:
    terms: list[tuple[str, str]] = []
    for segment in str(descriptor.order or '').split(','):
        parts = segment.split()
        if not parts:
            continue
        direction = parts[1].upper() if len(parts) > 1 else ''
        terms.append((parts[0], direction if direction in ('ASC', 'DESC') else ''))
    return terms


def _between_bounds(column: str, value: Any) -> tuple[Any, Any]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ReadError(f'between filter on {column!r} expects exactly two values', table=column)
    return value[0], value[1]


class SqlAlchemySourceReader:
    """Reads source rows through SQLAlchemy Core from any database it can reflect."""

    def __init__(self, engine: Engine, batch_size: int | None = None) -> None:
        self.engine = engine
        self.batch_size = max(100, int(batch_size or settings.sync_fetch_batch_size or 5000))

    def fetch(self, descriptor: SourceDescriptor) -> list[dict[str, Any]]:
        try:
            table = Table(descriptor.physical_table, MetaData(), autoload_with=self.engine)
        except NoSuchTableError as exc:
            raise ReadError(f'source table {descriptor.physical_table!r} does not exist', table=descriptor.physical_table) from exc
        except SQLAlchemyError as exc:
            raise ReadError(f'cannot inspect source table {descriptor.physical_table!r}: {exc}', table=descriptor.physical_table) from exc

        stmt = select(*self._columns(table, descriptor))
        conditions = [self._condition(table, column, op, value) for column, op, value in _filter_rules(descriptor)]
        if conditions:
            stmt = stmt.where(and_(*conditions))
        for column, direction in _order_terms(descriptor):
            expr = self._column(table, column)
            stmt = stmt.order_by(expr.desc() if direction == 'DESC' else expr.asc())

        rows: list[dict[str, Any]] = []
        try:
            with self.engine.connect() as conn:
                result = conn.execution_options(stream_results=True).execute(stmt).mappings()
                while True:
                    batch = result.fetchmany(self.batch_size)
                    if not batch:
                        break
                    rows.extend(dict(r) for r in batch)
        except SQLAlchemyError as exc:
            raise ReadError(f'reading {descriptor.reference} failed: {exc}', table=descriptor.physical_table) from exc
        logger.debug('[source:%s] fetched %d rows', descriptor.reference, len(rows))
        return rows

    def _column(self, table: Table, name: str):
        if name in table.c:
            return table.c[name]
        lowered = {c.name.lower(): c for c in table.c}
        column = lowered.get(name.lower())
        if column is None:
            raise ReadError(f'unknown column {name!r} in source table {table.name!r}', table=table.name)
        return column

    def _columns(self, table: Table, descriptor: SourceDescriptor) -> list:
        fields = _select_fields(descriptor)
        if not fields:
            return list(table.c)
        return [self._column(table, column).label(alias) for column, alias in fields]

    def _condition(self, table: Table, name: str, op: str, value: Any):
        column = self._column(table, name)
        if op == 'eq':
            return column.is_(None) if value is None else column == value
        if op == 'ne':
            return column.is_not(None) if value is None else column != value
        if op == 'lt':
            return column < value
        if op in ('lte', 'le'):
            return column <= value
        if op == 'gt':
            return column > value
        if op in ('gte', 'ge'):
            return column >= value
        if op == 'like':
            return column.like(value)
        if op == 'not_like':
            return column.not_like(value)
        if op == 'in':
            return column.in_(list(value)) if value else false()
        if op == 'not_in':
            return column.not_in(list(value)) if value else true()
        if op == 'between':
            low, high = _between_bounds(name, value)
            return column.between(low, high)
        if op == 'not_null':
            return column.is_not(None)
        if op == 'is_null':
            return column.is_(None)
        raise ReadError(f'unknown filter operator {op!r} for column {name!r}', table=table.name)


class MySqlSourceReader:
    """Streams source rows from MySQL with mysql.connector, fetchmany() batch by batch."""

    def __init__(self, config: dict[str, Any] | None = None, batch_size: int | None = None,
                 connect: Callable[..., Any] | None = None) -> None:
        self.config = config if config is not None else {
            'host': settings.mysql_host,
            'port': settings.mysql_port,
            'user': settings.mysql_user,
            'password': settings.mysql_password,
            'database': settings.mysql_database,
            'connection_timeout': 20,
            'consume_results': True,
        }
        self.batch_size = max(100, int(batch_size or settings.sync_fetch_batch_size or 5000))
        self._connect = connect or mysql.connector.connect

    def build_query(self, descriptor: SourceDescriptor) -> tuple[str, tuple]:
        fields = _select_fields(descriptor)
        if fields:
            select_list = ', '.join(
                _quote(column) if column == alias else f'{_quote(column)} AS {_quote(alias)}'
                for column, alias in fields
            )
        else:
            select_list = '*'
        sql = f'SELECT {select_list} FROM {_quote(descriptor.physical_table)}'
        params: list[Any] = []
        where = [self._condition(column, op, value, params) for column, op, value in _filter_rules(descriptor)]
        if where:
            sql += ' WHERE ' + ' AND '.join(where)
        order = [f'{_quote(column)} {direction}'.strip() for column, direction in _order_terms(descriptor)]
        if order:
            sql += ' ORDER BY ' + ', '.join(order)
        return sql, tuple(params)

    def fetch(self, descriptor: SourceDescriptor) -> list[dict[str, Any]]:
        sql, params = self.build_query(descriptor)
        rows: list[dict[str, Any]] = []
        try:
            conn = self._connect(**self.config)
        except mysql.connector.Error as exc:
            raise ReadError(f'cannot connect to MySQL source: {exc}', table=descriptor.physical_table) from exc
        try:
            cursor = conn.cursor(dictionary=True)
            try:
                cursor.execute(sql, params)
                while True:
                    batch = cursor.fetchmany(self.batch_size)
                    if not batch:
                        break
                    rows.extend(dict(r) for r in batch)
            finally:
                cursor.close()
        except mysql.connector.Error as exc:
            raise ReadError(f'reading {descriptor.reference} failed: {exc}', table=descriptor.physical_table) from exc
        finally:
            conn.close()
        logger.debug('[source:%s] fetched %d rows from MySQL', descriptor.reference, len(rows))
        return rows

    @staticmethod
    def _condition(column: str, op: str, value: Any, params: list[Any]) -> str:
        quoted = _quote(column)
        comparisons = {'eq': '=', 'ne': '<>', 'lt': '<', 'lte': '<=', 'le': '<=', 'gt': '>', 'gte': '>=', 'ge': '>='}
        if op in comparisons:
            if value is None and op in ('eq', 'ne'):
                return f'{quoted} IS NULL' if op == 'eq' else f'{quoted} IS NOT NULL'
            params.append(value)
            return f'{quoted} {comparisons[op]} %s'
        if op in ('like', 'not_like'):
            params.append(value)
            return f'{quoted} {"LIKE" if op == "like" else "NOT LIKE"} %s'
        if op in ('in', 'not_in'):
            if not value:
                return '1 = 0' if op == 'in' else '1 = 1'
            params.extend(value)
            placeholders = ', '.join(['%s'] * len(value))
            return f'{quoted} {"IN" if op == "in" else "NOT IN"} ({placeholders})'
        if op == 'between':
            low, high = _between_bounds(column, value)
            params.extend([low, high])
            return f'{quoted} BETWEEN %s AND %s'
        if op == 'not_null':
            return f'{quoted} IS NOT NULL'
        if op == 'is_null':
            return f'{quoted} IS NULL'
        raise ReadError(f'unknown filter operator {op!r} for column {column!r}', table=column)


def _quote(identifier: str) -> str:
    return '.'.join('`' + part.strip().replace('`', '``') + '`' for part in identifier.split('.'))


def build_source_reader(driver: str | None = None) -> SourceReader:
    name = str(driver or settings.source_driver or 'sqlalchemy').strip().lower()
    if name == 'mysql':
        return MySqlSourceReader()
    if name == 'sqlalchemy':
        return SqlAlchemySourceReader(build_engine(settings.source_database_url))
    raise ValueError(f'unsupported SOURCE_DRIVER: {driver!r}')
