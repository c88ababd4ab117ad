from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping, Sequence

from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from clinic_recon.models import Base
from clinic_recon.services.reconcile.errors import NetworkError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000
DEFAULT_BATCH_SIZE = 500


@dataclass(frozen=True)
class Range:
    gte: Any = None
    gt: Any = None
    lte: Any = None
    lt: Any = None


Filters = Mapping[str, Any]


def _batched(rows: Sequence[dict[str, Any]], size: int) -> Iterator[Sequence[dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


def _conflict_columns(conflict_key: str | Sequence[str]) -> list[str]:
    if isinstance(conflict_key, str):
        return [part.strip() for part in conflict_key.split(",") if part.strip()]
    return list(conflict_key)


class StoreClient:
    """Relational store access with paging around the per-request row cap.

    All reads go through ``iter_pages`` so no call site hand-rolls an
    offset loop; a page shorter than ``page_size`` ends the scan.
    """

    def __init__(
        self,
        session: Session,
        page_size: int = DEFAULT_PAGE_SIZE,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if page_size <= 0 or batch_size <= 0:
            raise ValueError("page_size and batch_size must be positive")
        self.session = session
        self.page_size = page_size
        self.batch_size = batch_size

    # -- schema ---------------------------------------------------------------

    def table(self, name: str) -> Table:
        try:
            return Base.metadata.tables[name]
        except KeyError as exc:
            raise ValueError(f"Unknown store table: {name}") from exc

    def _conditions(self, table: Table, filters: Filters | None) -> list[Any]:
        conditions: list[Any] = []
        for column_name, value in (filters or {}).items():
            column = table.c[column_name]
            if value is None:
                conditions.append(column.is_(None))
            elif isinstance(value, Range):
                if value.gte is not None:
                    conditions.append(column >= value.gte)
                if value.gt is not None:
                    conditions.append(column > value.gt)
                if value.lte is not None:
                    conditions.append(column <= value.lte)
                if value.lt is not None:
                    conditions.append(column < value.lt)
            elif isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(column.in_(list(value)))
            else:
                conditions.append(column == value)
        return conditions

    def _ordering(self, table: Table, order_by: Iterable[str] | None) -> list[Any]:
        if not order_by:
            return list(table.primary_key.columns)
        ordering: list[Any] = []
        for name in order_by:
            if name.startswith("-"):
                ordering.append(table.c[name[1:]].desc())
            else:
                ordering.append(table.c[name].asc())
        # Primary key last so offsets stay stable when the sort key repeats.
        ordering.extend(table.primary_key.columns)
        return ordering

    def _execute(self, stmt):
        try:
            return self.session.execute(stmt)
        except (OperationalError, InterfaceError) as exc:
            raise NetworkError(f"Store unreachable: {exc.orig or exc}") from exc

    # -- reads ----------------------------------------------------------------

    def iter_pages(
        self,
        table_name: str,
        filters: Filters | None = None,
        order_by: Iterable[str] | None = None,
        page_size: int | None = None,
    ) -> Iterator[list[dict[str, Any]]]:
        table = self.table(table_name)
        size = page_size or self.page_size
        conditions = self._conditions(table, filters)
        ordering = self._ordering(table, order_by)
        offset = 0
        while True:
            stmt = select(table).where(*conditions).order_by(*ordering).offset(offset).limit(size)
            rows = [dict(row._mapping) for row in self._execute(stmt)]
            if rows:
                yield rows
            if len(rows) < size:
                return
            offset += size

    def fetch_all(
        self,
        table_name: str,
        filters: Filters | None = None,
        order_by: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        pages = 0
        for page in self.iter_pages(table_name, filters, order_by):
            rows.extend(page)
            pages += 1
        logger.debug("Fetched %d rows from %s in %d pages", len(rows), table_name, pages)
        return rows

    def select_one(self, table_name: str, filters: Filters) -> dict[str, Any] | None:
        table = self.table(table_name)
        stmt = select(table).where(*self._conditions(table, filters)).limit(2)
        rows = [dict(row._mapping) for row in self._execute(stmt)]
        if len(rows) > 1:
            raise LookupError(f"Expected one row in {table_name} for {dict(filters)}, got several")
        return rows[0] if rows else None

    def count(self, table_name: str, filters: Filters | None = None) -> int:
        table = self.table(table_name)
        stmt = select(func.count()).select_from(table).where(*self._conditions(table, filters))
        return int(self._execute(stmt).scalar() or 0)

    # -- writes ---------------------------------------------------------------

    def insert(self, table_name: str, rows: Sequence[dict[str, Any]]) -> int:
        table = self.table(table_name)
        written = 0
        for batch in _batched(list(rows), self.batch_size):
            self._execute(insert(table).values(list(batch)))
            written += len(batch)
        return written

    def update(self, table_name: str, values: dict[str, Any], filters: Filters) -> int:
        if not filters:
            raise ValueError(f"Refusing unfiltered update on {table_name}")
        table = self.table(table_name)
        stmt = update(table).where(*self._conditions(table, filters)).values(**values)
        return int(self._execute(stmt).rowcount or 0)

    def upsert(
        self,
        table_name: str,
        rows: Sequence[dict[str, Any]],
        conflict_key: str | Sequence[str],
    ) -> int:
        rows = list(rows)
        if not rows:
            return 0
        keys = set(rows[0])
        if any(set(row) != keys for row in rows):
            raise ValueError(f"Upsert rows for {table_name} must share the same columns")
        table = self.table(table_name)
        conflict_columns = _conflict_columns(conflict_key)
        dialect_insert = self._dialect_insert()
        written = 0
        for batch in _batched(rows, self.batch_size):
            stmt = dialect_insert(table).values(list(batch))
            update_columns = {
                name: stmt.excluded[name]
                for name in keys
                if name not in conflict_columns and not table.c[name].primary_key
            }
            if update_columns:
                stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=update_columns)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
            self._execute(stmt)
            written += len(batch)
        return written

    def delete(self, table_name: str, filters: Filters) -> int:
        if not filters:
            raise ValueError(f"Refusing unfiltered delete on {table_name}")
        table = self.table(table_name)
        stmt = delete(table).where(*self._conditions(table, filters))
        return int(self._execute(stmt).rowcount or 0)

    def _dialect_insert(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as pg_insert

            return pg_insert
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as sqlite_insert

            return sqlite_insert
        raise NotImplementedError(f"Upsert is not supported for dialect {dialect}")

    # -- transactions ---------------------------------------------------------

    def commit(self) -> None:
        try:
            self.session.commit()
        except (OperationalError, InterfaceError) as exc:
            raise NetworkError(f"Store unreachable during commit: {exc.orig or exc}") from exc

    def rollback(self) -> None:
        self.session.rollback()
