"""
SQLAlchemy-backed operation sets for memory nodes.

Each class binds one ORM model to one memory node kind:
- SqlObjectOperations: a single row per scope (read/write)
- SqlArrayOperations: an ordered, index-addressed list of rows
- SqlMapOperations: rows addressed by a key derived from the row
- StoredKeyMapOperations: rows addressed by an explicit key column

Rows are exposed to memory with camelCase property names; bookkeeping
timestamps are stripped. Every query is scoped by a column whose value is
taken from the operation context, so the same index or key under another
parent never resolves outside that parent.
"""

import re
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import delete, func, inspect, select
from sqlalchemy.exc import SQLAlchemyError

from bridge.context import OperationContext
from bridge.errors import InvalidOperationError, NotFoundError, StoreError
from bridge.keys import MapKeyCodec
from bridge.schema import ListResult, Page

from .sqlite_client import _utc_now_naive

INTERNAL_COLUMNS = ("created_at", "updated_at")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _escape_like_pattern(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _plain(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class _SqlOperations:
    """Shared row <-> memory transforms and scoped sessions."""

    def __init__(
        self,
        client: Any,
        model: Any,
        *,
        name: str,
        scope_column: Optional[str] = None,
        scope_key: Optional[str] = None,
        child_context: Optional[Mapping[str, str]] = None,
        internal_columns: Sequence[str] = INTERNAL_COLUMNS,
    ):
        if (scope_column is None) != (scope_key is None):
            raise ValueError("scope_column and scope_key must be given together")
        self.client = client
        self.model = model
        self.name = name
        self.scope_column = scope_column
        self.scope_key = scope_key
        self.child_context = dict(child_context or {})
        self.internal_columns = tuple(internal_columns)
        self._attributes = [attr.key for attr in inspect(model).column_attrs]
        self._protected = {"id", *self.internal_columns}
        if scope_column:
            self._protected.add(scope_column)

    # ------------------------------------------------------------------

    def to_memory(self, row: Any) -> Dict[str, Any]:
        return {
            to_camel(attr): _plain(getattr(row, attr))
            for attr in self._attributes
            if attr not in self.internal_columns
        }

    def to_columns(self, value: Mapping[str, Any]) -> Dict[str, Any]:
        """Writable columns from a memory value; unknown properties are ignored."""
        columns: Dict[str, Any] = {}
        for name, item in value.items():
            attr = to_snake(name)
            if attr in self._attributes and attr not in self._protected:
                columns[attr] = item
        return columns

    def extract_child_context(self, value: Any, key: Any = None) -> Dict[str, Any]:
        if not isinstance(value, Mapping):
            return {}
        return {
            ctx_key: value.get(field)
            for ctx_key, field in self.child_context.items()
            if value.get(field) is not None
        }

    def _scope(self, ctx: OperationContext) -> List[Any]:
        if not self.scope_column:
            return []
        return [getattr(self.model, self.scope_column) == ctx.require(self.scope_key)]

    def _scope_values(self, ctx: OperationContext) -> Dict[str, Any]:
        if not self.scope_column:
            return {}
        return {self.scope_column: ctx.require(self.scope_key)}

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.client.session() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreError(f"{self.name}: {exc}") from exc

    def _apply(self, row: Any, columns: Mapping[str, Any]) -> None:
        for attr, item in columns.items():
            setattr(row, attr, item)
        if "updated_at" in self._attributes:
            row.updated_at = _utc_now_naive()


# =============================================================================
# Object
# =============================================================================


class SqlObjectOperations(_SqlOperations):
    """One row per scope. `order_by` picks the row when several match."""

    def __init__(self, client: Any, model: Any, *, order_by: Sequence[Any] = (), **kwargs: Any):
        super().__init__(client, model, **kwargs)
        self.order_by = tuple(order_by) or (model.created_at.desc(),)

    async def _current(self, session: Any, ctx: OperationContext) -> Optional[Any]:
        stmt = select(self.model).where(*self._scope(ctx)).order_by(*self.order_by).limit(1)
        result = await session.execute(stmt)
        return result.scalars().first()

    async def read(self, ctx: OperationContext) -> Optional[Dict[str, Any]]:
        async with self._session() as session:
            row = await self._current(session, ctx)
            return self.to_memory(row) if row is not None else None

    async def write(self, ctx: OperationContext, value: Dict[str, Any]) -> None:
        columns = self.to_columns(value)
        async with self._session() as session:
            row = await self._current(session, ctx)
            if row is None:
                row = self.model(id=str(uuid.uuid4()), **self._scope_values(ctx))
                session.add(row)
            self._apply(row, columns)


# =============================================================================
# Array
# =============================================================================


class SqlArrayOperations(_SqlOperations):
    """
    Rows ordered by an explicit order column with creation time and id as
    tiebreak, so index-addressed calls stay stable between a list and a
    follow-up mutation when nothing interleaves.
    """

    def __init__(self, client: Any, model: Any, *, order_column: str = "sort_order", **kwargs: Any):
        super().__init__(client, model, **kwargs)
        self.order_column = order_column
        self._protected.add(order_column)

    def _ordering(self) -> Tuple[Any, ...]:
        return (
            getattr(self.model, self.order_column).asc(),
            self.model.created_at.asc(),
            self.model.id.asc(),
        )

    def _ordered(self, ctx: OperationContext) -> Any:
        return select(self.model).where(*self._scope(ctx)).order_by(*self._ordering())

    async def _count(self, session: Any, ctx: OperationContext) -> int:
        stmt = select(func.count()).select_from(self.model).where(*self._scope(ctx))
        return int((await session.execute(stmt)).scalar_one())

    async def _row_at(self, session: Any, ctx: OperationContext, index: int) -> Any:
        if index < 0:
            raise NotFoundError(self.name, index)
        result = await session.execute(self._ordered(ctx).offset(index).limit(1))
        row = result.scalars().first()
        if row is None:
            raise NotFoundError(self.name, index)
        return row

    async def _next_order(self, session: Any, ctx: OperationContext) -> int:
        column = getattr(self.model, self.order_column)
        stmt = select(func.coalesce(func.max(column), -1)).where(*self._scope(ctx))
        return int((await session.execute(stmt)).scalar_one()) + 1

    async def list(self, ctx: OperationContext, page: Page) -> ListResult:
        async with self._session() as session:
            result = await session.execute(
                self._ordered(ctx).offset(page.offset).limit(page.limit)
            )
            items = [self.to_memory(row) for row in result.scalars().all()]
            total = await self._count(session, ctx)
        return ListResult(items=items, total=total)

    async def get(self, ctx: OperationContext, index: int) -> Optional[Dict[str, Any]]:
        async with self._session() as session:
            result = await session.execute(self._ordered(ctx).offset(index).limit(1))
            row = result.scalars().first()
            return self.to_memory(row) if row is not None else None

    async def add(
        self,
        ctx: OperationContext,
        value: Any,
        *,
        index: Optional[int] = None,
        key: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not isinstance(value, Mapping):
            raise InvalidOperationError(f"Items of '{self.name}' must be objects")
        columns = self.to_columns(value)
        async with self._session() as session:
            row = self.model(id=str(uuid.uuid4()), **self._scope_values(ctx))
            self._apply(row, columns)
            if index is None:
                setattr(row, self.order_column, await self._next_order(session, ctx))
                session.add(row)
            else:
                # Renumber the whole scope so the new row lands exactly at `index`.
                existing = list((await session.execute(self._ordered(ctx))).scalars().all())
                existing.insert(min(index, len(existing)), row)
                session.add(row)
                for position, item in enumerate(existing):
                    if getattr(item, self.order_column) != position:
                        setattr(item, self.order_column, position)
            await session.flush()
            return self.to_memory(row)

    async def update(
        self, ctx: OperationContext, index: int, partial: Dict[str, Any]
    ) -> Dict[str, Any]:
        columns = self.to_columns(partial)
        async with self._session() as session:
            row = await self._row_at(session, ctx, index)
            self._apply(row, columns)
            await session.flush()
            return self.to_memory(row)

    async def delete(self, ctx: OperationContext, index: int) -> None:
        async with self._session() as session:
            row = await self._row_at(session, ctx, index)
            await session.delete(row)

    async def clear(self, ctx: OperationContext) -> None:
        async with self._session() as session:
            await session.execute(delete(self.model).where(*self._scope(ctx)))


# =============================================================================
# Map
# =============================================================================


class SqlMapOperations(_SqlOperations):
    """
    Map whose keys are derived from row fields by a MapKeyCodec. A key is
    resolved by its id prefix inside the current scope; an exact derived-key
    match wins if several rows share the prefix.
    """

    def __init__(
        self,
        client: Any,
        model: Any,
        *,
        codec: MapKeyCodec,
        order_column: str = "sort_order",
        **kwargs: Any,
    ):
        super().__init__(client, model, **kwargs)
        self.codec = codec
        self.order_column = order_column
        self._protected.add(order_column)

    def get_db_key(self, value: Mapping[str, Any]) -> str:
        return self.codec.derive(value)

    def _ordering(self) -> Tuple[Any, ...]:
        return (
            getattr(self.model, self.order_column).asc(),
            self.model.created_at.asc(),
            self.model.id.asc(),
        )

    async def _find(self, session: Any, ctx: OperationContext, key: str) -> Optional[Any]:
        prefix = self.codec.id_prefix(key)
        # A shorter prefix could match rows the caller never saw.
        if len(prefix) < self.codec.prefix_length:
            return None
        stmt = (
            select(self.model)
            .where(
                *self._scope(ctx),
                func.lower(self.model.id).like(_escape_like_pattern(prefix) + "%", escape="\\"),
            )
            .order_by(*self._ordering())
        )
        candidates = list((await session.execute(stmt)).scalars().all())
        for row in candidates:
            if self.get_db_key(self.to_memory(row)) == key:
                return row
        return candidates[0] if candidates else None

    async def _require(self, session: Any, ctx: OperationContext, key: str) -> Any:
        row = await self._find(session, ctx, key)
        if row is None:
            raise NotFoundError(self.name, key)
        return row

    async def _next_order(self, session: Any, ctx: OperationContext) -> int:
        column = getattr(self.model, self.order_column)
        stmt = select(func.coalesce(func.max(column), -1)).where(*self._scope(ctx))
        return int((await session.execute(stmt)).scalar_one()) + 1

    async def list(self, ctx: OperationContext, page: Page) -> ListResult:
        async with self._session() as session:
            stmt = (
                select(self.model)
                .where(*self._scope(ctx))
                .order_by(*self._ordering())
                .offset(page.offset)
                .limit(page.limit)
            )
            items = [self.to_memory(row) for row in (await session.execute(stmt)).scalars().all()]
            count_stmt = select(func.count()).select_from(self.model).where(*self._scope(ctx))
            total = int((await session.execute(count_stmt)).scalar_one())
        return ListResult(items=items, total=total, keys=[self.get_db_key(item) for item in items])

    async def get(self, ctx: OperationContext, key: str) -> Optional[Dict[str, Any]]:
        async with self._session() as session:
            row = await self._find(session, ctx, key)
            return self.to_memory(row) if row is not None else None

    async def add(
        self,
        ctx: OperationContext,
        value: Any,
        *,
        index: Optional[int] = None,
        key: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not isinstance(value, Mapping):
            raise InvalidOperationError(f"Entries of '{self.name}' must be objects")
        async with self._session() as session:
            row = self.model(id=str(uuid.uuid4()), **self._scope_values(ctx))
            self._apply(row, self._columns_for_new(value, key))
            setattr(row, self.order_column, await self._next_order(session, ctx))
            session.add(row)
            await session.flush()
            return self.to_memory(row)

    def _columns_for_new(self, value: Mapping[str, Any], key: Optional[str]) -> Dict[str, Any]:
        return self.to_columns(value)

    async def upsert(self, ctx: OperationContext, value: Any, key: str) -> Dict[str, Any]:
        if not isinstance(value, Mapping):
            raise InvalidOperationError(f"Entries of '{self.name}' must be objects")
        async with self._session() as session:
            row = await self._find(session, ctx, key)
            if row is not None:
                self._apply(row, self.to_columns(value))
                await session.flush()
                return self.to_memory(row)
        return await self.add(ctx, value, key=key)

    async def update(
        self, ctx: OperationContext, key: str, partial: Dict[str, Any]
    ) -> Dict[str, Any]:
        async with self._session() as session:
            row = await self._require(session, ctx, key)
            self._apply(row, self.to_columns(partial))
            await session.flush()
            return self.to_memory(row)

    async def delete(self, ctx: OperationContext, key: str) -> None:
        async with self._session() as session:
            row = await self._require(session, ctx, key)
            await session.delete(row)

    async def clear(self, ctx: OperationContext) -> None:
        async with self._session() as session:
            await session.execute(delete(self.model).where(*self._scope(ctx)))


class StoredKeyMapOperations(SqlMapOperations):
    """Map whose key is an explicit column; supports rename."""

    def __init__(self, client: Any, model: Any, *, key_column: str = "key", **kwargs: Any):
        kwargs.setdefault("codec", MapKeyCodec(label_field=to_camel(key_column)))
        super().__init__(client, model, **kwargs)
        self.key_column = key_column

    def get_db_key(self, value: Mapping[str, Any]) -> str:
        return str(value.get(to_camel(self.key_column)))

    async def _find(self, session: Any, ctx: OperationContext, key: str) -> Optional[Any]:
        stmt = select(self.model).where(
            *self._scope(ctx), getattr(self.model, self.key_column) == key
        )
        return (await session.execute(stmt)).scalars().first()

    def _columns_for_new(self, value: Mapping[str, Any], key: Optional[str]) -> Dict[str, Any]:
        columns = self.to_columns(value)
        resolved = key or columns.get(self.key_column)
        if not resolved:
            raise InvalidOperationError(f"'{self.name}' entries need a key")
        columns[self.key_column] = resolved
        return columns

    async def add(
        self,
        ctx: OperationContext,
        value: Any,
        *,
        index: Optional[int] = None,
        key: Optional[str] = None,
    ) -> Dict[str, Any]:
        if isinstance(value, Mapping):
            candidate = key or value.get(to_camel(self.key_column))
            if candidate:
                async with self._session() as session:
                    if await self._find(session, ctx, str(candidate)) is not None:
                        raise InvalidOperationError(
                            f"Key '{candidate}' already exists in '{self.name}'"
                        )
        return await super().add(ctx, value, index=index, key=key)

    async def rename(self, ctx: OperationContext, old_key: str, new_key: str) -> None:
        async with self._session() as session:
            row = await self._require(session, ctx, old_key)
            if old_key == new_key:
                return
            if await self._find(session, ctx, new_key) is not None:
                raise InvalidOperationError(f"Key '{new_key}' already exists in '{self.name}'")
            self._apply(row, {self.key_column: new_key})
