"""
Generic async repository (Data Access Layer).

Implements the Repository pattern on top of SQLAlchemy's ``AsyncSession``.
A ``BaseRepository[T]`` is bound to one SQLModel table class and one
session that the caller owns; concrete repositories inherit from it and add
entity-specific queries.

Conventions:
- Write operations take ``save_change``.  When set, the session is
  committed and the method reports whether any row was written; otherwise
  the change stays pending in the session's unit of work and the method
  returns ``True``.
- Query builders (``where``, ``get_list``) return lazy ``Select``
  statements.  Nothing runs until the statement is passed to ``fetch``.
- ``update``/``delete`` only accept instances tracked by this session.
  Use ``update_by_key``/``delete_by_key`` when all you hold is a key.
- Store errors are NOT translated.  ``IntegrityError``, ``NoResultFound``
  and friends reach the caller as SQLAlchemy raised them.  The only
  exception is ``OperationalError`` during commit, which rolls the session
  back before re-raising so it is not left in a failed state.
"""

import logging
import time
from typing import (
    Any,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
)

from sqlalchemy import ColumnElement, Select, func, inspect, select, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapper
from sqlalchemy.orm.attributes import flag_modified
from sqlmodel import SQLModel

from repokit.core.exceptions import DetachedEntityError, InvalidArgumentError
from repokit.core.resilience import db_circuit_breaker
from repokit.db.tracking import pop_flushed_rows
from repokit.schemas.pagination import Page, Pagination

logger = logging.getLogger(__name__)

ModelType = TypeVar("ModelType", bound=SQLModel)


def bind_positional(params: Tuple[Any, ...]) -> Dict[str, Any]:
    """Map positional parameters onto the ``:p0``, ``:p1`` ... placeholders."""
    return {f"p{index}": value for index, value in enumerate(params)}


class BaseRepository(Generic[ModelType]):
    """
    Generic CRUD repository for SQLModel entities.

    Parameters
    ----------
    model : Type[ModelType]
        The SQLModel table class this repository manages.
    db : AsyncSession
        The session (unit of work) to operate on.  The repository neither
        opens nor closes it.

    Every awaited round-trip is routed through the global
    ``db_circuit_breaker`` so a dead database fails fast instead of piling
    up waiting connections.
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    # ── Internal helpers ──

    async def _execute_with_circuit_breaker(
        self, func: Any, *args: Any, **kwargs: Any
    ) -> Any:
        return await db_circuit_breaker.call(func, *args, **kwargs)

    def _log_extra(self, operation: str, **fields: Any) -> Dict[str, Any]:
        return {"model": self.model.__name__, "operation": operation, **fields}

    def _require_tracked(self, entity: ModelType) -> None:
        if entity not in self.db:
            raise DetachedEntityError(entity)

    def _primary_key_columns(self) -> List[Any]:
        return list(self.model.__table__.primary_key.columns)

    def _mark_modified(self, entity: ModelType) -> None:
        # Flag every loaded non-key column so the flush always issues an UPDATE.
        state = inspect(entity)
        if not state.persistent:
            return
        key_names = set(self.get_keys_properties(type(entity)))
        for attr in state.mapper.column_attrs:
            if attr.key not in key_names and attr.key in state.dict:
                flag_modified(entity, attr.key)

    async def _stage_delete(self, entity: ModelType) -> None:
        await self._execute_with_circuit_breaker(self.db.delete, entity)

    async def _commit_or_defer(self, save_change: bool) -> bool:
        if save_change:
            return await self.save_change() > 0
        return True

    # ── Unit of work ──

    async def save_change(self) -> int:
        """
        Commit every pending change in the session.

        Returns the number of objects written since the last commit
        (inserts, deletes and updates), including anything autoflush already
        sent.  A row written by several flushes counts once.

        **OperationalError** (connection loss, deadlock) rolls the session
        back and is re-raised.  Everything else propagates untouched.
        """

        async def _save_change() -> int:
            start = time.perf_counter()
            try:
                await self.db.flush()
                affected = pop_flushed_rows(self.db.info)
                await self.db.commit()
            except OperationalError:
                await self.db.rollback()
                logger.error(
                    "OperationalError during commit for %s",
                    self.model.__name__,
                    extra=self._log_extra("save_change"),
                )
                raise
            logger.debug(
                "Committed %d change(s)",
                affected,
                extra=self._log_extra(
                    "save_change",
                    affected=affected,
                    elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
                ),
            )
            return affected

        return await self._execute_with_circuit_breaker(_save_change)

    # ── Queries ──

    async def get_by_key(self, *key: Any) -> Optional[ModelType]:
        """
        Fetch a single entity by primary key.  Returns ``None`` if not found.

        Composite keys are passed part by part, in primary-key column order::

            await lines.get_by_key(order_id, line_no)
        """
        if not key or any(part is None for part in key):
            raise InvalidArgumentError("key", "A primary key value is required")
        ident = key[0] if len(key) == 1 else tuple(key)

        async def _get() -> Optional[ModelType]:
            return await self.db.get(self.model, ident)

        return await self._execute_with_circuit_breaker(_get)

    async def get_by_keys(self, entity: ModelType) -> Optional[ModelType]:
        """Look an entity up by the key values carried on ``entity``.  Unsupported."""
        raise NotImplementedError(
            f"{type(self).__name__}.get_by_keys is not supported; use get_by_key(*key)"
        )

    async def get_entity(self, *criteria: ColumnElement[bool]) -> ModelType:
        """
        Return the one entity matching ``criteria``.

        Raises ``NoResultFound`` when nothing matches and
        ``MultipleResultsFound`` when more than one row does.
        """

        async def _get_entity() -> ModelType:
            result = await self.db.execute(self.where(*criteria))
            return result.scalar_one()

        return await self._execute_with_circuit_breaker(_get_entity)

    def where(self, *criteria: ColumnElement[bool]) -> Select:
        """Return a lazy ``SELECT`` of this entity restricted by ``criteria``."""
        stmt = select(self.model)
        if criteria:
            stmt = stmt.where(*criteria)
        return stmt

    def get_list(self) -> Select:
        """Return a lazy, unfiltered ``SELECT`` over the whole table."""
        return select(self.model)

    async def fetch(self, query: Select) -> List[ModelType]:
        """Execute a statement built by :meth:`where` / :meth:`get_list`."""

        async def _fetch() -> List[ModelType]:
            result = await self.db.execute(query)
            return list(result.scalars().all())

        return await self._execute_with_circuit_breaker(_fetch)

    async def get_total(self, *criteria: ColumnElement[bool]) -> int:
        """Return the number of rows, restricted by ``criteria`` when given."""

        async def _count() -> int:
            stmt = select(func.count()).select_from(self.model)
            if criteria:
                stmt = stmt.where(*criteria)
            result = await self.db.execute(stmt)
            return result.scalar_one()

        return await self._execute_with_circuit_breaker(_count)

    async def exists(self, *criteria: ColumnElement[bool]) -> bool:
        """``True`` when at least one row matches ``criteria``."""

        async def _exists() -> bool:
            result = await self.db.execute(select(self.where(*criteria).exists()))
            return bool(result.scalar())

        return await self._execute_with_circuit_breaker(_exists)

    async def get_paged_list(
        self,
        pagination: Pagination,
        *criteria: ColumnElement[bool],
        order_by: Any = None,
        ascending: bool = True,
    ) -> Page[ModelType]:
        """
        Return one page of entities matching ``criteria``.

        The match count is taken first and returned as ``Page.total``.  Rows
        are sorted by ``order_by`` (a mapped attribute or column), then by the
        primary key, so consecutive pages never overlap.
        """
        if pagination is None:
            raise InvalidArgumentError("pagination")

        total = await self.get_total(*criteria)

        order_columns = self._primary_key_columns()
        if order_by is not None:
            order_columns = [order_by, *order_columns]
        ordering = [col.asc() if ascending else col.desc() for col in order_columns]
        stmt = (
            self.where(*criteria)
            .order_by(*ordering)
            .offset(pagination.offset)
            .limit(pagination.rows)
        )
        items = await self.fetch(stmt)
        return Page(items=items, total=total, page=pagination.page, rows=pagination.rows)

    # ── Commands ──

    async def add(self, entity: ModelType, save_change: bool = True) -> bool:
        """Stage ``entity`` for insert; commit when ``save_change`` is set."""
        if entity is None:
            raise InvalidArgumentError("entity")
        self.db.add(entity)
        return await self._commit_or_defer(save_change)

    async def update(self, entity: ModelType, save_change: bool = True) -> bool:
        """
        Persist the current state of a tracked entity.

        ``entity`` must have been loaded through this session; mutate its
        attributes, then call this.  The row is written even when no column
        changed.  A detached instance raises :class:`DetachedEntityError`.
        """
        if entity is None:
            raise InvalidArgumentError("entity")
        self._require_tracked(entity)
        self._mark_modified(entity)
        return await self._commit_or_defer(save_change)

    async def update_by_key(
        self,
        key: Any,
        changes: Mapping[str, Any],
        save_change: bool = True,
    ) -> Optional[ModelType]:
        """
        Load the entity with primary key ``key`` and apply ``changes``.

        ``key`` is a single value, or a tuple for composite keys.  Returns the
        tracked entity, or ``None`` when no row has that key.  Unknown field
        names raise :class:`InvalidArgumentError` before anything is loaded.
        """
        if changes is None:
            raise InvalidArgumentError("changes")
        known = inspect(self.model).attrs.keys()
        unknown = sorted(set(changes) - set(known))
        if unknown:
            raise InvalidArgumentError(
                "changes",
                f"Unknown field(s) for {self.model.__name__}: {', '.join(unknown)}",
            )

        parts = key if isinstance(key, tuple) else (key,)
        entity = await self.get_by_key(*parts)
        if entity is None:
            return None
        for field, value in changes.items():
            setattr(entity, field, value)
        await self._commit_or_defer(save_change)
        return entity

    async def delete(self, entity: ModelType, save_change: bool = True) -> bool:
        """Stage a tracked entity for delete; commit when ``save_change`` is set."""
        if entity is None:
            raise InvalidArgumentError("entity")
        self._require_tracked(entity)
        await self._stage_delete(entity)
        return await self._commit_or_defer(save_change)

    async def delete_where(
        self, *criteria: ColumnElement[bool], save_change: bool = True
    ) -> bool:
        """
        Delete every entity matching ``criteria``.

        Matches are loaded first and each one is staged through the session,
        so ORM cascades apply.  At least one criterion is required; use
        ``delete_many(await repo.fetch(repo.get_list()))`` to empty a table.
        """
        if not criteria or any(c is None for c in criteria):
            raise InvalidArgumentError("criteria", "At least one criterion is required")

        items = await self.fetch(self.where(*criteria))
        for item in items:
            await self._stage_delete(item)
        logger.debug(
            "Staged %d row(s) for delete",
            len(items),
            extra=self._log_extra("delete_where", affected=len(items)),
        )
        return await self._commit_or_defer(save_change)

    async def delete_many(
        self, items: Iterable[ModelType], save_change: bool = True
    ) -> bool:
        """Stage every tracked entity in ``items`` for delete."""
        if items is None:
            raise InvalidArgumentError("items")
        items = list(items)
        for item in items:
            self._require_tracked(item)
        for item in items:
            await self._stage_delete(item)
        return await self._commit_or_defer(save_change)

    async def delete_by_key(self, *key: Any, save_change: bool = True) -> bool:
        """
        Delete an entity by primary key.

        Returns ``False`` if it did not exist.
        """
        entity = await self.get_by_key(*key)
        if entity is None:
            return False
        await self._stage_delete(entity)
        return await self._commit_or_defer(save_change)

    # ── Raw SQL ──

    async def sql_query(self, command_text: str, *params: Any) -> List[ModelType]:
        """
        Run a raw ``SELECT`` and map its rows onto ``ModelType``.

        Positional ``params`` bind to ``:p0``, ``:p1`` ... in order::

            await repo.sql_query("SELECT * FROM product WHERE price > :p0", 10)
        """
        stmt = select(self.model).from_statement(text(command_text))

        async def _sql_query() -> List[ModelType]:
            result = await self.db.execute(stmt, bind_positional(params))
            return list(result.scalars().all())

        return await self._execute_with_circuit_breaker(_sql_query)

    async def execute_sql_command(
        self, command_text: str, *params: Any, save_change: bool = False
    ) -> int:
        """
        Run a raw statement and return the affected row count.

        The statement joins the session's current transaction; pass
        ``save_change=True`` to commit straight away.
        """

        async def _execute() -> int:
            result = await self.db.execute(text(command_text), bind_positional(params))
            return result.rowcount

        affected = await self._execute_with_circuit_breaker(_execute)
        if save_change:
            await self.save_change()
        return affected

    # ── Key metadata ──

    def get_keys_properties(self, model: Optional[type] = None) -> List[str]:
        """
        Names of the primary-key attributes of ``model``, in key order.

        ``model`` defaults to this repository's entity.  An unmapped class
        has no keys and yields ``[]``.
        """
        mapper = inspect(model or self.model, raiseerr=False)
        if not isinstance(mapper, Mapper):
            return []
        return [mapper.get_property_by_column(column).key for column in mapper.primary_key]

    def get_key_property(self, model: Optional[type] = None) -> Optional[str]:
        """Name of the first primary-key attribute of ``model``, or ``None``."""
        keys = self.get_keys_properties(model)
        return keys[0] if keys else None
