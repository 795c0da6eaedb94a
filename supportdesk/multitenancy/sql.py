"""
SQLAlchemy backends for the kernel.

- ``SqlRepository``: the gateway's ``Repository`` over SQLAlchemy Core
  tables. Document filters are compiled to column expressions; dotted
  paths and ``$push`` are not supported on relational columns.
- ``SqlTenantStore``: ``TenantStore`` over ``TenantRecord``.
- ``SqlUserDirectory``: ``UserDirectory`` over the ``users`` table.
- ``sql_kernel``: a ``TenantKernel`` wired to all three.

Connection-level failures surface as ``TransientStoreError`` so the
registry can retry once.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping, Sequence
import logging
import uuid

from sqlalchemy import Table, and_, delete, func, or_, select, true, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from supportdesk.db import Base, async_session
from supportdesk.models import TenantRecord, User

from .errors import TransientStoreError
from .identity import UserRecord
from .kernel import TenantKernel
from .repository import DuplicateKeyError, QueryError, SortSpec, normalize_update, run_pipeline, sort_items
from .tenant import Tenant

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _transient(what: str) -> AsyncIterator[None]:
    try:
        yield
    except OperationalError as e:
        logger.warning(f"Database unavailable during {what}: {e.orig}")
        raise TransientStoreError(str(e)) from e


# ---------------------------------------------------------------------------
# Filter compilation
# ---------------------------------------------------------------------------


def _column(table: Table, name: str):
    if "." in name:
        raise QueryError(f"Nested paths are not supported on {table.name}: {name}")
    try:
        return table.c[name]
    except KeyError:
        raise QueryError(f"Unknown field {name!r} on {table.name}") from None


def _condition(column: Any, condition: Any) -> ColumnElement:
    if not (isinstance(condition, Mapping) and condition and all(k.startswith("$") for k in condition)):
        return column.is_(None) if condition is None else column == condition
    clauses = []
    for op, expected in condition.items():
        if op == "$eq":
            clauses.append(column.is_(None) if expected is None else column == expected)
        elif op == "$ne":
            clauses.append(
                column.is_not(None) if expected is None
                else or_(column != expected, column.is_(None))
            )
        elif op == "$in":
            clauses.append(column.in_(list(expected)))
        elif op == "$nin":
            clauses.append(or_(column.not_in(list(expected)), column.is_(None)))
        elif op == "$gt":
            clauses.append(column > expected)
        elif op == "$gte":
            clauses.append(column >= expected)
        elif op == "$lt":
            clauses.append(column < expected)
        elif op == "$lte":
            clauses.append(column <= expected)
        elif op == "$exists":
            clauses.append(column.is_not(None) if expected else column.is_(None))
        else:
            raise QueryError(f"Unsupported filter operator: {op}")
    return and_(*clauses)


def compile_filter(table: Table, filter: Mapping[str, Any] | None) -> ColumnElement:
    """Compile a document filter into a SQL boolean expression."""
    if not filter:
        return true()
    clauses = []
    for key, condition in filter.items():
        if key == "$and":
            clauses.append(and_(*(compile_filter(table, sub) for sub in condition)))
        elif key == "$or":
            clauses.append(or_(*(compile_filter(table, sub) for sub in condition)))
        elif key.startswith("$"):
            raise QueryError(f"Unsupported top-level operator: {key}")
        else:
            clauses.append(_condition(_column(table, key), condition))
    return and_(*clauses)


def compile_update(table: Table, update: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for op, fields in normalize_update(update).items():
        for name, value in fields.items():
            column = _column(table, name)
            if op == "$set":
                values[name] = value
            elif op == "$unset":
                values[name] = None
            elif op == "$inc":
                values[name] = func.coalesce(column, 0) + value
            else:
                raise QueryError(f"{op} is not supported on relational columns")
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


def _update_stmt(table: Table, where: ColumnElement, values: dict[str, Any]):
    return update(table).where(where).values(**values)


class SqlRepository:
    """``Repository`` over SQLAlchemy tables, one entity per table.

    Attributes:
        session_factory: ``async_sessionmaker`` bound to the database.
        tables: Entity name to table (defaults to every table on ``Base``).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tables: Mapping[str, Table] | None = None,
    ):
        self.session_factory = session_factory
        self.tables = dict(tables) if tables is not None else dict(Base.metadata.tables)

    def _table(self, entity: str) -> Table:
        try:
            return self.tables[entity]
        except KeyError:
            raise QueryError(f"No table for entity {entity!r}") from None

    async def insert(self, entity: str, record: dict[str, Any]) -> dict[str, Any]:
        table = self._table(entity)
        doc = dict(record)
        doc.setdefault("id", uuid.uuid4().hex)
        for name in doc:
            _column(table, name)
        async with _transient(f"insert into {entity}"), self.session_factory() as session:
            try:
                async with session.begin():
                    await session.execute(table.insert().values(**doc))
            except IntegrityError as e:
                raise DuplicateKeyError(entity, ()) from e
            row = (await session.execute(select(table).where(table.c.id == doc["id"]))).one()
        return dict(row._mapping)

    async def find(
        self,
        entity: str,
        filter: Mapping[str, Any],
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        table = self._table(entity)
        stmt = select(table).where(compile_filter(table, filter))
        for name, direction in sort_items(sort or ()):
            column = _column(table, name)
            stmt = stmt.order_by(column.desc() if direction < 0 else column.asc())
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with _transient(f"find on {entity}"), self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [dict(row._mapping) for row in rows]

    async def count(self, entity: str, filter: Mapping[str, Any]) -> int:
        table = self._table(entity)
        stmt = select(func.count()).select_from(table).where(compile_filter(table, filter))
        async with _transient(f"count on {entity}"), self.session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def update(
        self,
        entity: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        many: bool = False,
    ) -> int:
        table = self._table(entity)
        values = compile_update(table, update)
        if not values:
            return 0
        where = compile_filter(table, filter)
        async with _transient(f"update on {entity}"), self.session_factory() as session:
            try:
                async with session.begin():
                    if not many:
                        first = (await session.execute(select(table.c.id).where(where).limit(1))).scalar()
                        if first is None:
                            return 0
                        where = table.c.id == first
                    result = await session.execute(_update_stmt(table, where, values))
            except IntegrityError as e:
                raise DuplicateKeyError(entity, ()) from e
        return result.rowcount

    async def delete(
        self, entity: str, filter: Mapping[str, Any], *, many: bool = False
    ) -> int:
        table = self._table(entity)
        where = compile_filter(table, filter)
        async with _transient(f"delete on {entity}"), self.session_factory() as session:
            async with session.begin():
                if not many:
                    first = (await session.execute(select(table.c.id).where(where).limit(1))).scalar()
                    if first is None:
                        return 0
                    where = table.c.id == first
                result = await session.execute(delete(table).where(where))
        return result.rowcount

    async def aggregate(
        self, entity: str, pipeline: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        """Push a leading ``$match`` into SQL, evaluate the rest in memory."""
        stages = list(pipeline)
        filter: Mapping[str, Any] = {}
        if stages and set(stages[0]) == {"$match"}:
            filter = stages.pop(0)["$match"]
        rows = await self.find(entity, filter)
        return run_pipeline(rows, stages)


# ---------------------------------------------------------------------------
# Tenants and users
# ---------------------------------------------------------------------------

_ALIAS_COLUMNS = {
    "key": TenantRecord.key,
    "slug": TenantRecord.slug,
    "domain": TenantRecord.custom_domain,
}


class SqlTenantStore:
    """``TenantStore`` backed by the ``tenants`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, tenant_id: str) -> Tenant | None:
        async with _transient("tenant get"), self.session_factory() as session:
            record = await session.get(TenantRecord, tenant_id)
            return record.to_domain() if record else None

    async def find_by_alias(self, kind: str, value: str) -> Tenant | None:
        column = _ALIAS_COLUMNS.get(kind)
        if column is None:
            raise ValueError(f"Unknown tenant alias kind: {kind}")
        async with _transient(f"tenant lookup by {kind}"), self.session_factory() as session:
            record = (
                await session.execute(select(TenantRecord).where(column == value))
            ).scalar_one_or_none()
            return record.to_domain() if record else None

    async def save(self, tenant: Tenant) -> Tenant:
        handles = sorted({tenant.key, tenant.slug})
        clash = or_(TenantRecord.key.in_(handles), TenantRecord.slug.in_(handles))
        if tenant.custom_domain:
            clash = or_(clash, TenantRecord.custom_domain == tenant.custom_domain)
        columns = TenantRecord.columns_from(tenant)
        async with _transient("tenant save"), self.session_factory() as session:
            async with session.begin():
                other = (
                    await session.execute(
                        select(TenantRecord.id).where(TenantRecord.id != tenant.id, clash).limit(1)
                    )
                ).scalar()
                if other is not None:
                    raise ValueError(f"Tenant key, slug or domain of {tenant.key!r} already belongs to {other}")
                record = await session.get(TenantRecord, tenant.id)
                if record is None:
                    session.add(TenantRecord(**columns))
                else:
                    for name, value in columns.items():
                        setattr(record, name, value)
        return tenant

    async def list(self) -> list[Tenant]:
        async with _transient("tenant list"), self.session_factory() as session:
            records = (await session.execute(select(TenantRecord).order_by(TenantRecord.key))).scalars()
            return [r.to_domain() for r in records]


def _user_record(user: User) -> UserRecord:
    return UserRecord(
        id=user.id,
        role=user.role,
        tenant_id=user.tenant_id,
        email=user.email,
        name=user.name,
        is_active=user.is_active,
        password_hash=user.password_hash,
    )


class SqlUserDirectory:
    """``UserDirectory`` backed by the ``users`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_user(self, subject_id: str) -> UserRecord | None:
        async with _transient("user get"), self.session_factory() as session:
            user = await session.get(User, subject_id)
            return _user_record(user) if user else None

    async def find_by_email(
        self, email: str, tenant_id: str | None = None
    ) -> UserRecord | None:
        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        if tenant_id is not None:
            # masters have no tenant and may sign in anywhere
            stmt = stmt.where(or_(User.tenant_id == tenant_id, User.tenant_id.is_(None)))
        async with _transient("user lookup"), self.session_factory() as session:
            user = (await session.execute(stmt.limit(1))).scalar_one_or_none()
            return _user_record(user) if user else None

    async def add(self, user: UserRecord) -> UserRecord:
        async with _transient("user add"), self.session_factory() as session:
            async with session.begin():
                session.add(
                    User(
                        id=user.id,
                        tenant_id=user.tenant_id,
                        email=user.email.strip().lower(),
                        name=user.name,
                        role=user.role.value,
                        is_active=user.is_active,
                        password_hash=user.password_hash,
                    )
                )
        return user


def sql_kernel(
    settings: Any,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> TenantKernel:
    """Kernel whose tenants, users and records live in the SQL database."""
    session_factory = session_factory or async_session
    return TenantKernel.from_settings(
        settings,
        tenants=SqlTenantStore(session_factory),
        users=SqlUserDirectory(session_factory),
        repository=SqlRepository(session_factory),
    )
