"""
Scoped data gateway: tenant isolation for every persistence operation.

Entities are declared once, in an ``EntityRegistry``, either directly::

    entities.register("conversations", indexes=[("tenant_id", "updated_at")])

or with the ``@tenant_scoped`` decorator on a SQLAlchemy model. A
tenant-scoped entity must declare an index leading with ``tenant_id``, and
every unique constraint it declares must include ``tenant_id``.

For tenant-scoped entities the gateway:
    - stamps ``tenant_id`` from the current context on create
    - intersects every read, update and delete filter with the current tenant
    - strips any attempt to modify ``tenant_id`` from updates
    - prepends a tenant ``$match`` to aggregation pipelines
    - lets ``without_tenant()`` (audited) suspend all of the above

Example:
    gateway = ScopedDataGateway(MemoryRepository(), entities)

    async with with_tenant("t1"):
        await gateway.create("conversations", {"subject": "Hi"})
        rows = await gateway.find("conversations", {"status": "open"})
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Mapping, Sequence
import logging

from sqlalchemy import UniqueConstraint

from .context import ContextFrame, current, with_tenant, without_tenant
from .errors import CrossTenantDenied, ScopeIntegrityError, TenantRequired
from .metrics import KernelMetrics
from .repository import Repository, SortSpec, normalize_update
from .tenant import tenant_id_of

logger = logging.getLogger(__name__)

TENANT_FIELD = "tenant_id"

# Fields dropped when a record is cloned into another tenant
IDENTITY_FIELDS = ("id", "_id", "created_at", "updated_at", "__v")


# ---------------------------------------------------------------------------
# Entity registration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EntitySpec:
    """Registration record for one entity type.

    Attributes:
        name: Entity (collection / table) name.
        tenant_scoped: Whether the gateway enforces tenant scope.
        indexes: Declared index field tuples.
        unique: Declared unique field tuples.
        timestamps: Maintain ``created_at`` / ``updated_at``.
        model: Optional ORM model class backing the entity.
    """

    name: str
    tenant_scoped: bool = True
    indexes: tuple[tuple[str, ...], ...] = ()
    unique: tuple[tuple[str, ...], ...] = ()
    timestamps: bool = True
    model: Any = field(default=None, compare=False)


class EntityRegistry:
    """The single place where entity types opt into tenant scoping."""

    def __init__(self) -> None:
        self._specs: dict[str, EntitySpec] = {}

    def register(
        self,
        name: str,
        *,
        tenant_scoped: bool = True,
        indexes: Iterable[Sequence[str]] = (),
        unique: Iterable[Sequence[str]] = (),
        timestamps: bool = True,
        model: Any = None,
    ) -> EntitySpec:
        """Register an entity type.

        Raises:
            ValueError: If a tenant-scoped entity lacks an index leading
                with ``tenant_id``, declares a unique constraint without
                it, or the name is already registered differently.
        """
        spec = EntitySpec(
            name=name,
            tenant_scoped=tenant_scoped,
            indexes=tuple(tuple(i) for i in indexes),
            unique=tuple(tuple(u) for u in unique),
            timestamps=timestamps,
            model=model,
        )
        if tenant_scoped:
            if not any(idx and idx[0] == TENANT_FIELD for idx in spec.indexes):
                raise ValueError(
                    f"Tenant-scoped entity {name!r} needs an index leading with {TENANT_FIELD}"
                )
            for fields in spec.unique:
                if TENANT_FIELD not in fields:
                    raise ValueError(
                        f"Unique constraint {fields} on {name!r} must include {TENANT_FIELD}"
                    )
        existing = self._specs.get(name)
        if existing is not None and existing != spec:
            raise ValueError(f"Entity {name!r} is already registered")
        self._specs[name] = spec
        logger.debug(f"Registered entity {name} (tenant_scoped={tenant_scoped})")
        return spec

    def register_model(self, model: Any, tenant_scoped: bool = True) -> EntitySpec:
        """Register a SQLAlchemy declarative model from its table metadata."""
        table = model.__table__
        indexes = [tuple(c.name for c in idx.columns) for idx in table.indexes]
        unique = [tuple(c.name for c in idx.columns) for idx in table.indexes if idx.unique]
        unique += [
            tuple(c.name for c in constraint.columns)
            for constraint in table.constraints
            if isinstance(constraint, UniqueConstraint)
        ]
        return self.register(
            table.name,
            tenant_scoped=tenant_scoped,
            indexes=indexes,
            unique=unique,
            timestamps="updated_at" in table.c,
            model=model,
        )

    def get(self, name: str) -> EntitySpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ValueError(f"Entity {name!r} is not registered") from None

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[EntitySpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)


# Default registry populated by ``@tenant_scoped`` models
entities = EntityRegistry()


def tenant_scoped(model: Any = None, *, registry: EntityRegistry | None = None) -> Any:
    """Class decorator registering a SQLAlchemy model as tenant-scoped.

    Usable bare (``@tenant_scoped``) or with a registry
    (``@tenant_scoped(registry=my_entities)``).
    """

    def decorator(cls: Any) -> Any:
        (registry or entities).register_model(cls, tenant_scoped=True)
        return cls

    if model is not None:
        return decorator(model)
    return decorator


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _tenant_values(condition: Any) -> list[Any] | None:
    """Tenant ids a filter condition pins, or None if it is not an equality."""
    if isinstance(condition, Mapping) and condition and all(k.startswith("$") for k in condition):
        if set(condition) == {"$eq"}:
            return [condition["$eq"]]
        if set(condition) == {"$in"}:
            return list(condition["$in"])
        return None
    return [condition]


def _tenant_conditions(filter: Mapping[str, Any]) -> list[Any]:
    """Every ``tenant_id`` condition in a filter, including inside $and/$or."""
    found = []
    for key, value in filter.items():
        if key == TENANT_FIELD:
            found.append(value)
        elif key in ("$and", "$or"):
            for sub in value:
                found.extend(_tenant_conditions(sub))
    return found


def _strip_tenant_field(update: Mapping[str, Any]) -> tuple[dict[str, dict[str, Any]], bool]:
    """Remove ``tenant_id`` (and dotted children) from every operator."""
    stripped = False
    cleaned: dict[str, dict[str, Any]] = {}
    for op, fields in normalize_update(update).items():
        kept = {}
        for path, value in fields.items():
            if path == TENANT_FIELD or path.startswith(TENANT_FIELD + "."):
                stripped = True
                continue
            kept[path] = value
        if kept:
            cleaned[op] = kept
    return cleaned, stripped


class ScopedDataGateway:
    """Tenant-scoped facade over a ``Repository``.

    Attributes:
        repository: The underlying persistence backend.
        entities: Entity registrations consulted for every call.
        metrics: Kernel counters.
    """

    def __init__(
        self,
        repository: Repository,
        entity_registry: EntityRegistry | None = None,
        metrics: KernelMetrics | None = None,
    ):
        self.repository = repository
        self.entities = entity_registry if entity_registry is not None else entities
        self.metrics = metrics or KernelMetrics()

    # -- scope ------------------------------------------------------------

    def _deny(self, message: str, **details: Any) -> CrossTenantDenied:
        self.metrics.cross_tenant_denials += 1
        logger.warning(f"Cross-tenant access denied: {message} {details}")
        return CrossTenantDenied(message, details=details or None)

    def _scope_tenant(self, frame: ContextFrame) -> str:
        if frame.tenant_id is None:
            raise TenantRequired(
                details={"hint": "Run tenant-scoped operations inside a tenant context"}
            )
        return frame.tenant_id

    def _scoped_filter(
        self,
        spec: EntitySpec,
        filter: Mapping[str, Any] | None,
        frame: ContextFrame,
    ) -> dict[str, Any]:
        filter = dict(filter or {})
        if not spec.tenant_scoped or frame.bypass:
            return filter
        tenant_id = self._scope_tenant(frame)

        explicit = _tenant_conditions(filter)
        for condition in explicit:
            values = _tenant_values(condition)
            pinned_here = values is not None and all(
                _safe_tenant_id(v) == tenant_id for v in values
            )
            if pinned_here:
                continue
            if frame.is_master:
                logger.info(
                    f"Master query on {spec.name} with explicit tenant condition {condition!r}"
                )
                return filter
            raise self._deny(
                f"query on {spec.name} names another tenant",
                entity=spec.name,
                tenant_id=tenant_id,
            )

        if TENANT_FIELD in filter:
            # Normalise a populated or $eq/$in-pinned condition to the plain id
            filter[TENANT_FIELD] = tenant_id
            return filter
        return {**filter, TENANT_FIELD: tenant_id}

    # -- create -----------------------------------------------------------

    async def create(self, entity: str, record: Mapping[str, Any]) -> dict[str, Any]:
        """Insert a record, stamping ``tenant_id`` from the context.

        Raises:
            TenantRequired: Unscoped context for a tenant-scoped entity.
            CrossTenantDenied: Record names a different tenant.
            ScopeIntegrityError: Bypass create without an explicit tenant.
        """
        spec = self.entities.get(entity)
        frame = current()
        doc = dict(record)

        if spec.tenant_scoped:
            supplied = doc.get(TENANT_FIELD)
            supplied_id = _safe_tenant_id(supplied) if supplied else None
            if supplied and supplied_id is None:
                raise ScopeIntegrityError(f"Unreadable {TENANT_FIELD} on {entity} create")
            if frame.bypass:
                if not supplied_id:
                    raise ScopeIntegrityError(
                        f"Bypass create on {entity} must name a tenant explicitly"
                    )
                doc[TENANT_FIELD] = supplied_id
            else:
                tenant_id = self._scope_tenant(frame)
                if supplied_id and supplied_id != tenant_id and not frame.is_master:
                    raise self._deny(
                        f"create on {entity} names another tenant",
                        entity=entity,
                        tenant_id=tenant_id,
                    )
                doc[TENANT_FIELD] = supplied_id or tenant_id

        if spec.timestamps:
            now = _utcnow()
            doc.setdefault("created_at", now)
            doc.setdefault("updated_at", now)
        return await self.repository.insert(entity, doc)

    # -- reads ------------------------------------------------------------

    async def find(
        self,
        entity: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        spec = self.entities.get(entity)
        scoped = self._scoped_filter(spec, filter, current())
        return await self.repository.find(entity, scoped, sort=sort, skip=skip, limit=limit)

    async def find_one(
        self,
        entity: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
    ) -> dict[str, Any] | None:
        rows = await self.find(entity, filter, sort=sort, limit=1)
        return rows[0] if rows else None

    async def get(self, entity: str, record_id: str) -> dict[str, Any] | None:
        return await self.find_one(entity, {"id": record_id})

    async def count(self, entity: str, filter: Mapping[str, Any] | None = None) -> int:
        spec = self.entities.get(entity)
        return await self.repository.count(entity, self._scoped_filter(spec, filter, current()))

    # -- writes -----------------------------------------------------------

    async def update(
        self,
        entity: str,
        filter: Mapping[str, Any] | None,
        update: Mapping[str, Any],
        *,
        many: bool = False,
    ) -> int:
        """Update matching records; ``tenant_id`` changes are dropped.

        Returns:
            Number of records updated.
        """
        spec = self.entities.get(entity)
        scoped = self._scoped_filter(spec, filter, current())
        cleaned, stripped = _strip_tenant_field(update)
        if stripped:
            self.metrics.tenant_fields_stripped += 1
            logger.debug(f"Stripped {TENANT_FIELD} from update on {entity}")
        if not cleaned:
            return 0
        if spec.timestamps:
            cleaned.setdefault("$set", {}).setdefault("updated_at", _utcnow())
        return await self.repository.update(entity, scoped, cleaned, many=many)

    async def update_one(
        self, entity: str, filter: Mapping[str, Any] | None, update: Mapping[str, Any]
    ) -> int:
        return await self.update(entity, filter, update, many=False)

    async def update_many(
        self, entity: str, filter: Mapping[str, Any] | None, update: Mapping[str, Any]
    ) -> int:
        return await self.update(entity, filter, update, many=True)

    async def delete(
        self,
        entity: str,
        filter: Mapping[str, Any] | None,
        *,
        many: bool = False,
    ) -> int:
        spec = self.entities.get(entity)
        scoped = self._scoped_filter(spec, filter, current())
        return await self.repository.delete(entity, scoped, many=many)

    # -- aggregation ------------------------------------------------------

    async def aggregate(
        self, entity: str, pipeline: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        """Run a pipeline with a leading tenant ``$match``.

        Raises:
            CrossTenantDenied: A ``$match`` stage pins another tenant.
        """
        spec = self.entities.get(entity)
        frame = current()
        stages = [dict(stage) for stage in pipeline]
        if spec.tenant_scoped and not frame.bypass:
            tenant_id = self._scope_tenant(frame)
            for stage in stages:
                match = stage.get("$match")
                if not isinstance(match, Mapping):
                    continue
                for condition in _tenant_conditions(match):
                    values = _tenant_values(condition)
                    if values is None or any(_safe_tenant_id(v) != tenant_id for v in values):
                        raise self._deny(
                            f"pipeline on {entity} matches another tenant",
                            entity=entity,
                            tenant_id=tenant_id,
                        )
            stages.insert(0, {"$match": {TENANT_FIELD: tenant_id}})
        return await self.repository.aggregate(entity, stages)

    # -- cross-tenant helpers -----------------------------------------------

    def _require_privileged(self, operation: str) -> ContextFrame:
        frame = current()
        if not (frame.bypass or frame.is_master):
            raise ScopeIntegrityError(f"{operation} requires a bypass or master context")
        return frame

    async def find_without_tenant(
        self, entity: str, filter: Mapping[str, Any] | None = None, **options: Any
    ) -> list[dict[str, Any]]:
        """Unscoped read (audited bypass)."""
        async with without_tenant():
            return await self.find(entity, filter, **options)

    async def find_by_tenant(
        self,
        entity: str,
        tenant: Any,
        filter: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> list[dict[str, Any]]:
        """Read one tenant's records from an administrative context."""
        frame = self._require_privileged("find_by_tenant")
        async with with_tenant(tenant_id_of(tenant), is_master=frame.is_master):
            return await self.find(entity, filter, **options)

    async def count_by_tenant(
        self, entity: str, tenant: Any, filter: Mapping[str, Any] | None = None
    ) -> int:
        frame = self._require_privileged("count_by_tenant")
        async with with_tenant(tenant_id_of(tenant), is_master=frame.is_master):
            return await self.count(entity, filter)

    async def create_with_tenant(
        self, entity: str, tenant: Any, record: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Create a record in a named tenant from an administrative context."""
        frame = self._require_privileged("create_with_tenant")
        target = tenant_id_of(tenant)
        doc = {k: v for k, v in record.items() if k != TENANT_FIELD}
        async with with_tenant(target, is_master=frame.is_master):
            return await self.create(entity, doc)

    @staticmethod
    def belongs_to_tenant(record: Mapping[str, Any], tenant: Any) -> bool:
        """Whether a record is owned by ``tenant`` (raw or populated ids)."""
        owner = record.get(TENANT_FIELD)
        if not owner:
            return False
        return _safe_tenant_id(owner) == tenant_id_of(tenant)

    async def clone_to_tenant(
        self, entity: str, record: Mapping[str, Any], target: Any
    ) -> dict[str, Any]:
        """Copy a record into ``target``.

        Identity fields (``id``, timestamps) are dropped and ``tenant_id``
        is rewritten. Cloning into a tenant other than the current one
        requires a bypass or master context.
        """
        target_id = tenant_id_of(target)
        frame = current()
        if target_id != frame.tenant_id and not (frame.bypass or frame.is_master):
            raise self._deny(
                f"clone of {entity} into another tenant",
                entity=entity,
                tenant_id=frame.tenant_id,
            )
        doc = {
            k: v for k, v in record.items() if k not in IDENTITY_FIELDS and k != TENANT_FIELD
        }
        async with with_tenant(target_id, is_master=frame.is_master):
            return await self.create(entity, doc)


def _safe_tenant_id(value: Any) -> str | None:
    try:
        return tenant_id_of(value)
    except ValueError:
        return None
