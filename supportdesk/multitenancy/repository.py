"""
Document repository contract and in-memory backend.

Repositories store plain ``dict`` records per entity name and understand a
small document query language:

Filters:
    ``{"status": "open"}``, ``{"n": {"$gt": 3}}``, ``$in``, ``$nin``,
    ``$ne``, ``$gte``, ``$lt``, ``$lte``, ``$exists``, ``$and``, ``$or``.
    Dotted paths reach into nested mappings.

Updates:
    ``$set``, ``$unset``, ``$inc``, ``$push``. A mapping without
    operators is treated as ``$set``.

Aggregation stages:
    ``$match``, ``$sort``, ``$skip``, ``$limit``, ``$project``,
    ``$count``, ``$group`` (accumulator ``$sum``).

Repositories know nothing about tenants; scoping is applied on top of them
by ``ScopedDataGateway``.
"""

from copy import deepcopy
from typing import Any, Iterable, Mapping, Protocol, Sequence
import uuid

UPDATE_OPERATORS = ("$set", "$unset", "$inc", "$push")

SortSpec = Sequence[tuple[str, int]] | Mapping[str, int]


class DuplicateKeyError(ValueError):
    """A unique constraint would be violated."""

    def __init__(self, entity: str, fields: Sequence[str]):
        self.entity = entity
        self.fields = tuple(fields)
        super().__init__(f"Duplicate key on {entity} {self.fields}")


class QueryError(ValueError):
    """A filter, update or pipeline is malformed."""


class Repository(Protocol):
    """Persistence operations used by the gateway."""

    async def insert(self, entity: str, record: dict[str, Any]) -> dict[str, Any]:
        ...

    async def find(
        self,
        entity: str,
        filter: Mapping[str, Any],
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...

    async def count(self, entity: str, filter: Mapping[str, Any]) -> int:
        ...

    async def update(
        self,
        entity: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        many: bool = False,
    ) -> int:
        ...

    async def delete(
        self, entity: str, filter: Mapping[str, Any], *, many: bool = False
    ) -> int:
        ...

    async def aggregate(
        self, entity: str, pipeline: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        ...


# ---------------------------------------------------------------------------
# Document helpers
# ---------------------------------------------------------------------------


_MISSING = object()


def get_path(doc: Mapping[str, Any], path: str) -> Any:
    """Read a dotted path, returning a sentinel when absent."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _unset_path(doc: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    target: Any = doc
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if actual is _MISSING or actual is None:
        return False
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        return actual <= expected
    except TypeError:
        return False


def _equals(actual: Any, expected: Any) -> bool:
    if actual is _MISSING:
        return expected is None
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _match_condition(actual: Any, condition: Any) -> bool:
    if not (isinstance(condition, Mapping) and condition and all(k.startswith("$") for k in condition)):
        return _equals(actual, condition)
    for op, expected in condition.items():
        if op == "$eq":
            ok = _equals(actual, expected)
        elif op == "$ne":
            ok = not _equals(actual, expected)
        elif op == "$in":
            ok = any(_equals(actual, v) for v in expected)
        elif op == "$nin":
            ok = not any(_equals(actual, v) for v in expected)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            ok = _compare(op, actual, expected)
        elif op == "$exists":
            ok = (actual is not _MISSING) == bool(expected)
        else:
            raise QueryError(f"Unsupported filter operator: {op}")
        if not ok:
            return False
    return True


def matches(doc: Mapping[str, Any], filter: Mapping[str, Any] | None) -> bool:
    """Evaluate a document filter against one record."""
    if not filter:
        return True
    for key, condition in filter.items():
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key.startswith("$"):
            raise QueryError(f"Unsupported top-level operator: {key}")
        elif not _match_condition(get_path(doc, key), condition):
            return False
    return True


def normalize_update(update: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Return the update in operator form (a plain mapping becomes ``$set``)."""
    if not update:
        return {}
    operators = [k for k in update if k.startswith("$")]
    if not operators:
        return {"$set": dict(update)}
    if len(operators) != len(update):
        raise QueryError("Cannot mix update operators with plain fields")
    unknown = set(operators) - set(UPDATE_OPERATORS)
    if unknown:
        raise QueryError(f"Unsupported update operator(s): {sorted(unknown)}")
    return {op: dict(update[op] or {}) for op in operators}


def apply_update(doc: dict[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    """Apply an update in place and return the document."""
    for op, fields in normalize_update(update).items():
        for path, value in fields.items():
            if op == "$set":
                _set_path(doc, path, deepcopy(value))
            elif op == "$unset":
                _unset_path(doc, path)
            elif op == "$inc":
                current = get_path(doc, path)
                base = 0 if current is _MISSING or current is None else current
                _set_path(doc, path, base + value)
            elif op == "$push":
                current = get_path(doc, path)
                items = [] if current is _MISSING or current is None else list(current)
                if isinstance(value, Mapping) and "$each" in value:
                    items.extend(deepcopy(value["$each"]))
                else:
                    items.append(deepcopy(value))
                _set_path(doc, path, items)
    return doc


def sort_items(sort: SortSpec) -> list[tuple[str, int]]:
    if isinstance(sort, Mapping):
        return [(k, int(v)) for k, v in sort.items()]
    return [(k, int(v)) for k, v in sort]


def sort_documents(docs: list[dict[str, Any]], sort: SortSpec) -> list[dict[str, Any]]:
    """Stable multi-key sort; missing and None values sort first."""
    ordered = list(docs)
    for path, direction in reversed(sort_items(sort)):
        def key(doc: dict[str, Any], path: str = path) -> tuple[int, Any]:
            value = get_path(doc, path)
            if value is _MISSING or value is None:
                return (0, 0)
            return (1, value)
        ordered.sort(key=key, reverse=direction < 0)
    return ordered


def project(doc: Mapping[str, Any], spec: Mapping[str, Any]) -> dict[str, Any]:
    """Apply an inclusion or exclusion projection."""
    included = [k for k, v in spec.items() if v and k != "_id"]
    if included:
        out = {k: deepcopy(doc[k]) for k in included if k in doc}
        if spec.get("id", 1) and "id" in doc:
            out["id"] = doc["id"]
        return out
    return {k: deepcopy(v) for k, v in doc.items() if k not in spec}


def _group(docs: Iterable[dict[str, Any]], spec: Mapping[str, Any]) -> list[dict[str, Any]]:
    if "_id" not in spec:
        raise QueryError("$group requires an _id expression")
    key_expr = spec["_id"]
    groups: dict[Any, dict[str, Any]] = {}
    for doc in docs:
        if isinstance(key_expr, str) and key_expr.startswith("$"):
            value = get_path(doc, key_expr[1:])
            group_key = None if value is _MISSING else value
        else:
            group_key = key_expr
        hashable = repr(group_key)
        bucket = groups.setdefault(hashable, {"_id": group_key})
        for name, accumulator in spec.items():
            if name == "_id":
                continue
            if not isinstance(accumulator, Mapping) or list(accumulator) != ["$sum"]:
                raise QueryError(f"Unsupported accumulator for {name}: {accumulator}")
            operand = accumulator["$sum"]
            if isinstance(operand, str) and operand.startswith("$"):
                value = get_path(doc, operand[1:])
                increment = value if isinstance(value, (int, float)) else 0
            else:
                increment = operand
            bucket[name] = bucket.get(name, 0) + increment
    return list(groups.values())


def run_pipeline(
    docs: Iterable[dict[str, Any]],
    pipeline: Sequence[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    """Evaluate aggregation stages over documents."""
    current = [deepcopy(d) for d in docs]
    for stage in pipeline:
        if len(stage) != 1:
            raise QueryError(f"Each pipeline stage must have exactly one operator: {stage}")
        (op, arg), = stage.items()
        if op == "$match":
            current = [d for d in current if matches(d, arg)]
        elif op == "$sort":
            current = sort_documents(current, arg)
        elif op == "$skip":
            current = current[int(arg):]
        elif op == "$limit":
            current = current[: int(arg)]
        elif op == "$project":
            current = [project(d, arg) for d in current]
        elif op == "$count":
            current = [{arg: len(current)}]
        elif op == "$group":
            current = _group(current, arg)
        else:
            raise QueryError(f"Unsupported pipeline stage: {op}")
    return current


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryRepository:
    """Dict-backed repository for development and tests.

    Attributes:
        unique: Per-entity unique field tuples, checked on insert/update.
    """

    def __init__(self, unique: Mapping[str, Sequence[Sequence[str]]] | None = None):
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self.unique: dict[str, list[tuple[str, ...]]] = {
            entity: [tuple(f) for f in fields] for entity, fields in (unique or {}).items()
        }

    def declare_unique(self, entity: str, fields: Sequence[str]) -> None:
        self.unique.setdefault(entity, []).append(tuple(fields))

    def _table(self, entity: str) -> dict[str, dict[str, Any]]:
        return self._data.setdefault(entity, {})

    def _check_unique(self, entity: str, doc: Mapping[str, Any]) -> None:
        for fields in self.unique.get(entity, []):
            key = tuple(get_path(doc, f) for f in fields)
            if any(v is _MISSING for v in key):
                continue
            for other in self._table(entity).values():
                if other.get("id") == doc.get("id"):
                    continue
                if tuple(get_path(other, f) for f in fields) == key:
                    raise DuplicateKeyError(entity, fields)

    async def insert(self, entity: str, record: dict[str, Any]) -> dict[str, Any]:
        doc = deepcopy(record)
        doc.setdefault("id", uuid.uuid4().hex)
        table = self._table(entity)
        if doc["id"] in table:
            raise DuplicateKeyError(entity, ("id",))
        self._check_unique(entity, doc)
        table[doc["id"]] = doc
        return deepcopy(doc)

    def _select(self, entity: str, filter: Mapping[str, Any]) -> list[dict[str, Any]]:
        return [d for d in self._table(entity).values() if matches(d, filter)]

    async def find(
        self,
        entity: str,
        filter: Mapping[str, Any],
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        docs = self._select(entity, filter)
        if sort:
            docs = sort_documents(docs, sort)
        docs = docs[skip:]
        if limit is not None:
            docs = docs[:limit]
        return [deepcopy(d) for d in docs]

    async def count(self, entity: str, filter: Mapping[str, Any]) -> int:
        return len(self._select(entity, filter))

    async def update(
        self,
        entity: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        many: bool = False,
    ) -> int:
        targets = self._select(entity, filter)
        if not many:
            targets = targets[:1]
        table = self._table(entity)
        for doc in targets:
            updated = apply_update(deepcopy(doc), update)
            updated["id"] = doc["id"]
            self._check_unique(entity, updated)
            table[doc["id"]] = updated
        return len(targets)

    async def delete(
        self, entity: str, filter: Mapping[str, Any], *, many: bool = False
    ) -> int:
        targets = self._select(entity, filter)
        if not many:
            targets = targets[:1]
        table = self._table(entity)
        for doc in targets:
            del table[doc["id"]]
        return len(targets)

    async def aggregate(
        self, entity: str, pipeline: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        return run_pipeline(self._table(entity).values(), pipeline)
