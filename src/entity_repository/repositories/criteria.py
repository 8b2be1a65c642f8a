"""
Query criteria accumulated on a repository and applied by its terminal calls.

Chain methods (`where`, `where_in`, `order_by`, `with_relations`, ...) only
record state on a `Criteria` object. Terminal operations (finders,
aggregates, `update_set`, `deletes`) take the pending criteria with
`_consume_criteria()`, which swaps in a fresh object before the query runs,
so nothing carries over to the next call even when the query raises.

    articles = await repo.where("status", "published").latest().limit(10).find_all()
"""

from collections.abc import Iterable, Mapping
from typing import Any, Literal

from sqlalchemy import String, cast, or_
from sqlalchemy.orm import ColumnProperty, RelationshipProperty, selectinload
from sqlalchemy.sql import Select

from entity_repository.database.base import is_soft_deletable
from entity_repository.exceptions import InvalidFieldError

TrashedScope = Literal["exclude", "with", "only"]

_MISSING = object()

OPERATORS = {
    "=": lambda col, v: col.is_(None) if v is None else col == v,
    "!=": lambda col, v: col.is_not(None) if v is None else col != v,
    "<>": lambda col, v: col.is_not(None) if v is None else col != v,
    "<": lambda col, v: col < v,
    "<=": lambda col, v: col <= v,
    ">": lambda col, v: col > v,
    ">=": lambda col, v: col >= v,
    "like": lambda col, v: col.like(v),
    "not like": lambda col, v: col.not_like(v),
    "ilike": lambda col, v: col.ilike(v),
    "in": lambda col, v: col.in_(list(v)),
    "not in": lambda col, v: col.not_in(list(v)),
    "is": lambda col, v: col.is_(v),
    "is not": lambda col, v: col.is_not(v),
}


def normalize_clauses(column, operator=_MISSING, value=_MISSING) -> list[tuple[str, str, Any]]:
    """
    Accepted forms:
        ("status", "active")                  -> status = active
        ("age", ">", 18)
        ({"status": "active", "kind": "x"})   -> one equality per key
        ([("age", ">", 18), ("status", "active")])
        where(("age", ">", 18))               -> a single clause passed as one tuple
    """
    if isinstance(column, Mapping):
        return [(key, "=", val) for key, val in column.items()]

    if isinstance(column, tuple) and len(column) in (2, 3) and isinstance(column[0], str):
        column = [column]

    if isinstance(column, (list, tuple)):
        clauses = []
        for clause in column:
            if len(clause) == 2:
                clauses.append((clause[0], "=", clause[1]))
            elif len(clause) == 3:
                clauses.append((clause[0], clause[1], clause[2]))
            else:
                raise InvalidFieldError(f"Malformed where clause: {clause!r}")
        return clauses

    if operator is _MISSING:
        raise InvalidFieldError(f"where({column!r}) needs a value", fields=[column])
    if value is _MISSING:
        return [(column, "=", operator)]
    return [(column, operator, value)]


def escape_like(term: str) -> str:
    """Make `%` and `_` in user input match literally (escape character `\\`)."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def resolve_column(model, name: str):
    attr = getattr(model, name, None)
    if not isinstance(getattr(attr, "property", None), ColumnProperty):
        raise InvalidFieldError(f"{model.__name__} has no column '{name}'", fields=[name])
    return attr


def build_condition(model, column: str, operator: str, value: Any):
    compare = OPERATORS.get(str(operator).lower())
    if compare is None:
        raise InvalidFieldError(f"Unsupported operator {operator!r} for column '{column}'", fields=[column])
    return compare(resolve_column(model, column), value)


class Criteria:
    """Pending query state of one repository instance."""

    def __init__(self) -> None:
        self.wheres: list[tuple[str, str, Any]] = []
        self.has: list[tuple[str, list[tuple[str, str, Any]]]] = []
        self.eager: list[str] = []
        self.orders: list[tuple[str, str]] = []
        self.search: tuple[str, tuple[str, ...] | None] | None = None
        self.limit: int | None = None
        self.offset: int | None = None
        self.trashed: TrashedScope = "exclude"

    def signature(self) -> str:
        """Stable text form used in cache keys."""
        return repr((
            self.wheres, self.has, self.eager, self.orders,
            self.search, self.limit, self.offset, self.trashed,
        ))

    # --- application ---

    def apply_filters(self, stmt: Select, model) -> Select:
        """WHERE part only (used by aggregates)."""
        for column, operator, value in self.wheres:
            stmt = stmt.where(build_condition(model, column, operator, value))

        for relation, clauses in self.has:
            stmt = stmt.where(self._has_condition(model, relation, clauses))

        if self.search is not None:
            term, columns = self.search
            columns = columns if columns is not None else tuple(getattr(model, "__searchable__", ()))
            if columns:
                pattern = f"%{escape_like(term)}%"
                stmt = stmt.where(
                    or_(*(cast(resolve_column(model, c), String).ilike(pattern, escape="\\") for c in columns))
                )

        if is_soft_deletable(model):
            if self.trashed == "exclude":
                stmt = stmt.where(model.deleted_at.is_(None))
            elif self.trashed == "only":
                stmt = stmt.where(model.deleted_at.is_not(None))

        return stmt

    def apply(self, stmt: Select, model) -> Select:
        stmt = self.apply_filters(stmt, model)

        for name in self.eager:
            stmt = stmt.options(self._loader(model, name))

        for column, direction in self.orders:
            col = resolve_column(model, column)
            stmt = stmt.order_by(col.desc() if direction == "desc" else col.asc())

        if self.limit is not None:
            stmt = stmt.limit(self.limit)
        if self.offset is not None:
            stmt = stmt.offset(self.offset)
        return stmt

    @staticmethod
    def _relationship(model, name: str):
        attr = getattr(model, name, None)
        prop = getattr(attr, "property", None)
        if not isinstance(prop, RelationshipProperty):
            raise InvalidFieldError(f"{model.__name__} has no relation '{name}'", fields=[name])
        return attr

    def _has_condition(self, model, relation: str, clauses):
        attr = self._relationship(model, relation)
        target = attr.property.mapper.class_
        conditions = [build_condition(target, c, op, v) for c, op, v in clauses]
        if attr.property.uselist:
            return attr.any(*conditions)
        return attr.has(*conditions)

    def _loader(self, model, path: str):
        # "author.articles" -> selectinload(Article.author).selectinload(Author.articles)
        option = None
        current = model
        for part in path.split("."):
            attr = self._relationship(current, part)
            option = selectinload(attr) if option is None else option.selectinload(attr)
            current = attr.property.mapper.class_
        return option


class CriteriaMixin:
    """Chainable criteria methods; every method returns the repository."""

    _criteria: Criteria

    def _consume_criteria(self) -> Criteria:
        criteria = self._criteria
        self._criteria = Criteria()
        return criteria

    def reset_criteria(self):
        self._criteria = Criteria()
        return self

    def where(self, column, operator=_MISSING, value=_MISSING):
        self._criteria.wheres.extend(normalize_clauses(column, operator, value))
        return self

    def where_in(self, column: str, values: Iterable[Any]):
        self._criteria.wheres.append((column, "in", list(values)))
        return self

    def where_not_in(self, column: str, values: Iterable[Any]):
        self._criteria.wheres.append((column, "not in", list(values)))
        return self

    def where_has(self, relation: str, clauses=None):
        """Keep rows having at least one related row matching `clauses` (any related row when None)."""
        normalized = normalize_clauses(clauses) if clauses else []
        self._criteria.has.append((relation, normalized))
        return self

    def with_relations(self, *relations: str):
        """Eager-load relations (dotted paths allowed) with selectinload."""
        for name in relations:
            if name not in self._criteria.eager:
                self._criteria.eager.append(name)
        return self

    def order_by(self, column: str, direction: str = "asc"):
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise InvalidFieldError(f"Invalid order direction {direction!r}", fields=[column])
        self._criteria.orders.append((column, direction))
        return self

    def latest(self, column: str | None = None):
        return self.order_by(column or self._default_time_column(), "desc")

    def oldest(self, column: str | None = None):
        return self.order_by(column or self._default_time_column(), "asc")

    def limit(self, limit: int):
        self._criteria.limit = limit
        return self

    def offset(self, offset: int):
        self._criteria.offset = offset
        return self

    def search(self, term: str, columns: Iterable[str] | None = None):
        """Case-insensitive substring match OR-ed over `columns` (default `__searchable__`)."""
        self._criteria.search = (term, tuple(columns) if columns is not None else None)
        return self

    def with_trashed(self):
        self._criteria.trashed = "with"
        return self

    def only_trashed(self):
        self._criteria.trashed = "only"
        return self

    def _default_time_column(self) -> str:
        raise NotImplementedError
