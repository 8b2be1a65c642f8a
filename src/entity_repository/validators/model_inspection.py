from typing import Any, Mapping

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import Mapper

from entity_repository.exceptions import ConfigurationError, InvalidFieldError


def get_mapper(model) -> Mapper:
    """
    Return the SQLAlchemy mapper of a model class (or instance).

    Raises:
        ConfigurationError: if `model` is not a mapped class.
    """
    if model is None:
        raise ConfigurationError("No model bound to the repository")
    cls = model if isinstance(model, type) else type(model)
    try:
        return sa_inspect(cls)
    except NoInspectionAvailable as exc:
        raise ConfigurationError(f"{cls.__name__} is not a SQLAlchemy mapped class") from exc


def get_key_name(model) -> str:
    """Attribute name of the (first) primary key column."""
    mapper = get_mapper(model)
    return mapper.get_property_by_column(mapper.primary_key[0]).key


def get_column_names(model) -> list[str]:
    """Attribute names of all mapped columns, in declaration order."""
    return [attr.key for attr in get_mapper(model).column_attrs]


def get_fillable(model) -> list[str]:
    """
    Attribute names that `fill()` may assign.
    - `__fillable__` on the model wins when declared.
    - Otherwise every mapped column except the primary key and `deleted_at`.
    """
    cls = model if isinstance(model, type) else type(model)
    declared = getattr(cls, "__fillable__", None)
    if declared is not None:
        return list(declared)
    key = get_key_name(cls)
    return [name for name in get_column_names(cls) if name not in (key, "deleted_at")]


def get_searchable(model) -> list[str]:
    """Columns used by a search without explicit columns (`__searchable__`)."""
    cls = model if isinstance(model, type) else type(model)
    return list(getattr(cls, "__searchable__", ()))


def find_unknown_model_kwargs(model, kwargs: Mapping[str, Any]) -> list[str]:
    """
    Return list of keys that are not part of the model's mapped attributes.
    Mapper attributes include columns and relationships.
    """
    allowed = {attr.key for attr in get_mapper(model).attrs}
    return [k for k in kwargs.keys() if k not in allowed]


def get_dirty_attributes(entity) -> list[str]:
    """
    Column attributes whose pending value differs from the loaded one.

    Uses SQLAlchemy attribute history, which compares scalars by value, so
    assigning the value an attribute already holds does not make it dirty.
    """
    state = sa_inspect(entity)
    return [
        attr.key
        for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    ]


def get_identity(entity) -> Any:
    """Primary key value of an entity (None until flushed)."""
    return getattr(entity, get_key_name(entity), None)


def fill_attributes(entity, attributes: Mapping[str, Any]):
    """
    Assign the fillable keys of `attributes` to `entity` and return it.

    Keys the model does not map at all raise InvalidFieldError. Mapped keys
    that are not fillable (primary key, relationships, undeclared columns)
    are dropped silently.
    """
    unknown = find_unknown_model_kwargs(entity, attributes)
    if unknown:
        name = type(entity).__name__
        raise InvalidFieldError(f"Unknown field(s) for {name}: {', '.join(sorted(unknown))}", fields=sorted(unknown))

    fillable = set(get_fillable(entity))
    for key, value in attributes.items():
        if key in fillable:
            setattr(entity, key, value)
    return entity
