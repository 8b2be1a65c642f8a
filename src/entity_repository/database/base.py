"""
Declarative base and mixins for models managed by repositories.

Models may use this `Base` or any `DeclarativeBase` that also mixes in
`AsyncAttrs`: relation synchronization loads collections through
`entity.awaitable_attrs` so it works under an `AsyncSession`.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    pass


# Naming convention for constraints and indexes
Base.metadata.naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SoftDeleteMixin:
    """
    Marks a model as soft-deletable.

    Repositories stamp `deleted_at` instead of issuing DELETE, hide stamped rows
    from default queries and clear the stamp on restore.
    """

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        default=None,
        index=True,
    )

    @property
    def trashed(self) -> bool:
        return self.deleted_at is not None


def is_soft_deletable(model) -> bool:
    """True for model classes (or instances) carrying the SoftDeleteMixin."""
    cls = model if isinstance(model, type) else type(model)
    return issubclass(cls, SoftDeleteMixin)
