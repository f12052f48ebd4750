"""Declarative base for OwlMend ORM models."""

from sqlalchemy import String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for knowledge store tables.

    Every row carries a tenant_id so several deployments can share one
    database; single-tenant installs use 'default'. Exposes metadata for Alembic.
    """

    tenant_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="default",
        index=True,
        doc="Tenant identifier; single-tenant default is 'default'.",
    )
