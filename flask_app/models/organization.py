# flask_app/models/organization.py

from typing import Optional

from flask import current_app
from sqlalchemy import Boolean, Index, Integer, String, Text, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class Organization(BaseModel):
    """Tenant boundary: every source record, run and policy belongs to one organization"""

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    # free-form JSON text
    settings: Mapped[Optional[str]] = mapped_column(Text)

    feature_flags = db.relationship(
        "OrganizationFeatureFlag", back_populates="organization", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_org_slug_active", "slug", "is_active"),)

    def __repr__(self):
        return f"<Organization {self.slug}>"

    @classmethod
    def _first(cls, description, statement):
        try:
            return db.session.scalars(statement).first()
        except SQLAlchemyError as exc:
            current_app.logger.error("Organization lookup by %s failed: %s", description, exc)
            return None

    @classmethod
    def find_by_slug(cls, slug):
        return cls._first(f"slug {slug!r}", select(cls).where(cls.slug == slug))

    @classmethod
    def find_by_id(cls, org_id):
        return cls._first(f"id {org_id}", select(cls).where(cls.id == org_id))

    @classmethod
    def lookup(cls, identifier):
        """Resolve an all-digit identifier as an id, anything else as a slug."""
        text = str(identifier).strip()
        if text.isdigit():
            return cls.find_by_id(int(text))
        return cls.find_by_slug(text)
