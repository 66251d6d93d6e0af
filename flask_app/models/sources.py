"""
Per-connector source record tables.

Rows are written by the sync pipeline and read, never mutated, by identity
resolution. Column names follow each platform's vocabulary; the record store
adapter maps them onto a common shape.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class SourceType(str, enum.Enum):
    """Kinds of connected platforms that contribute people records."""

    CRM = "crm"
    ECOM = "ecom"
    EMAIL_PLATFORM = "email_platform"


class SyncedRecordMixin:
    """Columns every synced row carries regardless of platform."""

    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    raw_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)


class CrmContact(SyncedRecordMixin, BaseModel):
    """Contact imported from a CRM (HubSpot and similar)."""

    __tablename__ = "crm_contacts"

    id: Mapped[int] = mapped_column(primary_key=True)
    first_name: Mapped[str | None] = mapped_column(db.String(120))
    last_name: Mapped[str | None] = mapped_column(db.String(120))
    email: Mapped[str | None] = mapped_column(db.String(255), index=True)
    phone: Mapped[str | None] = mapped_column(db.String(50))
    company_name: Mapped[str | None] = mapped_column(db.String(255))
    job_title: Mapped[str | None] = mapped_column(db.String(255))
    lifecycle_stage: Mapped[str | None] = mapped_column(db.String(50))
    city: Mapped[str | None] = mapped_column(db.String(120))
    postal_code: Mapped[str | None] = mapped_column(db.String(20))
    address_line1: Mapped[str | None] = mapped_column(db.String(255))

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_crm_contacts_org_external"),
        Index("idx_crm_contacts_org_email", "organization_id", "email"),
    )

    def __repr__(self):
        return f"<CrmContact {self.id} {self.email or self.external_id}>"


class EcomCustomer(SyncedRecordMixin, BaseModel):
    """Customer imported from an e-commerce store (Shopify and similar)."""

    __tablename__ = "ecom_customers"

    id: Mapped[int] = mapped_column(primary_key=True)
    first_name: Mapped[str | None] = mapped_column(db.String(120))
    last_name: Mapped[str | None] = mapped_column(db.String(120))
    email: Mapped[str | None] = mapped_column(db.String(255), index=True)
    phone: Mapped[str | None] = mapped_column(db.String(50))
    default_address: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Store default address: address1, city, zip, company, country",
    )
    orders_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    total_spent: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 2), nullable=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_ecom_customers_org_external"),
        Index("idx_ecom_customers_org_email", "organization_id", "email"),
    )

    def __repr__(self):
        return f"<EcomCustomer {self.id} {self.email or self.external_id}>"


class EmailProfile(SyncedRecordMixin, BaseModel):
    """Subscriber profile imported from an email-marketing platform (Klaviyo and similar)."""

    __tablename__ = "email_profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str | None] = mapped_column(db.String(255), index=True)
    phone_number: Mapped[str | None] = mapped_column(db.String(50))
    first_name: Mapped[str | None] = mapped_column(db.String(120))
    last_name: Mapped[str | None] = mapped_column(db.String(120))
    organization: Mapped[str | None] = mapped_column(db.String(255))
    location: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Profile location: address1, city, zip, region, country",
    )
    subscription_status: Mapped[str | None] = mapped_column(
        Enum("subscribed", "unsubscribed", "never_subscribed", name="email_subscription_status_enum"),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_email_profiles_org_external"),
        Index("idx_email_profiles_org_email", "organization_id", "email"),
    )

    def __repr__(self):
        return f"<EmailProfile {self.id} {self.email or self.external_id}>"


SOURCE_MODELS: dict[SourceType, type[BaseModel]] = {
    SourceType.CRM: CrmContact,
    SourceType.ECOM: EcomCustomer,
    SourceType.EMAIL_PLATFORM: EmailProfile,
}
