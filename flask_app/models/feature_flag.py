# flask_app/models/feature_flag.py

import json
from typing import Optional

from flask import current_app
from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db

_TRUTHY = ("true", "1", "yes", "on")


def _load_json(text):
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {}


def _load_number(kind, fallback):
    def load(text):
        try:
            return kind(text)
        except ValueError:
            return fallback

    return load


# flag_type -> (stored text -> value, value -> stored text)
FLAG_CODECS = {
    "boolean": (lambda text: text.lower() in _TRUTHY, lambda value: "true" if bool(value) else "false"),
    "string": (str, str),
    "integer": (_load_number(int, 0), lambda value: str(int(value))),
    "float": (_load_number(float, 0.0), lambda value: repr(float(value))),
    "json": (_load_json, lambda value: value if isinstance(value, str) else json.dumps(value)),
}
FLAG_TYPES = tuple(FLAG_CODECS)


def _check_flag_type(flag_type):
    if flag_type not in FLAG_CODECS:
        raise ValueError(f"Unsupported flag type '{flag_type}'")


class TypedFlagMixin:
    """Flags are stored as text and decoded according to ``flag_type``"""

    def get_value(self):
        decode, _ = FLAG_CODECS.get(self.flag_type, FLAG_CODECS["string"])
        return decode(self.flag_value)

    def set_value(self, value, flag_type=None):
        if flag_type is not None:
            self.flag_type = flag_type
        _, encode = FLAG_CODECS.get(self.flag_type, FLAG_CODECS["string"])
        self.flag_value = encode(value)

    @classmethod
    def _read(cls, default, **criteria):
        try:
            flag = db.session.scalars(select(cls).filter_by(**criteria)).first()
        except SQLAlchemyError as exc:
            current_app.logger.error("Reading %s %s failed: %s", cls.__name__, criteria, exc)
            return default
        return default if flag is None else flag.get_value()

    @classmethod
    def _write(cls, value, flag_type, extra=None, **criteria):
        _check_flag_type(flag_type)
        try:
            flag = db.session.scalars(select(cls).filter_by(**criteria)).first()
            if flag is None:
                flag = cls(**criteria)
                db.session.add(flag)
            flag.set_value(value, flag_type)
            for key, item in (extra or {}).items():
                if item:
                    setattr(flag, key, item)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.error("Writing %s %s failed: %s", cls.__name__, criteria, exc)
            return False
        return True


class OrganizationFeatureFlag(TypedFlagMixin, BaseModel):
    """Per-tenant switches, e.g. auto-apply thresholds for identity resolution"""

    __tablename__ = "organization_feature_flags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    flag_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    flag_value: Mapped[str] = mapped_column(Text, nullable=False)
    flag_type: Mapped[str] = mapped_column(String(20), default="boolean", nullable=False)

    organization = db.relationship("Organization", back_populates="feature_flags")

    __table_args__ = (UniqueConstraint("organization_id", "flag_name", name="_org_flag_uc"),)

    def __repr__(self):
        return f"<OrganizationFeatureFlag org={self.organization_id} {self.flag_name}={self.flag_value}>"

    @classmethod
    def get_flag(cls, organization_id, flag_name, default=None):
        return cls._read(default, organization_id=organization_id, flag_name=flag_name)

    @classmethod
    def set_flag(cls, organization_id, flag_name, value, flag_type="boolean"):
        """Create or overwrite a tenant flag; False when the write fails."""
        return cls._write(value, flag_type, organization_id=organization_id, flag_name=flag_name)


class SystemFeatureFlag(TypedFlagMixin, BaseModel):
    """Deployment-wide defaults consulted when a tenant has no override"""

    __tablename__ = "system_feature_flags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    flag_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    flag_value: Mapped[str] = mapped_column(Text, nullable=False)
    flag_type: Mapped[str] = mapped_column(String(20), default="boolean", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    def __repr__(self):
        return f"<SystemFeatureFlag {self.flag_name}={self.flag_value}>"

    @classmethod
    def get_flag(cls, flag_name, default=None):
        return cls._read(default, flag_name=flag_name)

    @classmethod
    def set_flag(cls, flag_name, value, flag_type="boolean", description=None):
        return cls._write(value, flag_type, {"description": description}, flag_name=flag_name)
