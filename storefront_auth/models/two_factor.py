"""Two-factor enrollment ORM model."""

from __future__ import annotations

from sqlalchemy import Boolean, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from storefront_auth.db.base import Base, TimestampMixin


class TwoFactorEnrollmentRecord(Base, TimestampMixin):
    """Durable TOTP enrollment keyed by the external user id."""

    __tablename__ = "two_factor_enrollments"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    secret: Mapped[str] = mapped_column(String(64), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    backup_code_hashes: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
