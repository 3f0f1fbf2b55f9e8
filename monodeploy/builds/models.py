"""Build cache ORM models.

This module defines the CacheEntry model storing the last successful
result for each target, keyed by target id.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from monodeploy.db import Base
from monodeploy.types import BuildResult


class CacheEntry(Base):
    """ORM model for a cached target result.

    There is at most one row per target; writing a new fingerprint
    replaces the previous one.

    Attributes:
        target_id: Target label (primary key).
        fingerprint: Fingerprint the result was produced from.
        reference: Content-addressed reference of the result.
        built_at: When the result was produced.
        success: Whether the result is a successful build.
        updated_at: When the row was last written.
    """

    __tablename__ = "cache_entries"

    target_id: Mapped[str] = mapped_column(String(500), primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    reference: Mapped[str] = mapped_column(String(1000), nullable=False)
    built_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        """Return string representation of CacheEntry."""
        return (
            f"<CacheEntry(target_id='{self.target_id}', "
            f"fingerprint='{self.fingerprint[:23]}...', success={self.success})>"
        )

    def to_result(self) -> BuildResult:
        """Convert this row to a BuildResult."""
        return BuildResult(
            target_id=self.target_id,
            reference=self.reference,
            built_at=self.built_at,
            success=self.success,
        )


__all__ = ["CacheEntry"]
