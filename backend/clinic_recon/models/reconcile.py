from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from clinic_recon.models.base import Base


class DedupIgnoredPair(Base):
    __tablename__ = "dedup_ignored"
    __table_args__ = (
        UniqueConstraint("patient_id_a", "patient_id_b", name="uq_dedup_ignored_pair"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id_a: Mapped[str] = mapped_column(String(64), nullable=False)
    patient_id_b: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class ReconcileEvent(Base):
    __tablename__ = "reconcile_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    from_patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    to_patient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
