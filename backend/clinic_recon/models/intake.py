from __future__ import annotations

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_recon.models.base import Base, TimestampMixin


class Intake(Base, TimestampMixin):
    __tablename__ = "intake"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    patient_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    line_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reserve_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reserved_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    answers: Mapped[dict | None] = mapped_column(JSON, nullable=True)
