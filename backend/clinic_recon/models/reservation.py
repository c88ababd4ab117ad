from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from clinic_recon.models.base import Base, TimestampMixin


class Reservation(Base, TimestampMixin):
    __tablename__ = "reservations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    reserve_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    patient_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    reserved_date: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    reserved_time: Mapped[str | None] = mapped_column(String(8), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
