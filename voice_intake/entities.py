# voice_intake/entities.py
from datetime import date
from decimal import Decimal
from uuid import uuid4
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    text,
    func,
    Numeric,
)

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()


def _new_id() -> str:
    return str(uuid4())


class TimestampMixin:
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class LifecycleMixin:
    # soft delete: inactive records never show up in resolution pools
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("1"),
        default=True,
    )
    # set on records created inline during dictation, cleared once completed by hand
    needs_completion: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("0"),
        default=False,
    )
    notes: Mapped[str | None] = mapped_column(Text)


class Location(Base, TimestampMixin, LifecycleMixin):
    __tablename__ = "location"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    building: Mapped[str | None] = mapped_column(String)
    floor: Mapped[str | None] = mapped_column(String)
    department: Mapped[str | None] = mapped_column(String)
    parent_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("location.id", ondelete="SET NULL"),
    )


class Vendor(Base, TimestampMixin, LifecycleMixin):
    __tablename__ = "vendor"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    company: Mapped[str | None] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String)
    phone: Mapped[str | None] = mapped_column(String)
    specialization: Mapped[str | None] = mapped_column(String)


class Assignee(Base, TimestampMixin, LifecycleMixin):
    __tablename__ = "assignee"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    department: Mapped[str | None] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String)
    phone: Mapped[str | None] = mapped_column(String)


class Equipment(Base, TimestampMixin, LifecycleMixin):
    __tablename__ = "equipment"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str | None] = mapped_column(String)
    brand: Mapped[str | None] = mapped_column(String)
    model: Mapped[str | None] = mapped_column(String)
    serial_number: Mapped[str | None] = mapped_column(String)
    barcode: Mapped[str | None] = mapped_column(String, index=True)
    purchase_date: Mapped[date | None] = mapped_column(Date)
    warranty_months: Mapped[int | None] = mapped_column(Integer)

    location_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("location.id", ondelete="SET NULL"),
    )
    # spoken location text, kept when the location could not be resolved
    location_name: Mapped[str | None] = mapped_column(String)
    vendor_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("vendor.id", ondelete="SET NULL"),
    )


class MaintenanceEvent(Base, TimestampMixin, LifecycleMixin):
    __tablename__ = "maintenance_event"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=_new_id)
    equipment_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("equipment.id", ondelete="CASCADE"),
    )
    maintenance_type: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    performed_by_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("vendor.id", ondelete="SET NULL"),
    )
    performed_by_name: Mapped[str | None] = mapped_column(String)
    self_reported: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("0"),
        default=False,
    )

    performed_on: Mapped[date | None] = mapped_column(Date)
    cost: Mapped[Decimal | None] = mapped_column(Numeric(precision=12, scale=2))
    duration_minutes: Mapped[int | None] = mapped_column(Integer)
    is_warranty_work: Mapped[bool | None] = mapped_column(Boolean)
